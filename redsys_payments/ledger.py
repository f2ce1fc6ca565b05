import enum
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from redsys_payments.errors import TransactionNotFound
from redsys_payments.models import PaymentContext, PaymentTransaction, TransactionStatus, utcnow

logger = structlog.get_logger()

RESOLVABLE_FIELDS = {
    "response_code",
    "authorization_code",
    "card_brand",
    "card_country",
    "last_four",
    "recurring_token",
    "cof_transaction_id",
}


class Resolution(str, enum.Enum):
    RESOLVED = "resolved"
    ALREADY_PROCESSED = "already_processed"


class TransactionLedger:
    """Append-only store of payment attempts keyed by gateway order.

    ``resolve`` is the single synchronization point for webhook retries and
    the renewal job: a conditional UPDATE that only matches pending rows.
    """

    def __init__(self, db: Session):
        self.db = db

    def create_pending(
        self,
        gateway_order: str,
        context: PaymentContext,
        amount: int,
        currency: str = "978",
        *,
        transaction_type: str = "0",
        is_mit: bool = False,
        subscription_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> PaymentTransaction:
        txn = PaymentTransaction(
            gateway_order=gateway_order,
            context=PaymentContext(context).value,
            status=TransactionStatus.PENDING.value,
            amount=amount,
            currency=currency,
            transaction_type=transaction_type,
            is_mit=is_mit,
            subscription_id=subscription_id,
            description=description,
        )
        self.db.add(txn)
        self.db.commit()
        self.db.refresh(txn)
        logger.info("transaction_created", gateway_order=gateway_order, context=txn.context, amount=amount)
        return txn

    def find(self, gateway_order: str) -> PaymentTransaction:
        txn = self.db.query(PaymentTransaction).filter_by(gateway_order=gateway_order).first()
        if txn is None:
            raise TransactionNotFound(gateway_order)
        return txn

    def latest_mit_attempt(self, subscription_id: str) -> Optional[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter_by(subscription_id=subscription_id, is_mit=True)
            .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
            .first()
        )

    def resolve(self, gateway_order: str, status: TransactionStatus, **fields) -> Resolution:
        status = TransactionStatus(status)
        if status is TransactionStatus.PENDING:
            raise ValueError("A transaction cannot be resolved back to pending")
        unknown = set(fields) - RESOLVABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown transaction fields: {sorted(unknown)}")

        stmt = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.gateway_order == gateway_order,
                PaymentTransaction.status == TransactionStatus.PENDING.value,
            )
            .values(status=status.value, updated_at=utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()

        if result.rowcount == 1:
            logger.info("transaction_resolved", gateway_order=gateway_order, status=status.value)
            return Resolution.RESOLVED

        current = self.find(gateway_order)
        logger.info(
            "transaction_already_processed",
            gateway_order=gateway_order,
            status=current.status,
            attempted=status.value,
        )
        return Resolution.ALREADY_PROCESSED
