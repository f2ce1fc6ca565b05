"""
Recurring billing for subscriptions with a stored card reference.

Each due subscription is charged independently: a fresh ``R`` order is
recorded as pending in the ledger, charged through the gateway as a
merchant-initiated transaction and resolved from the synchronous reply.
Failures are collected per item as ``RenewalResult`` values so one bad
charge never aborts the batch.

A charge that timed out is left pending and is not charged again: the next
run advances the subscription once the notification has authorized it.
"""
import asyncio
import datetime as dt
from dataclasses import dataclass, field
from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from redsys_payments.config import Settings
from redsys_payments.errors import (
    GatewayDeclined,
    GatewayError,
    GatewayTimeout,
    InternalError,
    PaymentsError,
    SignatureInvalid,
)
from redsys_payments.gateway import GatewayClient
from redsys_payments.ledger import TransactionLedger
from redsys_payments.models import (
    PaymentContext,
    PaymentTransaction,
    Subscription,
    TransactionStatus,
    as_naive_utc,
    utcnow,
)
from redsys_payments.order_numbers import generate_order_number
from redsys_payments.signature import classify_response_code
from redsys_payments.subscriptions import DunningPolicy, SubscriptionStore

logger = structlog.get_logger()


@dataclass
class RenewalResult:
    subscription_id: str
    user_id: str
    plan: Optional[str] = None
    interval: Optional[str] = None
    success: bool = False
    skipped: bool = False
    gateway_order: Optional[str] = None
    response_code: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def for_subscription(cls, sub: Subscription) -> "RenewalResult":
        return cls(
            subscription_id=sub.id,
            user_id=sub.user_id,
            plan=sub.plan_name,
            interval=sub.interval,
        )

    def to_dict(self):
        return {
            "subscriptionId": self.subscription_id,
            "userId": self.user_id,
            "plan": self.plan,
            "interval": self.interval,
            "success": self.success,
            "skipped": self.skipped,
            "order": self.gateway_order,
            "responseCode": self.response_code,
            "error": self.error,
        }


@dataclass
class RenewalRun:
    processed_at: dt.datetime
    results: List[RenewalResult] = field(default_factory=list)

    @property
    def total_due(self) -> int:
        return len(self.results)

    @property
    def total_skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def total_succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def total_failed(self) -> int:
        return sum(1 for r in self.results if not r.success and not r.skipped)

    @property
    def total_processed(self) -> int:
        return self.total_succeeded + self.total_failed

    def to_dict(self, include_results: bool = False):
        summary = {
            "processedAt": as_naive_utc(self.processed_at).isoformat() + "Z",
            "totalDue": self.total_due,
            "totalProcessed": self.total_processed,
            "totalSucceeded": self.total_succeeded,
            "totalFailed": self.total_failed,
            "totalSkipped": self.total_skipped,
        }
        if include_results:
            summary["results"] = [r.to_dict() for r in self.results]
        return summary


class RenewalScheduler:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        gateway: GatewayClient,
        policy: Optional[DunningPolicy] = None,
    ):
        self.db = db
        self.settings = settings
        self.gateway = gateway
        self.policy = policy or DunningPolicy(settings.renewal_max_failures)
        self.ledger = TransactionLedger(db)
        self.subscriptions = SubscriptionStore(db)

    async def run(
        self,
        dry_run: bool = False,
        limit: Optional[int] = None,
        now: Optional[dt.datetime] = None,
    ) -> RenewalRun:
        if limit is None:
            limit = self.settings.renewal_default_limit
        if limit < 1:
            raise ValueError("limit must be a positive integer")
        now = as_naive_utc(now) if now else utcnow()
        if not dry_run:
            self.gateway.check_config()

        due = self.subscriptions.due_for_renewal(now, limit)
        logger.info("renewal_run_started", due=len(due), limit=limit, dry_run=dry_run)

        # Gateway calls in flight never exceed the batch size or the configured ceiling.
        semaphore = asyncio.Semaphore(max(1, min(limit, self.settings.renewal_max_concurrency)))
        results = await asyncio.gather(
            *(self._renew_isolated(sub, dry_run, semaphore) for sub in due)
        )

        run = RenewalRun(processed_at=now, results=list(results))
        logger.info(
            "renewal_run_completed",
            total_due=run.total_due,
            succeeded=run.total_succeeded,
            failed=run.total_failed,
            skipped=run.total_skipped,
        )
        return run

    async def _renew_isolated(
        self, sub: Subscription, dry_run: bool, semaphore: asyncio.Semaphore
    ) -> RenewalResult:
        result = RenewalResult.for_subscription(sub)

        if dry_run:
            result.skipped = True
            result.error = "dry run, not charged"
            return result

        try:
            await self._attempt(sub, result, semaphore)
        except GatewayTimeout as e:
            # Outcome unknown: not a failure until the ledger row settles.
            result.error = str(e)
            logger.warning(
                "renewal_outcome_unknown",
                subscription_id=sub.id,
                gateway_order=result.gateway_order,
            )
            return result
        except GatewayDeclined as e:
            result.response_code = e.response_code
            result.error = str(e)
        except (GatewayError, SignatureInvalid, InternalError) as e:
            result.error = str(e)

        if not result.success and not result.skipped:
            try:
                self.subscriptions.record_failure(sub, self.policy)
            except Exception:
                self.db.rollback()
                logger.exception("renewal_failure_not_recorded", subscription_id=sub.id)
        return result

    async def _attempt(
        self, sub: Subscription, result: RenewalResult, semaphore: asyncio.Semaphore
    ) -> None:
        try:
            if self._settle_previous_attempt(sub, result):
                return
            if not sub.recurring_token:
                result.skipped = True
                result.error = "missing recurring token"
                logger.warning("renewal_skipped_missing_token", subscription_id=sub.id)
                return
            async with semaphore:
                await self._renew(sub, result)
        except PaymentsError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.exception("renewal_unexpected_error", subscription_id=sub.id)
            raise InternalError(f"Unexpected error: {e}") from e

    def _settle_previous_attempt(self, sub: Subscription, result: RenewalResult) -> bool:
        """
        Look at the last charge made for this subscription since its last renewal.

        A timed-out charge stays pending until the notification settles it. If
        it was authorized, the period is advanced from it instead of charging
        again; while it is still pending the subscription is skipped.
        """
        previous = self.ledger.latest_mit_attempt(sub.id)
        if previous is None or previous.gateway_order == sub.last_gateway_order:
            return False

        if previous.status == TransactionStatus.AUTHORIZED.value:
            self.subscriptions.record_renewal(sub, previous.gateway_order, previous.cof_transaction_id)
            result.gateway_order = previous.gateway_order
            result.response_code = previous.response_code
            result.success = True
            logger.info(
                "renewal_settled_from_ledger",
                subscription_id=sub.id,
                gateway_order=previous.gateway_order,
            )
            return True

        if previous.status == TransactionStatus.PENDING.value:
            result.skipped = True
            result.gateway_order = previous.gateway_order
            result.error = "previous charge awaiting confirmation"
            logger.warning(
                "renewal_skipped_unsettled_charge",
                subscription_id=sub.id,
                gateway_order=previous.gateway_order,
            )
            return True

        return False

    async def _renew(self, sub: Subscription, result: RenewalResult) -> None:
        order = generate_order_number("R")
        result.gateway_order = order
        description = f"Renewal {sub.plan_name or 'membership'}"

        self.ledger.create_pending(
            order,
            PaymentContext.MEMBERSHIP,
            sub.amount,
            sub.currency,
            is_mit=True,
            subscription_id=sub.id,
            description=description,
        )

        try:
            response = await self.gateway.charge_with_token(
                sub.recurring_token,
                sub.amount,
                order,
                cof_transaction_id=sub.cof_transaction_id,
                description=description,
            )
        except GatewayTimeout:
            # Left pending: the charge may still have gone through and the
            # notification can settle it.
            raise
        except (GatewayError, SignatureInvalid):
            self.ledger.resolve(order, TransactionStatus.ERROR)
            raise

        result.response_code = response.response_code
        self.ledger.resolve(
            order,
            classify_response_code(response.response_code),
            **response.transaction_fields(),
        )

        # The notification may have won the race; the ledger row is authoritative.
        txn = self.ledger.find(order)
        if txn.status != TransactionStatus.AUTHORIZED.value:
            raise GatewayDeclined(txn.response_code or response.response_code)

        self.subscriptions.record_renewal(sub, order, response.cof_transaction_id)
        result.success = True
