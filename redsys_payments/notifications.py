"""
Server-to-server payment notifications.

The gateway treats any non-200 reply as a failed delivery and keeps
retrying, so every outcome here is reported as a ``NotificationResult`` and
acknowledged with 200 by the route. Anomalies are only logged. Unexpected
failures surface as ``InternalError`` and a missing merchant key as
``ConfigMissing``; the route acknowledges both with an error payload.
"""
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog
from sqlalchemy.orm import Session

from redsys_payments.config import Settings
from redsys_payments.errors import InternalError, MalformedPayload, PaymentsError, TransactionNotFound
from redsys_payments.gateway import ChargeResponse
from redsys_payments.ledger import Resolution, TransactionLedger
from redsys_payments.models import PaymentContext, TransactionStatus
from redsys_payments.order_numbers import is_valid_order_number
from redsys_payments.orders import OrderService
from redsys_payments.signature import (
    classify_response_code,
    decode_merchant_params,
    get_secret_key,
    order_from_params,
    verify_signature,
)

logger = structlog.get_logger()

PARAMS_FIELDS = ("Ds_MerchantParameters", "MerchantParameters")
SIGNATURE_FIELDS = ("Ds_Signature", "Signature")


@dataclass
class NotificationResult:
    status: str = "ok"
    message: Optional[str] = None

    def to_dict(self):
        body = {"status": self.status}
        if self.message:
            body["message"] = self.message
        return body


def _first(body: Mapping[str, Any], names) -> Optional[str]:
    for name in names:
        value = body.get(name)
        if value:
            return str(value)
    return None


class NotificationHandler:
    def __init__(self, db: Session, settings: Settings, orders: Optional[OrderService] = None):
        self.db = db
        self.settings = settings
        self.ledger = TransactionLedger(db)
        self.orders = orders or OrderService(db)

    def handle(self, body: Optional[Mapping[str, Any]]) -> NotificationResult:
        try:
            return self._handle(body or {})
        except PaymentsError:
            raise
        except Exception as e:
            self.db.rollback()
            raise InternalError(f"Unexpected error handling notification: {e}") from e

    def _handle(self, body: Mapping[str, Any]) -> NotificationResult:
        params_b64 = _first(body, PARAMS_FIELDS)
        signature = _first(body, SIGNATURE_FIELDS)
        if not params_b64 or not signature:
            logger.error("notification_missing_parameters", fields=sorted(body))
            return NotificationResult("error", "Missing parameters")

        # ConfigMissing propagates: without a key nothing can be trusted.
        secret_key = get_secret_key(self.settings)
        if not verify_signature(secret_key, params_b64, signature):
            logger.warning("notification_invalid_signature")
            return NotificationResult("error", "Invalid signature")

        try:
            params = decode_merchant_params(params_b64)
        except MalformedPayload:
            logger.error("notification_malformed_parameters")
            return NotificationResult("error", "Malformed parameters")

        gateway_order = order_from_params(params)
        response = ChargeResponse.from_params(params)
        log = logger.bind(gateway_order=gateway_order, response_code=response.response_code)
        log.info("notification_received", amount=response.amount)

        if not gateway_order:
            log.error("notification_missing_order")
            return NotificationResult()
        if not is_valid_order_number(gateway_order):
            log.error("notification_malformed_order")
            return NotificationResult()

        try:
            txn = self.ledger.find(gateway_order)
        except TransactionNotFound:
            log.warning("notification_unknown_order")
            return NotificationResult()

        if txn.status != TransactionStatus.PENDING.value:
            log.info("notification_already_processed", status=txn.status)
            return NotificationResult("ok", "Already processed")

        if response.amount is not None and str(response.amount) != str(txn.amount):
            log.warning("notification_amount_mismatch", expected=txn.amount, received=response.amount)

        context = txn.context
        status = classify_response_code(response.response_code)
        resolution = self.ledger.resolve(gateway_order, status, **response.transaction_fields())
        if resolution is Resolution.ALREADY_PROCESSED:
            return NotificationResult("ok", "Already processed")

        if status is TransactionStatus.AUTHORIZED:
            self._on_authorized(context, gateway_order)
        elif status is TransactionStatus.DENIED:
            log.warning("notification_payment_denied")
        else:
            log.error("notification_unparseable_response_code")

        return NotificationResult()

    def _on_authorized(self, context: str, gateway_order: str) -> None:
        if context == PaymentContext.SHOP.value:
            self.orders.mark_paid(gateway_order)
        else:
            # Membership activation happens during checkout; this is a settlement confirmation.
            logger.info("membership_payment_confirmed", gateway_order=gateway_order)
