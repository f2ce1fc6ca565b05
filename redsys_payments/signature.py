"""
HMAC_SHA256_V1 signing for the RedSys/Getnet gateway.

The merchant key is diversified per order: the order id is 3DES-CBC
encrypted under the base64-decoded merchant key (zero IV, zero padding) and
the result keys an HMAC-SHA256 over the base64 ``Ds_MerchantParameters``
string exactly as sent on the wire.
"""
import base64
import binascii
import hashlib
import hmac
import json
from typing import Any, Dict, Mapping

import structlog
from Crypto.Cipher import DES3

from redsys_payments.config import Settings
from redsys_payments.errors import ConfigMissing, MalformedPayload
from redsys_payments.models import TransactionStatus

logger = structlog.get_logger()

SIGNATURE_VERSION = "HMAC_SHA256_V1"

AUTH_OK_MIN = 0
AUTH_OK_MAX = 99
CANCEL_OK = 400
REFUND_OK = 900

ORDER_KEYS = ("Ds_Order", "DS_ORDER", "DS_MERCHANT_ORDER")


def _b64decode(value: str) -> bytes:
    # Gateway replies sometimes use the URL-safe alphabet and drop padding.
    value = _normalize_b64(value)
    return base64.b64decode(value, validate=True)


def _normalize_b64(value: str) -> str:
    value = value.strip().replace("-", "+").replace("_", "/")
    return value + "=" * (-len(value) % 4)


def _diversify_key(secret_key: str, order: str) -> bytes:
    raw = base64.b64decode(secret_key)
    if len(raw) not in (16, 24):
        raw = raw[:24].ljust(24, b"\0")
    data = order.encode("utf-8")
    data += b"\0" * (-len(data) % DES3.block_size)
    cipher = DES3.new(raw, DES3.MODE_CBC, iv=bytes(DES3.block_size))
    return cipher.encrypt(data)


def encode_merchant_params(params: Mapping[str, Any]) -> str:
    return base64.b64encode(json.dumps(dict(params)).encode("utf-8")).decode("ascii")


def decode_merchant_params(params_b64: str) -> Dict[str, Any]:
    try:
        decoded = json.loads(_b64decode(params_b64).decode("utf-8"))
    except (binascii.Error, ValueError, AttributeError) as e:
        raise MalformedPayload(f"Invalid merchant parameters: {e}") from e
    if not isinstance(decoded, dict):
        raise MalformedPayload("Merchant parameters are not a JSON object")
    return decoded


def order_from_params(params: Mapping[str, Any]):
    for key in ORDER_KEYS:
        if params.get(key):
            return str(params[key])
    return None


def create_signature(secret_key: str, params_b64: str, order: str) -> str:
    derived = _diversify_key(secret_key, order)
    digest = hmac.new(derived, params_b64.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(secret_key: str, params_b64: str, signature_b64: str) -> bool:
    """Check a gateway signature. Returns False on any malformed input."""
    try:
        order = order_from_params(decode_merchant_params(params_b64))
        if not order:
            logger.warning("signature_missing_order")
            return False
        expected = create_signature(secret_key, params_b64, order)
        return hmac.compare_digest(
            expected.encode("ascii"),
            _normalize_b64(signature_b64).encode("ascii"),
        )
    except (MalformedPayload, binascii.Error, ValueError, TypeError, AttributeError):
        return False


def get_secret_key(settings: Settings) -> str:
    if settings.redsys_env == "production":
        key = settings.redsys_secret_key_production
    else:
        key = settings.redsys_secret_key_test
    if not key:
        raise ConfigMissing(f"RedSys secret key not configured for env {settings.redsys_env!r}")
    return key


def build_signed_request(settings: Settings, params: Mapping[str, Any]) -> Dict[str, str]:
    if not settings.redsys_merchant_code:
        raise ConfigMissing("REDSYS_MERCHANT_CODE is not set")

    full = {
        "DS_MERCHANT_CURRENCY": settings.redsys_currency,
        "DS_MERCHANT_MERCHANTCODE": settings.redsys_merchant_code,
        "DS_MERCHANT_TERMINAL": settings.redsys_terminal,
        "DS_MERCHANT_MERCHANTURL": settings.notification_url,
        **params,
    }
    clean = {k: str(v) for k, v in full.items() if v is not None}
    params_b64 = encode_merchant_params(clean)

    return {
        "Ds_SignatureVersion": SIGNATURE_VERSION,
        "Ds_MerchantParameters": params_b64,
        "Ds_Signature": create_signature(
            get_secret_key(settings), params_b64, clean["DS_MERCHANT_ORDER"]
        ),
    }


def _code(code) -> int:
    return int(str(code).strip())


def is_authorization_success(code) -> bool:
    """Approved authorizations are 0000-0099."""
    try:
        return AUTH_OK_MIN <= _code(code) <= AUTH_OK_MAX
    except (TypeError, ValueError):
        return False


def is_success_response(code) -> bool:
    """Any successful operation: authorizations, cancellations (0400), refunds (0900)."""
    try:
        value = _code(code)
    except (TypeError, ValueError):
        return False
    return AUTH_OK_MIN <= value <= AUTH_OK_MAX or value in (CANCEL_OK, REFUND_OK)


def classify_response_code(code) -> TransactionStatus:
    try:
        value = _code(code)
    except (TypeError, ValueError):
        return TransactionStatus.ERROR
    if is_authorization_success(value) or is_success_response(value):
        return TransactionStatus.AUTHORIZED
    return TransactionStatus.DENIED
