from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from redsys_payments.config import Settings
from redsys_payments.errors import ConfigMissing, GatewayError, GatewayTimeout, MalformedPayload, SignatureInvalid
from redsys_payments.signature import (
    build_signed_request,
    decode_merchant_params,
    get_secret_key,
    is_authorization_success,
    is_success_response,
    verify_signature,
)

logger = structlog.get_logger()


@dataclass
class ChargeResponse:
    response_code: str
    authorization_code: Optional[str] = None
    card_brand: Optional[str] = None
    card_country: Optional[str] = None
    last_four: Optional[str] = None
    recurring_token: Optional[str] = None
    cof_transaction_id: Optional[str] = None
    amount: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "ChargeResponse":
        card_number = str(params.get("Ds_CardNumber") or "")
        return cls(
            response_code=str(params.get("Ds_Response") or ""),
            authorization_code=str(params.get("Ds_AuthorisationCode") or "").strip() or None,
            card_brand=params.get("Ds_Card_Brand") or None,
            card_country=params.get("Ds_Card_Country") or None,
            last_four=card_number[-4:] or None,
            recurring_token=params.get("Ds_Merchant_Identifier") or None,
            cof_transaction_id=params.get("Ds_Merchant_Cof_Txnid") or None,
            amount=params.get("Ds_Amount") or None,
            raw=dict(params),
        )

    @property
    def approved(self) -> bool:
        return is_authorization_success(self.response_code)

    def transaction_fields(self) -> Dict[str, Optional[str]]:
        return {
            "response_code": self.response_code or None,
            "authorization_code": self.authorization_code,
            "card_brand": self.card_brand,
            "card_country": self.card_country,
            "last_four": self.last_four,
            "recurring_token": self.recurring_token,
            "cof_transaction_id": self.cof_transaction_id,
        }


class GatewayClient:
    """REST client for the gateway's trataPeticionREST operation."""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = http_client

    def check_config(self) -> None:
        """Raise ConfigMissing before any charge is attempted."""
        if not self.settings.redsys_merchant_code:
            raise ConfigMissing("REDSYS_MERCHANT_CODE is not set")
        get_secret_key(self.settings)

    async def charge_with_token(
        self,
        token: str,
        amount: int,
        order: str,
        cof_transaction_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ChargeResponse:
        """Merchant-initiated charge against a stored card reference."""
        response = await self._execute({
            "DS_MERCHANT_TRANSACTIONTYPE": "0",
            "DS_MERCHANT_ORDER": order,
            "DS_MERCHANT_AMOUNT": str(amount),
            "DS_MERCHANT_IDENTIFIER": token,
            "DS_MERCHANT_COF_TXNID": cof_transaction_id,
            "DS_MERCHANT_EXCEP_SCA": "MIT",
            "DS_MERCHANT_DIRECTPAYMENT": "true",
            "DS_MERCHANT_PRODUCTDESCRIPTION": description,
        })
        if not response.cof_transaction_id:
            response.cof_transaction_id = cof_transaction_id
        logger.info(
            "gateway_charge_completed",
            gateway_order=order,
            response_code=response.response_code,
            approved=response.approved,
        )
        return response

    async def refund(self, order: str, amount: int) -> ChargeResponse:
        """Refund against the order of the original payment (partial amounts allowed)."""
        response = await self._execute({
            "DS_MERCHANT_TRANSACTIONTYPE": "3",
            "DS_MERCHANT_ORDER": order,
            "DS_MERCHANT_AMOUNT": str(amount),
        })
        logger.info(
            "gateway_refund_completed",
            gateway_order=order,
            response_code=response.response_code,
            success=is_success_response(response.response_code),
        )
        return response

    async def _post(self, payload: Dict[str, str]) -> httpx.Response:
        url = self.settings.gateway_endpoint
        if self._client is not None:
            return await self._client.post(url, json=payload, timeout=self.settings.gateway_timeout)
        async with httpx.AsyncClient(timeout=self.settings.gateway_timeout) as client:
            return await client.post(url, json=payload)

    async def _execute(self, params: Dict[str, Optional[str]]) -> ChargeResponse:
        signed = build_signed_request(self.settings, params)
        order = params["DS_MERCHANT_ORDER"]

        try:
            r = await self._post(signed)
            r.raise_for_status()
            data = r.json()
        except httpx.TimeoutException as e:
            logger.warning("gateway_timeout", gateway_order=order)
            raise GatewayTimeout(f"Gateway timed out for order {order}") from e
        except httpx.HTTPError as e:
            logger.error("gateway_http_error", gateway_order=order, error=str(e))
            raise GatewayError(f"Gateway request failed: {e}") from e
        except ValueError as e:
            raise GatewayError("Gateway returned a non-JSON body") from e

        if not isinstance(data, dict):
            raise GatewayError("Gateway returned an unexpected payload")
        if data.get("errorCode") and not data.get("Ds_MerchantParameters"):
            logger.error("gateway_rejected_request", gateway_order=order, error_code=data["errorCode"])
            raise GatewayError(f"Gateway rejected request: {data['errorCode']}")

        params_b64 = data.get("Ds_MerchantParameters") or ""
        signature = data.get("Ds_Signature") or ""
        if not verify_signature(get_secret_key(self.settings), params_b64, signature):
            logger.error("gateway_response_signature_invalid", gateway_order=order)
            raise SignatureInvalid(f"Gateway response signature verification failed for order {order}")

        try:
            return ChargeResponse.from_params(decode_merchant_params(params_b64))
        except MalformedPayload as e:
            raise GatewayError(str(e)) from e
