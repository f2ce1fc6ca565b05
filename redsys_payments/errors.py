class PaymentsError(Exception):
    pass

class MalformedPayload(PaymentsError):
    """Merchant parameters are not valid base64-encoded JSON."""

class SignatureInvalid(PaymentsError):
    pass

class TransactionNotFound(PaymentsError):
    def __init__(self, gateway_order):
        super().__init__(f"No transaction for gateway order {gateway_order!r}")
        self.gateway_order = gateway_order

class ConfigMissing(PaymentsError):
    """Required configuration is absent. Aborts the request or run."""

class GatewayError(PaymentsError):
    pass

class GatewayTimeout(GatewayError):
    pass

class GatewayDeclined(GatewayError):
    def __init__(self, response_code):
        super().__init__(f"Charge declined (code: {response_code})")
        self.response_code = response_code


class InternalError(PaymentsError):
    """Unexpected failure, wrapped at the webhook and renewal boundaries."""
