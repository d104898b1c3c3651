"""支付相关异常"""


class PaymentError(Exception):
    """支付异常基类"""
    error_code: str = "PAYMENT_ERROR"

    def __init__(self, message: str, error_code: str | None = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)


class InvalidAmount(PaymentError):
    error_code = "INVALID_AMOUNT"


class UnsupportedGateway(PaymentError):
    error_code = "UNSUPPORTED_GATEWAY"


class ConfigIncomplete(PaymentError):
    error_code = "CONFIG_INCOMPLETE"


class KeyConfigError(PaymentError):
    error_code = "KEY_CONFIG_ERROR"


class OrderNotFound(PaymentError):
    error_code = "ORDER_NOT_FOUND"


class OrderAccessDenied(PaymentError):
    error_code = "ORDER_ACCESS_DENIED"


class DuplicateOrderId(PaymentError):
    error_code = "DUPLICATE_ORDER_ID"


class CreditFailed(PaymentError):
    """充值失败，订单已回到 pending，可重试"""
    error_code = "CREDIT_FAILED"


class GatewayCallFailed(PaymentError):
    """调用支付网关失败，订单保持 pending"""
    error_code = "GATEWAY_CALL_FAILED"

    def __init__(self, message: str, order_id: str | None = None):
        super().__init__(message)
        self.order_id = order_id


class SignatureInvalid(PaymentError):
    error_code = "SIGNATURE_INVALID"


class CallbackParseError(PaymentError):
    error_code = "CALLBACK_PARSE_ERROR"


class AmountMismatch(PaymentError):
    """回调中的实付金额或币种与订单不符，订单不入账"""
    error_code = "AMOUNT_MISMATCH"
