"""数据库模型"""
from .user import User
from .payment import (
    DiscountCode,
    PaymentCallbackEvent,
    PaymentMethod,
    PaymentOrder,
    PaymentStatus,
    TopupLog,
)

__all__ = [
    "User",
    "DiscountCode",
    "PaymentCallbackEvent",
    "PaymentMethod",
    "PaymentOrder",
    "PaymentStatus",
    "TopupLog",
]
