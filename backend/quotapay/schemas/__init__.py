"""Pydantic模式"""
from .payment import (
    AmountRequest,
    AmountResponse,
    CallbackAck,
    CreateOrderRequest,
    CreateOrderResponse,
    OrderDetailResponse,
    OrderListResponse,
    OrderResponse,
)

__all__ = [
    "AmountRequest",
    "AmountResponse",
    "CallbackAck",
    "CreateOrderRequest",
    "CreateOrderResponse",
    "OrderDetailResponse",
    "OrderListResponse",
    "OrderResponse",
]
