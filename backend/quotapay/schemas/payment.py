"""支付相关的Pydantic模式"""
from datetime import datetime
from decimal import Decimal
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class CreateOrderRequest(BaseModel):
    """创建充值订单"""
    amount: float = Field(..., description="充值金额（元）")
    payment_method: str = Field(..., description="支付方式: alipay/wechat/paypal")
    top_up_code: str | None = Field(None, max_length=100, description="折扣码")


class AmountRequest(BaseModel):
    """计算折后金额"""
    amount: float = Field(..., description="充值金额（元）")
    top_up_code: str | None = Field(None, max_length=100, description="折扣码")


class OrderResponse(BaseModel):
    """订单信息"""
    order_id: str
    user_id: int
    quota_amount: int
    pay_amount: Decimal
    gateway: str
    discount_code: str | None = None
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(from_attributes=True)

    @field_serializer("pay_amount")
    def _serialize_pay_amount(self, value: Decimal) -> str:
        return f"{value:.2f}"


class CreateOrderResponse(BaseModel):
    success: bool
    message: str = ""
    data: dict[str, object] | None = None
    url: str | None = None


class AmountResponse(BaseModel):
    success: bool
    message: str = ""
    amount: float | None = None
    count: int | None = None


class OrderDetailResponse(BaseModel):
    success: bool
    message: str = ""
    data: OrderResponse | None = None


class OrderListResponse(BaseModel):
    success: bool
    message: str = ""
    data: list[OrderResponse] = Field(default_factory=list)
    total: int = 0


class CallbackAck(BaseModel):
    success: bool
    message: str = ""
