"""支付网关客户端公共定义"""
from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Protocol
from urllib.parse import parse_qsl

from ..payment_errors import CallbackParseError, ConfigIncomplete


class CallbackResult(str, enum.Enum):
    """回调解读结果"""
    SUCCESS = "success"
    FAILURE = "failure"
    IGNORED = "ignored"  # 中间态（如等待付款），不改变订单


@dataclass(frozen=True)
class GatewayResult:
    redirect_target: str
    raw_fields: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CallbackPayload:
    order_id: str
    external_status: str
    result: CallbackResult
    # 网关报告的实付金额与币种；网关未给出时为 None
    paid_amount: Decimal | None = None
    currency: str | None = None


class PayableOrder(Protocol):
    order_id: str
    quota_amount: int
    pay_amount: Decimal


def quantize_amount(amount: Decimal | float | str) -> Decimal:
    return Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def amount_to_fen(amount: Decimal | float | str) -> int:
    return int(quantize_amount(amount) * 100)


def parse_paid_amount(gateway: str, field_name: str, value: str | None, *, in_fen: bool = False) -> Decimal | None:
    """解析回调里的金额字段；字段缺失返回 None，格式错误按解析失败处理"""
    text = str(value or "").strip()
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation as e:
        raise CallbackParseError(f"{gateway} 回调 {field_name} 不是合法金额: {text}") from e
    if not amount.is_finite() or amount < 0:
        raise CallbackParseError(f"{gateway} 回调 {field_name} 不是合法金额: {text}")
    return amount / 100 if in_fen else amount


def require_fields(gateway: str, **values: str) -> None:
    """检查网关配置项是否齐全"""
    missing = [k for k, v in values.items() if not str(v or "").strip()]
    if missing:
        raise ConfigIncomplete(f"{gateway} 支付配置不完整: {', '.join(missing)}")


def parse_form_body(body: bytes, query: Mapping[str, str] | None = None) -> dict[str, str]:
    """解析 application/x-www-form-urlencoded 回调，请求体为空时退回到查询参数"""
    fields: dict[str, str] = {}
    if body:
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CallbackParseError(f"回调请求体编码错误: {e}") from e
        try:
            pairs = parse_qsl(text, keep_blank_values=True, strict_parsing=True)
        except ValueError as e:
            raise CallbackParseError(f"回调请求体格式错误: {e}") from e
        for k, v in pairs:
            fields[k] = v
    elif query:
        for k, v in query.items():
            fields[str(k)] = str(v)
    if not fields:
        raise CallbackParseError("回调内容为空")
    return fields


class GatewayClient(ABC):
    """支付网关客户端"""

    name: str = ""
    currency: str = "CNY"

    @abstractmethod
    async def create_payment(self, order: PayableOrder) -> GatewayResult:
        """向网关发起支付，返回跳转地址/二维码链接"""

    @abstractmethod
    def parse_callback(
        self,
        body: bytes,
        query: Mapping[str, str] | None = None,
        content_type: str | None = None,
    ) -> dict[str, str]:
        """把回调原始内容解析为字段表"""

    @abstractmethod
    async def verify_callback(self, fields: Mapping[str, str], body: bytes) -> bool:
        """校验回调的真实性"""

    @abstractmethod
    def interpret_callback(self, fields: Mapping[str, str]) -> CallbackPayload:
        """把回调字段映射为订单号与成功/失败/忽略"""
