"""充值金额与额度计算"""
from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation

from sqlalchemy.ext.asyncio import AsyncSession

from .order_store import OrderStore
from .payment_errors import InvalidAmount


@dataclass(frozen=True)
class AmountQuote:
    effective_amount: Decimal  # 折后应付金额（未舍入）
    quota_count: int  # 成功后入账的额度
    discount_ratio: float | None = None


def _to_decimal(value: float | int | str | Decimal) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmount(f"金额格式错误: {value}") from e


class AmountPolicy:
    """金额策略

    无折扣码：应付 = A，额度 = floor(A * unit_rate)；
    有效折扣码（比例 d，0 <= d < 1）：应付 = A * (1 - d)，额度 = floor(应付 * unit_rate)。
    """

    def __init__(self, unit_rate: float):
        rate = _to_decimal(unit_rate)
        if not rate.is_finite() or rate <= 0:
            raise ValueError("unit_rate must be positive")
        self.unit_rate = rate

    @staticmethod
    def valid_ratio(ratio: float | None) -> float | None:
        if ratio is None:
            return None
        try:
            r = float(ratio)
        except (TypeError, ValueError):
            return None
        if math.isnan(r) or r < 0 or r >= 1:
            return None
        return r

    def compute(self, amount: float | int | str | Decimal, discount_ratio: float | None = None) -> AmountQuote:
        a = _to_decimal(amount)
        if not a.is_finite() or a <= 0:
            raise InvalidAmount("充值金额必须大于 0")

        ratio = self.valid_ratio(discount_ratio)
        effective = a if ratio is None else a * (Decimal(1) - _to_decimal(ratio))
        quota = (effective * self.unit_rate).to_integral_value(rounding=ROUND_FLOOR)
        return AmountQuote(effective_amount=effective, quota_count=int(quota), discount_ratio=ratio)

    async def quote(
        self,
        db: AsyncSession,
        amount: float | int | str | Decimal,
        discount_code: str | None = None,
    ) -> AmountQuote:
        """读取折扣码后计算；金额非法时不会查库"""
        a = _to_decimal(amount)
        if not a.is_finite() or a <= 0:
            raise InvalidAmount("充值金额必须大于 0")

        ratio: float | None = None
        code = str(discount_code or "").strip()
        if code:
            ratio = await OrderStore(db).load_discount_ratio(code)
        return self.compute(a, ratio)
