"""支付订单模型"""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from ..database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, enum.Enum):
    """支付状态"""
    PENDING = "pending"  # 待支付
    PROCESSING = "processing"  # 入账中（互斥标记）
    SUCCESS = "success"  # 已入账
    FAILED = "failed"  # 支付失败

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.SUCCESS, PaymentStatus.FAILED)


TERMINAL_STATUSES = frozenset({PaymentStatus.SUCCESS.value, PaymentStatus.FAILED.value})


class PaymentMethod(str, enum.Enum):
    """支付方式"""
    ALIPAY = "alipay"
    WECHAT = "wechat"
    PAYPAL = "paypal"


class PaymentOrder(Base):
    """支付订单表"""
    __tablename__: str = "payment_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    quota_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # 成功后入账的额度
    pay_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)  # 折后应付金额
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    discount_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def __repr__(self) -> str:
        return f"<PaymentOrder {self.order_id}: {self.status}>"


class DiscountCode(Base):
    """充值折扣码（由管理端维护，核心只读）"""
    __tablename__: str = "discount_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    discount_ratio: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)  # 0 <= ratio < 1
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class TopupLog(Base):
    """充值审计日志"""
    __tablename__: str = "topup_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # topup/payment_failed
    quota: Mapped[int] = mapped_column(BigInteger, default=0)
    content: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PaymentCallbackEvent(Base):
    """支付回调记录"""
    __tablename__: str = "payment_callback_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    provider: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    order_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    outcome: Mapped[str | None] = mapped_column(String(40), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(200), nullable=True)

    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_payload_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
