"""支付订单持久化"""
from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from urllib.parse import parse_qsl

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.payment import (
    TERMINAL_STATUSES,
    DiscountCode,
    PaymentCallbackEvent,
    PaymentOrder,
    PaymentStatus,
    TopupLog,
    utcnow,
)
from .payment_errors import DuplicateOrderId

logger = logging.getLogger(__name__)

SENSITIVE_PAYLOAD_KEYS = frozenset({"sign", "signature", "sign_data", "key", "payer_email", "receiver_email"})
_XML_LEAF_RE = re.compile(r"<(?P<tag>[A-Za-z_][\w.-]*)>(?:<!\[CDATA\[(?P<cdata>.*?)\]\]>|(?P<text>[^<]*))</(?P=tag)>", re.S)


def _mask_value(v: object) -> object:
    if v is None or isinstance(v, (int, float, bool)):
        return v
    s = str(v)
    if len(s) <= 8:
        return "*" * len(s)
    return f"{s[:3]}***{s[-3:]}"


def _mask_xml_element(m: re.Match[str]) -> str:
    tag = m.group("tag")
    if tag.lower() not in SENSITIVE_PAYLOAD_KEYS:
        return m.group(0)
    if m.group("cdata") is not None:
        value = f"<![CDATA[{_mask_value(m.group('cdata'))}]]>"
    else:
        value = str(_mask_value(m.group("text")))
    return f"<{tag}>{value}</{tag}>"


def mask_payload(raw: str | None) -> str | None:
    """回调原文脱敏：签名等字段只保留首尾"""
    if raw is None:
        return None
    s = str(raw)
    if not s.strip():
        return s

    if s.lstrip().startswith("<"):
        return _XML_LEAF_RE.sub(_mask_xml_element, s)

    try:
        pairs = parse_qsl(s, keep_blank_values=True, strict_parsing=True)
    except ValueError:
        return s
    out: dict[str, object] = {}
    for k, v in pairs:
        out[k] = _mask_value(v) if k.strip().lower() in SENSITIVE_PAYLOAD_KEYS else v
    return json.dumps(out, ensure_ascii=False, indent=2)


class OrderStore:
    """订单仓储，事务边界由调用方控制"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        *,
        order_id: str,
        user_id: int,
        quota_amount: int,
        pay_amount: Decimal,
        gateway: str,
        discount_code: str | None = None,
    ) -> PaymentOrder:
        now = utcnow()
        order = PaymentOrder(
            order_id=order_id,
            user_id=int(user_id),
            quota_amount=int(quota_amount),
            pay_amount=pay_amount,
            gateway=gateway,
            discount_code=discount_code or None,
            status=PaymentStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        self.db.add(order)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            raise DuplicateOrderId(f"订单号已存在: {order_id}") from e
        return order

    async def get_by_order_id(self, order_id: str, *, for_update: bool = False) -> PaymentOrder | None:
        query = select(PaymentOrder).where(PaymentOrder.order_id == order_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def transition(
        self,
        order_id: str,
        from_statuses: Iterable[PaymentStatus | str],
        to_status: PaymentStatus | str,
        *,
        older_than: datetime | None = None,
    ) -> bool:
        """比较并交换订单状态，返回是否由本次调用完成了迁移"""
        sources = {PaymentStatus(s).value for s in from_statuses}
        if not sources:
            return False
        if sources & TERMINAL_STATUSES:
            raise ValueError(f"terminal status cannot be left: {sorted(sources & TERMINAL_STATUSES)}")

        stmt = (
            update(PaymentOrder)
            .where(PaymentOrder.order_id == order_id, PaymentOrder.status.in_(sorted(sources)))
            .values(status=PaymentStatus(to_status).value, updated_at=utcnow())
        )
        if older_than is not None:
            stmt = stmt.where(PaymentOrder.updated_at < older_than)
        result = await self.db.execute(stmt)
        return getattr(result, "rowcount", 0) == 1

    async def _paginate(self, base_query, count_query, page: int, page_size: int) -> tuple[list[PaymentOrder], int]:
        page = max(1, int(page))
        page_size = max(1, min(100, int(page_size)))
        total = (await self.db.execute(count_query)).scalar() or 0
        query = (
            base_query.order_by(PaymentOrder.created_at.desc(), PaymentOrder.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        rows = (await self.db.execute(query)).scalars().all()
        return list(rows), int(total)

    async def list_for_user(self, user_id: int, page: int = 1, page_size: int = 20) -> tuple[list[PaymentOrder], int]:
        return await self._paginate(
            select(PaymentOrder).where(PaymentOrder.user_id == user_id),
            select(func.count(PaymentOrder.id)).where(PaymentOrder.user_id == user_id),
            page,
            page_size,
        )

    async def list_all(self, page: int = 1, page_size: int = 20) -> tuple[list[PaymentOrder], int]:
        return await self._paginate(
            select(PaymentOrder),
            select(func.count(PaymentOrder.id)),
            page,
            page_size,
        )

    async def list_stuck_processing(self, cutoff: datetime, limit: int = 100) -> list[PaymentOrder]:
        result = await self.db.execute(
            select(PaymentOrder)
            .where(
                PaymentOrder.status == PaymentStatus.PROCESSING.value,
                PaymentOrder.updated_at < cutoff,
            )
            .order_by(PaymentOrder.updated_at.asc())
            .limit(max(1, int(limit)))
        )
        return list(result.scalars().all())

    async def load_discount_ratio(self, code: str) -> float | None:
        """读取启用中的折扣码比例，不存在或停用返回 None"""
        c = str(code or "").strip()
        if not c:
            return None
        result = await self.db.execute(
            select(DiscountCode.discount_ratio).where(DiscountCode.code == c, DiscountCode.enabled == True)  # noqa: E712
        )
        ratio = result.scalar_one_or_none()
        if ratio is None:
            return None
        r = float(ratio)
        if r < 0 or r >= 1:
            logger.warning("discount code %s has out-of-range ratio %s, ignored", c, r)
            return None
        return r

    async def append_topup_log(self, *, user_id: int, order_id: str, kind: str, quota: int, content: str) -> None:
        self.db.add(
            TopupLog(
                user_id=int(user_id),
                order_id=order_id,
                kind=kind,
                quota=int(quota),
                content=content[:500],
            )
        )
        await self.db.flush()

    async def record_callback_event(
        self,
        *,
        provider: str,
        order_id: str | None,
        verified: bool,
        outcome: str | None,
        error_message: str | None,
        raw_payload: str | None,
        source_ip: str | None = None,
    ) -> None:
        """记录一次回调投递；写入失败只记日志，不影响回调结果"""
        payload_hash: str | None = None
        raw = str(raw_payload or "")
        if raw.strip():
            payload_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()

        evt = PaymentCallbackEvent(
            provider=str(provider)[:20],
            order_id=str(order_id)[:100] if order_id else None,
            verified=bool(verified),
            outcome=str(outcome)[:40] if outcome else None,
            error_message=str(error_message)[:200] if error_message else None,
            raw_payload=mask_payload(raw_payload),
            raw_payload_hash=payload_hash,
            source_ip=str(source_ip)[:45] if source_ip else None,
        )
        try:
            self.db.add(evt)
            await self.db.commit()
        except SQLAlchemyError:
            logger.exception("failed to record %s callback event for order %s", provider, order_id)
            await self.db.rollback()
