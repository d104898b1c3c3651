"""支付订单状态机

pending --(成功通知, CAS)--> processing --(入账 + CAS)--> success
pending --(失败通知, CAS)--> failed
processing --(入账失败)--> pending

processing 是入账互斥标记：只有把订单从 pending 翻到 processing 的那一次通知会去入账，
并且标记在入账前单独提交。入账与 processing -> success 在同一事务内提交，
因此一个订单的额度至多增加一次。
"""
from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..models.payment import PaymentOrder, PaymentStatus
from .amount_policy import AmountPolicy, AmountQuote
from .credit_ledger import CreditLedger, DbCreditLedger
from .gateways import CallbackResult, GatewayClient, GatewayResult, allows_unverified_callbacks, build_gateway_client
from .gateways.base import CallbackPayload, quantize_amount
from .order_store import OrderStore
from .payment_errors import (
    AmountMismatch,
    CallbackParseError,
    CreditFailed,
    DuplicateOrderId,
    GatewayCallFailed,
    InvalidAmount,
    OrderAccessDenied,
    OrderNotFound,
    PaymentError,
    SignatureInvalid,
)

logger = logging.getLogger(__name__)

ORDER_ID_ATTEMPTS = 3


class ApplyOutcome(str, enum.Enum):
    CREDITED = "credited"
    FAILED = "failed"
    ALREADY_PROCESSED = "already_processed"
    ALREADY_PROCESSING = "already_processing"
    IGNORED = "ignored"


@dataclass(frozen=True)
class CreatedOrder:
    order: PaymentOrder
    gateway_result: GatewayResult


@dataclass(frozen=True)
class CallbackResolution:
    outcome: ApplyOutcome
    order_id: str
    verified: bool


def generate_order_id(user_id: int) -> str:
    """生成订单号：PAY + 用户ID + 时间戳 + 随机后缀"""
    now = datetime.now(timezone.utc)
    return f"PAY{int(user_id)}{now.strftime('%Y%m%d%H%M%S')}{uuid.uuid4().hex[:8].upper()}"


class OrderLifecycle:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        ledger: CreditLedger | None = None,
        client_factory: Callable[[str], GatewayClient] | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.ledger: CreditLedger = ledger or DbCreditLedger()
        self.client_factory = client_factory or (lambda method: build_gateway_client(method, settings))
        self.amount_policy = AmountPolicy(settings.quota_per_unit)

    async def quote(self, amount: float | str | Decimal, discount_code: str | None = None) -> AmountQuote:
        """预览应付金额与可得额度，不写库"""
        async with self.session_factory() as db:
            return await self.amount_policy.quote(db, amount, discount_code)

    async def create_order(
        self,
        *,
        user_id: int,
        amount: float | str | Decimal,
        method: str,
        discount_code: str | None = None,
    ) -> CreatedOrder:
        async with self.session_factory() as db:
            quote = await self.amount_policy.quote(db, amount, discount_code)
        pay_amount = quantize_amount(quote.effective_amount)
        if pay_amount <= 0 or quote.quota_count <= 0:
            raise InvalidAmount("充值金额过小")

        # 网关配置在写库之前校验
        client = self.client_factory(method)

        code = str(discount_code or "").strip() or None
        async with self.session_factory() as db:
            store = OrderStore(db)
            for attempt in range(1, ORDER_ID_ATTEMPTS + 1):
                try:
                    order = await store.create(
                        order_id=generate_order_id(user_id),
                        user_id=user_id,
                        quota_amount=quote.quota_count,
                        pay_amount=pay_amount,
                        gateway=client.name,
                        discount_code=code,
                    )
                    await db.commit()
                    break
                except DuplicateOrderId:
                    logger.warning("order id collision for user %s, retrying (%s)", user_id, attempt)
            else:
                raise DuplicateOrderId(f"订单号连续 {ORDER_ID_ATTEMPTS} 次冲突，请重试")

        logger.info(
            "payment order created: order_id=%s user_id=%s gateway=%s pay_amount=%s quota=%s code=%s",
            order.order_id,
            user_id,
            client.name,
            pay_amount,
            quote.quota_count,
            code,
        )

        try:
            result = await client.create_payment(order)
        except GatewayCallFailed as e:
            if e.order_id is None:
                e.order_id = order.order_id
            logger.warning("gateway %s call failed for order %s: %s", client.name, order.order_id, e.message)
            raise
        return CreatedOrder(order=order, gateway_result=result)

    async def get_order_for_user(self, order_id: str, user_id: int) -> PaymentOrder:
        async with self.session_factory() as db:
            order = await OrderStore(db).get_by_order_id(order_id)
        if order is None:
            raise OrderNotFound(f"订单不存在: {order_id}")
        if int(order.user_id) != int(user_id):
            raise OrderAccessDenied("无权查看该订单")
        return order

    async def resolve_callback(
        self,
        gateway: str,
        body: bytes,
        query: Mapping[str, str] | None = None,
        content_type: str | None = None,
        source_ip: str | None = None,
    ) -> CallbackResolution:
        """解析 -> 验签 -> 解读 -> 应用；每次投递都会留下一条回调记录"""
        client = self.client_factory(gateway)
        raw_payload = body.decode("utf-8", errors="replace") if body else urlencode(dict(query or {}))

        try:
            fields = client.parse_callback(body, query, content_type)
            payload = client.interpret_callback(fields)
        except CallbackParseError as e:
            logger.warning("%s callback parse error: %s", client.name, e.message)
            await self._record_event(client.name, None, False, "parse_error", e.message, raw_payload, source_ip)
            raise

        try:
            verified = await client.verify_callback(fields, body)
        except PaymentError as e:
            await self._record_event(
                client.name, payload.order_id, False, e.error_code.lower(), e.message, raw_payload, source_ip
            )
            raise
        if not verified:
            if not allows_unverified_callbacks(client):
                logger.warning("%s callback signature invalid, order %s not touched", client.name, payload.order_id)
                await self._record_event(
                    client.name, payload.order_id, False, "rejected", "signature invalid", raw_payload, source_ip
                )
                raise SignatureInvalid(f"{client.name} 回调签名校验失败")
            logger.warning(
                "%s callback signature invalid, processing order %s anyway (unverified callbacks allowed)",
                client.name,
                payload.order_id,
            )

        try:
            self._check_currency(client, payload)
            outcome = await self.apply_result(payload.order_id, payload.result, paid_amount=payload.paid_amount)
        except PaymentError as e:
            await self._record_event(
                client.name, payload.order_id, verified, e.error_code.lower(), e.message, raw_payload, source_ip
            )
            raise

        logger.info(
            "%s callback applied: order_id=%s external_status=%s outcome=%s",
            client.name,
            payload.order_id,
            payload.external_status,
            outcome.value,
        )
        await self._record_event(client.name, payload.order_id, verified, outcome.value, None, raw_payload, source_ip)
        return CallbackResolution(outcome=outcome, order_id=payload.order_id, verified=verified)

    async def apply_result(
        self,
        order_id: str,
        result: CallbackResult | str,
        *,
        paid_amount: Decimal | str | None = None,
    ) -> ApplyOutcome:
        """应用一条已验签的回调结果；paid_amount 为网关报告的实付金额，与订单不符时不入账"""
        result = CallbackResult(result)
        async with self.session_factory() as db:
            store = OrderStore(db)
            order = await store.get_by_order_id(order_id, for_update=True)
            if order is None:
                raise OrderNotFound(f"订单不存在: {order_id}")

            status = PaymentStatus(order.status)
            if status.is_terminal:
                return ApplyOutcome.ALREADY_PROCESSED
            if status == PaymentStatus.PROCESSING:
                return ApplyOutcome.ALREADY_PROCESSING
            if result == CallbackResult.IGNORED:
                return ApplyOutcome.IGNORED

            if result == CallbackResult.SUCCESS and paid_amount is not None:
                expected = quantize_amount(order.pay_amount)
                if quantize_amount(paid_amount) != expected:
                    await db.rollback()
                    logger.error(
                        "order %s paid amount mismatch: expected=%s paid=%s, not credited", order_id, expected, paid_amount
                    )
                    raise AmountMismatch(f"订单 {order_id} 实付金额 {paid_amount} 与应付金额 {expected} 不符")

            user_id = int(order.user_id)
            quota = int(order.quota_amount)

            if result == CallbackResult.FAILURE:
                if not await store.transition(order_id, [PaymentStatus.PENDING], PaymentStatus.FAILED):
                    await db.rollback()
                    return await self._outcome_after_lost_race(order_id)
                await store.append_topup_log(
                    user_id=user_id,
                    order_id=order_id,
                    kind="payment_failed",
                    quota=0,
                    content=f"订单 {order_id} 支付失败",
                )
                await db.commit()
                logger.info("order %s marked failed", order_id)
                return ApplyOutcome.FAILED

            if not await store.transition(order_id, [PaymentStatus.PENDING], PaymentStatus.PROCESSING):
                await db.rollback()
                return await self._outcome_after_lost_race(order_id)
            await db.commit()

        if not await self._credit(order_id, user_id, quota):
            return await self._outcome_after_lost_race(order_id)
        return ApplyOutcome.CREDITED

    @staticmethod
    def _check_currency(client: GatewayClient, payload: CallbackPayload) -> None:
        if payload.result != CallbackResult.SUCCESS or not payload.currency:
            return
        if payload.currency.strip().upper() != client.currency.strip().upper():
            logger.error(
                "%s callback currency mismatch for order %s: expected=%s got=%s",
                client.name,
                payload.order_id,
                client.currency,
                payload.currency,
            )
            raise AmountMismatch(f"订单 {payload.order_id} 币种 {payload.currency} 与 {client.currency} 不符")

    async def resume_stuck_order(self, order_id: str, cutoff: datetime) -> bool:
        """对账用：给标记时间早于 cutoff 的 processing 订单补做入账"""
        async with self.session_factory() as db:
            order = await OrderStore(db).get_by_order_id(order_id)
        if order is None or order.status != PaymentStatus.PROCESSING.value:
            return False
        return await self._credit(order_id, int(order.user_id), int(order.quota_amount), older_than=cutoff)

    async def revert_stuck_order(self, order_id: str, cutoff: datetime) -> bool:
        """对账用：把卡住的 processing 订单退回 pending，等待下一次通知"""
        async with self.session_factory() as db:
            moved = await OrderStore(db).transition(
                order_id, [PaymentStatus.PROCESSING], PaymentStatus.PENDING, older_than=cutoff
            )
            await db.commit()
        if moved:
            logger.warning("stuck order %s reverted to pending", order_id)
        return moved

    async def _credit(self, order_id: str, user_id: int, quota: int, *, older_than: datetime | None = None) -> bool:
        async with self.session_factory() as db:
            store = OrderStore(db)
            try:
                moved = await store.transition(
                    order_id, [PaymentStatus.PROCESSING], PaymentStatus.SUCCESS, older_than=older_than
                )
                if not moved:
                    await db.rollback()
                    return False
                await self.ledger.increase(db, user_id, quota)
                await store.append_topup_log(
                    user_id=user_id,
                    order_id=order_id,
                    kind="topup",
                    quota=quota,
                    content=f"在线充值成功，充值额度: {quota}，订单号: {order_id}",
                )
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.exception("credit failed for order %s, reverting to pending", order_id)
                await self._release_latch(order_id)
                raise CreditFailed(f"订单 {order_id} 入账失败: {e}") from e

        logger.info("order %s credited %s quota to user %s", order_id, quota, user_id)
        return True

    async def _release_latch(self, order_id: str) -> None:
        async with self.session_factory() as db:
            moved = await OrderStore(db).transition(order_id, [PaymentStatus.PROCESSING], PaymentStatus.PENDING)
            await db.commit()
        if not moved:
            logger.error("order %s was not in processing when releasing credit latch", order_id)

    async def _outcome_after_lost_race(self, order_id: str) -> ApplyOutcome:
        async with self.session_factory() as db:
            order = await OrderStore(db).get_by_order_id(order_id)
        if order is not None and order.status == PaymentStatus.PROCESSING.value:
            return ApplyOutcome.ALREADY_PROCESSING
        return ApplyOutcome.ALREADY_PROCESSED

    async def _record_event(
        self,
        provider: str,
        order_id: str | None,
        verified: bool,
        outcome: str | None,
        error_message: str | None,
        raw_payload: str | None,
        source_ip: str | None,
    ) -> None:
        async with self.session_factory() as db:
            await OrderStore(db).record_callback_event(
                provider=provider,
                order_id=order_id,
                verified=verified,
                outcome=outcome,
                error_message=error_message,
                raw_payload=raw_payload,
                source_ip=source_ip,
            )
