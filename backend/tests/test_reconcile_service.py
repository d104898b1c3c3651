from datetime import timedelta

import pytest
from sqlalchemy import select, update

from conftest import create_user, read_user_quota
from quotapay.models.payment import PaymentOrder, PaymentStatus, TopupLog, utcnow
from quotapay.services.credit_ledger import CreditLedgerError
from quotapay.services.gateways import CallbackResult
from quotapay.services.order_lifecycle import ApplyOutcome
from quotapay.services.reconcile_service import ReconcileService


async def _latch(session_factory, order_id: str, age: timedelta) -> None:
    """模拟入账中途崩溃：订单停在 processing"""
    async with session_factory() as db:
        await db.execute(
            update(PaymentOrder)
            .where(PaymentOrder.order_id == order_id)
            .values(status=PaymentStatus.PROCESSING.value, updated_at=utcnow() - age)
        )
        await db.commit()


async def _status(session_factory, order_id: str) -> str:
    async with session_factory() as db:
        return (
            await db.execute(select(PaymentOrder.status).where(PaymentOrder.order_id == order_id))
        ).scalar_one()


class _BrokenLedger:
    async def increase(self, db, user_id: int, amount: int) -> None:
        raise CreditLedgerError("ledger unavailable")


@pytest.mark.asyncio
async def test_sweep_resumes_stuck_order_exactly_once(session_factory, lifecycle, settings) -> None:
    user = await create_user(session_factory)
    order = (await lifecycle.create_order(user_id=user.id, amount=2, method="alipay")).order
    await _latch(session_factory, order.order_id, timedelta(minutes=10))
    service = ReconcileService(session_factory, lifecycle, settings)

    first = await service.sweep()
    second = await service.sweep()

    assert first.scanned == 1
    assert first.resumed == [order.order_id]
    assert second.scanned == 0
    assert await _status(session_factory, order.order_id) == PaymentStatus.SUCCESS.value
    assert await read_user_quota(session_factory, user.id) == 1_000_000
    async with session_factory() as db:
        kinds = (await db.execute(select(TopupLog.kind))).scalars().all()
    assert kinds == ["topup"]

    # 网关随后重发通知也不会重复入账
    assert await lifecycle.apply_result(order.order_id, CallbackResult.SUCCESS) == ApplyOutcome.ALREADY_PROCESSED
    assert await read_user_quota(session_factory, user.id) == 1_000_000


@pytest.mark.asyncio
async def test_sweep_leaves_recent_processing_orders_alone(session_factory, lifecycle, settings) -> None:
    user = await create_user(session_factory)
    order = (await lifecycle.create_order(user_id=user.id, amount=2, method="alipay")).order
    await _latch(session_factory, order.order_id, timedelta(seconds=5))

    report = await ReconcileService(session_factory, lifecycle, settings).sweep()

    assert report.scanned == 0
    assert await _status(session_factory, order.order_id) == PaymentStatus.PROCESSING.value
    assert await read_user_quota(session_factory, user.id) == 0


@pytest.mark.asyncio
async def test_sweep_ignores_pending_and_terminal_orders(session_factory, lifecycle, settings) -> None:
    user = await create_user(session_factory)
    pending = (await lifecycle.create_order(user_id=user.id, amount=1, method="alipay")).order
    failed = (await lifecycle.create_order(user_id=user.id, amount=1, method="alipay")).order
    await lifecycle.apply_result(failed.order_id, CallbackResult.FAILURE)

    report = await ReconcileService(session_factory, lifecycle, settings).sweep(now=utcnow() + timedelta(days=1))

    assert report.scanned == 0
    assert await _status(session_factory, pending.order_id) == PaymentStatus.PENDING.value
    assert await _status(session_factory, failed.order_id) == PaymentStatus.FAILED.value


@pytest.mark.asyncio
async def test_sweep_revert_action_returns_order_to_pending(session_factory, lifecycle, settings) -> None:
    user = await create_user(session_factory)
    order = (await lifecycle.create_order(user_id=user.id, amount=2, method="alipay")).order
    await _latch(session_factory, order.order_id, timedelta(minutes=10))
    revert_settings = settings.model_copy(update={"reconcile_stuck_action": "revert"})

    report = await ReconcileService(session_factory, lifecycle, revert_settings).sweep()

    assert report.reverted == [order.order_id]
    assert report.resumed == []
    assert await _status(session_factory, order.order_id) == PaymentStatus.PENDING.value
    assert await read_user_quota(session_factory, user.id) == 0

    # 网关重发的成功通知正常入账
    assert await lifecycle.apply_result(order.order_id, CallbackResult.SUCCESS) == ApplyOutcome.CREDITED
    assert await read_user_quota(session_factory, user.id) == 1_000_000


@pytest.mark.asyncio
async def test_sweep_reports_failed_resume_and_releases_latch(session_factory, lifecycle_builder, settings) -> None:
    user = await create_user(session_factory)
    lifecycle = lifecycle_builder(ledger=_BrokenLedger())
    order = (await lifecycle.create_order(user_id=user.id, amount=2, method="alipay")).order
    await _latch(session_factory, order.order_id, timedelta(minutes=10))

    report = await ReconcileService(session_factory, lifecycle, settings).sweep()

    assert report.failed == [order.order_id]
    assert report.resumed == []
    assert await _status(session_factory, order.order_id) == PaymentStatus.PENDING.value
    assert await read_user_quota(session_factory, user.id) == 0


@pytest.mark.asyncio
async def test_sweep_respects_batch_size(session_factory, lifecycle, settings) -> None:
    user = await create_user(session_factory)
    order_ids = []
    for minutes in (30, 20, 10):
        order = (await lifecycle.create_order(user_id=user.id, amount=1, method="alipay")).order
        await _latch(session_factory, order.order_id, timedelta(minutes=minutes))
        order_ids.append(order.order_id)
    small = settings.model_copy(update={"reconcile_batch_size": 2})

    report = await ReconcileService(session_factory, lifecycle, small).sweep()

    # 最久未动的订单优先
    assert report.resumed == order_ids[:2]
    assert await _status(session_factory, order_ids[2]) == PaymentStatus.PROCESSING.value
