import asyncio

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from conftest import alipay_notify_body, create_user, read_user_quota
from quotapay.models.payment import PaymentOrder, PaymentStatus, TopupLog
from quotapay.services.credit_ledger import DbCreditLedger
from quotapay.services.gateways import CallbackResult
from quotapay.services.order_lifecycle import ApplyOutcome
from quotapay.utils.security import create_access_token


class _CountingLedger(DbCreditLedger):
    def __init__(self) -> None:
        self.calls = 0

    async def increase(self, db, user_id: int, amount: int) -> None:
        self.calls += 1
        # 让出事件循环，放大并发窗口
        await asyncio.sleep(0.01)
        await super().increase(db, user_id, amount)


@pytest.mark.asyncio
async def test_concurrent_success_notifications_credit_exactly_once(session_factory, lifecycle_builder) -> None:
    user = await create_user(session_factory)
    ledger = _CountingLedger()
    lifecycle = lifecycle_builder(ledger=ledger)
    order = (await lifecycle.create_order(user_id=user.id, amount=2, method="alipay")).order

    outcomes = await asyncio.gather(
        *[lifecycle.apply_result(order.order_id, CallbackResult.SUCCESS) for _ in range(8)]
    )

    assert outcomes.count(ApplyOutcome.CREDITED) == 1
    assert set(outcomes) <= {
        ApplyOutcome.CREDITED,
        ApplyOutcome.ALREADY_PROCESSED,
        ApplyOutcome.ALREADY_PROCESSING,
    }
    assert ledger.calls == 1
    assert await read_user_quota(session_factory, user.id) == 1_000_000


@pytest.mark.asyncio
async def test_concurrent_success_and_failure_pick_one_terminal(session_factory, lifecycle) -> None:
    user = await create_user(session_factory)
    order = (await lifecycle.create_order(user_id=user.id, amount=2, method="alipay")).order

    outcomes = await asyncio.gather(
        lifecycle.apply_result(order.order_id, CallbackResult.SUCCESS),
        lifecycle.apply_result(order.order_id, CallbackResult.FAILURE),
        lifecycle.apply_result(order.order_id, CallbackResult.SUCCESS),
        lifecycle.apply_result(order.order_id, CallbackResult.FAILURE),
    )

    async with session_factory() as db:
        status = (
            await db.execute(select(PaymentOrder.status).where(PaymentOrder.order_id == order.order_id))
        ).scalar_one()
        topups = (await db.execute(select(func.count(TopupLog.id)).where(TopupLog.kind == "topup"))).scalar()

    quota = await read_user_quota(session_factory, user.id)
    if status == PaymentStatus.SUCCESS.value:
        assert outcomes.count(ApplyOutcome.CREDITED) == 1
        assert ApplyOutcome.FAILED not in outcomes
        assert quota == 1_000_000
        assert topups == 1
    else:
        assert status == PaymentStatus.FAILED.value
        assert outcomes.count(ApplyOutcome.FAILED) == 1
        assert ApplyOutcome.CREDITED not in outcomes
        assert quota == 0
        assert topups == 0


@pytest.mark.asyncio
async def test_alipay_callback_route_concurrent_idempotent(client: AsyncClient, session_factory, rsa_keys) -> None:
    user = await create_user(session_factory, "u_alipay_notify_concurrent")
    token = create_access_token({"sub": str(user.id)})

    create_res = await client.post(
        "/api/payment/orders",
        json={"amount": 10.0, "payment_method": "alipay"},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert create_res.status_code == 200
    order_id = str(create_res.json()["data"]["order_id"])

    body = alipay_notify_body(rsa_keys, order_id, total="10.00")

    async def _post_notify():
        return await client.post(
            "/api/payment/callback/alipay",
            content=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    responses = await asyncio.gather(*[_post_notify() for _ in range(4)])

    assert all(r.status_code == 200 and r.json()["success"] is True for r in responses)
    messages = [r.json()["message"] for r in responses]
    assert messages.count("credited") == 1
    assert await read_user_quota(session_factory, user.id) == 5_000_000
