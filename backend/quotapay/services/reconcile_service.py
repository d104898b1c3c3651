"""processing 卡单对账

processing 只会由成功通知设置，超过超时时间仍未落到终态的订单说明入账过程中断了。
resume（默认）直接补做入账并置 success；revert 退回 pending，等待网关重发通知。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from .order_lifecycle import OrderLifecycle
from .order_store import OrderStore
from .payment_errors import CreditFailed

logger = logging.getLogger(__name__)

RECONCILE_LOCK_KEY = "payment:reconcile:lock"


@dataclass
class SweepReport:
    scanned: int = 0
    resumed: list[str] = field(default_factory=list)
    reverted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class ReconcileService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lifecycle: OrderLifecycle,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.lifecycle = lifecycle
        self.timeout = timedelta(seconds=int(settings.reconcile_processing_timeout_seconds))
        self.action = settings.reconcile_stuck_action
        self.batch_size = int(settings.reconcile_batch_size)

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        cutoff = (now or datetime.now(timezone.utc)) - self.timeout
        async with self.session_factory() as db:
            stuck = await OrderStore(db).list_stuck_processing(cutoff, limit=self.batch_size)
            order_ids = [o.order_id for o in stuck]

        report = SweepReport(scanned=len(order_ids))
        for order_id in order_ids:
            if self.action == "revert":
                if await self.lifecycle.revert_stuck_order(order_id, cutoff):
                    report.reverted.append(order_id)
                continue
            try:
                if await self.lifecycle.resume_stuck_order(order_id, cutoff):
                    report.resumed.append(order_id)
            except CreditFailed as e:
                logger.error("reconcile: failed to resume order %s: %s", order_id, e.message)
                report.failed.append(order_id)

        if report.scanned:
            logger.warning(
                "reconcile sweep: scanned=%s resumed=%s reverted=%s failed=%s",
                report.scanned,
                len(report.resumed),
                len(report.reverted),
                len(report.failed),
            )
        return report
