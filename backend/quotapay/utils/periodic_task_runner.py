"""持锁周期任务：多实例部署时同一时刻只有一个实例在跑对账"""
import asyncio
import logging
import os
import uuid
from collections.abc import Awaitable, Callable
from typing import Protocol


class LockClient(Protocol):
    async def acquire_lock(self, key: str, value: str, expire: int) -> bool: ...

    async def refresh_lock(self, key: str, value: str, expire: int) -> bool: ...

    async def release_lock(self, key: str, value: str) -> bool: ...


class PeriodicLockedRunner:
    def __init__(self, *, stop_event: asyncio.Event, lock_client: LockClient, logger: logging.Logger):
        self._stop_event = stop_event
        self._lock_client = lock_client
        self._logger = logger

    async def run(
        self,
        *,
        lock_key: str,
        lock_ttl_seconds: int,
        interval_seconds: float,
        job: Callable[[], Awaitable[object]],
        lock_value: str | None = None,
        refresh_interval_seconds: float | None = None,
        job_cancel_grace_seconds: float = 2.0,
    ) -> None:
        """循环直到 stop_event 被设置；每轮抢锁成功才执行 job，锁丢失时取消 job"""
        owner = lock_value or f"{os.getpid()}-{uuid.uuid4().hex}"
        ttl = int(lock_ttl_seconds)
        refresh_every = (
            float(refresh_interval_seconds) if refresh_interval_seconds is not None else max(5.0, ttl / 3.0)
        )

        while not self._stop_event.is_set():
            try:
                if await self._lock_client.acquire_lock(lock_key, value=owner, expire=ttl):
                    try:
                        await self._run_locked(
                            lock_key, owner, ttl, refresh_every, job, float(job_cancel_grace_seconds)
                        )
                    finally:
                        _ = await self._lock_client.release_lock(lock_key, value=owner)
                else:
                    self._logger.debug("periodic job %s skipped, lock held elsewhere", lock_key)
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception("periodic job %s failed", lock_key)

            if await self._wait_stop(float(interval_seconds)):
                break

    async def _wait_stop(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_locked(
        self,
        lock_key: str,
        owner: str,
        ttl: int,
        refresh_every: float,
        job: Callable[[], Awaitable[object]],
        grace: float,
    ) -> None:
        lock_lost = asyncio.Event()
        job_task: asyncio.Task[object] = asyncio.create_task(self._call(job))
        refresh_task = asyncio.create_task(
            self._keep_lock(lock_key, owner, ttl, refresh_every, job_task, lock_lost)
        )
        try:
            _ = await job_task
        except asyncio.CancelledError:
            if not lock_lost.is_set():
                raise
            self._logger.warning("periodic job %s cancelled after losing its lock", lock_key)
        finally:
            refresh_task.cancel()
            try:
                await refresh_task
            except asyncio.CancelledError:
                pass
            if not job_task.done():
                job_task.cancel()
                try:
                    await asyncio.wait_for(job_task, timeout=grace)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    pass

    @staticmethod
    async def _call(job: Callable[[], Awaitable[object]]) -> object:
        return await job()

    async def _keep_lock(
        self,
        lock_key: str,
        owner: str,
        ttl: int,
        refresh_every: float,
        job_task: "asyncio.Task[object]",
        lock_lost: asyncio.Event,
    ) -> None:
        while not self._stop_event.is_set() and not job_task.done():
            if await self._wait_stop(refresh_every):
                return
            try:
                still_owned = await self._lock_client.refresh_lock(lock_key, value=owner, expire=ttl)
            except Exception:
                self._logger.exception("failed to refresh lock %s", lock_key)
                still_owned = False
            if not still_owned:
                lock_lost.set()
                if not job_task.done():
                    job_task.cancel()
                return
