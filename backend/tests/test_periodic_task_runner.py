import asyncio
import logging
import os

import pytest

from quotapay.utils.periodic_task_runner import PeriodicLockedRunner

logger = logging.getLogger(__name__)


class _DummyLockClient:
    def __init__(self) -> None:
        self.acquire_calls: list[tuple[str, str, int]] = []
        self.refresh_calls: list[tuple[str, str, int]] = []
        self.release_calls: list[tuple[str, str]] = []

        self.acquire_result = True
        self.refresh_results: list[bool] = []

    async def acquire_lock(self, key: str, value: str, expire: int) -> bool:
        self.acquire_calls.append((key, value, int(expire)))
        return bool(self.acquire_result)

    async def refresh_lock(self, key: str, value: str, expire: int) -> bool:
        self.refresh_calls.append((key, value, int(expire)))
        if self.refresh_results:
            return bool(self.refresh_results.pop(0))
        return True

    async def release_lock(self, key: str, value: str) -> bool:
        self.release_calls.append((key, value))
        return True


class _StopOnReleaseLockClient(_DummyLockClient):
    def __init__(self, stop_event: asyncio.Event) -> None:
        super().__init__()
        self._stop_event = stop_event

    async def release_lock(self, key: str, value: str) -> bool:
        ok = await super().release_lock(key, value)
        self._stop_event.set()
        return ok


@pytest.mark.asyncio
async def test_runner_runs_job_and_releases_lock() -> None:
    stop_event = asyncio.Event()
    lock_client = _DummyLockClient()
    runner = PeriodicLockedRunner(stop_event=stop_event, lock_client=lock_client, logger=logger)

    ran: list[str] = []

    async def job() -> object:
        ran.append("ok")
        stop_event.set()
        return {"done": True}

    await runner.run(
        lock_key="payment:reconcile:lock",
        lock_ttl_seconds=30,
        interval_seconds=0.01,
        refresh_interval_seconds=0.01,
        job=job,
        lock_value="lv",
    )

    assert ran == ["ok"]
    assert lock_client.acquire_calls == [("payment:reconcile:lock", "lv", 30)]
    assert lock_client.release_calls == [("payment:reconcile:lock", "lv")]


@pytest.mark.asyncio
async def test_runner_default_lock_value_identifies_process() -> None:
    stop_event = asyncio.Event()
    lock_client = _DummyLockClient()
    runner = PeriodicLockedRunner(stop_event=stop_event, lock_client=lock_client, logger=logger)

    async def job() -> object:
        stop_event.set()
        return None

    await runner.run(lock_key="k", lock_ttl_seconds=30, interval_seconds=0.01, job=job)

    _, value, _ = lock_client.acquire_calls[0]
    assert value.startswith(f"{os.getpid()}-")
    assert lock_client.release_calls == [("k", value)]


@pytest.mark.asyncio
async def test_runner_skips_job_when_lock_held_elsewhere() -> None:
    stop_event = asyncio.Event()
    lock_client = _DummyLockClient()
    lock_client.acquire_result = False
    runner = PeriodicLockedRunner(stop_event=stop_event, lock_client=lock_client, logger=logger)

    ran: list[str] = []

    async def job() -> object:
        ran.append("ran")
        return None

    async def stopper() -> None:
        await asyncio.sleep(0.05)
        stop_event.set()

    stopper_task = asyncio.create_task(stopper())
    await runner.run(lock_key="k", lock_ttl_seconds=1, interval_seconds=0.01, job=job, lock_value="lv")
    await stopper_task

    assert ran == []
    assert len(lock_client.acquire_calls) >= 2
    assert lock_client.release_calls == []


@pytest.mark.asyncio
async def test_runner_refreshes_lock_while_job_runs() -> None:
    stop_event = asyncio.Event()
    lock_client = _StopOnReleaseLockClient(stop_event)
    runner = PeriodicLockedRunner(stop_event=stop_event, lock_client=lock_client, logger=logger)

    async def job() -> object:
        await asyncio.sleep(0.1)
        return {"done": True}

    await runner.run(
        lock_key="k",
        lock_ttl_seconds=7,
        interval_seconds=0.01,
        refresh_interval_seconds=0.01,
        job=job,
        lock_value="lv",
    )

    assert lock_client.refresh_calls
    assert all(call == ("k", "lv", 7) for call in lock_client.refresh_calls)
    assert lock_client.release_calls == [("k", "lv")]


@pytest.mark.asyncio
async def test_runner_cancels_job_when_lock_is_lost() -> None:
    stop_event = asyncio.Event()
    lock_client = _StopOnReleaseLockClient(stop_event)
    lock_client.refresh_results = [False]
    runner = PeriodicLockedRunner(stop_event=stop_event, lock_client=lock_client, logger=logger)

    cancelled = asyncio.Event()

    async def job() -> object:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return {"done": False}

    await runner.run(
        lock_key="k",
        lock_ttl_seconds=1,
        interval_seconds=0.01,
        refresh_interval_seconds=0.01,
        job=job,
        lock_value="lv",
    )

    assert cancelled.is_set()
    assert lock_client.refresh_calls
    assert lock_client.release_calls


@pytest.mark.asyncio
async def test_runner_treats_refresh_error_as_lost_lock() -> None:
    stop_event = asyncio.Event()

    class _LockClient(_StopOnReleaseLockClient):
        async def refresh_lock(self, key: str, value: str, expire: int) -> bool:
            raise RuntimeError("redis down")

    lock_client = _LockClient(stop_event)
    runner = PeriodicLockedRunner(stop_event=stop_event, lock_client=lock_client, logger=logger)

    cancelled = asyncio.Event()

    async def job() -> object:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return None

    await runner.run(
        lock_key="k",
        lock_ttl_seconds=1,
        interval_seconds=0.01,
        refresh_interval_seconds=0.01,
        job=job,
        lock_value="lv",
    )

    assert cancelled.is_set()
    assert lock_client.release_calls


@pytest.mark.asyncio
async def test_runner_logs_job_errors_and_keeps_looping(caplog: pytest.LogCaptureFixture) -> None:
    stop_event = asyncio.Event()
    lock_client = _DummyLockClient()
    runner = PeriodicLockedRunner(stop_event=stop_event, lock_client=lock_client, logger=logger)

    calls = {"n": 0}

    async def job() -> object:
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("sweep exploded")
        stop_event.set()
        return None

    with caplog.at_level(logging.ERROR, logger=__name__):
        await runner.run(lock_key="k", lock_ttl_seconds=30, interval_seconds=0.01, job=job, lock_value="lv")

    assert calls["n"] == 2
    assert len(lock_client.release_calls) == 2
    assert "periodic job k failed" in caplog.text


@pytest.mark.asyncio
async def test_runner_swallows_acquire_errors() -> None:
    stop_event = asyncio.Event()

    class _LockClient(_DummyLockClient):
        async def acquire_lock(self, key: str, value: str, expire: int) -> bool:
            stop_event.set()
            raise RuntimeError("boom")

    runner = PeriodicLockedRunner(stop_event=stop_event, lock_client=_LockClient(), logger=logger)

    async def job() -> object:
        raise AssertionError("must not run without the lock")

    await runner.run(lock_key="k", lock_ttl_seconds=1, interval_seconds=0.01, job=job, lock_value="lv")


@pytest.mark.asyncio
async def test_runner_propagates_outer_cancellation_and_releases_lock() -> None:
    stop_event = asyncio.Event()
    lock_client = _DummyLockClient()
    runner = PeriodicLockedRunner(stop_event=stop_event, lock_client=lock_client, logger=logger)

    started = asyncio.Event()
    job_cancelled = asyncio.Event()

    async def job() -> object:
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            job_cancelled.set()
            raise
        return None

    task = asyncio.create_task(
        runner.run(
            lock_key="k",
            lock_ttl_seconds=30,
            interval_seconds=0.01,
            refresh_interval_seconds=30.0,
            job=job,
            lock_value="lv",
        )
    )

    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert job_cancelled.is_set()
    assert lock_client.release_calls == [("k", "lv")]


@pytest.mark.asyncio
async def test_runner_stop_event_ends_refresh_loop_and_waits_for_job() -> None:
    stop_event = asyncio.Event()
    lock_client = _DummyLockClient()
    runner = PeriodicLockedRunner(stop_event=stop_event, lock_client=lock_client, logger=logger)

    started = asyncio.Event()
    finished: list[bool] = []

    async def job() -> object:
        started.set()
        await asyncio.sleep(0.05)
        finished.append(True)
        return None

    async def stopper() -> None:
        await started.wait()
        stop_event.set()

    stopper_task = asyncio.create_task(stopper())
    await runner.run(
        lock_key="k",
        lock_ttl_seconds=30,
        interval_seconds=0.01,
        refresh_interval_seconds=0.5,
        job=job,
        lock_value="lv",
    )
    await stopper_task

    assert finished == [True]
    assert lock_client.refresh_calls == []
    assert lock_client.release_calls == [("k", "lv")]
