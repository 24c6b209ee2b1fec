"""Tests for the background work scheduler."""

import asyncio

import pytest

from note_processor.queue.scheduler import (
    NetworkMonitor,
    WorkContext,
    WorkOutcome,
    WorkRequest,
    WorkScheduler,
)


class RecordingSleep:
    """Backoff sleep that returns immediately and remembers the delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _scripted(outcomes: list, calls: list[WorkContext]):
    """A unit of work returning (or raising) the next scripted outcome."""
    script = iter(outcomes)

    async def run(ctx: WorkContext) -> WorkOutcome:
        calls.append(ctx)
        outcome = next(script)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return run


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


class TestRetries:
    @pytest.mark.asyncio
    async def test_success_first_time(self, sleep: RecordingSleep) -> None:
        calls: list[WorkContext] = []
        scheduler = WorkScheduler(sleep=sleep)

        assert scheduler.enqueue(WorkRequest("job", _scripted([WorkOutcome.SUCCESS], calls)))
        await scheduler.join()

        assert [c.attempt for c in calls] == [1]
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retry_uses_exponential_backoff(self, sleep: RecordingSleep) -> None:
        calls: list[WorkContext] = []
        scheduler = WorkScheduler(sleep=sleep)
        run = _scripted([WorkOutcome.RETRY, WorkOutcome.RETRY, WorkOutcome.SUCCESS], calls)

        scheduler.enqueue(WorkRequest("job", run, backoff_seconds=10.0))
        await scheduler.join()

        assert [c.attempt for c in calls] == [1, 2, 3]
        assert sleep.delays == [10.0, 20.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, sleep: RecordingSleep) -> None:
        calls: list[WorkContext] = []
        scheduler = WorkScheduler(max_attempts=3, sleep=sleep)

        scheduler.enqueue(WorkRequest("job", _scripted([WorkOutcome.RETRY] * 5, calls)))
        await scheduler.join()

        assert len(calls) == 3
        assert [c.is_last_attempt for c in calls] == [False, False, True]
        assert sleep.delays == [10.0, 20.0]

    @pytest.mark.asyncio
    async def test_failure_is_not_retried(self, sleep: RecordingSleep) -> None:
        calls: list[WorkContext] = []
        scheduler = WorkScheduler(sleep=sleep)

        scheduler.enqueue(WorkRequest("job", _scripted([WorkOutcome.FAILURE], calls)))
        await scheduler.join()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_exception_counts_as_retry(self, sleep: RecordingSleep, caplog) -> None:
        calls: list[WorkContext] = []
        scheduler = WorkScheduler(sleep=sleep)
        run = _scripted([RuntimeError("boom"), WorkOutcome.SUCCESS], calls)

        scheduler.enqueue(WorkRequest("job", run))
        await scheduler.join()

        assert len(calls) == 2
        assert "job attempt 1 raised" in caplog.text


class TestDedupe:
    @pytest.mark.asyncio
    async def test_enqueue_same_name_once(self, sleep: RecordingSleep) -> None:
        calls: list[WorkContext] = []
        scheduler = WorkScheduler(sleep=sleep)
        run = _scripted([WorkOutcome.SUCCESS, WorkOutcome.SUCCESS], calls)

        assert scheduler.enqueue(WorkRequest("summary:s1", run)) is True
        assert scheduler.enqueue(WorkRequest("summary:s1", run)) is False
        await scheduler.join()
        assert len(calls) == 1

        assert scheduler.enqueue(WorkRequest("summary:s1", run)) is True
        await scheduler.join()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_unique_queue_dedupes_while_backing_off(self) -> None:
        calls: list[WorkContext] = []
        release = asyncio.Event()

        async def gated_sleep(delay: float) -> None:
            await release.wait()

        scheduler = WorkScheduler(sleep=gated_sleep)
        run = _scripted([WorkOutcome.RETRY, WorkOutcome.SUCCESS], calls)

        assert scheduler.enqueue_unique("q", WorkRequest("s1", run))
        await asyncio.sleep(0.01)
        assert len(calls) == 1
        assert scheduler.is_pending("q", "s1")
        assert scheduler.enqueue_unique("q", WorkRequest("s1", run)) is False

        release.set()
        await scheduler.join()
        assert len(calls) == 2
        assert not scheduler.is_pending("q", "s1")


class TestSerialQueue:
    @pytest.mark.asyncio
    async def test_runs_one_at_a_time_in_arrival_order(self, sleep: RecordingSleep) -> None:
        events: list[str] = []
        scheduler = WorkScheduler(sleep=sleep)

        def make(name: str):
            async def run(ctx: WorkContext) -> WorkOutcome:
                events.append(f"{name}:start")
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                events.append(f"{name}:end")
                return WorkOutcome.SUCCESS

            return run

        for name in ("a", "b", "c"):
            scheduler.enqueue_unique("transcribe", WorkRequest(name, make(name)))
        await scheduler.join()

        assert events == ["a:start", "a:end", "b:start", "b:end", "c:start", "c:end"]

    @pytest.mark.asyncio
    async def test_retrying_head_blocks_the_queue(self, sleep: RecordingSleep) -> None:
        order: list[str] = []
        scheduler = WorkScheduler(sleep=sleep)
        a_outcomes = iter([WorkOutcome.RETRY, WorkOutcome.SUCCESS])

        async def run_a(ctx: WorkContext) -> WorkOutcome:
            order.append("a")
            return next(a_outcomes)

        async def run_b(ctx: WorkContext) -> WorkOutcome:
            order.append("b")
            return WorkOutcome.SUCCESS

        scheduler.enqueue_unique("q", WorkRequest("a", run_a))
        scheduler.enqueue_unique("q", WorkRequest("b", run_b))
        await scheduler.join()

        assert order == ["a", "a", "b"]


class TestNetworkGating:
    @pytest.mark.asyncio
    async def test_waits_for_network(self, sleep: RecordingSleep) -> None:
        network = NetworkMonitor(online=False)
        scheduler = WorkScheduler(network=network, sleep=sleep)
        calls: list[WorkContext] = []

        scheduler.enqueue(
            WorkRequest("upload:1", _scripted([WorkOutcome.SUCCESS], calls), requires_network=True)
        )
        await asyncio.sleep(0.01)
        assert calls == []

        network.set_online(True)
        await scheduler.join()
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_offline_does_not_block_ungated_work(self, sleep: RecordingSleep) -> None:
        scheduler = WorkScheduler(network=NetworkMonitor(online=False), sleep=sleep)
        calls: list[WorkContext] = []

        scheduler.enqueue(WorkRequest("local", _scripted([WorkOutcome.SUCCESS], calls)))
        await scheduler.join()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_network_loss_interrupts_without_consuming_attempt(
        self, sleep: RecordingSleep
    ) -> None:
        network = NetworkMonitor()
        scheduler = WorkScheduler(network=network, sleep=sleep)
        started = asyncio.Event()
        attempts: list[int] = []

        async def run(ctx: WorkContext) -> WorkOutcome:
            attempts.append(ctx.attempt)
            if len(attempts) == 1:
                started.set()
                await asyncio.Event().wait()
            return WorkOutcome.SUCCESS

        scheduler.enqueue(WorkRequest("upload:1", run, requires_network=True))
        await started.wait()

        network.set_online(False)
        await asyncio.sleep(0.01)
        assert attempts == [1]

        network.set_online(True)
        await scheduler.join()

        assert attempts == [1, 1]
        assert sleep.delays == []

    def test_listener_only_fires_on_change(self) -> None:
        network = NetworkMonitor()
        seen: list[bool] = []
        network.add_listener(seen.append)

        network.set_online(True)
        network.set_online(False)
        network.set_online(False)

        assert seen == [False]
        assert network.is_online is False


class TestShutdown:
    @pytest.mark.asyncio
    async def test_rejects_new_work_and_cancels_stragglers(self) -> None:
        scheduler = WorkScheduler()
        finished = False

        async def run(ctx: WorkContext) -> WorkOutcome:
            nonlocal finished
            await asyncio.Event().wait()
            finished = True
            return WorkOutcome.SUCCESS

        scheduler.enqueue(WorkRequest("stuck", run))
        await asyncio.sleep(0)

        await scheduler.shutdown(timeout=0.05)

        assert finished is False
        assert scheduler.enqueue(WorkRequest("late", run)) is False
        assert scheduler.enqueue_unique("q", WorkRequest("late", run)) is False

    @pytest.mark.asyncio
    async def test_waits_for_quick_work(self, sleep: RecordingSleep) -> None:
        scheduler = WorkScheduler(sleep=sleep)
        calls: list[WorkContext] = []

        scheduler.enqueue(WorkRequest("quick", _scripted([WorkOutcome.SUCCESS], calls)))
        await scheduler.shutdown(timeout=1.0)

        assert len(calls) == 1
