"""Background work scheduler for pipeline and upload jobs.

Runs units of work on the event loop with retry, exponential backoff and an
optional network constraint. Two kinds of lanes:

    enqueue(request)               independent; runs as soon as it can
    enqueue_unique(queue, request) serial; requests on the same queue run
                                   one after another in arrival order

Either way a request whose name is already queued, running or backing off
is not added again.

A unit of work returns a WorkOutcome. RETRY (or an unexpected exception)
schedules another attempt after backoff_delay(); the attempt count is
bounded by max_attempts. Network-constrained work waits for connectivity
before each attempt and is cancelled if connectivity drops mid-run; that
interrupted run does not consume an attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from note_processor.utils.retry import backoff_delay

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 8
DEFAULT_BACKOFF_SECONDS = 10.0


class WorkOutcome(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    FAILURE = "failure"


@dataclass
class WorkContext:
    """What a running unit of work knows about its own attempt."""

    attempt: int
    max_attempts: int

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass
class WorkRequest:
    """A schedulable unit of work.

    Attributes:
        name: Identity used for unique-queue dedupe and logging.
        run: Coroutine function called once per attempt.
        requires_network: Only run while the NetworkMonitor reports online.
        backoff_seconds: Delay after the first failed attempt.
    """

    name: str
    run: Callable[[WorkContext], Awaitable[WorkOutcome]]
    requires_network: bool = False
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS


class NetworkMonitor:
    """Connectivity flag with change notification.

    The host feeds it (from a probe or platform callback); tests flip it
    directly with set_online().
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[Callable[[bool], None]] = []
        self._event: asyncio.Event | None = None

    @property
    def is_online(self) -> bool:
        return self._online

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._online:
                self._event.set()
        return self._event

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Network %s", "online" if online else "offline")
        event = self._get_event()
        if online:
            event.set()
        else:
            event.clear()
        for listener in list(self._listeners):
            listener(online)

    def add_listener(self, listener: Callable[[bool], None]) -> None:
        self._listeners.append(listener)

    async def wait_online(self) -> None:
        await self._get_event().wait()


class WorkScheduler:
    """Runs WorkRequests with retry, backoff and network gating.

    Args:
        network: Connectivity source for requires_network work.
        max_attempts: Attempts per request before it is given up.
        sleep: Backoff sleep; replaced in tests.
    """

    def __init__(
        self,
        network: NetworkMonitor | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.network = network or NetworkMonitor()
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()
        self._lanes: dict[str, deque[WorkRequest]] = {}
        self._lane_tasks: dict[str, asyncio.Task] = {}
        self._unique_names: dict[str, set[str]] = {}
        self._active_names: set[str] = set()
        self._network_bound: set[asyncio.Task] = set()
        self._interrupted: set[asyncio.Task] = set()
        self._accepting = True
        self.network.add_listener(self._on_network_change)

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def enqueue(self, request: WorkRequest) -> bool:
        """Schedule a request on its own lane.

        Returns:
            False if a request with the same name is still active.
        """
        if not self._accepting:
            logger.warning("Scheduler shut down, dropping %s", request.name)
            return False
        if request.name in self._active_names:
            logger.info("%s already scheduled", request.name)
            return False
        self._active_names.add(request.name)
        self._spawn(self._run_independent(request))
        return True

    async def _run_independent(self, request: WorkRequest) -> None:
        try:
            await self._execute(request)
        finally:
            self._active_names.discard(request.name)

    def enqueue_unique(self, queue: str, request: WorkRequest) -> bool:
        """Append a request to a serial queue.

        Returns:
            False if a request with the same name is already on the queue
            (waiting, running or backing off), True otherwise.
        """
        if not self._accepting:
            logger.warning("Scheduler shut down, dropping %s", request.name)
            return False
        names = self._unique_names.setdefault(queue, set())
        if request.name in names:
            logger.info("%s already queued on %s", request.name, queue)
            return False
        names.add(request.name)
        self._lanes.setdefault(queue, deque()).append(request)

        lane_task = self._lane_tasks.get(queue)
        if lane_task is None or lane_task.done():
            self._lane_tasks[queue] = self._spawn(self._drain(queue))
        return True

    def is_pending(self, queue: str, name: str) -> bool:
        return name in self._unique_names.get(queue, set())

    async def _drain(self, queue: str) -> None:
        lane = self._lanes[queue]
        while lane:
            request = lane[0]
            try:
                await self._execute(request)
            finally:
                lane.popleft()
                self._unique_names[queue].discard(request.name)

    async def _execute(self, request: WorkRequest) -> WorkOutcome:
        """Run a request until SUCCESS, FAILURE, or attempts are exhausted."""
        attempt = 0
        while True:
            if request.requires_network and not self.network.is_online:
                logger.info("%s waiting for network", request.name)
                await self.network.wait_online()

            ctx = WorkContext(attempt=attempt + 1, max_attempts=self.max_attempts)
            run_task = asyncio.ensure_future(request.run(ctx))
            if request.requires_network:
                self._network_bound.add(run_task)
            try:
                await asyncio.wait([run_task])
            except asyncio.CancelledError:
                run_task.cancel()
                raise
            finally:
                self._network_bound.discard(run_task)

            if run_task in self._interrupted:
                self._interrupted.discard(run_task)
                logger.info("%s interrupted by network loss, will rerun", request.name)
                continue

            if run_task.cancelled():
                raise asyncio.CancelledError()

            exc = run_task.exception()
            if exc is not None:
                logger.error(
                    "%s attempt %d raised",
                    request.name,
                    ctx.attempt,
                    exc_info=exc,
                    extra={"attempt": ctx.attempt},
                )
                outcome = WorkOutcome.RETRY
            else:
                outcome = run_task.result()

            if outcome is not WorkOutcome.RETRY:
                logger.info(
                    "%s finished: %s",
                    request.name,
                    outcome.value,
                    extra={"attempt": ctx.attempt},
                )
                return outcome

            attempt += 1
            if attempt >= self.max_attempts:
                logger.warning(
                    "%s gave up after %d attempts", request.name, attempt
                )
                return WorkOutcome.FAILURE

            delay = backoff_delay(request.backoff_seconds, attempt)
            logger.info(
                "%s retry in %.0fs",
                request.name,
                delay,
                extra={"attempt": attempt},
            )
            await self._sleep(delay)

    def _on_network_change(self, online: bool) -> None:
        if online:
            return
        for task in list(self._network_bound):
            if not task.done():
                self._interrupted.add(task)
                task.cancel()

    async def join(self) -> None:
        """Wait until no work is queued, running or backing off."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float) -> None:
        """Stop accepting work, wait up to timeout, then cancel the rest."""
        self._accepting = False
        try:
            await asyncio.wait_for(self.join(), timeout=timeout)
        except asyncio.TimeoutError:
            remaining = list(self._tasks)
            logger.warning("Cancelling %d outstanding work item(s)", len(remaining))
            for task in remaining:
                task.cancel()
            await asyncio.gather(*remaining, return_exceptions=True)
