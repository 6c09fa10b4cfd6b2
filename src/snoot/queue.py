"""Inbound message queue: FIFO, whole-queue batching, one turn at a time."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from snoot.events.bus import BridgeEvent, EventBus
from snoot.models.config import QueueConfig

TurnHandler = Callable[[str, int], Awaitable[None]]
ErrorHandler = Callable[[Exception], Awaitable[None]]
StuckHandler = Callable[[], Awaitable[None]]

BATCH_SEPARATOR = "\n\n"


class MessageQueue:
    """
    Serialises inbound chat messages into backend turns.

    Every message that arrives while a turn is in flight waits in the queue;
    when the turn ends the whole queue is drained into a single batch, joined
    by a blank line, and handed to *handler* as one turn.

    Args:
        handler: ``await handler(batch_text, message_count)`` runs one turn.
        config: Queue settings (stuck-turn ceiling).
        on_error: Called with any exception raised by *handler*; the queue
            keeps draining afterwards.
        on_stuck: Called when the watchdog force-clears a stuck turn.
        event_bus: Receives ``MESSAGES_BATCHED``.
        clock: Monotonic time source, overridable in tests.
    """

    def __init__(
        self,
        handler: TurnHandler,
        config: QueueConfig | None = None,
        on_error: ErrorHandler | None = None,
        on_stuck: StuckHandler | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._handler = handler
        self._config = config or QueueConfig()
        self._on_error = on_error
        self._on_stuck = on_stuck
        self._event_bus = event_bus or EventBus()
        self._clock = clock
        self._pending: list[str] = []
        self._processing = False
        self._turn_started_at: float | None = None
        # Bumped by the watchdog; a drain loop from an older generation stops.
        self._generation = 0
        self._task: asyncio.Task[None] | None = None
        self._side_tasks: set[asyncio.Task[None]] = set()
        self._logger = structlog.get_logger("snoot.queue")

    @property
    def processing(self) -> bool:
        return self._processing

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def generation(self) -> int:
        return self._generation

    def enqueue(self, text: str) -> None:
        """Queue *text* and start a drain if no turn is in flight."""
        self._pending.append(text)
        if self._processing:
            if not self._is_stuck():
                self._logger.debug("message_queued", pending=len(self._pending))
                return
            self._force_clear()
        self._start_drain()

    def clear(self) -> int:
        """Drop every queued message that has not started a turn yet."""
        dropped = len(self._pending)
        self._pending.clear()
        return dropped

    async def wait_idle(self) -> None:
        """Wait until no drain loop is running."""
        while True:
            task = self._task
            if task is None or task.done():
                break
            await asyncio.gather(task, return_exceptions=True)
        if self._side_tasks:
            await asyncio.gather(*list(self._side_tasks), return_exceptions=True)

    def _is_stuck(self) -> bool:
        if self._turn_started_at is None:
            return False
        return self._clock() - self._turn_started_at > self._config.stuck_after

    def _force_clear(self) -> None:
        age = self._clock() - (self._turn_started_at or self._clock())
        self._logger.warning("turn_stuck_force_cleared", age_s=round(age, 1))
        self._generation += 1
        self._processing = False
        self._turn_started_at = None
        if self._on_stuck is not None:
            task = asyncio.get_running_loop().create_task(self._run_stuck_hook())
            self._side_tasks.add(task)
            task.add_done_callback(self._side_tasks.discard)

    async def _run_stuck_hook(self) -> None:
        assert self._on_stuck is not None
        try:
            await self._on_stuck()
        except Exception as exc:
            self._logger.error("stuck_hook_failed", error=str(exc))

    def _start_drain(self) -> None:
        # The first batch is taken now; messages arriving later wait for the next turn.
        batch, self._pending = self._pending, []
        self._processing = True
        self._turn_started_at = self._clock()
        self._task = asyncio.get_running_loop().create_task(self._drain(batch, self._generation))

    async def _drain(self, batch: list[str], generation: int) -> None:
        try:
            while batch and generation == self._generation:
                self._turn_started_at = self._clock()
                if len(batch) > 1:
                    self._logger.info("messages_batched", count=len(batch))
                    self._event_bus.publish(BridgeEvent.MESSAGES_BATCHED, {"count": len(batch)})
                try:
                    await self._handler(BATCH_SEPARATOR.join(batch), len(batch))
                except Exception as exc:
                    self._logger.exception("turn_failed", error=str(exc))
                    await self._report(exc)
                if generation != self._generation:
                    break
                batch, self._pending = self._pending, []
        finally:
            if generation == self._generation:
                self._processing = False
                self._turn_started_at = None

    async def _report(self, exc: Exception) -> None:
        if self._on_error is None:
            return
        try:
            await self._on_error(exc)
        except Exception as report_exc:
            self._logger.error("error_report_failed", error=str(report_exc))
