"""In-process pub/sub event bus for bridge lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["BridgeEvent", dict[str, Any]], None | Awaitable[None]]


class BridgeEvent(StrEnum):
    """All event types published by snoot components.

    Typed payload definitions for each event live in
    :mod:`snoot.events.payloads`.

    **Payload schemas by event:**

    ``BACKEND_SPAWNED``
        ``backend: str``, ``pid: int``

    ``BACKEND_CHUNK``
        ``text: str`` — a piece of assistant prose, in stream order.

    ``BACKEND_ACTIVITY``
        ``line: str`` — a tool invocation line, e.g. ``🔧 Bash``.

    ``BACKEND_RATE_LIMITED``
        ``retry_in: float``, ``attempt: int``

    ``BACKEND_API_ERROR``
        ``retry_in: float``, ``attempt: int``, ``max_attempts: int``

    ``BACKEND_EXITED``
        ``backend: str``, ``returncode: int | None``, ``outcome: str``

    ``TURN_STARTED`` / ``TURN_COMPLETED``
        ``message_count: int`` / ``pair_id: int | None``, ``response_chars: int``

    ``MESSAGES_BATCHED``
        ``count: int``

    ``COMPACTION_TRIGGERED`` / ``COMPACTION_COMPLETED`` / ``COMPACTION_FAILED``
        ``window: int`` / :class:`~snoot.models.context.CompactionResult`
        ``model_dump()`` / ``error: str``

    ``PIN_ADDED`` / ``PIN_REMOVED``
        ``pin_id: int``

    ``CONTEXT_RESET``
        empty payload.

    **Ordering:** sync handlers run inline inside ``publish()``, so a sync
    ``BACKEND_CHUNK`` subscriber sees chunks in stream order. Async handlers
    are scheduled as tasks and may complete in any order.
    """

    # Backend worker
    BACKEND_SPAWNED = "backend.spawned"
    BACKEND_CHUNK = "backend.chunk"
    BACKEND_ACTIVITY = "backend.activity"
    BACKEND_RATE_LIMITED = "backend.rate_limited"
    BACKEND_API_ERROR = "backend.api_error"
    BACKEND_EXITED = "backend.exited"

    # Turns
    TURN_STARTED = "turn.started"
    TURN_COMPLETED = "turn.completed"
    MESSAGES_BATCHED = "messages.batched"

    # Context
    COMPACTION_TRIGGERED = "compaction.triggered"
    COMPACTION_COMPLETED = "compaction.completed"
    COMPACTION_FAILED = "compaction.failed"
    PIN_ADDED = "pin.added"
    PIN_REMOVED = "pin.removed"
    CONTEXT_RESET = "context.reset"


class EventBus:
    """
    Simple in-process pub/sub event bus.

    - Sync handlers are called inline within ``publish()``.
    - Async handlers are scheduled via ``loop.create_task()`` (fire-and-forget).
    - Handler exceptions are logged but never propagate to the publisher.

    Example::

        bus = EventBus()

        def on_exit(event, payload):
            print(f"{payload['backend']} exited with {payload['returncode']}")

        bus.subscribe(BridgeEvent.BACKEND_EXITED, on_exit)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[BridgeEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = logger or structlog.get_logger("snoot.events")

    def subscribe(self, event: BridgeEvent, handler: Handler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event: The event type to listen for.
            handler: Callable accepting ``(event, payload)``. May be sync or async.
        """
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler for ALL event types."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: BridgeEvent, handler: Handler) -> None:
        """Remove a previously registered handler. No-op if not found."""
        handlers = self._handlers.get(event, [])
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    def publish(self, event: BridgeEvent, payload: dict[str, Any]) -> None:
        """
        Publish an event to all registered handlers.

        Sync handlers are called immediately in registration order.
        Async handlers are scheduled as background tasks (non-blocking).
        Exceptions from any handler are logged and swallowed.
        """
        all_handlers = list(self._handlers.get(event, [])) + list(self._global_handlers)
        for handler in all_handlers:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    self._schedule(event, handler, result)
            except Exception as exc:
                self._log_handler_error(event, handler, exc)

    async def drain(self) -> None:
        """Wait for every scheduled async handler to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule(self, event: BridgeEvent, handler: Handler, coro: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running event loop, skip async handler
            coro.close()  # type: ignore[attr-defined]
            return

        async def _guarded() -> None:
            try:
                await coro
            except Exception as exc:
                self._log_handler_error(event, handler, exc)

        task = loop.create_task(_guarded())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _log_handler_error(self, event: BridgeEvent, handler: Handler, exc: Exception) -> None:
        self._logger.error(
            "event_handler_error",
            event_type=str(event),
            handler=getattr(handler, "__qualname__", repr(handler)),
            error=str(exc),
        )
