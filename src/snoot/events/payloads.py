"""Typed payload definitions for each BridgeEvent.

Usage example::

    from snoot.events.bus import BridgeEvent, EventBus
    from snoot.events.payloads import RateLimitedPayload

    def on_rate_limit(event: BridgeEvent, payload: RateLimitedPayload) -> None:
        print(f"retry {payload['attempt']} in {payload['retry_in']}s")

    bus.subscribe(BridgeEvent.BACKEND_RATE_LIMITED, on_rate_limit)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import TypedDict

# ── Backend worker ────────────────────────────────────────────────────────────


class BackendSpawnedPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.BACKEND_SPAWNED`."""

    backend: str
    pid: int


class ChunkPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.BACKEND_CHUNK`."""

    text: str


class ActivityPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.BACKEND_ACTIVITY`."""

    line: str


class RateLimitedPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.BACKEND_RATE_LIMITED`."""

    retry_in: float
    """Seconds until the respawn."""
    attempt: int
    """1-based retry attempt."""


class ApiErrorPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.BACKEND_API_ERROR`."""

    retry_in: float
    attempt: int
    max_attempts: int


class BackendExitedPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.BACKEND_EXITED`."""

    backend: str
    returncode: int | None
    outcome: str
    """An :class:`~snoot.models.backend.InvocationOutcome` value."""


# ── Turns ─────────────────────────────────────────────────────────────────────


class TurnStartedPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.TURN_STARTED`."""

    message_count: int


class TurnCompletedPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.TURN_COMPLETED`."""

    pair_id: int | None
    """None when nothing was recorded (empty response)."""
    response_chars: int


class MessagesBatchedPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.MESSAGES_BATCHED`."""

    count: int


# ── Context ───────────────────────────────────────────────────────────────────


class CompactionTriggeredPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.COMPACTION_TRIGGERED`."""

    window: int


class CompactionCompletedPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.COMPACTION_COMPLETED`.

    This is the ``model_dump()`` of a :class:`snoot.models.context.CompactionResult`.
    """

    compacted: bool
    compacted_pair_count: int
    window_before: int
    window_after: int
    summary_chars: int
    elapsed_ms: float
    error: str | None


class CompactionFailedPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.COMPACTION_FAILED`."""

    error: str


class PinPayload(TypedDict):
    """Payload for :attr:`BridgeEvent.PIN_ADDED` and :attr:`BridgeEvent.PIN_REMOVED`."""

    pin_id: int
