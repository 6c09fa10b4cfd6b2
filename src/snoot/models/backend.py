"""Backend worker state, status and normalised stream events."""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field


class SupervisorState(StrEnum):
    """Lifecycle of the single worker process owned by a ``BackendSupervisor``."""

    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    RETRY_PENDING = "retry_pending"


class InvocationOutcome(StrEnum):
    """How an invocation reached its terminal state."""

    SUCCEEDED = "succeeded"
    EMPTY_EXIT = "empty_exit"
    CRASHED = "crashed"
    RATE_LIMITED = "rate_limited"
    API_ERRORED = "api_errored"
    KILLED = "killed"
    SPAWN_FAILED = "spawn_failed"


class BackendStatus(BaseModel):
    """Point-in-time view of a supervisor, for ``/status``."""

    alive: bool
    busy: bool
    """True while at least one caller waits for a response."""
    state: SupervisorState = SupervisorState.IDLE
    spawned_at: int | None = None
    """Unix millisecond timestamp of the last spawn."""
    last_activity_at: int | None = None
    """Unix millisecond timestamp of the last stdout event."""
    backend: str


EventKind = Literal["init", "text", "tool_use", "tool_result", "error", "result"]


class BackendEvent(BaseModel):
    """
    A worker stream line normalised across CLI protocols.

    ``text`` carries assistant prose for ``text``, the tool name for
    ``tool_use``, the error message for ``error`` and the final response for
    ``result``. ``is_error`` marks a result that reports a failure.
    """

    kind: EventKind
    text: str = ""
    is_error: bool = False
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)
