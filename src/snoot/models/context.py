"""Conversation history data models."""

from __future__ import annotations

import time
from typing import Annotated, Literal

from pydantic import AliasChoices, BaseModel, Field


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


# ── History ────────────────────────────────────────────────────────────────────


class MessagePair(BaseModel):
    """
    One completed exchange: the batched user turn and the assistant's reply.

    Pairs are written once to the archive and never edited there; only the
    copy in the recent window may later gain ``pinned=True``.
    """

    id: int
    user: str
    assistant: str
    timestamp: int = Field(default_factory=now_ms)
    """Unix millisecond timestamp."""
    pinned: bool = False


class PinnedItem(BaseModel):
    """A free-text note that is always part of the prompt and never compacted."""

    id: int
    text: str
    timestamp: int = Field(default_factory=now_ms)


class ContextState(BaseModel):
    """
    Persisted counters and pins.

    ``next_id`` is the single id source for both pairs and pins, so an id is
    unique across the two sequences. State files written by earlier camelCase
    releases (``nextId``, ``totalPairs``) load unchanged.
    """

    next_id: int = Field(default=1, ge=1, validation_alias=AliasChoices("next_id", "nextId"))
    total_pairs: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("total_pairs", "totalPairs")
    )
    pins: list[PinnedItem] = Field(default_factory=list)


# ── Streaming chunks ───────────────────────────────────────────────────────────


class TextChunk(BaseModel):
    """Partial assistant text."""

    type: Literal["text"] = "text"
    content: str


class ToolChunk(BaseModel):
    """One line of tool activity (``🔧 Bash``) reported while the backend works."""

    type: Literal["tool"] = "tool"
    content: str


ChunkEntry = Annotated[TextChunk | ToolChunk, Field(discriminator="type")]


# ── Results ────────────────────────────────────────────────────────────────────


class CompactionResult(BaseModel):
    """Outcome of a single ``ContextStore.compact()`` call."""

    compacted: bool
    """False when the call was a no-op or the summariser failed."""
    compacted_pair_count: int = 0
    window_before: int = 0
    window_after: int = 0
    summary_chars: int = 0
    elapsed_ms: float = 0.0
    error: str | None = None
