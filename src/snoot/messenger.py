"""The messenger surface the orchestrator talks to."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

MessageHandler = Callable[[str], Any]

DEFAULT_MAX_MESSAGE_CHARS = 6_000


@runtime_checkable
class MessengerClient(Protocol):
    """
    An encrypted-messenger session bound to one operator.

    Implementations own the wire protocol and are expected to split oversized
    text themselves (see :func:`chunk_text`).
    """

    async def start_listening(self, on_message: MessageHandler) -> None:
        """Begin delivering inbound text messages to *on_message*."""
        ...

    async def send(self, text: str) -> None: ...

    async def send_image(self, data: bytes, caption: str | None = None) -> None: ...

    async def set_avatar(self, data: bytes) -> None: ...

    async def get_file(self, ref: str) -> bytes: ...


def chunk_text(text: str, limit: int = DEFAULT_MAX_MESSAGE_CHARS) -> list[str]:
    """
    Split *text* into pieces of at most *limit* characters.

    Splits prefer the last newline in the back half of each window, so
    paragraphs and code lines stay intact where possible; a window with no
    usable newline is cut hard at *limit*.
    """
    if limit < 2:
        raise ValueError("limit must be at least 2")
    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        cut = remaining.rfind("\n", limit // 2, limit + 1)
        if cut == -1:
            chunks.append(remaining[:limit])
            remaining = remaining[limit:]
        else:
            chunks.append(remaining[:cut])
            remaining = remaining[cut + 1 :]
    if remaining:
        chunks.append(remaining)
    return chunks
