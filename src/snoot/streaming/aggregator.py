"""Paced delivery of streamed backend output to the messenger."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

from snoot.models.config import StreamingConfig
from snoot.models.context import ChunkEntry, TextChunk, ToolChunk

Sender = Callable[[str], Awaitable[None]]

_COLLAPSED = re.compile(r"^(.*) \(x(\d+)\)$", re.DOTALL)


def split_repeat_count(line: str) -> tuple[str, int]:
    """``"X (x3)"`` → ``("X", 3)``; a plain line counts once."""
    match = _COLLAPSED.match(line)
    if match is None:
        return line, 1
    return match.group(1), int(match.group(2))


@dataclass
class _Group:
    text: str | None = None
    tools: list[tuple[str, int]] = field(default_factory=list)

    def add_tool(self, line: str) -> None:
        base, count = split_repeat_count(line)
        if self.tools and self.tools[-1][0] == base:
            self.tools[-1] = (base, self.tools[-1][1] + count)
        else:
            self.tools.append((base, count))

    def render(self) -> str:
        lines = [self.text] if self.text else []
        lines += [base if count == 1 else f"{base} (x{count})" for base, count in self.tools]
        return "\n".join(lines).strip()


def render_groups(entries: list[ChunkEntry]) -> list[str]:
    """
    Group buffered entries into messenger messages.

    Each text entry opens a new group; tool entries join the open group (or
    open one). Consecutive identical tool lines in a group collapse into
    ``"<line> (xN)"``. Empty groups are dropped; order is preserved.
    """
    groups: list[_Group] = []
    for entry in entries:
        if entry.type == "text":
            groups.append(_Group(text=entry.content))
        else:
            if not groups:
                groups.append(_Group())
            groups[-1].add_tool(entry.content)
    return [rendered for rendered in (group.render() for group in groups) if rendered]


class FlushLock:
    """A mutex whose acquisition gives up after a timeout."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout)
        except TimeoutError:
            return False
        return True

    def release(self) -> None:
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


class StreamAggregator:
    """
    Buffers text and tool-activity entries during a turn and flushes them as a
    bounded number of messages.

    A background task flushes every ``flush_interval`` seconds between
    :meth:`start` and :meth:`finish`; :meth:`finish` performs the final flush.
    Flushes are serialised by a :class:`FlushLock`: a periodic flush that
    cannot get the lock in time is skipped and its entries stay buffered, while
    the final flush goes ahead once the timeout expires.
    """

    def __init__(self, sender: Sender, config: StreamingConfig | None = None) -> None:
        self._send = sender
        self._config = config or StreamingConfig()
        self._buffer: list[ChunkEntry] = []
        self._lock = FlushLock()
        self._task: asyncio.Task[None] | None = None
        self._messages_sent = 0
        self._text_sent = False
        self._logger = structlog.get_logger("snoot.streaming")

    @property
    def pending(self) -> list[ChunkEntry]:
        return list(self._buffer)

    @property
    def messages_sent(self) -> int:
        return self._messages_sent

    @property
    def text_sent(self) -> bool:
        """True once any assistant text has been delivered this turn."""
        return self._text_sent

    def push(self, entry: ChunkEntry) -> None:
        # Streaming deltas arrive as many small text entries; keep them as one.
        if entry.type == "text" and self._buffer and self._buffer[-1].type == "text":
            merged = self._buffer[-1].content + entry.content
            self._buffer[-1] = TextChunk(content=merged)
        else:
            self._buffer.append(entry)

    def push_text(self, text: str) -> None:
        if text:
            self.push(TextChunk(content=text))

    def push_tool(self, line: str) -> None:
        if line:
            self.push(ToolChunk(content=line))

    def start(self) -> None:
        """Reset per-turn counters and begin periodic flushing."""
        self._buffer.clear()
        self._messages_sent = 0
        self._text_sent = False
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._periodic())

    async def finish(self) -> int:
        """Stop periodic flushing and flush whatever is left."""
        await self.stop()
        return await self.flush(final=True)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def flush(self, final: bool = False) -> int:
        """
        Send every buffered group.

        Returns:
            Number of messages sent.
        """
        acquired = await self._lock.acquire(self._config.flush_timeout)
        if not acquired:
            if not final:
                self._logger.warning("flush_skipped", buffered=len(self._buffer))
                return 0
            self._logger.warning("flush_lock_timeout", buffered=len(self._buffer))
        try:
            entries, self._buffer = self._buffer, []
            has_text = any(entry.type == "text" for entry in entries)
            sent = 0
            for message in render_groups(entries):
                try:
                    await self._send(message)
                except Exception as exc:
                    self._logger.warning("flush_send_failed", error=str(exc))
                    continue
                sent += 1
            if sent and has_text:
                self._text_sent = True
            self._messages_sent += sent
            if sent:
                self._logger.debug("flushed", messages=sent, final=final)
            return sent
        finally:
            if acquired:
                self._lock.release()

    async def _periodic(self) -> None:
        while True:
            await asyncio.sleep(self._config.flush_interval)
            await self.flush()
