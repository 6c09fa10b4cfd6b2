"""Command lines and stream-json dialects of the supported backend CLIs."""

from __future__ import annotations

import json
from typing import Any, ClassVar

from snoot.models.backend import BackendEvent
from snoot.models.config import TOOLS_BY_MODE, BridgeConfig


class WorkerProtocol:
    """
    How to launch one backend CLI and how to read its NDJSON output.

    Subclasses translate their CLI's event vocabulary into the six
    :class:`~snoot.models.backend.BackendEvent` kinds, so the supervisor never
    branches on the backend name.
    """

    name: ClassVar[str]

    def __init__(self, config: BridgeConfig) -> None:
        self._config = config

    @property
    def label(self) -> str:
        return self.name.capitalize()

    def build_argv(self, prompt: str) -> list[str]:
        raise NotImplementedError

    def stdin_payload(self, prompt: str) -> bytes | None:
        """Bytes written to the worker's stdin before it is closed, if any."""
        return None

    def parse_line(self, line: str) -> list[BackendEvent]:
        """
        Decode one stdout line.

        Returns:
            Zero or more normalised events. Unknown event types decode to an
            empty list.

        Raises:
            ValueError: If the line is not a JSON object.
        """
        data = json.loads(line)
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        return self._decode(data)

    def _decode(self, data: dict[str, Any]) -> list[BackendEvent]:
        raise NotImplementedError


class ClaudeProtocol(WorkerProtocol):
    """``claude -p`` in stream-json mode; the prompt travels over stdin."""

    name = "claude"

    def build_argv(self, prompt: str) -> list[str]:
        argv = [
            self._config.supervisor.claude_command,
            "-p",
            "--input-format",
            "stream-json",
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            "bypassPermissions",
            "--no-session-persistence",
            # An empty value disables every tool (chat mode).
            "--tools",
            TOOLS_BY_MODE[self._config.mode],
        ]
        if self._config.budget_usd is not None:
            argv += ["--max-budget-usd", f"{self._config.budget_usd:g}"]
        return argv

    def stdin_payload(self, prompt: str) -> bytes:
        message = {"type": "user", "message": {"role": "user", "content": prompt}}
        return (json.dumps(message) + "\n").encode("utf-8")

    def _decode(self, data: dict[str, Any]) -> list[BackendEvent]:
        kind = data.get("type")
        if kind == "system":
            if data.get("subtype") == "init":
                return [BackendEvent(kind="init", text=str(data.get("model", "")), raw=data)]
            return []
        if kind == "assistant":
            events: list[BackendEvent] = []
            for block in _content_blocks(data):
                if block.get("type") == "text" and block.get("text"):
                    events.append(BackendEvent(kind="text", text=block["text"], raw=block))
                elif block.get("type") == "tool_use":
                    events.append(
                        BackendEvent(kind="tool_use", text=str(block.get("name") or ""), raw=block)
                    )
            return events
        if kind == "user":
            return [
                BackendEvent(kind="tool_result", text=str(block.get("tool_use_id", "")), raw=block)
                for block in _content_blocks(data)
                if block.get("type") == "tool_result"
            ]
        if kind == "error":
            error = data.get("error")
            message = error.get("message") if isinstance(error, dict) else data.get("message")
            return [BackendEvent(kind="error", text=str(message or error or ""), raw=data)]
        if kind == "result":
            return [
                BackendEvent(
                    kind="result",
                    text=str(data.get("result") or ""),
                    is_error=bool(data.get("is_error")),
                    raw=data,
                )
            ]
        return []


class GeminiProtocol(WorkerProtocol):
    """``gemini -o stream-json``; the whole prompt is passed with ``-p``."""

    name = "gemini"

    def build_argv(self, prompt: str) -> list[str]:
        return [self._config.supervisor.gemini_command, "-o", "stream-json", "--yolo", "-p", prompt]

    def _decode(self, data: dict[str, Any]) -> list[BackendEvent]:
        kind = data.get("type")
        if kind == "init":
            return [BackendEvent(kind="init", text=str(data.get("model", "")), raw=data)]
        if kind == "message":
            content = data.get("content")
            if data.get("role") == "assistant" and content:
                return [BackendEvent(kind="text", text=str(content), raw=data)]
            return []
        if kind == "tool_use":
            return [BackendEvent(kind="tool_use", text=str(data.get("tool_name") or ""), raw=data)]
        if kind == "tool_result":
            return [BackendEvent(kind="tool_result", text=str(data.get("tool_id", "")), raw=data)]
        if kind == "error":
            return [BackendEvent(kind="error", text=str(data.get("message") or ""), raw=data)]
        if kind == "result":
            error = data.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            return [
                BackendEvent(
                    kind="result",
                    text=str(message or ""),
                    is_error=data.get("status") == "error",
                    raw=data,
                )
            ]
        return []


_PROTOCOLS: dict[str, type[WorkerProtocol]] = {
    ClaudeProtocol.name: ClaudeProtocol,
    GeminiProtocol.name: GeminiProtocol,
}


def protocol_for(config: BridgeConfig) -> WorkerProtocol:
    """Return the protocol for ``config.backend``."""
    try:
        return _PROTOCOLS[config.backend](config)
    except KeyError:
        raise ValueError(f"Unknown backend: {config.backend!r}") from None


def _content_blocks(data: dict[str, Any]) -> list[dict[str, Any]]:
    message = data.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]
