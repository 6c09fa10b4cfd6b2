"""Shared fixtures for snoot tests."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from snoot.backend.protocols import GeminiProtocol
from snoot.events.bus import BridgeEvent, EventBus
from snoot.models.config import (
    BridgeConfig,
    QueueConfig,
    StreamingConfig,
    SupervisorConfig,
)
from snoot.models.context import MessagePair
from snoot.tokens.estimator import TokenEstimator

FAKE_BACKEND = Path(__file__).parent / "fake_backend.py"


@pytest.fixture
def config(tmp_path):
    """BridgeConfig rooted in a temp dir, with retry and health-check timings shrunk."""
    return BridgeConfig.for_channel(
        "test",
        root=tmp_path,
        backend="gemini",
        supervisor=SupervisorConfig(
            rate_limit_retry_delay=0.01,
            api_error_retry_delays=[0.01, 0.02],
            health_check_interval=0.2,
            graceful_exit_timeout=0.5,
            terminate_timeout=0.5,
        ),
        streaming=StreamingConfig(
            flush_interval=30.0,
            flush_timeout=0.5,
            thinking_after=30.0,
            still_thinking_after=60.0,
        ),
        queue=QueueConfig(stuck_after=300.0),
    )


@pytest.fixture
def estimator():
    """TokenEstimator using heuristic only (no tiktoken required in tests)."""
    e = TokenEstimator()
    e._force_heuristic = True
    return e


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[BridgeEvent, dict[str, Any]]] = []

    def _collect(event: BridgeEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest.fixture
def eventually():
    """Poll a predicate until it holds, failing after *timeout* seconds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait


class ScriptProtocol(GeminiProtocol):
    """Gemini dialect, but the executable is ``fake_backend.py`` playing a plan."""

    def __init__(self, config: BridgeConfig, plan_path: Path) -> None:
        super().__init__(config)
        self._plan_path = plan_path

    def build_argv(self, prompt: str) -> list[str]:
        return [sys.executable, str(FAKE_BACKEND), str(self._plan_path), prompt]


class FakeBackend:
    """Writes plans for ``fake_backend.py`` and reads back what it saw."""

    def __init__(self, directory: Path) -> None:
        self.plan_path = directory / "plan.json"

    def plan(self, *runs: dict[str, Any]) -> None:
        self.plan_path.write_text(json.dumps({"runs": list(runs)}), encoding="utf-8")

    def protocol(self, config: BridgeConfig) -> ScriptProtocol:
        return ScriptProtocol(config, self.plan_path)

    @property
    def invocations(self) -> int:
        counter = self.plan_path.with_suffix(".count")
        return int(counter.read_text()) if counter.exists() else 0

    @property
    def prompts(self) -> list[str]:
        log = self.plan_path.with_suffix(".prompts")
        if not log.exists():
            return []
        return [json.loads(line) for line in log.read_text(encoding="utf-8").splitlines()]


@pytest.fixture
def fake_backend(tmp_path):
    directory = tmp_path / "fake"
    directory.mkdir()
    return FakeBackend(directory)


def reply(*texts: str) -> dict[str, Any]:
    """A successful gemini run streaming *texts*."""
    lines: list[Any] = [{"type": "init", "model": "fake"}]
    lines += [{"type": "message", "role": "assistant", "content": t} for t in texts]
    lines.append({"type": "result", "status": "success"})
    return {"lines": lines}


def failing(message: str) -> dict[str, Any]:
    """A gemini run that reports *message* as an error and produces no text."""
    return {
        "lines": [
            {"type": "init", "model": "fake"},
            {"type": "error", "severity": "error", "message": message},
            {"type": "result", "status": "error"},
        ]
    }


@pytest.fixture
def gemini_reply():
    return reply


@pytest.fixture
def gemini_failure():
    return failing


class FakeMessenger:
    """Records outbound messages; can be told to fail sends."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.on_message: Callable[[str], Any] | None = None
        self.fail_matching: str | None = None

    async def start_listening(self, on_message: Callable[[str], Any]) -> None:
        self.on_message = on_message

    async def send(self, text: str) -> None:
        if self.fail_matching is not None and self.fail_matching in text:
            raise ConnectionError("messenger offline")
        self.sent.append(text)

    async def send_image(self, data: bytes, caption: str | None = None) -> None:
        self.sent.append(f"<image {len(data)} bytes>")

    async def set_avatar(self, data: bytes) -> None:
        pass

    async def get_file(self, ref: str) -> bytes:
        return b""


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def make_pair():
    def _make(pair_id: int, pinned: bool = False, user: str | None = None) -> MessagePair:
        return MessagePair(
            id=pair_id,
            user=user or f"question {pair_id}",
            assistant=f"answer {pair_id}",
            timestamp=1_700_000_000_000 + pair_id,
            pinned=pinned,
        )

    return _make
