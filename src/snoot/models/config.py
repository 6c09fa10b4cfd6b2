"""Configuration models for a snoot bridge and its components."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator

Mode = Literal["chat", "research", "coding"]
Backend = Literal["claude", "gemini"]

VALID_MODES: tuple[Mode, ...] = ("chat", "research", "coding")
VALID_BACKENDS: tuple[Backend, ...] = ("claude", "gemini")

TOOLS_BY_MODE: dict[str, str] = {
    "chat": "",
    "research": "Read,Grep,Glob,WebSearch,WebFetch",
    "coding": "Read,Grep,Glob,Edit,Write,Bash,WebSearch,WebFetch",
}


class ContextConfig(BaseModel):
    """Sliding-window and archive settings for the context store."""

    compact_at: int = Field(
        default=20,
        ge=1,
        description="Compaction is needed once the recent window holds more pairs than this.",
    )

    window_size: int = Field(
        default=15,
        ge=1,
        description="Number of pairs kept in the recent window after compaction.",
    )

    archive_retention_days: int = Field(
        default=30,
        ge=1,
        description="Day-partitioned archive files older than this are deleted at load.",
    )

    @model_validator(mode="after")
    def validate_window(self) -> ContextConfig:
        if self.window_size > self.compact_at:
            raise ValueError("window_size must not exceed compact_at")
        return self


class CompactionConfig(BaseModel):
    """Settings for the rolling-summary summariser."""

    summarizer: Literal["cli", "litellm"] = "cli"
    """Which summarisation backend compaction calls."""

    cli_command: list[str] = Field(
        default_factory=lambda: ["claude", "-p", "--model", "haiku", "--no-session-persistence"],
        description="argv of the fast summariser CLI. The prompt is written to its stdin.",
    )

    model: str = Field(
        default="anthropic/claude-haiku-4-5",
        description="litellm model string used when summarizer='litellm'.",
    )

    max_tokens: int = Field(default=4_096, ge=256, le=64_000)

    timeout: float = Field(
        default=180.0,
        gt=0,
        description="Seconds to wait for a summary before treating compaction as failed.",
    )


class SupervisorConfig(BaseModel):
    """Lifecycle and retry policy of the backend worker process."""

    claude_command: str = "claude"
    gemini_command: str = "gemini"

    rate_limit_retry_delay: float = Field(default=30.0, ge=0)
    max_rate_limit_retries: int = Field(default=5, ge=0, le=20)

    api_error_retry_delays: list[float] = Field(
        default_factory=lambda: [30.0, 60.0],
        description="Delay before each API-error retry; its length is the attempt ceiling.",
    )

    health_check_interval: float = Field(
        default=20.0,
        gt=0,
        description="Seconds between liveness checks of a running worker.",
    )

    graceful_exit_timeout: float = Field(default=5.0, ge=0)
    terminate_timeout: float = Field(default=3.0, ge=0)

    stream_limit: int = Field(
        default=16 * 1024 * 1024,
        ge=64 * 1024,
        description="Maximum length in bytes of a single NDJSON line from the worker.",
    )


class StreamingConfig(BaseModel):
    """Pacing of partial output sent back to the messenger."""

    flush_interval: float = Field(default=30.0, gt=0)

    flush_timeout: float = Field(
        default=10.0,
        gt=0,
        description="How long a flush waits for the previous one before giving up.",
    )

    thinking_after: float = Field(default=5.0, ge=0)
    still_thinking_after: float = Field(default=90.0, ge=0)


class QueueConfig(BaseModel):
    """Inbound message queue settings."""

    command_prefix: str = Field(default="/", min_length=1, max_length=1)

    stuck_after: float = Field(
        default=300.0,
        gt=0,
        description="A turn processing longer than this is considered stuck.",
    )

    kill_on_stuck: bool = True
    """Also kill the backend process when the stuck-turn watchdog fires."""


class BridgeConfig(BaseModel):
    """
    Top-level configuration for one snoot channel.

    All sub-configs have defaults and can be overridden individually.

    Example::

        config = BridgeConfig.for_channel(
            "work",
            context=ContextConfig(compact_at=30, window_size=20),
            backend="gemini",
        )
    """

    channel: str = Field(min_length=1)
    mode: Mode = "coding"
    backend: Backend = "claude"
    budget_usd: float | None = Field(
        default=None,
        gt=0,
        description="Per-process spend ceiling passed to the claude CLI. None = no limit.",
    )
    work_dir: Path = Field(default_factory=Path.cwd)
    base_dir: Path

    context: ContextConfig = Field(default_factory=ContextConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)

    @classmethod
    def for_channel(
        cls,
        channel: str,
        root: Path | str | None = None,
        **overrides: object,
    ) -> BridgeConfig:
        """
        Build a config using the default per-channel layout ``<root>/.snoot/<channel>``.

        Args:
            channel: Channel name; also the data directory name.
            root: Project root. Defaults to the current working directory.
            **overrides: Any other ``BridgeConfig`` field.
        """
        base = Path(root) if root is not None else Path.cwd()
        fields: dict[str, object] = {"base_dir": base / ".snoot" / channel, "work_dir": base}
        fields.update(overrides)
        return cls(channel=channel, **fields)

    @property
    def context_dir(self) -> Path:
        return self.base_dir / "context"

    @property
    def backend_label(self) -> str:
        """Human-facing backend name, e.g. ``Claude``."""
        return self.backend.capitalize()
