"""snoot data models."""

from snoot.models.backend import (
    BackendEvent,
    BackendStatus,
    EventKind,
    InvocationOutcome,
    SupervisorState,
)
from snoot.models.config import (
    TOOLS_BY_MODE,
    VALID_BACKENDS,
    VALID_MODES,
    Backend,
    BridgeConfig,
    CompactionConfig,
    ContextConfig,
    Mode,
    QueueConfig,
    StreamingConfig,
    SupervisorConfig,
)
from snoot.models.context import (
    ChunkEntry,
    CompactionResult,
    ContextState,
    MessagePair,
    PinnedItem,
    TextChunk,
    ToolChunk,
    now_ms,
)

__all__ = [
    # Config
    "Backend",
    "BridgeConfig",
    "CompactionConfig",
    "ContextConfig",
    "Mode",
    "QueueConfig",
    "StreamingConfig",
    "SupervisorConfig",
    "TOOLS_BY_MODE",
    "VALID_BACKENDS",
    "VALID_MODES",
    # History
    "ContextState",
    "MessagePair",
    "PinnedItem",
    "now_ms",
    # Streaming
    "ChunkEntry",
    "TextChunk",
    "ToolChunk",
    # Backend
    "BackendEvent",
    "BackendStatus",
    "EventKind",
    "InvocationOutcome",
    "SupervisorState",
    # Results
    "CompactionResult",
]
