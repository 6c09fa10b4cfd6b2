"""
Snoot — a messenger bridge to ephemeral LLM CLI backends.

Primary entry point::

    from snoot import BridgeConfig, Orchestrator

    config = BridgeConfig.for_channel("work", backend="claude", mode="coding")
    bridge = await Orchestrator.create(config, messenger)
    await bridge.start()
"""

from snoot.backend import BackendSupervisor, ClaudeProtocol, GeminiProtocol, WorkerProtocol
from snoot.commands import CommandContext, CommandResult, handle_command
from snoot.context import ContextStore, DailyArchive
from snoot.errors import CompactionError, ContextStoreError, SnootError, SpawnError
from snoot.events.bus import BridgeEvent, EventBus
from snoot.messenger import MessengerClient, chunk_text
from snoot.models import (
    BackendEvent,
    BackendStatus,
    BridgeConfig,
    ChunkEntry,
    CompactionConfig,
    CompactionResult,
    ContextConfig,
    ContextState,
    InvocationOutcome,
    MessagePair,
    PinnedItem,
    QueueConfig,
    StreamingConfig,
    SupervisorConfig,
    SupervisorState,
    TextChunk,
    ToolChunk,
)
from snoot.orchestrator import Orchestrator
from snoot.queue import MessageQueue
from snoot.streaming import StreamAggregator
from snoot.tokens import TokenEstimator

__version__ = "0.1.0"

__all__ = [
    # Core
    "Orchestrator",
    "BackendSupervisor",
    "ContextStore",
    "DailyArchive",
    "MessageQueue",
    "StreamAggregator",
    "TokenEstimator",
    # Protocols
    "ClaudeProtocol",
    "GeminiProtocol",
    "WorkerProtocol",
    "MessengerClient",
    "chunk_text",
    # Commands
    "CommandContext",
    "CommandResult",
    "handle_command",
    # Config
    "BridgeConfig",
    "CompactionConfig",
    "ContextConfig",
    "QueueConfig",
    "StreamingConfig",
    "SupervisorConfig",
    # Models
    "BackendEvent",
    "BackendStatus",
    "ChunkEntry",
    "CompactionResult",
    "ContextState",
    "InvocationOutcome",
    "MessagePair",
    "PinnedItem",
    "SupervisorState",
    "TextChunk",
    "ToolChunk",
    # Events
    "BridgeEvent",
    "EventBus",
    # Errors
    "CompactionError",
    "ContextStoreError",
    "SnootError",
    "SpawnError",
]
