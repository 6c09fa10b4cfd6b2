"""snoot event bus."""

from snoot.events.bus import BridgeEvent, EventBus, Handler
from snoot.events.payloads import (
    ActivityPayload,
    ApiErrorPayload,
    BackendExitedPayload,
    BackendSpawnedPayload,
    ChunkPayload,
    CompactionCompletedPayload,
    CompactionFailedPayload,
    CompactionTriggeredPayload,
    MessagesBatchedPayload,
    PinPayload,
    RateLimitedPayload,
    TurnCompletedPayload,
    TurnStartedPayload,
)

__all__ = [
    "ActivityPayload",
    "ApiErrorPayload",
    "BackendExitedPayload",
    "BackendSpawnedPayload",
    "BridgeEvent",
    "ChunkPayload",
    "CompactionCompletedPayload",
    "CompactionFailedPayload",
    "CompactionTriggeredPayload",
    "EventBus",
    "Handler",
    "MessagesBatchedPayload",
    "PinPayload",
    "RateLimitedPayload",
    "TurnCompletedPayload",
    "TurnStartedPayload",
]
