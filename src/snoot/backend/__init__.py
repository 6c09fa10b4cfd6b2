"""Backend worker processes: CLI protocols and the supervisor."""

from snoot.backend.protocols import ClaudeProtocol, GeminiProtocol, WorkerProtocol, protocol_for
from snoot.backend.supervisor import BackendSupervisor, is_api_error, is_rate_limit_error

__all__ = [
    "BackendSupervisor",
    "ClaudeProtocol",
    "GeminiProtocol",
    "WorkerProtocol",
    "is_api_error",
    "is_rate_limit_error",
    "protocol_for",
]
