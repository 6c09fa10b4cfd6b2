"""Token estimation for prompts assembled by the context store."""

from __future__ import annotations

import hashlib
from typing import Any

# Encoding used for every backend that is not estimated heuristically.
_DEFAULT_ENCODING = "cl100k_base"
_COUNT_CACHE_SIZE = 256


class TokenEstimator:
    """
    Approximate token counting with caching and graceful fallback.

    Priority order:
    1. Character heuristic (``len // 3``) for the claude backend.
    2. tiktoken ``cl100k_base`` for other backends.
    3. Character heuristic (``len // 4``) when tiktoken is unavailable.

    Counts are only ever displayed (``/status``, ``/context``) and logged; they
    never gate compaction, which is driven by pair counts.
    """

    def __init__(self) -> None:
        self._encoder_cache: dict[str, Any] = {}
        self._count_cache: dict[str, int] = {}
        self._force_heuristic: bool = False
        """Set to True in tests to skip tiktoken import."""

    def estimate(self, text: str, backend: str | None = None) -> int:
        """
        Estimate the token count for a string.

        Args:
            text: The text to estimate.
            backend: Backend name (``"claude"``, ``"gemini"``). Heuristic when None.

        Returns:
            Estimated token count, always >= 1 for non-empty text.
        """
        if not text:
            return 0
        if self._force_heuristic or backend is None:
            return self._heuristic(text)
        if backend == "claude":
            return max(1, len(text) // 3)
        try:
            return self._tiktoken_estimate(text, _DEFAULT_ENCODING)
        except Exception:
            return self._heuristic(text)

    def estimate_cached(self, text: str, backend: str | None = None) -> int:
        """
        Estimate with caching keyed by content hash.

        Use for text that is re-estimated unchanged across turns, such as the
        rolling summary.
        """
        cache_key = f"{backend}:{self.content_hash(text)}"
        if cache_key in self._count_cache:
            return self._count_cache[cache_key]
        count = self.estimate(text, backend)
        if len(self._count_cache) >= _COUNT_CACHE_SIZE:
            # Evict the oldest insertion.
            del self._count_cache[next(iter(self._count_cache))]
        self._count_cache[cache_key] = count
        return count

    def _heuristic(self, text: str) -> int:
        """Conservative heuristic: 4 characters per token, minimum 1."""
        return max(1, len(text) // 4)

    def _tiktoken_estimate(self, text: str, encoding_name: str) -> int:
        """Encode with tiktoken, caching the encoder object."""
        if encoding_name not in self._encoder_cache:
            import tiktoken

            self._encoder_cache[encoding_name] = tiktoken.get_encoding(encoding_name)
        encoder = self._encoder_cache[encoding_name]
        return len(encoder.encode(text))

    @staticmethod
    def content_hash(text: str) -> str:
        """Return a stable SHA-256 hex digest for use as a cache key."""
        return hashlib.sha256(text.encode()).hexdigest()
