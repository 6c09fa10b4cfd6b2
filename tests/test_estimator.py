"""Tests for TokenEstimator."""

from __future__ import annotations

from snoot.tokens.estimator import TokenEstimator


class TestTokenEstimator:
    def test_empty_text_is_zero(self, estimator) -> None:
        assert estimator.estimate("") == 0

    def test_heuristic_minimum_one(self, estimator) -> None:
        assert estimator.estimate("hi") == 1
        assert estimator.estimate("x" * 400) == 100

    def test_claude_uses_denser_heuristic(self) -> None:
        estimator = TokenEstimator()
        assert estimator.estimate("x" * 300, "claude") == 100

    def test_no_backend_is_heuristic(self) -> None:
        assert TokenEstimator().estimate("x" * 40) == 10

    def test_cached_estimate_reused(self, estimator) -> None:
        text = "the rolling summary " * 10
        first = estimator.estimate_cached(text, "gemini")
        estimator._force_heuristic = False
        estimator._encoder_cache["cl100k_base"] = None  # would fail if re-encoded
        assert estimator.estimate_cached(text, "gemini") == first

    def test_content_hash_stable(self) -> None:
        assert TokenEstimator.content_hash("abc") == TokenEstimator.content_hash("abc")
        assert TokenEstimator.content_hash("abc") != TokenEstimator.content_hash("abd")

    def test_count_cache_is_bounded(self, monkeypatch) -> None:
        monkeypatch.setattr("snoot.tokens.estimator._COUNT_CACHE_SIZE", 3)
        estimator = TokenEstimator()
        for i in range(5):
            estimator.estimate_cached(f"summary {i}")
        assert len(estimator._count_cache) == 3
        assert f"None:{TokenEstimator.content_hash('summary 0')}" not in estimator._count_cache
        assert f"None:{TokenEstimator.content_hash('summary 4')}" in estimator._count_cache
