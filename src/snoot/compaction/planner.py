"""Selection of the pairs a compaction pass evicts from the recent window."""

from __future__ import annotations

from dataclasses import dataclass

from snoot.models.context import MessagePair


@dataclass(frozen=True)
class CompactionPlan:
    """Which pairs a compaction pass summarises."""

    to_compact: list[MessagePair]
    """Oldest unpinned pairs, in window order."""
    pinned_count: int


def plan_compaction(window: list[MessagePair], window_size: int) -> CompactionPlan | None:
    """
    Decide what a compaction pass over *window* would evict.

    Pinned pairs are never selected. When pins alone fill (or overfill) the
    nominal window, or when there are no more unpinned pairs than fit beside
    the pins, there is nothing to do and None is returned.

    Args:
        window: The recent window, sorted by id.
        window_size: Target window length after compaction.

    Returns:
        A plan, or None when the pass would be a no-op.
    """
    if len(window) <= window_size:
        return None

    pinned = [p for p in window if p.pinned]
    unpinned = [p for p in window if not p.pinned]

    target_unpinned = window_size - len(pinned)
    if target_unpinned <= 0 or len(unpinned) <= target_unpinned:
        return None

    cut = len(unpinned) - target_unpinned
    return CompactionPlan(to_compact=unpinned[:cut], pinned_count=len(pinned))
