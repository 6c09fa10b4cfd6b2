"""Streaming output aggregation."""

from snoot.streaming.aggregator import (
    FlushLock,
    Sender,
    StreamAggregator,
    render_groups,
    split_repeat_count,
)

__all__ = ["FlushLock", "Sender", "StreamAggregator", "render_groups", "split_repeat_count"]
