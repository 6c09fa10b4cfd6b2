"""Context compaction components."""

from snoot.compaction.planner import CompactionPlan, plan_compaction
from snoot.compaction.summarizer import (
    Summarizer,
    build_compaction_prompt,
    format_for_compaction,
    make_summarizer,
)

__all__ = [
    "CompactionPlan",
    "Summarizer",
    "build_compaction_prompt",
    "format_for_compaction",
    "make_summarizer",
    "plan_compaction",
]
