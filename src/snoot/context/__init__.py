"""Durable conversation context: window, pins, summary, archive."""

from snoot.context.archive import DailyArchive
from snoot.context.prompt import SYSTEM_PREAMBLE, render_prompt
from snoot.context.store import ContextStore

__all__ = ["ContextStore", "DailyArchive", "SYSTEM_PREAMBLE", "render_prompt"]
