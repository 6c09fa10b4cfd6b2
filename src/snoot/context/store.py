"""File-backed context store: recent window, pins, rolling summary, archive.

Layout under ``<base_dir>/context``::

    state.json        counters and pins (ContextState)
    recent.jsonl      the recent window, one MessagePair per line
    summary.md        the rolling summary
    prompt.txt        the last prompt built for a backend invocation
    archive/          day-partitioned append-only history (DailyArchive)

All files are owned by a single running bridge per channel; whole-file
rewrites go through a temp file and ``os.replace`` so a crash never leaves a
half-written window behind.
"""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

import structlog
from pydantic import ValidationError

from snoot.compaction.planner import plan_compaction
from snoot.compaction.summarizer import Summarizer, build_compaction_prompt
from snoot.context.archive import Clock, DailyArchive
from snoot.context.prompt import render_prompt
from snoot.errors import ContextStoreError
from snoot.events.bus import BridgeEvent, EventBus
from snoot.models.config import ContextConfig
from snoot.models.context import CompactionResult, ContextState, MessagePair, PinnedItem
from snoot.tokens.estimator import TokenEstimator


def _atomic_write(path: Path, content: str) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, path)


class ContextStore:
    """
    Durable conversation window handed to every new backend invocation.

    Lifecycle: ``ContextStore(...)`` → :meth:`load` → use (:meth:`append`,
    :meth:`build_prompt`, pins) → :meth:`compact` / :meth:`reset`. Every
    mutating call persists before returning.

    Invariants:
    1. The recent window is sorted by id ascending.
    2. Pins and pinned pairs are never evicted by compaction.
    3. Compaction is all-or-nothing: a summariser failure leaves window and
       summary untouched.
    4. The archive is only ever appended to (and swept by age at load).
    """

    def __init__(
        self,
        context_dir: Path,
        config: ContextConfig,
        summarizer: Summarizer,
        event_bus: EventBus | None = None,
        estimator: TokenEstimator | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._dir = context_dir
        self._config = config
        self._summarizer = summarizer
        self._event_bus = event_bus or EventBus()
        self._estimator = estimator or TokenEstimator()
        self._archive = DailyArchive(context_dir / "archive", config.archive_retention_days, clock)

        self._state = ContextState()
        self._recent: list[MessagePair] = []
        self._summary = ""
        # Bumped by reset() so an in-flight compaction cannot resurrect cleared history.
        self._epoch = 0
        self._compaction_lock = asyncio.Lock()
        self._logger = structlog.get_logger("snoot.context")

    # ── Paths ─────────────────────────────────────────────────────────────────

    @property
    def state_path(self) -> Path:
        return self._dir / "state.json"

    @property
    def recent_path(self) -> Path:
        return self._dir / "recent.jsonl"

    @property
    def summary_path(self) -> Path:
        return self._dir / "summary.md"

    @property
    def prompt_path(self) -> Path:
        return self._dir / "prompt.txt"

    @property
    def archive(self) -> DailyArchive:
        return self._archive

    # ── Loading / persistence ─────────────────────────────────────────────────

    async def load(self) -> None:
        """
        Load persisted state, migrating and sweeping the archive first.

        Raises:
            ContextStoreError: If ``state.json`` exists but cannot be parsed.
        """
        self._archive.directory.mkdir(parents=True, exist_ok=True)
        self._archive.migrate_legacy(self._dir / "archive.jsonl")
        self._archive.sweep()

        if self.state_path.exists():
            try:
                self._state = ContextState.model_validate_json(
                    self.state_path.read_text(encoding="utf-8")
                )
            except ValidationError as exc:
                raise ContextStoreError(str(self.state_path), str(exc)) from exc

        if self.recent_path.exists():
            recent: list[MessagePair] = []
            for lineno, line in enumerate(
                self.recent_path.read_text(encoding="utf-8").splitlines(), start=1
            ):
                if not line.strip():
                    continue
                try:
                    recent.append(MessagePair.model_validate_json(line))
                except ValidationError as exc:
                    self._logger.warning(
                        "recent_line_skipped", line=lineno, error=str(exc).splitlines()[0]
                    )
            self._recent = sorted(recent, key=lambda p: p.id)

        if self.summary_path.exists():
            self._summary = self.summary_path.read_text(encoding="utf-8")

        # Ids must stay unique even if state.json lagged behind recent.jsonl.
        highest = max(
            [p.id for p in self._recent] + [p.id for p in self._state.pins], default=0
        )
        if self._state.next_id <= highest:
            self._state.next_id = highest + 1

        self._logger.info(
            "context_loaded",
            window=len(self._recent),
            total_pairs=self._state.total_pairs,
            pins=len(self._state.pins),
            has_summary=bool(self._summary),
        )

    def _save_state(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.state_path, self._state.model_dump_json(indent=2))

    def _save_recent(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        content = "".join(p.model_dump_json() + "\n" for p in self._recent)
        _atomic_write(self.recent_path, content)

    def _save_summary(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.summary_path, self._summary)

    # ── History ───────────────────────────────────────────────────────────────

    def next_pair_id(self) -> int:
        """Reserve the next id from the shared pair/pin counter."""
        pair_id = self._state.next_id
        self._state.next_id += 1
        return pair_id

    async def append(self, pair: MessagePair) -> None:
        """Record a completed exchange in the window and the archive."""
        self._recent.append(pair)
        if len(self._recent) > 1 and self._recent[-2].id > pair.id:
            self._recent.sort(key=lambda p: p.id)
        self._state.total_pairs += 1
        self._archive.append(pair)
        self._save_recent()
        self._save_state()
        self._logger.debug("pair_appended", pair_id=pair.id, window=len(self._recent))

    def render_prompt(self) -> str:
        """The context prompt as a string."""
        return render_prompt(self._state.pins, self._summary, self._recent)

    def build_prompt(self) -> Path:
        """
        Write the context prompt to ``prompt.txt`` and return its path.

        The file is handed to :meth:`BackendSupervisor.send` as the system
        prompt of the next invocation.
        """
        self._dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.prompt_path, self.render_prompt())
        return self.prompt_path

    def estimate_prompt_tokens(self, backend: str | None = None) -> int:
        """Approximate size of the prompt :meth:`build_prompt` would write."""
        return self._estimator.estimate_cached(self.render_prompt(), backend)

    # ── Compaction ────────────────────────────────────────────────────────────

    def needs_compaction(self) -> bool:
        return len(self._recent) > self._config.compact_at

    async def compact(self) -> CompactionResult:
        """
        Summarise the oldest unpinned pairs into the rolling summary.

        Never raises: a summariser failure is logged, published as
        ``COMPACTION_FAILED`` and reported in the result, and the window is
        left as it was so the next threshold crossing retries.
        """
        async with self._compaction_lock:
            return await self._compact_locked()

    async def _compact_locked(self) -> CompactionResult:
        start_ms = time.time() * 1000
        window_before = len(self._recent)
        plan = plan_compaction(self._recent, self._config.window_size)
        if plan is None:
            return CompactionResult(
                compacted=False, window_before=window_before, window_after=window_before
            )

        epoch = self._epoch
        self._logger.info(
            "compaction_started",
            pairs=len(plan.to_compact),
            pinned=plan.pinned_count,
            window=window_before,
        )
        self._event_bus.publish(BridgeEvent.COMPACTION_TRIGGERED, {"window": window_before})

        prompt = build_compaction_prompt(plan.to_compact, self._summary)
        try:
            new_summary = await self._summarizer(prompt)
        except Exception as exc:
            self._logger.error("compaction_failed", error=str(exc))
            self._event_bus.publish(BridgeEvent.COMPACTION_FAILED, {"error": str(exc)})
            return CompactionResult(
                compacted=False,
                window_before=window_before,
                window_after=len(self._recent),
                elapsed_ms=time.time() * 1000 - start_ms,
                error=str(exc),
            )

        if epoch != self._epoch:
            self._logger.info("compaction_discarded_after_reset")
            return CompactionResult(
                compacted=False,
                window_before=window_before,
                window_after=len(self._recent),
                elapsed_ms=time.time() * 1000 - start_ms,
            )

        # Pairs appended (or pinned) while the summariser ran stay in the window.
        evicted = {p.id for p in plan.to_compact}
        self._summary = new_summary
        self._recent = sorted(
            (p for p in self._recent if p.id not in evicted or p.pinned), key=lambda p: p.id
        )
        self._save_summary()
        self._save_recent()
        self._save_state()

        result = CompactionResult(
            compacted=True,
            compacted_pair_count=len(evicted),
            window_before=window_before,
            window_after=len(self._recent),
            summary_chars=len(new_summary),
            elapsed_ms=time.time() * 1000 - start_ms,
        )
        self._logger.info(
            "compaction_completed",
            pairs=result.compacted_pair_count,
            window_after=result.window_after,
            summary_chars=result.summary_chars,
            elapsed_ms=result.elapsed_ms,
        )
        self._event_bus.publish(BridgeEvent.COMPACTION_COMPLETED, result.model_dump())
        return result

    # ── Pins ──────────────────────────────────────────────────────────────────

    async def add_pin(self, text: str) -> PinnedItem:
        pin = PinnedItem(id=self.next_pair_id(), text=text)
        self._state.pins.append(pin)
        self._save_state()
        self._event_bus.publish(BridgeEvent.PIN_ADDED, {"pin_id": pin.id})
        return pin

    async def remove_pin(self, pin_id: int) -> bool:
        """Remove a pin item, or clear the pinned flag of a pair with that id."""
        for idx, pin in enumerate(self._state.pins):
            if pin.id == pin_id:
                del self._state.pins[idx]
                self._save_state()
                self._event_bus.publish(BridgeEvent.PIN_REMOVED, {"pin_id": pin_id})
                return True
        return await self.set_pair_pinned(pin_id, False)

    async def set_pair_pinned(self, pair_id: int, pinned: bool) -> bool:
        """
        Set or clear the pinned flag of a pair in the recent window.

        Returns:
            False if no pair with *pair_id* is in the window, or the flag
            already had that value.
        """
        for idx, pair in enumerate(self._recent):
            if pair.id == pair_id:
                if pair.pinned == pinned:
                    return False
                self._recent[idx] = pair.model_copy(update={"pinned": pinned})
                self._save_recent()
                event = BridgeEvent.PIN_ADDED if pinned else BridgeEvent.PIN_REMOVED
                self._event_bus.publish(event, {"pin_id": pair_id})
                return True
        return False

    # ── Accessors ─────────────────────────────────────────────────────────────

    def get_state(self) -> ContextState:
        return self._state.model_copy(deep=True)

    def get_recent(self) -> list[MessagePair]:
        return list(self._recent)

    def get_summary(self) -> str:
        return self._summary

    async def reset(self) -> None:
        """Clear window, summary, pins and counters. The archive is kept."""
        self._epoch += 1
        self._state = ContextState()
        self._recent = []
        self._summary = ""
        self._save_state()
        self._save_recent()
        self._save_summary()
        self._logger.info("context_reset")
        self._event_bus.publish(BridgeEvent.CONTEXT_RESET, {})

    def __repr__(self) -> str:
        return (
            f"ContextStore(dir={str(self._dir)!r}, window={len(self._recent)}, "
            f"pins={len(self._state.pins)})"
        )
