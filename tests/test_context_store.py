"""Tests for ContextStore persistence, pins, prompt building and the archive."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest

from snoot.context.store import ContextStore
from snoot.errors import ContextStoreError
from snoot.events.bus import BridgeEvent
from snoot.models.config import ContextConfig
from snoot.models.context import MessagePair

NOW = datetime(2026, 3, 31, 12, 0, tzinfo=UTC)


async def _never_called(prompt: str) -> str:
    raise AssertionError("summariser should not run")


def _archived(store: ContextStore, day: datetime) -> list[MessagePair]:
    lines = store.archive.path_for(day).read_text(encoding="utf-8").splitlines()
    return [MessagePair.model_validate_json(line) for line in lines if line.strip()]


@pytest.fixture
def context_dir(tmp_path):
    return tmp_path / "context"


@pytest.fixture
def make_store(context_dir, event_bus, estimator):
    def _make(clock=lambda: NOW, **config) -> ContextStore:
        return ContextStore(
            context_dir,
            ContextConfig(**config),
            _never_called,
            event_bus=event_bus,
            estimator=estimator,
            clock=clock,
        )

    return _make


async def _record(store: ContextStore, user: str, assistant: str = "ok") -> MessagePair:
    pair = MessagePair(id=store.next_pair_id(), user=user, assistant=assistant)
    await store.append(pair)
    return pair


class TestIds:
    async def test_pins_and_pairs_share_one_counter(self, make_store) -> None:
        store = make_store()
        await store.load()
        pin_a = await store.add_pin("always use uv")
        pair = await _record(store, "hello")
        pin_b = await store.add_pin("prefer tabs")
        assert pin_a.id < pair.id < pin_b.id
        assert len({pin_a.id, pair.id, pin_b.id}) == 3

    async def test_counter_survives_reload(self, make_store) -> None:
        store = make_store()
        await store.load()
        await _record(store, "one")
        await _record(store, "two")

        reloaded = make_store()
        await reloaded.load()
        assert reloaded.next_pair_id() == 3
        assert reloaded.get_state().total_pairs == 2

    async def test_lagging_state_is_bumped_above_window(self, make_store, context_dir) -> None:
        context_dir.mkdir(parents=True)
        (context_dir / "state.json").write_text('{"next_id": 1, "total_pairs": 0, "pins": []}')
        pairs = [MessagePair(id=i, user=f"u{i}", assistant="a") for i in (4, 9)]
        (context_dir / "recent.jsonl").write_text(
            "".join(p.model_dump_json() + "\n" for p in pairs)
        )
        store = make_store()
        await store.load()
        assert store.next_pair_id() == 10


class TestLoading:
    async def test_missing_files_start_empty(self, make_store) -> None:
        store = make_store()
        await store.load()
        assert store.get_recent() == []
        assert store.get_summary() == ""
        assert store.get_state().next_id == 1

    async def test_camel_case_state_loads(self, make_store, context_dir) -> None:
        context_dir.mkdir(parents=True)
        (context_dir / "state.json").write_text(
            json.dumps(
                {
                    "nextId": 7,
                    "totalPairs": 3,
                    "pins": [{"id": 2, "text": "remember me", "timestamp": 1}],
                }
            )
        )
        store = make_store()
        await store.load()
        state = store.get_state()
        assert state.next_id == 7
        assert state.total_pairs == 3
        assert [p.text for p in state.pins] == ["remember me"]

    async def test_corrupt_state_raises(self, make_store, context_dir) -> None:
        context_dir.mkdir(parents=True)
        (context_dir / "state.json").write_text("{not json")
        store = make_store()
        with pytest.raises(ContextStoreError) as exc_info:
            await store.load()
        assert exc_info.value.path.endswith("state.json")

    async def test_bad_recent_lines_skipped(self, make_store, context_dir) -> None:
        context_dir.mkdir(parents=True)
        good = MessagePair(id=1, user="hi", assistant="hello")
        (context_dir / "recent.jsonl").write_text(
            good.model_dump_json() + "\n" + "garbage\n\n" + '{"id": "x"}\n'
        )
        store = make_store()
        await store.load()
        assert [p.id for p in store.get_recent()] == [1]

    async def test_window_sorted_on_load(self, make_store, context_dir) -> None:
        context_dir.mkdir(parents=True)
        pairs = [MessagePair(id=i, user="u", assistant="a") for i in (3, 1, 2)]
        (context_dir / "recent.jsonl").write_text(
            "".join(p.model_dump_json() + "\n" for p in pairs)
        )
        store = make_store()
        await store.load()
        assert [p.id for p in store.get_recent()] == [1, 2, 3]

    async def test_summary_loaded(self, make_store, context_dir) -> None:
        context_dir.mkdir(parents=True)
        (context_dir / "summary.md").write_text("- earlier we chose postgres")
        store = make_store()
        await store.load()
        assert store.get_summary() == "- earlier we chose postgres"


class TestArchive:
    async def test_append_writes_todays_partition(self, make_store, context_dir) -> None:
        store = make_store()
        await store.load()
        await _record(store, "hello", "hi there")
        path = context_dir / "archive" / "archive-2026-03-31.jsonl"
        lines = path.read_text().splitlines()
        assert len(lines) == 1
        assert MessagePair.model_validate_json(lines[0]).assistant == "hi there"

    async def test_partitions_follow_the_clock(self, make_store, context_dir) -> None:
        now = [NOW]
        store = make_store(clock=lambda: now[0])
        await store.load()
        await _record(store, "monday")
        now[0] = NOW + timedelta(days=1)
        await _record(store, "tuesday")
        assert _archived(store, NOW)[0].user == "monday"
        assert _archived(store, now[0])[0].user == "tuesday"

    async def test_retention_sweep(self, make_store, context_dir) -> None:
        archive = context_dir / "archive"
        archive.mkdir(parents=True)
        old = archive / f"archive-{(NOW - timedelta(days=31)):%Y-%m-%d}.jsonl"
        recent = archive / f"archive-{(NOW - timedelta(days=29)):%Y-%m-%d}.jsonl"
        other = archive / "notes.txt"
        for path in (old, recent, other):
            path.write_text("")

        store = make_store()
        await store.load()
        assert not old.exists()
        assert recent.exists()
        assert other.exists()

    async def test_legacy_archive_migrated(self, make_store, context_dir) -> None:
        context_dir.mkdir(parents=True)
        legacy = context_dir / "archive.jsonl"
        pairs = [MessagePair(id=i, user=f"old {i}", assistant="a") for i in (1, 2)]
        legacy.write_text("".join(p.model_dump_json() + "\n" for p in pairs))

        store = make_store()
        await store.load()
        assert not legacy.exists()
        assert [p.user for p in _archived(store, NOW)] == ["old 1", "old 2"]

    async def test_reset_keeps_archive(self, make_store, event_bus) -> None:
        store = make_store()
        await store.load()
        await _record(store, "keep me in the archive")
        await store.add_pin("pin")
        await store.reset()

        assert store.get_recent() == []
        assert store.get_state().pins == []
        assert store.get_state().next_id == 1
        assert _archived(store, NOW)[0].user == "keep me in the archive"
        assert (BridgeEvent.CONTEXT_RESET, {}) in event_bus.collected


class TestPins:
    async def test_remove_pin_item(self, make_store, event_bus) -> None:
        store = make_store()
        await store.load()
        pin = await store.add_pin("x")
        assert await store.remove_pin(pin.id) is True
        assert store.get_state().pins == []
        events = [e for e, _ in event_bus.collected]
        assert BridgeEvent.PIN_ADDED in events and BridgeEvent.PIN_REMOVED in events

    async def test_pin_and_unpin_pair(self, make_store) -> None:
        store = make_store()
        await store.load()
        pair = await _record(store, "important")
        assert await store.set_pair_pinned(pair.id, True) is True
        assert store.get_recent()[0].pinned is True
        assert await store.set_pair_pinned(pair.id, True) is False
        assert await store.remove_pin(pair.id) is True
        assert store.get_recent()[0].pinned is False

    async def test_unknown_id(self, make_store) -> None:
        store = make_store()
        await store.load()
        assert await store.remove_pin(42) is False
        assert await store.set_pair_pinned(42, True) is False

    async def test_pinned_flag_persisted(self, make_store) -> None:
        store = make_store()
        await store.load()
        pair = await _record(store, "important")
        await store.set_pair_pinned(pair.id, True)

        reloaded = make_store()
        await reloaded.load()
        assert reloaded.get_recent()[0].pinned is True

    async def test_accessors_return_copies(self, make_store) -> None:
        store = make_store()
        await store.load()
        await store.add_pin("x")
        store.get_state().pins.clear()
        store.get_recent().append(MessagePair(id=99, user="u", assistant="a"))
        assert len(store.get_state().pins) == 1
        assert store.get_recent() == []


class TestPrompt:
    async def test_sections_in_order(self, make_store, context_dir) -> None:
        context_dir.mkdir(parents=True)
        (context_dir / "summary.md").write_text("SUMMARY-TEXT")
        store = make_store()
        await store.load()
        await store.add_pin("PIN-TEXT")
        await _record(store, "USER-TEXT", "ASSISTANT-TEXT")

        prompt = store.render_prompt()
        positions = [
            prompt.index(marker)
            for marker in ("Snoot", "PIN-TEXT", "SUMMARY-TEXT", "USER-TEXT", "ASSISTANT-TEXT")
        ]
        assert positions == sorted(positions)
        assert "## Pinned Context" in prompt
        assert "## Conversation Summary" in prompt
        assert "## Previous Conversation" in prompt

    async def test_empty_sections_omitted(self, make_store) -> None:
        store = make_store()
        await store.load()
        prompt = store.render_prompt()
        assert "## Pinned Context" not in prompt
        assert "## Conversation Summary" not in prompt
        assert "## Previous Conversation" not in prompt

    async def test_pinned_marker(self, make_store) -> None:
        store = make_store()
        await store.load()
        pair = await _record(store, "keep this")
        await _record(store, "not this")
        await store.set_pair_pinned(pair.id, True)
        prompt = store.render_prompt()
        assert "User [pinned]: keep this" in prompt
        assert "User: not this" in prompt
        assert "[pin #" not in prompt

    async def test_pin_items_numbered(self, make_store) -> None:
        store = make_store()
        await store.load()
        pin = await store.add_pin("use uv")
        assert f"- [pin #{pin.id}] use uv" in store.render_prompt()

    async def test_build_prompt_writes_file(self, make_store, context_dir) -> None:
        store = make_store()
        await store.load()
        await _record(store, "hello")
        path = store.build_prompt()
        assert path == context_dir / "prompt.txt"
        assert path.read_text() == store.render_prompt()

    async def test_estimate_grows_with_window(self, make_store) -> None:
        store = make_store()
        await store.load()
        before = store.estimate_prompt_tokens()
        await _record(store, "a fairly long question " * 20, "an answer " * 20)
        assert store.estimate_prompt_tokens() > before


class TestThreshold:
    async def test_needs_compaction_strictly_above(self, make_store) -> None:
        store = make_store(compact_at=3, window_size=2)
        await store.load()
        for i in range(3):
            await _record(store, f"q{i}")
        assert not store.needs_compaction()
        await _record(store, "q3")
        assert store.needs_compaction()
