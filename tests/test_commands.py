"""Tests for control command parsing and their side-effect flags."""

from __future__ import annotations

import asyncio

import pytest

from snoot.backend.supervisor import BackendSupervisor
from snoot.commands import CommandContext, CommandResult, describe_compaction, handle_command
from snoot.context.store import ContextStore
from snoot.models.context import CompactionResult, MessagePair
from snoot.queue import MessageQueue


async def _summary(prompt: str) -> str:
    return "- summary"


@pytest.fixture
async def ctx(config, event_bus, estimator):
    store = ContextStore(
        config.context_dir, config.context, _summary, event_bus=event_bus, estimator=estimator
    )
    await store.load()
    supervisor = BackendSupervisor(config, event_bus=event_bus)
    return CommandContext(config=config, store=store, supervisor=supervisor)


async def _record(store: ContextStore, user: str) -> MessagePair:
    pair = MessagePair(id=store.next_pair_id(), user=user, assistant="ok")
    await store.append(pair)
    return pair


class TestDispatch:
    async def test_plain_text_is_not_a_command(self, ctx) -> None:
        assert await handle_command("hello there", ctx) is None

    async def test_unknown_command(self, ctx) -> None:
        result = await handle_command("/frobnicate now", ctx)
        assert result == CommandResult(
            "Unknown command: /frobnicate. Type /help for available commands."
        )

    async def test_case_and_whitespace_insensitive(self, ctx) -> None:
        result = await handle_command("  /HELP  ", ctx)
        assert result is not None
        assert result.response.startswith("Snoot commands:")

    async def test_help_shows_current_settings(self, ctx) -> None:
        result = await handle_command("/help", ctx)
        assert "(current: coding)" in result.response
        assert "(current: gemini)" in result.response


class TestMode:
    async def test_switch_mode_kills_process(self, ctx) -> None:
        result = await handle_command("/mode research", ctx)
        assert result.kill_process is True
        assert ctx.config.mode == "research"
        assert "Gemini process will restart" in result.response

    async def test_same_mode(self, ctx) -> None:
        result = await handle_command("/mode coding", ctx)
        assert result == CommandResult("Already in coding mode.")

    @pytest.mark.parametrize("arg", ["", "yolo"])
    async def test_invalid_mode(self, ctx, arg) -> None:
        result = await handle_command(f"/mode {arg}", ctx)
        assert result.response == "Invalid mode. Choose: chat, research, coding"
        assert ctx.config.mode == "coding"
        assert result.kill_process is False


class TestBackendSwitch:
    async def test_switch(self, ctx) -> None:
        result = await handle_command("/claude", ctx)
        assert result.switch_backend == "claude"
        assert result.response == "Switched to claude. Next message will use claude."

    async def test_already_active(self, ctx) -> None:
        result = await handle_command("/gemini", ctx)
        assert result == CommandResult("Already using gemini.")


class TestPins:
    async def test_pin_text(self, ctx) -> None:
        result = await handle_command("/pin always answer in French", ctx)
        pins = ctx.store.get_state().pins
        assert [p.text for p in pins] == ["always answer in French"]
        assert result.response.startswith(f"Pinned #{pins[0].id}.")

    async def test_pin_latest_exchange(self, ctx) -> None:
        await _record(ctx.store, "first")
        latest = await _record(ctx.store, "second")
        result = await handle_command("/pin", ctx)
        assert result.response == f"Pinned the last exchange as #{latest.id}."
        assert [p.id for p in ctx.store.get_recent() if p.pinned] == [latest.id]

        again = await handle_command("/pin", ctx)
        assert again.response == f"Exchange #{latest.id} is already pinned."

    async def test_pin_with_empty_window(self, ctx) -> None:
        result = await handle_command("/pin", ctx)
        assert result.response == "Nothing to pin yet. Usage: /pin <text to pin>"

    async def test_unpin(self, ctx) -> None:
        pin = await ctx.store.add_pin("temporary")
        result = await handle_command(f"/unpin {pin.id}", ctx)
        assert result.response.startswith(f"Pin #{pin.id} removed.")
        assert ctx.store.get_state().pins == []

    async def test_unpin_unknown_and_malformed(self, ctx) -> None:
        assert (await handle_command("/unpin 99", ctx)).response.startswith("No pin #99.")
        assert (await handle_command("/unpin abc", ctx)).response == "Usage: /unpin <id>"


class TestLifecycleCommands:
    async def test_compact(self, ctx) -> None:
        result = await handle_command("/compact", ctx)
        assert result.kill_process and result.trigger_compaction

    @pytest.mark.parametrize("cmd", ["/forget", "/clear"])
    async def test_forget(self, ctx, cmd) -> None:
        result = await handle_command(cmd, ctx)
        assert result.reset_context and result.kill_process
        assert result.response == "Context cleared. Starting fresh."

    async def test_restart(self, ctx) -> None:
        result = await handle_command("/restart", ctx)
        assert result.restart_process and result.kill_process

    async def test_cancel_when_idle(self, ctx) -> None:
        result = await handle_command("/cancel", ctx)
        assert result == CommandResult("Nothing to cancel.")

    async def test_cancel_while_running(
        self, config, event_bus, fake_backend, gemini_reply, eventually
    ) -> None:
        run = gemini_reply("partial")
        run["lines"] = run["lines"][:-1]
        run["sleep"] = 10
        fake_backend.plan(run)
        supervisor = BackendSupervisor(
            config, event_bus=event_bus, protocol=fake_backend.protocol(config)
        )
        store = ContextStore(config.context_dir, config.context, _summary)
        ctx = CommandContext(config=config, store=store, supervisor=supervisor)

        supervisor.send("work hard")
        waiter = asyncio.ensure_future(supervisor.wait_for_response())
        await eventually(supervisor.is_alive)
        result = await handle_command("/cancel", ctx)
        assert result == CommandResult("Cancelled.", kill_process=True)

        await supervisor.kill()
        await waiter


class TestReports:
    async def test_status(self, ctx) -> None:
        await _record(ctx.store, "hello")
        await ctx.store.add_pin("pin")
        text = (await handle_command("/status", ctx)).response
        assert "Mode: coding" in text
        assert "Backend: gemini" in text
        assert "Gemini process: idle (idle)" in text
        assert "Messages: 1 total, 1 in window" in text
        assert "Pins: 1" in text
        assert "Compaction at: 20 messages" in text
        assert "Prompt size: ~" in text

    async def test_status_shows_queue(self, ctx) -> None:
        gate = asyncio.Event()

        async def handler(text: str, count: int) -> None:
            await gate.wait()

        ctx.queue = MessageQueue(handler)
        ctx.queue.enqueue("busy")
        await asyncio.sleep(0)
        ctx.queue.enqueue("waiting")
        text = (await handle_command("/status", ctx)).response
        assert "Queued: 1 messages" in text
        gate.set()
        await ctx.queue.wait_idle()

    async def test_context_empty(self, ctx) -> None:
        text = (await handle_command("/context", ctx)).response
        assert "No pinned items." in text
        assert "No summary yet." in text
        assert "0 messages in current window." in text

    async def test_context_lists_pins_and_pinned_exchanges(self, ctx) -> None:
        pin = await ctx.store.add_pin("use uv")
        pair = await _record(ctx.store, "the important question")
        await ctx.store.set_pair_pinned(pair.id, True)
        text = (await handle_command("/context", ctx)).response
        assert f"#{pin.id}: use uv" in text
        assert "Pinned exchanges:" in text
        assert f"#{pair.id}: the important question" in text


class TestDescribeCompaction:
    def test_messages(self) -> None:
        assert describe_compaction(CompactionResult(compacted=False)) == "Nothing to compact."
        assert describe_compaction(
            CompactionResult(compacted=False, error="boom")
        ) == "Compaction failed: boom"
        done = CompactionResult(
            compacted=True, compacted_pair_count=6, window_before=21, window_after=15
        )
        assert describe_compaction(done) == (
            "Compacted 6 messages into the summary (21 → 15 in window)."
        )
