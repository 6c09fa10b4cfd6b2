"""Control commands (``/status``, ``/pin`` …) answered outside the message queue."""

from __future__ import annotations

from dataclasses import dataclass

from snoot.backend.supervisor import BackendSupervisor
from snoot.context.store import ContextStore
from snoot.models.config import VALID_BACKENDS, VALID_MODES, Backend, BridgeConfig
from snoot.models.context import CompactionResult
from snoot.queue import MessageQueue


@dataclass
class CommandResult:
    """
    Reply to a control command plus the side effects the orchestrator applies.

    The orchestrator applies flags in this order: ``reset_context`` (which
    implies killing the backend), ``restart_process``, ``switch_backend``,
    ``kill_process``, ``trigger_compaction``; then it sends ``response``.
    """

    response: str
    kill_process: bool = False
    trigger_compaction: bool = False
    restart_process: bool = False
    reset_context: bool = False
    switch_backend: Backend | None = None


@dataclass
class CommandContext:
    """Everything a command may inspect or mutate."""

    config: BridgeConfig
    store: ContextStore
    supervisor: BackendSupervisor
    queue: MessageQueue | None = None


HELP_LINES = [
    "Snoot commands:",
    "  /help — show this message",
    "  /status — show current state",
    "  /context — show summary and pins",
    "  /mode <chat|research|coding> — switch mode (current: {mode})",
    "  /claude, /gemini — switch backend (current: {backend})",
    "  /pin <text> — pin context that survives compaction",
    "  /pin — pin the most recent exchange",
    "  /unpin <id> — remove a pinned item",
    "  /compact — force context compaction",
    "  /cancel — stop the current response",
    "  /forget or /clear — clear all context and restart",
    "  /restart — restart snoot",
]


def describe_compaction(result: CompactionResult) -> str:
    if result.error:
        return f"Compaction failed: {result.error}"
    if not result.compacted:
        return "Nothing to compact."
    return (
        f"Compacted {result.compacted_pair_count} messages into the summary "
        f"({result.window_before} → {result.window_after} in window)."
    )


async def handle_command(text: str, ctx: CommandContext) -> CommandResult | None:
    """
    Dispatch one control command.

    Returns:
        None if *text* does not start with the command prefix, otherwise the
        reply. Unknown commands get an explanatory reply rather than None.
    """
    config = ctx.config
    trimmed = text.strip()
    if not trimmed.startswith(config.queue.command_prefix):
        return None

    cmd, _, args = trimmed.partition(" ")
    cmd = cmd.lower()[len(config.queue.command_prefix) :]
    args = args.strip()

    if cmd == "help":
        return CommandResult(
            "\n".join(HELP_LINES).format(mode=config.mode, backend=config.backend)
        )

    if cmd == "status":
        return CommandResult(_status(ctx))

    if cmd == "context":
        return CommandResult(_context(ctx))

    if cmd == "mode":
        mode = args.lower()
        if mode not in VALID_MODES:
            return CommandResult(f"Invalid mode. Choose: {', '.join(VALID_MODES)}")
        if mode == config.mode:
            return CommandResult(f"Already in {mode} mode.")
        config.mode = mode  # type: ignore[assignment]
        return CommandResult(
            f"Switched to {mode} mode. {config.backend_label} process will restart with new tools.",
            kill_process=True,
        )

    if cmd in VALID_BACKENDS:
        if cmd == config.backend:
            return CommandResult(f"Already using {cmd}.")
        return CommandResult(
            f"Switched to {cmd}. Next message will use {cmd}.",
            switch_backend=cmd,  # type: ignore[arg-type]
        )

    if cmd == "pin":
        if args:
            pin = await ctx.store.add_pin(args)
            return CommandResult(
                f"Pinned #{pin.id}. Use /context to see all pins, /unpin <id> to remove."
            )
        recent = ctx.store.get_recent()
        if not recent:
            return CommandResult("Nothing to pin yet. Usage: /pin <text to pin>")
        latest = recent[-1]
        if not await ctx.store.set_pair_pinned(latest.id, True):
            return CommandResult(f"Exchange #{latest.id} is already pinned.")
        return CommandResult(f"Pinned the last exchange as #{latest.id}.")

    if cmd == "unpin":
        try:
            pin_id = int(args)
        except ValueError:
            return CommandResult("Usage: /unpin <id>")
        if await ctx.store.remove_pin(pin_id):
            return CommandResult(f"Pin #{pin_id} removed. Use /context to see remaining pins.")
        return CommandResult(f"No pin #{pin_id}. Use /context to see pins.")

    if cmd == "compact":
        return CommandResult("Compacting context...", kill_process=True, trigger_compaction=True)

    if cmd == "cancel":
        status = ctx.supervisor.get_status()
        if not status.alive and not status.busy:
            return CommandResult("Nothing to cancel.")
        return CommandResult("Cancelled.", kill_process=True)

    if cmd in ("forget", "clear"):
        return CommandResult(
            "Context cleared. Starting fresh.", kill_process=True, reset_context=True
        )

    if cmd == "restart":
        return CommandResult("Restarting snoot...", kill_process=True, restart_process=True)

    return CommandResult(
        f"Unknown command: {trimmed.split()[0]}. Type /help for available commands."
    )


def _status(ctx: CommandContext) -> str:
    config = ctx.config
    state = ctx.store.get_state()
    backend = ctx.supervisor.get_status()
    lines = [
        f"Mode: {config.mode}",
        f"Backend: {config.backend}",
        f"{config.backend_label} process: {'alive' if backend.alive else 'idle'} ({backend.state})",
        f"Messages: {state.total_pairs} total, {len(ctx.store.get_recent())} in window",
        f"Pins: {len(state.pins)}",
        f"Compaction at: {config.context.compact_at} messages",
        f"Prompt size: ~{ctx.store.estimate_prompt_tokens(config.backend):,} tokens",
    ]
    if ctx.queue is not None and ctx.queue.pending_count:
        lines.append(f"Queued: {ctx.queue.pending_count} messages")
    return "\n".join(lines)


def _context(ctx: CommandContext) -> str:
    state = ctx.store.get_state()
    recent = ctx.store.get_recent()
    summary = ctx.store.get_summary()
    parts: list[str] = []

    if state.pins:
        parts.append("Pinned items:")
        parts.extend(f"  #{pin.id}: {pin.text}" for pin in state.pins)
    else:
        parts.append("No pinned items.")

    pinned_pairs = [pair for pair in recent if pair.pinned]
    if pinned_pairs:
        parts.append("Pinned exchanges:")
        parts.extend(f"  #{pair.id}: {pair.user[:80]}" for pair in pinned_pairs)

    if summary:
        parts.append("\nSummary:")
        parts.append(summary)
    else:
        parts.append("\nNo summary yet.")

    parts.append(f"\n{len(recent)} messages in current window.")
    parts.append(f"Prompt size: ~{ctx.store.estimate_prompt_tokens(ctx.config.backend):,} tokens")
    return "\n".join(parts)
