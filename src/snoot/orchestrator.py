"""Orchestrator — wires messenger, queue, backend, aggregator and context store."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from snoot.backend.supervisor import BackendSupervisor
from snoot.commands import CommandContext, CommandResult, describe_compaction, handle_command
from snoot.compaction.summarizer import Summarizer, make_summarizer
from snoot.context.store import ContextStore
from snoot.errors import ContextStoreError
from snoot.events.bus import BridgeEvent, EventBus
from snoot.messenger import MessengerClient
from snoot.models.config import Backend, BridgeConfig
from snoot.models.context import MessagePair
from snoot.queue import MessageQueue
from snoot.streaming.aggregator import StreamAggregator

SupervisorFactory = Callable[[BridgeConfig, EventBus], BackendSupervisor]
RestartHook = Callable[[], Awaitable[None]]

_INLINE_SVG = re.compile(
    r'<svg\s[^>]*xmlns="http://www\.w3\.org/2000/svg"[^>]*>.*?</svg>', re.DOTALL
)


def strip_inline_svg(text: str) -> str:
    """Replace inline SVG documents with ``[image]`` before the text is recorded."""
    return _INLINE_SVG.sub("[image]", text)


def _default_supervisor(config: BridgeConfig, event_bus: EventBus) -> BackendSupervisor:
    return BackendSupervisor(config, event_bus=event_bus)


class Orchestrator:
    """
    Composition root for one snoot channel.

    Per turn: messenger → :class:`MessageQueue` → :meth:`_handle_turn` →
    :class:`BackendSupervisor` → :class:`StreamAggregator` → messenger. The
    :class:`ContextStore` is read when the turn starts (prompt build) and
    written once the response is final (append, then maybe compact).

    Control commands bypass the queue and are answered even while a turn is
    in flight.

    Usage::

        bridge = await Orchestrator.create(BridgeConfig.for_channel("work"), messenger)
        await bridge.start()
        ...
        await bridge.shutdown()
    """

    def __init__(
        self,
        config: BridgeConfig,
        messenger: MessengerClient,
        *,
        store: ContextStore | None = None,
        summarizer: Summarizer | None = None,
        supervisor_factory: SupervisorFactory | None = None,
        event_bus: EventBus | None = None,
        restart_hook: RestartHook | None = None,
    ) -> None:
        self._config = config
        self._messenger = messenger
        self._event_bus = event_bus or EventBus()
        self._store = store or ContextStore(
            config.context_dir,
            config.context,
            summarizer or make_summarizer(config.compaction),
            event_bus=self._event_bus,
        )
        self._supervisor_factory = supervisor_factory or _default_supervisor
        self._restart_hook = restart_hook
        self._aggregator = StreamAggregator(messenger.send, config.streaming)
        self._queue = MessageQueue(
            self._handle_turn,
            config.queue,
            on_error=self._report_error,
            on_stuck=self._on_stuck,
            event_bus=self._event_bus,
        )
        self._supervisor = self._build_supervisor()
        self._command_tasks: set[asyncio.Task[None]] = set()
        self._shutting_down = False
        self._logger = structlog.get_logger("snoot.orchestrator").bind(channel=config.channel)

    @classmethod
    async def create(
        cls, config: BridgeConfig, messenger: MessengerClient, **kwargs: Any
    ) -> Orchestrator:
        """Construct an orchestrator and load the channel's persisted context."""
        orchestrator = cls(config, messenger, **kwargs)
        await orchestrator.load()
        return orchestrator

    # ── Accessors ─────────────────────────────────────────────────────────────

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def store(self) -> ContextStore:
        return self._store

    @property
    def supervisor(self) -> BackendSupervisor:
        return self._supervisor

    @property
    def queue(self) -> MessageQueue:
        return self._queue

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def load(self) -> None:
        try:
            await self._store.load()
        except ContextStoreError as exc:
            self._logger.error("context_load_failed_starting_fresh", error=str(exc))

    async def start(self) -> None:
        """Start listening and greet the operator."""
        await self._messenger.start_listening(self.on_message)
        self._logger.info(
            "orchestrator_ready",
            backend=self._config.backend,
            mode=self._config.mode,
            work_dir=str(self._config.work_dir),
        )
        await self._notify(
            f"Snoot is online. Backend: {self._config.backend}. Mode: {self._config.mode}. "
            f"Working dir: {self._config.work_dir}\nSend /help for commands."
        )

    async def shutdown(self) -> None:
        """Kill the live backend and stop background work."""
        self._shutting_down = True
        self._logger.info("orchestrator_shutting_down")
        await self._supervisor.kill()
        await self._aggregator.stop()
        for task in list(self._command_tasks):
            task.cancel()
        if self._command_tasks:
            await asyncio.gather(*list(self._command_tasks), return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait for queued turns, in-flight commands and event handlers to settle."""
        while self._command_tasks:
            await asyncio.gather(*list(self._command_tasks), return_exceptions=True)
        await self._queue.wait_idle()
        await self._event_bus.drain()

    # ── Inbound ───────────────────────────────────────────────────────────────

    def on_message(self, text: str) -> None:
        """Entry point for every inbound chat message."""
        trimmed = text.strip()
        if not trimmed or self._shutting_down:
            return
        self._logger.info("message_received", chars=len(trimmed), preview=trimmed[:100])
        if trimmed.startswith(self._config.queue.command_prefix):
            task = asyncio.get_running_loop().create_task(self._run_command(trimmed))
            self._command_tasks.add(task)
            task.add_done_callback(self._command_tasks.discard)
            return
        self._queue.enqueue(trimmed)

    async def _run_command(self, text: str) -> None:
        ctx = CommandContext(self._config, self._store, self._supervisor, self._queue)
        try:
            result = await handle_command(text, ctx)
            if result is None:
                return
            response = await self._apply_command(result)
        except Exception as exc:
            self._logger.exception("command_failed", command=text.split()[0], error=str(exc))
            response = f"Error: {exc}"
        if response:
            await self._notify(response)

    async def _apply_command(self, result: CommandResult) -> str | None:
        if result.reset_context:
            await self._supervisor.kill()
            await self._store.reset()
            return result.response
        if result.restart_process:
            await self._supervisor.kill()
            await self._notify(result.response)
            if self._restart_hook is None:
                self._logger.warning("restart_unavailable")
                return "Restart is not available in this deployment."
            self._logger.info("restarting")
            await self._restart_hook()
            return None
        if result.switch_backend is not None:
            await self.switch_backend(result.switch_backend)
            return result.response
        if result.kill_process:
            await self._supervisor.kill()
        if result.trigger_compaction:
            compaction = await self._store.compact()
            return f"{result.response}\n{describe_compaction(compaction)}"
        return result.response

    async def switch_backend(self, backend: Backend) -> None:
        """Kill the live process and rebuild the supervisor for *backend*."""
        if backend == self._config.backend:
            return
        old = self._supervisor
        await old.kill()
        old.detach()
        self._config.backend = backend
        self._supervisor = self._build_supervisor()
        self._logger.info("backend_switched", backend=backend)

    # ── Turns ─────────────────────────────────────────────────────────────────

    async def _handle_turn(self, text: str, message_count: int) -> None:
        generation = self._queue.generation
        self._event_bus.publish(BridgeEvent.TURN_STARTED, {"message_count": message_count})
        prompt_file = self._store.build_prompt()
        supervisor = self._supervisor
        self._aggregator.start()
        supervisor.send(text, prompt_file)
        indicators = asyncio.get_running_loop().create_task(self._thinking_indicators(supervisor))
        try:
            response = await supervisor.wait_for_response()
        finally:
            indicators.cancel()
            if self._queue.generation == generation:
                await self._aggregator.stop()
        if self._queue.generation != generation:
            # The watchdog gave up on this turn; a newer one owns the aggregator now.
            self._logger.warning("stale_turn_discarded", response_chars=len(response))
            return
        await self._aggregator.flush(final=True)
        streamed = self._aggregator.text_sent

        if not response.strip():
            if not streamed:
                self._logger.info("empty_response", backend=supervisor.backend)
                await self._notify(
                    f"{supervisor.label} returned an empty response — it may have hit a limit. "
                    "Try again."
                )
            self._event_bus.publish(
                BridgeEvent.TURN_COMPLETED, {"pair_id": None, "response_chars": 0}
            )
            return

        pair = MessagePair(
            id=self._store.next_pair_id(),
            user=text,
            assistant=strip_inline_svg(response),
        )
        await self._store.append(pair)

        if not streamed:
            try:
                await self._messenger.send(response)
            except Exception as exc:
                self._logger.error("response_delivery_failed", error=str(exc))
                await self._notify("Error delivering response.")

        if self._store.needs_compaction():
            self._logger.info("compaction_threshold_reached", window=len(self._store.get_recent()))
            await self._store.compact()

        self._event_bus.publish(
            BridgeEvent.TURN_COMPLETED, {"pair_id": pair.id, "response_chars": len(response)}
        )

    async def _thinking_indicators(self, supervisor: BackendSupervisor) -> None:
        settings = self._config.streaming
        await asyncio.sleep(settings.thinking_after)
        if supervisor.is_alive():
            await self._notify("💭 thinking...")
        await asyncio.sleep(max(0.0, settings.still_thinking_after - settings.thinking_after))
        if supervisor.is_alive():
            await self._notify("💭 still thinking...")

    # ── Backend wiring ────────────────────────────────────────────────────────

    def _build_supervisor(self) -> BackendSupervisor:
        supervisor = self._supervisor_factory(self._config, self._event_bus)
        supervisor.on_chunk(self._aggregator.push_text)
        supervisor.on_activity(self._aggregator.push_tool)
        supervisor.on_rate_limit(self._notify_rate_limit)
        supervisor.on_api_error(self._notify_api_error)
        return supervisor

    async def _notify_rate_limit(self, retry_in: float, attempt: int) -> None:
        max_attempts = self._config.supervisor.max_rate_limit_retries
        await self._notify(
            f"⏳ Rate limited — retrying in {retry_in:g}s (attempt {attempt}/{max_attempts})"
        )

    async def _notify_api_error(self, retry_in: float, attempt: int, max_attempts: int) -> None:
        await self._notify(
            f"⚠️ API error (500) — retrying in {retry_in:g}s (attempt {attempt}/{max_attempts})"
        )

    async def _on_stuck(self) -> None:
        if self._config.queue.kill_on_stuck:
            await self._supervisor.kill()

    async def _report_error(self, exc: Exception) -> None:
        await self._messenger.send(f"Error: {str(exc) or 'Unknown error'}")

    async def _notify(self, text: str) -> None:
        """Best-effort send for notices; delivery failures are logged only."""
        try:
            await self._messenger.send(text)
        except Exception as exc:
            self._logger.warning("notice_delivery_failed", error=str(exc))
