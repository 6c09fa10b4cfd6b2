"""Backend worker supervisor: one CLI process per channel, with transient-failure retries."""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections import deque
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from snoot.backend.protocols import WorkerProtocol, protocol_for
from snoot.errors import SpawnError
from snoot.events.bus import BridgeEvent, EventBus, Handler
from snoot.models.backend import BackendEvent, BackendStatus, InvocationOutcome, SupervisorState
from snoot.models.config import BridgeConfig
from snoot.models.context import now_ms

RATE_LIMIT_MARKERS = ("rate", "limit", "quota", "429")
API_ERROR_MARKERS = ("500", "internal")
_DEATH_GRACE = 0.5


def is_rate_limit_error(text: str) -> bool:
    """True if an error message looks like a rate-limit or quota rejection."""
    lower = text.lower()
    return any(marker in lower for marker in RATE_LIMIT_MARKERS)


def is_api_error(text: str) -> bool:
    """True if an error message looks like a transient 5xx from the model API."""
    lower = text.lower()
    return any(marker in lower for marker in API_ERROR_MARKERS)


def _process_alive(proc: asyncio.subprocess.Process) -> bool:
    if proc.returncode is not None:
        return False
    try:
        os.kill(proc.pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _send_signal(proc: asyncio.subprocess.Process, kill: bool) -> None:
    with contextlib.suppress(ProcessLookupError):
        if kill:
            proc.kill()
        else:
            proc.terminate()


class BackendSupervisor:
    """
    Runs exactly one backend worker process at a time and turns its event
    stream into one response string per invocation.

    :meth:`send` is non-blocking and never raises; callers collect the result
    with :meth:`wait_for_response`. Every failure the user should see
    (exhausted retries, spawn failure, a crash with no output) resolves the
    waiter with a bracketed notice instead of raising.

    Each spawn is tagged with a generation token. Anything that supersedes the
    current process (:meth:`send`, :meth:`kill`, the liveness check) bumps the
    token, so late output or exit handling from the old process is ignored.

    Example::

        supervisor = BackendSupervisor(config, event_bus=bus)
        supervisor.on_chunk(lambda text: print(text, end=""))
        supervisor.send("What changed in the last commit?", prompt_path)
        response = await supervisor.wait_for_response()
    """

    def __init__(
        self,
        config: BridgeConfig,
        event_bus: EventBus | None = None,
        protocol: WorkerProtocol | None = None,
    ) -> None:
        self._config = config
        self._settings = config.supervisor
        self._protocol = protocol or protocol_for(config)
        self._event_bus = event_bus or EventBus()
        self._logger = structlog.get_logger("snoot.backend").bind(
            channel=config.channel, backend=self._protocol.name
        )

        self._state = SupervisorState.IDLE
        self._proc: asyncio.subprocess.Process | None = None
        self._token = 0
        self._invocation_task: asyncio.Task[None] | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None

        self._waiters: deque[asyncio.Future[str]] = deque()
        self._unclaimed: str | None = None
        self._accumulated = ""
        self._resolved = False
        self._last_prompt: str | None = None

        self._rate_limited = False
        self._api_errored = False
        self._rate_limit_retries = 0
        self._api_error_retries = 0
        self._retry_delay: float | None = None

        self._spawned_at: int | None = None
        self._last_activity_at: int | None = None
        self._last_outcome: InvocationOutcome | None = None
        self._subscriptions: list[tuple[BridgeEvent, Handler]] = []

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def backend(self) -> str:
        return self._protocol.name

    @property
    def label(self) -> str:
        return self._protocol.label

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def last_outcome(self) -> InvocationOutcome | None:
        return self._last_outcome

    @property
    def rate_limit_retries(self) -> int:
        return self._rate_limit_retries

    @property
    def api_error_retries(self) -> int:
        return self._api_error_retries

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def get_status(self) -> BackendStatus:
        return BackendStatus(
            alive=self.is_alive(),
            busy=any(not fut.done() for fut in self._waiters),
            state=self._state,
            spawned_at=self._spawned_at,
            last_activity_at=self._last_activity_at,
            backend=self.backend,
        )

    # ── Callbacks ─────────────────────────────────────────────────────────────

    def on_chunk(self, callback: Callable[[str], Any]) -> None:
        """Call *callback(text)* for every piece of assistant prose, in stream order."""
        self._subscribe(BridgeEvent.BACKEND_CHUNK, lambda _e, p: callback(p["text"]))

    def on_activity(self, callback: Callable[[str], Any]) -> None:
        """Call *callback(line)* for every tool invocation, e.g. ``🔧 Bash``."""
        self._subscribe(BridgeEvent.BACKEND_ACTIVITY, lambda _e, p: callback(p["line"]))

    def on_rate_limit(self, callback: Callable[[float, int], Any]) -> None:
        self._subscribe(
            BridgeEvent.BACKEND_RATE_LIMITED,
            lambda _e, p: callback(p["retry_in"], p["attempt"]),
        )

    def on_api_error(self, callback: Callable[[float, int, int], Any]) -> None:
        self._subscribe(
            BridgeEvent.BACKEND_API_ERROR,
            lambda _e, p: callback(p["retry_in"], p["attempt"], p["max_attempts"]),
        )

    def on_exit(self, callback: Callable[[], Any]) -> None:
        self._subscribe(BridgeEvent.BACKEND_EXITED, lambda _e, _p: callback())

    def detach(self) -> None:
        """Remove every callback registered through this supervisor from the bus."""
        for event, handler in self._subscriptions:
            self._event_bus.unsubscribe(event, handler)
        self._subscriptions.clear()

    def _subscribe(self, event: BridgeEvent, handler: Handler) -> None:
        self._event_bus.subscribe(event, handler)
        self._subscriptions.append((event, handler))

    # ── Public API ────────────────────────────────────────────────────────────

    def send(self, prompt: str, system_prompt_file: Path | str | None = None) -> None:
        """
        Start a fresh invocation for *prompt* and return immediately.

        Any process still alive from an earlier invocation is killed first and
        its waiters resolve with whatever text it had produced.

        Args:
            prompt: The user turn.
            system_prompt_file: Optional file whose content is prepended to
                *prompt*, separated by a blank line.
        """
        stale = self._proc
        if stale is not None and stale.returncode is None:
            self._logger.info("stale_process_killed", pid=stale.pid)
            _send_signal(stale, kill=True)
        self._supersede()
        if not self._resolved:
            self._resolve_all(self._accumulated, hold=False)
        self._unclaimed = None
        self._accumulated = ""
        self._resolved = False
        self._reset_retries()

        full_prompt = prompt
        if system_prompt_file is not None:
            try:
                system_prompt = Path(system_prompt_file).read_text(encoding="utf-8")
                full_prompt = f"{system_prompt}\n\n{prompt}"
            except OSError as exc:
                self._logger.error(
                    "system_prompt_unreadable", path=str(system_prompt_file), error=str(exc)
                )
        self._last_prompt = full_prompt

        token = self._token
        self._invocation_task = asyncio.get_running_loop().create_task(
            self._run(token, full_prompt)
        )

    async def wait_for_response(self) -> str:
        """
        Wait for the current invocation's response.

        Waiters resolve in FIFO order, each exactly once. A response that
        completed before anyone was waiting is handed to the next caller.
        """
        if self._unclaimed is not None:
            text, self._unclaimed = self._unclaimed, None
            return text
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        return await future

    async def kill(self) -> None:
        """
        Stop the worker: close stdin, then SIGTERM, then SIGKILL.

        Also cancels a pending retry. Waiters resolve with the partial text.
        A no-op when nothing is running.
        """
        proc = self._proc
        alive = proc is not None and proc.returncode is None
        if not alive and self._state not in (
            SupervisorState.SPAWNING,
            SupervisorState.RETRY_PENDING,
        ):
            return

        self._supersede()
        self._set_state(SupervisorState.IDLE)
        # Waiters are settled before the first await so a send() issued while
        # the old process winds down starts from a clean slate.
        text, self._accumulated = self._accumulated, ""
        if self._resolved:
            self._resolve_all(text, hold=False)
        else:
            self._finish(InvocationOutcome.KILLED, text, resolve_all=True)

        if proc is not None and alive:
            self._logger.info("backend_killing", pid=proc.pid)
            await self._terminate(proc)
        self._publish_exit(proc.returncode if proc is not None else None)

    # ── Invocation loop ───────────────────────────────────────────────────────

    async def _run(self, token: int, prompt: str) -> None:
        while True:
            proc = await self._spawn(token, prompt)
            if proc is None:
                return
            await self._pump(token, proc)
            returncode = await proc.wait()
            if token != self._token:
                return
            self._on_process_exit(proc, returncode)

            if self._retry_delay is None:
                return
            delay, self._retry_delay = self._retry_delay, None
            self._set_state(SupervisorState.RETRY_PENDING)
            await asyncio.sleep(delay)
            if token != self._token:
                return
            self._logger.info(
                "backend_respawning",
                rate_limit_retries=self._rate_limit_retries,
                api_error_retries=self._api_error_retries,
            )

    async def _spawn(self, token: int, prompt: str) -> asyncio.subprocess.Process | None:
        self._set_state(SupervisorState.SPAWNING)
        try:
            proc = await self._start_process(prompt)
        except SpawnError as exc:
            if token != self._token:
                return None
            self._logger.error("backend_spawn_failed", argv0=exc.argv0, error=exc.reason)
            self._finish(
                InvocationOutcome.SPAWN_FAILED,
                f"[Failed to start {self.label}: {exc.reason}]",
                resolve_all=True,
            )
            self._set_state(SupervisorState.IDLE)
            return None

        if token != self._token:
            _send_signal(proc, kill=True)
            return None

        self._proc = proc
        self._accumulated = ""
        self._spawned_at = self._last_activity_at = now_ms()
        self._set_state(SupervisorState.RUNNING)
        self._logger.info("backend_spawned", pid=proc.pid)
        self._event_bus.publish(
            BridgeEvent.BACKEND_SPAWNED, {"backend": self.backend, "pid": proc.pid}
        )

        loop = asyncio.get_running_loop()
        self._stderr_task = loop.create_task(self._drain_stderr(proc))
        self._health_task = loop.create_task(self._health_check(token, proc))
        await self._write_stdin(proc, prompt)
        return proc

    async def _start_process(self, prompt: str) -> asyncio.subprocess.Process:
        argv = self._protocol.build_argv(prompt)
        env = {key: value for key, value in os.environ.items() if key != "CLAUDECODE"}
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self._config.work_dir),
                env=env,
                limit=self._settings.stream_limit,
            )
        except OSError as exc:
            raise SpawnError(argv[0], exc.strerror or str(exc)) from exc

    async def _write_stdin(self, proc: asyncio.subprocess.Process, prompt: str) -> None:
        if proc.stdin is None:
            return
        payload = self._protocol.stdin_payload(prompt)
        try:
            if payload:
                proc.stdin.write(payload)
                await proc.stdin.drain()
            proc.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._logger.warning("stdin_write_failed", error=str(exc))

    async def _pump(self, token: int, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        while True:
            try:
                raw = await proc.stdout.readline()
            except ValueError as exc:
                self._logger.warning("stdout_line_too_long", error=str(exc))
                continue
            if not raw:
                return
            if token != self._token:
                return
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            self._last_activity_at = now_ms()
            try:
                events = self._protocol.parse_line(line)
            except ValueError:
                self._logger.info("stdout_unparsed", line=line[:200])
                continue
            for event in events:
                self._handle_event(event)

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        async for raw in proc.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self._logger.warning("backend_stderr", line=line)

    async def _health_check(self, token: int, proc: asyncio.subprocess.Process) -> None:
        interval = self._settings.health_check_interval
        while True:
            await asyncio.sleep(interval)
            if token != self._token or self._proc is not proc:
                return
            if _process_alive(proc):
                continue
            # Short grace for the stream reader to reach EOF on its own.
            await asyncio.sleep(min(interval, _DEATH_GRACE))
            if token == self._token and self._proc is proc:
                self._on_unexpected_death(proc)
            return

    # ── Event handling ────────────────────────────────────────────────────────

    def _handle_event(self, event: BackendEvent) -> None:
        if event.kind == "init":
            self._logger.info("backend_initialized", model=event.text)
        elif event.kind == "text":
            self._accumulated += event.text
            self._event_bus.publish(BridgeEvent.BACKEND_CHUNK, {"text": event.text})
        elif event.kind == "tool_use":
            line = f"🔧 {event.text or 'unknown tool'}"
            self._logger.info("backend_tool_use", tool=event.text)
            self._event_bus.publish(BridgeEvent.BACKEND_ACTIVITY, {"line": line})
        elif event.kind == "tool_result":
            self._logger.debug("backend_tool_result", tool_id=event.text)
        elif event.kind == "error":
            self._logger.warning("backend_error", message=event.text)
            self._note_error(event.text)
        elif event.kind == "result":
            self._on_result(event)

    def _note_error(self, text: str) -> None:
        if is_rate_limit_error(text):
            self._rate_limited = True
        elif is_api_error(text):
            self._api_errored = True

    def _on_result(self, event: BackendEvent) -> None:
        if event.is_error:
            self._note_error(event.text)
            response = self._accumulated
        else:
            response = event.text or self._accumulated
        self._accumulated = ""
        if self._resolved:
            self._logger.warning("duplicate_result_ignored")
            return

        if not response.strip() and self._last_prompt:
            if self._rate_limited:
                if self._rate_limit_retries < self._settings.max_rate_limit_retries:
                    self._schedule_retry(InvocationOutcome.RATE_LIMITED)
                else:
                    self._finish(
                        InvocationOutcome.RATE_LIMITED,
                        f"[{self.label} is still rate limited after "
                        f"{self._rate_limit_retries} retries. Try again later.]",
                    )
                return
            if self._api_errored:
                delays = self._settings.api_error_retry_delays
                if self._api_error_retries < len(delays):
                    self._schedule_retry(InvocationOutcome.API_ERRORED)
                else:
                    self._finish(
                        InvocationOutcome.API_ERRORED,
                        f"[{self.label} API error persisted after "
                        f"{self._api_error_retries} retries. Try again later.]",
                    )
                return
        if not response and event.is_error:
            response = event.text

        outcome = InvocationOutcome.SUCCEEDED if response else InvocationOutcome.EMPTY_EXIT
        self._logger.info("backend_result", chars=len(response), waiters=len(self._waiters))
        self._finish(outcome, response)

    def _on_process_exit(self, proc: asyncio.subprocess.Process, returncode: int) -> None:
        self._cancel_health_check()
        self._proc = None
        if returncode != 0:
            self._logger.warning("backend_exited", pid=proc.pid, returncode=returncode)
        else:
            self._logger.info("backend_exited", pid=proc.pid, returncode=returncode)

        if self._retry_delay is not None:
            self._publish_exit(returncode)
            return

        text, self._accumulated = self._accumulated, ""
        if self._resolved:
            self._resolve_all(text, hold=False)
        elif text:
            outcome = InvocationOutcome.SUCCEEDED if returncode == 0 else InvocationOutcome.CRASHED
            self._finish(outcome, text, resolve_all=True)
        elif returncode == 0:
            self._finish(InvocationOutcome.EMPTY_EXIT, "", resolve_all=True)
        elif returncode < 0:
            self._finish(InvocationOutcome.CRASHED, self._killed_notice(), resolve_all=True)
        else:
            self._finish(
                InvocationOutcome.CRASHED,
                f"[{self.label} process failed (exit code {returncode})]",
                resolve_all=True,
            )
        self._set_state(SupervisorState.IDLE)
        self._publish_exit(returncode)

    def _on_unexpected_death(self, proc: asyncio.subprocess.Process) -> None:
        self._logger.error("backend_died_unexpectedly", pid=proc.pid)
        self._supersede()
        text, self._accumulated = self._accumulated, ""
        if self._resolved:
            self._resolve_all(text, hold=False)
        else:
            self._finish(InvocationOutcome.CRASHED, text or self._killed_notice(), resolve_all=True)
        self._set_state(SupervisorState.IDLE)
        self._publish_exit(proc.returncode)

    def _killed_notice(self) -> str:
        return f"[{self.label} process was killed unexpectedly (possibly OOM). Try again.]"

    # ── Transitions ───────────────────────────────────────────────────────────

    def _schedule_retry(self, reason: InvocationOutcome) -> None:
        self._last_outcome = reason
        if reason is InvocationOutcome.RATE_LIMITED:
            self._rate_limit_retries += 1
            self._rate_limited = False
            delay = self._settings.rate_limit_retry_delay
            self._logger.warning(
                "backend_rate_limited",
                retry_in=delay,
                attempt=self._rate_limit_retries,
                max_attempts=self._settings.max_rate_limit_retries,
            )
            self._event_bus.publish(
                BridgeEvent.BACKEND_RATE_LIMITED,
                {"retry_in": delay, "attempt": self._rate_limit_retries},
            )
        else:
            delays = self._settings.api_error_retry_delays
            delay = delays[self._api_error_retries]
            self._api_error_retries += 1
            self._api_errored = False
            self._logger.warning(
                "backend_api_error",
                retry_in=delay,
                attempt=self._api_error_retries,
                max_attempts=len(delays),
            )
            self._event_bus.publish(
                BridgeEvent.BACKEND_API_ERROR,
                {
                    "retry_in": delay,
                    "attempt": self._api_error_retries,
                    "max_attempts": len(delays),
                },
            )
        self._retry_delay = delay

    def _finish(self, outcome: InvocationOutcome, text: str, resolve_all: bool = False) -> None:
        self._resolved = True
        self._last_outcome = outcome
        self._reset_retries()
        if resolve_all:
            self._resolve_all(text, hold=True)
        else:
            self._resolve_next(text)

    def _reset_retries(self) -> None:
        self._rate_limited = False
        self._api_errored = False
        self._rate_limit_retries = 0
        self._api_error_retries = 0
        self._retry_delay = None

    def _set_state(self, state: SupervisorState) -> None:
        if state is not self._state:
            self._logger.debug("supervisor_state", old=str(self._state), new=str(state))
            self._state = state

    def _supersede(self) -> None:
        """Invalidate the current process and every task attached to it."""
        self._token += 1
        self._proc = None
        self._retry_delay = None
        current = asyncio.current_task()
        for task in (self._invocation_task, self._health_task, self._stderr_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._invocation_task = self._health_task = self._stderr_task = None

    def _cancel_health_check(self) -> None:
        task = self._health_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._health_task = None

    # ── Waiters ───────────────────────────────────────────────────────────────

    def _resolve_next(self, text: str) -> None:
        while self._waiters:
            future = self._waiters.popleft()
            if not future.done():
                future.set_result(text)
                return
        self._unclaimed = text

    def _resolve_all(self, text: str, hold: bool) -> None:
        resolved = False
        while self._waiters:
            future = self._waiters.popleft()
            if not future.done():
                future.set_result(text)
                resolved = True
        if hold and not resolved:
            self._unclaimed = text

    def _publish_exit(self, returncode: int | None) -> None:
        self._event_bus.publish(
            BridgeEvent.BACKEND_EXITED,
            {
                "backend": self.backend,
                "returncode": returncode,
                "outcome": str(self._last_outcome) if self._last_outcome else "",
            },
        )

    # ── Termination ───────────────────────────────────────────────────────────

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        try:
            await asyncio.wait_for(proc.wait(), self._settings.graceful_exit_timeout)
            return
        except TimeoutError:
            self._logger.info("backend_sigterm", pid=proc.pid)
        _send_signal(proc, kill=False)
        try:
            await asyncio.wait_for(proc.wait(), self._settings.terminate_timeout)
            return
        except TimeoutError:
            self._logger.warning("backend_sigkill", pid=proc.pid)
        _send_signal(proc, kill=True)
        await proc.wait()

    def __repr__(self) -> str:
        return f"BackendSupervisor(backend={self.backend!r}, state={self._state!s})"
