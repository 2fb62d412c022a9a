"""Supervisor — the process table for the container's managed runtimes.

Launches the primary service and the worker as real OS processes,
watches them, restarts them on crash with backoff, and folds their
state into one composite health value for the health endpoint.

One supervision task runs per managed process. Each instance of a
process gets its own probe task and output relay. Records are mutated
only by the supervisor, under a threading lock, so status() can be read
from any thread without touching process I/O.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import threading
import time
from typing import Any, Callable

from procwarden.events.bus import EventBus
from procwarden.exceptions import (
    ProcessCrash,
    ShutdownTimeout,
    UnrecoverableFailure,
    WardenError,
)
from procwarden.processes.models import (
    CompositeHealth,
    LaunchPlan,
    ManagedProcess,
    ProcessState,
)
from procwarden.processes.probes import probe_from_url
from procwarden.processes.state_machine import ProcessStateMachine

_logger = logging.getLogger(__name__)

# Max bytes per line read from a child's stdout/stderr
_LINE_LIMIT = 1024 * 1024


def _signal_group(pgid: int, sig: int) -> bool:
    """Signal a whole process group. Returns False if nothing was there to signal."""
    try:
        os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError):
        return False
    return True


class Supervisor:
    """Owns the lifecycle of the managed processes.

    Construct one per container at entry and pass it by reference to
    whatever needs composite health; instances are independent.
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bus = event_bus or EventBus()
        self._clock = clock
        self._plan: LaunchPlan | None = None
        self._records: dict[str, ManagedProcess] = {}
        self._os_processes: dict[str, asyncio.subprocess.Process] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._ready_events: dict[str, asyncio.Event] = {}
        self._state_lock = threading.Lock()
        self._stopping = asyncio.Event()
        self._shutdown_requested = asyncio.Event()
        self._shut_down = False

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self, plan: LaunchPlan) -> None:
        """Launch every process in plan order, honoring the readiness barrier."""
        if self._plan is not None:
            raise WardenError("supervisor already started")
        self._plan = plan

        with self._state_lock:
            for spec in plan.processes:
                machine = ProcessStateMachine(spec.name)
                machine.on_transition(_log_transition)
                self._records[spec.name] = ManagedProcess(spec=spec, machine=machine)
                self._ready_events[spec.name] = asyncio.Event()

        self._bus.emit("supervisor.starting", {
            "processes": [s.name for s in plan.processes],
            "wait_for_ready": plan.wait_for_ready,
        })

        previous: str | None = None
        for spec in plan.processes:
            if previous is not None and plan.wait_for_ready:
                await self._await_ready(previous, plan.ready_timeout)
            if self._stopping.is_set() or self._shutdown_requested.is_set():
                _logger.info("Shutdown requested; not starting %s", spec.name)
                break
            self._tasks[spec.name] = asyncio.create_task(
                self._supervise(self._records[spec.name], plan),
                name=f"supervise:{spec.name}",
            )
            previous = spec.name

    async def _await_ready(self, name: str, timeout: float) -> None:
        """Block until ``name`` reports ready or shutdown is requested.

        Gives up after ``timeout`` and lets the caller start the next process.
        """
        _logger.info("Waiting up to %.0fs for %s to become ready", timeout, name)
        ready = asyncio.create_task(self._ready_events[name].wait())
        stop = asyncio.create_task(self._shutdown_requested.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, stop}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (ready, stop):
                if not task.done():
                    task.cancel()
        if done:
            return
        _logger.error(
            "%s did not become ready within %.0fs; starting the next process anyway",
            name, timeout,
        )
        self._bus.emit("process.ready_timeout", {
            "name": name,
            "timeout_s": timeout,
        })

    def request_shutdown(self) -> None:
        """Ask watch() to return. Safe to call from a signal callback."""
        self._shutdown_requested.set()

    async def watch(self) -> None:
        """Run until shutdown is requested.

        Per-process supervision tasks react to exits on their own; this
        loop only surfaces a supervision task that died with an error.
        """
        finished: set[asyncio.Task] = set()
        while not self._shutdown_requested.is_set():
            live = {t for t in self._tasks.values() if t not in finished}
            waiter = asyncio.create_task(self._shutdown_requested.wait())
            try:
                done, _ = await asyncio.wait(
                    {waiter, *live}, return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                if not waiter.done():
                    waiter.cancel()
            for task in done:
                if task is waiter:
                    continue
                finished.add(task)
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None:
                    _logger.critical("Supervision task %s failed: %s", task.get_name(), exc)
                    raise WardenError(f"supervision task {task.get_name()} failed") from exc

    async def shutdown(self, sig: int = signal.SIGTERM) -> None:
        """Stop every managed process, escalating to SIGKILL after the grace period."""
        if self._shut_down:
            return
        self._shut_down = True
        self._stopping.set()
        self._shutdown_requested.set()
        grace = self._plan.grace_period if self._plan else 10.0

        procs = dict(self._os_processes)
        self._bus.emit("supervisor.stopping", {
            "signal": signal.Signals(sig).name,
            "processes": sorted(procs),
            "grace_s": grace,
        })

        if procs:
            _logger.info(
                "Stopping %d process(es) with %s (grace %.0fs)",
                len(procs), signal.Signals(sig).name, grace,
            )
            results = await asyncio.gather(
                *(self._terminate(name, proc, sig, grace) for name, proc in procs.items()),
                return_exceptions=True,
            )
            for (name, proc), result in zip(procs.items(), results):
                if isinstance(result, ShutdownTimeout):
                    _logger.warning("%s; killing", result)
                    _signal_group(proc.pid, signal.SIGKILL)
                    await proc.wait()
                elif isinstance(result, BaseException):
                    _logger.error("Error stopping %s: %s", name, result)
                # Grandchildren that ignored the signal go with the group
                _signal_group(proc.pid, signal.SIGKILL)

        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=2.0)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        with self._state_lock:
            for record in self._records.values():
                if not record.machine.is_terminal:
                    record.machine.transition(ProcessState.STOPPED)
            self._records.clear()
        self._os_processes.clear()
        self._tasks.clear()

        self._bus.emit("supervisor.stopped")
        _logger.info("Supervisor stopped")

    async def _terminate(
        self, name: str, proc: asyncio.subprocess.Process, sig: int, grace: float,
    ) -> None:
        if proc.returncode is not None:
            return
        _logger.debug("Sending %s to %s (pid %d)", signal.Signals(sig).name, name, proc.pid)
        _signal_group(proc.pid, sig)
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            raise ShutdownTimeout(
                f"{name} (pid {proc.pid}) still running after {grace:g}s"
            ) from None

    # ── Supervision ──────────────────────────────────────────────

    async def _supervise(self, record: ManagedProcess, plan: LaunchPlan) -> None:
        """Keep one process alive until it stops, gives up, or we shut down."""
        name = record.name
        while not self._stopping.is_set():
            proc = await self._spawn(record)
            if proc is not None:
                exit_code = await self._run_instance(record, proc, plan)
                if self._stopping.is_set():
                    self._transition(record, ProcessState.STOPPED, exit_code=exit_code)
                    return
                if exit_code == 0:
                    _logger.warning("%s exited voluntarily with code 0; not restarting", name)
                    self._transition(record, ProcessState.STOPPED, exit_code=0)
                    return
                tail = record.stderr_lines[-1] if record.stderr_lines else ""
                with self._state_lock:
                    record.failure = ProcessCrash(name, exit_code, tail)

            _logger.error("%s", record.failure)
            self._transition(record, ProcessState.FAILED, error=str(record.failure))

            delay = self._next_restart_delay(record)
            if delay is None:
                policy = record.spec.restart_policy
                failure = UnrecoverableFailure(
                    name, len(record.restart_times), policy.restart_window,
                )
                with self._state_lock:
                    record.failure = failure
                _logger.critical("%s; health is now permanently unhealthy", failure)
                self._transition(record, ProcessState.STOPPED, error=str(failure))
                self._bus.emit("process.unrecoverable", {
                    "name": name,
                    "restarts": failure.restarts,
                    "window_s": failure.window_s,
                })
                return

            self._transition(
                record, ProcessState.RESTARTING,
                attempt=record.total_restarts, delay_s=delay,
            )
            if delay > 0:
                _logger.warning("Restarting %s in %.1fs", name, delay)
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
            else:
                _logger.warning("Restarting %s now", name)

        if not record.machine.is_terminal:
            self._transition(record, ProcessState.STOPPED)

    def _next_restart_delay(self, record: ManagedProcess) -> float | None:
        """Record a restart and return its delay, or None if the budget is spent."""
        policy = record.spec.restart_policy
        now = self._clock()
        with self._state_lock:
            times = record.restart_times
            while times and now - times[0] > policy.restart_window:
                times.popleft()
            if len(times) >= policy.max_restarts:
                return None
            delay = policy.delay_for(len(times))
            times.append(now)
            record.total_restarts += 1
        return delay

    async def _spawn(self, record: ManagedProcess) -> asyncio.subprocess.Process | None:
        """Start one instance. Returns None (with record.failure set) if it can't be spawned."""
        spec = record.spec
        self._transition(record, ProcessState.STARTING)
        try:
            proc = await asyncio.create_subprocess_exec(
                *spec.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=str(spec.workdir),
                env=spec.env or None,
                start_new_session=True,
                limit=_LINE_LIMIT,
            )
        except OSError as e:
            with self._state_lock:
                record.failure = ProcessCrash(spec.name, detail=str(e))
            return None

        with self._state_lock:
            record.os_pid = proc.pid
            record.exit_code = None
            record.started_at = time.time()
            record.stopped_at = None
            record.last_ready_at = None
            record.healthy_since = None
            record.probe_ok = False
            record.failure = None
        self._os_processes[spec.name] = proc
        if self._stopping.is_set():
            # Shutdown began while we were spawning and won't see this instance
            _signal_group(proc.pid, signal.SIGKILL)
        _logger.info("%s started with PID %d", spec.name, proc.pid)
        self._transition(
            record, ProcessState.RUNNING,
            os_pid=proc.pid, command=" ".join(spec.command),
        )
        return proc

    async def _run_instance(
        self, record: ManagedProcess, proc: asyncio.subprocess.Process, plan: LaunchPlan,
    ) -> int:
        """Wait for one instance to exit, probing and relaying output meanwhile."""
        probe_task = asyncio.create_task(self._probe_loop(record, proc, plan))
        output_task = asyncio.create_task(self._relay_output(record, proc))
        try:
            exit_code = await proc.wait()
        finally:
            probe_task.cancel()
            if not self._stopping.is_set():
                # Leftover members of the group would hold the pipes open
                _signal_group(proc.pid, signal.SIGKILL)
            try:
                await asyncio.wait_for(output_task, timeout=1.0)
            except asyncio.TimeoutError:
                pass
            await asyncio.gather(probe_task, return_exceptions=True)

        with self._state_lock:
            record.exit_code = exit_code
            record.stopped_at = time.time()
            record.last_ready_at = None
            record.healthy_since = None
            record.probe_ok = False
        self._ready_events[record.name].clear()
        self._os_processes.pop(record.name, None)
        _logger.info("%s (PID %d) exited with code %d", record.name, proc.pid, exit_code)
        return exit_code

    async def _probe_loop(
        self, record: ManagedProcess, proc: asyncio.subprocess.Process, plan: LaunchPlan,
    ) -> None:
        """Refresh the cached readiness of one running instance."""
        policy = record.spec.restart_policy
        probe = probe_from_url(record.spec.ready_url, timeout=plan.probe_timeout)

        while proc.returncode is None:
            try:
                ok = await probe.check()
            except Exception as e:
                _logger.debug("Probe for %s raised: %s", record.name, e)
                ok = False
            if proc.returncode is not None:
                return

            now = self._clock()
            became_ready = became_unready = reset = False
            with self._state_lock:
                if ok:
                    became_ready = not record.probe_ok
                    record.probe_ok = True
                    record.last_ready_at = now
                    if record.healthy_since is None:
                        record.healthy_since = now
                    if (record.restart_times
                            and now - record.healthy_since >= policy.healthy_reset_after):
                        record.restart_times.clear()
                        reset = True
                else:
                    became_unready = record.probe_ok
                    record.probe_ok = False
                    record.healthy_since = None

            if became_ready:
                self._ready_events[record.name].set()
                _logger.info("%s is ready", record.name)
                self._bus.emit("process.ready", {
                    "name": record.name,
                    "probe": probe.target or "liveness",
                })
            elif became_unready:
                _logger.warning("%s failed its readiness probe", record.name)
                self._bus.emit("process.unready", {
                    "name": record.name,
                    "probe": probe.target,
                })
            if reset:
                _logger.info("%s stayed healthy; restart history cleared", record.name)
                self._bus.emit("process.restarts_reset", {
                    "name": record.name,
                })

            await asyncio.sleep(plan.probe_interval)

    async def _relay_output(
        self, record: ManagedProcess, proc: asyncio.subprocess.Process,
    ) -> None:
        """Forward a child's stdout/stderr to per-process loggers, keeping a tail."""
        proc_logger = logging.getLogger(f"procwarden.proc.{record.name}")

        async def _read_stream(stream, is_stderr: bool):
            if stream is None:
                return
            target = record.stderr_lines if is_stderr else record.stdout_lines
            level = logging.WARNING if is_stderr else logging.INFO
            while True:
                try:
                    line = await stream.readline()
                except ValueError:
                    # Line longer than the limit; the reader has skipped it
                    continue
                if not line:
                    break
                decoded = line.decode("utf-8", errors="replace").rstrip()
                if not decoded:
                    continue
                target.append(decoded)
                proc_logger.log(level, decoded)

        await asyncio.gather(
            _read_stream(proc.stdout, False),
            _read_stream(proc.stderr, True),
            return_exceptions=True,
        )

    def _transition(
        self, record: ManagedProcess, target: ProcessState, **data: Any,
    ) -> None:
        with self._state_lock:
            old = record.machine.transition(target)
        self._bus.emit(f"process.{target.value}", {
            "name": record.name,
            "from": old.value,
            **data,
        })

    # ── Introspection ────────────────────────────────────────────

    def status(self) -> CompositeHealth:
        """Composite health of all required processes. Never blocks on process I/O."""
        now = self._clock()
        staleness = self._plan.staleness_window if self._plan else 0.0
        failing: list[str] = []
        reasons: dict[str, str] = {}
        with self._state_lock:
            if not self._records:
                return CompositeHealth(
                    healthy=False, reasons={"supervisor": "no managed processes"},
                )
            for record in self._records.values():
                if not record.spec.required:
                    continue
                reason = _unhealthy_reason(record, now, staleness)
                if reason:
                    failing.append(record.name)
                    reasons[record.name] = reason
        return CompositeHealth(healthy=not failing, failing=failing, reasons=reasons)

    def list_processes(self) -> list[dict[str, Any]]:
        """Return the process table for the API."""
        now = self._clock()
        with self._state_lock:
            return [_describe(record, now) for record in self._records.values()]

    def get_process(self, name: str) -> ManagedProcess | None:
        return self._records.get(name)

    def describe_process(self, name: str) -> dict[str, Any] | None:
        """One row of the process table, or None if it isn't managed."""
        record = self.get_process(name)
        if record is None:
            return None
        with self._state_lock:
            return _describe(record, self._clock())

    def get_output(self, name: str, lines: int = 50) -> dict[str, list[str]] | None:
        """Recent stdout/stderr for a process, or None if it isn't managed."""
        with self._state_lock:
            record = self._records.get(name)
            if record is None:
                return None
            return {
                "stdout": list(record.stdout_lines)[-lines:],
                "stderr": list(record.stderr_lines)[-lines:],
            }


def _describe(record: ManagedProcess, now: float) -> dict[str, Any]:
    running = record.state == ProcessState.RUNNING
    uptime = 0
    if record.started_at and running:
        uptime = int(time.time() - record.started_at)
    ready_age = None
    if record.last_ready_at is not None:
        ready_age = round(now - record.last_ready_at, 1)
    return {
        "name": record.name,
        "state": record.state.value,
        "os_pid": record.os_pid if running else None,
        "exit_code": record.exit_code,
        "stopped_at": record.stopped_at,
        "required": record.spec.required,
        "ready": record.probe_ok,
        "ready_age_s": ready_age,
        "uptime_s": uptime,
        "restart_count": record.total_restarts,
        "restarts_in_window": len(record.restart_times),
        "error": str(record.failure) if record.failure else None,
        "command": " ".join(record.spec.command),
    }


def _unhealthy_reason(record: ManagedProcess, now: float, staleness: float) -> str:
    if record.state != ProcessState.RUNNING:
        if record.failure is not None:
            return str(record.failure)
        if record.state == ProcessState.STOPPED and record.exit_code == 0:
            return "exited with code 0"
        return record.state.value
    if record.last_ready_at is None:
        return "not ready"
    age = now - record.last_ready_at
    if age > staleness:
        return f"readiness stale ({age:.0f}s)"
    return ""


def _log_transition(name: str, old: ProcessState, new: ProcessState) -> None:
    _logger.debug("%s: %s -> %s", name, old.value, new.value)
