"""Named background processes (dev servers, watchers) owned by one loop run.

Every process is started in its own session/process group so that stopping
it also takes down whatever the shell command spawned. Output (stdout and
stderr interleaved) is kept in a bounded ring buffer per process.
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import re
import subprocess
import threading
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field

from agentloop.errors import ProcessStartError
from agentloop.schemas import ProcessInfo

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

DEFAULT_MAX_OUTPUT_LINES = 1000
DEFAULT_GRACE_PERIOD = 5.0
DEFAULT_READY_TIMEOUT = 30.0


def _process_isolation_kwargs() -> dict[str, object]:
    """Return Popen kwargs that put the child in its own group.

    On Windows CREATE_NEW_PROCESS_GROUP keeps console Ctrl+C away from the
    child and CREATE_NO_WINDOW detaches it from the parent's console. On
    POSIX a new session gives the child a process group we can signal as a
    whole.
    """
    if os.name == "nt":
        new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
        flags = new_pg | no_win
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def _compile_ready_pattern(pattern: str | None) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error:
        logger.debug("Ready pattern %r is not a valid regex; matching as substring", pattern)
        return re.compile(re.escape(pattern))


@dataclass
class ProcessStartResult:
    """What ``ProcessManager.start`` observed before returning."""

    info: ProcessInfo
    ready: bool
    timed_out: bool = False
    exited: bool = False
    exit_code: int | None = None
    output_tail: list[str] = field(default_factory=list)


@dataclass
class _ManagedProcess:
    name: str
    command: str
    proc: subprocess.Popen[str]
    pgid: int
    cwd: str | None
    ready_pattern: str | None
    output: deque[str]
    ready: threading.Event
    started_at: str
    reader: threading.Thread | None = None
    lines_dropped: int = 0

    def is_running(self) -> bool:
        return self.proc.poll() is None

    def info(self) -> ProcessInfo:
        return ProcessInfo(
            name=self.name,
            command=self.command,
            pid=self.proc.pid,
            pgid=self.pgid,
            cwd=self.cwd,
            started_at=self.started_at,
            running=self.is_running(),
            ready_pattern=self.ready_pattern,
        )


class ProcessManager:
    """Registry of named background processes.

    Parameters
    ----------
    default_cwd:
        Working directory used when ``start`` is not given one.
    max_output_lines:
        Capacity of each process's output ring buffer.
    grace_period:
        Seconds between SIGTERM and SIGKILL when stopping a process group.
    """

    def __init__(
        self,
        default_cwd: str | None = None,
        *,
        max_output_lines: int = DEFAULT_MAX_OUTPUT_LINES,
        grace_period: float = DEFAULT_GRACE_PERIOD,
    ) -> None:
        self.default_cwd = default_cwd
        self.max_output_lines = max(1, int(max_output_lines))
        self.grace_period = max(0.0, float(grace_period))
        self._processes: dict[str, _ManagedProcess] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        name: str,
        command: str,
        *,
        cwd: str | None = None,
        ready_pattern: str | None = None,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        env: dict[str, str] | None = None,
    ) -> ProcessStartResult:
        """Start ``command`` under ``name``, replacing any process already using the name.

        Blocks until the ready pattern appears in the output, the process
        exits, or ``ready_timeout`` elapses. Without a ready pattern the
        process is considered ready as soon as it has been spawned.
        """
        name = (name or "").strip()
        if not name:
            raise ValueError("Process name must be a non-empty string")
        if not (command or "").strip():
            raise ValueError("Process command must be a non-empty string")

        if self.is_running(name):
            logger.info("Process '%s' already running; replacing it", name)
        self.stop(name)

        workdir = cwd or self.default_cwd
        child_env = None
        if env:
            child_env = dict(os.environ)
            child_env.update({str(k): str(v) for k, v in env.items()})

        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=workdir,
                env=child_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                **_process_isolation_kwargs(),
            )
        except OSError as exc:
            raise ProcessStartError(f"Could not start process '{name}': {exc}") from exc

        pgid = proc.pid
        if os.name != "nt":
            with suppress(OSError):
                pgid = os.getpgid(proc.pid)

        managed = _ManagedProcess(
            name=name,
            command=command,
            proc=proc,
            pgid=pgid,
            cwd=workdir,
            ready_pattern=ready_pattern,
            output=deque(maxlen=self.max_output_lines),
            ready=threading.Event(),
            started_at=dt.datetime.now(dt.timezone.utc).isoformat(),
        )
        matcher = _compile_ready_pattern(ready_pattern)
        if matcher is None:
            managed.ready.set()

        reader = threading.Thread(
            target=self._pump_output,
            args=(managed, matcher),
            name=f"agentloop-proc-{name}",
            daemon=True,
        )
        managed.reader = reader
        with self._lock:
            self._processes[name] = managed
        reader.start()
        logger.info("Started process '%s' (pid %s): %s", name, proc.pid, command)

        return self._await_ready(managed, ready_timeout)

    def _pump_output(self, managed: _ManagedProcess, matcher: re.Pattern[str] | None) -> None:
        stream = managed.proc.stdout
        if stream is None:
            return
        try:
            for raw in stream:
                line = raw.rstrip("\n\r")
                if len(managed.output) == managed.output.maxlen:
                    managed.lines_dropped += 1
                managed.output.append(line)
                if matcher is not None and not managed.ready.is_set() and matcher.search(line):
                    managed.ready.set()
        except ValueError:
            # Stream closed underneath us during shutdown.
            pass
        finally:
            with suppress(Exception):
                stream.close()

    def _await_ready(self, managed: _ManagedProcess, timeout: float) -> ProcessStartResult:
        deadline = time.monotonic() + max(0.0, float(timeout))
        while True:
            if managed.ready.wait(timeout=0.05):
                break
            if managed.proc.poll() is not None:
                # Let the reader drain what the process printed before exiting.
                if managed.reader is not None:
                    managed.reader.join(timeout=1.0)
                break
            if time.monotonic() >= deadline:
                break

        ready = managed.ready.is_set()
        exit_code = managed.proc.poll()
        exited = exit_code is not None
        timed_out = not ready and not exited
        if timed_out:
            logger.warning(
                "Process '%s' did not match ready pattern %r within %.1fs",
                managed.name,
                managed.ready_pattern,
                timeout,
            )
        elif exited and not ready:
            logger.warning("Process '%s' exited with code %s before becoming ready", managed.name, exit_code)
        return ProcessStartResult(
            info=managed.info(),
            ready=ready,
            timed_out=timed_out,
            exited=exited,
            exit_code=exit_code,
            output_tail=list(managed.output)[-20:],
        )

    def stop(self, name: str, *, grace_period: float | None = None) -> bool:
        """Stop the named process group. Returns False when no such process exists."""
        with self._lock:
            managed = self._processes.pop(name, None)
        if managed is None:
            return False

        grace = self.grace_period if grace_period is None else max(0.0, float(grace_period))
        self._terminate_with_fallback(managed, grace)
        if managed.reader is not None:
            managed.reader.join(timeout=1.0)
        logger.info("Stopped process '%s' (exit code %s)", name, managed.proc.poll())
        return True

    def _terminate_with_fallback(self, managed: _ManagedProcess, grace: float) -> None:
        """SIGTERM the group, wait ``grace`` seconds, then SIGKILL whatever remains."""
        proc = managed.proc
        self._signal_group(managed, "SIGTERM")
        with suppress(Exception):
            proc.terminate()

        deadline = time.monotonic() + grace
        while time.monotonic() < deadline:
            if proc.poll() is not None and not self._group_alive(managed):
                return
            time.sleep(0.05)

        if proc.poll() is None or self._group_alive(managed):
            logger.warning(
                "Process '%s' did not exit within %.1fs of SIGTERM; killing", managed.name, grace
            )
        self._signal_group(managed, "SIGKILL")
        with suppress(Exception):
            proc.kill()
        try:
            proc.wait(timeout=5.0)
        except subprocess.TimeoutExpired:  # pragma: no cover - extreme edge case
            logger.warning("Process '%s' ignored SIGKILL", managed.name)

    @staticmethod
    def _signal_group(managed: _ManagedProcess, sig_name: str) -> None:
        if os.name == "nt":  # pragma: no cover - Windows-only runtime branch
            return
        if managed.pgid <= 0:
            return
        with suppress(ProcessLookupError, PermissionError):
            os.killpg(managed.pgid, getattr(signal, sig_name))

    @staticmethod
    def _group_alive(managed: _ManagedProcess) -> bool:
        if os.name == "nt":  # pragma: no cover - Windows-only runtime branch
            return managed.proc.poll() is None
        if managed.pgid <= 0:
            return False
        try:
            os.killpg(managed.pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def stop_all(self) -> None:
        """Stop every managed process. Safe to call repeatedly."""
        with self._lock:
            names = list(self._processes)
        for name in names:
            try:
                self.stop(name)
            except Exception as exc:
                logger.warning("Failed to stop process '%s': %s", name, exc)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_running(self, name: str) -> bool:
        with self._lock:
            managed = self._processes.get(name)
        return managed is not None and managed.is_running()

    def get_output(self, name: str, lines: int = 100) -> list[str]:
        """Return up to the last ``lines`` lines captured for ``name``."""
        with self._lock:
            managed = self._processes.get(name)
        if managed is None:
            raise KeyError(f"No process named '{name}'")
        captured = list(managed.output)
        count = max(0, int(lines))
        return captured[-count:] if count else []

    def list(self) -> list[ProcessInfo]:
        with self._lock:
            managed = list(self._processes.values())
        return [m.info() for m in managed]

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)
