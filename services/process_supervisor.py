"""Supervised execution of long-running external commands.

Each command runs as an asyncio subprocess while the supervisor polls it at a
fixed interval. Two clocks are tracked: overall elapsed time since start and
idle time since the last output chunk. Breaching either kills the child and
its descendants. A normal exit ends supervision even when a descendant still
holds the output pipe open.
Progress percentages can be parsed from the output with a regex and are
reported to an optional observer.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Pattern, Protocol, Sequence

import psutil

from provisioning_console.constants import (
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_OVERALL_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    EXIT_CODE_SENTINEL,
)
from provisioning_console.settings import EngineSettings

logger = logging.getLogger(__name__)

# The console itself may run from a virtualenv; PowerShell scripts and
# installers that spawn their own Python must not inherit it.
_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}
_READ_CHUNK = 4096
_REAP_TIMEOUT = 5.0
_DRAIN_TIMEOUT = 1.0
_PROGRESS_TAIL_LIMIT = 256


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def kill_process_tree(pid: int) -> None:
    """Kill ``pid`` and every descendant, children first."""

    try:
        parent = psutil.Process(pid)
        descendants = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return
    logger.debug("Killing pid %s and %d descendant(s)", pid, len(descendants))
    for proc in (*reversed(descendants), parent):
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as exc:
            logger.warning("Could not kill pid %s: %s", proc.pid, exc)


class TimeoutKind(str, Enum):
    NONE = "none"
    OVERALL = "overall"
    IDLE = "idle"


@dataclass(slots=True)
class ProcessResult:
    """Outcome of a supervised command."""

    command: tuple[str, ...]
    success: bool
    output: list[str] = field(default_factory=list)
    error: str | None = None
    returncode: int | None = None
    timeout: TimeoutKind = TimeoutKind.NONE
    last_progress: float = -1.0

    @property
    def timed_out(self) -> bool:
        return self.timeout is not TimeoutKind.NONE

    @property
    def text(self) -> str:
        return "\n".join(self.output)


class ProgressObserver(Protocol):
    def on_status(self, activity: str, message: str) -> None:  # pragma: no cover - protocol
        ...

    def on_progress(self, activity: str, percent: float) -> None:  # pragma: no cover - protocol
        ...


class LoggingObserver:
    """Observer that forwards notifications to the module logger."""

    def on_status(self, activity: str, message: str) -> None:
        logger.info("%s: %s", activity, message)

    def on_progress(self, activity: str, percent: float) -> None:
        logger.info("%s: %.0f%%", activity, percent)


@dataclass
class _ProcessHandle:
    process: asyncio.subprocess.Process
    started: float
    last_output: float
    chunks: list[str] = field(default_factory=list)
    unseen: list[str] = field(default_factory=list)
    progress_tail: str = ""
    last_progress: float = -1.0

    def overall_elapsed(self, now: float) -> float:
        return now - self.started

    def idle_elapsed(self, now: float) -> float:
        return now - self.last_output


class ProcessSupervisor:
    """Run external commands under overall and idle timeout supervision."""

    def __init__(
        self,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        overall_timeout: float = DEFAULT_OVERALL_TIMEOUT,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        idle_enabled: bool = True,
        observer: ProgressObserver | None = None,
        encoding: str = "utf-8",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._poll_interval = poll_interval
        self._overall_timeout = overall_timeout
        self._idle_timeout = idle_timeout
        self._idle_enabled = idle_enabled
        self._observer = observer
        self._encoding = encoding
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: EngineSettings, observer: ProgressObserver | None = None) -> "ProcessSupervisor":
        policy = settings.default_timeout()
        return cls(
            poll_interval=settings.poll_interval,
            overall_timeout=policy.overall_seconds,
            idle_timeout=policy.idle_seconds,
            idle_enabled=policy.idle_enabled,
            observer=observer,
        )

    @property
    def observer(self) -> ProgressObserver | None:
        return self._observer

    @observer.setter
    def observer(self, value: ProgressObserver | None) -> None:
        self._observer = value

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        activity: str = "",
        *,
        overall_timeout: float | None = None,
        idle_timeout_enabled: bool = True,
        idle_timeout: float | None = None,
        progress_pattern: str | Pattern[str] | None = None,
    ) -> ProcessResult:
        """Blocking wrapper around :meth:`run_async` for worker threads."""

        return asyncio.run(
            self.run_async(
                command,
                args,
                activity,
                overall_timeout=overall_timeout,
                idle_timeout_enabled=idle_timeout_enabled,
                idle_timeout=idle_timeout,
                progress_pattern=progress_pattern,
            )
        )

    async def run_async(
        self,
        command: str,
        args: Sequence[str] = (),
        activity: str = "",
        *,
        overall_timeout: float | None = None,
        idle_timeout_enabled: bool = True,
        idle_timeout: float | None = None,
        progress_pattern: str | Pattern[str] | None = None,
    ) -> ProcessResult:
        cmd = (str(command), *(str(arg) for arg in args))
        label = activity or cmd[0]
        overall_limit = self._overall_timeout if overall_timeout is None else overall_timeout
        idle_limit = self._idle_timeout if idle_timeout is None else idle_timeout
        pattern = re.compile(progress_pattern) if isinstance(progress_pattern, str) else progress_pattern

        logger.debug("Starting %s: %s", label, " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=sanitize_environment(),
            )
        except OSError as exc:
            logger.error("Failed to start %s: %s", label, exc)
            return ProcessResult(cmd, False, error=f"Failed to start {cmd[0]}: {exc}")

        started = self._clock()
        handle = _ProcessHandle(process=process, started=started, last_output=started)
        self._notify_status(label, "started")
        reader = asyncio.create_task(self._read_output(handle))
        waiter = asyncio.create_task(process.wait())
        timeout = TimeoutKind.NONE
        try:
            while True:
                await asyncio.wait({reader, waiter}, timeout=self._poll_interval)
                self._consume_output(handle, label, pattern)
                if waiter.done() or process.returncode is not None:
                    break
                now = self._clock()
                if handle.overall_elapsed(now) > overall_limit:
                    timeout = TimeoutKind.OVERALL
                    break
                if idle_timeout_enabled and self._idle_enabled and handle.idle_elapsed(now) > idle_limit:
                    timeout = TimeoutKind.IDLE
                    break
        finally:
            await self._reap(handle, reader, waiter)
            self._consume_output(handle, label, pattern)

        output = "".join(handle.chunks).splitlines()
        returncode = process.returncode
        if timeout is TimeoutKind.OVERALL:
            error = f"{label} timed out after {overall_limit:g}s"
        elif timeout is TimeoutKind.IDLE:
            error = f"{label} produced no output for {idle_limit:g}s (idle timeout)"
        elif returncode:
            error = f"{EXIT_CODE_SENTINEL} {returncode}"
        else:
            error = None

        success = timeout is TimeoutKind.NONE and returncode == 0
        if timeout is not TimeoutKind.NONE:
            logger.warning("%s", error)
            self._notify_status(label, error or "timed out")
        else:
            self._notify_status(label, "finished" if success else f"failed ({error})")
        return ProcessResult(
            command=cmd,
            success=success,
            output=output,
            error=error,
            returncode=returncode,
            timeout=timeout,
            last_progress=handle.last_progress,
        )

    async def _read_output(self, handle: _ProcessHandle) -> None:
        stream = handle.process.stdout
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder(self._encoding)(errors="replace")
        while True:
            data = await stream.read(_READ_CHUNK)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    handle.unseen.append(tail)
                return
            text = decoder.decode(data)
            if text:
                handle.unseen.append(text)
                handle.last_output = self._clock()

    def _consume_output(self, handle: _ProcessHandle, label: str, pattern: Pattern[str] | None) -> None:
        if not handle.unseen:
            return
        fresh, handle.unseen = handle.unseen, []
        handle.chunks.extend(fresh)
        if pattern is None:
            return
        text = handle.progress_tail + "".join(fresh)
        consumed = 0
        for match in pattern.finditer(text):
            consumed = match.end()
            try:
                percent = float(match.group(1) if match.groups() else match.group(0))
            except ValueError:
                continue
            if percent != handle.last_progress:
                handle.last_progress = percent
                self._notify_progress(label, percent)
        # Only text after the last match can still complete a split percentage.
        tail = re.split(r"[\r\n]", text[consumed:])[-1]
        handle.progress_tail = tail[-_PROGRESS_TAIL_LIMIT:]

    async def _reap(self, handle: _ProcessHandle, reader: asyncio.Task, waiter: asyncio.Task) -> None:
        process = handle.process
        if process.returncode is None:
            kill_process_tree(process.pid)
            try:
                await asyncio.wait_for(asyncio.shield(waiter), timeout=_REAP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.error("Process %s did not exit after kill", process.pid)
        # A background child that inherited stdout can keep the pipe open after
        # the process itself exited; collect what is buffered and move on.
        if not reader.done():
            try:
                await asyncio.wait_for(asyncio.shield(reader), timeout=_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.debug("Output of pid %s still held open by a child; detaching", process.pid)
        for task in (reader, waiter):
            if not task.done():
                task.cancel()
        await asyncio.gather(reader, waiter, return_exceptions=True)

    def _notify_status(self, activity: str, message: str) -> None:
        if self._observer is None:
            return
        try:
            self._observer.on_status(activity, message)
        except Exception:  # pragma: no cover - observer failures never affect execution
            logger.exception("Progress observer failed on status update")

    def _notify_progress(self, activity: str, percent: float) -> None:
        if self._observer is None:
            return
        try:
            self._observer.on_progress(activity, percent)
        except Exception:  # pragma: no cover - observer failures never affect execution
            logger.exception("Progress observer failed on progress update")


__all__ = [
    "LoggingObserver",
    "ProcessResult",
    "ProcessSupervisor",
    "ProgressObserver",
    "TimeoutKind",
    "kill_process_tree",
    "sanitize_environment",
]
