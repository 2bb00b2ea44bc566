"""Verdicts for native tools that do not always report failure through their exit code."""
from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Pattern, Sequence

from provisioning_console.constants import EXIT_CODE_SENTINEL, POWERSHELL_PREFIX, TimeoutPolicy
from services.process_supervisor import ProcessResult, ProcessSupervisor, TimeoutKind

logger = logging.getLogger(__name__)

_EXIT_CODE_PATTERN = re.compile(rf"{EXIT_CODE_SENTINEL}\s+(-?\d+)")


@dataclass
class NativeCommandResult:
    success: bool
    output: list[str] = field(default_factory=list)
    error: str | None = None
    returncode: int | None = None
    timeout: TimeoutKind = TimeoutKind.NONE

    @property
    def text(self) -> str:
        return "\n".join(self.output)


def split_arguments(arguments: str | Sequence[str] | None) -> list[str]:
    """Split an argument string on whitespace, honouring quotes.

    Quotes group words and are removed; backslashes are kept literally so
    Windows paths survive.
    """

    if arguments is None:
        return []
    if isinstance(arguments, str):
        lexer = shlex.shlex(arguments, posix=True)
        lexer.whitespace_split = True
        lexer.commenters = ""
        lexer.escape = ""
        return list(lexer)
    return [str(arg) for arg in arguments]


def exit_code_from_error(error: str | None) -> int | None:
    if not error:
        return None
    match = _EXIT_CODE_PATTERN.search(error)
    return int(match.group(1)) if match else None


def find_failure_string(output: Sequence[str], failure_strings: Sequence[str]) -> str | None:
    if not failure_strings:
        return None
    text = "\n".join(output)
    for marker in failure_strings:
        if marker and marker in text:
            return marker
    return None


class NativeCommandRunner:
    """Runs native executables through the supervisor and interprets the outcome.

    A command succeeds only when it exits 0 *and* none of the configured
    failure strings appears in its output.
    """

    def __init__(self, supervisor: ProcessSupervisor) -> None:
        self._supervisor = supervisor

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    def run(
        self,
        executable: str,
        arguments: str | Sequence[str] | None = None,
        failure_strings: Sequence[str] = (),
        activity: str = "",
        *,
        idle_timeout_enabled: bool = True,
        overall_timeout: float | None = None,
        idle_timeout: float | None = None,
        progress_pattern: str | Pattern[str] | None = None,
    ) -> NativeCommandResult:
        result = self._supervisor.run(
            executable,
            split_arguments(arguments),
            activity or executable,
            overall_timeout=overall_timeout,
            idle_timeout_enabled=idle_timeout_enabled,
            idle_timeout=idle_timeout,
            progress_pattern=progress_pattern,
        )
        return self.interpret(result, failure_strings)

    def run_with_policy(
        self,
        executable: str,
        arguments: str | Sequence[str] | None,
        policy: TimeoutPolicy,
        failure_strings: Sequence[str] = (),
        activity: str = "",
        *,
        progress_pattern: str | Pattern[str] | None = None,
    ) -> NativeCommandResult:
        return self.run(
            executable,
            arguments,
            failure_strings,
            activity,
            idle_timeout_enabled=policy.idle_enabled,
            overall_timeout=policy.overall_seconds,
            idle_timeout=policy.idle_seconds,
            progress_pattern=progress_pattern,
        )

    def run_powershell(
        self,
        script: str,
        failure_strings: Sequence[str] = (),
        activity: str = "PowerShell",
        *,
        idle_timeout_enabled: bool = True,
        overall_timeout: float | None = None,
    ) -> NativeCommandResult:
        executable, *prefix = POWERSHELL_PREFIX
        return self.run(
            executable,
            [*prefix, script],
            failure_strings,
            activity,
            idle_timeout_enabled=idle_timeout_enabled,
            overall_timeout=overall_timeout,
        )

    @staticmethod
    def interpret(result: ProcessResult, failure_strings: Sequence[str] = ()) -> NativeCommandResult:
        success = result.success
        error = result.error
        returncode = result.returncode
        sentinel_code = exit_code_from_error(result.error)
        if sentinel_code is not None:
            returncode = sentinel_code
            success = False
        elif returncode not in (0, None):
            success = False
            error = error or f"{EXIT_CODE_SENTINEL} {returncode}"

        marker = find_failure_string(result.output, failure_strings)
        if marker is not None:
            success = False
            detail = f"output contains failure text '{marker}'"
            error = f"{error}; {detail}" if error else detail

        if not success:
            logger.debug("%s failed: %s", " ".join(result.command), error)
        return NativeCommandResult(
            success=success,
            output=list(result.output),
            error=error,
            returncode=returncode,
            timeout=result.timeout,
        )


__all__ = [
    "NativeCommandResult",
    "NativeCommandRunner",
    "exit_code_from_error",
    "find_failure_string",
    "split_arguments",
]
