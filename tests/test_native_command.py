from __future__ import annotations

import sys
from typing import Sequence

from provisioning_console.constants import TimeoutPolicy
from services.native_command import (
    NativeCommandRunner,
    exit_code_from_error,
    find_failure_string,
    split_arguments,
)
from services.process_supervisor import ProcessResult, ProcessSupervisor, TimeoutKind


class FakeSupervisor:
    def __init__(self, result: ProcessResult | None = None) -> None:
        self.result = result
        self.calls: list[dict] = []

    def run(self, command: str, args: Sequence[str] = (), activity: str = "", **kwargs) -> ProcessResult:
        self.calls.append({"command": command, "args": list(args), "activity": activity, **kwargs})
        if self.result is not None:
            return self.result
        return ProcessResult((command, *args), True, output=[], returncode=0)


def test_failure_string_overrides_zero_exit() -> None:
    supervisor = FakeSupervisor(
        ProcessResult(("sc.exe",), True, output=["[SC] ChangeServiceConfig FAILED 1060:"], returncode=0)
    )
    result = NativeCommandRunner(supervisor).run("sc.exe", "config Foo start= disabled", ["FAILED"])

    assert not result.success
    assert result.returncode == 0
    assert "FAILED" in result.error


def test_exit_code_sentinel_in_error_is_failure() -> None:
    supervisor = FakeSupervisor(ProcessResult(("tool",), False, output=["oops"], error="exit code 5", returncode=5))
    result = NativeCommandRunner(supervisor).run("tool")

    assert not result.success
    assert result.returncode == 5
    assert result.error == "exit code 5"
    assert result.text == "oops"


def test_clean_run_succeeds_and_passes_arguments() -> None:
    supervisor = FakeSupervisor()
    result = NativeCommandRunner(supervisor).run("powercfg", ["/setactive", "SCHEME_MIN"], activity="Power")

    assert result.success
    assert supervisor.calls[0]["args"] == ["/setactive", "SCHEME_MIN"]
    assert supervisor.calls[0]["activity"] == "Power"


def test_timeout_is_propagated() -> None:
    supervisor = FakeSupervisor(
        ProcessResult(("dism",), False, error="dism produced no output for 5s (idle timeout)", timeout=TimeoutKind.IDLE)
    )
    result = NativeCommandRunner(supervisor).run("dism")

    assert not result.success
    assert result.timeout is TimeoutKind.IDLE


def test_run_with_policy_forwards_timeouts() -> None:
    supervisor = FakeSupervisor()
    policy = TimeoutPolicy(overall_seconds=120.0, idle_enabled=False, idle_seconds=30.0)
    NativeCommandRunner(supervisor).run_with_policy("cleanmgr.exe", ["/sagerun:64"], policy)

    call = supervisor.calls[0]
    assert call["overall_timeout"] == 120.0
    assert call["idle_timeout_enabled"] is False
    assert call["idle_timeout"] == 30.0


def test_run_powershell_uses_non_interactive_prefix() -> None:
    supervisor = FakeSupervisor()
    NativeCommandRunner(supervisor).run_powershell("Get-Service")

    call = supervisor.calls[0]
    assert call["command"] == "powershell"
    assert call["args"][-1] == "Get-Service"
    assert "-NonInteractive" in call["args"]


def test_helpers() -> None:
    assert split_arguments('/r /t "10"') == ["/r", "/t", "10"]
    assert split_arguments(None) == []
    assert exit_code_from_error("step failed: exit code -1") == -1
    assert exit_code_from_error("no code here") is None
    assert find_failure_string(["all good", "Error: bad"], ["Error:"]) == "Error:"
    assert find_failure_string(["all good"], []) is None


def test_quoted_argument_strings_are_grouped_without_quotes() -> None:
    assert split_arguments('-c "print(1)" "a b"') == ["-c", "print(1)", "a b"]
    assert split_arguments(r'--override "/quiet /norestart" C:\Tools\setup.exe') == [
        "--override",
        "/quiet /norestart",
        r"C:\Tools\setup.exe",
    ]
    assert split_arguments('-Command "Get-Item \'C:\\x y\'"') == ["-Command", "Get-Item 'C:\\x y'"]


def test_argument_string_reaches_child_process_intact() -> None:
    runner = NativeCommandRunner(ProcessSupervisor(poll_interval=0.05, overall_timeout=30.0, idle_timeout=30.0))

    result = runner.run(sys.executable, '-c "import sys; print(sys.argv[1:])" "a b" plain')

    assert result.success, result.error
    assert result.output == ["['a b', 'plain']"]
