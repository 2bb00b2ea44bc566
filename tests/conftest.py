from __future__ import annotations

from typing import Sequence

import pytest

from provisioning_console.settings import EngineSettings
from services.native_command import NativeCommandResult, find_failure_string, split_arguments
from services.task_engine import EngineContext, NoticeLevel


class FakeRegistry:
    def __init__(self, initial: dict[tuple[str, str], object] | None = None, keys: Sequence[str] = ()) -> None:
        self.values: dict[tuple[str, str], object] = dict(initial or {})
        self.types: dict[tuple[str, str], str | None] = {}
        self.keys = {path for path, _ in self.values} | set(keys)
        self.create_error: OSError | None = None

    def get_value(self, path: str, value_name: str):
        return self.values.get((path, value_name))

    def set_value(self, path: str, value_name: str, value, value_type: str | None = None) -> None:
        self.keys.add(path)
        self.values[(path, value_name)] = value
        self.types[(path, value_name)] = value_type

    def delete_value(self, path: str, value_name: str) -> bool:
        return self.values.pop((path, value_name), None) is not None

    def key_exists(self, path: str) -> bool:
        return path in self.keys

    def create_key(self, path: str) -> None:
        if self.create_error is not None:
            raise self.create_error
        self.keys.add(path)


class FakeNative:
    """Records commands and answers them from substring-keyed canned results."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.responses: list[tuple[str, NativeCommandResult]] = []

    def respond(self, fragment: str, output: Sequence[str] = (), *, success: bool = True, error: str | None = None) -> None:
        self.responses.append((fragment, NativeCommandResult(success, list(output), error, 0 if success else 1)))

    def run(self, executable: str, arguments=None, failure_strings: Sequence[str] = (), activity: str = "", **kwargs) -> NativeCommandResult:
        command = " ".join([executable, *split_arguments(arguments)])
        self.calls.append(command)
        for fragment, result in self.responses:
            if fragment in command:
                marker = find_failure_string(result.output, failure_strings)
                if result.success and marker:
                    return NativeCommandResult(False, list(result.output), f"output contains failure text '{marker}'", 0)
                return result
        return NativeCommandResult(True, [], None, 0)

    def run_with_policy(self, executable: str, arguments, policy, failure_strings: Sequence[str] = (), activity: str = "", **kwargs) -> NativeCommandResult:
        return self.run(executable, arguments, failure_strings, activity)

    def run_powershell(self, script: str, failure_strings: Sequence[str] = (), activity: str = "PowerShell", **kwargs) -> NativeCommandResult:
        return self.run("powershell", [script], failure_strings, activity)


class FakeAcl:
    def __init__(self, sddl: str = "O:SYG:SYD:PAI(A;CI;KR;;;BU)") -> None:
        self.sddl = sddl
        self.events: list[tuple[str, str]] = []
        self.fail_restore = False

    def get_sddl(self, key_path: str) -> str:
        self.events.append(("get", key_path))
        return self.sddl

    def grant_full_control(self, key_path: str, principal: str) -> None:
        self.events.append(("grant", principal))
        self.sddl = f"O:BAG:SYD:PAI(A;CI;KA;;;BA){self.sddl.partition('D:PAI')[2]}"

    def set_sddl(self, key_path: str, sddl: str) -> None:
        self.events.append(("restore", sddl))
        if self.fail_restore:
            raise RuntimeError("Set-Acl failed")
        self.sddl = sddl


class FakeShell:
    def __init__(self) -> None:
        self.events: list[str] = []

    def stop_shell(self) -> None:
        self.events.append("stop")

    def start_shell(self) -> None:
        self.events.append("start")


class RecordingUI:
    def __init__(self, answer: bool = True) -> None:
        self.answer = answer
        self.prompts: list[str] = []
        self.notices: list[tuple[NoticeLevel, str]] = []

    def confirm(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        return self.answer

    def notify(self, level: NoticeLevel, message: str) -> None:
        self.notices.append((level, message))

    def messages(self, level: NoticeLevel | None = None) -> list[str]:
        return [message for notice_level, message in self.notices if level is None or notice_level is level]


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def native() -> FakeNative:
    return FakeNative()


@pytest.fixture
def acl() -> FakeAcl:
    return FakeAcl()


@pytest.fixture
def shell() -> FakeShell:
    return FakeShell()


@pytest.fixture
def ui() -> RecordingUI:
    return RecordingUI()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(_env_file=None)


@pytest.fixture
def context(registry, native, acl, shell, ui, settings) -> EngineContext:
    return EngineContext(registry=registry, native=native, acl=acl, shell=shell, settings=settings, ui=ui)
