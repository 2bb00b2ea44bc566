"""Shared types and the execution context threaded through task handlers."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Protocol

from provisioning_console.settings import EngineSettings
from services.native_command import NativeCommandResult, NativeCommandRunner
from services.process_supervisor import LoggingObserver, ProcessSupervisor, ProgressObserver
from services.packages import ChocolateyClient, PackageManagerClient, WingetClient
from services.registry import RegistryAccessor, WindowsRegistryAccessor
from services.registry_acl import NullAclBackend, PowerShellAclBackend, RegistryAclBackend

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "Pending"
    APPLIED = "Applied"
    APPLIED_NOT_REVERTIBLE = "AppliedNotRevertible"
    ERROR = "Error"
    ENGINE_ERROR = "EngineError"


class TaskAction(str, Enum):
    VERIFY = "Verify"
    APPLY = "Apply"
    REVERT = "Revert"


class NoticeLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class VerifyResult:
    status: TaskStatus
    detail: str = ""


@dataclass
class ActionResult:
    task_id: str
    action: TaskAction
    success: bool
    message: str = ""
    output: list[str] = field(default_factory=list)

    @classmethod
    def from_native(cls, task_id: str, action: TaskAction, result: NativeCommandResult, message: str = "") -> "ActionResult":
        text = message or ("" if result.success else (result.error or "command failed"))
        return cls(task_id, action, result.success, text, list(result.output))


class UserInterface(Protocol):
    def confirm(self, prompt: str) -> bool:  # pragma: no cover - protocol
        ...

    def notify(self, level: NoticeLevel, message: str) -> None:  # pragma: no cover - protocol
        ...


class HeadlessInterface:
    """Non-interactive interface: notifications go to the log, confirmations get a fixed answer."""

    def __init__(self, *, assume_yes: bool = False) -> None:
        self._assume_yes = assume_yes

    def confirm(self, prompt: str) -> bool:
        logger.info("%s -> %s", prompt, "yes" if self._assume_yes else "no")
        return self._assume_yes

    def notify(self, level: NoticeLevel, message: str) -> None:
        log_level = {
            NoticeLevel.WARNING: logging.WARNING,
            NoticeLevel.ERROR: logging.ERROR,
        }.get(level, logging.INFO)
        logger.log(log_level, "%s", message)


class ShellController(Protocol):
    def stop_shell(self) -> None:  # pragma: no cover - protocol
        ...

    def start_shell(self) -> None:  # pragma: no cover - protocol
        ...


class ExplorerShell:
    """Stops and restarts explorer.exe around registry changes that only apply on shell start."""

    def __init__(self, native: NativeCommandRunner) -> None:
        self._native = native

    def stop_shell(self) -> None:
        result = self._native.run("taskkill", ["/f", "/im", "explorer.exe"], activity="Stop Explorer")
        if not result.success:
            logger.warning("Could not stop explorer.exe: %s", result.error)

    def start_shell(self) -> None:
        result = self._native.run_powershell("Start-Process explorer.exe", activity="Start Explorer")
        if not result.success:
            logger.error("Could not restart explorer.exe: %s", result.error)


@dataclass
class PendingActions:
    """Process-wide follow-ups requested by handlers, consumed by the front-end after each action."""

    reboot_reasons: list[str] = field(default_factory=list)

    @property
    def reboot_requested(self) -> bool:
        return bool(self.reboot_reasons)

    def request_reboot(self, reason: str) -> None:
        self.reboot_reasons.append(reason)

    def consume_reboot(self) -> list[str]:
        reasons, self.reboot_reasons = self.reboot_reasons, []
        return reasons


@dataclass
class EngineContext:
    registry: RegistryAccessor
    native: NativeCommandRunner
    acl: RegistryAclBackend
    shell: ShellController
    settings: EngineSettings
    ui: UserInterface = field(default_factory=HeadlessInterface)
    pending: PendingActions = field(default_factory=PendingActions)
    packages: Mapping[str, PackageManagerClient] = field(default_factory=dict)


def create_default_context(
    settings: EngineSettings,
    *,
    ui: UserInterface | None = None,
    observer: ProgressObserver | None = None,
    registry: RegistryAccessor | None = None,
) -> EngineContext:
    """Wire the Windows implementations of every collaborator."""

    supervisor = ProcessSupervisor.from_settings(settings, observer or LoggingObserver())
    native = NativeCommandRunner(supervisor)
    acl: RegistryAclBackend = PowerShellAclBackend(native) if sys.platform == "win32" else NullAclBackend()
    return EngineContext(
        registry=registry or WindowsRegistryAccessor(),
        native=native,
        acl=acl,
        shell=ExplorerShell(native),
        settings=settings,
        ui=ui or HeadlessInterface(),
        packages={"winget": WingetClient(native), "choco": ChocolateyClient(native)},
    )


__all__ = [
    "ActionResult",
    "EngineContext",
    "ExplorerShell",
    "HeadlessInterface",
    "NoticeLevel",
    "PendingActions",
    "ShellController",
    "TaskAction",
    "TaskStatus",
    "UserInterface",
    "VerifyResult",
    "create_default_context",
]
