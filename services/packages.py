"""Package manager clients (winget, Chocolatey) built on the native command wrapper."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from provisioning_console.constants import (
    CHOCOLATEY_PROFILE,
    PERCENT_PROGRESS_PATTERN,
    WINGET_PROFILE,
    PackageManagerProfile,
)
from provisioning_console.errors import EngineError
from services.native_command import NativeCommandResult, NativeCommandRunner


class PackageManagerError(EngineError):
    pass


@dataclass(frozen=True)
class PackageStatus:
    installed: bool
    version: str | None = None
    available: str | None = None

    @property
    def is_upgradable(self) -> bool:
        return self.installed and bool(self.available)

    def describe(self) -> str:
        if not self.installed:
            return "Not installed"
        text = f"Installed {self.version}" if self.version else "Installed"
        if self.is_upgradable:
            text = f"{text} (upgrade available: {self.available})"
        return text


class PackageManagerClient(Protocol):
    def is_available(self) -> bool:  # pragma: no cover - protocol
        ...

    def get_installed_status(self, package_id: str, *, source: str | None = None) -> PackageStatus:  # pragma: no cover - protocol
        ...

    def install(self, package_id: str, *, source: str | None = None, override: str | None = None) -> NativeCommandResult:  # pragma: no cover - protocol
        ...

    def uninstall(self, package_id: str) -> NativeCommandResult:  # pragma: no cover - protocol
        ...

    def upgrade(self, package_id: str, *, source: str | None = None) -> NativeCommandResult:  # pragma: no cover - protocol
        ...


class WingetClient:
    """Thin wrapper around the winget CLI."""

    KNOWN_SOURCES = {"winget", "msstore"}
    NOT_INSTALLED_MARKER = "No installed package found matching input criteria"

    def __init__(
        self,
        native: NativeCommandRunner,
        executable: str | None = None,
        profile: PackageManagerProfile = WINGET_PROFILE,
    ) -> None:
        self._native = native
        self._profile = profile
        exe_path = executable or shutil.which(profile.executable)
        if not exe_path:
            fallback = self._find_winget_fallback()
            exe_path = str(fallback) if fallback else None
        self._executable = exe_path

    def is_available(self) -> bool:
        return self._executable is not None

    def get_installed_status(self, package_id: str, *, source: str | None = None) -> PackageStatus:
        args = ["list", "--id", package_id, "--exact", "--accept-source-agreements", "--disable-interactivity"]
        if source:
            args.extend(["--source", source])
        result = self._run(args, f"winget list {package_id}", failure_strings=())
        if self.NOT_INSTALLED_MARKER in result.text:
            return PackageStatus(installed=False)
        status = self.parse_list_output(result.output, package_id)
        if status is None:
            if not result.success:
                raise PackageManagerError(f"winget list failed for {package_id}: {result.error}")
            return PackageStatus(installed=False)
        return status

    def install(self, package_id: str, *, source: str | None = None, override: str | None = None) -> NativeCommandResult:
        args = self._build_base_args("install", package_id, source)
        args.extend(["--force", "--accept-package-agreements", "--silent"])
        if override:
            args.extend(["--override", override])
        return self._run(args, f"winget install {package_id}")

    def uninstall(self, package_id: str) -> NativeCommandResult:
        args = self._build_base_args("uninstall", package_id, None)
        args.append("--silent")
        return self._run(args, f"winget uninstall {package_id}")

    def upgrade(self, package_id: str, *, source: str | None = None) -> NativeCommandResult:
        args = self._build_base_args("upgrade", package_id, source)
        args.extend(["--accept-package-agreements", "--silent"])
        return self._run(args, f"winget upgrade {package_id}")

    @classmethod
    def parse_list_output(cls, lines: list[str], package_id: str) -> PackageStatus | None:
        wanted = package_id.lower()
        for line in lines:
            tokens = line.split()
            lowered = [token.lower() for token in tokens]
            if wanted not in lowered:
                continue
            index = lowered.index(wanted)
            after = tokens[index + 1 :]
            if not after:
                return PackageStatus(installed=True)
            version = after[0]
            available = None
            rest = after[1:]
            if len(rest) >= 2:
                available = rest[0]
            elif len(rest) == 1 and rest[0].lower() not in cls.KNOWN_SOURCES:
                available = rest[0]
            return PackageStatus(installed=True, version=version, available=available)
        return None

    def _build_base_args(self, verb: str, package_id: str, source: str | None) -> list[str]:
        args = [verb, "--id", package_id, "--exact", "--accept-source-agreements", "--disable-interactivity"]
        if source:
            args.extend(["--source", source])
        return args

    def _run(self, args: list[str], activity: str, failure_strings: tuple[str, ...] | None = None) -> NativeCommandResult:
        if not self._executable:
            raise PackageManagerError("winget executable not found in PATH")
        markers = self._profile.failure_strings if failure_strings is None else failure_strings
        return self._native.run_with_policy(
            self._executable,
            args,
            self._profile.timeout,
            markers,
            activity,
            progress_pattern=PERCENT_PROGRESS_PATTERN,
        )

    def _find_winget_fallback(self) -> Path | None:
        local_appdata = os.environ.get("LOCALAPPDATA")
        if local_appdata:
            candidate = Path(local_appdata) / "Microsoft" / "WindowsApps" / "winget.exe"
            if candidate.exists():
                return candidate
        program_files = os.environ.get("ProgramFiles")
        if program_files:
            base = Path(program_files) / "WindowsApps"
            try:
                candidates = list(base.glob("Microsoft.DesktopAppInstaller_*_x64__8wekyb3d8bbwe/winget.exe"))
            except OSError:
                candidates = []
            for candidate in candidates:
                if candidate.exists():
                    return candidate
        return None


class ChocolateyClient:
    """Thin wrapper around choco.exe."""

    def __init__(
        self,
        native: NativeCommandRunner,
        executable: str | None = None,
        profile: PackageManagerProfile = CHOCOLATEY_PROFILE,
    ) -> None:
        self._native = native
        self._profile = profile
        exe_path = executable or shutil.which(profile.executable)
        if not exe_path:
            program_data = os.environ.get("ProgramData")
            if program_data:
                candidate = Path(program_data) / "chocolatey" / "bin" / "choco.exe"
                if candidate.exists():
                    exe_path = str(candidate)
        self._executable = exe_path

    def is_available(self) -> bool:
        return self._executable is not None

    def get_installed_status(self, package_id: str, *, source: str | None = None) -> PackageStatus:
        listed = self._run(["list", package_id, "--exact", "--limit-output"], f"choco list {package_id}", failure_strings=())
        if not listed.success:
            raise PackageManagerError(f"choco list failed for {package_id}: {listed.error}")
        version = self.parse_limited_output(listed.output, package_id, column=1)
        if version is None:
            return PackageStatus(installed=False)
        outdated = self._run(["outdated", "--limit-output"], "choco outdated", failure_strings=())
        available = self.parse_limited_output(outdated.output, package_id, column=2) if outdated.success else None
        return PackageStatus(installed=True, version=version, available=available)

    def install(self, package_id: str, *, source: str | None = None, override: str | None = None) -> NativeCommandResult:
        args = ["install", package_id, "-y"]
        if source:
            args.extend(["--source", source])
        if override:
            args.extend(["--install-arguments", override])
        return self._run(args, f"choco install {package_id}")

    def uninstall(self, package_id: str) -> NativeCommandResult:
        return self._run(["uninstall", package_id, "-y"], f"choco uninstall {package_id}")

    def upgrade(self, package_id: str, *, source: str | None = None) -> NativeCommandResult:
        args = ["upgrade", package_id, "-y"]
        if source:
            args.extend(["--source", source])
        return self._run(args, f"choco upgrade {package_id}")

    @staticmethod
    def parse_limited_output(lines: list[str], package_id: str, *, column: int) -> str | None:
        wanted = package_id.lower()
        for line in lines:
            parts = line.strip().split("|")
            if len(parts) > column and parts[0].lower() == wanted:
                return parts[column] or None
        return None

    def _run(self, args: list[str], activity: str, failure_strings: tuple[str, ...] | None = None) -> NativeCommandResult:
        if not self._executable:
            raise PackageManagerError("choco executable not found in PATH")
        markers = self._profile.failure_strings if failure_strings is None else failure_strings
        return self._native.run_with_policy(
            self._executable,
            args,
            self._profile.timeout,
            markers,
            activity,
            progress_pattern=PERCENT_PROGRESS_PATTERN,
        )


__all__ = [
    "ChocolateyClient",
    "PackageManagerClient",
    "PackageManagerError",
    "PackageStatus",
    "WingetClient",
]
