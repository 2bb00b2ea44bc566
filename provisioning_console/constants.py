"""Fixed values shared by the task engine and its handlers."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Tuple


@dataclass(frozen=True)
class TimeoutPolicy:
    overall_seconds: float
    idle_enabled: bool
    idle_seconds: float


@dataclass(frozen=True)
class PackageManagerProfile:
    executable: str
    failure_strings: Tuple[str, ...]
    timeout: TimeoutPolicy


DEFAULT_OVERALL_TIMEOUT = 3600.0
DEFAULT_IDLE_TIMEOUT = 300.0
DEFAULT_POLL_INTERVAL = 0.25

EXIT_CODE_SENTINEL = "exit code"

POWERSHELL_PREFIX = ("powershell", "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command")

KNOWN_POWER_SCHEMES = {
    "SCHEME_BALANCED": "381b4222-f694-41f0-9685-ff5bb260df2e",
    "SCHEME_MIN": "8c5e7fda-e8bf-4a96-9a85-a6e23a8c635c",
    "SCHEME_MAX": "a1841308-3541-4fab-bc81-f71556f20b4a",
    "SCHEME_ULTIMATE": "e9a42b02-d5df-448d-aa00-03f14749eb61",
}

ADMINISTRATORS_PRINCIPAL = "BUILTIN\\Administrators"

VOLUME_CACHES_PATH = r"HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Explorer\VolumeCaches"

PERCENT_PROGRESS_PATTERN = r"(\d{1,3}(?:\.\d+)?)\s*%"

WINGET_PROFILE = PackageManagerProfile(
    executable="winget",
    failure_strings=(
        "No package found matching input criteria",
        "No installed package found matching input criteria",
        "Installer failed with exit code",
        "Failed to install",
        "An unexpected error occurred",
    ),
    timeout=TimeoutPolicy(overall_seconds=DEFAULT_OVERALL_TIMEOUT, idle_enabled=True, idle_seconds=DEFAULT_IDLE_TIMEOUT),
)

CHOCOLATEY_PROFILE = PackageManagerProfile(
    executable="choco",
    failure_strings=(
        "The package was not found with the source(s) listed",
        "Chocolatey installed 0/",
        "Chocolatey uninstalled 0/",
        "Chocolatey upgraded 0/",
        "not installed. The package was not found",
    ),
    timeout=TimeoutPolicy(overall_seconds=DEFAULT_OVERALL_TIMEOUT, idle_enabled=True, idle_seconds=DEFAULT_IDLE_TIMEOUT),
)

DISM_TIMEOUT = TimeoutPolicy(overall_seconds=DEFAULT_OVERALL_TIMEOUT * 2, idle_enabled=True, idle_seconds=900.0)
# cleanmgr prints nothing while it works
CLEANMGR_TIMEOUT = TimeoutPolicy(overall_seconds=DEFAULT_OVERALL_TIMEOUT, idle_enabled=False, idle_seconds=DEFAULT_IDLE_TIMEOUT)

CATALOG_FILES = {
    "tweaks": "tweaks.json",
    "cleanup": "cleanup.json",
    "packages": "packages.json",
}

CONFIG_ROOT = Path(__file__).resolve().parent
DEFAULT_CATALOG_DIR = CONFIG_ROOT.parent / "catalogs"
