"""Handlers for cleanup and analysis task types.

These are actions rather than states: verification always reports
``Pending`` so they can be run again at any time.
"""
from __future__ import annotations

import heapq
import logging
import os
import time
from pathlib import Path
from typing import Iterator

import psutil

from provisioning_console.catalog import TaskDefinition
from provisioning_console.constants import (
    CLEANMGR_TIMEOUT,
    DISM_TIMEOUT,
    PERCENT_PROGRESS_PATTERN,
    VOLUME_CACHES_PATH,
)
from provisioning_console.errors import TaskDetailsError
from services.native_command import NativeCommandResult
from services.task_engine import ActionResult, EngineContext, NoticeLevel, TaskAction, TaskStatus, VerifyResult
from services.task_registry import TaskTypeRegistry

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_CATEGORIES = (
    "Active Setup Temp Folders",
    "Delivery Optimization Files",
    "Downloaded Program Files",
    "Internet Cache Files",
    "Old ChkDsk Files",
    "Recycle Bin",
    "Temporary Files",
    "Thumbnail Cache",
    "Update Cleanup",
    "Windows Error Reporting Files",
)
DISM_FAILURE_STRINGS = ("Error:", "The operation failed")
CPU_SAMPLE_SECONDS = 0.5


def verify_always_pending(task: TaskDefinition, ctx: EngineContext) -> VerifyResult:
    return VerifyResult(TaskStatus.PENDING, "Runs on demand")


def format_size(size: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.2f} TB"


def _int_detail(task: TaskDefinition, key: str, default: int) -> int:
    raw = task.details.get(key, default)
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise TaskDetailsError(f"Task '{task.id}': '{key}' must be an integer, got {raw!r}") from exc


# DiskCleanup


def apply_disk_cleanup(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    sageset = _int_detail(task, "sageset", 64)
    if not 0 <= sageset <= 9999:
        raise TaskDetailsError(f"Task '{task.id}': sageset must be between 0 and 9999")
    flag_name = f"StateFlags{sageset:04d}"
    categories = task.details.get("categories") or DEFAULT_CLEANUP_CATEGORIES
    flagged: list[str] = []
    for category in categories:
        key = f"{VOLUME_CACHES_PATH}\\{category}"
        if not ctx.registry.key_exists(key):
            logger.info("Skipping unknown cleanup category %s", category)
            continue
        ctx.registry.set_value(key, flag_name, 2, "DWord")
        flagged.append(category)
    if not flagged:
        return ActionResult(task.id, TaskAction.APPLY, False, "None of the configured cleanup categories exist")
    result = ctx.native.run_with_policy("cleanmgr.exe", [f"/sagerun:{sageset}"], CLEANMGR_TIMEOUT, activity="Disk Cleanup")
    output = [f"Categories: {', '.join(flagged)}", *result.output]
    return ActionResult(task.id, TaskAction.APPLY, result.success, result.error or "", output)


# FindLargeFiles


def _walk_files(root: Path) -> Iterator[tuple[int, str]]:
    for dirpath, _dirnames, filenames in os.walk(root, onerror=lambda exc: logger.debug("Skipping %s", exc)):
        for filename in filenames:
            full = os.path.join(dirpath, filename)
            try:
                stat = os.stat(full, follow_symlinks=False)
            except OSError:
                continue
            yield stat.st_size, full


def find_large_files(root: Path, min_size: int, top: int) -> list[tuple[int, str]]:
    candidates = ((size, path) for size, path in _walk_files(root) if size >= min_size)
    return heapq.nlargest(top, candidates)


def apply_find_large_files(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    root = Path(str(task.details.get("path") or os.environ.get("SystemDrive", "C:") + "\\"))
    if not root.exists():
        return ActionResult(task.id, TaskAction.APPLY, False, f"Path not found: {root}")
    min_size = _int_detail(task, "minSizeMB", 500) * 1024 * 1024
    top = _int_detail(task, "top", 20)
    found = find_large_files(root, min_size, top)
    lines = [f"{format_size(size):>10}  {path}" for size, path in found]
    summary = f"{len(found)} file(s) of at least {format_size(min_size)} under {root}"
    ctx.ui.notify(NoticeLevel.INFO, "\n".join([summary, *lines]))
    return ActionResult(task.id, TaskAction.APPLY, True, summary, lines)


# AnalyzeProcesses


def sample_processes(sort_by: str, top: int, sample_seconds: float = CPU_SAMPLE_SECONDS) -> list[dict]:
    procs: list[psutil.Process] = []
    for proc in psutil.process_iter(["pid", "name"]):
        try:
            proc.cpu_percent(None)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        procs.append(proc)
    time.sleep(sample_seconds)
    rows: list[dict] = []
    for proc in procs:
        try:
            rows.append(
                {
                    "pid": proc.pid,
                    "name": proc.info.get("name") or "?",
                    "cpu": proc.cpu_percent(None),
                    "memory": proc.memory_info().rss,
                }
            )
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    key = "cpu" if sort_by == "cpu" else "memory"
    return heapq.nlargest(top, rows, key=lambda row: row[key])


def apply_analyze_processes(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    sort_by = str(task.details.get("sortBy", "memory")).lower()
    if sort_by not in {"memory", "cpu"}:
        raise TaskDetailsError(f"Task '{task.id}': sortBy must be 'memory' or 'cpu'")
    rows = sample_processes(sort_by, _int_detail(task, "top", 15))
    lines = [f"{row['pid']:>7}  {row['cpu']:>6.1f}%  {format_size(row['memory']):>10}  {row['name']}" for row in rows]
    header = f"{'PID':>7}  {'CPU':>7}  {'Memory':>10}  Name"
    ctx.ui.notify(NoticeLevel.INFO, "\n".join([header, *lines]))
    return ActionResult(task.id, TaskAction.APPLY, True, f"Top {len(rows)} processes by {sort_by}", [header, *lines])


# RecycleBinCleanup


def apply_recycle_bin(task: TaskDefinition, ctx: EngineContext) -> NativeCommandResult:
    drive = task.details.get("drive")
    script = "Clear-RecycleBin -Force -ErrorAction SilentlyContinue"
    if drive:
        script = f"Clear-RecycleBin -DriveLetter '{str(drive).rstrip(':')}' -Force -ErrorAction SilentlyContinue"
    return ctx.native.run_powershell(script, activity="Empty Recycle Bin")


# WindowsUpdateCleanup


def apply_windows_update_cleanup(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    output: list[str] = []
    if task.details.get("clearDownloadCache"):
        script = "; ".join(
            [
                "Stop-Service -Name wuauserv, bits -Force -ErrorAction Stop",
                "Remove-Item -Path \"$env:WINDIR\\SoftwareDistribution\\Download\\*\" -Recurse -Force -ErrorAction SilentlyContinue",
                "Start-Service -Name wuauserv, bits -ErrorAction Stop",
            ]
        )
        cache = ctx.native.run_powershell(script, activity="Clear Windows Update cache")
        output.extend(cache.output)
        if not cache.success:
            return ActionResult(task.id, TaskAction.APPLY, False, cache.error or "cache cleanup failed", output)
    args = ["/Online", "/Cleanup-Image", "/StartComponentCleanup"]
    if task.details.get("resetBase"):
        args.append("/ResetBase")
    result = ctx.native.run_with_policy(
        "Dism.exe",
        args,
        DISM_TIMEOUT,
        DISM_FAILURE_STRINGS,
        "Component store cleanup",
        progress_pattern=PERCENT_PROGRESS_PATTERN,
    )
    output.extend(result.output)
    return ActionResult(task.id, TaskAction.APPLY, result.success, result.error or "", output)


def register(registry: TaskTypeRegistry) -> None:
    registry.register("DiskCleanup", verify=verify_always_pending, apply=apply_disk_cleanup)
    registry.register("FindLargeFiles", verify=verify_always_pending, apply=apply_find_large_files)
    registry.register("AnalyzeProcesses", verify=verify_always_pending, apply=apply_analyze_processes)
    registry.register("RecycleBinCleanup", verify=verify_always_pending, apply=apply_recycle_bin)
    registry.register("WindowsUpdateCleanup", verify=verify_always_pending, apply=apply_windows_update_cleanup)
