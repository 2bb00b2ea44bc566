from __future__ import annotations

from pathlib import Path

from provisioning_console.catalog import TaskDefinition
from provisioning_console.constants import VOLUME_CACHES_PATH
from services.cleanup_handlers import (
    apply_disk_cleanup,
    apply_find_large_files,
    apply_windows_update_cleanup,
    find_large_files,
    format_size,
    sample_processes,
    verify_always_pending,
)
from services.task_engine import NoticeLevel, TaskStatus


def make_task(type_name: str, **details) -> TaskDefinition:
    return TaskDefinition.model_validate({"id": type_name.lower(), "type": type_name, "details": details})


def test_cleanup_tasks_always_verify_pending(context) -> None:
    assert verify_always_pending(make_task("DiskCleanup"), context).status is TaskStatus.PENDING


def test_format_size() -> None:
    assert format_size(512) == "512 B"
    assert format_size(2048) == "2.0 KB"
    assert format_size(3 * 1024**3) == "3.0 GB"


def test_find_large_files_returns_biggest_first(tmp_path: Path) -> None:
    (tmp_path / "nested").mkdir()
    (tmp_path / "small.bin").write_bytes(b"x" * 10)
    (tmp_path / "medium.bin").write_bytes(b"x" * 2000)
    (tmp_path / "nested" / "large.bin").write_bytes(b"x" * 5000)

    found = find_large_files(tmp_path, min_size=1000, top=5)

    assert [Path(path).name for _, path in found] == ["large.bin", "medium.bin"]
    assert found[0][0] == 5000


def test_find_large_files_task_notifies_ui(tmp_path: Path, context, ui) -> None:
    (tmp_path / "big.iso").write_bytes(b"x" * (2 * 1024 * 1024))
    task = make_task("FindLargeFiles", path=str(tmp_path), minSizeMB=1, top=3)

    result = apply_find_large_files(task, context)

    assert result.success
    assert len(result.output) == 1
    assert "big.iso" in ui.messages(NoticeLevel.INFO)[0]


def test_disk_cleanup_flags_existing_categories(context, registry, native) -> None:
    temp_key = f"{VOLUME_CACHES_PATH}\\Temporary Files"
    registry.keys.add(temp_key)
    task = make_task("DiskCleanup", sageset=7, categories=["Temporary Files", "Not A Category"])

    result = apply_disk_cleanup(task, context)

    assert result.success
    assert registry.values[(temp_key, "StateFlags0007")] == 2
    assert registry.types[(temp_key, "StateFlags0007")] == "DWord"
    assert native.calls == ["cleanmgr.exe /sagerun:7"]


def test_disk_cleanup_without_known_categories_fails(context, native) -> None:
    result = apply_disk_cleanup(make_task("DiskCleanup", categories=["Nope"]), context)

    assert not result.success
    assert native.calls == []


def test_component_cleanup_builds_dism_command(context, native) -> None:
    result = apply_windows_update_cleanup(make_task("WindowsUpdateCleanup", resetBase=True), context)

    assert result.success
    assert native.calls == ["Dism.exe /Online /Cleanup-Image /StartComponentCleanup /ResetBase"]


def test_component_cleanup_reports_dism_error_text(context, native) -> None:
    native.respond("Dism.exe", ["Error: 0x800f0806"])

    result = apply_windows_update_cleanup(make_task("WindowsUpdateCleanup"), context)

    assert not result.success
    assert "Error:" in result.message


def test_sample_processes_includes_current_process() -> None:
    rows = sample_processes("memory", top=500, sample_seconds=0.0)

    assert rows
    assert all({"pid", "name", "cpu", "memory"} <= set(row) for row in rows)
    assert rows == sorted(rows, key=lambda row: row["memory"], reverse=True)
