from __future__ import annotations

import sys
import time

import psutil
import pytest

from services.process_supervisor import ProcessSupervisor, TimeoutKind, sanitize_environment


class RecordingObserver:
    def __init__(self) -> None:
        self.statuses: list[tuple[str, str]] = []
        self.progress: list[float] = []

    def on_status(self, activity: str, message: str) -> None:
        self.statuses.append((activity, message))

    def on_progress(self, activity: str, percent: float) -> None:
        self.progress.append(percent)


def python(code: str) -> tuple[str, list[str]]:
    return sys.executable, ["-c", code]


def make_supervisor(**kwargs) -> ProcessSupervisor:
    kwargs.setdefault("poll_interval", 0.05)
    kwargs.setdefault("overall_timeout", 30.0)
    kwargs.setdefault("idle_timeout", 30.0)
    return ProcessSupervisor(**kwargs)


def process_gone(pid: int, wait: float = 5.0) -> bool:
    deadline = time.monotonic() + wait
    while time.monotonic() < deadline:
        try:
            if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
                return True
        except psutil.NoSuchProcess:
            return True
        time.sleep(0.05)
    return False


def kill_quietly(pid: int) -> None:
    try:
        psutil.Process(pid).kill()
    except psutil.NoSuchProcess:
        pass


def test_successful_command_collects_merged_output() -> None:
    command, args = python("import sys; print('out'); print('err', file=sys.stderr)")
    result = make_supervisor().run(command, args, "echo")

    assert result.success
    assert result.returncode == 0
    assert result.error is None
    assert result.timeout is TimeoutKind.NONE
    assert "out" in result.output
    assert "err" in result.output


def test_nonzero_exit_reports_exit_code_sentinel() -> None:
    command, args = python("import sys; print('boom'); sys.exit(3)")
    result = make_supervisor().run(command, args)

    assert not result.success
    assert result.returncode == 3
    assert result.error == "exit code 3"
    assert result.output == ["boom"]


def test_idle_timeout_kills_silent_process() -> None:
    command, args = python("import time; print('starting', flush=True); time.sleep(30)")
    result = make_supervisor(idle_timeout=0.5, overall_timeout=20.0).run(command, args, "silent")

    assert not result.success
    assert result.timeout is TimeoutKind.IDLE
    assert "idle timeout" in result.error
    assert result.output == ["starting"]


def test_idle_timeout_can_be_disabled_per_call() -> None:
    command, args = python("import time; time.sleep(1.0); print('done')")
    result = make_supervisor(idle_timeout=0.3).run(command, args, idle_timeout_enabled=False)

    assert result.success
    assert result.output == ["done"]


def test_overall_timeout_wins_over_chatty_output() -> None:
    code = "import time\nwhile True:\n    print('tick', flush=True)\n    time.sleep(0.1)"
    command, args = python(code)
    result = make_supervisor(overall_timeout=1.0, idle_timeout=5.0).run(command, args, "chatty")

    assert not result.success
    assert result.timeout is TimeoutKind.OVERALL
    assert result.error == "chatty timed out after 1s"
    assert "tick" in result.output


def test_progress_is_parsed_and_deduplicated() -> None:
    code = "\n".join(
        [
            "import sys",
            "for value in ('10.0%', '10.0%', '[=== 50.0% ===]', '100.0%'):",
            "    sys.stdout.write(value + '\\r')",
            "    sys.stdout.flush()",
            "print()",
        ]
    )
    observer = RecordingObserver()
    command, args = python(code)
    result = make_supervisor(observer=observer).run(
        command, args, "progress", progress_pattern=r"(\d{1,3}(?:\.\d+)?)\s*%"
    )

    assert result.success
    assert observer.progress == [10.0, 50.0, 100.0]
    assert result.last_progress == 100.0
    assert observer.statuses[0] == ("progress", "started")
    assert observer.statuses[-1] == ("progress", "finished")


def test_missing_executable_returns_failed_result() -> None:
    result = make_supervisor().run("definitely-not-a-real-executable-xyz", ["--help"])

    assert not result.success
    assert result.returncode is None
    assert result.error.startswith("Failed to start definitely-not-a-real-executable-xyz")


def test_sanitize_environment_strips_python_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "/tmp/elsewhere")
    monkeypatch.setenv("KEEP_ME", "1")

    env = sanitize_environment({"EXTRA": "yes"})

    assert "PYTHONPATH" not in env
    assert env["KEEP_ME"] == "1"
    assert env["EXTRA"] == "yes"


SPAWN_SLEEPER = "\n".join(
    [
        "import subprocess, sys",
        "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(20)'])",
        "print(child.pid, flush=True)",
    ]
)


def test_exit_is_not_held_up_by_background_grandchild() -> None:
    command, args = python(SPAWN_SLEEPER + "\nprint('done', flush=True)")
    started = time.monotonic()
    result = make_supervisor(idle_timeout=3.0, overall_timeout=15.0).run(command, args, "spawner")
    elapsed = time.monotonic() - started
    grandchild = int(result.output[0])
    try:
        assert result.success, result.error
        assert result.timeout is TimeoutKind.NONE
        assert result.returncode == 0
        assert result.output[-1] == "done"
        assert elapsed < 3.0
    finally:
        kill_quietly(grandchild)


def test_timeout_kills_descendants() -> None:
    command, args = python(SPAWN_SLEEPER + "\nimport time\ntime.sleep(30)")
    result = make_supervisor(idle_timeout=0.5, overall_timeout=15.0).run(command, args, "spawner")
    grandchild = int(result.output[0])
    try:
        assert result.timeout is TimeoutKind.IDLE
        assert process_gone(grandchild)
    finally:
        kill_quietly(grandchild)


def test_progress_split_across_chunks_is_reported_in_order() -> None:
    code = "\n".join(
        [
            "import sys, time",
            "for value in ('10% ', '20% ', '3', '0%\\n'):",
            "    sys.stdout.write(value)",
            "    sys.stdout.flush()",
            "    time.sleep(0.2)",
        ]
    )
    observer = RecordingObserver()
    command, args = python(code)
    result = make_supervisor(observer=observer).run(command, args, "progress", progress_pattern=r"(\d{1,3})\s*%")

    assert result.success
    assert observer.progress == [10.0, 20.0, 30.0]
