"""Status reconciliation and single/bulk task actions."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from provisioning_console.catalog import TaskDefinition
from services.package_handlers import MANAGERS_BY_TYPE, upgrade_package
from services.task_engine import ActionResult, NoticeLevel, TaskAction, TaskStatus, UserInterface, VerifyResult
from services.task_registry import TaskDispatcher

logger = logging.getLogger(__name__)


@dataclass
class TaskState:
    task: TaskDefinition
    status: TaskStatus
    detail: str = ""

    @property
    def can_apply(self) -> bool:
        return self.status is TaskStatus.PENDING

    @property
    def can_revert(self) -> bool:
        return self.status is TaskStatus.APPLIED


@dataclass
class BatchSummary:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[ActionResult] = field(default_factory=list)

    def describe(self) -> str:
        text = f"{self.succeeded} succeeded, {self.failed} failed"
        if self.skipped:
            text = f"{text}, {self.skipped} skipped"
        return text


def classify(task: TaskDefinition, outcome: VerifyResult) -> TaskState:
    status = outcome.status
    if status is TaskStatus.APPLIED and not task.revertible:
        status = TaskStatus.APPLIED_NOT_REVERTIBLE
    return TaskState(task, status, outcome.detail)


class Reconciler:
    """Computes live status for catalog tasks and runs actions against them.

    Status is never cached: every call to :meth:`reconcile` re-runs the
    verify handlers so the view always reflects the machine.
    """

    def __init__(self, dispatcher: TaskDispatcher, *, ui: UserInterface | None = None) -> None:
        self._dispatcher = dispatcher
        self._ui = ui or dispatcher.context.ui

    @property
    def ui(self) -> UserInterface:
        return self._ui

    @ui.setter
    def ui(self, value: UserInterface) -> None:
        self._ui = value

    def reconcile(self, tasks: Iterable[TaskDefinition]) -> list[TaskState]:
        return [self.state_of(task) for task in tasks]

    def state_of(self, task: TaskDefinition) -> TaskState:
        return classify(task, self._dispatcher.verify(task))

    def apply_task(self, task: TaskDefinition) -> ActionResult:
        result = self._dispatcher.apply(task)
        self._report(task, result)
        self.finish_action()
        return result

    def revert_task(self, task: TaskDefinition, state: TaskState | None = None) -> ActionResult | None:
        """Revert one task after a y/n confirmation; ``None`` means the user declined."""

        state = state or self.state_of(task)
        refusal = self._revert_refusal(state)
        if refusal is not None:
            self._ui.notify(NoticeLevel.WARNING, refusal)
            return ActionResult(task.id, TaskAction.REVERT, False, refusal)
        if not self._ui.confirm(f"Revert '{task.label}' ({task.id})?"):
            return None
        result = self._dispatcher.revert(task)
        self._report(task, result)
        self.finish_action()
        return result

    def upgrade_task(self, task: TaskDefinition) -> ActionResult:
        if task.type not in MANAGERS_BY_TYPE:
            message = f"'{task.id}' is not a package task and cannot be upgraded"
            self._ui.notify(NoticeLevel.WARNING, message)
            return ActionResult(task.id, TaskAction.APPLY, False, message)
        try:
            result = upgrade_package(task, self._dispatcher.context)
        except Exception as exc:
            logger.exception("[%s] upgrade raised", task.id)
            result = ActionResult(task.id, TaskAction.APPLY, False, f"{type(exc).__name__}: {exc}")
        self._report(task, result, verb="Upgrade")
        self.finish_action()
        return result

    def apply_all_pending(self, tasks: Sequence[TaskDefinition], *, stop_on_failure: bool = False) -> BatchSummary:
        pending = [state for state in self.reconcile(tasks) if state.can_apply]
        summary = BatchSummary()
        if not pending:
            self._ui.notify(NoticeLevel.INFO, "No pending tasks to apply.")
            return summary
        for index, state in enumerate(pending):
            result = self._dispatcher.apply(state.task)
            self._report(state.task, result)
            self._count(summary, result)
            if not result.success and stop_on_failure:
                summary.skipped = len(pending) - index - 1
                self._ui.notify(NoticeLevel.ERROR, f"Stopping batch after failure of '{state.task.id}'.")
                break
        self._ui.notify(self._summary_level(summary), f"Apply all pending: {summary.describe()}")
        self.finish_action()
        return summary

    def revert_all_applied(self, tasks: Sequence[TaskDefinition]) -> BatchSummary | None:
        """Revert every revertible applied task; ``None`` means the user declined."""

        applied = [state for state in self.reconcile(tasks) if state.can_revert]
        summary = BatchSummary()
        if not applied:
            self._ui.notify(NoticeLevel.INFO, "No applied tasks can be reverted.")
            return summary
        if not self._ui.confirm(f"Revert {len(applied)} applied task(s)? This cannot be undone automatically."):
            return None
        for state in applied:
            result = self._dispatcher.revert(state.task)
            self._report(state.task, result)
            self._count(summary, result)
        self._ui.notify(self._summary_level(summary), f"Revert all applied: {summary.describe()}")
        self.finish_action()
        return summary

    def finish_action(self) -> bool:
        """Consume the pending-reboot flag; returns True when a reboot was scheduled."""

        reasons = self._dispatcher.context.pending.consume_reboot()
        if not reasons:
            return False
        prompt = "A reboot is required to complete: " + ", ".join(reasons) + ". Reboot now?"
        if not self._ui.confirm(prompt):
            self._ui.notify(NoticeLevel.WARNING, "Reboot postponed. Restart the machine to finish pending changes.")
            return False
        context = self._dispatcher.context
        delay = str(context.settings.reboot_delay)
        result = context.native.run("shutdown.exe", ["/r", "/t", delay], activity="Schedule reboot")
        if not result.success:
            self._ui.notify(NoticeLevel.ERROR, f"Could not schedule reboot: {result.error}")
            return False
        self._ui.notify(NoticeLevel.INFO, f"Reboot scheduled in {delay} seconds.")
        return True

    def _revert_refusal(self, state: TaskState) -> str | None:
        task = state.task
        if state.status is TaskStatus.APPLIED_NOT_REVERTIBLE or (state.status is TaskStatus.APPLIED and not task.revertible):
            return f"'{task.id}' is {TaskStatus.APPLIED_NOT_REVERTIBLE.value}: the catalog defines no revert_details for it."
        if state.status is not TaskStatus.APPLIED:
            return f"'{task.id}' is {state.status.value}; only applied tasks can be reverted."
        return None

    def _report(self, task: TaskDefinition, result: ActionResult, verb: str | None = None) -> None:
        verb = verb or result.action.value
        if result.success:
            message = f"{verb} succeeded: {task.label}"
            if result.message:
                message = f"{message} ({result.message})"
            self._ui.notify(NoticeLevel.SUCCESS, message)
            return
        self._ui.notify(NoticeLevel.ERROR, f"{verb} failed: {task.label}: {result.message}")
        if result.output:
            self._ui.notify(NoticeLevel.INFO, "\n".join(result.output))

    @staticmethod
    def _count(summary: BatchSummary, result: ActionResult) -> None:
        summary.results.append(result)
        if result.success:
            summary.succeeded += 1
        else:
            summary.failed += 1

    @staticmethod
    def _summary_level(summary: BatchSummary) -> NoticeLevel:
        return NoticeLevel.SUCCESS if summary.failed == 0 else NoticeLevel.WARNING


__all__ = ["BatchSummary", "Reconciler", "TaskState", "classify"]
