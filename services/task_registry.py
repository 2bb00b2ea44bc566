"""Task type registry and dispatcher.

Each task type contributes up to three handlers, registered under
``(action, type_name)``. The dispatcher resolves them by lookup, so adding a
type never touches the dispatch code. A missing handler only degrades the
affected task: verification reports ``EngineError`` and apply/revert fail
with an ``UnknownTaskTypeError`` message.
"""
from __future__ import annotations

import logging
from typing import Callable, Union

from provisioning_console.catalog import TaskDefinition
from provisioning_console.errors import UnknownTaskTypeError
from services.native_command import NativeCommandResult
from services.task_engine import ActionResult, EngineContext, TaskAction, TaskStatus, VerifyResult

logger = logging.getLogger(__name__)

VerifyOutcome = Union[VerifyResult, TaskStatus]
ActionOutcome = Union[ActionResult, NativeCommandResult, bool]
VerifyHandler = Callable[[TaskDefinition, EngineContext], VerifyOutcome]
ActionHandler = Callable[[TaskDefinition, EngineContext], ActionOutcome]
Handler = Union[VerifyHandler, ActionHandler]
ActionWrapper = Callable[[ActionHandler], ActionHandler]


class TaskTypeRegistry:
    def __init__(self) -> None:
        self._handlers: dict[tuple[TaskAction, str], Handler] = {}

    def register(
        self,
        type_name: str,
        *,
        verify: VerifyHandler | None = None,
        apply: ActionHandler | None = None,
        revert: ActionHandler | None = None,
    ) -> None:
        for action, handler in ((TaskAction.VERIFY, verify), (TaskAction.APPLY, apply), (TaskAction.REVERT, revert)):
            if handler is not None:
                self.register_handler(action, type_name, handler)

    def register_handler(self, action: TaskAction, type_name: str, handler: Handler) -> None:
        key = (action, type_name)
        if key in self._handlers:
            logger.debug("Replacing %s handler for %s", action.value, type_name)
        self._handlers[key] = handler

    def alias(self, type_name: str, base_type: str, *, wrap: ActionWrapper | None = None) -> None:
        """Register ``type_name`` with ``base_type``'s handlers, optionally wrapping apply and revert."""

        for action in TaskAction:
            handler = self._handlers.get((action, base_type))
            if handler is None:
                continue
            if wrap is not None and action is not TaskAction.VERIFY:
                handler = wrap(handler)  # type: ignore[arg-type]
            self._handlers[(action, type_name)] = handler

    def resolve(self, action: TaskAction, type_name: str) -> Handler:
        try:
            return self._handlers[(action, type_name)]
        except KeyError as exc:
            raise UnknownTaskTypeError(action.value, type_name) from exc

    def supports(self, action: TaskAction, type_name: str) -> bool:
        return (action, type_name) in self._handlers

    def type_names(self) -> list[str]:
        return sorted({type_name for _, type_name in self._handlers})


def _normalize_action_outcome(task: TaskDefinition, action: TaskAction, outcome: ActionOutcome) -> ActionResult:
    if isinstance(outcome, ActionResult):
        return outcome
    if isinstance(outcome, NativeCommandResult):
        return ActionResult.from_native(task.id, action, outcome)
    success = bool(outcome)
    return ActionResult(task.id, action, success, "" if success else f"{action.value} reported failure")


class TaskDispatcher:
    def __init__(self, registry: TaskTypeRegistry, context: EngineContext) -> None:
        self._registry = registry
        self._context = context

    @property
    def context(self) -> EngineContext:
        return self._context

    @property
    def registry(self) -> TaskTypeRegistry:
        return self._registry

    def verify(self, task: TaskDefinition) -> VerifyResult:
        try:
            handler = self._registry.resolve(TaskAction.VERIFY, task.type)
        except UnknownTaskTypeError as exc:
            logger.error("[%s] %s", task.id, exc)
            return VerifyResult(TaskStatus.ENGINE_ERROR, str(exc))
        try:
            outcome = handler(task, self._context)
        except FileNotFoundError as exc:
            logger.debug("[%s] verify target absent: %s", task.id, exc)
            return VerifyResult(TaskStatus.PENDING)
        except Exception as exc:
            logger.exception("[%s] verify failed", task.id)
            return VerifyResult(TaskStatus.ERROR, str(exc))
        if isinstance(outcome, TaskStatus):
            return VerifyResult(outcome)
        return outcome  # type: ignore[return-value]

    def apply(self, task: TaskDefinition) -> ActionResult:
        result = self._execute(TaskAction.APPLY, task)
        if result.success and task.reboot_required:
            self._context.pending.request_reboot(task.label)
        return result

    def revert(self, task: TaskDefinition) -> ActionResult:
        if not task.revertible:
            return ActionResult(task.id, TaskAction.REVERT, False, f"Task '{task.id}' has no revert_details and cannot be reverted")
        return self._execute(TaskAction.REVERT, task)

    def _execute(self, action: TaskAction, task: TaskDefinition) -> ActionResult:
        try:
            handler = self._registry.resolve(action, task.type)
        except UnknownTaskTypeError as exc:
            logger.error("[%s] %s", task.id, exc)
            return ActionResult(task.id, action, False, str(exc))
        logger.info("[%s] %s: %s", task.id, action.value, task.label)
        try:
            outcome = handler(task, self._context)
        except Exception as exc:
            logger.exception("[%s] %s raised", task.id, action.value)
            return ActionResult(task.id, action, False, f"{type(exc).__name__}: {exc}")
        result = _normalize_action_outcome(task, action, outcome)
        if result.success:
            logger.info("[%s] %s succeeded", task.id, action.value)
        else:
            logger.error("[%s] %s failed: %s", task.id, action.value, result.message)
        return result


def build_default_registry() -> TaskTypeRegistry:
    """Registry with every built-in task type."""

    from services import cleanup_handlers, package_handlers, tweak_handlers

    registry = TaskTypeRegistry()
    tweak_handlers.register(registry)
    cleanup_handlers.register(registry)
    package_handlers.register(registry)
    return registry


__all__ = [
    "ActionHandler",
    "TaskDispatcher",
    "TaskTypeRegistry",
    "VerifyHandler",
    "build_default_registry",
]
