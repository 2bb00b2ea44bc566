"""Handlers for package tasks installed through winget or Chocolatey."""
from __future__ import annotations

from provisioning_console.catalog import TaskDefinition
from provisioning_console.errors import EngineError, TaskDetailsError
from services.packages import PackageManagerClient
from services.task_engine import ActionResult, EngineContext, TaskAction, TaskStatus, VerifyResult
from services.task_registry import TaskTypeRegistry

MANAGERS_BY_TYPE = {
    "WingetPackage": "winget",
    "ChocolateyPackage": "choco",
}


def _client(task: TaskDefinition, ctx: EngineContext) -> PackageManagerClient:
    manager = MANAGERS_BY_TYPE.get(task.type)
    client = ctx.packages.get(manager) if manager else None
    if client is None:
        raise EngineError(f"No package manager client configured for {task.type}")
    if not client.is_available():
        raise EngineError(f"{manager} is not installed on this machine")
    return client


def _package_id(task: TaskDefinition) -> str:
    package_id = task.details.get("installId") or task.id
    if not package_id:
        raise TaskDetailsError(f"Task '{task.id}' has no installId")
    return str(package_id)


def verify_package(task: TaskDefinition, ctx: EngineContext) -> VerifyResult:
    status = _client(task, ctx).get_installed_status(_package_id(task), source=task.details.get("source"))
    return VerifyResult(TaskStatus.APPLIED if status.installed else TaskStatus.PENDING, status.describe())


def install_package(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    result = _client(task, ctx).install(
        _package_id(task),
        source=task.details.get("source"),
        override=task.details.get("override"),
    )
    return ActionResult.from_native(task.id, TaskAction.APPLY, result)


def uninstall_package(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    result = _client(task, ctx).uninstall(_package_id(task))
    return ActionResult.from_native(task.id, TaskAction.REVERT, result)


def upgrade_package(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    result = _client(task, ctx).upgrade(_package_id(task), source=task.details.get("source"))
    return ActionResult.from_native(task.id, TaskAction.APPLY, result, "" if not result.success else "Upgraded")


def register(registry: TaskTypeRegistry) -> None:
    for type_name in MANAGERS_BY_TYPE:
        registry.register(type_name, verify=verify_package, apply=install_package, revert=uninstall_package)
