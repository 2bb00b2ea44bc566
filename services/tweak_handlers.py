"""Verify/apply/revert handlers for system tweak task types."""
from __future__ import annotations

import functools
import logging
import re
from typing import Any, Callable, Mapping

from provisioning_console.catalog import TaskDefinition
from provisioning_console.constants import KNOWN_POWER_SCHEMES
from provisioning_console.errors import AclRestoreError, EngineError, TaskDetailsError
from services.native_command import NativeCommandResult, split_arguments
from services.registry import VALUE_TYPES, values_equal
from services.registry_acl import with_elevated_registry_access
from services.task_engine import ActionResult, EngineContext, NoticeLevel, TaskAction, TaskStatus, VerifyResult
from services.task_registry import ActionHandler, TaskTypeRegistry

logger = logging.getLogger(__name__)

POWERCFG_GUID_PATTERN = re.compile(r"Power Scheme GUID:\s*([0-9a-fA-F-]{36})\s*\((.*?)\)\s*(\*)?")
SERVICES_ROOT = r"HKLM:\SYSTEM\CurrentControlSet\Services"
SERVICE_START_VALUES = {
    "automatic": (2, 0),
    "automaticdelayedstart": (2, 1),
    "manual": (3, 0),
    "disabled": (4, 0),
}
SC_START_ARGUMENTS = {
    "automatic": "auto",
    "automaticdelayedstart": "delayed-auto",
    "manual": "demand",
    "disabled": "disabled",
}


def require(payload: Mapping[str, Any] | None, key: str, task: TaskDefinition) -> Any:
    if not payload or payload.get(key) in (None, ""):
        raise TaskDetailsError(f"Task '{task.id}' ({task.type}) is missing '{key}'")
    return payload[key]


def require_value_type(payload: Mapping[str, Any], task: TaskDefinition) -> str | None:
    value_type = payload.get("valueType")
    if value_type is None:
        return None
    for known in VALUE_TYPES:
        if str(value_type).lower() == known.lower():
            return known
    raise TaskDetailsError(
        f"Task '{task.id}' ({task.type}) has unknown valueType '{value_type}'; expected one of {', '.join(VALUE_TYPES)}"
    )


def _ps_quote(value: object) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def _ps_array(values: list[str]) -> str:
    return "(" + ",".join(_ps_quote(value) for value in values) + ")"


# Registry


def verify_registry(task: TaskDefinition, ctx: EngineContext) -> VerifyResult:
    details = task.details
    path = require(details, "path", task)
    name = require(details, "name", task)
    value_type = require_value_type(details, task)
    expected = details.get("value")
    actual = ctx.registry.get_value(path, name)
    if actual is None:
        return VerifyResult(TaskStatus.PENDING, f"{name} not set")
    if values_equal(actual, expected, value_type):
        return VerifyResult(TaskStatus.APPLIED, f"{name}={actual}")
    return VerifyResult(TaskStatus.PENDING, f"{name}={actual} (target: {expected})")


def _write_registry(task: TaskDefinition, payload: Mapping[str, Any], ctx: EngineContext, action: TaskAction) -> ActionResult:
    path = require(payload, "path", task)
    name = require(payload, "name", task)
    value_type = require_value_type(payload, task)
    deleting = payload.get("action") == "DeleteValue" or payload.get("value") is None
    if action is TaskAction.REVERT and deleting:
        removed = ctx.registry.delete_value(path, name)
        message = f"Deleted {path}\\{name}" if removed else f"{path}\\{name} was already absent"
        return ActionResult(task.id, action, True, message)
    if payload.get("value") is None:
        raise TaskDetailsError(f"Task '{task.id}' ({task.type}) is missing 'value'")
    value = payload["value"]
    ctx.registry.set_value(path, name, value, value_type)
    actual = ctx.registry.get_value(path, name)
    if not values_equal(actual, value, value_type):
        return ActionResult(task.id, action, False, f"{path}\\{name} reads back as {actual!r}, expected {value!r}")
    return ActionResult(task.id, action, True, f"Set {path}\\{name}={value}")


def _revert_payload(task: TaskDefinition) -> dict[str, Any]:
    revert = dict(task.revert_details or {})
    payload = {key: task.details[key] for key in ("path", "name", "valueType") if key in task.details}
    payload.update(revert)
    if "value" not in revert:
        payload.pop("value", None)
    return payload


def apply_registry(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    return _write_registry(task, task.details, ctx, TaskAction.APPLY)


def revert_registry(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    return _write_registry(task, _revert_payload(task), ctx, TaskAction.REVERT)


def with_protected_key(
    handler: ActionHandler,
    payload_of: Callable[[TaskDefinition], Mapping[str, Any]] = lambda task: task.details,
) -> ActionHandler:
    """Run a registry handler while Administrators own the target key."""

    @functools.wraps(handler)
    def wrapped(task: TaskDefinition, ctx: EngineContext):
        key_path = require(payload_of(task), "path", task)
        try:
            return with_elevated_registry_access(
                key_path,
                lambda: handler(task, ctx),
                registry=ctx.registry,
                acl=ctx.acl,
            )
        except AclRestoreError as exc:
            ctx.ui.notify(NoticeLevel.ERROR, str(exc))
            raise

    return wrapped


def with_explorer_restart(handler: ActionHandler) -> ActionHandler:
    """Stop the shell before the change and start it again afterwards."""

    @functools.wraps(handler)
    def wrapped(task: TaskDefinition, ctx: EngineContext):
        ctx.shell.stop_shell()
        try:
            return handler(task, ctx)
        finally:
            ctx.shell.start_shell()

    return wrapped


# AppxPackage


def verify_appx(task: TaskDefinition, ctx: EngineContext) -> VerifyResult:
    name = require(task.details, "packageName", task)
    _require_removed_state(task)
    script = f"Get-AppxPackage -AllUsers -Name {_ps_quote(name)} | Select-Object -ExpandProperty PackageFullName"
    result = ctx.native.run_powershell(script, activity=f"Query {name}")
    if not result.success:
        raise EngineError(f"Get-AppxPackage failed for {name}: {result.error}")
    installed = [line.strip() for line in result.output if line.strip()]
    if installed:
        return VerifyResult(TaskStatus.PENDING, f"Installed: {', '.join(installed)}")
    return VerifyResult(TaskStatus.APPLIED, "Removed")


def apply_appx(task: TaskDefinition, ctx: EngineContext) -> NativeCommandResult:
    name = require(task.details, "packageName", task)
    _require_removed_state(task)
    script = "; ".join(
        [
            f"Get-AppxPackage -AllUsers -Name {_ps_quote(name)} | Remove-AppxPackage -AllUsers -ErrorAction Stop",
            "Get-AppxProvisionedPackage -Online | "
            f"Where-Object {{ $_.DisplayName -like {_ps_quote(name)} }} | "
            "Remove-AppxProvisionedPackage -Online -ErrorAction SilentlyContinue | Out-Null",
        ]
    )
    return ctx.native.run_powershell(script, activity=f"Remove {name}")


def _require_removed_state(task: TaskDefinition) -> None:
    state = str(task.details.get("state", "Removed"))
    if state.lower() != "removed":
        raise TaskDetailsError(f"Task '{task.id}': AppxPackage state '{state}' is not supported")


# PowerPlan


def resolve_scheme(value: str) -> str:
    return KNOWN_POWER_SCHEMES.get(value.upper(), value).lower()


def parse_active_scheme(output: list[str]) -> tuple[str | None, str | None]:
    for line in output:
        match = POWERCFG_GUID_PATTERN.search(line)
        if match:
            return match.group(1).lower(), match.group(2).strip()
    return None, None


def verify_power_plan(task: TaskDefinition, ctx: EngineContext) -> VerifyResult:
    target = resolve_scheme(require(task.details, "schemeGuid", task))
    result = ctx.native.run("powercfg", ["/getactivescheme"], activity="Query power scheme")
    if not result.success:
        raise EngineError(f"powercfg /getactivescheme failed: {result.error}")
    active_guid, active_name = parse_active_scheme(result.output)
    if active_guid is None:
        raise EngineError("Could not parse the active power scheme")
    label = f"{active_name} ({active_guid})"
    if active_guid == target:
        return VerifyResult(TaskStatus.APPLIED, label)
    return VerifyResult(TaskStatus.PENDING, label)


def _activate_scheme(task: TaskDefinition, payload: Mapping[str, Any], ctx: EngineContext, action: TaskAction) -> ActionResult:
    target = resolve_scheme(require(payload, "schemeGuid", task))
    output: list[str] = []
    source = payload.get("duplicateFrom")
    if source:
        listed = ctx.native.run("powercfg", ["/list"], activity="List power schemes")
        output.extend(listed.output)
        if target not in listed.text.lower():
            duplicated = ctx.native.run("powercfg", ["-duplicatescheme", resolve_scheme(source), target], activity="Create power scheme")
            output.extend(duplicated.output)
            if not duplicated.success:
                return ActionResult(task.id, action, False, duplicated.error or "duplicatescheme failed", output)
    result = ctx.native.run("powercfg", ["/setactive", target], activity="Activate power scheme")
    output.extend(result.output)
    return ActionResult(task.id, action, result.success, result.error or "", output)


def apply_power_plan(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    return _activate_scheme(task, task.details, ctx, TaskAction.APPLY)


def revert_power_plan(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    return _activate_scheme(task, task.revert_details or {}, ctx, TaskAction.REVERT)


# Service


def _start_values(task: TaskDefinition, startup_type: str) -> tuple[int, int]:
    try:
        return SERVICE_START_VALUES[startup_type.lower()]
    except KeyError as exc:
        raise TaskDetailsError(f"Task '{task.id}': unknown startupType '{startup_type}'") from exc


def _service_status(name: str, ctx: EngineContext) -> str:
    result = ctx.native.run_powershell(f"(Get-Service -Name {_ps_quote(name)} -ErrorAction Stop).Status", activity=f"Query {name}")
    if not result.success:
        raise EngineError(f"Get-Service failed for {name}: {result.error}")
    return result.text.strip()


def verify_service(task: TaskDefinition, ctx: EngineContext) -> VerifyResult:
    name = require(task.details, "name", task)
    startup_type = require(task.details, "startupType", task)
    expected_start, expected_delayed = _start_values(task, startup_type)
    key = f"{SERVICES_ROOT}\\{name}"
    if not ctx.registry.key_exists(key):
        raise EngineError(f"Service '{name}' does not exist")
    start = ctx.registry.get_value(key, "Start")
    delayed = ctx.registry.get_value(key, "DelayedAutostart") or 0
    detail = f"Start={start}, DelayedAutostart={delayed}"
    in_state = start == expected_start and (expected_start != 2 or int(delayed) == expected_delayed)
    wanted_status = task.details.get("status")
    if in_state and wanted_status:
        current = _service_status(name, ctx)
        detail = f"{detail}, Status={current}"
        in_state = current.lower() == str(wanted_status).lower()
    return VerifyResult(TaskStatus.APPLIED if in_state else TaskStatus.PENDING, detail)


def _configure_service(task: TaskDefinition, payload: Mapping[str, Any], ctx: EngineContext, action: TaskAction) -> ActionResult:
    name = payload.get("name") or require(task.details, "name", task)
    startup_type = require(payload, "startupType", task)
    _start_values(task, startup_type)
    result = ctx.native.run(
        "sc.exe",
        ["config", name, "start=", SC_START_ARGUMENTS[startup_type.lower()]],
        failure_strings=("FAILED",),
        activity=f"Configure {name}",
    )
    output = list(result.output)
    if not result.success:
        return ActionResult(task.id, action, False, result.error or "sc.exe config failed", output)
    status = payload.get("status")
    if status:
        verb = {"stopped": "Stop-Service", "running": "Start-Service"}.get(str(status).lower())
        if verb is None:
            raise TaskDetailsError(f"Task '{task.id}': unsupported service status '{status}'")
        extra = " -Force" if verb == "Stop-Service" else ""
        changed = ctx.native.run_powershell(f"{verb} -Name {_ps_quote(name)}{extra} -ErrorAction Stop", activity=f"{verb} {name}")
        output.extend(changed.output)
        if not changed.success:
            return ActionResult(task.id, action, False, changed.error or f"{verb} failed", output)
    return ActionResult(task.id, action, True, f"{name} set to {startup_type}", output)


def apply_service(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    return _configure_service(task, task.details, ctx, TaskAction.APPLY)


def revert_service(task: TaskDefinition, ctx: EngineContext) -> ActionResult:
    return _configure_service(task, task.revert_details or {}, ctx, TaskAction.REVERT)


# PowerShellCommand / SimpleCommand


def render_command(task: TaskDefinition, payload: Mapping[str, Any]) -> str:
    template = str(require(payload, "command", task))
    arguments = payload.get("arguments")
    if isinstance(arguments, Mapping):
        try:
            return template.format_map(dict(arguments))
        except (KeyError, IndexError, ValueError) as exc:
            raise TaskDetailsError(f"Task '{task.id}': cannot render command template: {exc}") from exc
    if isinstance(arguments, str):
        return f"{template} {arguments}" if arguments.strip() else template
    extra = split_arguments(arguments)
    return " ".join([template, *extra]) if extra else template


def verify_by_command(task: TaskDefinition, ctx: EngineContext) -> VerifyResult:
    script = task.details.get("verifyCommand")
    if not script:
        return VerifyResult(TaskStatus.PENDING)
    result = ctx.native.run_powershell(str(script), activity=f"Verify {task.id}")
    if not result.success:
        raise EngineError(f"Verification command failed: {result.error}")
    expected = str(task.details.get("expectedOutput", "True")).strip()
    actual = result.text.strip()
    if actual.lower() == expected.lower():
        return VerifyResult(TaskStatus.APPLIED, actual)
    return VerifyResult(TaskStatus.PENDING, actual)


def _run_powershell_payload(task: TaskDefinition, payload: Mapping[str, Any], ctx: EngineContext) -> NativeCommandResult:
    return ctx.native.run_powershell(
        render_command(task, payload),
        tuple(payload.get("failureStrings", ())),
        activity=task.label,
        idle_timeout_enabled=bool(payload.get("idleTimeoutEnabled", True)),
        overall_timeout=payload.get("timeoutSeconds"),
    )


def apply_powershell(task: TaskDefinition, ctx: EngineContext) -> NativeCommandResult:
    return _run_powershell_payload(task, task.details, ctx)


def revert_powershell(task: TaskDefinition, ctx: EngineContext) -> NativeCommandResult:
    return _run_powershell_payload(task, task.revert_details or {}, ctx)


def _run_simple_payload(task: TaskDefinition, payload: Mapping[str, Any], ctx: EngineContext) -> NativeCommandResult:
    return ctx.native.run(
        str(require(payload, "command", task)),
        payload.get("arguments"),
        tuple(payload.get("failureStrings", ())),
        task.label,
        idle_timeout_enabled=bool(payload.get("idleTimeoutEnabled", True)),
        overall_timeout=payload.get("timeoutSeconds"),
        idle_timeout=payload.get("idleTimeoutSeconds"),
        progress_pattern=payload.get("progressPattern"),
    )


def apply_simple_command(task: TaskDefinition, ctx: EngineContext) -> NativeCommandResult:
    return _run_simple_payload(task, task.details, ctx)


def revert_simple_command(task: TaskDefinition, ctx: EngineContext) -> NativeCommandResult:
    return _run_simple_payload(task, task.revert_details or {}, ctx)


# SetDNS

_UP_ADAPTERS = "Get-NetAdapter | Where-Object { $_.Status -eq 'Up' }"


def verify_dns(task: TaskDefinition, ctx: EngineContext) -> VerifyResult:
    servers = [str(server) for server in require(task.details, "servers", task)]
    alias = task.details.get("interfaceAlias")
    if alias:
        script = f"(Get-DnsClientServerAddress -InterfaceAlias {_ps_quote(alias)} -AddressFamily IPv4 -ErrorAction Stop).ServerAddresses -join ','"
    else:
        script = (
            f"{_UP_ADAPTERS} | ForEach-Object {{ "
            "(Get-DnsClientServerAddress -InterfaceIndex $_.ifIndex -AddressFamily IPv4).ServerAddresses -join ',' }"
        )
    result = ctx.native.run_powershell(script, activity="Query DNS servers")
    if not result.success:
        raise EngineError(f"Get-DnsClientServerAddress failed: {result.error}")
    configured = [line.strip() for line in result.output if line.strip()]
    wanted = ",".join(servers)
    detail = "; ".join(configured) or "DHCP"
    if configured and all(line == wanted for line in configured):
        return VerifyResult(TaskStatus.APPLIED, detail)
    return VerifyResult(TaskStatus.PENDING, detail)


def _set_dns(task: TaskDefinition, payload: Mapping[str, Any], ctx: EngineContext) -> NativeCommandResult:
    alias = payload.get("interfaceAlias") or task.details.get("interfaceAlias")
    if payload.get("reset"):
        change = "Set-DnsClientServerAddress -ResetServerAddresses -ErrorAction Stop"
    else:
        servers = [str(server) for server in require(payload, "servers", task)]
        change = f"Set-DnsClientServerAddress -ServerAddresses {_ps_array(servers)} -ErrorAction Stop"
    if alias:
        script = f"{change} -InterfaceAlias {_ps_quote(alias)}"
    else:
        script = f"{_UP_ADAPTERS} | ForEach-Object {{ {change} -InterfaceIndex $_.ifIndex }}"
    return ctx.native.run_powershell(script, activity="Set DNS servers")


def apply_dns(task: TaskDefinition, ctx: EngineContext) -> NativeCommandResult:
    return _set_dns(task, task.details, ctx)


def revert_dns(task: TaskDefinition, ctx: EngineContext) -> NativeCommandResult:
    return _set_dns(task, task.revert_details or {}, ctx)


def register(registry: TaskTypeRegistry) -> None:
    registry.register("Registry", verify=verify_registry, apply=apply_registry, revert=revert_registry)
    registry.register(
        "ProtectedRegistry",
        verify=verify_registry,
        apply=with_protected_key(apply_registry),
        revert=with_protected_key(revert_registry, _revert_payload),
    )
    registry.alias("RegistryWithExplorerRestart", "Registry", wrap=with_explorer_restart)
    registry.register("AppxPackage", verify=verify_appx, apply=apply_appx)
    registry.register("PowerPlan", verify=verify_power_plan, apply=apply_power_plan, revert=revert_power_plan)
    registry.register("Service", verify=verify_service, apply=apply_service, revert=revert_service)
    registry.register("PowerShellCommand", verify=verify_by_command, apply=apply_powershell, revert=revert_powershell)
    registry.register("SimpleCommand", verify=verify_by_command, apply=apply_simple_command, revert=revert_simple_command)
    registry.register("SetDNS", verify=verify_dns, apply=apply_dns, revert=revert_dns)
