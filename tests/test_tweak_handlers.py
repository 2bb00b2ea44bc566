from __future__ import annotations

import pytest

from provisioning_console.catalog import TaskDefinition
from provisioning_console.errors import TaskDetailsError
from services.task_engine import NoticeLevel, TaskStatus
from services.task_registry import TaskDispatcher, build_default_registry
from services.tweak_handlers import (
    parse_active_scheme,
    render_command,
    resolve_scheme,
)

TEST_KEY = r"HKCU:\Test"


def make_task(**fields) -> TaskDefinition:
    fields.setdefault("id", "t1")
    return TaskDefinition.model_validate(fields)


def registry_task(type_name: str = "Registry", revert_details: dict | None = None) -> TaskDefinition:
    return make_task(
        type=type_name,
        details={"path": TEST_KEY, "name": "V", "value": "1", "valueType": "String"},
        revert_details=revert_details,
    )


@pytest.fixture
def dispatcher(context) -> TaskDispatcher:
    return TaskDispatcher(build_default_registry(), context)


def test_registry_verify_is_idempotent(dispatcher, registry) -> None:
    task = registry_task()

    first = dispatcher.verify(task)
    second = dispatcher.verify(task)

    assert first.status is second.status is TaskStatus.PENDING
    assert registry.values == {}


def test_registry_apply_converges(dispatcher, registry) -> None:
    task = registry_task()

    result = dispatcher.apply(task)

    assert result.success, result.message
    assert registry.values[(TEST_KEY, "V")] == "1"
    assert registry.types[(TEST_KEY, "V")] == "String"
    assert dispatcher.verify(task).status is TaskStatus.APPLIED


def test_registry_apply_then_revert_round_trip(dispatcher, registry) -> None:
    task = registry_task(revert_details={"value": "0"})

    assert dispatcher.apply(task).success
    assert dispatcher.revert(task).success

    assert registry.values[(TEST_KEY, "V")] == "0"
    assert dispatcher.verify(task).status is TaskStatus.PENDING


def test_registry_revert_can_delete_value(dispatcher, registry) -> None:
    task = registry_task(revert_details={"action": "DeleteValue"})
    dispatcher.apply(task)

    result = dispatcher.revert(task)

    assert result.success
    assert (TEST_KEY, "V") not in registry.values
    assert dispatcher.revert(task).message.endswith("was already absent")


def test_dword_values_compare_numerically(dispatcher, registry) -> None:
    registry.set_value(TEST_KEY, "Flag", 1)
    task = make_task(type="Registry", details={"path": TEST_KEY, "name": "Flag", "value": "0x1", "valueType": "DWord"})

    assert dispatcher.verify(task).status is TaskStatus.APPLIED


def test_unknown_value_type_is_rejected(dispatcher, registry) -> None:
    task = make_task(type="Registry", details={"path": TEST_KEY, "name": "V", "value": "1", "valueType": "Dword64"})

    result = dispatcher.apply(task)

    assert not result.success
    assert "unknown valueType 'Dword64'" in result.message
    assert registry.values == {}
    assert dispatcher.verify(task).status is TaskStatus.ERROR


def test_missing_details_field_fails_the_action(dispatcher) -> None:
    task = make_task(type="Registry", details={"path": TEST_KEY})

    result = dispatcher.apply(task)

    assert not result.success
    assert "TaskDetailsError" in result.message
    assert "missing 'name'" in result.message
    assert dispatcher.verify(task).status is TaskStatus.ERROR


def test_protected_registry_grants_and_restores_acl(dispatcher, registry, acl) -> None:
    task = registry_task("ProtectedRegistry", revert_details={"value": "0"})
    original = acl.sddl

    assert dispatcher.apply(task).success
    assert dispatcher.revert(task).success

    assert registry.values[(TEST_KEY, "V")] == "0"
    assert acl.sddl == original
    assert acl.events == [
        ("get", TEST_KEY),
        ("grant", "BUILTIN\\Administrators"),
        ("restore", original),
    ] * 2


def test_protected_registry_restore_failure_is_surfaced(dispatcher, acl, ui) -> None:
    acl.fail_restore = True
    original = acl.sddl

    result = dispatcher.apply(registry_task("ProtectedRegistry"))

    assert not result.success
    assert "AclRestoreError" in result.message
    errors = ui.messages(NoticeLevel.ERROR)
    assert errors and errors[0].startswith("MANUAL ACTION REQUIRED")
    assert original in errors[0]


def test_explorer_restart_wraps_apply_but_not_verify(dispatcher, shell) -> None:
    task = registry_task("RegistryWithExplorerRestart")

    dispatcher.verify(task)
    assert shell.events == []

    dispatcher.apply(task)
    assert shell.events == ["stop", "start"]


def test_power_plan_scheme_parsing() -> None:
    output = ["Power Scheme GUID: 8C5E7FDA-E8BF-4A96-9A85-A6E23A8C635C  (High performance) *"]

    assert parse_active_scheme(output) == ("8c5e7fda-e8bf-4a96-9a85-a6e23a8c635c", "High performance")
    assert parse_active_scheme(["garbage"]) == (None, None)
    assert resolve_scheme("scheme_balanced") == "381b4222-f694-41f0-9685-ff5bb260df2e"


def test_power_plan_verify_and_apply(dispatcher, native) -> None:
    native.respond("/getactivescheme", ["Power Scheme GUID: 381b4222-f694-41f0-9685-ff5bb260df2e  (Balanced) *"])
    task = make_task(
        type="PowerPlan",
        details={"schemeGuid": "SCHEME_MIN"},
        revert_details={"schemeGuid": "SCHEME_BALANCED"},
    )

    state = dispatcher.verify(task)
    assert state.status is TaskStatus.PENDING
    assert "Balanced" in state.detail

    assert dispatcher.apply(task).success
    assert "powercfg /setactive 8c5e7fda-e8bf-4a96-9a85-a6e23a8c635c" in native.calls


def test_service_missing_is_an_error(dispatcher) -> None:
    task = make_task(type="Service", details={"name": "NoSuchSvc", "startupType": "Disabled"})

    state = dispatcher.verify(task)

    assert state.status is TaskStatus.ERROR
    assert "does not exist" in state.detail


def test_service_verify_reads_start_value(dispatcher, registry) -> None:
    key = r"HKLM:\SYSTEM\CurrentControlSet\Services\SysMain"
    registry.set_value(key, "Start", 4)
    task = make_task(type="Service", details={"name": "SysMain", "startupType": "Disabled"})

    assert dispatcher.verify(task).status is TaskStatus.APPLIED

    registry.set_value(key, "Start", 2)
    registry.set_value(key, "DelayedAutostart", 1)
    delayed = make_task(type="Service", details={"name": "SysMain", "startupType": "Automatic"})
    assert dispatcher.verify(delayed).status is TaskStatus.PENDING


def test_service_apply_detects_sc_failure_text(dispatcher, native) -> None:
    native.respond("sc.exe config", ["[SC] ChangeServiceConfig FAILED 1060:"])
    task = make_task(type="Service", details={"name": "SysMain", "startupType": "Disabled"})

    result = dispatcher.apply(task)

    assert native.calls == ["sc.exe config SysMain start= disabled"]
    assert not result.success
    assert "FAILED" in result.message


def test_command_verify_without_probe_is_pending(dispatcher, native) -> None:
    task = make_task(type="SimpleCommand", details={"command": "powercfg.exe", "arguments": ["/hibernate", "off"]})

    assert dispatcher.verify(task).status is TaskStatus.PENDING
    assert native.calls == []


def test_command_verify_with_probe(dispatcher, native) -> None:
    native.respond("Test-Path", ["True"])
    task = make_task(
        type="PowerShellCommand",
        details={"command": "Remove-Item x", "verifyCommand": "Test-Path C:\\x"},
    )

    assert dispatcher.verify(task).status is TaskStatus.APPLIED


def test_render_command_formats_named_arguments() -> None:
    task = make_task(type="PowerShellCommand", details={})

    assert render_command(task, {"command": "Set-Thing -Name {name}", "arguments": {"name": "x"}}) == "Set-Thing -Name x"
    assert render_command(task, {"command": "tool", "arguments": ["/a", "/b"]}) == "tool /a /b"
    assert render_command(task, {"command": "Set-Thing", "arguments": "-Name 'a b'"}) == "Set-Thing -Name 'a b'"
    with pytest.raises(TaskDetailsError):
        render_command(task, {"command": "Set-Thing {missing}", "arguments": {}})


def test_appx_only_supports_removed_state(dispatcher) -> None:
    task = make_task(type="AppxPackage", details={"packageName": "Microsoft.BingNews", "state": "Installed"})

    assert dispatcher.verify(task).status is TaskStatus.ERROR


def test_appx_verify_reports_installed_package(dispatcher, native) -> None:
    native.respond("Get-AppxPackage", ["Microsoft.BingNews_4.1_x64__8wekyb3d8bbwe"])
    task = make_task(type="AppxPackage", details={"packageName": "Microsoft.BingNews"})

    state = dispatcher.verify(task)

    assert state.status is TaskStatus.PENDING
    assert "BingNews" in state.detail


def test_dns_apply_targets_named_interface(dispatcher, native) -> None:
    task = make_task(
        type="SetDNS",
        details={"servers": ["1.1.1.1", "1.0.0.1"], "interfaceAlias": "Ethernet"},
        revert_details={"reset": True},
    )

    assert dispatcher.apply(task).success
    assert dispatcher.revert(task).success

    assert "-ServerAddresses ('1.1.1.1','1.0.0.1')" in native.calls[0]
    assert "-InterfaceAlias 'Ethernet'" in native.calls[0]
    assert "-ResetServerAddresses" in native.calls[1]
