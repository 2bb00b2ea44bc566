"""Scoped ownership of ACL-protected registry keys.

``elevated_registry_access`` snapshots a key's security descriptor, grants
the Administrators group ownership and full control, runs the body, and
restores the snapshot on every exit path. A failed restore is never
swallowed: it is logged at CRITICAL and raised as ``AclRestoreError``.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Protocol, TypeVar

from provisioning_console.constants import ADMINISTRATORS_PRINCIPAL
from provisioning_console.errors import AclRestoreError, CannotCreateKeyError, RegistryAclError
from services.native_command import NativeCommandRunner
from services.registry import RegistryAccessor, split_registry_path

logger = logging.getLogger(__name__)

T = TypeVar("T")

_HIVE_PROVIDER_NAMES = {
    "HKLM": "HKEY_LOCAL_MACHINE",
    "HKCU": "HKEY_CURRENT_USER",
    "HKCR": "HKEY_CLASSES_ROOT",
    "HKU": "HKEY_USERS",
    "HKCC": "HKEY_CURRENT_CONFIG",
}


@dataclass(frozen=True)
class AclSnapshot:
    key_path: str
    sddl: str


class RegistryAclBackend(Protocol):
    def get_sddl(self, key_path: str) -> str:  # pragma: no cover - protocol
        ...

    def grant_full_control(self, key_path: str, principal: str) -> None:  # pragma: no cover - protocol
        ...

    def set_sddl(self, key_path: str, sddl: str) -> None:  # pragma: no cover - protocol
        ...


class NullAclBackend:
    """Backend for platforms without registry ACLs; every call is a no-op."""

    def get_sddl(self, key_path: str) -> str:
        return ""

    def grant_full_control(self, key_path: str, principal: str) -> None:
        logger.debug("Skipping ACL grant on %s: no ACL support on this platform", key_path)

    def set_sddl(self, key_path: str, sddl: str) -> None:
        logger.debug("Skipping ACL restore on %s: no ACL support on this platform", key_path)


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def provider_path(key_path: str) -> str:
    hive, subkey = split_registry_path(key_path)
    root = _HIVE_PROVIDER_NAMES[hive]
    return f"Registry::{root}\\{subkey}" if subkey else f"Registry::{root}"


class PowerShellAclBackend:
    """Reads and writes registry key descriptors through Get-Acl / Set-Acl in SDDL form."""

    def __init__(self, native: NativeCommandRunner) -> None:
        self._native = native

    def get_sddl(self, key_path: str) -> str:
        script = f"(Get-Acl -LiteralPath {_ps_quote(provider_path(key_path))}).Sddl"
        result = self._native.run_powershell(script, activity=f"Read ACL {key_path}")
        sddl = result.text.strip()
        if not result.success or not sddl:
            raise RegistryAclError(f"Could not read security descriptor of {key_path}: {result.error or 'empty SDDL'}")
        return sddl

    def grant_full_control(self, key_path: str, principal: str) -> None:
        domain, _, name = principal.partition("\\")
        path = _ps_quote(provider_path(key_path))
        script = "; ".join(
            [
                f"$acl = Get-Acl -LiteralPath {path}",
                f"$principal = New-Object System.Security.Principal.NTAccount({_ps_quote(domain)}, {_ps_quote(name)})",
                "$acl.SetOwner($principal)",
                "$rule = New-Object System.Security.AccessControl.RegistryAccessRule("
                "$principal, 'FullControl', 'ContainerInherit', 'None', 'Allow')",
                "$acl.SetAccessRule($rule)",
                f"Set-Acl -LiteralPath {path} -AclObject $acl -ErrorAction Stop",
            ]
        )
        result = self._native.run_powershell(script, activity=f"Take ownership of {key_path}")
        if not result.success:
            raise RegistryAclError(f"Could not grant {principal} full control on {key_path}: {result.error}\n{result.text}")

    def set_sddl(self, key_path: str, sddl: str) -> None:
        path = _ps_quote(provider_path(key_path))
        script = "; ".join(
            [
                f"$acl = Get-Acl -LiteralPath {path}",
                f"$acl.SetSecurityDescriptorSddlForm({_ps_quote(sddl)})",
                f"Set-Acl -LiteralPath {path} -AclObject $acl -ErrorAction Stop",
            ]
        )
        result = self._native.run_powershell(script, activity=f"Restore ACL {key_path}")
        if not result.success:
            raise RegistryAclError(f"Set-Acl failed: {result.error}\n{result.text}")


@contextmanager
def elevated_registry_access(
    key_path: str,
    *,
    registry: RegistryAccessor,
    acl: RegistryAclBackend,
    principal: str = ADMINISTRATORS_PRINCIPAL,
) -> Iterator[AclSnapshot]:
    if not registry.key_exists(key_path):
        try:
            registry.create_key(key_path)
        except OSError as exc:
            raise CannotCreateKeyError(f"Cannot create protected key {key_path}: {exc}") from exc

    snapshot = AclSnapshot(key_path=key_path, sddl=acl.get_sddl(key_path))
    logger.debug("Saved descriptor of %s: %s", key_path, snapshot.sddl)
    body_error: BaseException | None = None
    try:
        acl.grant_full_control(key_path, principal)
        yield snapshot
    except BaseException as exc:
        body_error = exc
        raise
    finally:
        try:
            acl.set_sddl(key_path, snapshot.sddl)
        except Exception as exc:
            logger.critical(
                "MANUAL ACTION REQUIRED: permissions on %s were not restored (%s). Original SDDL: %s",
                key_path,
                exc,
                snapshot.sddl,
            )
            raise AclRestoreError(key_path, snapshot.sddl, str(exc)) from (body_error or exc)
        logger.debug("Restored descriptor of %s", key_path)


def with_elevated_registry_access(
    key_path: str,
    action: Callable[[], T],
    *,
    registry: RegistryAccessor,
    acl: RegistryAclBackend,
) -> T:
    """Run ``action`` while the key is owned by Administrators and return its result."""

    with elevated_registry_access(key_path, registry=registry, acl=acl):
        return action()


__all__ = [
    "AclSnapshot",
    "NullAclBackend",
    "PowerShellAclBackend",
    "RegistryAclBackend",
    "elevated_registry_access",
    "provider_path",
    "with_elevated_registry_access",
]
