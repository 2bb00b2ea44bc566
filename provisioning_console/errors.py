"""Exception hierarchy for the task engine."""
from __future__ import annotations

from typing import Sequence


class EngineError(RuntimeError):
    """Base class for task engine errors."""


class CatalogError(EngineError):
    """Base class for catalog loading errors."""


class CatalogNotFoundError(CatalogError):
    """Raised when a catalog file does not exist."""


class InvalidJsonError(CatalogError):
    """Raised when a catalog file is not well-formed JSON."""


class SchemaViolationError(CatalogError):
    """Raised when a catalog parses but violates the item schema.

    ``violations`` holds every problem found, each prefixed with the offending
    item index where one applies.
    """

    def __init__(self, path: str, violations: Sequence[str]) -> None:
        self.path = path
        self.violations = list(violations)
        super().__init__(f"{path}: {len(self.violations)} schema violation(s): " + "; ".join(self.violations))


class UnknownTaskTypeError(EngineError):
    """Raised when no handler is registered for an (action, type) pair."""

    def __init__(self, action: str, type_name: str) -> None:
        self.action = action
        self.type_name = type_name
        super().__init__(f"No {action} handler registered for task type '{type_name}'")


class TaskDetailsError(EngineError):
    """Raised when a task's details payload lacks a field its handler needs."""


class RegistryAclError(EngineError):
    """Base class for privileged registry mutation errors."""


class CannotCreateKeyError(RegistryAclError):
    """Raised when a protected key is missing and cannot be created."""


class AclRestoreError(RegistryAclError):
    """Raised when the original security descriptor of a key could not be restored.

    The key is left with non-default permissions and needs manual attention.
    """

    def __init__(self, key_path: str, sddl: str, reason: str) -> None:
        self.key_path = key_path
        self.sddl = sddl
        super().__init__(
            f"MANUAL ACTION REQUIRED: could not restore permissions on {key_path}: {reason}. "
            f"Original descriptor: {sddl}"
        )
