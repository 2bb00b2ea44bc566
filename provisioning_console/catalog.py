"""Catalog models and the JSON catalog loader."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from provisioning_console.constants import CATALOG_FILES
from provisioning_console.errors import CatalogNotFoundError, InvalidJsonError, SchemaViolationError

logger = logging.getLogger(__name__)


class CatalogFlavor(str, Enum):
    TASKS = "tasks"
    PACKAGES = "packages"

    @property
    def id_field(self) -> str:
        return "installId" if self is CatalogFlavor.PACKAGES else "id"


class TaskDefinition(BaseModel):
    """One declarative catalog operation."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(..., description="Unique identifier of the task within its catalog.")
    description: str = Field(default="", description="Human-readable label.")
    type: str = Field(..., description="Discriminator selecting the verify/apply/revert handlers.")
    details: dict[str, Any] = Field(default_factory=dict)
    revert_details: dict[str, Any] | None = Field(default=None)
    reboot_required: bool = Field(default=False, alias="rebootRequired")
    category: str | None = Field(default=None)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Task id must not be empty")
        return normalized

    @property
    def revertible(self) -> bool:
        return self.revert_details is not None

    @property
    def label(self) -> str:
        return self.description or self.id


class PackageEntry(BaseModel):
    """A package catalog entry; converted to a task for the engine."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    install_id: str = Field(..., alias="installId")
    description: str = Field(default="")
    manager: Literal["winget", "choco"] = Field(default="winget")
    source: str | None = Field(default=None)
    override: str | None = Field(default=None)
    reboot_required: bool = Field(default=False, alias="rebootRequired")
    category: str | None = Field(default=None)

    @field_validator("install_id")
    @classmethod
    def _normalize_install_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Package installId must not be empty")
        return normalized

    def to_task(self) -> TaskDefinition:
        type_name = "WingetPackage" if self.manager == "winget" else "ChocolateyPackage"
        details: dict[str, Any] = {"installId": self.install_id}
        if self.source:
            details["source"] = self.source
        if self.override:
            details["override"] = self.override
        return TaskDefinition(
            id=self.install_id,
            description=self.description,
            type=type_name,
            details=details,
            revert_details={"action": "Uninstall"},
            reboot_required=self.reboot_required,
            category=self.category,
        )


@dataclass
class Catalog:
    path: Path
    flavor: CatalogFlavor
    tasks: list[TaskDefinition] = field(default_factory=list)
    violations: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.path.stem

    def __iter__(self):
        return iter(self.tasks)

    def __len__(self) -> int:
        return len(self.tasks)


class CatalogLoader:
    """Loads and validates JSON catalogs.

    Validation is exhaustive: every item is checked and all violations are
    reported together. In strict mode any violation fails the load; otherwise
    invalid items are dropped and the violations are kept on the catalog.
    """

    def __init__(self, *, strict: bool = True) -> None:
        self._strict = strict

    def load(self, path: Path | str, flavor: CatalogFlavor = CatalogFlavor.TASKS) -> Catalog:
        path = Path(path)
        if not path.is_file():
            raise CatalogNotFoundError(f"Catalog not found: {path}")
        try:
            document = json.loads(path.read_text(encoding="utf-8-sig"))
        except json.JSONDecodeError as exc:
            raise InvalidJsonError(f"Invalid JSON in {path} at line {exc.lineno}, column {exc.colno}: {exc.msg}") from exc

        if not isinstance(document, dict) or "items" not in document:
            raise SchemaViolationError(str(path), ["root object must contain an 'items' array"])
        items = document["items"]
        if not isinstance(items, list):
            raise SchemaViolationError(str(path), [f"'items' must be an array, got {type(items).__name__}"])

        catalog = Catalog(path=path, flavor=flavor)
        seen: dict[str, int] = {}
        for index, raw in enumerate(items):
            problems, task = self._validate_item(index, raw, flavor)
            if task is not None:
                if task.id in seen:
                    problems.append(f"item[{index}]: duplicate {flavor.id_field} '{task.id}' (first at item[{seen[task.id]}])")
                    task = None
                else:
                    seen[task.id] = index
            catalog.violations.extend(problems)
            if task is not None:
                catalog.tasks.append(task)

        if catalog.violations:
            if self._strict:
                raise SchemaViolationError(str(path), catalog.violations)
            for violation in catalog.violations:
                logger.warning("%s: %s", path, violation)
        logger.info("Loaded %d task(s) from %s", len(catalog.tasks), path)
        return catalog

    def _validate_item(self, index: int, raw: Any, flavor: CatalogFlavor) -> tuple[list[str], TaskDefinition | None]:
        prefix = f"item[{index}]"
        if not isinstance(raw, dict):
            return [f"{prefix}: must be an object, got {type(raw).__name__}"], None

        problems: list[str] = []
        id_field = flavor.id_field
        identifier = raw.get(id_field)
        if identifier is None:
            problems.append(f"{prefix}: missing required field '{id_field}'")
        elif not isinstance(identifier, str):
            problems.append(f"{prefix}: '{id_field}' must be a string, got {type(identifier).__name__}")
        elif not identifier.strip():
            problems.append(f"{prefix}: '{id_field}' must not be empty")

        model = PackageEntry if flavor is CatalogFlavor.PACKAGES else TaskDefinition
        try:
            parsed = model.model_validate(raw)
        except ValidationError as exc:
            id_aliases = {id_field, "install_id"}
            for error in exc.errors():
                loc = error.get("loc", ())
                if loc and loc[0] in id_aliases:
                    continue
                location = ".".join(str(part) for part in loc)
                problems.append(f"{prefix}.{location}: {error.get('msg')}")
            return problems, None

        if problems:
            return problems, None
        if isinstance(parsed, PackageEntry):
            return problems, parsed.to_task()
        return problems, parsed


def load_catalog(path: Path | str, flavor: CatalogFlavor = CatalogFlavor.TASKS, *, strict: bool = True) -> Catalog:
    """Convenience wrapper for loading one catalog."""

    return CatalogLoader(strict=strict).load(path, flavor)


def load_catalog_directory(directory: Path | str, *, strict: bool = False) -> dict[str, Catalog]:
    """Load the tweak, cleanup and package catalogs present in ``directory``."""

    base = Path(directory)
    loader = CatalogLoader(strict=strict)
    catalogs: dict[str, Catalog] = {}
    for name, filename in CATALOG_FILES.items():
        path = base / filename
        if not path.exists():
            continue
        flavor = CatalogFlavor.PACKAGES if name == "packages" else CatalogFlavor.TASKS
        catalogs[name] = loader.load(path, flavor)
    return catalogs


__all__ = [
    "Catalog",
    "CatalogFlavor",
    "CatalogLoader",
    "PackageEntry",
    "TaskDefinition",
    "load_catalog",
    "load_catalog_directory",
]
