"""Registry access for tweak handlers."""
from __future__ import annotations

from typing import Protocol, Sequence, Union

try:  # Windows-only dependency, optional for test doubles
    import winreg  # type: ignore
except ImportError:  # pragma: no cover - not available on Linux runners
    winreg = None  # type: ignore

RegistryValue = Union[str, int, bytes, Sequence[str]]

VALUE_TYPES = ("String", "ExpandString", "DWord", "QWord", "MultiString", "Binary")


class RegistryAccessor(Protocol):
    def get_value(self, path: str, value_name: str) -> RegistryValue | None:  # pragma: no cover - protocol
        ...

    def set_value(self, path: str, value_name: str, value: RegistryValue, value_type: str | None = None) -> None:  # pragma: no cover - protocol
        ...

    def delete_value(self, path: str, value_name: str) -> bool:  # pragma: no cover - protocol
        ...

    def key_exists(self, path: str) -> bool:  # pragma: no cover - protocol
        ...

    def create_key(self, path: str) -> None:  # pragma: no cover - protocol
        ...


def coerce_value(value: object, value_type: str | None) -> RegistryValue:
    """Convert a catalog value into the Python type matching ``value_type``."""

    kind = (value_type or "").lower()
    if kind in {"dword", "qword"}:
        if isinstance(value, str):
            try:
                return int(value, 0)
            except ValueError:
                return int(value)
        return int(value)  # type: ignore[arg-type]
    if kind == "multistring":
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]  # type: ignore[union-attr]
    if kind == "binary":
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if isinstance(value, str):
            return bytes.fromhex(value.replace(",", " "))
        return bytes(value)  # type: ignore[arg-type]
    if value_type is None and isinstance(value, (int, bytes, list, tuple)):
        return value  # type: ignore[return-value]
    return str(value)


def values_equal(actual: RegistryValue | None, expected: object, value_type: str | None) -> bool:
    if actual is None:
        return False
    try:
        desired = coerce_value(expected, value_type)
    except (TypeError, ValueError):
        return False
    if isinstance(desired, list):
        return list(actual) == desired  # type: ignore[arg-type]
    if isinstance(desired, int) and isinstance(actual, str):
        try:
            return int(actual, 0) == desired
        except ValueError:
            return False
    if isinstance(desired, str) and not isinstance(actual, str):
        return str(actual) == desired
    return actual == desired


class WindowsRegistryAccessor:
    """Registry helper backed by winreg.

    Missing keys or values read as ``None``; permission problems propagate as
    ``PermissionError`` so callers can tell absence from inaccessibility.
    """

    def __init__(self) -> None:
        if winreg is None:
            raise RuntimeError("winreg not available on this platform")

    def get_value(self, path: str, value_name: str) -> RegistryValue | None:
        hive, subkey = self._split_path(path)
        try:
            with winreg.OpenKey(hive, subkey) as key:  # type: ignore[arg-type]
                value, _ = winreg.QueryValueEx(key, value_name)
                return value
        except FileNotFoundError:
            return None

    def set_value(self, path: str, value_name: str, value: RegistryValue, value_type: str | None = None) -> None:
        hive, subkey = self._split_path(path)
        coerced = coerce_value(value, value_type)
        with winreg.CreateKeyEx(hive, subkey, 0, winreg.KEY_WRITE) as key:  # type: ignore[arg-type]
            winreg.SetValueEx(key, value_name, 0, self._winreg_type(coerced, value_type), coerced)

    def delete_value(self, path: str, value_name: str) -> bool:
        hive, subkey = self._split_path(path)
        try:
            with winreg.OpenKey(hive, subkey, 0, winreg.KEY_SET_VALUE) as key:  # type: ignore[arg-type]
                winreg.DeleteValue(key, value_name)
                return True
        except FileNotFoundError:
            return False

    def key_exists(self, path: str) -> bool:
        hive, subkey = self._split_path(path)
        try:
            with winreg.OpenKey(hive, subkey):  # type: ignore[arg-type]
                return True
        except FileNotFoundError:
            return False

    def create_key(self, path: str) -> None:
        hive, subkey = self._split_path(path)
        with winreg.CreateKeyEx(hive, subkey, 0, winreg.KEY_WRITE):  # type: ignore[arg-type]
            pass

    def _winreg_type(self, value: RegistryValue, value_type: str | None) -> int:
        type_map = {
            "string": winreg.REG_SZ,
            "expandstring": winreg.REG_EXPAND_SZ,
            "dword": winreg.REG_DWORD,
            "qword": winreg.REG_QWORD,
            "multistring": winreg.REG_MULTI_SZ,
            "binary": winreg.REG_BINARY,
        }
        if value_type:
            try:
                return type_map[value_type.lower()]
            except KeyError as exc:
                raise ValueError(f"Unsupported registry value type: {value_type}") from exc
        if isinstance(value, int):
            return winreg.REG_DWORD
        if isinstance(value, bytes):
            return winreg.REG_BINARY
        if isinstance(value, list):
            return winreg.REG_MULTI_SZ
        return winreg.REG_SZ

    def _split_path(self, path: str) -> tuple[object, str]:
        hive_name, subkey = split_registry_path(path)
        hive_map = {
            "HKLM": winreg.HKEY_LOCAL_MACHINE,
            "HKCU": winreg.HKEY_CURRENT_USER,
            "HKCR": winreg.HKEY_CLASSES_ROOT,
            "HKU": winreg.HKEY_USERS,
            "HKCC": winreg.HKEY_CURRENT_CONFIG,
        }
        try:
            hive = hive_map[hive_name]
        except KeyError as exc:  # pragma: no cover - invalid input handled upstream
            raise ValueError(f"Unsupported hive: {hive_name}") from exc
        return hive, subkey


_HIVE_ALIASES = {
    "HKEY_LOCAL_MACHINE": "HKLM",
    "HKEY_CURRENT_USER": "HKCU",
    "HKEY_CLASSES_ROOT": "HKCR",
    "HKEY_USERS": "HKU",
    "HKEY_CURRENT_CONFIG": "HKCC",
}


def split_registry_path(path: str) -> tuple[str, str]:
    """Split ``HKCU:\\Software\\X`` (or ``HKEY_CURRENT_USER\\Software\\X``) into hive and subkey."""

    cleaned = path.replace("/", "\\").strip()
    if ":\\" in cleaned:
        hive_name, subkey = cleaned.split(":\\", 1)
    elif "\\" in cleaned:
        hive_name, subkey = cleaned.split("\\", 1)
    else:
        hive_name, subkey = cleaned.rstrip(":"), ""
    hive_name = hive_name.upper()
    hive_name = _HIVE_ALIASES.get(hive_name, hive_name)
    if hive_name not in _HIVE_ALIASES.values():
        raise ValueError(f"Invalid registry path: {path}")
    return hive_name, subkey.strip("\\")


__all__ = [
    "RegistryAccessor",
    "RegistryValue",
    "VALUE_TYPES",
    "WindowsRegistryAccessor",
    "coerce_value",
    "split_registry_path",
    "values_equal",
]
