from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

from .frames import SensorVariant


@dataclass
class SerialConfig:
    baudrate: int = 9600
    timeout: float = 0.1
    chunk_size: int = 32


@dataclass
class SensorConfig:
    variant: str = "standard"  # standard | t
    average_sec: Optional[float] = None
    stats_log_interval: float = 60.0
    serial: SerialConfig = field(default_factory=SerialConfig)

    @property
    def variant_enum(self) -> SensorVariant:
        try:
            return SensorVariant(self.variant.lower())
        except ValueError:
            raise ValueError(f"Unsupported variant '{self.variant}'") from None


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level JSON value must be an object")
    return data


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> SensorConfig:
    """
    Load a sensor configuration from JSON and apply CLI-style overrides.

    Without a path the defaults are used. Overrides are dotted `key=value`
    pairs, e.g.:
        ["variant=t", "serial.timeout=0.5"]
    """
    data = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)
    serial_data = merged.get("serial") or {}
    if not isinstance(serial_data, dict):
        raise ValueError("serial must be an object with baudrate, timeout and chunk_size")
    average = merged.get("average_sec")
    config = SensorConfig(
        variant=str(merged.get("variant", "standard")),
        average_sec=_number("average_sec", average, float) if average is not None else None,
        stats_log_interval=_number("stats_log_interval", merged.get("stats_log_interval", 60.0), float),
        serial=SerialConfig(
            baudrate=_number("serial.baudrate", serial_data.get("baudrate", 9600), int),
            timeout=_number("serial.timeout", serial_data.get("timeout", 0.1), float),
            chunk_size=_number("serial.chunk_size", serial_data.get("chunk_size", 32), int),
        ),
    )
    config.variant = config.variant_enum.value
    if config.average_sec is not None and config.average_sec < 0:
        raise ValueError("average_sec must not be negative")
    if config.serial.chunk_size < 1:
        raise ValueError("serial.chunk_size must be at least 1")
    return config


def _number(key: str, value: Any, cast: Callable[[Any], Any]) -> Any:
    if isinstance(value, bool):
        raise ValueError(f"{key} must be a number, got {value!r}")
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number, got {value!r}") from None


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    if raw.lower() in {"null", "none"}:
        return None
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
        if not isinstance(cursor, dict):
            raise ValueError(f"Override '{dotted_key}' conflicts with a scalar value for '{part}'")
    cursor[parts[-1]] = value
