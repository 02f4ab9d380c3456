"""Knob database: named configuration values with typed defaults."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Mapping, TypeVar

T = TypeVar("T")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class Knobs:
    """Key-value store of configuration knobs such as ``LineSearch::MaximumStep``.

    Instances are passed explicitly to the components that read them; a
    missing knob resolves to the default supplied by the reader.
    """

    def __init__(self, values: Mapping[str, object] | None = None) -> None:
        self._values: Dict[str, object] = dict(values or {})

    @classmethod
    def from_file(cls, path: str | Path) -> "Knobs":
        return cls(_read_knob_file(Path(path)))

    def set_knob_value(self, name: str, value: object) -> None:
        self._values[name] = value

    def contains(self, name: str) -> bool:
        return name in self._values

    def get_knob_value(self, name: str, default: T) -> T:
        if name not in self._values:
            return default
        return _coerce(name, self._values[name], default)

    def to_dict(self) -> Dict[str, object]:
        return dict(self._values)

    def __contains__(self, name: str) -> bool:
        return self.contains(name)


def _coerce(name: str, value: object, default: T) -> T:
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value  # type: ignore[return-value]
        text = str(value).strip().lower()
        if text in _TRUE:
            return True  # type: ignore[return-value]
        if text in _FALSE:
            return False  # type: ignore[return-value]
        raise ValueError(f"Knob {name} expects a boolean, got {value!r}")
    if default is None:
        return value  # type: ignore[return-value]
    try:
        return type(default)(value)  # type: ignore[call-arg]
    except (TypeError, ValueError) as exc:
        raise ValueError(
            f"Knob {name} expects {type(default).__name__}, got {value!r}"
        ) from exc


def _read_knob_file(path: Path) -> Mapping[str, object]:
    text = path.read_text()
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        try:
            import yaml  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("PyYAML is required to load knob files in YAML format") from exc
        data = yaml.safe_load(text) or {}
    elif suffix == ".json":
        data = json.loads(text or "{}")
    else:
        raise ValueError(f"Unsupported knob file type: {path.suffix}")

    if not isinstance(data, Mapping):
        raise TypeError(f"Knob file {path.name} must decode to a mapping")
    return data


__all__ = ["Knobs"]
