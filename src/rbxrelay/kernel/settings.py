"""Persisted relay settings.

Settings are stored in ~/.rbxrelay/settings.yaml and include:
- autoAccept: dispatch every tool call without asking
- strictMode: editScript requires a preceding readLine on the same path
- whitelist: tools dispatched without asking even when autoAccept is off
- relay: optional timeout / retention overrides (see RelayConfig)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml  # type: ignore

from ..paths import ensure_home
from ..util.fs import atomic_write_text

logger = logging.getLogger("rbxrelay.settings")


DEFAULT_WHITELIST: List[str] = [
    "tree",
    "get",
    "copy",
    "readLine",
    "getScriptInfo",
    "scriptSearch",
    "scriptSearchOnly",
    "editScript",
    "convertScript",
]


@dataclass(frozen=True)
class RelayConfig:
    """Timeouts and retention windows, in seconds unless noted."""
    dispatch_timeout: float = 120.0
    approval_timeout: float = 90.0
    pickup_timeout: float = 15.0
    legacy_retention: float = 300.0
    result_retention: float = 120.0
    janitor_interval: float = 30.0
    presence_interval: float = 5.0
    agent_offline_after: float = 35.0
    legacy_pause: float = 0.1
    max_response_size: int = 50 * 1024 * 1024  # bytes
    memory_warning_threshold: int = 1000


def relay_config(doc: Optional[Dict[str, Any]] = None) -> RelayConfig:
    """Build a RelayConfig from the `relay:` section of settings.yaml."""
    raw = (doc or {}).get("relay")
    d = raw if isinstance(raw, dict) else {}
    defaults = RelayConfig()

    values: Dict[str, Any] = {}
    for f in fields(RelayConfig):
        default = getattr(defaults, f.name)
        if f.name not in d:
            values[f.name] = default
            continue
        try:
            v = type(default)(d[f.name])
        except Exception:
            logger.warning(f"invalid relay.{f.name}={d[f.name]!r}; using {default}")
            v = default
        values[f.name] = v if v >= 0 else default
    return RelayConfig(**values)


@dataclass
class RelaySettings:
    auto_accept: bool = True
    strict_mode: bool = False
    whitelist: List[str] = field(default_factory=lambda: list(DEFAULT_WHITELIST))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "autoAccept": self.auto_accept,
            "strictMode": self.strict_mode,
            "whitelist": list(self.whitelist),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RelaySettings":
        strict = d.get("strictMode")
        if strict is None:
            strict = d.get("strictEditScript")
        wl = d.get("whitelist")
        return cls(
            auto_accept=bool(d.get("autoAccept")) if "autoAccept" in d else True,
            strict_mode=bool(strict) if strict is not None else False,
            whitelist=[str(x) for x in wl] if isinstance(wl, list) else list(DEFAULT_WHITELIST),
        )


def settings_path(home: Optional[Path] = None) -> Path:
    return (home or ensure_home()) / "settings.yaml"


def load_settings_doc(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the raw settings document (empty dict when missing or unreadable)."""
    p = path or settings_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        return doc if isinstance(doc, dict) else {}
    except Exception as e:
        logger.error(f"failed to load settings from {p}: {e}")
        return {}


class SettingsStore:
    """In-memory settings backed by settings.yaml; every change is written through."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or settings_path()
        self._doc = load_settings_doc(self.path)
        self._settings = RelaySettings.from_dict(self._doc)
        self.config = relay_config(self._doc)

    @property
    def auto_accept(self) -> bool:
        return self._settings.auto_accept

    @property
    def strict_mode(self) -> bool:
        return self._settings.strict_mode

    @property
    def whitelist(self) -> List[str]:
        return list(self._settings.whitelist)

    def is_whitelisted(self, tool: str) -> bool:
        return tool in self._settings.whitelist

    def snapshot(self) -> Dict[str, Any]:
        return self._settings.to_dict()

    def set_auto_accept(self, value: bool) -> None:
        self._settings.auto_accept = bool(value)
        self.save()

    def set_strict_mode(self, value: bool) -> None:
        self._settings.strict_mode = bool(value)
        self.save()

    def toggle_whitelist(self, tool: str) -> bool:
        """Flip `tool`'s membership; returns True when it is now whitelisted."""
        wl = self._settings.whitelist
        if tool in wl:
            wl.remove(tool)
            added = False
        else:
            wl.append(tool)
            added = True
        self.save()
        return added

    def save(self) -> None:
        doc = dict(self._doc)
        doc.update(self._settings.to_dict())
        doc.pop("strictEditScript", None)
        try:
            atomic_write_text(self.path, yaml.safe_dump(doc, allow_unicode=True, sort_keys=False))
            self._doc = doc
        except OSError as e:
            logger.error(f"failed to save settings to {self.path}: {e}")
