"""device_registry_etl.config

Collection-name bindings for the four registry collections.

Resolution order (later wins):
    1. built-in profile (``test`` by default, or ``production``)
    2. YAML config file (``--config``)
    3. per-collection CLI overrides

YAML format:

    profile: production          # optional
    collections:                 # optional, any subset
      devices: Devices
      users: Users
      interactions: interactions
      device_updates: DevicesUpdates
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml


class ConfigError(ValueError):
    """Raised when a config file or override fails validation."""


@dataclass(frozen=True)
class CollectionNames:
    devices: str
    users: str
    interactions: str
    device_updates: str


PROFILES: dict[str, CollectionNames] = {
    "production": CollectionNames(
        devices="Devices",
        users="Users",
        interactions="interactions",
        device_updates="DevicesUpdates",
    ),
    "test": CollectionNames(
        devices="DevicesTest",
        users="UsersTest",
        interactions="InteractionsTest",
        device_updates="DevicesUpdatesTest",
    ),
}

DEFAULT_PROFILE = "test"

_COLLECTION_KEYS = frozenset(f.name for f in fields(CollectionNames))
_TOP_LEVEL_KEYS = frozenset({"profile", "collections"})


def _profile(name: str) -> CollectionNames:
    try:
        return PROFILES[name]
    except KeyError:
        raise ConfigError(
            f"unknown profile {name!r}; expected one of {sorted(PROFILES)}"
        ) from None


def _apply_overrides(base: CollectionNames, overrides: dict[str, Any]) -> CollectionNames:
    unknown = set(overrides) - _COLLECTION_KEYS
    if unknown:
        raise ConfigError(f"unknown collection keys: {sorted(unknown)}")
    clean: dict[str, str] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"collection name for {key!r} must be a non-empty string")
        clean[key] = value.strip()
    return replace(base, **clean)


def load_config_file(path: Path) -> dict[str, Any]:
    """Parse and shape-check a YAML config file."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"{path}: unknown keys {sorted(unknown)}")
    if "collections" in data and not isinstance(data["collections"], dict):
        raise ConfigError(f"{path}: 'collections' must be a mapping")
    return data


def resolve_collections(
    profile: str | None = None,
    config_path: Path | None = None,
    overrides: dict[str, str | None] | None = None,
) -> CollectionNames:
    """Return the effective collection names for this run.

    A profile given explicitly (CLI) beats the one in the config file.
    """
    file_data = load_config_file(config_path) if config_path else {}
    names = _profile(profile or file_data.get("profile") or DEFAULT_PROFILE)
    names = _apply_overrides(names, file_data.get("collections") or {})
    return _apply_overrides(names, overrides or {})
