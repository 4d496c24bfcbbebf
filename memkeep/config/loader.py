"""Configuration loading utilities.

The on-disk file is camelCase JSON; models are snake_case. Legacy flat
memory keys are folded into their sections on load and the file is
rewritten (after a timestamped backup) when anything changed. Keys the
file leaves out are never written back, so environment variables keep
applying to them.
"""

import json
import os
import re
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

from memkeep.config.schema import Config

CONFIG_VERSION = 1

# memory.<old flat key> → memory.<section>.<key>
LEGACY_MEMORY_KEYS: dict[str, tuple[str, str]] = {
    "dedupThreshold": ("dedup", "threshold"),
    "dedupWindow": ("dedup", "window"),
    "recallDeadlineMs": ("recall", "defaultDeadlineMs"),
    "recallMaxItems": ("recall", "defaultMaxItems"),
    "captureWorkers": ("capture", "workers"),
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def get_config_path() -> Path:
    """Path of config.json under the memkeep home."""
    from memkeep.utils.helpers import get_data_path
    return get_data_path() / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file, or defaults when there is none.

    Only keys present in the file are passed to ``Config``; ``MEMKEEP_*``
    environment variables fill whatever the file leaves unset and defaults
    cover the rest. An unreadable or invalid file is reported and replaced
    by defaults.
    """
    path = config_path or get_config_path()
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text())
        migrated, changed = _migrate_config_with_change(raw)
        config = Config(**convert_keys(migrated))
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning("Ignoring config at {}: {}", path, e)
        return Config()

    if changed:
        logger.info("Migrated config at {} to version {}", path, CONFIG_VERSION)
        _backup_config(path)
        _atomic_write_json(path, migrated)
    return config


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Write every field of ``config`` as camelCase JSON (0600)."""
    _atomic_write_json(config_path or get_config_path(), convert_to_camel(config.model_dump()))


def _migrate_config(data: dict[str, Any]) -> dict[str, Any]:
    migrated, _ = _migrate_config_with_change(data)
    return migrated


def _migrate_config_with_change(data: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Fold legacy keys and stamp the version.

    Defaults are not filled in, so keys the file omits stay open to
    environment overrides.

    Returns:
        (migrated camelCase payload, whether it differs from ``data``)
    """
    if not isinstance(data, dict):
        raise ValueError("Config root must be a JSON object")

    before = _canonical(data)
    payload = json.loads(before)

    memory = payload.get("memory")
    if isinstance(memory, dict):
        for old_key, (section, key) in LEGACY_MEMORY_KEYS.items():
            if old_key not in memory:
                continue
            value = memory.pop(old_key)
            target = memory.setdefault(section, {})
            if isinstance(target, dict):
                target.setdefault(key, value)

    payload.pop("config_version", None)
    payload["configVersion"] = CONFIG_VERSION
    return payload, _canonical(payload) != before


def _canonical(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def _chmod_private(path: Path) -> None:
    try:
        path.chmod(0o600)
    except OSError as e:
        logger.debug("Could not restrict permissions on {}: {}", path, e)


def _backup_config(path: Path) -> Path | None:
    """Copy ``path`` to config.backup.<timestamp>.json before a rewrite."""
    if not path.exists():
        return None
    stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    backup = path.with_name(f"{path.stem}.backup.{stamp}{path.suffix}")
    shutil.copy2(path, backup)
    _chmod_private(backup)
    return backup


def _atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp-{os.getpid()}")
    tmp_path.write_text(json.dumps(payload, indent=2))
    _chmod_private(tmp_path)
    os.replace(tmp_path, path)
    _chmod_private(path)


def convert_keys(data: Any) -> Any:
    """Recursively rename camelCase keys to snake_case."""
    return _rename_keys(data, camel_to_snake)


def convert_to_camel(data: Any) -> Any:
    """Recursively rename snake_case keys to camelCase."""
    return _rename_keys(data, snake_to_camel)


def _rename_keys(data: Any, rename) -> Any:
    if isinstance(data, dict):
        return {rename(k): _rename_keys(v, rename) for k, v in data.items()}
    if isinstance(data, list):
        return [_rename_keys(item, rename) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)
