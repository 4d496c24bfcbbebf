"""Utility functions for memkeep."""

import os
from datetime import UTC, datetime
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the memkeep data directory.

    Respects MEMKEEP_HOME environment variable; falls back to ~/.memkeep.
    """
    memkeep_home = os.environ.get("MEMKEEP_HOME", "").strip()
    if memkeep_home:
        return ensure_dir(Path(memkeep_home).expanduser())
    return ensure_dir(Path.home() / ".memkeep")


def resolve_data_file(raw: str) -> Path:
    """Resolve a configured file path; relative paths live under the data dir."""
    path = Path(raw).expanduser()
    if path.is_absolute():
        return path
    return get_data_path() / path


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with microseconds."""
    return utc_now().isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    """Parse an ISO timestamp, assuming UTC when no offset is present."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
