"""Utility helpers for memkeep."""

from memkeep.utils.helpers import ensure_dir, get_data_path, utc_now_iso

__all__ = ["ensure_dir", "get_data_path", "utc_now_iso"]
