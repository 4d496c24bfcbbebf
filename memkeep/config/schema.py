"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings

from memkeep.config.defaults import DEFAULT_MEMORY, DEFAULT_TELEMETRY


def _tier_map(section: str, key: str) -> dict[str, float]:
    return {name: float(value) for name, value in DEFAULT_MEMORY[section][key].items()}


class MemoryDedupConfig(BaseModel):
    """Similarity threshold and candidate window for supersedence."""

    model_config = ConfigDict(extra="ignore")

    threshold: float = Field(default=float(DEFAULT_MEMORY["dedup"]["threshold"]), ge=0.0, le=1.0)
    window: int = Field(default=int(DEFAULT_MEMORY["dedup"]["window"]), ge=1)


class MemoryScoringConfig(BaseModel):
    """Passive capture thresholds and explicit-save defaults."""

    model_config = ConfigDict(extra="ignore")

    tier1_threshold: float = Field(default=float(DEFAULT_MEMORY["scoring"]["tier1_threshold"]), ge=0.0, le=1.0)
    tier2_threshold: float = Field(default=float(DEFAULT_MEMORY["scoring"]["tier2_threshold"]), ge=0.0, le=1.0)
    tier3_threshold: float = Field(default=float(DEFAULT_MEMORY["scoring"]["tier3_threshold"]), ge=0.0, le=1.0)
    explicit_priority: float = Field(default=float(DEFAULT_MEMORY["scoring"]["explicit_priority"]), ge=0.0, le=1.0)
    explicit_confidence: float = Field(
        default=float(DEFAULT_MEMORY["scoring"]["explicit_confidence"]), ge=0.0, le=1.0
    )
    passive_confidence: float = Field(
        default=float(DEFAULT_MEMORY["scoring"]["passive_confidence"]), ge=0.0, le=1.0
    )

    def threshold_for(self, tier: str) -> float:
        return float(getattr(self, f"{tier.lower()}_threshold"))


class MemoryCaptureConfig(BaseModel):
    """Background capture worker pool settings."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = bool(DEFAULT_MEMORY["capture"]["enabled"])
    workers: int = Field(default=int(DEFAULT_MEMORY["capture"]["workers"]), ge=1)
    queue_maxsize: int = Field(default=int(DEFAULT_MEMORY["capture"]["queue_maxsize"]), ge=1)
    max_attempts: int = Field(default=int(DEFAULT_MEMORY["capture"]["max_attempts"]), ge=1)
    base_backoff_ms: int = Field(default=int(DEFAULT_MEMORY["capture"]["base_backoff_ms"]), ge=0)


class MemoryRecallConfig(BaseModel):
    """Deadline and ordering settings for recall."""

    model_config = ConfigDict(extra="ignore")

    default_deadline_ms: int = Field(default=int(DEFAULT_MEMORY["recall"]["default_deadline_ms"]), ge=1)
    max_deadline_ms: int = Field(default=int(DEFAULT_MEMORY["recall"]["max_deadline_ms"]), ge=1)
    default_max_items: int = Field(default=int(DEFAULT_MEMORY["recall"]["default_max_items"]), ge=1)
    max_items: int = Field(default=int(DEFAULT_MEMORY["recall"]["max_items"]), ge=1)
    recency_window_hours: float = Field(default=float(DEFAULT_MEMORY["recall"]["recency_window_hours"]), ge=0)
    min_relevance: float = Field(default=float(DEFAULT_MEMORY["recall"]["min_relevance"]), ge=0.0, le=1.0)
    max_prompt_chars: int = Field(default=int(DEFAULT_MEMORY["recall"]["max_prompt_chars"]), ge=64)
    pool_workers: int = Field(default=int(DEFAULT_MEMORY["recall"]["pool_workers"]), ge=1)

    @model_validator(mode="after")
    def _validate_bounds(self) -> "MemoryRecallConfig":
        if self.default_deadline_ms > self.max_deadline_ms:
            raise ValueError("memory.recall.defaultDeadlineMs must not exceed maxDeadlineMs")
        if self.default_max_items > self.max_items:
            raise ValueError("memory.recall.defaultMaxItems must not exceed maxItems")
        return self


class MemoryTrackerConfig(BaseModel):
    """Cross-thread tracker capacity."""

    model_config = ConfigDict(extra="ignore")

    max_topics_per_user: int = Field(default=int(DEFAULT_MEMORY["tracker"]["max_topics_per_user"]), ge=1)
    max_users: int = Field(default=int(DEFAULT_MEMORY["tracker"]["max_users"]), ge=1)
    repeat_threshold: int = Field(default=int(DEFAULT_MEMORY["tracker"]["repeat_threshold"]), ge=1)


class MemoryRetentionConfig(BaseModel):
    """Tier TTLs, decay and promotion rules."""

    model_config = ConfigDict(extra="ignore")

    ttl_days: dict[str, float] = Field(default_factory=lambda: _tier_map("retention", "ttl_days"))
    weekly_decay: dict[str, float] = Field(default_factory=lambda: _tier_map("retention", "weekly_decay"))
    priority_floor: dict[str, float] = Field(default_factory=lambda: _tier_map("retention", "priority_floor"))
    promotion_min_threads: int = Field(default=int(DEFAULT_MEMORY["retention"]["promotion_min_threads"]), ge=1)
    promotion_min_repeats: int = Field(default=int(DEFAULT_MEMORY["retention"]["promotion_min_repeats"]), ge=1)
    purge_grace_days: float = Field(default=float(DEFAULT_MEMORY["retention"]["purge_grace_days"]), ge=0)

    @model_validator(mode="after")
    def _validate_tiers(self) -> "MemoryRetentionConfig":
        for name in ("ttl_days", "weekly_decay", "priority_floor"):
            table = getattr(self, name)
            missing = sorted({"tier1", "tier2", "tier3"} - set(table))
            if missing:
                raise ValueError(f"memory.retention.{name} is missing tiers: " + ", ".join(missing))
        return self


class MemoryProfileConfig(BaseModel):
    """Derived profile cache sizing."""

    model_config = ConfigDict(extra="ignore")

    cache_size: int = Field(default=int(DEFAULT_MEMORY["profile"]["cache_size"]), ge=1)
    ttl_seconds: float = Field(default=float(DEFAULT_MEMORY["profile"]["ttl_seconds"]), ge=0)


class MemoryConfig(BaseModel):
    """Memory capture, dedup and recall configuration."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = bool(DEFAULT_MEMORY["enabled"])
    db_path: str = str(DEFAULT_MEMORY["db_path"])
    max_content_chars: int = Field(default=int(DEFAULT_MEMORY["max_content_chars"]), ge=16)
    dedup: MemoryDedupConfig = Field(default_factory=MemoryDedupConfig)
    scoring: MemoryScoringConfig = Field(default_factory=MemoryScoringConfig)
    capture: MemoryCaptureConfig = Field(default_factory=MemoryCaptureConfig)
    recall: MemoryRecallConfig = Field(default_factory=MemoryRecallConfig)
    tracker: MemoryTrackerConfig = Field(default_factory=MemoryTrackerConfig)
    retention: MemoryRetentionConfig = Field(default_factory=MemoryRetentionConfig)
    profile: MemoryProfileConfig = Field(default_factory=MemoryProfileConfig)

    @property
    def db_file(self) -> Path:
        """Resolved database path; relative paths live under the memkeep home."""
        from memkeep.utils.helpers import resolve_data_file
        return resolve_data_file(self.db_path)


class TelemetryConfig(BaseModel):
    """Metrics backend selection."""

    model_config = ConfigDict(extra="ignore")

    backend: Literal["none", "inmemory", "prometheus"] = str(DEFAULT_TELEMETRY["backend"])
    host: str = str(DEFAULT_TELEMETRY["host"])  # localhost only by default
    port: int = int(DEFAULT_TELEMETRY["port"])


class Config(BaseSettings):
    """Root configuration for memkeep."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True, env_prefix="MEMKEEP_", env_nested_delimiter="__")

    config_version: int = 1
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
