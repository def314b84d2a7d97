"""Pydantic configuration models for the cortex supervisor."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

VALID_LLM_PROVIDERS = {"auto", "claude", "openai"}
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class LLMConfig(BaseModel):
    """Reasoning provider used by consolidation. Off unless enabled."""

    enabled: bool = False
    provider: str = "auto"
    model: Optional[str] = None  # None = use provider default
    api_key: Optional[str] = None
    timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in VALID_LLM_PROVIDERS:
            raise ValueError(f"Invalid LLM provider: {v}. Must be one of {VALID_LLM_PROVIDERS}")
        return v


class PathsConfig(BaseModel):
    """File paths configuration."""

    db_path: Path = Path("~/.cortex/cortex.db")
    chroma_dir: Optional[Path] = None
    log_file: Optional[Path] = None

    @model_validator(mode="after")
    def expand_paths(self):
        """Expand ~ in all paths."""
        self.db_path = self.db_path.expanduser()
        if self.chroma_dir:
            self.chroma_dir = self.chroma_dir.expanduser()
        if self.log_file:
            self.log_file = self.log_file.expanduser()
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = Field(default=False, alias="json")

    model_config = {"populate_by_name": True}

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v_upper = v.upper()
        if v_upper not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {VALID_LOG_LEVELS}")
        return v_upper


class LoopConfig(BaseModel):
    """Tick cadence and consolidation scheduling."""

    tick_interval_seconds: float = Field(default=5.0, gt=0)
    consolidation_interval_seconds: float = Field(default=3600.0, gt=0)
    consolidation_timeout_seconds: float = Field(default=60.0, gt=0)
    reasoning_budget: int = Field(default=10, ge=0)


class BreakerConfig(BaseModel):
    threshold: int = Field(default=3, ge=1)


class WorkersConfig(BaseModel):
    stall_seconds: float = Field(default=60.0, gt=0)
    kill_seconds: float = Field(default=120.0, gt=0)
    nudge_grace_seconds: float = Field(default=30.0, ge=0)
    completion_grace_seconds: float = Field(default=300.0, ge=0)
    kill_retry_seconds: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def validate_order(self):
        if self.kill_seconds <= self.stall_seconds:
            raise ValueError(
                f"workers.kill_seconds ({self.kill_seconds}) must exceed stall_seconds ({self.stall_seconds})"
            )
        return self


class BranchesConfig(BaseModel):
    stall_seconds: float = Field(default=30.0, gt=0)
    latency_window: int = Field(default=20, ge=2)
    degradation_factor: float = Field(default=2.0, gt=1.0)
    baseline_seconds: Optional[float] = Field(default=None, gt=0)


class ChannelsConfig(BaseModel):
    liveness_timeout_seconds: float = Field(default=300.0, gt=0)


class SignalsConfig(BaseModel):
    capacity: int = Field(default=1000, ge=1)


class PatternsConfig(BaseModel):
    window_seconds: float = Field(default=3600.0, gt=0)
    min_channels: int = Field(default=3, ge=2)
    task_repeat_threshold: int = Field(default=5, ge=2)


class MemoryConfig(BaseModel):
    """Consolidation thresholds. Similarity values are token-overlap ratios in [0, 1]."""

    merge_threshold: float = Field(default=0.9, gt=0, le=1)
    update_threshold: float = Field(default=0.6, gt=0, le=1)
    related_threshold: float = Field(default=0.3, gt=0, le=1)
    supersede_decrement: float = Field(default=0.2, ge=0, le=1)
    decay_age_days: float = Field(default=30.0, ge=0)
    decay_half_life_days: float = Field(default=30.0, gt=0)
    prune_floor: float = Field(default=0.05, ge=0, le=1)
    orphan_threshold: float = Field(default=0.15, ge=0, le=1)
    orphan_min_age_hours: float = Field(default=24.0, ge=0)
    observation_importance: float = Field(default=0.2, ge=0, le=1)
    max_candidates: int = Field(default=5, ge=1)
    centrality_damping: float = Field(default=0.85, gt=0, lt=1)
    centrality_iterations: int = Field(default=30, ge=1)

    @model_validator(mode="after")
    def validate_thresholds(self):
        if not self.related_threshold < self.update_threshold <= self.merge_threshold:
            raise ValueError("memory thresholds must satisfy related < update <= merge")
        if self.orphan_threshold < self.prune_floor:
            raise ValueError("memory.orphan_threshold must be >= prune_floor")
        return self


class BulletinConfig(BaseModel):
    enabled: bool = True
    max_words: int = Field(default=500, ge=20)


class CortexConfig(BaseModel):
    """Main configuration model."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    workers: WorkersConfig = Field(default_factory=WorkersConfig)
    branches: BranchesConfig = Field(default_factory=BranchesConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    signals: SignalsConfig = Field(default_factory=SignalsConfig)
    patterns: PatternsConfig = Field(default_factory=PatternsConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    bulletin: BulletinConfig = Field(default_factory=BulletinConfig)

    @model_validator(mode="after")
    def expand_env_vars(self):
        """Expand ${VAR} patterns in API keys."""
        if self.llm.api_key:
            key = self.llm.api_key
            if key.startswith("${") and key.endswith("}"):
                env_var = key[2:-1]
                self.llm.api_key = os.getenv(env_var, "")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "CortexConfig":
        return cls.model_validate(data)

    def to_dict(self) -> dict:
        return self.model_dump(mode="python", by_alias=True)
