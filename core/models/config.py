"""
Configuration models for specflow.

Handles project layout, watcher, router, consistency, arbitration and
scheduling settings.
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_NAME = re.compile(r"[\w][\w .-]*")


class PathsConfig(BaseModel):
    """Project-relative locations of documents and state"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    documents_dir: str = "docs/specs"
    state_dir: str = ".specflow/state"
    backups_dir: str = ".specflow/backups"

    @field_validator('documents_dir', 'state_dir', 'backups_dir')
    @classmethod
    def validate_relative(cls, v: str) -> str:
        """Paths are resolved against the project root"""
        if not v:
            raise ValueError('Path cannot be empty')
        return v.rstrip('/')


class WatcherConfig(BaseModel):
    """File system watcher configuration"""
    model_config = ConfigDict(validate_assignment=True)

    debounce_ms: int = Field(default=500, ge=0, le=60000)
    include_patterns: List[str] = Field(
        default_factory=lambda: ["*.md", "*.json"]
    )
    exclude_patterns: List[str] = Field(
        default_factory=lambda: [
            "*.tmp", "*~", "*.swp", "*/.git/*", "*/node_modules/*",
            "*/.specflow/backups/*", "*/audit.json", "*/conflicts.json"
        ]
    )
    root_check_interval_s: float = Field(default=5.0, gt=0)

    @field_validator('include_patterns')
    @classmethod
    def validate_patterns(cls, v: List[str]) -> List[str]:
        patterns = [pattern.strip() for pattern in v if pattern.strip()]
        if not patterns:
            raise ValueError("watcher needs at least one include pattern")
        return patterns


class RouterConfig(BaseModel):
    """Event router configuration"""
    model_config = ConfigDict(validate_assignment=True)

    failure_threshold: int = Field(default=3, ge=1)
    max_backlog: int = Field(default=256, ge=1)
    dead_letter_size: int = Field(default=100, ge=1)
    circuit_reset_s: float = Field(default=30.0, ge=0)
    backpressure_timeout_s: float = Field(default=1.0, ge=0)


class ConsistencyConfig(BaseModel):
    """Confidence rubric for the consistency checker"""
    model_config = ConfigDict(validate_assignment=True)

    auto_repair_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    category_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    recency_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    simple_score: float = Field(default=1.0, ge=0.0, le=1.0)
    structural_score: float = Field(default=0.2, ge=0.0, le=1.0)
    recency_horizon_s: float = Field(default=300.0, gt=0)

    @model_validator(mode='after')
    def validate_weights(self) -> 'ConsistencyConfig':
        """Weights must sum to one so confidence stays within [0, 1]"""
        if abs(self.category_weight + self.recency_weight - 1.0) > 1e-6:
            raise ValueError('category_weight + recency_weight must equal 1.0')
        return self


class ArbiterConfig(BaseModel):
    """Conflict arbitration configuration"""
    model_config = ConfigDict(validate_assignment=True)

    recency_tolerance_s: float = Field(default=5.0, ge=0)
    precedence_rules: Dict[str, List[str]] = Field(
        default_factory=lambda: {"status": ["complete", "done"]}
    )
    backup_retention_days: int = Field(default=7, ge=0)


class AgentCapability(BaseModel):
    """What one kind of worker can take on"""
    specialization_areas: List[str] = Field(default_factory=list)
    context_requirements: List[str] = Field(default_factory=list)

    @field_validator('specialization_areas', 'context_requirements')
    @classmethod
    def lowercase(cls, v: List[str]) -> List[str]:
        return [item.strip().lower() for item in v if item.strip()]


class SchedulerConfig(BaseModel):
    """Task scheduler weights and limits"""
    model_config = ConfigDict(validate_assignment=True)

    priority_weights: Dict[str, float] = Field(
        default_factory=lambda: {"P0": 1000.0, "P1": 100.0, "P2": 10.0, "P3": 1.0}
    )
    exact_match_boost: float = 2.0
    phase_boost: float = 1.5
    active_spec_boost: float = 1.3
    large_task_hours: float = 8.0
    large_task_penalty: float = 0.8
    capacity_limit: int = Field(default=1, ge=1)
    stale_handoff_hours: float = Field(default=24.0, gt=0)
    # Keyed by agent type; types without an entry take any matching task
    agent_capabilities: Dict[str, AgentCapability] = Field(default_factory=dict)


class ProjectConfig(BaseModel):
    """
    Settings of one specflow project.

    Directory settings are stored relative to ``path`` and exposed as
    absolute paths through the ``*_dir`` properties.
    """
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    name: str
    path: Path

    paths: PathsConfig = Field(default_factory=PathsConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    consistency: ConsistencyConfig = Field(default_factory=ConsistencyConfig)
    arbiter: ArbiterConfig = Field(default_factory=ArbiterConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    version: str = "1.0.0"
    description: Optional[str] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not PROJECT_NAME.fullmatch(v):
            raise ValueError(f"invalid project name {v!r}: use letters, digits, dots, dashes, underscores or spaces")
        return v

    @field_validator('path')
    @classmethod
    def validate_path(cls, v: Path) -> Path:
        if not v.is_dir():
            raise ValueError(f"project root {v} is missing or not a directory")
        return v.resolve()

    @property
    def documents_dir(self) -> Path:
        return self.path / self.paths.documents_dir

    @property
    def state_dir(self) -> Path:
        return self.path / self.paths.state_dir

    @property
    def backups_dir(self) -> Path:
        return self.path / self.paths.backups_dir

    def get_config_dir(self) -> Path:
        return self.path / ".specflow"

    def get_config_file(self) -> Path:
        return self.get_config_dir() / "config.json"

    @property
    def is_initialized(self) -> bool:
        """A project counts as initialized once its config file is written"""
        return self.get_config_file().exists()

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class GlobalSettings(BaseSettings):
    """Per-user settings read from ``SPECFLOW_*`` variables or a .env file"""
    model_config = SettingsConfigDict(
        env_prefix="SPECFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    global_config_dir: Path = Field(
        default_factory=lambda: Path.home() / ".specflow"
    )

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_to_file: bool = False

    def get_log_file(self) -> Optional[Path]:
        if self.log_to_file:
            logs = self.global_config_dir / "logs"
            logs.mkdir(parents=True, exist_ok=True)
            return logs / "specflow.log"
        return None
