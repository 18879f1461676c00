"""Engine configuration — learning thresholds, capacity and decision timing."""

from croniter import croniter
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseSettings):
    """
    Tunables for the pattern store, learning rules, suggestions and the
    decision coordinator. Every field can be overridden from the
    environment with the POPGUARD_ prefix (e.g. POPGUARD_MAX_PATTERNS=500).
    """

    model_config = SettingsConfigDict(env_prefix="POPGUARD_", extra="ignore")

    # Matching
    similarity_threshold: float = Field(ge=0.0, le=1.0, default=0.7)

    # Automatic suggestions need materially more certainty than matching
    suggestion_min_confidence: float = Field(ge=0.0, le=1.0, default=0.7)
    suggestion_min_similarity: float = Field(ge=0.0, le=1.0, default=0.8)

    # Confidence model
    initial_confidence: float = Field(ge=0.1, le=1.0, default=0.5)
    reinforce_step: float = Field(ge=0.0, le=1.0, default=0.1)
    penalty_step: float = Field(ge=0.0, le=1.0, default=0.2)
    relabel_threshold: float = Field(ge=0.1, le=1.0, default=0.3)
    relabel_confidence: float = Field(ge=0.1, le=1.0, default=0.5)
    boolean_flip_min_occurrences: int = Field(ge=1, default=3)

    # Decay and capacity
    min_confidence: float = Field(ge=0.1, le=1.0, default=0.1)
    max_age_days: float = Field(gt=0, default=30)
    max_patterns: int = Field(ge=1, le=10000, default=100)
    confidence_decay_per_day: float = Field(ge=0.0, default=0.01)
    cleanup_every_n_updates: int = Field(ge=1, default=1)

    # Decision coordination
    decision_timeout_seconds: float = Field(gt=0, default=30.0)
    expired_decision_seconds: float = Field(gt=0, default=300.0)
    history_limit: int = Field(ge=0, default=500)

    learning_enabled: bool = True
    maintenance_schedule: str = "*/5 * * * *"

    @field_validator("maintenance_schedule")
    @classmethod
    def _check_schedule(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value!r}")
        return value

    @property
    def max_age_seconds(self) -> float:
        return self.max_age_days * 86400.0
