from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from intent_healer.core.models import HealPolicy

DEFAULT_FORBIDDEN_KEYWORDS = [
    # English
    "delete",
    "remove",
    "cancel",
    "unsubscribe",
    "terminate",
    "deactivate",
    "permanently",
    "irreversible",
    "close account",
    # Japanese
    "削除",
    "取り消し",
    # German
    "löschen",
    # French
    "supprimer",
    # Spanish
    "eliminar",
    # Russian
    "удалить",
    # Hebrew
    "מחק",
    # Arabic
    "حذف",
]


class _Section(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class GuardrailConfig(_Section):
    min_confidence: float = Field(default=0.80, ge=0.0, le=1.0)
    forbidden_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_FORBIDDEN_KEYWORDS))
    forbidden_url_patterns: list[str] = Field(default_factory=list)

    @field_validator("forbidden_keywords")
    @classmethod
    def drop_blank_keywords(cls, value: list[str]) -> list[str]:
        return [item for item in value if item and item.strip()]

    @field_validator("forbidden_url_patterns")
    @classmethod
    def validate_patterns(cls, value: list[str]) -> list[str]:
        invalid = []
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error:
                invalid.append(pattern)
        if invalid:
            raise ValueError(f"Invalid forbidden URL patterns: {', '.join(invalid)}")
        return value

    def find_forbidden_keyword(self, text: str | None) -> str | None:
        if not text:
            return None
        lowered = text.lower()
        for keyword in self.forbidden_keywords:
            if keyword.lower() in lowered:
                return keyword
        return None


class CacheConfig(_Section):
    enabled: bool = True
    ttl_seconds: int = Field(default=24 * 60 * 60, gt=0)
    max_entries: int = Field(default=10_000, gt=0)
    min_confidence_to_cache: float = Field(default=0.85, ge=0.0, le=1.0)
    recalibrate_on_hit: bool = False
    persistence_enabled: bool = False
    persistence_dir: str = ".healer/cache"
    cleanup_interval_seconds: float = Field(default=60 * 60, gt=0)
    background_cleanup: bool = True


class BlacklistConfig(_Section):
    enabled: bool = True
    persistence_enabled: bool = False
    persistence_dir: str = ".healer/blacklist"


class CircuitBreakerConfig(_Section):
    enabled: bool = False
    failure_threshold: int = Field(default=3, ge=1)
    success_threshold_to_close: int = Field(default=2, ge=1)
    open_duration_seconds: float = Field(default=30 * 60, gt=0)
    half_open_max_attempts: int = Field(default=3, ge=1)
    daily_oracle_call_limit: int | None = Field(default=None, gt=0)


class CalibrationConfig(_Section):
    num_buckets: int = Field(default=10, ge=1)
    min_samples_per_bucket: int = Field(default=10, ge=1)


class SnapshotConfig(_Section):
    max_elements: int = Field(default=500, gt=0)
    max_text_length: int = Field(default=200, gt=0)
    include_hidden: bool = False


class HealerConfig(_Section):
    enabled: bool = True
    mode: HealPolicy = HealPolicy.AUTO_SAFE
    guardrails: GuardrailConfig = Field(default_factory=GuardrailConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    blacklist: BlacklistConfig = Field(default_factory=BlacklistConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    snapshot: SnapshotConfig = Field(default_factory=SnapshotConfig)

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value
