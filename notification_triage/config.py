"""
Runtime configuration — every tunable lives here.

Values come from TRIAGE_* environment variables (or a .env file),
so thresholds and caps can be tuned without touching code.
"""

from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TriageSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TRIAGE_",
        env_file=".env",
        extra="ignore",
    )

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool = False

    # ── Latency budget ─────────────────────────────────────────
    rule_path_budget_ms: int = 100
    classifier_timeout_ms: int = 300
    embedding_timeout_ms: int = 80

    # ── Deduplication ──────────────────────────────────────────
    dedupe_ttl_seconds: int = 86400
    near_dup_enabled: bool = True
    near_dup_k: int = 10
    near_dup_window_seconds: int = 300
    near_dup_threshold: float = 0.92
    near_dup_verdict: str = "NEVER"
    digest_batching: bool = False

    # ── Fatigue ────────────────────────────────────────────────
    channel_hourly_caps: Dict[str, int] = Field(
        default_factory=lambda: {"push": 5, "email": 10, "sms": 3, "in_app": 20}
    )
    default_channel_hourly_cap: int = 5
    global_hourly_cap: int = 15
    burst_threshold: int = 4
    burst_window_minutes: int = 10
    cooldown_seconds: int = 1800

    # ── Classifier ─────────────────────────────────────────────
    classifier_fallback_verdict: str = "LATER"
    classifier_max_concurrency: Optional[int] = None
    breaker_failure_threshold: int = 5
    breaker_reset_seconds: float = 30.0

    # ── Scheduling ─────────────────────────────────────────────
    default_defer_minutes: int = 15
    digest_hour_utc: int = 18

    # ── Rules ──────────────────────────────────────────────────
    rules_file: Optional[str] = None
    rules_poll_seconds: float = 30.0

    @field_validator("near_dup_verdict")
    @classmethod
    def _near_dup_verdict(cls, value: str) -> str:
        value = value.upper()
        if value not in ("NEVER", "LATER"):
            raise ValueError("near_dup_verdict must be NEVER or LATER")
        return value

    @field_validator("classifier_fallback_verdict")
    @classmethod
    def _fallback_verdict(cls, value: str) -> str:
        value = value.upper()
        if value not in ("NOW", "LATER", "NEVER"):
            raise ValueError("classifier_fallback_verdict must be NOW, LATER or NEVER")
        return value

    @field_validator("log_level")
    @classmethod
    def _log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value!r}")
        return value

    @property
    def rule_path_budget(self) -> float:
        return self.rule_path_budget_ms / 1000

    @property
    def classifier_timeout(self) -> float:
        return self.classifier_timeout_ms / 1000

    @property
    def embedding_timeout(self) -> float:
        return self.embedding_timeout_ms / 1000


@lru_cache(maxsize=1)
def get_settings() -> TriageSettings:
    return TriageSettings()


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
