"""
Application configuration.
All settings are loaded from environment variables (or .env).
Every option has a working default so the engine runs locally without Redis.
"""
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # CORS: comma-separated origins. Empty = default list in main.py.
    cors_origins: str = ""

    # ===========================================
    # STATE STORE (Redis)
    # ===========================================
    # Empty = in-process store (single worker, state lost on restart).
    redis_url: str = ""
    state_signing_secret: str = "local-dev-paywall-state-secret"
    user_state_ttl: int = 60 * 60 * 24 * 90  # 90 days
    state_write_max_attempts: int = 3
    decision_latency_budget_ms: int = 150

    # ===========================================
    # TRIAL
    # ===========================================
    trial_duration_days: int = 7

    # ===========================================
    # ENGAGEMENT
    # ===========================================
    engagement_high_duration_sec: int = 300
    engagement_high_actions: int = 10
    engagement_medium_duration_sec: int = 120
    engagement_medium_actions: int = 5
    # Session ids remembered per user; a remembered id is never counted twice.
    session_history_limit: int = 50

    # ===========================================
    # PAYWALL TRIGGERS
    # ===========================================
    export_intent_threshold: int = 2
    save_intent_threshold: int = 3
    paywall_repeat_cooldown_hours: int = 24

    # ===========================================
    # EXPERIMENTS
    # ===========================================
    paywall_experiment_id: str = "paywall_v1"
    experiment_variant_count: int = 2

    # ===========================================
    # RETENTION OFFERS
    # ===========================================
    offer_discount_percent: int = 30
    offer_lifetime_hours: int = 48
    offer_cooldown_days: int = 7
    offer_min_sessions: int = 3

    # ===========================================
    # ANALYTICS EMITTER
    # ===========================================
    emitter_queue_size: int = 10_000
    emitter_workers: int = 1
    emitter_max_attempts: int = 5
    emitter_backoff_base_seconds: float = 0.5
    emitter_backoff_max_seconds: float = 30.0
    # Empty = events are kept in an in-memory sink (local/dev only).
    analytics_sink_url: str = ""
    analytics_sink_api_key: str | None = None
    analytics_sink_timeout: float = 5.0
    analytics_idempotency_ttl: int = 60 * 60 * 24  # 1 day

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    # json (default) or text for local runs
    log_format: str = "json"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator(
        "experiment_variant_count",
        "state_write_max_attempts",
        "emitter_max_attempts",
        "emitter_workers",
        "session_history_limit",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Counts that drive loops or modulo arithmetic must be >= 1."""
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("offer_discount_percent")
    @classmethod
    def validate_discount(cls, v: int) -> int:
        if not 0 < v < 100:
            raise ValueError("offer_discount_percent must be between 1 and 99")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper().strip()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("json", "text"):
            raise ValueError("log_format must be json or text")
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings loaded once per process; pass the result into services explicitly."""
    return Settings()
