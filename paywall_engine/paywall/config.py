"""
Paywall engine config: a typed, immutable snapshot of the engine options taken
from app settings. Components receive it by injection.
"""
from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, Field

from paywall_engine.core.config import Settings


class EngineConfig(BaseModel):
    trial_duration_days: int = Field(7, ge=0)
    engagement_high_duration_sec: int = Field(300, ge=0)
    engagement_high_actions: int = Field(10, ge=0)
    engagement_medium_duration_sec: int = Field(120, ge=0)
    engagement_medium_actions: int = Field(5, ge=0)
    session_history_limit: int = Field(50, ge=1)
    offer_cooldown_days: int = Field(7, ge=0)
    offer_lifetime_hours: int = Field(48, ge=0)
    paywall_repeat_cooldown_hours: int = Field(24, ge=0)
    experiment_variant_count: int = Field(2, ge=1)

    offer_discount_percent: int = Field(30, gt=0, lt=100)
    offer_min_sessions: int = Field(3, ge=0)
    export_intent_threshold: int = Field(2, ge=0)
    save_intent_threshold: int = Field(3, ge=0)
    paywall_experiment_id: str = "paywall_v1"
    state_write_max_attempts: int = Field(3, ge=1)
    decision_latency_budget_ms: int = Field(150, gt=0)

    model_config = {"frozen": True}

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineConfig:
        return cls(**{name: getattr(settings, name) for name in cls.model_fields})

    @property
    def offer_lifetime(self) -> timedelta:
        return timedelta(hours=self.offer_lifetime_hours)

    @property
    def offer_cooldown(self) -> timedelta:
        return timedelta(days=self.offer_cooldown_days)

    @property
    def paywall_repeat_cooldown(self) -> timedelta:
        return timedelta(hours=self.paywall_repeat_cooldown_hours)

    @property
    def decision_latency_budget(self) -> float:
        """Budget in seconds."""
        return self.decision_latency_budget_ms / 1000.0
