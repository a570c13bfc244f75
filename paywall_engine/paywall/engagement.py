"""
Session engagement: action count + observed duration -> low / medium / high.
Pure functions over UserSession values; sessions live on the user record, keyed by id.
"""
from __future__ import annotations

from datetime import datetime
from typing import Mapping

from paywall_engine.paywall.config import EngineConfig
from paywall_engine.paywall.models import EngagementLevel, UserSession


class EngagementScorer:
    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    def start(self, user_id: str, session_id: str, started_at: datetime) -> UserSession:
        return UserSession(
            user_id=user_id,
            session_id=session_id,
            session_start_time=started_at,
            action_count=0,
            last_action_at=started_at,
        )

    def record(self, session: UserSession, action_timestamp: datetime) -> UserSession:
        """One more action; a late-arriving timestamp never shortens the session."""
        last_action_at = max(session.last_action_at, action_timestamp)
        return session.model_copy(
            update={
                "action_count": session.action_count + 1,
                "last_action_at": last_action_at,
            }
        )

    def remember(self, sessions: Mapping[str, UserSession], session: UserSession) -> dict[str, UserSession]:
        """
        Store session under its id, then keep only the session_history_limit most
        recently active ones. The session just stored is never evicted.
        """
        updated = dict(sessions)
        updated[session.session_id] = session
        overflow = len(updated) - self.config.session_history_limit
        if overflow > 0:
            others = sorted(
                (s for s in updated.values() if s.session_id != session.session_id),
                key=lambda s: s.last_action_at,
            )
            for stale in others[:overflow]:
                del updated[stale.session_id]
        return updated

    def level(self, session: UserSession | None) -> EngagementLevel:
        if session is None:
            return EngagementLevel.LOW
        return self.classify(session.duration_seconds, session.action_count)

    def classify(self, duration_seconds: float, action_count: int) -> EngagementLevel:
        cfg = self.config
        if duration_seconds >= cfg.engagement_high_duration_sec and action_count >= cfg.engagement_high_actions:
            return EngagementLevel.HIGH
        if duration_seconds >= cfg.engagement_medium_duration_sec and action_count >= cfg.engagement_medium_actions:
            return EngagementLevel.MEDIUM
        return EngagementLevel.LOW
