"""Тесты OfferSelector: один активный оффер и cooldown."""
from datetime import datetime, timedelta, timezone

import pytest

from paywall_engine.paywall.config import EngineConfig
from paywall_engine.paywall.models import TrialState, TrialStatus, UserRecord
from paywall_engine.paywall.offers import OfferSelector
from paywall_engine.services.state import InMemoryUserStateStore

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _seed(store, user_id="u1", **kwargs):
    record = UserRecord(user_id=user_id, session_count=kwargs.pop("session_count", 3), **kwargs)
    assert store.compare_and_set(record, 0)
    return store.load(user_id)


@pytest.fixture
def store():
    return InMemoryUserStateStore()


@pytest.fixture
def selector(store):
    return OfferSelector(store, EngineConfig())


class TestSelect:
    def test_offer_lifecycle(self, store, selector):
        _seed(store)
        first = selector.select("u1", T0)
        assert first is not None
        assert first.discount_percent == 30
        assert first.expires_at == T0 + timedelta(hours=48)
        assert first.cooldown_until == T0 + timedelta(days=7)

        # still active: same offer, not a new one
        assert selector.select("u1", T0 + timedelta(days=1)) == first
        # expired, cooldown running
        assert selector.select("u1", T0 + timedelta(days=2)) is None
        assert selector.select("u1", T0 + timedelta(days=6, hours=23)) is None
        # cooldown over
        second = selector.select("u1", T0 + timedelta(days=8))
        assert second is not None
        assert second.created_at == T0 + timedelta(days=8)
        assert second != first

    def test_offer_is_persisted(self, store, selector):
        _seed(store)
        offer = selector.select("u1", T0)
        record = store.load("u1")
        assert record.current_offer == offer
        assert record.last_offer_at == T0
        assert record.last_offer_cooldown_until == T0 + timedelta(days=7)

    def test_repeated_select_does_not_write(self, store, selector):
        _seed(store)
        selector.select("u1", T0)
        version = store.load("u1").version
        selector.select("u1", T0 + timedelta(hours=1))
        assert store.load("u1").version == version

    def test_not_enough_sessions(self, store, selector):
        _seed(store, session_count=2)
        assert selector.select("u1", T0) is None
        assert store.load("u1").current_offer is None

    def test_unknown_user_gets_nothing(self, selector):
        assert selector.select("nobody", T0) is None

    def test_converted_user_gets_nothing(self, store, selector):
        _seed(store, trial=TrialState(status=TrialStatus.CONVERTED, converted_at=T0))
        assert selector.select("u1", T0) is None

    def test_config_is_respected(self, store):
        cfg = EngineConfig(offer_discount_percent=50, offer_lifetime_hours=1, offer_cooldown_days=1, offer_min_sessions=0)
        selector = OfferSelector(store, cfg)
        offer = selector.select("u1", T0)
        assert offer.discount_percent == 50
        assert offer.expires_at == T0 + timedelta(hours=1)
        assert selector.select("u1", T0 + timedelta(hours=2)) is None
        assert selector.select("u1", T0 + timedelta(days=1)) is not None


class TestApply:
    def test_apply_is_pure(self, selector):
        record = UserRecord(user_id="u1", session_count=5)
        updated, offer = selector.apply(record, T0)
        assert offer is not None
        assert record.current_offer is None
        assert updated.current_offer == offer

    def test_apply_returns_same_record_when_nothing_changes(self, selector):
        record = UserRecord(user_id="u1", session_count=1)
        updated, offer = selector.apply(record, T0)
        assert updated is record
        assert offer is None
