"""
Tests for FraudDetectionEngine: session lifecycle, analyzer wiring,
persistence side effects and failure isolation.
"""

import pytest

from craftlocal_fraud.config import DetectionThresholds, Settings
from craftlocal_fraud.domain.fingerprint import fingerprint_from_dict
from craftlocal_fraud.domain.models import Severity, TransactionRequest
from craftlocal_fraud.engine import FALLBACK_DESCRIPTION, FraudDetectionEngine
from craftlocal_fraud.repositories import (
    DeviceRepository,
    RulesRepository,
    SessionRepository,
    SignalRepository,
    TrustScoreRepository,
)


DESKTOP = {
    "userAgent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/124.0",
    "screen": {"width": 1920, "height": 1200, "colorDepth": 24},
    "timezone": "America/Denver",
    "language": "en-US",
    "platform": "Linux x86_64",
    "cookieEnabled": True,
    "doNotTrack": None,
    "hardwareConcurrency": 16,
}


def _request(user_id="buyer-1", amount=60.0, seller_id="seller-x"):
    return TransactionRequest(amount=amount, user_id=user_id, listing_id="listing-1", seller_id=seller_id)


@pytest.fixture
def engine(conn, clock):
    eng = FraudDetectionEngine(conn, settings=Settings(), clock=clock)
    yield eng
    eng.cleanup()


def _velocity_history(add_order, buyer_id="buyer-1"):
    for i in range(5):
        add_order(buyer_id, 50.0, seller_id=f"seller-{i}", minutes_ago=5 + i)


# ============================================================
# Session lifecycle
# ============================================================

class TestSession:
    def test_initialize_with_user_persists_session(self, engine, conn, clock):
        fp = fingerprint_from_dict(DESKTOP)
        session_id = engine.initialize_session("buyer-1", fp, ip_address="203.0.113.7")

        stored = SessionRepository(conn).get(session_id)
        assert stored["user_id"] == "buyer-1"
        assert stored["ip_address"] == "203.0.113.7"
        assert stored["user_agent"] == fp.user_agent
        assert engine.tracker is not None and engine.tracker.active

    def test_anonymous_session_is_stored_on_first_analysis(self, engine, conn):
        session_id = engine.initialize_session()
        assert SessionRepository(conn).get(session_id) is None

        engine.analyze_transaction(_request())
        assert SessionRepository(conn).get(session_id)["user_id"] == "buyer-1"

    def test_cleanup_closes_session_with_summary(self, engine, conn, clock):
        session_id = engine.initialize_session("buyer-1")
        engine.tracker.record_click(5, 5, engine.tracker.start_ms + 100)
        clock.advance(seconds=30)

        engine.cleanup()

        stored = SessionRepository(conn).get(session_id)
        assert stored["session_end"] is not None
        assert stored["behavioral_data"]["clicks"] == 1
        assert stored["behavioral_data"]["page_view_duration"] == 30000.0
        assert engine.session_id is None
        assert engine.tracker is None

    def test_cleanup_without_session_is_noop(self, engine):
        engine.cleanup()
        engine.cleanup()

    def test_next_buyer_gets_own_session(self, engine, conn):
        first = engine.analyze_transaction(_request(user_id="alice", amount=700.0))
        alice_session = engine.session_id
        alice_risk = SessionRepository(conn).get(alice_session)["risk_score"]

        second = engine.analyze_transaction(_request(user_id="bob", amount=60.0))

        assert {s.session_id for s in first} == {alice_session}
        assert engine.session_id != alice_session
        sessions = SessionRepository(conn)
        assert sessions.get(engine.session_id)["user_id"] == "bob"
        alice_row = sessions.get(alice_session)
        assert alice_row["user_id"] == "alice"
        assert alice_row["risk_score"] == alice_risk
        assert alice_row["session_end"] is not None
        assert second == []

    def test_next_buyer_does_not_inherit_device(self, engine, conn):
        engine.initialize_session("alice", fingerprint_from_dict(DESKTOP), track_behavior=False)
        engine.analyze_transaction(_request(user_id="alice"))

        engine.analyze_transaction(_request(user_id="bob"))
        assert engine.fingerprint is None
        assert DeviceRepository(conn).list_for_user("bob") == []

    def test_reinitialize_stops_previous_tracker(self, engine):
        engine.initialize_session("buyer-1")
        first = engine.tracker
        engine.initialize_session("buyer-1")
        assert not first.active
        assert engine.tracker.active


# ============================================================
# Analysis
# ============================================================

class TestAnalyzeTransaction:
    def test_clean_checkout(self, engine):
        assert engine.analyze_transaction(_request()) == []

    def test_lazy_session_has_no_behavioral_signals(self, engine):
        signals = engine.analyze_transaction(_request())
        assert not [s for s in signals if s.code.startswith("behavioral")]
        assert engine.tracker is None

    def test_velocity_signal_persisted_and_counted(self, engine, conn, add_order):
        _velocity_history(add_order)

        signals = engine.analyze_transaction(_request(), order_id=None)

        assert [s.code for s in signals] == ["velocity_freq"]
        signal = signals[0]
        assert signal.user_id == "buyer-1"
        assert signal.session_id == engine.session_id
        assert SignalRepository(conn).get(signal.id).code == "velocity_freq"
        assert TrustScoreRepository(conn).get("buyer-1").fraud_signals_count == 1
        assert SessionRepository(conn).get(engine.session_id)["risk_score"] == 72

    def test_bot_session(self, engine, clock):
        engine.initialize_session("buyer-1")
        start = engine.tracker.start_ms
        for i in range(40):
            engine.tracker.record_click(100, 100, start + i * 25)
        clock.advance(seconds=2)

        codes = {s.code for s in engine.analyze_transaction(_request())}
        assert {"behavioral_speed", "behavioral_mouse", "behavioral_duration"} <= codes

    def test_known_device_is_not_new(self, engine, conn):
        fp = fingerprint_from_dict(DESKTOP)
        engine.initialize_session("buyer-1", fp, track_behavior=False)
        assert engine.analyze_transaction(_request()) == []
        assert len(DeviceRepository(conn).list_for_user("buyer-1")) == 1

        engine.initialize_session("buyer-1", fp, track_behavior=False)
        assert engine.analyze_transaction(_request()) == []

    def test_new_device(self, engine):
        engine.initialize_session("buyer-1", fingerprint_from_dict(DESKTOP), track_behavior=False)
        engine.analyze_transaction(_request())

        other = fingerprint_from_dict({**DESKTOP, "userAgent": "Mozilla/5.0 (iPhone) Safari/604.1"})
        engine.initialize_session("buyer-1", other, track_behavior=False)
        signals = engine.analyze_transaction(_request())

        assert [s.code for s in signals] == ["device_new"]
        assert signals[0].severity == Severity.MEDIUM

    def test_disabled_rule_type_is_skipped(self, engine, conn, add_order):
        _velocity_history(add_order)
        RulesRepository(conn).set_active("High Transaction Velocity", False)

        assert engine.analyze_transaction(_request()) == []

    def test_rule_thresholds_override_settings(self, conn, clock, add_order):
        settings = Settings(thresholds=DetectionThresholds(hourly_count_limit=50))
        engine = FraudDetectionEngine(conn, settings=settings, clock=clock)
        _velocity_history(add_order)

        # the rules table still says 5 per hour
        assert [s.code for s in engine.analyze_transaction(_request())] == ["velocity_freq"]

    def test_failing_analyzer_does_not_stop_others(self, engine, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("velocity backend down")

        monkeypatch.setattr("craftlocal_fraud.engine.analyze_velocity", boom)

        signals = engine.analyze_transaction(_request(amount=700.0))
        assert {s.code for s in signals} == {"pattern_round", "amount_first"}

    def test_whole_analysis_failure_yields_fallback_signal(self, engine, monkeypatch):
        def broken():
            raise RuntimeError("rules unavailable")

        monkeypatch.setattr(engine, "active_configuration", broken)

        signals = engine.analyze_transaction(_request())
        assert len(signals) == 1
        fallback = signals[0]
        assert fallback.code == "analysis_error"
        assert fallback.severity == Severity.MEDIUM
        assert fallback.confidence == 50
        assert fallback.description == FALLBACK_DESCRIPTION

    def test_signal_logging_failure_still_returns_signals(self, engine, monkeypatch, add_order):
        _velocity_history(add_order)

        def fail(signals):
            raise RuntimeError("disk full")

        monkeypatch.setattr(engine.signals_repo, "insert_many", fail)
        assert [s.code for s in engine.analyze_transaction(_request())] == ["velocity_freq"]

    def test_risk_score(self, engine, add_order):
        _velocity_history(add_order)
        signals = engine.analyze_transaction(_request())
        assert engine.calculate_risk_score(signals) == 72
