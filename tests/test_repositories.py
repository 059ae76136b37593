"""
Repository layer tests: CRUD, constraint → exception mapping, query windows.
"""

from datetime import timedelta

import pytest

from craftlocal_fraud.analysis.signals import make_signal
from craftlocal_fraud.domain.fingerprint import fingerprint_from_dict
from craftlocal_fraud.domain.models import (
    Order,
    OrderStatus,
    ReviewDecision,
    Severity,
    SignalType,
    VerificationLevel,
    to_iso,
)
from craftlocal_fraud.repositories import (
    AssessmentRepository,
    BusinessRuleError,
    DeviceRepository,
    DuplicateKeyError,
    ForeignKeyError,
    NotFoundError,
    OrdersRepository,
    ReviewRepository,
    RulesRepository,
    SessionRepository,
    SignalRepository,
    TrustScoreRepository,
)


FP_PAYLOAD = {
    "userAgent": "Mozilla/5.0 (X11; Linux x86_64)",
    "screen": {"width": 1920, "height": 1080, "colorDepth": 24},
    "timezone": "America/Chicago",
    "language": "en-US",
    "platform": "Linux x86_64",
    "cookieEnabled": True,
    "doNotTrack": None,
    "hardwareConcurrency": 8,
}


def _signal(clock, code="velocity_freq", severity=Severity.HIGH, user_id="buyer-1", **kwargs):
    signal = make_signal(code, SignalType.VELOCITY, severity, "test signal", 80, clock(), **kwargs)
    signal.user_id = user_id
    return signal


# ============================================================
# Orders
# ============================================================

class TestOrdersRepository:
    def test_create_and_get(self, conn, clock):
        repo = OrdersRepository(conn)
        order_id = repo.create(Order(id="o-1", buyer_id="b", seller_id="s", total_amount=25.0,
                                     created_at=to_iso(clock())))
        order = repo.get(order_id)
        assert order.buyer_id == "b"
        assert order.status == OrderStatus.PENDING
        assert order.created_at == to_iso(clock())

    def test_generated_id_and_timestamp(self, conn):
        repo = OrdersRepository(conn)
        order_id = repo.create(Order(id="", buyer_id="b", seller_id="s", total_amount=1.0))
        assert order_id
        assert repo.get(order_id).created_at.endswith("+00:00")

    def test_duplicate_id_raises(self, conn):
        repo = OrdersRepository(conn)
        repo.create(Order(id="dup", buyer_id="b", seller_id="s", total_amount=1.0))
        with pytest.raises(DuplicateKeyError):
            repo.create(Order(id="dup", buyer_id="b", seller_id="s", total_amount=2.0))

    def test_negative_amount_violates_check(self, conn):
        with pytest.raises(BusinessRuleError):
            OrdersRepository(conn).create(Order(id="neg", buyer_id="b", seller_id="s", total_amount=-5.0))

    def test_windows_are_inclusive_and_newest_first(self, conn, clock, add_order):
        repo = OrdersRepository(conn)
        add_order("b", 10.0, minutes_ago=5)
        add_order("b", 20.0, minutes_ago=60)
        add_order("b", 30.0, minutes_ago=120)
        add_order("other", 99.0, minutes_ago=5)

        since = to_iso(clock() - timedelta(hours=1))
        assert [o.total_amount for o in repo.list_for_buyer_since("b", since)] == [10.0, 20.0]
        # strict comparison for the 24h flag count
        assert repo.count_for_buyer_since("b", since) == 1
        assert [o.total_amount for o in repo.recent_for_buyer("b", 2)] == [10.0, 20.0]

    def test_update_status_returns_previous(self, conn, clock, add_order):
        repo = OrdersRepository(conn)
        order_id = add_order("b", 10.0)
        previous = repo.update_status(order_id, OrderStatus.PAID, to_iso(clock()))
        assert previous == OrderStatus.PENDING
        assert repo.get(order_id).status == OrderStatus.PAID

    def test_update_status_unknown_order(self, conn, clock):
        with pytest.raises(NotFoundError):
            OrdersRepository(conn).update_status("missing", OrderStatus.PAID, to_iso(clock()))


# ============================================================
# Devices / sessions
# ============================================================

class TestDeviceRepository:
    def test_register_is_idempotent_per_fingerprint(self, conn, clock):
        repo = DeviceRepository(conn)
        fp = fingerprint_from_dict(FP_PAYLOAD)

        first = repo.register("u", fp, to_iso(clock()))
        clock.advance(hours=1)
        second = repo.register("u", fp, to_iso(clock()))

        assert first == second
        devices = repo.list_for_user("u")
        assert len(devices) == 1
        assert devices[0]["last_seen"] == to_iso(clock())
        assert devices[0]["first_seen"] != devices[0]["last_seen"]

    def test_distinct_fingerprints_are_distinct_devices(self, conn, clock):
        repo = DeviceRepository(conn)
        repo.register("u", fingerprint_from_dict(FP_PAYLOAD), to_iso(clock()))
        repo.register("u", fingerprint_from_dict({**FP_PAYLOAD, "language": "fr-FR"}), to_iso(clock()))
        assert len(repo.list_for_user("u")) == 2
        assert repo.list_for_user("someone-else") == []


class TestSessionRepository:
    def test_lifecycle(self, conn, clock):
        repo = SessionRepository(conn)
        fp = fingerprint_from_dict(FP_PAYLOAD)
        repo.start("sess-1", "u", to_iso(clock()), fingerprint=fp, user_agent=fp.user_agent)
        repo.update_risk_score("sess-1", 42)
        repo.end("sess-1", to_iso(clock()), {"clicks": 3})

        session = repo.get("sess-1")
        assert session["risk_score"] == 42
        assert session["behavioral_data"] == {"clicks": 3}
        assert session["device_fingerprint"]["user_agent"] == fp.user_agent

    def test_risk_score_out_of_range(self, conn, clock):
        repo = SessionRepository(conn)
        repo.start("sess-2", "u", to_iso(clock()))
        with pytest.raises(BusinessRuleError):
            repo.update_risk_score("sess-2", 101)


# ============================================================
# Signals / reviews
# ============================================================

class TestSignalRepository:
    def test_insert_and_read_back(self, conn, clock):
        repo = SignalRepository(conn)
        signal = _signal(clock, metadata={"transaction_count": 5}, action_required=True)
        assert repo.insert_many([signal]) == 1

        stored = repo.get(signal.id)
        assert stored.code == "velocity_freq"
        assert stored.metadata == {"transaction_count": 5}
        assert stored.action_required is True
        assert stored.false_positive is None

    def test_insert_nothing(self, conn):
        assert SignalRepository(conn).insert_many([]) == 0

    def test_unknown_session_is_foreign_key_error(self, conn, clock):
        signal = _signal(clock)
        signal.session_id = "no-such-session"
        with pytest.raises(ForeignKeyError):
            SignalRepository(conn).insert_many([signal])

    def test_batch_is_atomic(self, conn, clock):
        good = _signal(clock)
        bad = _signal(clock)
        bad.order_id = "no-such-order"
        with pytest.raises(ForeignKeyError):
            SignalRepository(conn).insert_many([good, bad])
        assert SignalRepository(conn).get(good.id) is None

    def test_recent_for_user_window_and_limit(self, conn, clock):
        repo = SignalRepository(conn)
        old = _signal(clock)
        clock.advance(days=8)
        fresh = [_signal(clock) for _ in range(3)]
        repo.insert_many([old] + fresh)

        since = to_iso(clock() - timedelta(days=7))
        assert {s.id for s in repo.list_for_user_since("buyer-1", since, 10)} == {s.id for s in fresh}
        assert len(repo.list_for_user_since("buyer-1", since, 2)) == 2

    def test_high_risk_count(self, conn, clock):
        repo = SignalRepository(conn)
        repo.insert_many([
            _signal(clock, severity=Severity.HIGH),
            _signal(clock, severity=Severity.CRITICAL),
            _signal(clock, severity=Severity.MEDIUM),
        ])
        since = to_iso(clock() - timedelta(days=7))
        assert repo.count_high_risk_since("buyer-1", since) == 2
        assert repo.severity_counts_since(since) == {"low": 0, "medium": 1, "high": 1, "critical": 1}

    def test_mark_false_positive(self, conn, clock):
        repo = SignalRepository(conn)
        signal = _signal(clock)
        repo.insert_many([signal])
        repo.mark_false_positive(signal.id, to_iso(clock()))
        assert repo.get(signal.id).false_positive is True

        with pytest.raises(NotFoundError):
            repo.mark_false_positive("missing", to_iso(clock()))


class TestReviewRepository:
    @pytest.mark.parametrize("decision, expected_fp", [
        (ReviewDecision.APPROVED, True),
        (ReviewDecision.REJECTED, False),
    ])
    def test_final_decisions_close_signal(self, conn, clock, decision, expected_fp):
        signals = SignalRepository(conn)
        signal = _signal(clock, action_required=True)
        signals.insert_many([signal])

        ReviewRepository(conn).record_review(signal, "admin-1", decision, to_iso(clock()), reason="checked")

        stored = signals.get(signal.id)
        assert stored.action_required is False
        assert stored.false_positive is expected_fp
        reviews = ReviewRepository(conn).list_for_signal(signal.id)
        assert reviews[0]["decision"] == decision.value
        assert reviews[0]["reviewer_id"] == "admin-1"

    def test_escalation_keeps_signal_open(self, conn, clock):
        signals = SignalRepository(conn)
        signal = _signal(clock, action_required=True)
        signals.insert_many([signal])

        ReviewRepository(conn).record_review(signal, "admin-1", ReviewDecision.ESCALATED, to_iso(clock()))

        stored = signals.get(signal.id)
        assert stored.action_required is True
        assert stored.false_positive is None


# ============================================================
# Trust / rules / assessments
# ============================================================

class TestTrustScoreRepository:
    def test_ensure_creates_default(self, conn, clock):
        repo = TrustScoreRepository(conn)
        assert repo.get("u") is None
        record = repo.ensure("u", to_iso(clock()))
        assert record.trust_score == 50
        assert record.verification_level == VerificationLevel.NONE
        assert repo.ensure("u", to_iso(clock())).created_at == record.created_at

    def test_increment_counters(self, conn, clock):
        repo = TrustScoreRepository(conn)
        repo.increment("u", "successful_transactions", to_iso(clock()))
        repo.increment("u", "fraud_signals_count", to_iso(clock()), amount=3)
        record = repo.get("u")
        assert record.successful_transactions == 1
        assert record.fraud_signals_count == 3
        assert record.last_fraud_signal == to_iso(clock())

    def test_increment_rejects_unknown_column(self, conn, clock):
        with pytest.raises(ValueError):
            TrustScoreRepository(conn).increment("u", "trust_score; DROP TABLE orders", to_iso(clock()))

    def test_score_out_of_range(self, conn, clock):
        repo = TrustScoreRepository(conn)
        repo.ensure("u", to_iso(clock()))
        with pytest.raises(BusinessRuleError):
            repo.save_score("u", 150, 0, to_iso(clock()))

    def test_ensure_reports_missing_record(self, conn, clock, monkeypatch):
        repo = TrustScoreRepository(conn)
        monkeypatch.setattr(repo, "get", lambda user_id: None)
        with pytest.raises(NotFoundError, match="could not be created"):
            repo.ensure("u", to_iso(clock()))


class TestRulesRepository:
    def test_list_parses_threshold_config(self, conn):
        rules = {r["rule_name"]: r for r in RulesRepository(conn).list()}
        velocity = rules["High Transaction Velocity"]
        assert velocity["is_active"] is True
        assert velocity["threshold_config"] == {"max_transactions_per_hour": 5, "max_amount_per_hour": 1000}

    def test_disable_rule_disables_type(self, conn):
        repo = RulesRepository(conn)
        assert repo.inactive_rule_types() == set()
        repo.set_active("Round Number Transactions", False)
        assert repo.inactive_rule_types() == {"pattern"}
        assert len(repo.list(active_only=True)) == 4

    def test_unknown_rule(self, conn):
        with pytest.raises(NotFoundError):
            RulesRepository(conn).set_active("No Such Rule", True)


def test_assessment_summary(conn, clock):
    repo = AssessmentRepository(conn)
    now = to_iso(clock())
    repo.record("u", 10.0, 0, "approve", 0, now)
    repo.record("u", 900.0, 60, "review", 2, now)
    repo.record("u", 900.0, 90, "block", 3, now)

    summary = repo.summary_since(to_iso(clock() - timedelta(days=1)))
    assert summary == {"total": 3, "average_risk_score": 50.0, "blocked": 1, "reviewed": 1}
