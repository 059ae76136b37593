"""
Tests for domain objects: behavior tracking, fingerprints, validation, models.
"""

from datetime import datetime, timezone

import pytest

from craftlocal_fraud.domain.behavior import BehaviorTracker
from craftlocal_fraud.domain.fingerprint import (
    canonical_json,
    fingerprint_from_dict,
    fingerprint_hash,
    fingerprint_to_dict,
    is_headless,
)
from craftlocal_fraud.domain.models import (
    FraudSignal,
    Severity,
    SignalType,
    TransactionRequest,
    parse_timestamp,
    to_iso,
)
from craftlocal_fraud.domain.validation import require, validate_amount, validate_identifier


# ============================================================
# BehaviorTracker
# ============================================================

class TestBehaviorTracker:
    def test_records_all_event_kinds(self):
        tracker = BehaviorTracker(start_ms=0.0)
        tracker.record_mouse_move(10, 20, 100.0)
        tracker.record_click(10, 20, 200.0, element="button")
        tracker.record_scroll(300, 300.0)
        tracker.record_keydown("a", 400.0)

        pattern = tracker.snapshot(now_ms=2000.0)
        assert len(pattern.mouse_movements) == 1
        assert pattern.click_pattern[0].element == "button"
        assert pattern.scroll_pattern[0].scroll_y == 300
        assert tracker.interaction_count == 4
        assert pattern.interaction_speed == pytest.approx(2.0)
        assert pattern.page_view_duration == 2000.0

    def test_keystrokes_are_masked(self):
        tracker = BehaviorTracker(start_ms=0.0)
        for key, ts in (("p", 100.0), ("4", 250.0), ("Enter", 400.0)):
            tracker.record_keydown(key, ts)

        pattern = tracker.snapshot(1000.0)
        assert [k.key for k in pattern.keystrokes] == ["char", "char", "Enter"]
        assert pattern.typing_cadence == [150.0, 150.0]

    def test_snapshot_is_a_copy(self):
        tracker = BehaviorTracker(start_ms=0.0)
        tracker.record_click(1, 1, 10.0)
        snapshot = tracker.snapshot(100.0)
        tracker.record_click(2, 2, 20.0)
        assert len(snapshot.click_pattern) == 1

    def test_no_elapsed_time_no_rates(self):
        tracker = BehaviorTracker(start_ms=5000.0)
        tracker.record_click(1, 1, 5000.0)
        pattern = tracker.snapshot(5000.0)
        assert pattern.interaction_speed == 0.0
        assert pattern.page_view_duration == 0.0

    def test_stop_ignores_further_events(self):
        tracker = BehaviorTracker(start_ms=0.0)
        tracker.record_mouse_move(1, 1, 10.0)
        tracker.stop()
        tracker.record_mouse_move(2, 2, 20.0)
        tracker.record_keydown("x", 30.0)

        assert not tracker.active
        assert tracker.interaction_count == 1
        assert tracker.snapshot(100.0).keystrokes == []

    def test_summary_has_no_raw_coordinates(self):
        tracker = BehaviorTracker(start_ms=0.0)
        tracker.record_mouse_move(123, 456, 10.0)
        summary = tracker.snapshot(1000.0).summary()
        assert summary["mouse_movements"] == 1
        assert 123 not in summary.values()


# ============================================================
# Fingerprints
# ============================================================

CAMEL = {
    "userAgent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64)",
    "screen": {"width": 2560, "height": 1440, "colorDepth": 24},
    "timezone": "Europe/Rome",
    "language": "it-IT",
    "platform": "Win32",
    "cookieEnabled": True,
    "doNotTrack": None,
    "hardwareConcurrency": 12,
    "deviceMemory": 8,
    "connection": {"effectiveType": "4g", "downlink": 10.0, "rtt": 50},
}


class TestFingerprint:
    def test_parse_camel_case(self):
        fp = fingerprint_from_dict(CAMEL)
        assert fp.screen.color_depth == 24
        assert fp.hardware_concurrency == 12
        assert fp.device_memory == 8.0
        assert fp.connection.effective_type == "4g"

    def test_snake_case_roundtrip_keeps_identity(self):
        fp = fingerprint_from_dict(CAMEL)
        again = fingerprint_from_dict(fingerprint_to_dict(fp))
        assert canonical_json(again) == canonical_json(fp)
        assert fingerprint_hash(again) == fingerprint_hash(fp)

    def test_missing_user_agent(self):
        payload = dict(CAMEL)
        del payload["userAgent"]
        with pytest.raises(ValueError, match="userAgent"):
            fingerprint_from_dict(payload)

    def test_canonical_json_is_compact_and_sorted(self):
        text = canonical_json(fingerprint_from_dict(CAMEL))
        assert " " not in text.replace("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "")
        assert text.index('"canvas"') < text.index('"user_agent"')

    def test_any_change_is_a_different_device(self):
        a = fingerprint_from_dict(CAMEL)
        b = fingerprint_from_dict({**CAMEL, "hardwareConcurrency": 4})
        assert fingerprint_hash(a) != fingerprint_hash(b)

    def test_headless_markers(self):
        assert not is_headless(fingerprint_from_dict(CAMEL))
        assert is_headless(fingerprint_from_dict({**CAMEL, "webgl": "disabled"}))
        assert is_headless(fingerprint_from_dict({**CAMEL, "canvas": "blocked"}))


# ============================================================
# Validation
# ============================================================

class TestValidation:
    @pytest.mark.parametrize("amount, ok", [
        (0, True),
        (19.99, True),
        (-1, False),
        ("12", False),
        (True, False),
        (float("nan"), False),
    ])
    def test_amount(self, amount, ok):
        assert validate_amount(amount)[0] is ok

    def test_amount_maximum(self):
        assert validate_amount(100.0, max_val=50.0) == (False, "Amount cannot exceed 50.0")

    @pytest.mark.parametrize("value, message", [
        ("", "User cannot be empty"),
        (None, "User cannot be empty"),
        ("a b", "User cannot contain whitespace"),
        ("x" * 65, "User cannot exceed 64 characters"),
    ])
    def test_identifier_errors(self, value, message):
        assert validate_identifier(value, "User") == (False, message)

    def test_require(self):
        require(validate_identifier("user-42"))
        with pytest.raises(ValueError, match="cannot be empty"):
            require(validate_identifier("  "))


# ============================================================
# Models
# ============================================================

class TestModels:
    def test_signal_confidence_bounds(self):
        with pytest.raises(ValueError):
            FraudSignal(id="x", code="x", type=SignalType.DEVICE, severity=Severity.LOW,
                        description="x", confidence=101)

    def test_request_requires_user(self):
        with pytest.raises(ValueError):
            TransactionRequest(amount=10.0, user_id=" ", listing_id="l", seller_id="s")
        with pytest.raises(ValueError):
            TransactionRequest(amount=-1.0, user_id="u", listing_id="l", seller_id="s")

    def test_severity_weights(self):
        assert [s.weight for s in Severity] == [1, 2, 3, 4]

    def test_iso_timestamps_sort_as_text(self):
        early = to_iso(datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc))
        late = to_iso(datetime(2026, 1, 1, 9, 0, 0, 1, tzinfo=timezone.utc))
        assert early < late
        assert early == "2026-01-01T09:00:00.000000+00:00"

    def test_parse_timestamp_assumes_utc(self):
        assert parse_timestamp("2026-01-01 09:00:00") == datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)
        assert parse_timestamp(to_iso(datetime(2026, 1, 1, 9, 0))).tzinfo is not None
