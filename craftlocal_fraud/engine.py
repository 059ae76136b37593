"""
Fraud detection engine.

Runs the heuristic analyzers for one checkout session:

    initialize_session()  → start behavioral tracking, remember the device
    tracker.record_*()    → client interaction events
    analyze_transaction() → velocity, behavioral, device, pattern, amount
    cleanup()             → stop tracking, close the session row

Analysis is advisory.  A failing analyzer is logged and contributes no
signals; a failure of the analysis as a whole yields a single medium
"temporarily unavailable" signal instead of an exception.
"""
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Set, Tuple

from .analysis import (
    analyze_amount,
    analyze_behavior,
    analyze_device,
    analyze_patterns,
    analyze_velocity,
    calculate_risk_score,
    make_signal,
)
from .config import (
    AMOUNT_HISTORY_LIMIT,
    KNOWN_DEVICES_LIMIT,
    VELOCITY_DAY_WINDOW,
    VELOCITY_HOUR_WINDOW,
    DetectionThresholds,
    Settings,
    load_settings,
)
from .domain.behavior import BehaviorTracker
from .domain.models import (
    BehavioralPattern,
    DeviceFingerprint,
    FraudSignal,
    Severity,
    SignalType,
    TransactionRequest,
    to_iso,
    utc_now,
)
from .repositories import (
    DeviceRepository,
    OrdersRepository,
    RulesRepository,
    SessionRepository,
    SignalRepository,
)
from .utils.logging_config import get_logger
from .workflows.trust_scores import TrustScoreWorkflow

logger = get_logger(__name__)

FALLBACK_DESCRIPTION = "Fraud analysis temporarily unavailable"


def _to_ms(moment: datetime) -> float:
    return moment.timestamp() * 1000.0


class FraudDetectionEngine:
    """Per-session fraud analysis backed by the SQLite store."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.conn = conn
        self.settings = settings or load_settings()
        self.clock = clock

        self.orders_repo = OrdersRepository(conn)
        self.devices_repo = DeviceRepository(conn)
        self.sessions_repo = SessionRepository(conn)
        self.signals_repo = SignalRepository(conn)
        self.rules_repo = RulesRepository(conn)
        self.trust = TrustScoreWorkflow(conn, clock=clock)

        self.session_id: Optional[str] = None
        self.session_user_id: Optional[str] = None
        self.session_start: Optional[datetime] = None
        self.fingerprint: Optional[DeviceFingerprint] = None
        self.tracker: Optional[BehaviorTracker] = None
        self._ip_address: Optional[str] = None

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def initialize_session(
        self,
        user_id: Optional[str] = None,
        fingerprint: Optional[DeviceFingerprint] = None,
        ip_address: Optional[str] = None,
        started_at: Optional[datetime] = None,
        track_behavior: bool = True,
    ) -> str:
        """
        Start a new detection session.

        With a user id the session row is stored immediately; otherwise it is
        stored by the first analyze_transaction() call.  *started_at*
        back-dates the session when replaying recorded client events.

        Returns:
            Session id
        """
        if self.tracker is not None:
            self.tracker.stop()

        self.session_start = started_at or self.clock()
        self.session_id = str(uuid.uuid4())
        self.session_user_id = None
        self.fingerprint = fingerprint
        self.tracker = BehaviorTracker(_to_ms(self.session_start)) if track_behavior else None
        self._ip_address = ip_address

        if user_id:
            self._persist_session(user_id)

        logger.info("Fraud detection session %s started", self.session_id)
        return self.session_id

    def _persist_session(self, user_id: str) -> None:
        self.sessions_repo.start(
            self.session_id,
            user_id,
            to_iso(self.session_start),
            fingerprint=self.fingerprint,
            user_agent=self.fingerprint.user_agent if self.fingerprint else None,
            ip_address=self._ip_address,
        )
        self.session_user_id = user_id

    def behavioral_snapshot(self) -> Optional[BehavioralPattern]:
        if self.tracker is None:
            return None
        return self.tracker.snapshot(_to_ms(self.clock()))

    def cleanup(self) -> None:
        """Stop tracking and close the stored session with its behavioral summary."""
        if self.session_id is None:
            return

        pattern = self.behavioral_snapshot()
        if self.tracker is not None:
            self.tracker.stop()

        if self.session_user_id is not None:
            try:
                self.sessions_repo.end(
                    self.session_id, to_iso(self.clock()), pattern.summary() if pattern else None
                )
            except (sqlite3.Error, RuntimeError):
                logger.exception("Could not close fraud detection session %s", self.session_id)

        logger.info("Fraud detection session %s closed", self.session_id)
        self.tracker = None
        self.session_id = None
        self.session_user_id = None

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def active_configuration(self) -> Tuple[DetectionThresholds, Set[str]]:
        """Thresholds with rule overrides applied, and rule types switched off."""
        rules = self.rules_repo.list()
        thresholds = self.settings.thresholds.with_rule_overrides(rules)
        return thresholds, self.rules_repo.inactive_rule_types()

    def analyze_transaction(self, request: TransactionRequest, order_id: Optional[str] = None) -> List[FraudSignal]:
        """
        Run every active analyzer against *request*.

        Signals are stored (training data + review queue), the current device
        is registered and the session row receives the resulting risk score.
        """
        try:
            if self.session_user_id is not None and self.session_user_id != request.user_id:
                # sessions are per buyer
                logger.info(
                    "Session %s belongs to another user; starting a new one for %s",
                    self.session_id, request.user_id,
                )
                self.cleanup()
                self.initialize_session(request.user_id, track_behavior=False)
            if self.session_id is None:
                self.initialize_session(track_behavior=False)
            if self.session_user_id is None:
                self._persist_session(request.user_id)

            now = self.clock()
            thresholds, disabled = self.active_configuration()
            user_id = request.user_id

            hourly_since = to_iso(now - timedelta(hours=VELOCITY_HOUR_WINDOW))
            daily_since = to_iso(now - timedelta(hours=VELOCITY_DAY_WINDOW))

            analyzers = [
                ("velocity", lambda: analyze_velocity(
                    request.amount,
                    self.orders_repo.list_for_buyer_since(user_id, hourly_since),
                    self.orders_repo.list_for_buyer_since(user_id, daily_since),
                    now, thresholds,
                )),
                ("behavioral", lambda: analyze_behavior(self.behavioral_snapshot(), now, thresholds)),
                ("device", lambda: analyze_device(
                    self.fingerprint,
                    self.devices_repo.list_for_user(user_id, KNOWN_DEVICES_LIMIT) if self.fingerprint else [],
                    now, thresholds,
                )),
                ("pattern", lambda: analyze_patterns(
                    request,
                    self.orders_repo.list_for_buyer_since(user_id, daily_since),
                    now, thresholds,
                )),
                ("amount", lambda: analyze_amount(
                    request.amount,
                    [o.total_amount for o in self.orders_repo.recent_for_buyer(user_id, AMOUNT_HISTORY_LIMIT)],
                    now, thresholds,
                )),
            ]

            signals: List[FraudSignal] = []
            for rule_type, run in analyzers:
                if rule_type in disabled:
                    logger.debug("Skipping %s analysis: rule disabled", rule_type)
                    continue
                signals.extend(self._run_analyzer(rule_type, run))

            for signal in signals:
                signal.user_id = user_id
                signal.session_id = self.session_id
                signal.order_id = order_id

            self._log_signals(user_id, signals)
            self._register_device(user_id, now)
            self._update_session_risk(signals)
            return signals

        except Exception as e:
            logger.exception("Fraud analysis failed for user %s", request.user_id)
            return [make_signal(
                "analysis_error", SignalType.PATTERN, Severity.MEDIUM,
                FALLBACK_DESCRIPTION, 50, self.clock(),
                metadata={"error": str(e) or type(e).__name__},
            )]

    @staticmethod
    def _run_analyzer(name: str, run: Callable[[], List[FraudSignal]]) -> List[FraudSignal]:
        try:
            return run()
        except Exception:
            logger.exception("%s analysis error", name.capitalize())
            return []

    def _log_signals(self, user_id: str, signals: List[FraudSignal]) -> None:
        if not signals:
            return
        try:
            self.signals_repo.insert_many(signals)
            self.trust.record_fraud_signals(user_id, signals)
        except Exception:
            logger.exception("Signal logging error for user %s", user_id)

    def _register_device(self, user_id: str, now: datetime) -> None:
        if self.fingerprint is None:
            return
        try:
            self.devices_repo.register(user_id, self.fingerprint, to_iso(now))
        except Exception:
            logger.exception("Device registration error for user %s", user_id)

    def _update_session_risk(self, signals: List[FraudSignal]) -> None:
        try:
            self.sessions_repo.update_risk_score(self.session_id, calculate_risk_score(signals))
        except Exception:
            logger.exception("Session risk update error for %s", self.session_id)

    def calculate_risk_score(self, signals: List[FraudSignal]) -> int:
        return calculate_risk_score(signals)
