"""
Transaction review workflow: buyer-facing checkout check.

Wraps the engine with the decision layer: risk score, trust-score
escalations and the database-rule flag.  Checkout must never break because
of fraud analysis, so any failure yields the safe default (risk 50, review).
"""
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..analysis.risk import (
    calculate_risk_score,
    recommend,
    security_status,
    should_flag_transaction,
)
from ..config import (
    RECENT_SIGNALS_DAYS,
    RECENT_SIGNALS_LIMIT,
    VELOCITY_DAY_WINDOW,
    Settings,
    load_settings,
)
from ..db import log_audit_event
from ..domain.models import (
    FraudAssessment,
    FraudSignal,
    Recommendation,
    SecurityStatus,
    TransactionRequest,
    to_iso,
    utc_now,
)
from ..engine import FraudDetectionEngine
from ..repositories import (
    AssessmentRepository,
    OrdersRepository,
    RepositoryError,
    SignalRepository,
    TrustScoreRepository,
)
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class TransactionReviewWorkflow:
    """Checkout fraud check for the signed-in buyer."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        engine: Optional[FraudDetectionEngine] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.conn = conn
        self.settings = settings or load_settings()
        self.clock = clock
        self.engine = engine or FraudDetectionEngine(conn, settings=self.settings, clock=clock)

        self.orders_repo = OrdersRepository(conn)
        self.signals_repo = SignalRepository(conn)
        self.trust_repo = TrustScoreRepository(conn)
        self.assessments_repo = AssessmentRepository(conn)

    def safe_default(self) -> FraudAssessment:
        return FraudAssessment(
            risk_score=self.settings.decision.fallback_risk_score,
            signals=[],
            should_block=False,
            should_review=True,
            recommendation=Recommendation.REVIEW,
        )

    def analyze_transaction(
        self,
        user_id: Optional[str],
        amount: float,
        listing_id: str,
        seller_id: str,
        payment_method_id: Optional[str] = None,
        shipping_address: Optional[Dict[str, Any]] = None,
    ) -> FraudAssessment:
        """
        Assess a checkout.

        Raises:
            ValueError: no authenticated user
        """
        if not user_id:
            raise ValueError("User must be authenticated for fraud analysis")

        try:
            request = TransactionRequest(
                amount=amount,
                user_id=user_id,
                listing_id=listing_id,
                seller_id=seller_id,
                payment_method_id=payment_method_id,
                shipping_address=shipping_address,
            )
            trust_score = self.load_trust_score(user_id)

            signals = self.engine.analyze_transaction(request)
            risk_score = calculate_risk_score(signals)
            flagged = self.should_flag(user_id, amount)

            recommendation = recommend(
                signals, risk_score, amount,
                trust_score=trust_score, flagged=flagged, policy=self.settings.decision,
            )
            assessment = FraudAssessment(
                risk_score=risk_score,
                signals=signals,
                should_block=recommendation == Recommendation.BLOCK,
                should_review=recommendation == Recommendation.REVIEW,
                recommendation=recommendation,
            )

            self.assessments_repo.record(
                user_id, amount, risk_score, recommendation.value, len(signals),
                to_iso(self.clock()), seller_id=seller_id, listing_id=listing_id,
            )
            logger.info(
                "Checkout of %s for %.2f: risk %d, %s (%d signals)",
                user_id, amount, risk_score, recommendation.value, len(signals),
            )
            return assessment

        except Exception:
            logger.exception("Fraud analysis failed for user %s", user_id)
            return self.safe_default()

    def should_flag(self, user_id: str, amount: float) -> bool:
        """Database-rule flag: trust, 24h order count, 7d high-risk signals, amount."""
        now = self.clock()
        record = self.trust_repo.get(user_id)
        recent = self.orders_repo.count_for_buyer_since(
            user_id, to_iso(now - timedelta(hours=VELOCITY_DAY_WINDOW))
        )
        high_risk = self.signals_repo.count_high_risk_since(
            user_id, to_iso(now - timedelta(days=RECENT_SIGNALS_DAYS))
        )
        return should_flag_transaction(
            record.trust_score if record else None,
            amount, recent, high_risk,
            policy=self.settings.decision,
        )

    def load_trust_score(self, user_id: str) -> int:
        """Current trust score; creates the initial record (50) when missing."""
        record = self.trust_repo.get(user_id)
        if record is None:
            record = self.trust_repo.ensure(user_id, to_iso(self.clock()))
            logger.info("Created initial trust score for %s", user_id)
        return record.trust_score

    def load_recent_signals(self, user_id: str) -> List[FraudSignal]:
        since = to_iso(self.clock() - timedelta(days=RECENT_SIGNALS_DAYS))
        return self.signals_repo.list_for_user_since(user_id, since, RECENT_SIGNALS_LIMIT)

    def report_false_positive(self, signal_id: str, reported_by: str = "user") -> bool:
        """
        Mark a signal as false positive.

        Returns:
            True if recorded, False otherwise (failure is logged)
        """
        try:
            signal = self.signals_repo.get(signal_id)
            self.signals_repo.mark_false_positive(signal_id, to_iso(self.clock()))
            log_audit_event(
                self.conn, "FALSE_POSITIVE_REPORTED",
                details=f"signal={signal_id}",
                user_id=signal.user_id if signal else None,
                actor=reported_by,
            )
            return True
        except (RepositoryError, sqlite3.Error, RuntimeError):
            logger.exception("Failed to report false positive for signal %s", signal_id)
            return False

    def get_security_status(self, user_id: Optional[str]) -> SecurityStatus:
        """Display status for the user's trust score; unknown when there is no record."""
        if not user_id:
            return security_status(None)
        record = self.trust_repo.get(user_id)
        return security_status(record.trust_score if record else None)
