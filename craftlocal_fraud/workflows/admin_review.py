"""
Admin review workflow: signal review decisions and dashboard metrics.
"""
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..analysis.risk import trust_distribution
from ..config import (
    DASHBOARD_RECENT_SIGNALS_LIMIT,
    DEFAULT_TIME_RANGE,
    TIME_RANGES_HOURS,
)
from ..db import log_audit_event
from ..domain.models import FraudSignal, ReviewDecision, to_iso, utc_now
from ..domain.validation import require, validate_identifier
from ..repositories import (
    AssessmentRepository,
    NotFoundError,
    ReviewRepository,
    RulesRepository,
    SignalRepository,
    TrustScoreRepository,
)
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class AdminReviewWorkflow:
    """Fraud team operations on the signal queue."""

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], datetime] = utc_now):
        self.conn = conn
        self.clock = clock
        self.signals_repo = SignalRepository(conn)
        self.reviews_repo = ReviewRepository(conn)
        self.trust_repo = TrustScoreRepository(conn)
        self.assessments_repo = AssessmentRepository(conn)
        self.rules_repo = RulesRepository(conn)

    def review_signal(
        self,
        signal_id: str,
        reviewer_id: str,
        approve: bool,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> str:
        """
        Record an approve/reject decision on a signal.

        approve=True marks the signal a false positive; either way it no longer
        requires action.

        Returns:
            Review id

        Raises:
            NotFoundError: unknown signal
        """
        return self.record_decision(
            signal_id,
            reviewer_id,
            ReviewDecision.APPROVED if approve else ReviewDecision.REJECTED,
            reason=reason,
            notes=notes,
        )

    def record_decision(
        self,
        signal_id: str,
        reviewer_id: str,
        decision: ReviewDecision,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> str:
        require(validate_identifier(reviewer_id, "Reviewer"))
        signal = self.signals_repo.get(signal_id)
        if signal is None:
            raise NotFoundError(f"Signal {signal_id} not found")

        review_id = self.reviews_repo.record_review(
            signal, reviewer_id, decision, to_iso(self.clock()), reason=reason, notes=notes,
        )
        log_audit_event(
            self.conn, "SIGNAL_REVIEWED",
            details=f"signal={signal_id} decision={decision.value}",
            user_id=signal.user_id,
            actor=reviewer_id,
        )
        logger.info("Signal %s reviewed by %s: %s", signal_id, reviewer_id, decision.value)
        return review_id

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def _since(self, time_range: str) -> str:
        if time_range not in TIME_RANGES_HOURS:
            raise ValueError(
                f"Unknown time range '{time_range}'. Expected one of: {', '.join(TIME_RANGES_HOURS)}"
            )
        return to_iso(self.clock() - timedelta(hours=TIME_RANGES_HOURS[time_range]))

    def dashboard_metrics(self, time_range: str = DEFAULT_TIME_RANGE) -> Dict[str, Any]:
        """
        Aggregates for the fraud dashboard over 24h / 7d / 30d.

        false_positive_rate is false positives / reviewed signals (0.0 with no reviews).
        """
        since = self._since(time_range)
        severity = self.signals_repo.severity_counts_since(since)
        reviews = self.signals_repo.review_counts_since(since)
        assessments = self.assessments_repo.summary_since(since)

        reviewed = reviews["reviewed"]
        false_positive_rate = reviews["false_positives"] / reviewed if reviewed else 0.0

        return {
            "time_range": time_range,
            "total_signals": sum(severity.values()),
            "signals_by_severity": severity,
            "pending_reviews": reviews["pending"],
            "reviewed_signals": reviewed,
            "false_positive_rate": round(false_positive_rate, 4),
            "total_assessments": assessments["total"],
            "average_risk_score": round(assessments["average_risk_score"], 1),
            "blocked_transactions": assessments["blocked"],
            "reviewed_transactions": assessments["reviewed"],
        }

    def recent_signals(self, limit: int = DASHBOARD_RECENT_SIGNALS_LIMIT) -> List[FraudSignal]:
        return self.signals_repo.list_recent(limit)

    def trust_distribution(self) -> List[Dict[str, int]]:
        return trust_distribution(self.trust_repo.all_scores())

    def set_rule_active(self, rule_name: str, active: bool, actor: str = "admin") -> None:
        """
        Raises:
            NotFoundError: unknown rule
        """
        self.rules_repo.set_active(rule_name, active)
        log_audit_event(
            self.conn, "RULE_TOGGLED",
            details=f"rule={rule_name} active={active}",
            actor=actor,
        )
        logger.info("Rule '%s' %s by %s", rule_name, "enabled" if active else "disabled", actor)
