"""
Trust score workflow: progressive trust bookkeeping.

Keeps user_trust_scores in step with order outcomes and emitted fraud signals
and recalculates the score after every change.
"""
import sqlite3
from datetime import datetime
from typing import Callable, Optional, Sequence

from ..analysis.risk import compute_trust_score
from ..domain.models import (
    FAILED_ORDER_STATUSES,
    FraudSignal,
    OrderStatus,
    VerificationLevel,
    to_iso,
    utc_now,
)
from ..repositories import OrdersRepository, TrustScoreRepository
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class TrustScoreWorkflow:
    """Counters + recalculation for user trust scores."""

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], datetime] = utc_now):
        self.conn = conn
        self.clock = clock
        self.trust_repo = TrustScoreRepository(conn)
        self.orders_repo = OrdersRepository(conn)

    def recalculate(self, user_id: str) -> int:
        """
        Recompute and store the trust score of *user_id*.

        A missing record is created first (score 50, age 0).

        Returns:
            New trust score
        """
        now = self.clock()
        now_iso = to_iso(now)
        record = self.trust_repo.ensure(user_id, now_iso)
        score, age = compute_trust_score(record, now)
        self.trust_repo.save_score(user_id, score, age, now_iso)
        if score != record.trust_score:
            logger.info("Trust score of %s: %d -> %d", user_id, record.trust_score, score)
        return score

    def change_order_status(self, order_id: str, new_status: OrderStatus) -> Optional[int]:
        """
        Update an order status and count the outcome for its buyer.

        Entering delivered counts a successful transaction; entering
        cancelled/refunded counts a failed one. Repeating a status counts nothing.

        Returns:
            Recalculated trust score, or None when no counter changed

        Raises:
            NotFoundError: unknown order
        """
        now_iso = to_iso(self.clock())
        previous = self.orders_repo.update_status(order_id, new_status, now_iso)
        order = self.orders_repo.get(order_id)

        if new_status == OrderStatus.DELIVERED and previous != OrderStatus.DELIVERED:
            column = "successful_transactions"
        elif new_status in FAILED_ORDER_STATUSES and previous not in FAILED_ORDER_STATUSES:
            column = "failed_transactions"
        else:
            return None

        self.trust_repo.increment(order.buyer_id, column, now_iso)
        return self.recalculate(order.buyer_id)

    def record_fraud_signals(self, user_id: str, signals: Sequence[FraudSignal]) -> Optional[int]:
        """Count persisted signals against the user and recalculate."""
        if not signals:
            return None
        latest = max(s.timestamp for s in signals) or to_iso(self.clock())
        self.trust_repo.increment(user_id, "fraud_signals_count", latest, amount=len(signals))
        return self.recalculate(user_id)

    def set_verification_level(self, user_id: str, level: VerificationLevel) -> int:
        self.trust_repo.set_verification_level(user_id, level, to_iso(self.clock()))
        return self.recalculate(user_id)
