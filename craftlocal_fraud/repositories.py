"""
Repository/DAL Layer for SQLite Storage

- OrdersRepository: buyer order history read by the velocity/pattern/amount analyzers
- DeviceRepository: known device fingerprints per user
- SessionRepository: detection sessions
- SignalRepository: emitted fraud signals (append + review flags)
- ReviewRepository: admin review decisions
- TrustScoreRepository: progressive trust records
- RulesRepository: detection rule activation and thresholds
- AssessmentRepository: checkout assessments (dashboard metrics)

Design Principles:
- All write operations wrapped in database transactions
- IntegrityError mapped to business exceptions
- No business logic: pure data access layer
"""

import json
import sqlite3
import uuid
from typing import Optional, List, Dict, Any, Iterable, Set

from .db import retry_on_locked, transaction
from .domain.fingerprint import canonical_json, fingerprint_hash
from .domain.models import (
    DeviceFingerprint,
    FraudSignal,
    Order,
    OrderStatus,
    ReviewDecision,
    Severity,
    SignalType,
    TrustRecord,
    VerificationLevel,
    to_iso,
    utc_now,
)


# ============================================================
# Custom Exceptions
# ============================================================

class RepositoryError(Exception):
    """Base exception for repository operations"""
    pass


class DuplicateKeyError(RepositoryError):
    """Raised when UNIQUE constraint is violated"""
    pass


class ForeignKeyError(RepositoryError):
    """Raised when FOREIGN KEY constraint is violated"""
    pass


class NotFoundError(RepositoryError):
    """Raised when entity not found"""
    pass


class BusinessRuleError(RepositoryError):
    """Raised when CHECK constraint is violated"""
    pass


def _raise_mapped(exc: Exception, subject: str) -> None:
    """Translate a constraint failure into a repository exception."""
    error_msg = str(exc).lower()
    if "foreign key" in error_msg:
        raise ForeignKeyError(f"Foreign key constraint failed for {subject}") from exc
    if "check constraint" in error_msg:
        raise BusinessRuleError(f"Business rule violated for {subject}: {exc}") from exc
    if "unique" in error_msg:
        raise DuplicateKeyError(f"{subject} already exists") from exc
    raise exc


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True)


def _loads(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    return json.loads(value)


# ============================================================
# Orders Repository
# ============================================================

class OrdersRepository:
    """Marketplace orders as seen by the fraud heuristics."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _row_to_order(row: sqlite3.Row) -> Order:
        return Order(
            id=row["id"],
            buyer_id=row["buyer_id"],
            seller_id=row["seller_id"],
            listing_id=row["listing_id"],
            total_amount=row["total_amount"] or 0.0,
            status=OrderStatus(row["status"]),
            created_at=row["created_at"],
        )

    def create(self, order: Order) -> str:
        """
        Insert an order.

        Raises:
            DuplicateKeyError: order id already present
            BusinessRuleError: negative amount / unknown status
        """
        order_id = order.id or str(uuid.uuid4())
        created_at = order.created_at or to_iso(utc_now())
        try:
            with transaction(self.conn) as cur:
                cur.execute(
                    """
                    INSERT INTO orders (id, buyer_id, seller_id, listing_id, total_amount, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        order_id, order.buyer_id, order.seller_id, order.listing_id,
                        order.total_amount, order.status.value, created_at, created_at,
                    ),
                )
        except (RuntimeError, sqlite3.IntegrityError) as e:
            _raise_mapped(e, f"order {order_id}")
        return order_id

    def get(self, order_id: str) -> Optional[Order]:
        row = self.conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        return self._row_to_order(row) if row else None

    @retry_on_locked()
    def list_for_buyer_since(self, buyer_id: str, since_iso: str) -> List[Order]:
        """Orders of *buyer_id* created at or after *since_iso*, newest first."""
        rows = self.conn.execute(
            """
            SELECT * FROM orders
            WHERE buyer_id = ? AND created_at >= ?
            ORDER BY created_at DESC
            """,
            (buyer_id, since_iso),
        ).fetchall()
        return [self._row_to_order(r) for r in rows]

    @retry_on_locked()
    def recent_for_buyer(self, buyer_id: str, limit: int) -> List[Order]:
        rows = self.conn.execute(
            "SELECT * FROM orders WHERE buyer_id = ? ORDER BY created_at DESC LIMIT ?",
            (buyer_id, limit),
        ).fetchall()
        return [self._row_to_order(r) for r in rows]

    def count_for_buyer_since(self, buyer_id: str, since_iso: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM orders WHERE buyer_id = ? AND created_at > ?",
            (buyer_id, since_iso),
        ).fetchone()
        return row[0]

    def update_status(self, order_id: str, status: OrderStatus, now_iso: str) -> OrderStatus:
        """
        Change order status.

        Returns:
            Previous status

        Raises:
            NotFoundError: unknown order
        """
        existing = self.get(order_id)
        if existing is None:
            raise NotFoundError(f"Order {order_id} not found")

        with transaction(self.conn) as cur:
            cur.execute(
                "UPDATE orders SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, now_iso, order_id),
            )
        return existing.status


# ============================================================
# Device Repository
# ============================================================

class DeviceRepository:
    """Known devices per user, identified by canonical fingerprint JSON."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @retry_on_locked()
    def list_for_user(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT id, user_id, fingerprint, fingerprint_hash, first_seen, last_seen, is_trusted, trust_score
            FROM user_device_fingerprints
            WHERE user_id = ?
            ORDER BY last_seen DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
        return [dict(r) for r in rows]

    def register(self, user_id: str, fp: DeviceFingerprint, now_iso: str) -> str:
        """
        Insert the device, or refresh last_seen when already known.

        Returns:
            Device row id
        """
        digest = fingerprint_hash(fp)
        row = self.conn.execute(
            "SELECT id FROM user_device_fingerprints WHERE user_id = ? AND fingerprint_hash = ?",
            (user_id, digest),
        ).fetchone()

        with transaction(self.conn) as cur:
            if row:
                cur.execute(
                    "UPDATE user_device_fingerprints SET last_seen = ?, updated_at = ? WHERE id = ?",
                    (now_iso, now_iso, row["id"]),
                )
                return row["id"]

            device_id = str(uuid.uuid4())
            cur.execute(
                """
                INSERT INTO user_device_fingerprints
                    (id, user_id, fingerprint, fingerprint_hash, first_seen, last_seen, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (device_id, user_id, canonical_json(fp), digest, now_iso, now_iso, now_iso, now_iso),
            )
            return device_id


# ============================================================
# Session Repository
# ============================================================

class SessionRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def start(
        self,
        session_id: str,
        user_id: str,
        session_start: str,
        fingerprint: Optional[DeviceFingerprint] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        with transaction(self.conn) as cur:
            cur.execute(
                """
                INSERT INTO fraud_detection_sessions
                    (id, user_id, device_fingerprint, session_start, user_agent, ip_address, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id, user_id,
                    canonical_json(fingerprint) if fingerprint else None,
                    session_start, user_agent, ip_address, session_start,
                ),
            )
        return session_id

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM fraud_detection_sessions WHERE id = ?", (session_id,)).fetchone()
        if not row:
            return None
        data = dict(row)
        data["behavioral_data"] = _loads(data.get("behavioral_data"))
        data["device_fingerprint"] = _loads(data.get("device_fingerprint"))
        return data

    def update_risk_score(self, session_id: str, risk_score: int) -> None:
        try:
            with transaction(self.conn) as cur:
                cur.execute(
                    "UPDATE fraud_detection_sessions SET risk_score = ? WHERE id = ?",
                    (risk_score, session_id),
                )
        except (RuntimeError, sqlite3.IntegrityError) as e:
            _raise_mapped(e, f"session {session_id}")

    def end(self, session_id: str, session_end: str, behavioral_summary: Optional[Dict[str, Any]] = None) -> None:
        with transaction(self.conn) as cur:
            cur.execute(
                "UPDATE fraud_detection_sessions SET session_end = ?, behavioral_data = ? WHERE id = ?",
                (session_end, _dumps(behavioral_summary) if behavioral_summary is not None else None, session_id),
            )


# ============================================================
# Signal Repository
# ============================================================

class SignalRepository:
    """Append-only store of emitted signals; only review flags change afterwards."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _row_to_signal(row: sqlite3.Row) -> FraudSignal:
        fp = row["false_positive"]
        return FraudSignal(
            id=row["id"],
            code=row["rule_code"],
            type=SignalType(row["signal_type"]),
            severity=Severity(row["severity"]),
            description=row["description"],
            confidence=row["confidence"],
            metadata=_loads(row["metadata"], {}),
            timestamp=row["created_at"],
            action_required=bool(row["action_required"]),
            user_id=row["user_id"],
            session_id=row["session_id"],
            order_id=row["order_id"],
            false_positive=None if fp is None else bool(fp),
        )

    def insert_many(self, signals: Iterable[FraudSignal]) -> int:
        """
        Persist signals in one transaction.

        Raises:
            BusinessRuleError / ForeignKeyError / DuplicateKeyError
        """
        rows = [
            (
                s.id, s.user_id, s.session_id, s.order_id, s.code, s.type.value, s.severity.value,
                s.confidence, s.description, _dumps(s.metadata), int(s.action_required),
                None if s.false_positive is None else int(s.false_positive),
                s.timestamp, s.timestamp,
            )
            for s in signals
        ]
        if not rows:
            return 0

        try:
            with transaction(self.conn) as cur:
                cur.executemany(
                    """
                    INSERT INTO fraud_signals
                        (id, user_id, session_id, order_id, rule_code, signal_type, severity,
                         confidence, description, metadata, action_required, false_positive,
                         created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        except (RuntimeError, sqlite3.IntegrityError) as e:
            _raise_mapped(e, "fraud signal batch")
        return len(rows)

    def get(self, signal_id: str) -> Optional[FraudSignal]:
        row = self.conn.execute("SELECT * FROM fraud_signals WHERE id = ?", (signal_id,)).fetchone()
        return self._row_to_signal(row) if row else None

    @retry_on_locked()
    def list_for_user_since(self, user_id: str, since_iso: str, limit: int = 10) -> List[FraudSignal]:
        rows = self.conn.execute(
            """
            SELECT * FROM fraud_signals
            WHERE user_id = ? AND created_at >= ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (user_id, since_iso, limit),
        ).fetchall()
        return [self._row_to_signal(r) for r in rows]

    def list_recent(self, limit: int = 20, since_iso: Optional[str] = None) -> List[FraudSignal]:
        if since_iso is None:
            rows = self.conn.execute(
                "SELECT * FROM fraud_signals ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM fraud_signals WHERE created_at >= ? ORDER BY created_at DESC LIMIT ?",
                (since_iso, limit),
            ).fetchall()
        return [self._row_to_signal(r) for r in rows]

    def mark_false_positive(self, signal_id: str, now_iso: str) -> None:
        """
        Raises:
            NotFoundError: unknown signal
        """
        with transaction(self.conn) as cur:
            cur.execute(
                "UPDATE fraud_signals SET false_positive = 1, updated_at = ? WHERE id = ?",
                (now_iso, signal_id),
            )
            updated = cur.rowcount
        if updated == 0:
            raise NotFoundError(f"Signal {signal_id} not found")

    def count_high_risk_since(self, user_id: str, since_iso: str) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*) FROM fraud_signals
            WHERE user_id = ? AND severity IN ('high', 'critical') AND created_at > ?
            """,
            (user_id, since_iso),
        ).fetchone()
        return row[0]

    def severity_counts_since(self, since_iso: str) -> Dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        rows = self.conn.execute(
            "SELECT severity, COUNT(*) AS n FROM fraud_signals WHERE created_at >= ? GROUP BY severity",
            (since_iso,),
        ).fetchall()
        for row in rows:
            counts[row["severity"]] = row["n"]
        return counts

    def review_counts_since(self, since_iso: str) -> Dict[str, int]:
        """Pending (action required, unreviewed), reviewed and false-positive counts."""
        row = self.conn.execute(
            """
            SELECT
                COALESCE(SUM(CASE WHEN action_required = 1 AND false_positive IS NULL THEN 1 ELSE 0 END), 0) AS pending,
                COALESCE(SUM(CASE WHEN false_positive IS NOT NULL THEN 1 ELSE 0 END), 0) AS reviewed,
                COALESCE(SUM(CASE WHEN false_positive = 1 THEN 1 ELSE 0 END), 0) AS false_positives
            FROM fraud_signals
            WHERE created_at >= ?
            """,
            (since_iso,),
        ).fetchone()
        return {"pending": row["pending"], "reviewed": row["reviewed"], "false_positives": row["false_positives"]}


# ============================================================
# Review Repository
# ============================================================

class ReviewRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def record_review(
        self,
        signal: FraudSignal,
        reviewer_id: str,
        decision: ReviewDecision,
        now_iso: str,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        automated: bool = False,
    ) -> str:
        """
        Insert a review and update the signal flags atomically.

        approved → false positive, no further action; rejected → confirmed,
        no further action; other decisions leave the signal open.
        """
        review_id = str(uuid.uuid4())
        try:
            with transaction(self.conn) as cur:
                cur.execute(
                    """
                    INSERT INTO fraud_reviews
                        (id, signal_id, order_id, user_id, reviewer_id, decision, reason, notes, automated, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        review_id, signal.id, signal.order_id, signal.user_id, reviewer_id,
                        decision.value, reason, notes, int(automated), now_iso,
                    ),
                )
                if decision in (ReviewDecision.APPROVED, ReviewDecision.REJECTED):
                    cur.execute(
                        """
                        UPDATE fraud_signals
                        SET action_required = 0, false_positive = ?, action_taken = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (int(decision == ReviewDecision.APPROVED), decision.value, now_iso, signal.id),
                    )
                else:
                    cur.execute(
                        "UPDATE fraud_signals SET action_taken = ?, updated_at = ? WHERE id = ?",
                        (decision.value, now_iso, signal.id),
                    )
        except (RuntimeError, sqlite3.IntegrityError) as e:
            _raise_mapped(e, f"review of signal {signal.id}")
        return review_id

    def list_for_signal(self, signal_id: str) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM fraud_reviews WHERE signal_id = ? ORDER BY created_at DESC",
            (signal_id,),
        ).fetchall()
        return [dict(r) for r in rows]


# ============================================================
# Trust Score Repository
# ============================================================

_COUNTER_COLUMNS = {"successful_transactions", "failed_transactions", "fraud_signals_count"}


class TrustScoreRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> TrustRecord:
        return TrustRecord(
            user_id=row["user_id"],
            trust_score=row["trust_score"],
            verification_level=VerificationLevel(row["verification_level"]),
            successful_transactions=row["successful_transactions"],
            failed_transactions=row["failed_transactions"],
            fraud_signals_count=row["fraud_signals_count"],
            last_fraud_signal=row["last_fraud_signal"],
            account_age_days=row["account_age_days"],
            last_calculated=row["last_calculated"],
            created_at=row["created_at"],
        )

    def get(self, user_id: str) -> Optional[TrustRecord]:
        row = self.conn.execute("SELECT * FROM user_trust_scores WHERE user_id = ?", (user_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def ensure(self, user_id: str, now_iso: str) -> TrustRecord:
        """Return the user's record, creating the default one (score 50) if missing."""
        with transaction(self.conn) as cur:
            cur.execute(
                """
                INSERT OR IGNORE INTO user_trust_scores (user_id, last_calculated, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, now_iso, now_iso, now_iso),
            )
        record = self.get(user_id)
        if record is None:
            raise NotFoundError(f"Trust record for user {user_id} could not be created")
        return record

    def increment(self, user_id: str, column: str, now_iso: str, amount: int = 1) -> None:
        """Increment a counter column, creating the record when needed."""
        if column not in _COUNTER_COLUMNS:
            raise ValueError(f"Unknown trust counter: {column}")
        self.ensure(user_id, now_iso)
        extra = ", last_fraud_signal = ?" if column == "fraud_signals_count" else ""
        params: List[Any] = [amount, now_iso]
        if extra:
            params.append(now_iso)
        params.append(user_id)
        with transaction(self.conn) as cur:
            cur.execute(
                f"UPDATE user_trust_scores SET {column} = {column} + ?, updated_at = ?{extra} WHERE user_id = ?",
                params,
            )

    def save_score(self, user_id: str, trust_score: int, account_age_days: int, now_iso: str) -> None:
        try:
            with transaction(self.conn) as cur:
                cur.execute(
                    """
                    UPDATE user_trust_scores
                    SET trust_score = ?, account_age_days = ?, last_calculated = ?, updated_at = ?
                    WHERE user_id = ?
                    """,
                    (trust_score, account_age_days, now_iso, now_iso, user_id),
                )
        except (RuntimeError, sqlite3.IntegrityError) as e:
            _raise_mapped(e, f"trust score of {user_id}")

    def set_verification_level(self, user_id: str, level: VerificationLevel, now_iso: str) -> None:
        self.ensure(user_id, now_iso)
        with transaction(self.conn) as cur:
            cur.execute(
                "UPDATE user_trust_scores SET verification_level = ?, updated_at = ? WHERE user_id = ?",
                (level.value, now_iso, user_id),
            )

    def all_scores(self) -> List[int]:
        return [row[0] for row in self.conn.execute("SELECT trust_score FROM user_trust_scores").fetchall()]


# ============================================================
# Rules Repository
# ============================================================

class RulesRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def list(self, active_only: bool = False) -> List[Dict[str, Any]]:
        query = "SELECT * FROM fraud_detection_rules"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY id"
        rules = []
        for row in self.conn.execute(query).fetchall():
            rule = dict(row)
            rule["is_active"] = bool(rule["is_active"])
            rule["threshold_config"] = _loads(rule["threshold_config"], {})
            rules.append(rule)
        return rules

    def set_active(self, rule_name: str, active: bool) -> None:
        with transaction(self.conn) as cur:
            cur.execute(
                "UPDATE fraud_detection_rules SET is_active = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%f000+00:00', 'now') WHERE rule_name = ?",
                (int(active), rule_name),
            )
            updated = cur.rowcount
        if updated == 0:
            raise NotFoundError(f"Rule '{rule_name}' not found")

    def inactive_rule_types(self) -> Set[str]:
        """Rule types whose every rule is switched off."""
        rows = self.conn.execute(
            "SELECT rule_type, MAX(is_active) AS any_active FROM fraud_detection_rules GROUP BY rule_type"
        ).fetchall()
        return {row["rule_type"] for row in rows if not row["any_active"]}


# ============================================================
# Assessment Repository
# ============================================================

class AssessmentRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def record(
        self,
        user_id: str,
        amount: float,
        risk_score: int,
        recommendation: str,
        signal_count: int,
        now_iso: str,
        seller_id: Optional[str] = None,
        listing_id: Optional[str] = None,
    ) -> int:
        try:
            with transaction(self.conn) as cur:
                cur.execute(
                    """
                    INSERT INTO transaction_assessments
                        (user_id, seller_id, listing_id, amount, risk_score, recommendation, signal_count, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, seller_id, listing_id, amount, risk_score, recommendation, signal_count, now_iso),
                )
                assessment_id = cur.lastrowid
        except (RuntimeError, sqlite3.IntegrityError) as e:
            _raise_mapped(e, f"assessment for {user_id}")
        return assessment_id

    def summary_since(self, since_iso: str) -> Dict[str, Any]:
        row = self.conn.execute(
            """
            SELECT
                COUNT(*) AS total,
                AVG(risk_score) AS avg_risk,
                COALESCE(SUM(CASE WHEN recommendation = 'block' THEN 1 ELSE 0 END), 0) AS blocked,
                COALESCE(SUM(CASE WHEN recommendation = 'review' THEN 1 ELSE 0 END), 0) AS reviewed
            FROM transaction_assessments
            WHERE created_at >= ?
            """,
            (since_iso,),
        ).fetchone()
        return {
            "total": row["total"],
            "average_risk_score": float(row["avg_risk"]) if row["avg_risk"] is not None else 0.0,
            "blocked": row["blocked"],
            "reviewed": row["reviewed"],
        }
