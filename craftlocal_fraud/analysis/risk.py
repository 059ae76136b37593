"""
Risk aggregation and decisions.

  risk score (0–100)
    Severity/confidence weighted average of the emitted signals:
        score = Σ conf · w · conf/100  /  Σ w      (w = 1/2/3/4 low→critical)
    rounded half-up and capped at 100; no signals → 0.

  recommendation
    Signal/score tier first (block / review / approve), then trust-score
    escalations, then the database-rule flag. Later steps only escalate.

  trust score (0–100)
    50 + age bonus (≤20) + successful bonus (≤25) − failed penalty (≤15)
       − fraud-signal penalty (≤30) + verification bonus, clamped.

Design constraints:
  - Pure functions: no I/O, no clock reads; callers pass ``now``.
"""

import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import DecisionPolicy
from ..domain.models import (
    FraudSignal,
    Recommendation,
    SecurityStatus,
    Severity,
    TrustRecord,
    parse_timestamp,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_SCORE = 100
BASE_TRUST_SCORE = 50

AGE_BONUS_DAYS_PER_POINT = 30
AGE_BONUS_CAP = 20
SUCCESS_POINTS = 2
SUCCESS_BONUS_CAP = 25
FAILED_POINTS = 3
FAILED_PENALTY_CAP = 15
FRAUD_SIGNAL_POINTS = 5
FRAUD_SIGNAL_PENALTY_CAP = 30

TRUST_BUCKETS: Tuple[Tuple[str, int, int], ...] = (
    ("0-20", 0, 20),
    ("21-40", 21, 40),
    ("41-60", 41, 60),
    ("61-80", 61, 80),
    ("81-100", 81, 100),
)


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Risk score
# ---------------------------------------------------------------------------

def calculate_risk_score(signals: Sequence[FraudSignal]) -> int:
    if not signals:
        return 0

    total = 0.0
    weight_sum = 0
    for signal in signals:
        weight = signal.severity.weight
        total += signal.confidence * weight * (signal.confidence / 100.0)
        weight_sum += weight

    return min(_round_half_up(total / weight_sum), MAX_SCORE)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

def should_flag_transaction(
    trust_score: Optional[int],
    amount: float,
    recent_transactions: int,
    high_risk_signals: int,
    policy: DecisionPolicy = DecisionPolicy(),
) -> bool:
    """
    Database-rule flag.

    Args:
        trust_score: stored trust score (None → 50)
        recent_transactions: buyer orders in the last 24 hours
        high_risk_signals: high/critical signals in the last 7 days
    """
    trust = BASE_TRUST_SCORE if trust_score is None else trust_score
    return (
        trust < policy.flag_trust
        or (amount > policy.flag_amount_with_trust and trust < policy.flag_trust_with_amount)
        or recent_transactions > policy.flag_recent_transactions
        or high_risk_signals > 0
        or amount > policy.flag_amount
    )


def recommend(
    signals: Sequence[FraudSignal],
    risk_score: int,
    amount: float,
    trust_score: Optional[int] = None,
    flagged: bool = False,
    policy: DecisionPolicy = DecisionPolicy(),
) -> Recommendation:
    severities = {s.severity for s in signals}

    if Severity.CRITICAL in severities or risk_score >= policy.block_score:
        recommendation = Recommendation.BLOCK
    elif Severity.HIGH in severities or risk_score >= policy.review_score:
        recommendation = Recommendation.REVIEW
    else:
        recommendation = Recommendation.APPROVE

    if trust_score is not None:
        # checked before the amount rule so a very low trust score always blocks
        if trust_score < policy.block_trust:
            recommendation = Recommendation.BLOCK
        elif (
            trust_score < policy.review_trust
            and amount > policy.review_trust_amount
            and recommendation == Recommendation.APPROVE
        ):
            recommendation = Recommendation.REVIEW

    if flagged and recommendation == Recommendation.APPROVE:
        recommendation = Recommendation.REVIEW

    return recommendation


# ---------------------------------------------------------------------------
# Trust score
# ---------------------------------------------------------------------------

def account_age_days(created_at: Optional[str], now: datetime) -> int:
    if not created_at:
        return 0
    delta = now - parse_timestamp(created_at)
    return max(delta.days, 0)


def compute_trust_score(record: TrustRecord, now: datetime) -> Tuple[int, int]:
    """
    Returns:
        (trust_score, account_age_days)
    """
    age = account_age_days(record.created_at, now)

    score = BASE_TRUST_SCORE
    score += min(age // AGE_BONUS_DAYS_PER_POINT, AGE_BONUS_CAP)
    score += min(record.successful_transactions * SUCCESS_POINTS, SUCCESS_BONUS_CAP)
    score -= min(record.failed_transactions * FAILED_POINTS, FAILED_PENALTY_CAP)
    score -= min(record.fraud_signals_count * FRAUD_SIGNAL_POINTS, FRAUD_SIGNAL_PENALTY_CAP)
    score += record.verification_level.trust_bonus

    return int(_clamp(score, 0, MAX_SCORE)), age


def security_status(trust_score: Optional[int]) -> SecurityStatus:
    if trust_score is None:
        return SecurityStatus("unknown", "gray", "Calculating...")
    if trust_score >= 80:
        return SecurityStatus("high", "green", "High Trust - Enhanced Security Active")
    if trust_score >= 60:
        return SecurityStatus("medium", "yellow", "Medium Trust - Standard Security Active")
    if trust_score >= 30:
        return SecurityStatus("low", "orange", "Building Trust - Additional Verification May Be Required")
    return SecurityStatus("very-low", "red", "New Account - Enhanced Verification Required")


def trust_distribution(scores: Iterable[int]) -> List[Dict[str, int]]:
    """Count trust scores per dashboard bucket (0-20 ... 81-100)."""
    counts = {label: 0 for label, _, _ in TRUST_BUCKETS}
    for score in scores:
        for label, lo, hi in TRUST_BUCKETS:
            if lo <= score <= hi:
                counts[label] += 1
                break
    return [{"range": label, "count": counts[label]} for label, _, _ in TRUST_BUCKETS]
