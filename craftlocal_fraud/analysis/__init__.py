"""Fraud heuristics and risk aggregation."""

from .signals import make_signal
from .velocity import analyze_velocity
from .behavioral import analyze_behavior, typing_stats
from .device import analyze_device
from .patterns import analyze_patterns, is_round_amount
from .amount import analyze_amount
from .risk import (
    calculate_risk_score,
    recommend,
    should_flag_transaction,
    compute_trust_score,
    account_age_days,
    security_status,
    trust_distribution,
    TRUST_BUCKETS,
)

__all__ = [
    "make_signal",
    "analyze_velocity",
    "analyze_behavior",
    "typing_stats",
    "analyze_device",
    "analyze_patterns",
    "is_round_amount",
    "analyze_amount",
    "calculate_risk_score",
    "recommend",
    "should_flag_transaction",
    "compute_trust_score",
    "account_age_days",
    "security_status",
    "trust_distribution",
    "TRUST_BUCKETS",
]
