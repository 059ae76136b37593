"""Transaction pattern heuristics (round amounts, repeat seller)."""

import math
from datetime import datetime
from typing import List, Sequence

from ..config import DetectionThresholds
from ..domain.models import FraudSignal, Order, Severity, SignalType, TransactionRequest
from .signals import make_signal


def is_round_amount(amount: float, unit: float) -> bool:
    return unit > 0 and math.isclose(math.fmod(amount, unit), 0.0, abs_tol=1e-9)


def analyze_patterns(
    request: TransactionRequest,
    daily_orders: Sequence[Order],
    now: datetime,
    thresholds: DetectionThresholds = DetectionThresholds(),
) -> List[FraudSignal]:
    signals: List[FraudSignal] = []

    if (
        thresholds.flag_round_amounts
        and request.amount >= thresholds.round_amount_min
        and is_round_amount(request.amount, thresholds.round_amount_unit)
    ):
        signals.append(make_signal(
            "pattern_round", SignalType.PATTERN, Severity.LOW,
            "Round number transaction amount", 40, now,
            metadata={"amount": request.amount},
        ))

    same_seller = sum(1 for o in daily_orders if o.seller_id == request.seller_id)
    if same_seller >= thresholds.same_seller_limit:
        signals.append(make_signal(
            "pattern_seller", SignalType.PATTERN, Severity.MEDIUM,
            "Multiple purchases from same seller in 24 hours", 65, now,
            metadata={"seller_id": request.seller_id, "purchase_count": same_seller},
        ))

    return signals
