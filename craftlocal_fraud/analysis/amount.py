"""
Amount heuristics against the buyer's recent order history.

With history (last AMOUNT_HISTORY_LIMIT orders):
  amount_high   amount > average_multiplier x mean       high / 80, action required
  amount_max    amount > max_multiplier x previous max   medium / 70
Without history:
  amount_first  amount > max_first_transaction           medium / 75
"""

from datetime import datetime
from typing import List, Sequence

import numpy as np

from ..config import DetectionThresholds
from ..domain.models import FraudSignal, Severity, SignalType
from .signals import make_signal


def analyze_amount(
    amount: float,
    history: Sequence[float],
    now: datetime,
    thresholds: DetectionThresholds = DetectionThresholds(),
) -> List[FraudSignal]:
    signals: List[FraudSignal] = []

    if len(history) > 0:
        amounts = np.asarray([a or 0.0 for a in history], dtype=float)
        avg_amount = float(amounts.mean())
        max_amount = float(amounts.max())

        if amount > avg_amount * thresholds.average_multiplier:
            signals.append(make_signal(
                "amount_high", SignalType.PATTERN, Severity.HIGH,
                "Transaction amount significantly higher than user average", 80, now,
                metadata={
                    "current_amount": amount,
                    "avg_amount": avg_amount,
                    "multiplier": amount / avg_amount if avg_amount > 0 else None,
                },
                action_required=True,
            ))

        if amount > max_amount * thresholds.max_multiplier:
            signals.append(make_signal(
                "amount_max", SignalType.PATTERN, Severity.MEDIUM,
                "Transaction amount is new maximum for user", 70, now,
                metadata={"current_amount": amount, "previous_max": max_amount},
            ))
    elif amount > thresholds.max_first_transaction:
        signals.append(make_signal(
            "amount_first", SignalType.PATTERN, Severity.MEDIUM,
            "High-value first transaction for new user", 75, now,
            metadata={"amount": amount, "is_first_transaction": True},
        ))

    return signals
