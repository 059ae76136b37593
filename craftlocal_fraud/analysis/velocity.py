"""
Transaction velocity heuristics.

Inputs are the buyer's orders already placed in the last hour and the last
24 hours (the checkout being analysed is not among them).

  velocity_freq     count in the last hour >= hourly_count_limit      high / 85
  velocity_amount   total in the last hour  >  hourly_amount_limit     high / 80
  velocity_pattern  amount > hourly_average_multiplier x hourly mean   medium / 70
  velocity_daily    count in the last 24h   >  daily_count_limit       medium / 75
"""

from datetime import datetime
from typing import List, Sequence

import numpy as np

from ..config import DetectionThresholds
from ..domain.models import FraudSignal, Order, Severity, SignalType
from .signals import make_signal


def analyze_velocity(
    amount: float,
    hourly_orders: Sequence[Order],
    daily_orders: Sequence[Order],
    now: datetime,
    thresholds: DetectionThresholds = DetectionThresholds(),
) -> List[FraudSignal]:
    signals: List[FraudSignal] = []

    if hourly_orders:
        amounts = np.array([o.total_amount or 0.0 for o in hourly_orders], dtype=float)
        count = len(amounts)
        total = float(amounts.sum())

        if count >= thresholds.hourly_count_limit:
            signals.append(make_signal(
                "velocity_freq", SignalType.VELOCITY, Severity.HIGH,
                f"{count} transactions in the last hour", 85, now,
                metadata={"transaction_count": count, "time_window": "1hour"},
                action_required=True,
            ))

        if total > thresholds.hourly_amount_limit:
            signals.append(make_signal(
                "velocity_amount", SignalType.VELOCITY, Severity.HIGH,
                f"${total:.2f} spent in the last hour", 80, now,
                metadata={"total_amount": total, "time_window": "1hour"},
                action_required=True,
            ))

        avg_amount = float(amounts.mean())
        if amount > avg_amount * thresholds.hourly_average_multiplier:
            signals.append(make_signal(
                "velocity_pattern", SignalType.VELOCITY, Severity.MEDIUM,
                "Transaction amount significantly higher than recent average", 70, now,
                metadata={
                    "current_amount": amount,
                    "avg_amount": avg_amount,
                    # None when every recent order was free
                    "multiplier": amount / avg_amount if avg_amount > 0 else None,
                },
            ))

    daily_count = len(daily_orders)
    if daily_count > thresholds.daily_count_limit:
        signals.append(make_signal(
            "velocity_daily", SignalType.VELOCITY, Severity.MEDIUM,
            f"{daily_count} transactions in 24 hours", 75, now,
            metadata={"transaction_count": daily_count, "time_window": "24hours"},
        ))

    return signals
