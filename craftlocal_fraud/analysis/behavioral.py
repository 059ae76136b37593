"""
Behavioral biometrics heuristics (bot-likeness of the checkout session).

No behavioral data → no signals.
"""

from datetime import datetime
from typing import List, Optional

import numpy as np

from ..config import DetectionThresholds
from ..domain.models import BehavioralPattern, FraudSignal, Severity, SignalType
from .signals import make_signal


def typing_stats(cadence) -> Optional[tuple]:
    """(mean, population variance) of keydown gaps, or None without samples."""
    if len(cadence) == 0:
        return None
    values = np.asarray(cadence, dtype=float)
    return float(values.mean()), float(values.var())


def analyze_behavior(
    pattern: Optional[BehavioralPattern],
    now: datetime,
    thresholds: DetectionThresholds = DetectionThresholds(),
) -> List[FraudSignal]:
    signals: List[FraudSignal] = []
    if pattern is None:
        return signals

    if pattern.interaction_speed > thresholds.max_interaction_speed:
        signals.append(make_signal(
            "behavioral_speed", SignalType.BEHAVIORAL, Severity.HIGH,
            "Unusually fast interaction patterns detected", 90, now,
            metadata={"interaction_speed": pattern.interaction_speed},
            action_required=True,
        ))

    if not pattern.mouse_movements and pattern.click_pattern:
        signals.append(make_signal(
            "behavioral_mouse", SignalType.BEHAVIORAL, Severity.MEDIUM,
            "Clicks without mouse movements detected", 75, now,
            metadata={
                "clicks": len(pattern.click_pattern),
                "mouse_movements": len(pattern.mouse_movements),
            },
        ))

    stats = typing_stats(pattern.typing_cadence)
    if stats is not None and len(pattern.typing_cadence) >= thresholds.min_typing_samples:
        avg_cadence, variance = stats
        if variance < thresholds.min_typing_variance:
            signals.append(make_signal(
                "behavioral_typing", SignalType.BEHAVIORAL, Severity.MEDIUM,
                "Unusually consistent typing pattern detected", 70, now,
                metadata={"avg_cadence": avg_cadence, "variance": variance},
            ))

    if pattern.page_view_duration < thresholds.min_page_view_ms:
        signals.append(make_signal(
            "behavioral_duration", SignalType.BEHAVIORAL, Severity.LOW,
            "Very short page view duration before purchase", 60, now,
            metadata={"page_view_duration": pattern.page_view_duration},
        ))

    return signals
