"""Static device-fingerprint heuristics. No fingerprint → no signals."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..config import DetectionThresholds
from ..domain.fingerprint import canonical_json, fingerprint_to_dict, is_headless
from ..domain.models import DeviceFingerprint, FraudSignal, Severity, SignalType
from .signals import make_signal


def analyze_device(
    fingerprint: Optional[DeviceFingerprint],
    known_devices: Sequence[Dict[str, Any]],
    now: datetime,
    thresholds: DetectionThresholds = DetectionThresholds(),
) -> List[FraudSignal]:
    """
    Args:
        fingerprint: device of the current session
        known_devices: rows of user_device_fingerprints (``fingerprint`` holds canonical JSON)
    """
    signals: List[FraudSignal] = []
    if fingerprint is None:
        return signals

    if known_devices:
        current = canonical_json(fingerprint)
        if not any(device.get("fingerprint") == current for device in known_devices):
            signals.append(make_signal(
                "device_new", SignalType.DEVICE, Severity.MEDIUM,
                "Transaction from new/unknown device", 70, now,
                metadata={
                    "known_device_count": len(known_devices),
                    "current_device": fingerprint_to_dict(fingerprint),
                },
            ))

    if thresholds.require_cookies and not fingerprint.cookie_enabled:
        signals.append(make_signal(
            "device_cookies", SignalType.DEVICE, Severity.LOW,
            "Cookies disabled on device", 50, now,
            metadata={"cookie_enabled": False},
        ))

    if thresholds.block_headless and is_headless(fingerprint):
        signals.append(make_signal(
            "device_headless", SignalType.DEVICE, Severity.HIGH,
            "Possible headless browser or bot detected", 85, now,
            metadata={"webgl": fingerprint.webgl, "canvas": fingerprint.canvas},
            action_required=True,
        ))

    return signals
