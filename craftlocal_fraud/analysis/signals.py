"""Signal factory shared by the analyzers."""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from ..domain.models import FraudSignal, Severity, SignalType, to_iso


def make_signal(
    code: str,
    signal_type: SignalType,
    severity: Severity,
    description: str,
    confidence: int,
    now: datetime,
    metadata: Optional[Dict[str, Any]] = None,
    action_required: bool = False,
) -> FraudSignal:
    """Build a FraudSignal with a fresh id ("<code>_<hex>") stamped at *now*."""
    return FraudSignal(
        id=f"{code}_{uuid.uuid4().hex[:12]}",
        code=code,
        type=signal_type,
        severity=severity,
        description=description,
        confidence=confidence,
        metadata=metadata or {},
        timestamp=to_iso(now),
        action_required=action_required,
    )
