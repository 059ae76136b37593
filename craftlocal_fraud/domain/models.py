"""
Domain models for craftlocal-fraud.

Pure data classes + value objects. No I/O, no side effects.
Timestamps cross the persistence boundary as ISO-8601 UTC strings
(see to_iso / parse_timestamp) so that SQL range filters compare correctly.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil import parser as dateparser


class SignalType(Enum):
    """Category of a fraud signal."""
    VELOCITY = "velocity"
    BEHAVIORAL = "behavioral"
    PAYMENT = "payment"
    DEVICE = "device"
    PATTERN = "pattern"


class Severity(Enum):
    """Signal severity; weight drives the risk-score average."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHTS[self]


_SEVERITY_WEIGHTS = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class Recommendation(Enum):
    APPROVE = "approve"
    REVIEW = "review"
    BLOCK = "block"


class VerificationLevel(Enum):
    """Identity verification reached by a user (progressive trust)."""
    NONE = "none"
    EMAIL = "email"
    PHONE = "phone"
    IDENTITY = "identity"
    ENHANCED = "enhanced"

    @property
    def trust_bonus(self) -> int:
        return _VERIFICATION_BONUS[self]


_VERIFICATION_BONUS = {
    VerificationLevel.NONE: 0,
    VerificationLevel.EMAIL: 5,
    VerificationLevel.PHONE: 10,
    VerificationLevel.IDENTITY: 15,
    VerificationLevel.ENHANCED: 20,
}


class ReviewDecision(Enum):
    """Admin decision recorded against a fraud signal."""
    APPROVED = "approved"
    REJECTED = "rejected"
    REQUIRES_VERIFICATION = "requires_verification"
    ESCALATED = "escalated"


class OrderStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


FAILED_ORDER_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Normalise *moment* to a UTC ISO string with microseconds (sortable as text)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> datetime:
    """Parse a stored timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        moment = value
    else:
        moment = dateparser.parse(str(value))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

@dataclass
class FraudSignal:
    """
    One heuristic finding.

    ``code`` names the rule that fired (``velocity_freq``, ``device_headless``...);
    ``id`` is unique per emitted signal.
    """
    id: str
    code: str
    type: SignalType
    severity: Severity
    description: str
    confidence: int                 # 0-100
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""             # ISO-8601 UTC
    action_required: bool = False
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    order_id: Optional[str] = None
    false_positive: Optional[bool] = None  # None = not reviewed

    def __post_init__(self):
        if not 0 <= self.confidence <= 100:
            raise ValueError("Confidence must be between 0 and 100")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "confidence": self.confidence,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
            "action_required": self.action_required,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "order_id": self.order_id,
            "false_positive": self.false_positive,
        }


# ---------------------------------------------------------------------------
# Device fingerprint
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScreenInfo:
    width: int
    height: int
    color_depth: int


@dataclass(frozen=True)
class ConnectionInfo:
    effective_type: str
    downlink: float
    rtt: int


@dataclass(frozen=True)
class DeviceFingerprint:
    """Static device characteristics reported by the client."""
    user_agent: str
    screen: ScreenInfo
    timezone: str
    language: str
    platform: str
    cookie_enabled: bool
    do_not_track: Optional[str]
    hardware_concurrency: int
    device_memory: Optional[float] = None
    connection: Optional[ConnectionInfo] = None
    canvas: Optional[str] = None
    webgl: Optional[str] = None


# ---------------------------------------------------------------------------
# Behavioral data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MouseMovement:
    x: float
    y: float
    timestamp: float  # ms


@dataclass(frozen=True)
class Keystroke:
    key: str          # "char" for printable keys, never the typed character
    timestamp: float
    duration: float = 0.0


@dataclass(frozen=True)
class ScrollEvent:
    scroll_y: float
    timestamp: float


@dataclass(frozen=True)
class ClickEvent:
    x: float
    y: float
    timestamp: float
    element: str = "unknown"


@dataclass
class BehavioralPattern:
    """Snapshot of the interactions recorded during a session."""
    mouse_movements: List[MouseMovement] = field(default_factory=list)
    keystrokes: List[Keystroke] = field(default_factory=list)
    scroll_pattern: List[ScrollEvent] = field(default_factory=list)
    click_pattern: List[ClickEvent] = field(default_factory=list)
    page_view_duration: float = 0.0   # ms since session start
    interaction_speed: float = 0.0    # interactions per second
    typing_cadence: List[float] = field(default_factory=list)  # ms between keydowns

    def summary(self) -> Dict[str, Any]:
        """Aggregate view persisted with the session (raw coordinates are not stored)."""
        return {
            "mouse_movements": len(self.mouse_movements),
            "keystrokes": len(self.keystrokes),
            "scroll_events": len(self.scroll_pattern),
            "clicks": len(self.click_pattern),
            "page_view_duration": self.page_view_duration,
            "interaction_speed": self.interaction_speed,
            "typing_samples": len(self.typing_cadence),
        }


# ---------------------------------------------------------------------------
# Transactions / assessments
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransactionRequest:
    """Checkout about to be placed; not yet present in the orders table."""
    amount: float
    user_id: str
    listing_id: str
    seller_id: str
    payment_method_id: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.user_id or not str(self.user_id).strip():
            raise ValueError("user_id cannot be empty")
        if self.amount < 0:
            raise ValueError("Transaction amount cannot be negative")


@dataclass
class FraudAssessment:
    risk_score: int
    signals: List[FraudSignal]
    should_block: bool
    should_review: bool
    recommendation: Recommendation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_score": self.risk_score,
            "signals": [s.to_dict() for s in self.signals],
            "should_block": self.should_block,
            "should_review": self.should_review,
            "recommendation": self.recommendation.value,
        }


@dataclass
class Order:
    id: str
    buyer_id: str
    seller_id: str
    total_amount: float
    status: OrderStatus = OrderStatus.PENDING
    listing_id: Optional[str] = None
    created_at: str = ""


@dataclass
class TrustRecord:
    """Progressive trust state of one user."""
    user_id: str
    trust_score: int = 50
    verification_level: VerificationLevel = VerificationLevel.NONE
    successful_transactions: int = 0
    failed_transactions: int = 0
    fraud_signals_count: int = 0
    last_fraud_signal: Optional[str] = None
    account_age_days: int = 0
    last_calculated: str = ""
    created_at: str = ""


@dataclass(frozen=True)
class SecurityStatus:
    level: str
    color: str
    message: str
