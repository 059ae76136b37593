"""
Project configuration and constants.

Detection thresholds and decision cut-offs have code defaults; settings.json
in the data directory may override any of them:

    {
      "thresholds": {"daily_count_limit": 15},
      "decision": {"block_score": 85}
    }

Active rows of the fraud_detection_rules table are applied on top
(see DetectionThresholds.with_rule_overrides), so a key that a rule also
sets is only honoured once the rule is edited or disabled; a warning is
logged when a rule replaces a settings.json value.
"""
import json
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .utils.logging_config import get_logger
from .utils.paths import get_settings_path

logger = get_logger(__name__)

# History windows (hours / days)
VELOCITY_HOUR_WINDOW = 1
VELOCITY_DAY_WINDOW = 24
RECENT_SIGNALS_DAYS = 7
RECENT_SIGNALS_LIMIT = 10
AMOUNT_HISTORY_LIMIT = 20
KNOWN_DEVICES_LIMIT = 10
DASHBOARD_RECENT_SIGNALS_LIMIT = 20

# Default trust score for users without a record
DEFAULT_TRUST_SCORE = 50

# Dashboard time ranges
TIME_RANGES_HOURS = {
    "24h": 24,
    "7d": 7 * 24,
    "30d": 30 * 24,
}
DEFAULT_TIME_RANGE = "7d"


@dataclass(frozen=True)
class DetectionThresholds:
    """Numeric limits used by the analyzers."""

    # Velocity
    hourly_count_limit: int = 5            # >= limit → high
    hourly_amount_limit: float = 1000.0    # > limit → high
    hourly_average_multiplier: float = 5.0
    daily_count_limit: int = 10            # > limit → medium

    # Behavioral
    max_interaction_speed: float = 10.0    # interactions per second
    min_typing_variance: float = 10.0      # ms^2
    min_typing_samples: int = 1
    min_page_view_ms: float = 5000.0

    # Device
    require_cookies: bool = True
    block_headless: bool = True

    # Pattern
    flag_round_amounts: bool = True
    round_amount_unit: float = 100.0
    round_amount_min: float = 500.0
    same_seller_limit: int = 3             # >= limit in 24h → medium

    # Amount
    average_multiplier: float = 10.0
    max_multiplier: float = 2.0
    max_first_transaction: float = 500.0

    def with_overrides(self, overrides: Dict[str, Any]) -> "DetectionThresholds":
        """Return a copy with known keys replaced; unknown keys are logged and ignored."""
        known = {f.name for f in fields(self)}
        accepted = {}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("Ignoring unknown threshold override: %s", key)
                continue
            accepted[key] = _coerce(value, getattr(self, key))
        return replace(self, **accepted) if accepted else self

    def with_rule_overrides(self, rules: Iterable[Dict[str, Any]]) -> "DetectionThresholds":
        """
        Apply threshold_config of active fraud_detection_rules rows.

        Rule keys follow the rules table vocabulary
        (max_transactions_per_hour, min_interaction_time in seconds...).
        """
        overrides: Dict[str, Any] = {}
        for rule in rules:
            if not rule.get("is_active", True):
                continue
            config = rule.get("threshold_config") or {}
            for rule_key, value in config.items():
                mapped = RULE_KEY_MAP.get(rule_key)
                if mapped is None:
                    continue
                name, convert = mapped
                overrides[name] = convert(value)

        defaults = DetectionThresholds()
        for name, value in overrides.items():
            configured = getattr(self, name)
            if configured != getattr(defaults, name) and configured != value:
                logger.warning(
                    "settings.json value %s=%r is replaced by fraud_detection_rules (%r)",
                    name, configured, value,
                )
        return self.with_overrides(overrides)


# Rule threshold_config key → (DetectionThresholds field, converter)
RULE_KEY_MAP = {
    "max_transactions_per_hour": ("hourly_count_limit", int),
    "max_amount_per_hour": ("hourly_amount_limit", float),
    "require_cookies": ("require_cookies", bool),
    "block_headless": ("block_headless", bool),
    "min_interaction_time": ("min_page_view_ms", lambda seconds: float(seconds) * 1000.0),
    "max_interaction_speed": ("max_interaction_speed", float),
    "max_first_transaction": ("max_first_transaction", float),
    "flag_round_amounts": ("flag_round_amounts", bool),
    "min_amount": ("round_amount_min", float),
}


@dataclass(frozen=True)
class DecisionPolicy:
    """Cut-offs turning a risk score into a recommendation."""
    block_score: int = 80
    review_score: int = 60
    block_trust: int = 10
    review_trust: int = 30
    review_trust_amount: float = 200.0

    # Database-rule flag (should_flag_transaction)
    flag_trust: int = 30
    flag_trust_with_amount: int = 50
    flag_amount_with_trust: float = 500.0
    flag_recent_transactions: int = 5
    flag_amount: float = 1000.0

    # Safe default when the whole assessment fails
    fallback_risk_score: int = 50

    def with_overrides(self, overrides: Dict[str, Any]) -> "DecisionPolicy":
        known = {f.name for f in fields(self)}
        accepted = {}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("Ignoring unknown decision override: %s", key)
                continue
            accepted[key] = _coerce(value, getattr(self, key))
        return replace(self, **accepted) if accepted else self


@dataclass(frozen=True)
class Settings:
    thresholds: DetectionThresholds = field(default_factory=DetectionThresholds)
    decision: DecisionPolicy = field(default_factory=DecisionPolicy)

    def to_dict(self) -> Dict[str, Any]:
        return {"thresholds": asdict(self.thresholds), "decision": asdict(self.decision)}


def _coerce(value: Any, current: Any) -> Any:
    """Cast an override to the type of the current default."""
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


# ============================================================
# settings.json management
# ============================================================

def load_settings(path: Optional[Path] = None) -> Settings:
    """
    Load settings from JSON, falling back to defaults.

    A missing file, unreadable file or invalid JSON yields the defaults.
    """
    settings_path = path or get_settings_path()
    defaults = Settings()

    if not settings_path.exists():
        return defaults

    try:
        with open(settings_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        logger.warning("Could not read %s, using defaults: %s", settings_path, e)
        return defaults

    if not isinstance(raw, dict):
        logger.warning("Settings file %s is not a JSON object, using defaults", settings_path)
        return defaults

    return Settings(
        thresholds=defaults.thresholds.with_overrides(raw.get("thresholds") or {}),
        decision=defaults.decision.with_overrides(raw.get("decision") or {}),
    )


def save_settings(settings: Settings, path: Optional[Path] = None) -> bool:
    """
    Write settings to JSON.

    Returns:
        True if successful, False otherwise
    """
    settings_path = path or get_settings_path()
    try:
        settings_path.parent.mkdir(parents=True, exist_ok=True)
        with open(settings_path, "w", encoding="utf-8") as f:
            json.dump(settings.to_dict(), f, indent=2)
        return True
    except IOError as e:
        logger.error("Could not write settings to %s: %s", settings_path, e)
        return False
