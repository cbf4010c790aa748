"""
Process settings and default business policy.

Everything the engine treats as tunable product policy lives here and can be
overridden per business through the `policy` JSON column.
"""

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Invalid float for {name}: {raw!r}") from None


DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./dispatchline.db")

TWILIO_ACCOUNT_SID = os.environ.get("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.environ.get("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.environ.get("TWILIO_PHONE_NUMBER")

CALCOM_API_KEY = os.environ.get("CALCOM_API_KEY")
CALCOM_API_URL = os.environ.get("CALCOM_API_URL", "https://api.cal.com/v2")

GOOGLE_MAPS_API_KEY = os.environ.get("GOOGLE_MAPS_API_KEY")

MAILCHIMP_API_KEY = os.environ.get("MAILCHIMP_API_KEY")
FROM_EMAIL = os.environ.get("FROM_EMAIL", "dispatch@dispatchline.app")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

ASSIGNMENT_TIMEOUT_SECONDS = _env_int("ASSIGNMENT_TIMEOUT_SECONDS", 10)
ASSIGNMENT_MAX_RETRIES = _env_int("ASSIGNMENT_MAX_RETRIES", 3)

# Straight-line fallback when the routing provider is unavailable.
FALLBACK_SPEED_MPH = _env_float("FALLBACK_SPEED_MPH", 30.0)


DEFAULT_BUSINESS_HOURS = {
    "mon": {"open": "08:00", "close": "17:00", "enabled": True},
    "tue": {"open": "08:00", "close": "17:00", "enabled": True},
    "wed": {"open": "08:00", "close": "17:00", "enabled": True},
    "thu": {"open": "08:00", "close": "17:00", "enabled": True},
    "fri": {"open": "08:00", "close": "17:00", "enabled": True},
    "sat": {"open": "08:00", "close": "17:00", "enabled": False},
    "sun": {"open": "08:00", "close": "17:00", "enabled": False},
}

WEEKDAY_KEYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


@dataclass(frozen=True)
class BusinessPolicy:
    """Read-only scheduling policy for one business."""

    timezone: str = "UTC"
    trade: str = "general"
    business_hours: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: dict(DEFAULT_BUSINESS_HOURS)
    )
    allow_weekend_booking: bool = True
    require_on_call_for_weekend: bool = False
    emergency_keywords: List[str] = field(default_factory=list)
    confidence_escalation_threshold: float = 0.5

    travel_buffer_minutes: int = 30
    cleanup_buffer_minutes: int = 20
    default_duration_minutes: int = 90
    service_duration_minutes: int = 60

    first_job_cutoff_hour: int = 11
    same_day_threshold_hour: int = 14
    late_cutoff_hour: int = 16

    emergency_lead_minutes: int = 30
    routine_lead_minutes: int = 120

    max_results: int = 20
    emergency_ack_timeout_minutes: int = 5

    def hours_for(self, weekday: int) -> Optional[Dict[str, Any]]:
        """Business hours for a weekday (0=Monday), or None when closed."""
        day = self.business_hours.get(WEEKDAY_KEYS[weekday])
        if not day or not day.get("enabled", True):
            return None
        return day

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> "BusinessPolicy":
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        return replace(self, **{k: v for k, v in overrides.items() if k in known})


DEFAULT_POLICY = BusinessPolicy()


def policy_for_business(business) -> BusinessPolicy:
    """Build the effective policy from a Business row."""
    if business is None:
        return DEFAULT_POLICY

    policy = replace(
        DEFAULT_POLICY,
        timezone=business.timezone or DEFAULT_POLICY.timezone,
        trade=(business.trade or DEFAULT_POLICY.trade).lower(),
        business_hours=business.business_hours or dict(DEFAULT_BUSINESS_HOURS),
        allow_weekend_booking=(
            DEFAULT_POLICY.allow_weekend_booking
            if business.allow_weekend_booking is None
            else bool(business.allow_weekend_booking)
        ),
        require_on_call_for_weekend=bool(business.require_on_call_for_weekend),
    )
    return policy.with_overrides(business.policy)
