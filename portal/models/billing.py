"""
Billing models: billing modes, subscription states and spending-alert state.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes read back from the database as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BillingMode(str, Enum):
    FREE = "free"
    PREPAID = "prepaid"
    POSTPAID = "postpaid"


class SubscriptionStatus(str, Enum):
    """Mirrors Stripe subscription statuses the portal acts on."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class SpendingAlertState(BaseModel):
    """Thresholds already alerted for one calendar month."""

    model_config = ConfigDict(frozen=True)

    month: str = Field(description="YYYY-MM")
    alerts_sent: List[int] = Field(default_factory=list)

    @classmethod
    def from_raw(cls, raw, month: str) -> "SpendingAlertState":
        if not raw or raw.get("month") != month:
            return cls(month=month, alerts_sent=[])
        return cls(month=month, alerts_sent=list(raw.get("alerts_sent") or []))
