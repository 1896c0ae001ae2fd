from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict

from portal.models.billing import BillingMode, as_utc


class UserStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


@dataclass(frozen=True)
class Owner:
    """Account owner: billed directly, owns projects and team members."""

    user_id: str


@dataclass(frozen=True)
class TeamMember:
    """Team member billed through (and cascading from) its owner."""

    user_id: str
    owner_id: str


AccountRole = Union[Owner, TeamMember]


def account_role(user_id: str, account_owner_id: Optional[str]) -> AccountRole:
    if account_owner_id:
        return TeamMember(user_id=user_id, owner_id=account_owner_id)
    return Owner(user_id=user_id)


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: Optional[str] = None
    billing_mode: Optional[BillingMode] = None
    status: UserStatus = UserStatus.ACTIVE
    account_owner_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_subscription_status: Optional[str] = None
    hopsworks_user_id: Optional[int] = None
    hopsworks_username: Optional[str] = None
    spending_cap: Optional[float] = None
    spending_alerts_sent: Optional[Dict[str, Any]] = None
    downgrade_deadline: Optional[datetime] = None
    feature_flags: Dict[str, Any] = {}
    login_count: int = 0
    created_at: Optional[datetime] = None

    @property
    def role(self) -> AccountRole:
        return account_role(self.id, self.account_owner_id)

    @property
    def is_team_member(self) -> bool:
        return isinstance(self.role, TeamMember)

    @property
    def billing_owner_id(self) -> str:
        """The user whose Stripe customer pays for this account."""
        return self.account_owner_id or self.id

    @property
    def has_subscription(self) -> bool:
        return bool(self.stripe_subscription_id)

    @property
    def is_prepaid(self) -> bool:
        return self.billing_mode == BillingMode.PREPAID

    @property
    def is_free_tier(self) -> bool:
        return self.billing_mode == BillingMode.FREE

    @classmethod
    def from_row(cls, row) -> "User":
        data = dict(row._mapping)
        data["downgrade_deadline"] = as_utc(data.get("downgrade_deadline"))
        data["feature_flags"] = data.get("feature_flags") or {}
        data["login_count"] = data.get("login_count") or 0
        return cls(**{k: v for k, v in data.items() if k in cls.model_fields})
