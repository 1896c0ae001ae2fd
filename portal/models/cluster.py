from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ClusterStatus(str, Enum):
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    FULL = "full"
    INACTIVE = "inactive"


class ClusterCapacity(BaseModel):
    """Snapshot of one cluster's load, as read before selection."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    current_users: int
    max_users: int

    @property
    def has_room(self) -> bool:
        return self.current_users < self.max_users


class Cluster(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    api_url: str
    api_key: str
    verify_tls: bool = True
    current_users: int = 0
    max_users: int = 0
    status: ClusterStatus = ClusterStatus.ACTIVE

    @classmethod
    def from_row(cls, row) -> "Cluster":
        return cls(**{k: v for k, v in dict(row._mapping).items() if k in cls.model_fields})

    def capacity(self) -> ClusterCapacity:
        return ClusterCapacity(
            id=self.id,
            name=self.name,
            current_users=self.current_users,
            max_users=self.max_users,
        )


class Assignment(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    hopsworks_cluster_id: str
    hopsworks_user_id: Optional[int] = None
    hopsworks_username: Optional[str] = None
    assigned_at: Optional[datetime] = None
