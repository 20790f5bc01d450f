"""Subscription status models: locally derived status and the backend's record."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .product import SubscriptionTier
from .transaction import as_utc


class StatusKind(str, Enum):
    """Locally derived subscription status; values are the backend wire values."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class DerivedStatus(BaseModel):
    """Status computed from a single transaction.

    This is only a proposal sent to the backend, never shown to users as-is.
    """

    model_config = ConfigDict(frozen=True)

    kind: StatusKind = Field(..., description="Derived status")
    will_renew: bool = Field(default=False, description="Whether the platform will auto-renew")

    @classmethod
    def active(cls, will_renew: bool) -> "DerivedStatus":
        return cls(kind=StatusKind.ACTIVE, will_renew=will_renew)

    @classmethod
    def cancelled(cls) -> "DerivedStatus":
        return cls(kind=StatusKind.CANCELLED, will_renew=False)

    @classmethod
    def expired(cls) -> "DerivedStatus":
        return cls(kind=StatusKind.EXPIRED, will_renew=False)

    @property
    def is_active(self) -> bool:
        return self.kind is StatusKind.ACTIVE


class BackendSubscriptionInfo(BaseModel):
    """Authoritative subscription record returned by the backend ledger.

    Accepts both snake_case and camelCase field names in responses.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "status": "active",
                "plan": "Pods Plus Monthly",
                "expires_at": "2026-11-01T09:30:00.000Z",
                "renews": True,
                "seats": 1,
                "can_create_new_team": False,
            }
        },
    )

    status: str = Field(..., description="Backend status (active, cancelled, expired, none)")
    plan: Optional[str] = Field(None, description="Plan name, matches SubscriptionTier values")
    expires_at: Optional[datetime] = Field(
        None,
        validation_alias=AliasChoices("expires_at", "expiresAt"),
        description="End of the current paid period",
    )
    renews: bool = Field(default=False, description="Whether the subscription renews")
    seats: Optional[int] = Field(None, description="Seat count for team plans")
    can_create_new_team: bool = Field(
        default=False,
        validation_alias=AliasChoices("can_create_new_team", "canCreateNewTeam"),
        description="Whether the user may create a new team",
    )

    @field_validator("expires_at")
    @classmethod
    def _normalize_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def is_cancelled(self) -> bool:
        return self.status == StatusKind.CANCELLED.value

    @property
    def tier(self) -> SubscriptionTier:
        return SubscriptionTier.from_plan(self.plan)

    def has_active_subscription(self, now: Optional[datetime] = None) -> bool:
        """Whether the user currently has paid access.

        Active subscriptions always qualify; cancelled ones qualify until
        ``expires_at`` passes.
        """
        if self.status == StatusKind.ACTIVE.value:
            return True
        if self.is_cancelled and self.expires_at is not None:
            now = now or datetime.now(timezone.utc)
            return self.expires_at > now
        return False

    def should_show_renew_button(self, now: Optional[datetime] = None) -> bool:
        """Cancelled subscriptions still inside their paid period can be renewed."""
        return self.is_cancelled and self.has_active_subscription(now)
