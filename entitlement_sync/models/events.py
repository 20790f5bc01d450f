"""Engine notifications published on the event bus.

Observers (UI refresh, onboarding progression) subscribe by event class.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .status import BackendSubscriptionInfo


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EngineEvent(BaseModel):
    """Base class for all engine notifications."""

    model_config = ConfigDict(frozen=True)

    occurred_at: datetime = Field(default_factory=_utcnow, description="When the event was emitted")


class StatusUpdated(EngineEvent):
    """The backend returned a new authoritative record."""

    info: BackendSubscriptionInfo = Field(..., description="Authoritative record")
    product_id: Optional[str] = Field(None, description="Product whose sync produced the record")
    source: str = Field(..., description="Trigger: listener, periodic, purchase, force_check, ...")


class PurchaseCompleted(EngineEvent):
    """A purchase was verified and confirmed by the backend."""

    product_id: str = Field(..., description="Purchased product id")
    transaction_id: str = Field(..., description="Verified transaction id")
    info: BackendSubscriptionInfo = Field(..., description="Record returned by the backend")
