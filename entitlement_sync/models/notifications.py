"""Real-time store notification payloads received over Pub/Sub.

Follows the Google Play real-time developer notification schema; only the
fields needed to look up and verify the affected transaction are modelled.
"""

from enum import IntEnum
from typing import Optional

from pydantic import BaseModel, Field


class NotificationType(IntEnum):
    """Subscription notification types."""

    SUBSCRIPTION_RECOVERED = 1
    SUBSCRIPTION_RENEWED = 2
    SUBSCRIPTION_CANCELED = 3
    SUBSCRIPTION_PURCHASED = 4
    SUBSCRIPTION_ON_HOLD = 5
    SUBSCRIPTION_IN_GRACE_PERIOD = 6
    SUBSCRIPTION_RESTARTED = 7
    SUBSCRIPTION_PRICE_CHANGE_CONFIRMED = 8
    SUBSCRIPTION_DEFERRED = 9
    SUBSCRIPTION_PAUSED = 10
    SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED = 11
    SUBSCRIPTION_REVOKED = 12
    SUBSCRIPTION_EXPIRED = 13


class SubscriptionNotification(BaseModel):
    """Subscription event carried by a StoreNotification."""

    version: str = Field(default="1.0")
    notification_type: int = Field(..., description="Type of notification (1-13)")
    purchase_token: str = Field(..., description="Token identifying the transaction")
    subscription_id: str = Field(..., description="Subscription product id")

    @property
    def type_name(self) -> str:
        try:
            return NotificationType(self.notification_type).name
        except ValueError:
            return f"UNKNOWN_{self.notification_type}"


class TestNotification(BaseModel):
    """Sent by the store console to validate the Pub/Sub setup."""

    __test__ = False

    version: str = Field(default="1.0")


class StoreNotification(BaseModel):
    """Root message published to the notifications topic."""

    version: str = Field(default="1.0")
    package_name: str = Field(..., description="Application package name")
    event_time_millis: int = Field(..., description="Event timestamp (Unix millis)")
    subscription_notification: Optional[SubscriptionNotification] = Field(None)
    test_notification: Optional[TestNotification] = Field(None)

    class Config:
        json_schema_extra = {
            "example": {
                "version": "1.0",
                "package_name": "com.humuli.pods",
                "event_time_millis": 1760000000000,
                "subscription_notification": {
                    "version": "1.0",
                    "notification_type": NotificationType.SUBSCRIPTION_RENEWED,
                    "purchase_token": "opaque-purchase-token-abc123",
                    "subscription_id": "com.humuli.pods.plus.month",
                },
            }
        }
