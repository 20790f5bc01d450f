"""Engine configuration models loaded from engine.yaml."""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .product import DEFAULT_BUNDLE_ID, BillingInterval, SubscriptionTier

DEFAULT_RECONCILE_INTERVAL_SECONDS = 15 * 60


class BackendConfig(BaseModel):
    """Backend ledger connection settings."""

    base_url: str = Field(..., description="Backend base URL (e.g., https://api.example.com)")
    timeout_seconds: float = Field(default=20.0, gt=0, description="Per-request timeout")
    api_token: Optional[str] = Field(None, description="Bearer token sent with every request")

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class CatalogConfig(BaseModel):
    """Product catalog settings."""

    bundle_id: str = Field(default=DEFAULT_BUNDLE_ID, description="Product id prefix shared by all tiers")
    product_ids: list[str] = Field(
        default_factory=list,
        description="Product ids to fetch; derived from bundle_id when empty",
    )

    def resolved_product_ids(self) -> list[str]:
        """Product ids to request from the billing authority."""
        if self.product_ids:
            return list(self.product_ids)
        return [
            tier.product_id(interval, self.bundle_id)
            for tier in (SubscriptionTier.PLUS_MONTHLY, SubscriptionTier.TEAM_MONTHLY)
            for interval in (BillingInterval.MONTHLY, BillingInterval.ANNUAL)
        ]


class ReconcilerConfig(BaseModel):
    """Periodic reconciliation settings."""

    enabled: bool = Field(default=True, description="Run the periodic reconciler")
    interval_seconds: float = Field(
        default=DEFAULT_RECONCILE_INTERVAL_SECONDS,
        gt=0,
        description="Seconds between reconciliation scans",
    )


class PubSubConfig(BaseModel):
    """Google Cloud Pub/Sub subscription carrying real-time notifications."""

    project_id: str = Field(..., description="GCP project ID")
    subscription: str = Field(..., description="Subscription name")
    max_messages: int = Field(default=100, gt=0, description="Flow control: max outstanding messages")


class EngineConfig(BaseModel):
    """Complete engine.yaml configuration."""

    user_email: Optional[str] = Field(None, description="Signed-in user identity, if known at start")
    backend: BackendConfig
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    pubsub: Optional[PubSubConfig] = Field(None, description="Real-time notification feed")

    class Config:
        json_schema_extra = {
            "example": {
                "user_email": "a@b.com",
                "backend": {"base_url": "https://api.example.com", "timeout_seconds": 20},
                "catalog": {"bundle_id": "com.humuli.pods"},
                "reconciler": {"enabled": True, "interval_seconds": 900},
                "pubsub": {"project_id": "pods-prod", "subscription": "store-notifications-sub"},
            }
        }
