"""Product catalog models: subscription tiers, billing intervals, products."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_BUNDLE_ID = "com.humuli.pods"


class BillingInterval(str, Enum):
    """Billing interval offered for each paid tier."""

    MONTHLY = "monthly"
    ANNUAL = "annual"

    @property
    def product_suffix(self) -> str:
        """Suffix appended to a tier prefix to form a product id."""
        return "year" if self is BillingInterval.ANNUAL else "month"


class SubscriptionTier(str, Enum):
    """Subscription tier; values match the backend's plan names."""

    NONE = "None"
    PLUS_MONTHLY = "Pods Plus Monthly"
    PLUS_YEARLY = "Pods Plus Yearly"
    TEAM_MONTHLY = "Pods Team Monthly"
    TEAM_YEARLY = "Pods Team Yearly"

    @property
    def family(self) -> str:
        """Product family segment of the product id ("plus", "team" or "")."""
        if self in (SubscriptionTier.PLUS_MONTHLY, SubscriptionTier.PLUS_YEARLY):
            return "plus"
        if self in (SubscriptionTier.TEAM_MONTHLY, SubscriptionTier.TEAM_YEARLY):
            return "team"
        return ""

    @property
    def display_name(self) -> str:
        """Human readable tier name."""
        return {"plus": "Pods+", "team": "Pods Team"}.get(self.family, "Free")

    @property
    def product_id_prefix(self) -> str:
        """Product id prefix under the default bundle id."""
        return self.prefix_for(DEFAULT_BUNDLE_ID)

    def prefix_for(self, bundle_id: str) -> str:
        """Product id prefix under the given bundle id ("" for the free tier)."""
        if not self.family:
            return ""
        return f"{bundle_id}.{self.family}"

    def product_id(self, interval: BillingInterval, bundle_id: str = DEFAULT_BUNDLE_ID) -> str:
        """Concrete product id for this tier and billing interval.

        Raises:
            ValueError: For the free tier, which has no product
        """
        prefix = self.prefix_for(bundle_id)
        if not prefix:
            raise ValueError(f"Tier {self.name} has no purchasable product")
        return f"{prefix}.{interval.product_suffix}"

    @property
    def features(self) -> list[str]:
        """Feature list shown for the tier."""
        return list(_TIER_FEATURES[self.family])

    @classmethod
    def from_plan(cls, plan: Optional[str]) -> "SubscriptionTier":
        """Parse a backend plan name; unknown or missing plans map to NONE."""
        if not plan:
            return cls.NONE
        try:
            return cls(plan)
        except ValueError:
            return cls.NONE

    @classmethod
    def for_product_id(cls, product_id: str) -> "SubscriptionTier":
        """Infer the tier of a product id such as "com.humuli.pods.team.year"."""
        parts = product_id.rsplit(".", 2)
        if len(parts) < 3:
            return cls.NONE
        family, suffix = parts[-2], parts[-1]
        return _TIER_BY_FAMILY.get((family, suffix), cls.NONE)


_SHARED_PAID_FEATURES = [
    "Unlimited pods",
    "Unlimited items",
    "Unlimited workspaces",
    "AI automation features",
    "Data tracking and analysis",
    "Customize column colors",
    "Video integration",
    "Collaboration features",
    "Free templates",
]

_TIER_FEATURES: dict[str, list[str]] = {
    "": ["Limited features"],
    "plus": _SHARED_PAID_FEATURES + ["Activity logs from up to 2 weeks"],
    "team": [
        "Create a new team",
        "Team dashboard with analytics",
        "Individual team members' analytics",
        "Activity logs from up to 1 month",
    ]
    + _SHARED_PAID_FEATURES,
}

_TIER_BY_FAMILY = {
    ("plus", "month"): SubscriptionTier.PLUS_MONTHLY,
    ("plus", "year"): SubscriptionTier.PLUS_YEARLY,
    ("team", "month"): SubscriptionTier.TEAM_MONTHLY,
    ("team", "year"): SubscriptionTier.TEAM_YEARLY,
}


class Product(BaseModel):
    """Product as returned by the billing authority's catalog fetch."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Product id (e.g., com.humuli.pods.plus.month)")
    display_name: str = Field(default="", description="Localized product name")
    description: str = Field(default="", description="Localized product description")
    display_price: str = Field(default="", description="Opaque localized price text")
    tier: SubscriptionTier = Field(default=SubscriptionTier.NONE, description="Tier classification")

    @classmethod
    def from_id(cls, product_id: str, **kwargs) -> "Product":
        """Build a product, inferring its tier from the id."""
        kwargs.setdefault("tier", SubscriptionTier.for_product_id(product_id))
        return cls(id=product_id, **kwargs)
