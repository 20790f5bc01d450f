"""Pydantic models for products, transactions, statuses, events and settings."""

# Catalog models
from .product import (
    DEFAULT_BUNDLE_ID,
    BillingInterval,
    Product,
    SubscriptionTier,
)

# Billing authority records
from .transaction import (
    PlatformSubscriptionStatus,
    PurchaseOutcome,
    PurchaseOutcomeKind,
    RenewalState,
    Transaction,
    VerificationResult,
)

# Status models
from .status import (
    BackendSubscriptionInfo,
    DerivedStatus,
    StatusKind,
)

# Event bus notifications
from .events import (
    EngineEvent,
    PurchaseCompleted,
    StatusUpdated,
)

# Configuration
from .settings import (
    BackendConfig,
    CatalogConfig,
    EngineConfig,
    PubSubConfig,
    ReconcilerConfig,
)

__all__ = [
    # Catalog
    "DEFAULT_BUNDLE_ID",
    "BillingInterval",
    "Product",
    "SubscriptionTier",
    # Billing authority
    "PlatformSubscriptionStatus",
    "PurchaseOutcome",
    "PurchaseOutcomeKind",
    "RenewalState",
    "Transaction",
    "VerificationResult",
    # Status
    "BackendSubscriptionInfo",
    "DerivedStatus",
    "StatusKind",
    # Events
    "EngineEvent",
    "PurchaseCompleted",
    "StatusUpdated",
    # Configuration
    "BackendConfig",
    "CatalogConfig",
    "EngineConfig",
    "PubSubConfig",
    "ReconcilerConfig",
]
