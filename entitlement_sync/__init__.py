"""Entitlement sync - reconciles platform purchases with the backend ledger."""

__version__ = "0.1.0"

from entitlement_sync.billing.authority import BillingAuthority, TransactionChannel
from entitlement_sync.config import ConfigurationError, load_config
from entitlement_sync.models import (
    BackendSubscriptionInfo,
    BillingInterval,
    EngineConfig,
    Product,
    PurchaseCompleted,
    StatusUpdated,
    SubscriptionTier,
    Transaction,
    VerificationResult,
)
from entitlement_sync.services.subscription_engine import SubscriptionEngine

__all__ = [
    "BackendSubscriptionInfo",
    "BillingAuthority",
    "BillingInterval",
    "ConfigurationError",
    "EngineConfig",
    "Product",
    "PurchaseCompleted",
    "StatusUpdated",
    "SubscriptionEngine",
    "SubscriptionTier",
    "Transaction",
    "TransactionChannel",
    "VerificationResult",
    "load_config",
]
