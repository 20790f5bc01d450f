"""Billing authority records: transactions, verification results, renewal states.

These are produced by the billing authority and only read by the engine.
"""

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so comparisons never mix naive and aware."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Transaction(BaseModel):
    """Signed purchase record issued by the billing authority."""

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "id": "2000000512345678",
                "product_id": "com.humuli.pods.plus.month",
                "purchase_date": "2026-10-01T09:30:00Z",
                "expiration_date": "2026-11-01T09:30:00Z",
                "revocation_date": None,
            }
        },
    )

    id: str = Field(..., description="Transaction id")
    product_id: str = Field(..., description="Purchased product id")
    purchase_date: datetime = Field(..., description="When the transaction was purchased")
    expiration_date: Optional[datetime] = Field(None, description="Subscription period end")
    revocation_date: Optional[datetime] = Field(None, description="When the billing authority revoked it")
    original_id: Optional[str] = Field(None, description="Id of the first transaction in the renewal chain")

    @field_validator("purchase_date", "expiration_date", "revocation_date")
    @classmethod
    def _normalize_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class VerificationResult(BaseModel):
    """Outcome of the billing authority's signature verification.

    Only verified transactions are ever trusted by the engine.
    """

    model_config = ConfigDict(frozen=True)

    is_verified: bool = Field(..., description="Whether the signature was validated")
    transaction: Optional[Transaction] = Field(None, description="Decoded transaction payload")
    reason: Optional[str] = Field(None, description="Why verification failed")

    @model_validator(mode="after")
    def _verified_requires_transaction(self) -> "VerificationResult":
        if self.is_verified and self.transaction is None:
            raise ValueError("A verified result must carry a transaction")
        return self

    @classmethod
    def verified(cls, transaction: Transaction) -> "VerificationResult":
        return cls(is_verified=True, transaction=transaction)

    @classmethod
    def unverified(
        cls, transaction: Optional[Transaction] = None, reason: Optional[str] = None
    ) -> "VerificationResult":
        return cls(is_verified=False, transaction=transaction, reason=reason)


class RenewalState(IntEnum):
    """Platform-reported subscription state used for renewal-intent lookups."""

    SUBSCRIBED = 1  # Active subscription
    EXPIRED = 2  # Period ended without renewal
    IN_BILLING_RETRY_PERIOD = 3  # Renewal payment failed, platform retrying
    IN_GRACE_PERIOD = 4  # Renewal payment failed, access retained
    REVOKED = 5  # Refunded or revoked by the platform
    UNKNOWN = 0  # State this engine does not recognise


class PlatformSubscriptionStatus(BaseModel):
    """One entry of the billing authority's subscription status list."""

    model_config = ConfigDict(frozen=True)

    state: RenewalState = Field(..., description="Platform subscription state")
    will_auto_renew: bool = Field(default=False, description="Auto-renew preference")
    renewal_info_verified: bool = Field(
        default=True, description="Whether the renewal info signature was validated"
    )


class PurchaseOutcomeKind(str, Enum):
    """Raw outcome of the billing authority's purchase sheet."""

    SUCCESS = "success"
    USER_CANCELLED = "user_cancelled"
    PENDING = "pending"
    UNKNOWN = "unknown"


class PurchaseOutcome(BaseModel):
    """Result of ``BillingAuthority.purchase``."""

    model_config = ConfigDict(frozen=True)

    kind: PurchaseOutcomeKind = Field(..., description="Outcome kind")
    verification: Optional[VerificationResult] = Field(
        None, description="Verification result, present for SUCCESS"
    )

    @classmethod
    def success(cls, verification: VerificationResult) -> "PurchaseOutcome":
        return cls(kind=PurchaseOutcomeKind.SUCCESS, verification=verification)

    @classmethod
    def user_cancelled(cls) -> "PurchaseOutcome":
        return cls(kind=PurchaseOutcomeKind.USER_CANCELLED)

    @classmethod
    def pending(cls) -> "PurchaseOutcome":
        return cls(kind=PurchaseOutcomeKind.PENDING)
