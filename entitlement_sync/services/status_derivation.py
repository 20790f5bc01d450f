"""Status derivation - pure function from a transaction to a DerivedStatus.

Priority order:
1. revoked -> CANCELLED
2. expired (expiration date not in the future) -> EXPIRED
3. otherwise ACTIVE, with will_renew resolved through the renewal-intent lookup
"""

from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.status import DerivedStatus
from entitlement_sync.models.transaction import (
    PlatformSubscriptionStatus,
    RenewalState,
    Transaction,
    as_utc,
)

logger = get_logger(__name__)

# product_id -> platform subscription states for that product
RenewalLookup = Callable[[str], Iterable[PlatformSubscriptionStatus]]

RENEWING_STATES = frozenset(
    {
        RenewalState.SUBSCRIBED,
        RenewalState.IN_GRACE_PERIOD,
        RenewalState.IN_BILLING_RETRY_PERIOD,
    }
)


def resolve_will_renew(product_id: str, renewal_lookup: RenewalLookup) -> bool:
    """Scan platform states for a confirmed auto-renewal.

    Only verified renewal info in a renewing state with auto-renew on counts.
    Any other entry is skipped. Unrecognised states are reported with a
    warning since they may hide a renewing subscription.

    Args:
        product_id: Product to look up
        renewal_lookup: Billing authority's subscription status query

    Returns:
        True if some state confirms auto-renewal, False otherwise
    """
    for status in renewal_lookup(product_id):
        if status.state is RenewalState.UNKNOWN:
            logger.warning(
                "renewal_state_unrecognized",
                product_id=product_id,
                will_auto_renew=status.will_auto_renew,
            )
            continue
        if not status.renewal_info_verified:
            logger.debug("renewal_info_unverified", product_id=product_id, state=status.state.name)
            continue
        if status.state in RENEWING_STATES and status.will_auto_renew:
            return True
    return False


def derive_status(
    transaction: Transaction,
    renewal_lookup: RenewalLookup,
    now: Optional[datetime] = None,
) -> DerivedStatus:
    """Derive the subscription status of a transaction at a point in time.

    Args:
        transaction: Held verified transaction
        renewal_lookup: Billing authority's subscription status query; only
            consulted for active transactions
        now: Evaluation time (defaults to the current UTC time)

    Returns:
        DerivedStatus
    """
    if transaction.revocation_date is not None:
        return DerivedStatus.cancelled()

    now = as_utc(now) or datetime.now(timezone.utc)
    if transaction.expiration_date is not None and transaction.expiration_date <= now:
        return DerivedStatus.expired()

    return DerivedStatus.active(
        will_renew=resolve_will_renew(transaction.product_id, renewal_lookup)
    )
