"""State change logging for entitlements, derived statuses and the reconciler.

Tracks transitions with before/after values for debugging and auditing.
"""

from datetime import datetime
from typing import Any, Optional

from entitlement_sync.logging_config import get_logger

logger = get_logger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def log_entitlement_change(
    product_id: str,
    old_transaction_id: Optional[str],
    new_transaction_id: str,
    new_purchase_date: datetime,
    **extra_context: Any,
) -> None:
    """Log an EntitlementStore entry being created or replaced.

    Args:
        product_id: Product whose entry changed
        old_transaction_id: Previously held transaction id, None on creation
        new_transaction_id: Newly held transaction id
        new_purchase_date: Purchase date of the new transaction
        **extra_context: Additional context (expiration, source, etc.)
    """
    logger.info(
        "entitlement_created" if old_transaction_id is None else "entitlement_replaced",
        product_id=product_id,
        old_transaction_id=old_transaction_id,
        new_transaction_id=new_transaction_id,
        purchase_date=_iso(new_purchase_date),
        **extra_context,
    )


def log_stale_transaction_ignored(
    product_id: str,
    held_transaction_id: str,
    held_purchase_date: datetime,
    incoming_transaction_id: str,
    incoming_purchase_date: datetime,
) -> None:
    """Log an upsert that lost to a newer held transaction."""
    logger.debug(
        "stale_transaction_ignored",
        product_id=product_id,
        held_transaction_id=held_transaction_id,
        held_purchase_date=_iso(held_purchase_date),
        incoming_transaction_id=incoming_transaction_id,
        incoming_purchase_date=_iso(incoming_purchase_date),
    )


def log_status_proposal(
    product_id: str,
    proposed_status: str,
    will_renew: bool,
    authoritative_status: str,
    **extra_context: Any,
) -> None:
    """Log a derived status proposal next to the backend's answer.

    Args:
        product_id: Product id
        proposed_status: Locally derived status value
        will_renew: Locally derived renewal flag
        authoritative_status: Status returned by the backend
        **extra_context: Additional context (source, plan, etc.)
    """
    logger.info(
        "status_proposal_overridden" if proposed_status != authoritative_status else "status_proposal_accepted",
        product_id=product_id,
        proposed_status=proposed_status,
        will_renew=will_renew,
        authoritative_status=authoritative_status,
        **extra_context,
    )


def log_backend_record_change(
    old_status: Optional[str],
    new_status: str,
    plan: Optional[str],
    expires_at: Optional[datetime],
    **extra_context: Any,
) -> None:
    """Log a change of the cached authoritative backend record."""
    logger.info(
        "backend_record_changed",
        old_status=old_status,
        new_status=new_status,
        plan=plan,
        expires_at=_iso(expires_at),
        **extra_context,
    )


def log_reconciler_state_change(
    old_state: Any,
    new_state: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log a periodic reconciler state transition."""
    logger.debug(
        "reconciler_state_changed",
        old_state=str(old_state),
        new_state=str(new_state),
        reason=reason,
        **extra_context,
    )
