"""Billing authority contract consumed by the engine.

The platform billing authority is an external collaborator: it fetches
products, runs the purchase sheet, verifies signed transactions and reports
renewal state. Adapters implement ``BillingAuthority``; live transaction
updates are delivered through a ``TransactionChannel``.
"""

import queue
import threading
from typing import Callable, Iterable, Iterator, List, Optional, Protocol

from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.product import Product
from entitlement_sync.models.transaction import (
    PlatformSubscriptionStatus,
    PurchaseOutcome,
    Transaction,
    VerificationResult,
)

logger = get_logger(__name__)

_CLOSED = object()


class TransactionChannel:
    """Unbounded queue of verification results with an explicit close.

    The billing adapter puts results; a single consumer iterates. Iteration
    blocks until the next result and ends once the channel is closed.
    """

    def __init__(
        self,
        name: str = "transaction_updates",
        on_close: Optional[Callable[[], None]] = None,
    ):
        """Initialize the channel.

        Args:
            name: Channel name used in logs
            on_close: Called once when the channel closes (adapters unsubscribe here)
        """
        self.name = name
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._closed = threading.Event()
        self._close_lock = threading.Lock()
        self._on_close = on_close

    def put(self, result: VerificationResult) -> bool:
        """Enqueue a result.

        Returns:
            False if the channel is already closed and the result was dropped
        """
        with self._close_lock:
            if self._closed.is_set():
                logger.debug("channel_put_after_close", channel=self.name)
                return False
            self._queue.put(result)
        return True

    def close(self) -> None:
        """Close the channel; idempotent. Pending results are still delivered."""
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._queue.put(_CLOSED)
        if self._on_close is not None:
            self._on_close()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __iter__(self) -> Iterator[VerificationResult]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]


class TransactionVerifier(Protocol):
    """Resolves a raw transaction token into a verification result."""

    def __call__(self, token: str, product_id: str) -> VerificationResult: ...


class BillingAuthority(Protocol):
    """Platform billing operations used by the engine."""

    def fetch_products(self, product_ids: List[str]) -> List[Product]:
        """Fetch catalog products for the given ids."""
        ...

    def current_entitlements(self) -> Iterable[VerificationResult]:
        """Snapshot of the entitlements the platform currently grants."""
        ...

    def transaction_updates(self) -> TransactionChannel:
        """Live, unbounded stream of transaction updates."""
        ...

    def purchase(self, product: Product) -> PurchaseOutcome:
        """Run the platform purchase flow for a product."""
        ...

    def subscription_status(self, product_id: str) -> List[PlatformSubscriptionStatus]:
        """Platform-reported subscription states for a product's group."""
        ...

    def finish(self, transaction: Transaction) -> None:
        """Tell the platform the transaction was handled so it stops redelivering it."""
        ...


def verified_transactions(results: Iterable[VerificationResult], source: Optional[str] = None):
    """Yield the transactions of verified results, logging discarded ones."""
    for result in results:
        if result.is_verified and result.transaction is not None:
            yield result.transaction
            continue
        logger.warning(
            "unverified_transaction_discarded",
            source=source,
            transaction_id=result.transaction.id if result.transaction else None,
            product_id=result.transaction.product_id if result.transaction else None,
            reason=result.reason,
        )


def finish_transaction(billing: BillingAuthority, transaction: Transaction, source: str) -> bool:
    """Finish a handled transaction; failures are logged, never raised.

    Returns:
        True if the billing authority accepted the finish
    """
    try:
        billing.finish(transaction)
    except Exception as e:
        logger.warning(
            "transaction_finish_failed",
            source=source,
            product_id=transaction.product_id,
            transaction_id=transaction.id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return False
    logger.debug(
        "transaction_finished",
        source=source,
        product_id=transaction.product_id,
        transaction_id=transaction.id,
    )
    return True
