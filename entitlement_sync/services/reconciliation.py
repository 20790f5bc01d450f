"""Reconciliation pipeline shared by the listener, the timer and purchases.

One lock guards the EntitlementStore and the last known backend record.
Backend calls run outside that lock behind a per-product guard:

- a status sync arriving while one for the same product is in flight waits
  for that sync's result instead of starting a second write; the running
  sync proposes again if the held transaction changed meanwhile
- purchase recordings wait for the guard

so different products sync concurrently while one product never has two
backend writes racing.
"""

import threading
from concurrent.futures import Future
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from entitlement_sync.billing.authority import verified_transactions
from entitlement_sync.logging_config import bind_context, get_logger, unbind_context
from entitlement_sync.models.events import StatusUpdated
from entitlement_sync.models.status import BackendSubscriptionInfo
from entitlement_sync.models.transaction import Transaction, VerificationResult
from entitlement_sync.repositories.entitlement_store import EntitlementStore
from entitlement_sync.services.backend_client import BackendSyncClient
from entitlement_sync.services.event_bus import EventBus
from entitlement_sync.services.status_derivation import derive_status
from entitlement_sync.state_logger import log_backend_record_change, log_status_proposal

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineClosedError(Exception):
    """Raised when a purchase is recorded after the engine was shut down."""

    pass


class _ProductSync:
    """Backend guard for one product and the sync currently running behind it."""

    def __init__(self):
        self.guard = threading.Lock()
        self.future: Optional[Future] = None
        self.owner: Optional[int] = None
        self.dirty = False


class ReconciliationPipeline:
    """Serialized path from a verified transaction to the authoritative record."""

    def __init__(
        self,
        store: EntitlementStore,
        billing,
        backend: BackendSyncClient,
        event_bus: EventBus,
        user_email: Optional[str] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize the pipeline.

        Args:
            store: Entitlement store written only through this pipeline
            billing: Billing authority (renewal-intent lookups)
            backend: Backend ledger client
            event_bus: Bus receiving ``StatusUpdated`` events
            user_email: Signed-in user identity; syncs are skipped while unknown
            clock: Current time provider (defaults to UTC now)
        """
        self.store = store
        self._billing = billing
        self._backend = backend
        self._event_bus = event_bus
        self._clock = clock or utcnow

        self._lock = threading.RLock()
        self._products: Dict[str, _ProductSync] = {}
        self._last_info: Optional[BackendSubscriptionInfo] = None
        self._user_email = user_email
        self._closed = False
        self.collapsed_count = 0

    @property
    def user_email(self) -> Optional[str]:
        with self._lock:
            return self._user_email

    @user_email.setter
    def user_email(self, value: Optional[str]) -> None:
        with self._lock:
            self._user_email = value

    @property
    def last_info(self) -> Optional[BackendSubscriptionInfo]:
        """Last authoritative record received from the backend."""
        with self._lock:
            return self._last_info

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def close(self) -> None:
        """Refuse all further reconciliation; idempotent."""
        with self._lock:
            self._closed = True

    def record(self, transaction: Transaction) -> bool:
        """Upsert a verified transaction without syncing it."""
        with self._lock:
            return self.store.upsert(transaction)

    def reconcile(self, transaction: Transaction, source: str) -> Optional[BackendSubscriptionInfo]:
        """Upsert a verified transaction, derive its status and sync it.

        Args:
            transaction: Verified transaction
            source: Trigger name for logs and events

        Returns:
            Authoritative record (from the in-flight sync when one was
            already running for the product), or None when skipped

        Raises:
            BackendSyncError: If the backend sync fails
        """
        if self.closed:
            logger.debug("reconcile_after_close_ignored", product_id=transaction.product_id, source=source)
            return None

        self.record(transaction)
        return self.sync_product(transaction.product_id, source)

    def sync_product(self, product_id: str, source: str) -> Optional[BackendSubscriptionInfo]:
        """Derive the held transaction's status and propose it to the backend.

        A trigger arriving while a sync for the same product is in flight
        waits for that sync and returns its result. If the held transaction
        changed meanwhile, the running sync proposes again before finishing.

        Raises:
            BackendSyncError: If the backend sync fails
        """
        state = self._product_state(product_id)
        with self._lock:
            pending = state.future
            if pending is None:
                state.future = Future()
                state.owner = threading.get_ident()
            else:
                state.dirty = True
                self.collapsed_count += 1
                if state.owner == threading.get_ident():
                    # Re-entered from a StatusUpdated handler on the syncing thread.
                    return self._last_info

        if pending is not None:
            logger.info("sync_collapsed", product_id=product_id, source=source)
            return pending.result()
        return self._run_sync(state, product_id, source)

    def _run_sync(
        self, state: _ProductSync, product_id: str, source: str
    ) -> Optional[BackendSubscriptionInfo]:
        future = state.future
        bind_context(product_id=product_id, source=source)
        try:
            with state.guard:
                while True:
                    info, derived_from = self._sync_once(product_id, source)
                    with self._lock:
                        resync = (
                            state.dirty
                            and not self._closed
                            and self.store.get(product_id) != derived_from
                        )
                        state.dirty = False
                        if not resync:
                            state.future = None
                            state.owner = None
                            break
                    logger.info("sync_repeated_for_newer_transaction", product_id=product_id)
        except Exception as e:
            with self._lock:
                state.future = None
                state.owner = None
                state.dirty = False
            future.set_exception(e)
            raise
        finally:
            unbind_context("product_id", "source")

        future.set_result(info)
        return info

    def _sync_once(
        self, product_id: str, source: str
    ) -> Tuple[Optional[BackendSubscriptionInfo], Optional[Transaction]]:
        if self.closed:
            return None, None

        transaction = self.store.get(product_id)
        user_email = self.user_email
        if not user_email:
            logger.info("sync_skipped_no_user", product_id=product_id)
            return None, transaction
        if transaction is None:
            return None, None

        status = derive_status(transaction, self._billing.subscription_status, now=self._clock())
        info = self._backend.sync_status(
            user_email=user_email,
            product_id=product_id,
            status=status,
            will_renew=status.will_renew,
            expiration=transaction.expiration_date,
        )
        log_status_proposal(
            product_id=product_id,
            proposed_status=status.kind.value,
            will_renew=status.will_renew,
            authoritative_status=info.status,
            transaction_id=transaction.id,
        )
        self._apply_info(info, product_id, source)
        return info, transaction

    def record_purchase(self, transaction: Transaction, user_email: str) -> BackendSubscriptionInfo:
        """Upsert a freshly purchased transaction and register it with the backend.

        Waits for any in-flight backend call for the same product.

        Raises:
            PipelineClosedError: If the pipeline was closed
            BackendSyncError: If the backend call fails; the transaction stays upserted
        """
        if self.closed:
            raise PipelineClosedError("Subscription engine has been shut down")

        self.record(transaction)
        with self._product_state(transaction.product_id).guard:
            info = self._backend.record_purchase(
                product_id=transaction.product_id,
                user_email=user_email,
                transaction_id=transaction.id,
            )
            self._apply_info(info, transaction.product_id, "purchase")
        return info

    def reconcile_all(
        self,
        results: Iterable[VerificationResult],
        source: str,
        include_held: bool = True,
    ) -> Dict[str, Any]:
        """Reconcile an entitlements snapshot, then the held entries it omits.

        Per-product failures are logged and collected; failures reading the
        snapshot itself propagate.

        Args:
            results: Billing authority entitlements snapshot
            source: Trigger name
            include_held: Also re-derive held entries missing from the snapshot

        Returns:
            Dictionary with:
                - reconciled: product ids synced
                - failed: product id -> exception
                - info: latest authoritative record produced by this pass
        """
        reconciled: list[str] = []
        failed: Dict[str, Exception] = {}
        latest: Optional[BackendSubscriptionInfo] = None
        seen: set[str] = set()

        def run(product_id: str, action: Callable[[], Optional[BackendSubscriptionInfo]]) -> None:
            nonlocal latest
            try:
                info = action()
            except Exception as e:
                failed[product_id] = e
                logger.error(
                    "reconcile_failed",
                    product_id=product_id,
                    source=source,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return
            if info is not None:
                reconciled.append(product_id)
                latest = info

        for transaction in verified_transactions(results, source=source):
            seen.add(transaction.product_id)
            run(transaction.product_id, lambda t=transaction: self.reconcile(t, source))

        if include_held:
            for product_id in self.store.product_ids():
                if product_id not in seen:
                    run(product_id, lambda p=product_id: self.sync_product(p, source))

        return {"reconciled": reconciled, "failed": failed, "info": latest}

    def refresh_info(self, source: str) -> Optional[BackendSubscriptionInfo]:
        """Fetch the authoritative record directly (no proposal).

        Raises:
            BackendSyncError: If the fetch fails
        """
        user_email = self.user_email
        if not user_email or self.closed:
            return None
        info = self._backend.fetch_info(user_email)
        self._apply_info(info, None, source)
        return info

    def apply_backend_record(self, info: BackendSubscriptionInfo, source: str) -> None:
        """Adopt a record returned by a backend call made outside the pipeline."""
        self._apply_info(info, None, source)

    def _product_state(self, product_id: str) -> _ProductSync:
        with self._lock:
            state = self._products.get(product_id)
            if state is None:
                state = self._products[product_id] = _ProductSync()
            return state

    def _apply_info(
        self, info: BackendSubscriptionInfo, product_id: Optional[str], source: str
    ) -> None:
        with self._lock:
            old = self._last_info
            self._last_info = info

        if old != info:
            log_backend_record_change(
                old_status=old.status if old else None,
                new_status=info.status,
                plan=info.plan,
                expires_at=info.expires_at,
                source=source,
            )
        self._event_bus.publish(StatusUpdated(info=info, product_id=product_id, source=source))
