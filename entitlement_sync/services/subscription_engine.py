"""Subscription engine - composition root and public contract.

Responsibilities:
- Fetch the product catalog and prime entitlements on start
- Run the transaction listener and the periodic reconciler
- Expose purchases, forced checks and status queries
- Fan out authoritative records to observers through the event bus
"""

import threading
from datetime import datetime
from typing import Optional, Set

from entitlement_sync.billing.authority import verified_transactions
from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.product import BillingInterval, Product, SubscriptionTier
from entitlement_sync.models.settings import EngineConfig
from entitlement_sync.models.status import BackendSubscriptionInfo, StatusKind
from entitlement_sync.repositories.entitlement_store import EntitlementStore
from entitlement_sync.repositories.product_catalog import CatalogUnavailableError, ProductCatalog
from entitlement_sync.services.backend_client import BackendSyncClient
from entitlement_sync.services.event_bus import EventBus
from entitlement_sync.services.periodic_reconciler import PeriodicReconciler
from entitlement_sync.services.purchase_orchestrator import EngineShutDownError, PurchaseOrchestrator
from entitlement_sync.services.reconciliation import (
    Clock,
    ReconciliationPipeline,
    utcnow,
)
from entitlement_sync.services.status_derivation import derive_status
from entitlement_sync.services.transaction_listener import TransactionListener

logger = get_logger(__name__)


class UserIdentityMissingError(Exception):
    """Raised when an operation needs the user's email and none is known."""

    pass


class SubscriptionEngine:
    """Keeps the local entitlement view consistent with the backend ledger.

    All collaborators are injected; nothing is read from global state. Safe to
    call from any thread.
    """

    def __init__(
        self,
        config: EngineConfig,
        billing,
        backend: Optional[BackendSyncClient] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        autostart: bool = True,
    ):
        """Initialize the engine.

        Args:
            config: Engine configuration
            billing: Billing authority adapter
            backend: Backend ledger client (built from config.backend if not provided)
            event_bus: Bus for observers (a private one is created if not provided)
            clock: Current time provider (defaults to UTC now)
            autostart: Call ``start()`` immediately
        """
        self.config = config
        self._billing = billing
        self._clock = clock or utcnow
        self._owns_backend = backend is None
        self.backend = backend or BackendSyncClient(config.backend)
        self.event_bus = event_bus or EventBus()

        self.store = EntitlementStore()
        self.catalog = ProductCatalog()
        self.pipeline = ReconciliationPipeline(
            store=self.store,
            billing=billing,
            backend=self.backend,
            event_bus=self.event_bus,
            user_email=config.user_email,
            clock=self._clock,
        )
        self.listener = TransactionListener(self.pipeline, billing)
        self.reconciler = PeriodicReconciler(
            self.pipeline, billing, interval_seconds=config.reconciler.interval_seconds
        )
        self.orchestrator = PurchaseOrchestrator(
            catalog=self.catalog,
            billing=billing,
            pipeline=self.pipeline,
            event_bus=self.event_bus,
            bundle_id=config.catalog.bundle_id,
        )

        self._lifecycle_lock = threading.Lock()
        self._started = False
        self._shut_down = False

        logger.info("subscription_engine_initialized", bundle_id=config.catalog.bundle_id)

        if autostart:
            self.start()

    def start(self) -> None:
        """Load the catalog, prime entitlements and start background workers.

        Idempotent. Catalog or entitlement failures are logged; the engine
        still starts and the periodic reconciler catches up.
        """
        with self._lifecycle_lock:
            if self._started or self._shut_down:
                return
            self._started = True

        self.load_catalog()
        self._prime_entitlements()

        self.listener.start()
        if self.config.reconciler.enabled:
            self.reconciler.start()

        logger.info(
            "subscription_engine_started",
            products=len(self.catalog),
            entitlements=self.store.count(),
            reconciler_enabled=self.config.reconciler.enabled,
        )

    def load_catalog(self) -> bool:
        """(Re)fetch the product catalog. Returns False if the fetch failed."""
        try:
            self.catalog.load(self._billing, self.config.catalog.resolved_product_ids())
            return True
        except CatalogUnavailableError:
            # Purchases fail fast with ProductNotFoundError until a reload succeeds.
            return False

    def _prime_entitlements(self) -> None:
        try:
            for transaction in verified_transactions(
                self._billing.current_entitlements(), source="prime"
            ):
                self.pipeline.record(transaction)
        except Exception as e:
            logger.error(
                "entitlement_priming_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    def shutdown(self) -> None:
        """Stop all reconciliation; idempotent.

        When this returns the periodic timer can no longer fire and the
        listener is unsubscribed.
        """
        with self._lifecycle_lock:
            if self._shut_down:
                return
            self._shut_down = True

        self.pipeline.close()
        self.reconciler.stop()
        self.listener.stop()
        if self._owns_backend:
            self.backend.close()
        logger.info("subscription_engine_shutdown_complete")

    @property
    def is_shut_down(self) -> bool:
        with self._lifecycle_lock:
            return self._shut_down

    def __enter__(self) -> "SubscriptionEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # -- identity -------------------------------------------------------------

    @property
    def user_email(self) -> Optional[str]:
        return self.pipeline.user_email

    def set_user(self, user_email: Optional[str]) -> None:
        """Set the signed-in identity used for backend syncs."""
        self.pipeline.user_email = user_email
        logger.info("engine_user_changed", user_email=user_email)

    def _require_user(self, user_email: Optional[str] = None) -> str:
        email = user_email or self.user_email
        if not email:
            raise UserIdentityMissingError("User email not found.")
        return email

    # -- public contract ------------------------------------------------------

    def current_entitlements(self) -> Set[Product]:
        """Catalog products backed by a held, non-expired, non-revoked transaction."""
        now = self._clock()
        products: Set[Product] = set()
        for transaction in self.store.all():
            product = self.catalog.find_by_id(transaction.product_id)
            if product is None:
                continue
            # Renewal intent does not affect entitlement; skip the lookup.
            status = derive_status(transaction, lambda _product_id: (), now=now)
            if status.kind is StatusKind.ACTIVE:
                products.add(product)
        return products

    def purchase(
        self,
        tier: SubscriptionTier,
        billing_interval: BillingInterval,
        user_email: Optional[str] = None,
    ) -> BackendSubscriptionInfo:
        """Purchase a tier; see ``PurchaseOrchestrator.purchase`` for errors.

        Raises:
            UserIdentityMissingError: If no user email is given or configured
            EngineShutDownError: If the engine has been shut down
        """
        if self.is_shut_down:
            raise EngineShutDownError("Subscription engine has been shut down")
        return self.orchestrator.purchase(tier, billing_interval, self._require_user(user_email))

    def force_check(self) -> Optional[BackendSubscriptionInfo]:
        """Run one reconciliation pass now and return the authoritative record.

        Falls back to fetching the backend record when nothing was synced.

        Raises:
            BackendSyncError: If every sync in the pass failed
        """
        if self.is_shut_down:
            return self.subscription_info

        result = self.pipeline.reconcile_all(
            self._billing.current_entitlements(), source="force_check"
        )
        if result["info"] is not None:
            return result["info"]
        if result["failed"]:
            raise next(iter(result["failed"].values()))
        return self.pipeline.refresh_info(source="force_check")

    @property
    def subscription_info(self) -> Optional[BackendSubscriptionInfo]:
        """Last authoritative record received from the backend."""
        return self.pipeline.last_info

    def refresh_info(self) -> Optional[BackendSubscriptionInfo]:
        """Fetch the authoritative record without proposing a status."""
        return self.pipeline.refresh_info(source="refresh")

    def has_active_subscription(self) -> bool:
        info = self.subscription_info
        return info is not None and info.has_active_subscription(self._clock())

    def is_subscription_cancelled(self) -> bool:
        info = self.subscription_info
        return info is not None and info.is_cancelled

    def subscription_end_date(self) -> Optional[datetime]:
        info = self.subscription_info
        return info.expires_at if info is not None else None

    def should_show_renew_button(self) -> bool:
        info = self.subscription_info
        return info is not None and info.should_show_renew_button(self._clock())

    def current_tier(self) -> SubscriptionTier:
        info = self.subscription_info
        return info.tier if info is not None else SubscriptionTier.NONE

    def cancel_subscription(self, user_email: Optional[str] = None) -> BackendSubscriptionInfo:
        """Cancel at period end through the backend and adopt its record."""
        email = self._require_user(user_email)
        info = self.backend.cancel(email)
        logger.info("subscription_cancel_requested", plan=info.plan, expires_at=info.expires_at)
        self.pipeline.apply_backend_record(info, source="cancel")
        return info

    def renew_subscription(self, user_email: Optional[str] = None) -> BackendSubscriptionInfo:
        """Resume a cancelled subscription through the backend and adopt its record."""
        email = self._require_user(user_email)
        info = self.backend.renew(email)
        logger.info("subscription_renew_requested", plan=info.plan, status=info.status)
        self.pipeline.apply_backend_record(info, source="renew")
        return info
