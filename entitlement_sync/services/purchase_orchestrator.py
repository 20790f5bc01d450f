"""Purchase orchestrator - drives a user-initiated purchase end to end.

Resolves the product, runs the billing authority's purchase flow, verifies
the result, records the entitlement and registers the purchase with the
backend. Observers are notified only after the backend confirms.
"""

from entitlement_sync.billing.authority import finish_transaction
from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.events import PurchaseCompleted
from entitlement_sync.models.product import DEFAULT_BUNDLE_ID, BillingInterval, SubscriptionTier
from entitlement_sync.models.status import BackendSubscriptionInfo
from entitlement_sync.models.transaction import PurchaseOutcome, PurchaseOutcomeKind
from entitlement_sync.repositories.product_catalog import ProductCatalog, ProductNotFoundError
from entitlement_sync.services.backend_client import BackendSyncError
from entitlement_sync.services.event_bus import EventBus
from entitlement_sync.services.reconciliation import PipelineClosedError, ReconciliationPipeline

logger = get_logger(__name__)


class PurchaseError(Exception):
    """Base exception for purchase outcomes other than a verified success."""

    pass


class PurchaseUnverifiedError(PurchaseError):
    """Raised when the billing authority could not verify the purchase."""

    pass


class UserCancelledError(PurchaseError):
    """Raised when the user dismissed the purchase flow."""

    pass


class PurchasePendingError(PurchaseError):
    """Raised when the purchase awaits external approval (e.g., parental)."""

    pass


class UnknownPurchaseError(PurchaseError):
    """Raised for any other purchase outcome."""

    pass


class EngineShutDownError(PurchaseError):
    """Raised when a purchase is attempted after the engine was shut down."""

    pass


class PurchaseOrchestrator:
    """Runs purchases through the billing authority and the pipeline."""

    def __init__(
        self,
        catalog: ProductCatalog,
        billing,
        pipeline: ReconciliationPipeline,
        event_bus: EventBus,
        bundle_id: str = DEFAULT_BUNDLE_ID,
    ):
        self._catalog = catalog
        self._billing = billing
        self._pipeline = pipeline
        self._event_bus = event_bus
        self._bundle_id = bundle_id

    def resolve_product_id(self, tier: SubscriptionTier, billing_interval: BillingInterval) -> str:
        """Product id for a tier and interval, e.g. "com.humuli.pods.plus.month".

        Raises:
            ProductNotFoundError: For the free tier
        """
        try:
            return tier.product_id(billing_interval, self._bundle_id)
        except ValueError as e:
            raise ProductNotFoundError(str(e)) from e

    def purchase(
        self,
        tier: SubscriptionTier,
        billing_interval: BillingInterval,
        user_email: str,
    ) -> BackendSubscriptionInfo:
        """Purchase a tier and return the backend's merged record.

        Args:
            tier: Tier to purchase
            billing_interval: Monthly or annual billing
            user_email: Identity registered with the backend

        Returns:
            BackendSubscriptionInfo returned by ``record_purchase``

        Raises:
            ProductNotFoundError: If the product is not in the cached catalog
            PurchaseUnverifiedError: If the purchase could not be verified
            UserCancelledError: If the user cancelled
            PurchasePendingError: If the purchase is pending approval
            UnknownPurchaseError: For any other outcome
            EngineShutDownError: If the engine shut down before the purchase was recorded
            BackendSyncError: If recording the purchase with the backend fails
        """
        product_id = self.resolve_product_id(tier, billing_interval)
        product = self._catalog.get_by_id(product_id)

        logger.info(
            "purchase_started",
            product_id=product_id,
            tier=tier.name,
            billing_interval=billing_interval.value,
            user_email=user_email,
        )

        try:
            outcome = self._billing.purchase(product)
        except Exception as e:
            logger.error(
                "purchase_flow_failed",
                product_id=product_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            raise UnknownPurchaseError(f"Purchase of {product_id} failed: {e}") from e

        transaction = self._verified_transaction(outcome, product_id)

        try:
            info = self._pipeline.record_purchase(transaction, user_email)
        except BackendSyncError as e:
            # Entitlement stays recorded locally; the next periodic scan syncs it.
            logger.error(
                "purchase_record_failed",
                product_id=product_id,
                transaction_id=transaction.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        except PipelineClosedError as e:
            logger.warning("purchase_after_shutdown", product_id=product_id, transaction_id=transaction.id)
            raise EngineShutDownError(str(e)) from e

        finish_transaction(self._billing, transaction, source="purchase")

        logger.info(
            "purchase_completed",
            product_id=product_id,
            transaction_id=transaction.id,
            status=info.status,
            plan=info.plan,
        )
        self._event_bus.publish(
            PurchaseCompleted(product_id=product_id, transaction_id=transaction.id, info=info)
        )
        return info

    def _verified_transaction(self, outcome: PurchaseOutcome, product_id: str):
        if outcome.kind is PurchaseOutcomeKind.USER_CANCELLED:
            logger.info("purchase_cancelled_by_user", product_id=product_id)
            raise UserCancelledError("The purchase was cancelled.")
        if outcome.kind is PurchaseOutcomeKind.PENDING:
            logger.info("purchase_pending", product_id=product_id)
            raise PurchasePendingError("The purchase is pending.")
        if outcome.kind is not PurchaseOutcomeKind.SUCCESS or outcome.verification is None:
            logger.warning("purchase_outcome_unknown", product_id=product_id, kind=outcome.kind.value)
            raise UnknownPurchaseError("An unknown error occurred.")

        verification = outcome.verification
        if not verification.is_verified or verification.transaction is None:
            logger.warning(
                "purchase_unverified",
                product_id=product_id,
                reason=verification.reason,
            )
            raise PurchaseUnverifiedError("The purchase could not be verified.")

        transaction = verification.transaction
        if transaction.product_id != product_id:
            logger.warning(
                "purchase_product_mismatch",
                product_id=product_id,
                transaction_product_id=transaction.product_id,
                transaction_id=transaction.id,
            )
            raise PurchaseUnverifiedError("The purchase could not be verified.")
        return transaction
