"""Transaction listener - consumes the billing authority's live update stream.

This is the main path for changes that happen outside the app's own purchase
flow: renewals, cancellations, refunds and purchases made on another device.
"""

import threading
from typing import Optional

from entitlement_sync.billing.authority import TransactionChannel, finish_transaction
from entitlement_sync.logging_config import get_logger
from entitlement_sync.services.reconciliation import ReconciliationPipeline

logger = get_logger(__name__)


class TransactionListener:
    """Worker thread feeding live transaction updates into the pipeline.

    Verified results are reconciled; unverified ones are discarded. The worker
    only blocks waiting for the next update and exits when the channel closes.
    """

    SOURCE = "listener"

    def __init__(self, pipeline: ReconciliationPipeline, billing):
        self._pipeline = pipeline
        self._billing = billing
        self._lock = threading.Lock()
        self._channel: Optional[TransactionChannel] = None
        self._thread: Optional[threading.Thread] = None
        self.processed_count = 0
        self.discarded_count = 0
        self.skipped_count = 0

    def start(self) -> None:
        """Subscribe to the update stream and start the worker; idempotent."""
        with self._lock:
            if self._thread is not None:
                return
            self._channel = self._billing.transaction_updates()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._channel,),
                name="entitlement-transaction-listener",
                daemon=True,
            )
            self._thread.start()
        logger.info("transaction_listener_started", channel=self._channel.name)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Close the update channel and wait for the worker; idempotent.

        Args:
            timeout: Max seconds to wait for an in-progress reconciliation
        """
        with self._lock:
            channel, thread = self._channel, self._thread
        if channel is None or thread is None:
            return

        channel.close()
        if thread is not threading.current_thread():
            thread.join(timeout)
        logger.info(
            "transaction_listener_stopped",
            processed=self.processed_count,
            discarded=self.discarded_count,
            skipped=self.skipped_count,
        )

    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def _run(self, channel: TransactionChannel) -> None:
        for result in channel:
            if not result.is_verified or result.transaction is None:
                self.discarded_count += 1
                logger.warning(
                    "unverified_transaction_discarded",
                    source=self.SOURCE,
                    transaction_id=result.transaction.id if result.transaction else None,
                    reason=result.reason,
                )
                continue

            transaction = result.transaction
            try:
                info = self._pipeline.reconcile(transaction, source=self.SOURCE)
            except Exception as e:
                # Next periodic scan retries.
                logger.error(
                    "listener_reconcile_failed",
                    product_id=transaction.product_id,
                    transaction_id=transaction.id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            else:
                if info is None and self._pipeline.closed:
                    # Left unfinished so the platform redelivers it next session.
                    self.skipped_count += 1
                    continue
                self.processed_count += 1

            finish_transaction(self._billing, transaction, source=self.SOURCE)
