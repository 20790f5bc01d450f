"""Periodic reconciler - fixed-interval backstop for missed notifications.

IDLE -> (timer fires) -> SCANNING -> IDLE, until STOPPED. Each scan re-reads
the billing authority's current entitlements and re-derives every held entry
through the reconciliation pipeline. A failed scan is logged and the next
tick retries; the interval itself is the throttle.
"""

import threading
from enum import Enum
from typing import Any, Dict, Optional

from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.settings import DEFAULT_RECONCILE_INTERVAL_SECONDS
from entitlement_sync.services.reconciliation import ReconciliationPipeline
from entitlement_sync.state_logger import log_reconciler_state_change

logger = get_logger(__name__)


class ReconcilerState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    STOPPED = "stopped"


class PeriodicReconciler:
    """Single timer thread driving periodic scans.

    The stop signal is checked before every scan and ``stop()`` joins the
    thread, so no scan can start once ``stop()`` has returned.
    """

    SOURCE = "periodic"

    def __init__(
        self,
        pipeline: ReconciliationPipeline,
        billing,
        interval_seconds: float = DEFAULT_RECONCILE_INTERVAL_SECONDS,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._pipeline = pipeline
        self._billing = billing
        self.interval_seconds = interval_seconds

        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state = ReconcilerState.IDLE
        self.scan_count = 0
        self.failed_scan_count = 0

    @property
    def state(self) -> ReconcilerState:
        with self._lock:
            return self._state

    def _set_state(self, new_state: ReconcilerState, reason: Optional[str] = None) -> None:
        with self._lock:
            old_state = self._state
            self._state = new_state
        if old_state != new_state:
            log_reconciler_state_change(old_state.value, new_state.value, reason=reason)

    def start(self) -> None:
        """Start the timer thread; idempotent, and a no-op once stopped."""
        with self._lock:
            if self._thread is not None or self._stop_event.is_set():
                return
            self._thread = threading.Thread(
                target=self._run,
                name="entitlement-periodic-reconciler",
                daemon=True,
            )
            self._thread.start()
        logger.info("periodic_reconciler_started", interval_seconds=self.interval_seconds)

    def stop(self) -> None:
        """Stop the timer and wait for an in-progress scan; idempotent."""
        with self._lock:
            self._stop_event.set()
            thread = self._thread

        if thread is not None and thread is not threading.current_thread():
            thread.join()
        if self.state is not ReconcilerState.STOPPED:
            self._set_state(ReconcilerState.STOPPED, reason="stop requested")
            logger.info(
                "periodic_reconciler_stopped",
                scans=self.scan_count,
                failed_scans=self.failed_scan_count,
            )

    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        # wait() returns True once stop is requested
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()

    def run_once(self) -> Optional[Dict[str, Any]]:
        """Run one scan now.

        Returns:
            The pipeline's scan result, or None if stopped or the scan failed
        """
        with self._lock:
            if self._stop_event.is_set():
                return None
            self._set_state(ReconcilerState.SCANNING, reason="timer fired")

        try:
            result = self._pipeline.reconcile_all(
                self._billing.current_entitlements(), source=self.SOURCE
            )
        except Exception as e:
            self.failed_scan_count += 1
            logger.error(
                "periodic_scan_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return None
        finally:
            self.scan_count += 1
            with self._lock:
                if self._state is ReconcilerState.SCANNING:
                    self._set_state(ReconcilerState.IDLE, reason="scan finished")

        logger.info(
            "periodic_scan_completed",
            reconciled=len(result["reconciled"]),
            failed=len(result["failed"]),
        )
        return result
