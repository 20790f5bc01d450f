"""Backend ledger client.

Pushes locally derived status proposals and new purchases to the backend and
returns the merged authoritative record. The backend's answer always
supersedes the local derivation.
"""

from datetime import datetime
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.settings import BackendConfig
from entitlement_sync.models.status import BackendSubscriptionInfo, DerivedStatus

logger = get_logger(__name__)


class BackendSyncError(Exception):
    """Base exception for backend ledger failures."""

    pass


class NetworkError(BackendSyncError):
    """Raised when the backend cannot be reached or the request times out."""

    pass


class BackendError(BackendSyncError):
    """Raised when the backend rejects a request or returns an unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BackendSyncClient:
    """HTTP client for the backend ledger's subscription endpoints.

    Thread-safe: ``httpx.Client`` may be shared across threads.
    """

    SYNC_PATH = "/subscriptions/sync"
    PURCHASE_PATH = "/subscriptions/purchase"
    INFO_PATH = "/subscriptions/info"
    CANCEL_PATH = "/subscriptions/cancel"
    RENEW_PATH = "/subscriptions/renew"

    def __init__(
        self,
        config: BackendConfig,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            config: Backend connection settings
            transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
        """
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if config.api_token:
            headers["Authorization"] = f"Bearer {config.api_token}"

        self._client = httpx.Client(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            headers=headers,
            transport=transport,
        )

    def sync_status(
        self,
        user_email: str,
        product_id: str,
        status: DerivedStatus,
        will_renew: bool,
        expiration: Optional[datetime],
    ) -> BackendSubscriptionInfo:
        """Propose a locally derived status and get the merged record.

        Raises:
            NetworkError: On transport failure or timeout
            BackendError: On rejection or malformed response
        """
        payload = {
            "user_email": user_email,
            "product_id": product_id,
            "status": status.kind.value,
            "will_renew": will_renew,
            "expiration_date": expiration.isoformat() if expiration else None,
        }
        return self._post(self.SYNC_PATH, payload, product_id=product_id)

    def record_purchase(
        self, product_id: str, user_email: str, transaction_id: str
    ) -> BackendSubscriptionInfo:
        """Register a new purchase (and billing relationship) with the backend.

        Raises:
            NetworkError: On transport failure or timeout
            BackendError: On rejection or malformed response
        """
        payload = {
            "user_email": user_email,
            "product_id": product_id,
            "transaction_id": transaction_id,
        }
        return self._post(self.PURCHASE_PATH, payload, product_id=product_id)

    def fetch_info(self, user_email: str) -> BackendSubscriptionInfo:
        """Fetch the current authoritative record without proposing anything."""
        return self._post(self.INFO_PATH, {"user_email": user_email})

    def cancel(self, user_email: str) -> BackendSubscriptionInfo:
        """Ask the backend to cancel the user's subscription at period end."""
        return self._post(self.CANCEL_PATH, {"user_email": user_email})

    def renew(self, user_email: str) -> BackendSubscriptionInfo:
        """Ask the backend to resume a cancelled subscription."""
        return self._post(self.RENEW_PATH, {"user_email": user_email})

    def _post(self, path: str, payload: dict[str, Any], **log_context: Any) -> BackendSubscriptionInfo:
        try:
            response = self._client.post(path, json=payload)
        except httpx.TimeoutException as e:
            logger.warning("backend_request_timeout", path=path, error=str(e), **log_context)
            raise NetworkError(f"Request to {path} timed out") from e
        except httpx.TransportError as e:
            logger.warning(
                "backend_request_failed",
                path=path,
                error=str(e),
                error_type=type(e).__name__,
                **log_context,
            )
            raise NetworkError(f"Request to {path} failed: {e}") from e

        if response.status_code not in (200, 201):
            logger.warning(
                "backend_request_rejected",
                path=path,
                status_code=response.status_code,
                **log_context,
            )
            raise BackendError(
                f"Backend rejected {path}: status code {response.status_code}",
                status_code=response.status_code,
            )

        try:
            info = BackendSubscriptionInfo.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning("backend_response_invalid", path=path, error=str(e), **log_context)
            raise BackendError(
                f"Invalid response body from {path}: {e}", status_code=response.status_code
            ) from e

        logger.debug(
            "backend_request_completed",
            path=path,
            status=info.status,
            plan=info.plan,
            **log_context,
        )
        return info

    def close(self) -> None:
        self._client.close()
