"""Live transaction updates from Google Cloud Pub/Sub.

Subscribes to the store's real-time notification subscription, resolves each
notification's purchase token through a TransactionVerifier and hands the
verification result to a TransactionChannel. Billing adapters return the
channel from ``transaction_updates()``; closing it stops the streaming pull.
"""

from threading import RLock
from typing import Any, Optional

from google.cloud import pubsub_v1
from pydantic import ValidationError

from entitlement_sync.billing.authority import TransactionChannel, TransactionVerifier
from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.notifications import StoreNotification
from entitlement_sync.models.settings import PubSubConfig

logger = get_logger(__name__)


class PubSubTransactionFeed:
    """Streaming-pull subscriber feeding verified transactions into a channel.

    Each ``transaction_updates()`` call opens a new streaming pull and returns
    its channel. Messages are acked once handed to the channel and nacked
    (redelivered) when verification raises; malformed messages are acked and
    dropped.
    """

    def __init__(
        self,
        config: PubSubConfig,
        verifier: TransactionVerifier,
        subscriber: Optional[pubsub_v1.SubscriberClient] = None,
    ):
        """Initialize the feed.

        Args:
            config: Pub/Sub project and subscription
            verifier: Resolves (purchase_token, product_id) into a VerificationResult
            subscriber: Subscriber client (created on first use if not provided)
        """
        self._config = config
        self._verifier = verifier
        self._subscriber = subscriber
        self._lock = RLock()
        self._streaming_future = None
        self._channel: Optional[TransactionChannel] = None

    def _get_subscriber(self) -> pubsub_v1.SubscriberClient:
        if self._subscriber is None:
            self._subscriber = pubsub_v1.SubscriberClient()
        return self._subscriber

    @property
    def subscription_path(self) -> str:
        return self._get_subscriber().subscription_path(
            self._config.project_id, self._config.subscription
        )

    def transaction_updates(self) -> TransactionChannel:
        """Start a streaming pull and return the channel it feeds.

        Any previously opened channel is closed first.
        """
        with self._lock:
            if self._channel is not None:
                self._channel.close()

            channel = TransactionChannel(name="pubsub_transaction_updates", on_close=self.stop)
            subscriber = self._get_subscriber()
            subscription_path = self.subscription_path
            flow_control = pubsub_v1.types.FlowControl(max_messages=self._config.max_messages)

            self._streaming_future = subscriber.subscribe(
                subscription_path,
                callback=lambda message: self._handle_message(message, channel),
                flow_control=flow_control,
            )
            self._channel = channel

        logger.info(
            "pubsub_feed_started",
            project_id=self._config.project_id,
            subscription=self._config.subscription,
        )
        return channel

    def stop(self) -> None:
        """Cancel the streaming pull; idempotent."""
        with self._lock:
            future, self._streaming_future = self._streaming_future, None
            channel, self._channel = self._channel, None

        if future is not None:
            future.cancel()
            logger.info("pubsub_feed_stopped", subscription=self._config.subscription)
        if channel is not None:
            channel.close()

    def _handle_message(self, message: Any, channel: TransactionChannel) -> None:
        """Pub/Sub callback; runs on the subscriber's thread pool."""
        try:
            notification = StoreNotification.model_validate_json(message.data)
        except ValidationError as e:
            logger.warning(
                "pubsub_message_malformed",
                message_id=getattr(message, "message_id", None),
                error=str(e),
            )
            message.ack()
            return

        sub = notification.subscription_notification
        if sub is None:
            logger.info(
                "pubsub_notification_skipped",
                package_name=notification.package_name,
                test=notification.test_notification is not None,
            )
            message.ack()
            return

        try:
            result = self._verifier(sub.purchase_token, sub.subscription_id)
        except Exception as e:
            logger.error(
                "pubsub_verification_failed",
                product_id=sub.subscription_id,
                notification_type=sub.type_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            message.nack()
            return

        if not channel.put(result):
            # Channel closed; let another subscriber pick it up.
            message.nack()
            return

        logger.debug(
            "pubsub_notification_received",
            product_id=sub.subscription_id,
            notification_type=sub.type_name,
            verified=result.is_verified,
        )
        message.ack()
