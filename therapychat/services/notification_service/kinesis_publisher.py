"""Kinesis transport for outbound notifications.

Notifications go to a Kinesis stream consumed by the mail and push
delivery workers, so a slow SMTP relay never blocks a chat request.

Failure Handling:
    - Publishing failure never raises from ``publish``
    - Failures are logged at CRITICAL with the full payload so an
      operator can deliver urgent alerts by hand
"""
import json
import logging
from typing import Optional

import boto3

from .config import NotificationConfig
from .dispatcher import Notification, NotificationDispatcher, partition_key

logger = logging.getLogger(__name__)


class KinesisNotificationDispatcher(NotificationDispatcher):
    """Publishes composed notifications to a Kinesis stream."""

    def __init__(self, config: Optional[NotificationConfig] = None):
        super().__init__(config)
        self.stream_name = self.config.stream_name
        self.region = self.config.region
        self._kinesis_client = None

        logger.info(
            "NOTIFICATION_PUBLISHER_INITIALIZED",
            extra={
                "stream_name": self.stream_name,
                "enabled": self.config.enabled,
                "region": self.region,
            }
        )

    @property
    def kinesis_client(self):
        """Lazy initialization of the Kinesis client."""
        if self._kinesis_client is None and self.config.enabled:
            try:
                self._kinesis_client = boto3.client("kinesis", region_name=self.region)
            except Exception as e:
                logger.error(
                    "KINESIS_CLIENT_INIT_FAILED",
                    extra={"error": str(e)}
                )
        return self._kinesis_client

    def publish(self, notification: Notification) -> bool:
        payload = notification.to_payload()

        try:
            if self.kinesis_client is None:
                logger.critical(
                    "NOTIFICATION_FALLBACK_LOG",
                    extra={
                        "notification_id": notification.notification_id,
                        "payload": json.dumps(payload),
                        "reason": "kinesis_client_unavailable",
                        "action": "MANUAL_PROCESSING_REQUIRED",
                    }
                )
                return False

            response = self.kinesis_client.put_record(
                StreamName=self.stream_name,
                Data=json.dumps(payload),
                PartitionKey=partition_key(notification.conversation_id),
            )
        except Exception as e:
            logger.critical(
                "NOTIFICATION_PUBLISH_FAILED",
                extra={
                    "notification_id": notification.notification_id,
                    "kind": notification.kind,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": "MANUAL_REVIEW_REQUIRED",
                    "payload": json.dumps(payload),
                }
            )
            return False

        log = logger.critical if notification.urgent else logger.info
        log(
            "NOTIFICATION_PUBLISHED",
            extra={
                "notification_id": notification.notification_id,
                "kind": notification.kind,
                "channel": notification.channel,
                "shard_id": response.get("ShardId"),
                "sequence_number": response.get("SequenceNumber"),
            }
        )
        return True
