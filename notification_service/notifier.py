"""
Delivery of admin alerts produced by reconciliation
"""
import json
import logging
from typing import Optional
import requests
from pydantic import ValidationError

from common.job_queue import Job, UnrecoverableError
from common.redis_client import RedisClient
from common.schemas import NotificationPayload
from common.settings import settings
from common.tracing import notification_tracer

logger = logging.getLogger(__name__)

class NotificationSender:
    """Job handler for the notifications queue.

    Each (type, orderNumber) pair is marked once delivered and skipped while
    the mark lasts. A crash between delivery and marking can repeat an alert
    but never loses one.
    """

    def __init__(
        self,
        redis: RedisClient,
        webhook_url: Optional[str] = None,
        timeout: float = None,
        http: Optional[requests.Session] = None,
    ):
        self.redis = redis
        self.webhook_url = webhook_url
        self.timeout = timeout or settings.payment_http_timeout
        self.http = http or requests.Session()
        self.sent = 0
        self.duplicates = 0

    def handle(self, job: Job) -> bool:
        with notification_tracer.start_span_for_job(job, "deliver_notification") as span:
            try:
                payload = NotificationPayload.model_validate(job.data)
            except ValidationError as e:
                raise UnrecoverableError(f"invalid notification payload: {e}") from e

            key = f"notif:{payload.type}:{payload.data.orderNumber}"
            if self.redis.is_marked(key):
                self.duplicates += 1
                span.add_tag("duplicate", True)
                logger.info(f"Notification {payload.type} for {payload.data.orderNumber} already sent, skipping")
                return False

            # mark only after delivery: an interrupted send stays unmarked
            self.deliver(payload)
            self.redis.mark_once(key)
            self.sent += 1
            return True

    def deliver(self, payload: NotificationPayload):
        if not self.webhook_url:
            logger.info(
                f"[NOTIFY] {payload.type} -> {payload.recipient}: new paid order "
                f"{payload.data.orderNumber} ({payload.data.bundle}) GHS {payload.data.amount}"
            )
            return

        response = self.http.post(
            self.webhook_url,
            data=json.dumps(payload.model_dump(mode="json")),
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        logger.info(f"📣 {payload.type} for {payload.data.orderNumber} delivered to {self.webhook_url}")
