"""
Admin alert delivery and its dedupe
"""
import json

import pytest
import requests

from common.job_queue import Worker, UnrecoverableError, ACTIVE, FAILED, DELAYED
from common.redis_client import RedisClient
from notification_service.notifier import NotificationSender

ALERT = {
    "type": "ADMIN_ALERT",
    "recipient": "admin@joybundles.com",
    "data": {"orderNumber": "ORD-981152373", "amount": "17.00", "bundle": "MTN 5GB"},
}

class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

class FakeHTTP:
    """Stands in for requests.Session; records posts and replays scripted results"""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        result = self.results.pop(0) if self.results else FakeResponse()
        if isinstance(result, BaseException):
            raise result
        return result

@pytest.fixture
def redis_wrapper(redis_conn):
    return RedisClient(redis_conn)

class TestNotificationSender:
    def test_logs_alert_when_no_webhook_configured(self, redis_wrapper, notification_queue, caplog):
        sender = NotificationSender(redis_wrapper)
        with caplog.at_level("INFO"):
            assert sender.handle(notification_queue.add(ALERT)) is True
        assert "ORD-981152373" in caplog.text

    def test_posts_to_webhook_with_timeout(self, redis_wrapper, notification_queue):
        http = FakeHTTP()
        sender = NotificationSender(redis_wrapper, webhook_url="https://hooks.example.com/admin", timeout=3, http=http)

        sender.handle(notification_queue.add(ALERT))

        [(url, kwargs)] = http.calls
        assert url == "https://hooks.example.com/admin"
        assert kwargs["timeout"] == 3
        body = json.loads(kwargs["data"])
        assert body["data"]["orderNumber"] == "ORD-981152373"
        assert body["data"]["amount"] == "17.00"

    def test_duplicate_alert_sent_once(self, redis_wrapper, notification_queue):
        http = FakeHTTP()
        sender = NotificationSender(redis_wrapper, webhook_url="https://hooks.example.com/admin", http=http)

        assert sender.handle(notification_queue.add(ALERT)) is True
        assert sender.handle(notification_queue.add(ALERT)) is False

        assert len(http.calls) == 1
        assert sender.duplicates == 1

    def test_failed_delivery_is_retried_and_then_sent(self, redis_wrapper, notification_queue, clock):
        http = FakeHTTP(requests.ConnectionError("connection refused"), FakeResponse(200))
        sender = NotificationSender(redis_wrapper, webhook_url="https://hooks.example.com/admin", http=http)
        worker = Worker(notification_queue, sender.handle, name="notify")
        notification_queue.add(ALERT)

        worker.process_one()
        assert notification_queue.get_job_counts()[DELAYED] == 1

        # exponential backoff with jitter never exceeds the base delay on the first retry
        clock.advance(notification_queue.default_opts.backoff.delay_ms / 1000)
        worker.process_one()

        assert len(http.calls) == 2
        assert sender.sent == 1

    def test_non_2xx_response_fails_the_attempt(self, redis_wrapper, notification_queue):
        sender = NotificationSender(redis_wrapper, webhook_url="https://hooks.example.com/admin",
                                    http=FakeHTTP(FakeResponse(503)))
        with pytest.raises(requests.HTTPError):
            sender.handle(notification_queue.add(ALERT))
        # not marked as sent
        assert sender.handle(notification_queue.add(ALERT)) is True

    def test_invalid_payload_is_unrecoverable(self, redis_wrapper, notification_queue):
        sender = NotificationSender(redis_wrapper)
        with pytest.raises(UnrecoverableError):
            sender.handle(notification_queue.add({"type": "SMS", "data": {}}))

    def test_invalid_payload_dead_lettered(self, redis_wrapper, notification_queue):
        worker = Worker(notification_queue, NotificationSender(redis_wrapper).handle, name="notify")
        notification_queue.add({"recipient": "admin@joybundles.com"})

        worker.process_one()

        assert notification_queue.get_job_counts()[FAILED] == 1

    def test_not_marked_until_delivered(self, redis_wrapper, notification_queue):
        seen_marked = []

        class CheckingHTTP(FakeHTTP):
            def post(self, url, **kwargs):
                seen_marked.append(redis_wrapper.is_marked("notif:ADMIN_ALERT:ORD-981152373"))
                return super().post(url, **kwargs)

        sender = NotificationSender(redis_wrapper, webhook_url="https://hooks.example.com/admin", http=CheckingHTTP())
        sender.handle(notification_queue.add(ALERT))

        assert seen_marked == [False]
        assert redis_wrapper.is_marked("notif:ADMIN_ALERT:ORD-981152373")

    def test_alert_redelivered_after_worker_dies_mid_delivery(self, redis_wrapper, notification_queue):
        http = FakeHTTP(SystemExit(1), FakeResponse(200))
        sender = NotificationSender(redis_wrapper, webhook_url="https://hooks.example.com/admin", http=http)
        job = notification_queue.add(ALERT)

        with pytest.raises(SystemExit):
            Worker(notification_queue, sender.handle, name="killed").process_one()

        # the dead worker never renews its lock
        notification_queue.client.delete(notification_queue._lock_key(job.id))
        assert notification_queue.recover_stalled() == [job.id]

        Worker(notification_queue, sender.handle, name="notify").process_one()

        assert len(http.calls) == 2
        assert sender.sent == 1
        assert sender.duplicates == 0
        assert notification_queue.get_job(job.id) is None
        assert notification_queue.get_job_counts()[ACTIVE] == 0
