"""
The two queues of the pipeline and their retry policies

payment-processing: webhook ingest -> reconciliation worker
notifications:      outbox relay   -> notification service

Each queue carries its own attempts/backoff, so an outage of the
notification sink never feeds back into payment reconciliation.
"""
from functools import lru_cache
from typing import Dict
import redis

from common.job_queue import JobOptions, JobQueue
from common.redis_client import redis_client
from common.retry import payment_backoff, notification_backoff
from common.settings import settings

def payment_job_options() -> JobOptions:
    return JobOptions(
        attempts=settings.payment_job_attempts,
        backoff=payment_backoff(settings),
        remove_on_complete=True,
    )

def notification_job_options() -> JobOptions:
    return JobOptions(
        attempts=settings.notification_job_attempts,
        backoff=notification_backoff(settings),
        remove_on_complete=True,
    )

def build_payment_queue(client: redis.Redis, **kwargs) -> JobQueue:
    return JobQueue(
        settings.payment_queue_name,
        client,
        prefix=settings.queue_prefix,
        default_opts=payment_job_options(),
        lock_duration_ms=settings.queue_lock_duration_ms,
        **kwargs,
    )

def build_notification_queue(client: redis.Redis, **kwargs) -> JobQueue:
    return JobQueue(
        settings.notification_queue_name,
        client,
        prefix=settings.queue_prefix,
        default_opts=notification_job_options(),
        lock_duration_ms=settings.queue_lock_duration_ms,
        **kwargs,
    )

@lru_cache(maxsize=None)
def get_payment_queue() -> JobQueue:
    return build_payment_queue(redis_client.client)

@lru_cache(maxsize=None)
def get_notification_queue() -> JobQueue:
    return build_notification_queue(redis_client.client)

def get_all_queues() -> Dict[str, JobQueue]:
    payment = get_payment_queue()
    notification = get_notification_queue()
    return {payment.name: payment, notification.name: notification}
