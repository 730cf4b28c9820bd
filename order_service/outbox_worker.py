import json
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional
import redis
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from common.job_queue import JobQueue
from common.settings import settings
from order_service.constants import OutboxStatus
from order_service.models import Outbox

logger = logging.getLogger(__name__)

def relay_once(
    session_factory: Callable[[], Session],
    queue_for_topic: Dict[str, JobQueue],
    batch_size: int = 50,
) -> int:
    """Publish one batch of pending outbox rows, returns how many were sent.

    A row is marked sent only after its job is in Redis. If the process dies
    in between, the row is published again on the next poll; consumers dedupe.
    """
    sent = 0
    with session_factory() as db:
        rows = db.execute(
            select(Outbox)
            .where(Outbox.status == OutboxStatus.NEW.value)
            .order_by(Outbox.id)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        ).scalars().all()

        try:
            for row in rows:
                queue = queue_for_topic.get(row.topic)
                if queue is None:
                    logger.error(f"No queue for outbox topic {row.topic!r}, leaving row {row.id} pending")
                    continue
                try:
                    job = queue.add(json.loads(row.payload), trace_id=row.trace_id)
                except redis.RedisError as e:
                    # queue backend is down, the rest of the batch would fail the same way
                    logger.warning(f"Outbox relay could not enqueue row {row.id} on {row.topic}: {e}")
                    break
                db.execute(
                    update(Outbox)
                    .where(Outbox.id == row.id)
                    .values(status=OutboxStatus.SENT.value, sent_at=datetime.now(timezone.utc).replace(tzinfo=None))
                    .execution_options(synchronize_session=False)
                )
                sent += 1
                logger.debug(f"Outbox row {row.id} published as job {job.id} on {row.topic}")
        finally:
            db.commit()

    if sent:
        logger.info(f"📤 Outbox relay published {sent} message(s)")
    return sent

def run(
    session_factory: Callable[[], Session],
    queue_for_topic: Dict[str, JobQueue],
    stop_event: Optional[threading.Event] = None,
    poll_interval: float = None,
    batch_size: int = None,
):
    stop_event = stop_event or threading.Event()
    poll_interval = settings.outbox_poll_interval if poll_interval is None else poll_interval
    batch_size = batch_size or settings.outbox_batch_size
    logger.info(f"🚀 Outbox relay started for topics {sorted(queue_for_topic)}")
    while not stop_event.is_set():
        try:
            relay_once(session_factory, queue_for_topic, batch_size)
        except Exception as e:
            logger.error(f"Outbox relay pass failed: {e}", exc_info=True)
        stop_event.wait(poll_interval)
    logger.info("Outbox relay stopped")
