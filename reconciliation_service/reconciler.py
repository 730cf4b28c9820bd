"""
Reconciles gateway charge events against orders, reseller balances and the ledger.

One charge event is applied as a single database transaction:

    lock order row -> gate on payment_status -> mark paid
        -> increment reseller totals -> append ledger entry -> write outbox alert

so a crash anywhere before commit leaves nothing behind and the queue's retry
starts again from the lookup. Replays of an already applied event stop at the
payment_status gate; the ledger's (order_id, type) unique constraint backs the
gate up independently.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from common.job_queue import Job
from common.schemas import ChargeData, ChargeSucceeded, OtherEvent, parse_event
from common.settings import settings
from common.tracing import reconciliation_tracer
from order_service.constants import (
    OrderStatus, PaymentStatus, TransactionType, TransactionStatus, PAYMENT_PROVIDER_NAME,
)
from order_service.helpers import generate_transaction_number, to_money
from order_service.models import Order, Reseller, Transaction, Outbox

logger = logging.getLogger(__name__)

class Outcome(str, Enum):
    APPLIED = "applied"
    ALREADY_PAID = "already_paid"
    LEDGER_REPAIRED = "ledger_repaired"
    ORDER_NOT_FOUND = "order_not_found"
    ORDER_REFUNDED = "order_refunded"
    IGNORED = "ignored"

class PaymentReconciler:
    """Job handler for the payment-processing queue.

    Returns normally for every final outcome (applied, duplicate, refunded or unknown
    order, ignored event) and raises for anything that should be retried.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        notification_topic: Optional[str] = None,
        admin_email: Optional[str] = None,
        provider_name: str = PAYMENT_PROVIDER_NAME,
        currency: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.notification_topic = notification_topic or settings.notification_queue_name
        self.admin_email = admin_email or settings.admin_email
        self.provider_name = provider_name
        self.currency = currency or settings.payment_currency
        self._handlers = {
            ChargeSucceeded: self._on_charge_succeeded,
            OtherEvent: self._on_other_event,
        }

    def __call__(self, job: Job) -> Outcome:
        return self.handle(job)

    def handle(self, job: Job) -> Outcome:
        with reconciliation_tracer.start_span_for_job(job, "reconcile_payment") as span:
            event = parse_event(job.data)
            span.add_tag("event", event.event)
            outcome = self._handlers[type(event)](event, job)
            span.add_tag("outcome", outcome.value)
            return outcome

    def _on_other_event(self, event: OtherEvent, job: Job) -> Outcome:
        logger.info(f"Ignoring unhandled gateway event {event.event!r} (job {job.id})")
        return Outcome.IGNORED

    def _on_charge_succeeded(self, event: ChargeSucceeded, job: Job) -> Outcome:
        logger.info(f"💸 Processing payment {event.data.reference} (job {job.id}, attempt {job.attempt})",
                    extra={"job_id": job.id, "trace_id": job.trace_id})
        outcome = self.apply_charge(event.data, trace_id=job.trace_id)
        if outcome == Outcome.APPLIED:
            logger.info(f"✅ Payment processed: {event.data.reference}")
        return outcome

    def apply_charge(self, data: ChargeData, trace_id: Optional[str] = None) -> Outcome:
        order_number = data.reference
        with self.session_factory() as db, db.begin():
            # Row lock serializes concurrent deliveries for the same order
            order = db.scalar(
                select(Order).where(Order.order_number == order_number).with_for_update()
            )

            if order is None:
                # retrying won't make the order appear
                logger.error(f"❌ Order {order_number} not found, acknowledging event")
                return Outcome.ORDER_NOT_FOUND

            if order.payment_status == PaymentStatus.REFUNDED.value:
                # final: a refunded order is never paid again
                logger.warning(f"⚠️ Order {order_number} was refunded; ignoring charge {data.id}")
                return Outcome.ORDER_REFUNDED

            if order.payment_status == PaymentStatus.PAID.value:
                if self._has_ledger_entry(db, order):
                    logger.info(f"⚠️ Order {order_number} already processed. Skipping.")
                    return Outcome.ALREADY_PAID
                # paid but unrecorded: write the missing entry, never re-credit
                self._append_ledger_entry(db, order, data)
                logger.warning(f"🩹 Order {order_number} was paid without a ledger entry; entry written")
                return Outcome.LEDGER_REPAIRED

            if data.major_amount != to_money(order.selling_price):
                logger.warning(
                    f"Amount mismatch for {order_number}: gateway {data.major_amount}, "
                    f"order {to_money(order.selling_price)}"
                )

            claimed = db.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.payment_status.in_([PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]),
                )
                .values(
                    payment_status=PaymentStatus.PAID.value,
                    status=OrderStatus.PROCESSING.value,  # ready for manual fulfillment
                    payment_reference=str(data.id),
                    payment_method=data.channel,
                    paid_at=datetime.now(timezone.utc).replace(tzinfo=None),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                logger.info(f"⚠️ Order {order_number} was claimed by another worker. Skipping.")
                return Outcome.ALREADY_PAID

            if order.reseller_id is not None:
                self._credit_reseller(db, order)

            self._append_ledger_entry(db, order, data)
            self._queue_admin_alert(db, order, trace_id)

        return Outcome.APPLIED

    def _has_ledger_entry(self, db: Session, order: Order) -> bool:
        return db.scalar(
            select(Transaction.id).where(
                Transaction.order_id == order.id,
                Transaction.type == TransactionType.ORDER_PAYMENT.value,
            )
        ) is not None

    def _credit_reseller(self, db: Session, order: Order) -> None:
        # increments evaluated by the database, never read-modify-write
        credited = db.execute(
            update(Reseller)
            .where(Reseller.id == order.reseller_id)
            .values(
                total_earnings=Reseller.total_earnings + to_money(order.commission),
                total_sales=Reseller.total_sales + to_money(order.selling_price),
                total_orders=Reseller.total_orders + 1,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if credited != 1:
            logger.warning(f"Reseller {order.reseller_id} of order {order.order_number} not found; no credit applied")

    def _append_ledger_entry(self, db: Session, order: Order, data: ChargeData) -> None:
        db.add(Transaction(
            transaction_number=generate_transaction_number(),
            order_id=order.id,
            reseller_id=order.reseller_id,
            type=TransactionType.ORDER_PAYMENT.value,
            amount=to_money(order.selling_price),
            currency=self.currency,
            status=TransactionStatus.COMPLETED.value,
            payment_provider=self.provider_name,
            provider_reference=data.reference,
        ))
        # surface a unique-constraint violation here, inside the transaction
        db.flush()

    def _queue_admin_alert(self, db: Session, order: Order, trace_id: Optional[str]) -> None:
        payload = {
            "type": "ADMIN_ALERT",
            "recipient": self.admin_email,
            "data": {
                "orderNumber": order.order_number,
                "amount": str(to_money(order.selling_price)),
                "bundle": order.bundle_name,
            },
        }
        db.add(Outbox(
            topic=self.notification_topic,
            payload=json.dumps(payload),
            trace_id=trace_id[:64] if trace_id else None,  # header-supplied, unbounded
        ))
