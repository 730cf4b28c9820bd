import logging
from sqlalchemy import select
from sqlalchemy.orm import Session

from common.error_handling import BusinessLogicError, ErrorCodes
from order_service.constants import OrderStatus, PaymentStatus, ResellerStatus
from order_service.helpers import generate_order_number, to_money
from order_service.models import Bundle, Order, Reseller

logger = logging.getLogger(__name__)

def initiate_order(db: Session, referral_code: str, bundle_id: int, customer_phone: str) -> Order:
    """Create a pending order priced as bundle base price plus the reseller's commission."""
    reseller = db.scalar(select(Reseller).where(Reseller.referral_code == referral_code.strip().upper()))
    if reseller is None or reseller.status != ResellerStatus.ACTIVE.value:
        raise BusinessLogicError(ErrorCodes.RESELLER_NOT_FOUND, "Invalid referral code", field="ref")

    bundle = db.get(Bundle, bundle_id)
    if bundle is None:
        raise BusinessLogicError(ErrorCodes.BUNDLE_NOT_FOUND, "Bundle not found", field="bundle_id")
    if not bundle.active:
        raise BusinessLogicError(ErrorCodes.BUNDLE_INACTIVE, "This bundle is currently unavailable", field="bundle_id")

    commission = to_money(reseller.preset_commission)
    base_price = to_money(bundle.base_price)
    cost_price = to_money(bundle.cost_price)

    order = Order(
        order_number=generate_order_number(),
        customer_phone=customer_phone,
        bundle_id=bundle.id,
        reseller_id=reseller.id,
        network=bundle.network,
        bundle_name=bundle.name,
        cost_price=cost_price,
        base_price=base_price,
        selling_price=base_price + commission,
        commission=commission,
        profit=base_price - cost_price,
        status=OrderStatus.ACCEPTED.value,
        payment_status=PaymentStatus.PENDING.value,
    )
    db.add(order)
    db.commit()

    logger.info(f"🧾 Order {order.order_number} created for reseller {reseller.reseller_code}: "
                f"{order.selling_price} ({commission} commission)")
    return order
