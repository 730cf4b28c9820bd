"""Payment gateway client used when an order is created."""

import logging
import requests

from common.error_handling import ServiceError, ErrorCodes
from common.settings import settings
from order_service.helpers import to_minor_units

logger = logging.getLogger(__name__)

def initialize_payment(order, email: str, session: requests.Session = None) -> str:
    """
    Start a gateway transaction for an order.

    The transaction reference is the order number, which is what the
    charge webhook later carries back as ``data.reference``.

    Returns:
        str: the gateway's authorization URL the customer is redirected to
    """
    params = {
        "email": email,
        "amount": to_minor_units(order.selling_price),
        "currency": settings.payment_currency,
        "reference": order.order_number,
        "callback_url": f"{settings.frontend_url}/payment/callback",
        "metadata": {
            "orderId": str(order.id),
            "resellerId": str(order.reseller_id) if order.reseller_id else None,
            "custom_fields": [
                {
                    "display_name": "Bundle",
                    "variable_name": "bundle_name",
                    "value": order.bundle_name,
                }
            ],
        },
    }

    http = session or requests
    try:
        response = http.post(
            f"{settings.payment_api_base}/transaction/initialize",
            json=params,
            headers={
                "Authorization": f"Bearer {settings.payment_secret_key}",
                "Content-Type": "application/json",
            },
            timeout=settings.payment_http_timeout,
        )
        response.raise_for_status()
        return response.json()["data"]["authorization_url"]
    except (requests.RequestException, KeyError, ValueError) as e:
        logger.error(f"Payment init error for order {order.order_number}: {e}")
        raise ServiceError(ErrorCodes.PAYMENT_INIT_FAILED, "Payment initialization failed", e)
