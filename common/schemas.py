from decimal import Decimal
from typing import Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from common.job_queue import UnrecoverableError

CHARGE_SUCCESS = "charge.success"

class ChargeData(BaseModel):
    model_config = ConfigDict(extra="allow")

    reference: str
    status: Optional[str] = None
    amount: int  # minor units (pesewas)
    channel: Optional[str] = None
    id: Union[int, str]

    @property
    def major_amount(self) -> Decimal:
        return (Decimal(self.amount) / 100).quantize(Decimal("0.01"))

class ChargeSucceeded(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["charge_succeeded"] = "charge_succeeded"
    event: str = CHARGE_SUCCESS
    data: ChargeData

class OtherEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["other"] = "other"
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)

GatewayEvent = Union[ChargeSucceeded, OtherEvent]

def parse_event(payload: Dict[str, Any]) -> GatewayEvent:
    """Turn a raw gateway webhook body into a known event kind.

    Anything that is not a charge success is an OtherEvent and is acknowledged
    without side effects. A charge success whose data can't be read is
    unrecoverable: redelivering the same bytes will fail the same way.
    """
    if not isinstance(payload, dict):
        raise UnrecoverableError(f"event payload must be an object, got {type(payload).__name__}")
    event_type = payload.get("event")
    if event_type == CHARGE_SUCCESS:
        try:
            return ChargeSucceeded(data=payload.get("data") or {})
        except ValidationError as e:
            raise UnrecoverableError(f"malformed {CHARGE_SUCCESS} event: {e}") from e
    data = payload.get("data")
    return OtherEvent(event=str(event_type), data=data if isinstance(data, dict) else {})

class NotificationData(BaseModel):
    orderNumber: str
    amount: Decimal
    bundle: Optional[str] = None

class NotificationPayload(BaseModel):
    type: Literal["ADMIN_ALERT", "RESELLER_ALERT"] = "ADMIN_ALERT"
    recipient: str
    data: NotificationData

class CreateOrderRequest(BaseModel):
    bundle_id: int
    customer_phone: str
    email: str
