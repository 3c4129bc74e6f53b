from pydantic import BaseModel, Field
from typing import Literal, Optional
from enum import Enum


class ReturnStatus(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    PICKUP_ASSIGNED = "pickup_assigned"
    PICKUP_REJECTED = "pickup_rejected"
    PICKED_UP = "picked_up"
    RECEIVED = "received"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    REJECTED = "rejected"


RETURN_TRANSITIONS: dict[str, frozenset[str]] = {
    ReturnStatus.REQUESTED.value: frozenset({ReturnStatus.APPROVED.value, ReturnStatus.REJECTED.value}),
    ReturnStatus.APPROVED.value: frozenset({ReturnStatus.PICKUP_ASSIGNED.value, ReturnStatus.REJECTED.value}),
    ReturnStatus.PICKUP_ASSIGNED.value: frozenset({
        ReturnStatus.PICKUP_REJECTED.value,
        ReturnStatus.PICKED_UP.value,
        ReturnStatus.PICKUP_ASSIGNED.value,
    }),
    ReturnStatus.PICKUP_REJECTED.value: frozenset({ReturnStatus.PICKUP_ASSIGNED.value}),
    ReturnStatus.PICKED_UP.value: frozenset({ReturnStatus.RECEIVED.value}),
    ReturnStatus.RECEIVED.value: frozenset({ReturnStatus.PARTIALLY_REFUNDED.value, ReturnStatus.REFUNDED.value}),
    ReturnStatus.PARTIALLY_REFUNDED.value: frozenset({
        ReturnStatus.PARTIALLY_REFUNDED.value,
        ReturnStatus.REFUNDED.value,
    }),
    ReturnStatus.REFUNDED.value: frozenset(),
    ReturnStatus.REJECTED.value: frozenset(),
}

# only reachable through refund processing
REFUND_STATUSES = frozenset({ReturnStatus.PARTIALLY_REFUNDED.value, ReturnStatus.REFUNDED.value})


def can_transition(current: str, target: str) -> bool:
    return target in RETURN_TRANSITIONS.get(current, frozenset())


# =====================================================
# REQUEST SCHEMAS
# =====================================================

class ReturnItemIn(BaseModel):
    item_id: str
    quantity: Optional[int] = Field(None, gt=0)
    reason: Optional[str] = None


class RefundPreference(BaseModel):
    method: Literal["upi", "bank"]
    upi_id: Optional[str] = None
    bank_details: Optional[dict] = None


class CreateReturnPayload(BaseModel):
    order_id: str
    items: list[ReturnItemIn] = []
    return_reason: Optional[str] = None
    pickup_address: Optional[dict] = None
    pickup_instructions: Optional[str] = None
    preferred_pickup_time: Optional[str] = None
    refund_preference: Optional[RefundPreference] = None


class ReturnStatusPayload(BaseModel):
    status: str
    note: Optional[str] = None
    assigned_pickup_agent: Optional[str] = None


class PickupActionPayload(BaseModel):
    action: str
    note: Optional[str] = None


class PickupOtpPayload(BaseModel):
    otp: str


class RefundItemIn(BaseModel):
    item_id: str
    refund_amount: float


class ProcessRefundPayload(BaseModel):
    items: list[RefundItemIn] = []
    refund_method: Optional[str] = None
    refund_details: Optional[dict] = None
