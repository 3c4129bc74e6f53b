import asyncio
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from config.env import RAZORPAY_KEY_ID
from database import get_db
from models.order import CreateOrderPayload, OrderRefundPayload
from models.user import Actor
from utils import order_lifecycle
from utils.guards import Action, authorize
from utils.ids import make_business_id
from utils.razorpay import create_razorpay_order
from utils.security import get_current_actor
from utils.serializers import serialize_result

router = APIRouter(
    prefix="/payments",
    tags=["Payments"]
)
logger = logging.getLogger(__name__)


class CreatePaymentOrderPayload(BaseModel):
    amount: float = Field(..., gt=0)
    receipt: str | None = None
    notes: dict | None = None


class VerifyPaymentPayload(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    order_data: CreateOrderPayload


@router.post("/create-order")
async def create_payment_order(
    payload: CreatePaymentOrderPayload,
    actor: Actor = Depends(get_current_actor),
):
    authorize(actor, Action.ORDER_CREATE)

    receipt = payload.receipt or make_business_id("RCPT")
    razorpay_order = await asyncio.to_thread(
        create_razorpay_order,
        amount_inr=payload.amount,
        receipt=receipt,
        notes={**(payload.notes or {}), "user_id": actor.id},
    )
    logger.info("PAYMENT_ORDER_CREATED razorpay_order=%s user=%s", razorpay_order.get("id"), actor.id)

    return {
        "razorpay_order_id": razorpay_order["id"],
        "amount": razorpay_order["amount"],
        "currency": razorpay_order["currency"],
        "receipt": receipt,
        "key_id": RAZORPAY_KEY_ID,
    }


@router.post("/verify")
async def verify_payment(
    payload: VerifyPaymentPayload,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    order_data = payload.order_data
    result = await order_lifecycle.create_order_from_payment(
        db,
        actor=actor,
        razorpay_order_id=payload.razorpay_order_id,
        razorpay_payment_id=payload.razorpay_payment_id,
        razorpay_signature=payload.razorpay_signature,
        order_data={
            "items": [item.model_dump() for item in order_data.items],
            "customer_info": order_data.customer_info.model_dump() if order_data.customer_info else None,
            "pricing": order_data.pricing.model_dump(),
            "delivery_info": order_data.delivery_info.model_dump() if order_data.delivery_info else None,
            "warehouse_info": order_data.warehouse_info.model_dump() if order_data.warehouse_info else None,
            "promo_code": order_data.promo_code,
            "tax_calculation": order_data.tax_calculation,
            "notes": order_data.notes,
        },
    )
    return serialize_result(result, "order")


@router.post("/refund/{order_id}")
async def refund_order(
    order_id: str,
    payload: OrderRefundPayload,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await order_lifecycle.refund_order(
        db, order_id=order_id, actor=actor, amount=payload.amount, reason=payload.reason
    )
    return serialize_result(result, "order")
