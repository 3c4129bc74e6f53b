from fastapi import APIRouter, Depends, Query

from database import get_db
from models.order import (
    AssignAgentPayload,
    CancelPayload,
    CreateOrderPayload,
    StatusUpdatePayload,
    VerifyDeliveryOtpPayload,
)
from models.user import Actor
from utils import order_lifecycle
from utils.security import get_current_actor
from utils.serializers import serialize_doc, serialize_docs, serialize_result, serialize_value

router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)


def _dump(model) -> dict | None:
    return model.model_dump() if model is not None else None


# ======================================================
# CREATE / READ
# ======================================================

@router.post("")
async def create_order(
    payload: CreateOrderPayload,
    user_id: str | None = Query(None),
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await order_lifecycle.create_order(
        db,
        actor=actor,
        items=[item.model_dump() for item in payload.items],
        customer_info=_dump(payload.customer_info),
        pricing=payload.pricing.model_dump(),
        delivery_info=_dump(payload.delivery_info),
        payment_info=_dump(payload.payment_info),
        warehouse_info=_dump(payload.warehouse_info),
        promo_code=payload.promo_code,
        tax_calculation=payload.tax_calculation,
        notes=payload.notes,
        user_id=user_id,
    )
    return serialize_result(result, "order")


@router.get("")
async def list_orders(
    status: str | None = Query(None),
    search: str | None = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await order_lifecycle.list_orders(
        db, actor=actor, status=status, search=search, page=page, limit=limit
    )
    return {
        "orders": serialize_docs(result["orders"]),
        "pagination": result["pagination"],
    }


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    order = await order_lifecycle.get_order_for_actor(db, order_id, actor)
    return {"order": serialize_doc(order)}


# ======================================================
# STATUS (WAREHOUSE / ADMIN)
# ======================================================

@router.put("/{order_id}/status")
async def update_order_status(
    order_id: str,
    payload: StatusUpdatePayload,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await order_lifecycle.transition_status(
        db,
        order_id=order_id,
        new_status=payload.status,
        actor=actor,
        note=payload.note,
        tracking={
            "tracking_number": payload.tracking_number,
            "carrier": payload.carrier,
            "tracking_url": payload.tracking_url,
        },
    )
    return serialize_result(result, "order")


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    payload: CancelPayload,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await order_lifecycle.cancel_order(db, order_id=order_id, actor=actor, reason=payload.reason)
    return serialize_result(result, "order")


@router.post("/{order_id}/recalculate-total")
async def recalculate_total(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await order_lifecycle.recalculate_total(db, order_id=order_id, actor=actor)
    return serialize_result(result, "order")


# ======================================================
# DELIVERY
# ======================================================

@router.post("/{order_id}/assign-agent")
async def assign_delivery_agent(
    order_id: str,
    payload: AssignAgentPayload,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await order_lifecycle.assign_delivery_agent(
        db, order_id=order_id, agent_id=payload.agent_id, actor=actor
    )
    return serialize_result(result, "order")


@router.post("/{order_id}/delivery-otp")
async def generate_delivery_otp(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await order_lifecycle.generate_delivery_otp(db, order_id=order_id, actor=actor)
    return serialize_value(result)


@router.post("/{order_id}/verify-delivery-otp")
async def verify_delivery_otp(
    order_id: str,
    payload: VerifyDeliveryOtpPayload,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await order_lifecycle.verify_delivery_otp_and_deliver(
        db,
        order_id=order_id,
        otp=payload.otp,
        session_id=payload.session_id,
        actor=actor,
        note=payload.note,
    )
    return serialize_result(result, "order")
