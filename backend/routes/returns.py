from fastapi import APIRouter, Depends, Query

from database import get_db
from models.return_request import (
    CreateReturnPayload,
    PickupActionPayload,
    PickupOtpPayload,
    ProcessRefundPayload,
    ReturnStatusPayload,
)
from models.user import Actor
from utils import return_lifecycle
from utils.security import get_current_actor
from utils.serializers import serialize_doc, serialize_docs, serialize_result

router = APIRouter(
    prefix="/returns",
    tags=["Returns"]
)


# ======================================================
# CUSTOMER
# ======================================================

@router.post("")
async def create_return_request(
    payload: CreateReturnPayload,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    ret = await return_lifecycle.create_return_request(
        db,
        actor=actor,
        order_id=payload.order_id,
        items=[item.model_dump() for item in payload.items],
        return_reason=payload.return_reason,
        pickup_address=payload.pickup_address,
        pickup_instructions=payload.pickup_instructions,
        preferred_pickup_time=payload.preferred_pickup_time,
        refund_preference=payload.refund_preference.model_dump() if payload.refund_preference else None,
    )
    return {"return": serialize_doc(ret), "message": "Return request submitted"}


@router.get("")
async def list_returns(
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await return_lifecycle.list_returns(db, actor=actor, status=status, page=page, limit=limit)
    return {
        "returns": serialize_docs(result["returns"]),
        "pagination": result["pagination"],
    }


@router.get("/{return_id}")
async def get_return(
    return_id: str,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    ret = await return_lifecycle.get_return_for_actor(db, return_id, actor)
    return {"return": serialize_doc(ret)}


# ======================================================
# STAFF
# ======================================================

@router.put("/{return_id}/status")
async def update_return_status(
    return_id: str,
    payload: ReturnStatusPayload,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await return_lifecycle.update_status(
        db,
        return_id=return_id,
        new_status=payload.status,
        actor=actor,
        note=payload.note,
        assigned_pickup_agent=payload.assigned_pickup_agent,
    )
    return serialize_result(result, "return")


@router.post("/{return_id}/refund")
async def process_refund(
    return_id: str,
    payload: ProcessRefundPayload,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await return_lifecycle.process_refund(
        db,
        return_id=return_id,
        items=[item.model_dump() for item in payload.items],
        refund_method=payload.refund_method,
        actor=actor,
        refund_details=payload.refund_details,
    )
    return serialize_result(result, "return")


# ======================================================
# PICKUP AGENT
# ======================================================

@router.put("/{return_id}/pickup")
async def update_pickup_status(
    return_id: str,
    payload: PickupActionPayload,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await return_lifecycle.update_pickup_status(
        db, return_id=return_id, action=payload.action, actor=actor, note=payload.note
    )
    return serialize_result(result, "return")


@router.post("/{return_id}/verify-pickup-otp")
async def verify_pickup_otp(
    return_id: str,
    payload: PickupOtpPayload,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await return_lifecycle.verify_pickup_otp(db, return_id=return_id, otp=payload.otp, actor=actor)
    return serialize_result(result, "return")


@router.post("/{return_id}/resend-pickup-otp")
async def resend_pickup_otp(
    return_id: str,
    actor: Actor = Depends(get_current_actor),
    db=Depends(get_db),
):
    result = await return_lifecycle.resend_pickup_otp(db, return_id=return_id, actor=actor)
    return serialize_result(result, "return")
