import asyncio
import logging
import math
from datetime import datetime

from bson import ObjectId

from config.constants import (
    CLOSED_RETURN_STATUSES,
    DEFAULT_PAGE_SIZE,
    GATEWAY_REFUND_METHOD,
    MAX_PAGE_SIZE,
    OTP_PURPOSE_PICKUP,
    PAYMENT_METHOD_ONLINE,
    PICKUP_ACTIONS,
    PICKUP_OTP_TTL,
    REFUND_METHODS,
    REFUNDABLE_RETURN_STATUSES,
    TERMINAL_ITEM_STATUSES,
)
from models.order import OrderStatus
from models.return_request import REFUND_STATUSES, ReturnStatus, can_transition
from models.user import Actor, Role
from utils.audit import log_audit
from utils.errors import (
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    NotReturnableError,
    PaymentGatewayError,
    ReturnWindowExpiredError,
    ValidationError,
)
from utils.guards import Action, authorize, parse_object_id, warehouse_filter
from utils.ids import generate_return_id, generate_unique_id
from utils.inventory import try_release
from utils.otp import invalidate_otp, issue_otp, verify_otp
from utils.razorpay import refund_payment
from utils.sms import send_pickup_otp
from utils.status_history import append_status, update_aggregate

RETURNS = "returns"
logger = logging.getLogger(__name__)


def _format_amount(value: float) -> str:
    value = round(float(value), 2)
    return str(int(value)) if value.is_integer() else f"{value:.2f}"


def _warehouse_id(ret: dict) -> str | None:
    return (ret.get("warehouse_info") or {}).get("warehouse_id")


def _pickup_agent_id(ret: dict) -> str | None:
    return (ret.get("assigned_pickup_agent") or {}).get("id")


def _mirror_items(items: list[dict], status: str) -> list[dict]:
    # refunded and rejected lines keep their own state
    mirrored = []
    for item in items:
        item = dict(item)
        if item.get("return_status") not in TERMINAL_ITEM_STATUSES:
            item["return_status"] = status
        mirrored.append(item)
    return mirrored


def _delivered_at(order: dict) -> datetime | None:
    if order.get("actual_delivery_date"):
        return order["actual_delivery_date"]
    for entry in reversed(order.get("status_history") or []):
        if entry.get("status") == OrderStatus.DELIVERED.value:
            return entry.get("timestamp")
    return None


# ======================================================
# READS
# ======================================================

async def get_return(db, return_id: str) -> dict:
    ret = await db.returns.find_one({"return_id": return_id})
    if not ret:
        raise NotFoundError("Return request not found")
    return ret


def assert_can_view_return(ret: dict, actor: Actor) -> None:
    if actor.role == Role.CUSTOMER:
        if str(ret.get("user_id")) != actor.id:
            raise ForbiddenError("Access denied")
        return

    if actor.role == Role.DELIVERY_BOY:
        if _pickup_agent_id(ret) != actor.id:
            raise ForbiddenError("This return is not assigned to you")
        return

    authorize(actor, Action.RETURN_VIEW_ALL, warehouse_id=_warehouse_id(ret))


async def get_return_for_actor(db, return_id: str, actor: Actor) -> dict:
    ret = await get_return(db, return_id)
    assert_can_view_return(ret, actor)
    return ret


async def list_returns(
    db,
    *,
    actor: Actor,
    status: str | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict:
    if actor.role == Role.CUSTOMER:
        query = {"user_id": actor.id}
    elif actor.role == Role.DELIVERY_BOY:
        query = {"assigned_pickup_agent.id": actor.id}
    else:
        authorize(actor, Action.RETURN_VIEW_ALL)
        query = warehouse_filter(actor)

    if status and status != "all":
        query["status"] = status

    page = max(1, page)
    limit = min(max(1, limit), MAX_PAGE_SIZE)

    returns = await db.returns.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit).to_list(limit)
    total = await db.returns.count_documents(query)
    total_pages = math.ceil(total / limit)

    return {
        "returns": returns,
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_returns": total,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


# ======================================================
# CREATE
# ======================================================

async def _items_in_open_returns(db, order_id: str) -> set[str]:
    blocked = set()
    cursor = db.returns.find({"order_id": order_id, "status": {"$nin": sorted(CLOSED_RETURN_STATUSES)}})
    async for ret in cursor:
        for item in ret.get("items", []):
            if item.get("return_status") != ReturnStatus.REJECTED.value:
                blocked.add(str(item.get("order_item_id")))
    return blocked


async def _claim_order_lines(db, order: dict, ret: dict) -> None:
    # order.return_claims.<order item id> -> return_id; set only where absent
    claims = {f"return_claims.{item['order_item_id']}": ret["return_id"] for item in ret["items"]}
    result = await db.orders.update_one(
        {"_id": order["_id"], **{field: {"$exists": False} for field in claims}},
        {"$set": claims},
    )
    if result.matched_count == 0:
        raise ValidationError("One or more items already have an open return")


async def _release_order_lines(db, ret: dict) -> None:
    for item in ret["items"]:
        field = f"return_claims.{item['order_item_id']}"
        await db.orders.update_one(
            {"_id": ret["order_object_id"], field: ret["return_id"]},
            {"$unset": {field: ""}},
        )


async def create_return_request(
    db,
    *,
    actor: Actor,
    order_id: str,
    items: list[dict],
    return_reason: str | None = None,
    pickup_address: dict | None = None,
    pickup_instructions: str | None = None,
    preferred_pickup_time: str | None = None,
    refund_preference: dict | None = None,
) -> dict:
    """
    Open a return for some lines of a delivered order.

    Each line must be returnable and inside its return window. Both come
    from the order line snapshot and fall back to the live product when the
    snapshot does not carry them. A line already covered by a return that
    was not rejected cannot be returned again.
    """
    authorize(actor, Action.RETURN_CREATE)

    if not items:
        raise ValidationError("Select at least one item to return")

    order = await db.orders.find_one({"order_id": order_id, "user_id": actor.id})
    if not order:
        raise NotFoundError("Order not found")

    if order.get("status") != OrderStatus.DELIVERED.value:
        raise InvalidStateError("Only delivered orders can be returned")

    now = datetime.utcnow()
    delivered_at = _delivered_at(order) or order.get("updated_at") or now
    days_since_delivery = (now - delivered_at).days

    order_items = {str(i["_id"]): i for i in order.get("items", [])}
    blocked = await _items_in_open_returns(db, order_id)
    seen = set()
    return_items = []

    for requested in items:
        item_id = str(requested.get("item_id"))
        order_item = order_items.get(item_id)
        if not order_item:
            raise ValidationError(f"Item {item_id} is not part of this order")

        if item_id in seen:
            raise ValidationError(f"Item '{order_item.get('name')}' listed more than once")
        seen.add(item_id)

        if item_id in blocked:
            raise ValidationError(f"Item '{order_item.get('name')}' already has an open return")

        returnable = order_item.get("returnable")
        window = order_item.get("return_window")
        if returnable is None or window is None:
            product = await db.products.find_one({"_id": order_item.get("product_id")}) or {}
            if returnable is None:
                returnable = product.get("returnable")
            if window is None:
                window = product.get("return_window")

        if not returnable:
            raise NotReturnableError(f"Item '{order_item.get('name')}' is not returnable")

        if not window or days_since_delivery > window:
            raise ReturnWindowExpiredError(f"Return window expired for '{order_item.get('name')}'")

        quantity = requested.get("quantity") or order_item["quantity"]
        if quantity < 1 or quantity > order_item["quantity"]:
            raise ValidationError(f"Invalid return quantity for '{order_item.get('name')}'")

        return_items.append({
            "_id": ObjectId(),
            "order_item_id": order_item["_id"],
            "product_id": order_item.get("product_id"),
            "variant_id": order_item.get("variant_id"),
            "variant_name": order_item.get("variant_name"),
            "selected_variant": order_item.get("selected_variant"),
            "name": order_item.get("name"),
            "image": order_item.get("image"),
            "price": order_item.get("price"),
            "quantity": quantity,
            "tax": order_item.get("tax"),
            "price_includes_tax": order_item.get("price_includes_tax", False),
            "return_reason": requested.get("reason") or return_reason,
            "return_status": ReturnStatus.REQUESTED.value,
            "refund_amount": 0,
        })

    return_id = await generate_unique_id(db, RETURNS, "return_id", generate_return_id)
    ret = {
        "return_id": return_id,
        "order_id": order_id,
        "order_object_id": order["_id"],
        "user_id": actor.id,
        "customer_info": order.get("customer_info"),
        "items": return_items,
        "status": ReturnStatus.REQUESTED.value,
        "status_history": [{
            "status": ReturnStatus.REQUESTED.value,
            "updated_by": actor.id,
            "note": "Return request submitted",
            "timestamp": now,
        }],
        "return_reason": return_reason,
        "pickup_info": {
            "address": pickup_address or (order.get("delivery_info") or {}).get("address"),
            "pickup_instructions": pickup_instructions,
            "preferred_pickup_time": preferred_pickup_time,
        },
        "refund_info": {"total_refund_amount": 0, "refund_status": "pending"},
        "refunded_amount": 0,
        "refund_preference": refund_preference,
        "warehouse_info": order.get("warehouse_info"),
        "stock": {"restored": False},
        "version": 0,
        "created_at": now,
        "updated_at": now,
    }

    await _claim_order_lines(db, order, ret)
    try:
        result = await db.returns.insert_one(ret)
    except Exception:
        await _release_order_lines(db, ret)
        raise
    ret["_id"] = result.inserted_id
    logger.info("RETURN_REQUESTED return=%s order=%s items=%d", return_id, order_id, len(return_items))
    return ret


# ======================================================
# STATUS UPDATES (STAFF)
# ======================================================

async def _load_pickup_agent(db, agent_id: str) -> dict:
    agent = await db.users.find_one({"_id": parse_object_id(agent_id, "agent_id")})
    if not agent or agent.get("role") != Role.DELIVERY_BOY.value:
        raise ValidationError("Invalid delivery agent")
    return agent


async def update_status(
    db,
    *,
    return_id: str,
    new_status: str,
    actor: Actor,
    note: str | None = None,
    assigned_pickup_agent: str | None = None,
) -> dict:
    if new_status not in {s.value for s in ReturnStatus}:
        raise ValidationError("Invalid status")
    if new_status in REFUND_STATUSES:
        raise ValidationError("Refund statuses are set by refund processing")

    ret = await get_return(db, return_id)
    authorize(actor, Action.RETURN_UPDATE_STATUS, warehouse_id=_warehouse_id(ret))

    current = ret["status"]
    if not can_transition(current, new_status):
        raise InvalidTransitionError(current, new_status)

    now = datetime.utcnow()
    set_fields = {"items": _mirror_items(ret["items"], new_status)}
    unset_fields = []
    otp_code = None

    if new_status == ReturnStatus.PICKUP_ASSIGNED.value:
        if not assigned_pickup_agent:
            raise ValidationError("Pickup agent is required")
        agent = await _load_pickup_agent(db, assigned_pickup_agent)

        _, otp_code, expires_at = await issue_otp(
            db,
            purpose=OTP_PURPOSE_PICKUP,
            subject_id=return_id,
            requester_id=str(agent["_id"]),
            ttl=PICKUP_OTP_TTL,
            key=return_id,
        )
        set_fields["assigned_pickup_agent"] = {
            "id": str(agent["_id"]),
            "name": agent.get("name"),
            "phone": agent.get("phone"),
            "assigned_at": now,
            "assigned_by": actor.id,
        }
        set_fields["pickup_otp"] = {"generated_at": now, "expires_at": expires_at, "verified": False}
        note = note or f"Pickup assigned to {agent.get('name') or agent['_id']}"

    elif new_status == ReturnStatus.PICKUP_REJECTED.value:
        unset_fields = ["assigned_pickup_agent", "pickup_otp"]

    elif new_status == ReturnStatus.PICKED_UP.value:
        if not (ret.get("pickup_otp") or {}).get("verified"):
            raise InvalidStateError("Pickup OTP must be verified before collection")
        set_fields["actual_pickup_date"] = now

    elif new_status == ReturnStatus.RECEIVED.value:
        set_fields["received_at"] = now

    updated = await append_status(
        db,
        RETURNS,
        ret,
        status=new_status,
        actor_id=actor.id,
        note=note,
        set_fields=set_fields,
        unset_fields=unset_fields,
    )
    logger.info("RETURN_STATUS_CHANGED return=%s %s->%s by=%s", return_id, current, new_status, actor.id)

    warnings = []
    if new_status == ReturnStatus.PICKUP_REJECTED.value:
        await invalidate_otp(db, purpose=OTP_PURPOSE_PICKUP, subject_id=return_id)

    if new_status == ReturnStatus.REJECTED.value:
        await _release_order_lines(db, updated)

    if otp_code is not None:
        phone = (updated.get("customer_info") or {}).get("phone")
        if not await send_pickup_otp(phone, otp_code, return_id):
            warnings.append("Pickup OTP could not be sent by SMS")

    await log_audit(
        db,
        actor_id=actor.id,
        actor_role=actor.role.value,
        action="RETURN_STATUS_UPDATED",
        metadata={"return_id": return_id, "from": current, "to": new_status},
    )

    return {"return": updated, "warnings": warnings}


# ======================================================
# PICKUP (DELIVERY AGENT)
# ======================================================

async def update_pickup_status(
    db,
    *,
    return_id: str,
    action: str,
    actor: Actor,
    note: str | None = None,
) -> dict:
    target = PICKUP_ACTIONS.get(action)
    if target is None:
        raise ValidationError("Invalid pickup action")

    ret = await get_return(db, return_id)
    authorize(actor, Action.RETURN_PICKUP_ACTION)

    if _pickup_agent_id(ret) != actor.id:
        raise ForbiddenError("This return is not assigned to you")

    current = ret["status"]
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)

    set_fields = {"items": _mirror_items(ret["items"], target)}
    unset_fields = []

    if target == ReturnStatus.PICKED_UP.value:
        if not (ret.get("pickup_otp") or {}).get("verified"):
            raise InvalidStateError("Pickup OTP must be verified before collection")
        set_fields["actual_pickup_date"] = datetime.utcnow()
        note = note or "Item collected by pickup agent"
    else:
        unset_fields = ["assigned_pickup_agent", "pickup_otp"]
        note = note or "Pickup rejected by agent"

    updated = await append_status(
        db,
        RETURNS,
        ret,
        status=target,
        actor_id=actor.id,
        note=note,
        set_fields=set_fields,
        unset_fields=unset_fields,
    )

    if target == ReturnStatus.PICKUP_REJECTED.value:
        await invalidate_otp(db, purpose=OTP_PURPOSE_PICKUP, subject_id=return_id)

    logger.info("RETURN_PICKUP_%s return=%s agent=%s", action.upper(), return_id, actor.id)
    return {"return": updated, "warnings": []}


def _assert_pickup_otp_actor(ret: dict, actor: Actor, action: Action) -> None:
    authorize(actor, action, warehouse_id=_warehouse_id(ret))
    if actor.role == Role.DELIVERY_BOY and _pickup_agent_id(ret) != actor.id:
        raise ForbiddenError("This return is not assigned to you")


async def verify_pickup_otp(db, *, return_id: str, otp: str, actor: Actor) -> dict:
    ret = await get_return(db, return_id)
    _assert_pickup_otp_actor(ret, actor, Action.RETURN_VERIFY_OTP)

    if ret["status"] != ReturnStatus.PICKUP_ASSIGNED.value:
        raise InvalidStateError("Pickup OTP can only be verified while a pickup is assigned")

    await verify_otp(db, purpose=OTP_PURPOSE_PICKUP, key=return_id, code=otp, subject_id=return_id)

    updated = await update_aggregate(
        db,
        RETURNS,
        ret,
        set_fields={
            "pickup_otp.verified": True,
            "pickup_otp.verified_at": datetime.utcnow(),
            "pickup_otp.verified_by": actor.id,
        },
    )
    return {"return": updated, "warnings": []}


async def resend_pickup_otp(db, *, return_id: str, actor: Actor) -> dict:
    ret = await get_return(db, return_id)
    _assert_pickup_otp_actor(ret, actor, Action.RETURN_RESEND_OTP)

    agent_id = _pickup_agent_id(ret)
    if ret["status"] != ReturnStatus.PICKUP_ASSIGNED.value or not agent_id:
        raise InvalidStateError("No pickup is currently assigned")

    _, code, expires_at = await issue_otp(
        db,
        purpose=OTP_PURPOSE_PICKUP,
        subject_id=return_id,
        requester_id=agent_id,
        ttl=PICKUP_OTP_TTL,
        key=return_id,
    )

    updated = await update_aggregate(
        db,
        RETURNS,
        ret,
        set_fields={"pickup_otp": {"generated_at": datetime.utcnow(), "expires_at": expires_at, "verified": False}},
    )

    sms_sent = await send_pickup_otp((ret.get("customer_info") or {}).get("phone"), code, return_id)
    return {
        "return": updated,
        "expires_at": expires_at,
        "sms_sent": sms_sent,
        "warnings": [] if sms_sent else ["Pickup OTP could not be sent by SMS"],
    }


# ======================================================
# REFUNDS
# ======================================================

def _validate_refund_lines(ret: dict, items: list[dict], refund_method: str | None) -> dict[str, float]:
    if not items:
        raise ValidationError("Select at least one item to refund")

    if refund_method not in REFUND_METHODS:
        raise ValidationError("Invalid refund method")

    by_id = {str(i["_id"]): i for i in ret["items"]}
    amounts = {}

    for line in items:
        item_id = str(line.get("item_id"))
        amount = line.get("refund_amount")

        if not isinstance(amount, (int, float)) or amount <= 0:
            raise ValidationError("Refund amount must be greater than zero")

        item = by_id.get(item_id)
        if not item:
            raise ValidationError(f"Item {item_id} is not part of this return")

        if item.get("return_status") in TERMINAL_ITEM_STATUSES:
            raise ValidationError(f"Item '{item.get('name')}' is already {item['return_status']}")

        if item_id in amounts:
            raise ValidationError(f"Item '{item.get('name')}' listed more than once")

        amounts[item_id] = float(amount)

    return amounts


async def process_refund(
    db,
    *,
    return_id: str,
    items: list[dict],
    refund_method: str,
    actor: Actor,
    refund_details: dict | None = None,
) -> dict:
    """
    Refund some or all lines of a received return.

    The return is claimed (``refund_info.refund_status = processing``) before
    any money moves, so a second concurrent refund gets ConflictError.
    Online-paid orders refunded to the original payment go through the
    gateway; a gateway failure marks the claim failed and changes no line.
    Once every line is refunded the returned quantities go back to stock.
    """
    ret = await get_return(db, return_id)
    authorize(actor, Action.RETURN_REFUND, warehouse_id=_warehouse_id(ret))

    if ret["status"] not in REFUNDABLE_RETURN_STATUSES:
        raise InvalidStateError(f"Refund cannot be processed while return is '{ret['status']}'")

    amounts = _validate_refund_lines(ret, items, refund_method)
    total = round(sum(amounts.values()), 2)

    claimed = await update_aggregate(
        db,
        RETURNS,
        ret,
        set_fields={"refund_info.refund_status": "processing", "refund_info.refund_method": refund_method},
        guard={"refund_info.refund_status": {"$ne": "processing"}},
    )

    order = await db.orders.find_one({"_id": ret.get("order_object_id")}) or {}
    payment_info = order.get("payment_info") or {}
    refund_id = None

    if (
        refund_method == GATEWAY_REFUND_METHOD
        and payment_info.get("method") == PAYMENT_METHOD_ONLINE
        and payment_info.get("transaction_id")
    ):
        try:
            refund = await asyncio.to_thread(
                refund_payment,
                payment_info["transaction_id"],
                total,
                {"return_id": return_id, "order_id": ret["order_id"]},
            )
        except PaymentGatewayError:
            logger.exception("RETURN_REFUND_GATEWAY_FAILED return=%s amount=%s", return_id, total)
            await update_aggregate(db, RETURNS, claimed, set_fields={"refund_info.refund_status": "failed"})
            raise
        refund_id = refund.get("id")

    now = datetime.utcnow()
    refunded_items = []
    for item in claimed["items"]:
        item = dict(item)
        item_id = str(item["_id"])
        if item_id in amounts:
            item["return_status"] = ReturnStatus.REFUNDED.value
            item["refund_amount"] = amounts[item_id]
            item["refunded_at"] = now
            item["refund_id"] = refund_id
        refunded_items.append(item)

    fully_refunded = all(i["return_status"] == ReturnStatus.REFUNDED.value for i in refunded_items)
    new_status = ReturnStatus.REFUNDED.value if fully_refunded else ReturnStatus.PARTIALLY_REFUNDED.value
    refunded_amount = round(float(claimed.get("refunded_amount") or 0) + total, 2)

    restoring = fully_refunded and not (claimed.get("stock") or {}).get("restored")

    set_fields = {
        "items": refunded_items,
        "refunded_amount": refunded_amount,
        "refund_info.total_refund_amount": refunded_amount,
        "refund_info.refund_status": "processed",
        "refund_info.refunded_at": now,
        "refund_info.refund_id": refund_id,
    }
    if refund_details:
        set_fields["refund_info.refund_details"] = refund_details
    if restoring:
        set_fields["stock.restored"] = True
        set_fields["stock.restored_at"] = now

    updated = await append_status(
        db,
        RETURNS,
        claimed,
        status=new_status,
        actor_id=actor.id,
        note=f"Refund processed: ₹{_format_amount(total)} via {refund_method} for {len(amounts)} item(s)",
        set_fields=set_fields,
    )
    logger.info("RETURN_REFUNDED return=%s amount=%s status=%s", return_id, total, new_status)

    warnings = []
    if restoring:
        warning = await try_release(db, updated["items"], source="return", source_id=return_id)
        if warning:
            warnings.append(warning)

    await log_audit(
        db,
        actor_id=actor.id,
        actor_role=actor.role.value,
        action="RETURN_REFUNDED",
        metadata={"return_id": return_id, "amount": total, "method": refund_method, "refund_id": refund_id},
    )

    return {"return": updated, "refund_amount": total, "warnings": warnings}
