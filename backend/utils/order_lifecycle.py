import asyncio
import logging
import math
import re
from datetime import datetime

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from config.constants import (
    AGENT_ASSIGNABLE_STATUSES,
    ALLOWED_PAYMENT_METHODS,
    DEFAULT_PAGE_SIZE,
    DELIVERY_OTP_TTL,
    MAX_PAGE_SIZE,
    NON_CANCELLABLE_STATUSES,
    OTP_PURPOSE_DELIVERY,
    PAYMENT_METHOD_COD,
    PAYMENT_METHOD_ONLINE,
    STOCK_RELEASE_STATUSES,
)
from models.order import OrderStatus, PaymentStatus, can_transition
from models.user import Actor, Role
from utils.audit import log_audit
from utils.errors import (
    ForbiddenError,
    InvalidOtpError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PaymentGatewayError,
    ValidationError,
)
from utils.guards import Action, authorize, parse_object_id, warehouse_filter
from utils.ids import generate_order_id, generate_unique_id
from utils.inventory import try_release, try_reserve
from utils.otp import invalidate_otp, issue_otp, verify_otp
from utils.razorpay import fetch_payment, paise_to_amount, refund_payment, verify_checkout_signature
from utils.sms import send_delivery_otp
from utils.status_history import append_status, update_aggregate

ORDERS = "orders"
logger = logging.getLogger(__name__)


# ======================================================
# PURE RULES
# ======================================================

def initial_payment_status(method: str) -> str:
    if method == PAYMENT_METHOD_ONLINE:
        return PaymentStatus.PREPAID.value
    return PaymentStatus.PENDING.value


def derive_payment_status(status: str, method: str) -> str:
    if status in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value):
        return PaymentStatus.REFUNDED.value
    if status == OrderStatus.DELIVERED.value and method == PAYMENT_METHOD_COD:
        return PaymentStatus.PAID.value
    if method == PAYMENT_METHOD_COD:
        return PaymentStatus.PENDING.value
    return PaymentStatus.PREPAID.value


def calculate_total(pricing: dict | None, items: list[dict]) -> dict:
    """
    A positive ``total`` supplied by checkout is trusted; otherwise it is
    derived from the components. Either way it is rounded up to a whole rupee.
    """
    pricing = dict(pricing or {})

    subtotal = pricing.get("subtotal")
    if subtotal is None:
        subtotal = sum(float(i["price"]) * int(i["quantity"]) for i in items)

    for key in ("tax_amount", "discount_amount", "delivery_charge", "cod_charge"):
        pricing[key] = pricing.get(key) or 0

    total = pricing.get("total")
    if not total or total <= 0:
        total = (
            subtotal
            + pricing["tax_amount"]
            + pricing["delivery_charge"]
            + pricing["cod_charge"]
            - pricing["discount_amount"]
        )

    pricing["subtotal"] = subtotal
    pricing["total"] = max(0, math.ceil(round(total, 2)))
    return pricing


def _validate_order_input(items, customer_info, delivery_info, payment_info, warehouse_info):
    if not items or not isinstance(items, list):
        raise ValidationError("Order items are required")

    for item in items:
        if not item.get("product_id") or not item.get("name"):
            raise ValidationError("Each order item needs a product and a name")
        if not isinstance(item.get("price"), (int, float)) or item["price"] < 0:
            raise ValidationError(f"Invalid price for '{item.get('name')}'")
        if not isinstance(item.get("quantity"), int) or item["quantity"] <= 0:
            raise ValidationError(f"Invalid quantity for '{item.get('name')}'")

    if not customer_info or not customer_info.get("name") or not customer_info.get("phone"):
        raise ValidationError("Customer information is required")

    if not delivery_info or not delivery_info.get("address"):
        raise ValidationError("Delivery address is required")

    if not payment_info or payment_info.get("method") not in ALLOWED_PAYMENT_METHODS:
        raise ValidationError("Payment method is required")

    if not warehouse_info or not warehouse_info.get("warehouse_id") or not warehouse_info.get("warehouse_name"):
        raise ValidationError("Warehouse information is required")


def _snapshot_items(items: list[dict]) -> list[dict]:
    snapshot = []
    for item in items:
        line = dict(item)
        line["_id"] = ObjectId()
        line["product_id"] = parse_object_id(item["product_id"], "product_id")
        snapshot.append(line)
    return snapshot


def _warehouse_id(order: dict) -> str | None:
    return (order.get("warehouse_info") or {}).get("warehouse_id")


def _assigned_agent_id(order: dict) -> str | None:
    return (order.get("assigned_delivery_agent") or {}).get("id")


# ======================================================
# READS
# ======================================================

async def get_order(db, order_id: str) -> dict:
    order = await db.orders.find_one({"order_id": order_id})
    if not order:
        raise NotFoundError("Order not found")
    return order


def assert_can_view_order(order: dict, actor: Actor) -> None:
    if actor.role == Role.CUSTOMER:
        if str(order.get("user_id")) != actor.id:
            raise ForbiddenError("Access denied")
        return

    if actor.role == Role.DELIVERY_BOY:
        if _assigned_agent_id(order) != actor.id:
            raise ForbiddenError("This order is not assigned to you")
        return

    authorize(actor, Action.ORDER_VIEW_ALL, warehouse_id=_warehouse_id(order))


async def get_order_for_actor(db, order_id: str, actor: Actor) -> dict:
    order = await get_order(db, order_id)
    assert_can_view_order(order, actor)
    return order


async def list_orders(
    db,
    *,
    actor: Actor,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict:
    if actor.role == Role.CUSTOMER:
        query = {"user_id": actor.id}
    elif actor.role == Role.DELIVERY_BOY:
        query = {"assigned_delivery_agent.id": actor.id}
    else:
        authorize(actor, Action.ORDER_VIEW_ALL)
        query = warehouse_filter(actor)

    if status and status != "all":
        query["status"] = status

    if search and search.strip():
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [
            {field: pattern}
            for field in ("order_id", "customer_info.name", "customer_info.email", "customer_info.phone")
        ]

    page = max(1, page)
    limit = min(max(1, limit), MAX_PAGE_SIZE)

    orders = await db.orders.find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit).to_list(limit)
    total = await db.orders.count_documents(query)
    total_pages = math.ceil(total / limit)

    return {
        "orders": orders,
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_orders": total,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


# ======================================================
# CREATE
# ======================================================

async def _insert_order(
    db,
    *,
    user_id: str,
    actor_id: str,
    items: list[dict],
    customer_info: dict,
    pricing: dict | None,
    delivery_info: dict,
    payment_info: dict,
    warehouse_info: dict,
    note: str,
    promo_code: dict | None = None,
    tax_calculation: dict | None = None,
    notes: dict | None = None,
) -> dict:
    now = datetime.utcnow()
    snapshot = _snapshot_items(items)
    order_id = await generate_unique_id(db, ORDERS, "order_id", generate_order_id)

    order = {
        "order_id": order_id,
        "user_id": str(user_id),
        "customer_info": customer_info,
        "items": snapshot,
        "pricing": calculate_total(pricing, snapshot),
        "promo_code": promo_code,
        "tax_calculation": tax_calculation,
        "delivery_info": delivery_info,
        "payment_info": payment_info,
        "warehouse_info": warehouse_info,
        "status": OrderStatus.NEW.value,
        "status_history": [{
            "status": OrderStatus.NEW.value,
            "updated_by": str(actor_id),
            "note": note,
            "timestamp": now,
        }],
        "tracking": {},
        "notes": notes or {},
        "stock": {"reserved": False, "released": False},
        "version": 0,
        "created_at": now,
        "updated_at": now,
    }

    result = await db.orders.insert_one(order)
    order["_id"] = result.inserted_id
    logger.info("ORDER_CREATED order=%s method=%s total=%s", order_id, payment_info["method"], order["pricing"]["total"])
    return order


async def _reserve_for_order(db, order: dict) -> list[str]:
    warning = await try_reserve(db, order["items"], source="order", source_id=order["order_id"])
    if warning:
        return [warning]

    now = datetime.utcnow()
    result = await db.orders.update_one(
        {"_id": order["_id"], "status": {"$nin": sorted(STOCK_RELEASE_STATUSES)}},
        {"$set": {"stock.reserved": True, "stock.reserved_at": now}, "$inc": {"version": 1}},
    )
    if result.modified_count == 0:
        # cancelled while we were reserving: nobody else will put it back
        logger.warning("ORDER_CANCELLED_DURING_RESERVE order=%s", order["order_id"])
        warning = await try_release(db, order["items"], source="order", source_id=order["order_id"])
        return [warning] if warning else []

    order["stock"] = {**order.get("stock", {}), "reserved": True, "reserved_at": now}
    order["version"] = order.get("version", 0) + 1
    return []


async def create_order(
    db,
    *,
    actor: Actor,
    items: list[dict],
    customer_info: dict,
    pricing: dict | None,
    delivery_info: dict,
    payment_info: dict,
    warehouse_info: dict,
    promo_code: dict | None = None,
    tax_calculation: dict | None = None,
    notes: dict | None = None,
    user_id: str | None = None,
) -> dict:
    """
    Checkout. Cash-on-delivery orders take their stock here; online orders
    take it when the payment is verified (see create_order_from_payment).
    A failed reservation is reported as a warning and the order stands.
    """
    authorize(actor, Action.ORDER_CREATE)
    _validate_order_input(items, customer_info, delivery_info, payment_info, warehouse_info)

    method = payment_info["method"]
    # customers pay online through create_order_from_payment
    if method != PAYMENT_METHOD_COD and actor.role != Role.ADMIN:
        raise ForbiddenError("Online orders are placed after payment verification")

    order = await _insert_order(
        db,
        user_id=user_id if (user_id and actor.role == Role.ADMIN) else actor.id,
        actor_id=actor.id,
        items=items,
        customer_info=customer_info,
        pricing=pricing,
        delivery_info=delivery_info,
        payment_info={**payment_info, "status": initial_payment_status(method)},
        warehouse_info=warehouse_info,
        note="Order placed",
        promo_code=promo_code,
        tax_calculation=tax_calculation,
        notes=notes,
    )

    warnings = []
    if method == PAYMENT_METHOD_COD:
        warnings += await _reserve_for_order(db, order)

    return {"order": order, "warnings": warnings}


async def create_order_from_payment(
    db,
    *,
    actor: Actor,
    razorpay_order_id: str,
    razorpay_payment_id: str,
    razorpay_signature: str,
    order_data: dict,
) -> dict:
    authorize(actor, Action.ORDER_CREATE)

    existing = await db.orders.find_one({"payment_info.transaction_id": razorpay_payment_id})
    if existing:
        return {"order": existing, "warnings": []}

    if not verify_checkout_signature(
        razorpay_order_id=razorpay_order_id,
        razorpay_payment_id=razorpay_payment_id,
        razorpay_signature=razorpay_signature,
    ):
        raise ValidationError("Invalid payment signature")

    payment = await asyncio.to_thread(fetch_payment, razorpay_payment_id)
    if payment.get("status") != "captured":
        raise ValidationError("Payment not captured successfully")

    payment_info = {
        "method": PAYMENT_METHOD_ONLINE,
        "payment_method": payment.get("method"),
        "status": PaymentStatus.PREPAID.value,
        "transaction_id": razorpay_payment_id,
        "gateway_order_id": razorpay_order_id,
        "paid_at": datetime.utcnow(),
        "payment_details": {
            "amount": paise_to_amount(payment.get("amount") or 0),
            "currency": payment.get("currency"),
            "method": payment.get("method"),
            "bank": payment.get("bank"),
            "wallet": payment.get("wallet"),
            "vpa": payment.get("vpa"),
        },
    }

    _validate_order_input(
        order_data.get("items"),
        order_data.get("customer_info"),
        order_data.get("delivery_info"),
        payment_info,
        order_data.get("warehouse_info"),
    )

    try:
        order = await _insert_order(
            db,
            user_id=actor.id,
            actor_id=actor.id,
            items=order_data["items"],
            customer_info=order_data["customer_info"],
            pricing=order_data.get("pricing"),
            delivery_info=order_data["delivery_info"],
            payment_info=payment_info,
            warehouse_info=order_data["warehouse_info"],
            note="Order placed with online payment",
            promo_code=order_data.get("promo_code"),
            tax_calculation=order_data.get("tax_calculation"),
            notes=order_data.get("notes"),
        )
    except DuplicateKeyError:
        existing = await db.orders.find_one({"payment_info.transaction_id": razorpay_payment_id})
        return {"order": existing, "warnings": []}

    warnings = await _reserve_for_order(db, order)
    return {"order": order, "warnings": warnings}


# ======================================================
# STATUS TRANSITIONS
# ======================================================

async def _apply_transition(
    db,
    order: dict,
    new_status: str,
    actor: Actor,
    note: str | None = None,
    *,
    tracking: dict | None = None,
    extra_set: dict | None = None,
) -> tuple[dict, list[str]]:
    current = order["status"]
    if not can_transition(current, new_status):
        raise InvalidTransitionError(current, new_status)

    if current == new_status:
        return order, []

    now = datetime.utcnow()
    method = (order.get("payment_info") or {}).get("method")
    set_fields = {"payment_info.status": derive_payment_status(new_status, method)}

    for key, value in (tracking or {}).items():
        if value:
            set_fields[f"tracking.{key}"] = value

    if new_status == OrderStatus.DELIVERED.value:
        if not order.get("actual_delivery_date"):
            set_fields["actual_delivery_date"] = now
        if method == PAYMENT_METHOD_COD:
            set_fields["payment_info.paid_at"] = now

    stock = order.get("stock") or {}
    releasing = (
        new_status in STOCK_RELEASE_STATUSES
        and current not in STOCK_RELEASE_STATUSES
        and stock.get("reserved")
        and not stock.get("released")
    )
    if releasing:
        set_fields["stock.released"] = True
        set_fields["stock.released_at"] = now

    set_fields.update(extra_set or {})

    updated = await append_status(
        db,
        ORDERS,
        order,
        status=new_status,
        actor_id=actor.id,
        note=note,
        set_fields=set_fields,
    )
    logger.info("ORDER_STATUS_CHANGED order=%s %s->%s by=%s", order["order_id"], current, new_status, actor.id)

    warnings = []
    if releasing:
        warning = await try_release(db, updated["items"], source="order", source_id=updated["order_id"])
        if warning:
            warnings.append(warning)

    return updated, warnings


async def transition_status(
    db,
    *,
    order_id: str,
    new_status: str,
    actor: Actor,
    note: str | None = None,
    tracking: dict | None = None,
) -> dict:
    if new_status not in {s.value for s in OrderStatus}:
        raise ValidationError("Invalid status")

    order = await get_order(db, order_id)
    authorize(actor, Action.ORDER_UPDATE_STATUS, warehouse_id=_warehouse_id(order))

    updated, warnings = await _apply_transition(db, order, new_status, actor, note, tracking=tracking)
    return {"order": updated, "warnings": warnings}


async def cancel_order(db, *, order_id: str, actor: Actor, reason: str | None = None) -> dict:
    order = await get_order(db, order_id)

    if actor.role == Role.CUSTOMER:
        authorize(actor, Action.ORDER_CANCEL)
        if str(order.get("user_id")) != actor.id:
            raise ForbiddenError("Access denied")
    else:
        authorize(actor, Action.ORDER_CANCEL, warehouse_id=_warehouse_id(order))

    if order["status"] in NON_CANCELLABLE_STATUSES:
        raise InvalidTransitionError(order["status"], OrderStatus.CANCELLED.value)

    now = datetime.utcnow()
    updated, warnings = await _apply_transition(
        db,
        order,
        OrderStatus.CANCELLED.value,
        actor,
        reason or "Order cancelled",
        extra_set={
            "cancellation": {
                "reason": reason or "Cancelled by user",
                "cancelled_at": now,
                "cancelled_by": actor.id,
            },
        },
    )

    await log_audit(
        db,
        actor_id=actor.id,
        actor_role=actor.role.value,
        action="ORDER_CANCELLED",
        metadata={"order_id": order_id, "reason": reason, "previous_status": order["status"]},
    )

    return {"order": updated, "warnings": warnings}


# ======================================================
# DELIVERY AGENT & OTP
# ======================================================

async def assign_delivery_agent(db, *, order_id: str, agent_id: str, actor: Actor) -> dict:
    order = await get_order(db, order_id)
    authorize(actor, Action.ORDER_ASSIGN_AGENT, warehouse_id=_warehouse_id(order))

    if order["status"] not in AGENT_ASSIGNABLE_STATUSES:
        raise InvalidStateError(f"Delivery agent cannot be assigned while order is '{order['status']}'")

    agent = await db.users.find_one({"_id": parse_object_id(agent_id, "agent_id")})
    if not agent or agent.get("role") != Role.DELIVERY_BOY.value:
        raise ValidationError("Invalid delivery agent")

    previous = _assigned_agent_id(order)
    assignment = {
        "id": str(agent["_id"]),
        "name": agent.get("name"),
        "phone": agent.get("phone"),
        "assigned_at": datetime.utcnow(),
        "assigned_by": actor.id,
    }

    updated = await append_status(
        db,
        ORDERS,
        order,
        status=order["status"],
        actor_id=actor.id,
        note=f"Delivery agent assigned: {agent.get('name') or assignment['id']}",
        set_fields={"assigned_delivery_agent": assignment},
    )

    if previous and previous != assignment["id"]:
        await invalidate_otp(db, purpose=OTP_PURPOSE_DELIVERY, subject_id=order_id)

    return {"order": updated, "warnings": []}


def _assert_delivery_actor(order: dict, actor: Actor) -> None:
    authorize(actor, Action.ORDER_DELIVERY_OTP, warehouse_id=_warehouse_id(order))

    if actor.role == Role.DELIVERY_BOY:
        agent_id = _assigned_agent_id(order)
        if not agent_id:
            raise ForbiddenError("Order has no assigned delivery agent")
        if agent_id != actor.id:
            raise ForbiddenError("This order is not assigned to you")


async def generate_delivery_otp(db, *, order_id: str, actor: Actor) -> dict:
    order = await get_order(db, order_id)
    _assert_delivery_actor(order, actor)

    if not can_transition(order["status"], OrderStatus.DELIVERED.value):
        raise InvalidTransitionError(order["status"], OrderStatus.DELIVERED.value)

    session_id, code, expires_at = await issue_otp(
        db,
        purpose=OTP_PURPOSE_DELIVERY,
        subject_id=order_id,
        requester_id=actor.id,
        ttl=DELIVERY_OTP_TTL,
    )

    await update_aggregate(
        db,
        ORDERS,
        order,
        set_fields={
            "delivery_otp": {
                "generated_at": datetime.utcnow(),
                "expires_at": expires_at,
                "verified": False,
                "requested_by": actor.id,
            },
        },
    )

    sms_sent = await send_delivery_otp(order["customer_info"]["phone"], code, order_id)
    if not sms_sent:
        logger.warning("DELIVERY_OTP_SMS_DEGRADED order=%s", order_id)

    return {
        "session_id": session_id,
        "expires_at": expires_at,
        "sms_sent": sms_sent,
        "message": "OTP sent to customer" if sms_sent else "OTP generated but SMS delivery failed, ask support to resend",
    }


async def verify_delivery_otp_and_deliver(
    db,
    *,
    order_id: str,
    otp: str,
    session_id: str,
    actor: Actor,
    note: str | None = None,
) -> dict:
    order = await get_order(db, order_id)
    _assert_delivery_actor(order, actor)

    if order["status"] == OrderStatus.DELIVERED.value and (order.get("delivery_otp") or {}).get("verified"):
        raise InvalidOtpError("OTP already used")

    if not can_transition(order["status"], OrderStatus.DELIVERED.value):
        raise InvalidTransitionError(order["status"], OrderStatus.DELIVERED.value)

    await verify_otp(
        db,
        purpose=OTP_PURPOSE_DELIVERY,
        key=session_id,
        code=otp,
        requester_id=actor.id,
        subject_id=order_id,
    )

    updated, warnings = await _apply_transition(
        db,
        order,
        OrderStatus.DELIVERED.value,
        actor,
        note or "Delivered, OTP verified",
        extra_set={"delivery_otp.verified": True, "delivery_otp.verified_at": datetime.utcnow()},
    )

    await log_audit(
        db,
        actor_id=actor.id,
        actor_role=actor.role.value,
        action="ORDER_DELIVERED",
        metadata={"order_id": order_id, "otp_verified": True},
    )

    return {"order": updated, "warnings": warnings}


# ======================================================
# ORDER REFUND (ONLINE PAYMENTS)
# ======================================================

async def refund_order(
    db,
    *,
    order_id: str,
    actor: Actor,
    amount: float | None = None,
    reason: str | None = None,
) -> dict:
    order = await get_order(db, order_id)
    authorize(actor, Action.ORDER_REFUND, warehouse_id=_warehouse_id(order))

    payment_info = order.get("payment_info") or {}
    if payment_info.get("method") != PAYMENT_METHOD_ONLINE or not payment_info.get("transaction_id"):
        raise ValidationError("Order does not have online payment to refund")

    if order["status"] == OrderStatus.REFUNDED.value:
        raise InvalidStateError("Order already refunded")

    if not can_transition(order["status"], OrderStatus.REFUNDED.value):
        raise InvalidTransitionError(order["status"], OrderStatus.REFUNDED.value)

    if amount is not None and amount > order["pricing"]["total"]:
        raise ValidationError("Refund amount exceeds order total")

    # claim before money moves so a concurrent refund conflicts instead of paying twice
    claimed = await update_aggregate(
        db,
        ORDERS,
        order,
        set_fields={"cancellation.refund_status": "processing"},
        guard={"cancellation.refund_status": {"$ne": "processing"}},
    )

    try:
        refund = await asyncio.to_thread(
            refund_payment,
            payment_info["transaction_id"],
            amount,
            {"reason": reason or "Order cancellation", "order_id": order_id},
        )
    except PaymentGatewayError:
        logger.exception("ORDER_REFUND_GATEWAY_FAILED order=%s", order_id)
        await update_aggregate(db, ORDERS, claimed, set_fields={"cancellation.refund_status": "failed"})
        raise

    now = datetime.utcnow()
    refunded_amount = paise_to_amount(refund.get("amount") or 0)
    extra_set = {
        "cancellation.refund_amount": refunded_amount,
        "cancellation.refund_status": "processed",
        "cancellation.refunded_at": now,
        "cancellation.refund_id": refund.get("id"),
    }
    if not (claimed.get("cancellation") or {}).get("reason"):
        extra_set["cancellation.reason"] = reason or "Order cancelled and refunded"
        extra_set["cancellation.cancelled_at"] = now
        extra_set["cancellation.cancelled_by"] = actor.id

    updated, warnings = await _apply_transition(
        db,
        claimed,
        OrderStatus.REFUNDED.value,
        actor,
        f"Refund processed: ₹{refunded_amount}",
        extra_set=extra_set,
    )

    await log_audit(
        db,
        actor_id=actor.id,
        actor_role=actor.role.value,
        action="ORDER_REFUNDED",
        metadata={"order_id": order_id, "refund_id": refund.get("id"), "amount": refunded_amount},
    )

    return {"order": updated, "refund": refund, "warnings": warnings}


async def recalculate_total(db, *, order_id: str, actor: Actor) -> dict:
    order = await get_order(db, order_id)
    authorize(actor, Action.ORDER_UPDATE_STATUS, warehouse_id=_warehouse_id(order))

    previous = order["pricing"].get("total")
    pricing = calculate_total({**order["pricing"], "total": None}, order["items"])

    updated = await append_status(
        db,
        ORDERS,
        order,
        status=order["status"],
        actor_id=actor.id,
        note=f"Order total recalculated: {previous} -> {pricing['total']}",
        set_fields={"pricing": pricing},
    )
    return {"order": updated, "warnings": []}
