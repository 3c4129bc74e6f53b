from datetime import datetime, timedelta

import pytest

from conftest import CUSTOMER_INFO, DELIVERY_INFO, WAREHOUSE, order_items, stock_of
from utils import order_lifecycle
from utils.errors import (
    ConflictError,
    ForbiddenError,
    InvalidOtpError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    OtpExpiredError,
    OtpMismatchError,
    PaymentGatewayError,
    ValidationError,
)
from utils.order_lifecycle import calculate_total, derive_payment_status
from utils.status_history import update_aggregate


# issued codes are 1000-9999
WRONG_CODE = "0000"


# ======================================================
# PURE RULES
# ======================================================

@pytest.mark.parametrize(
    "status, method, expected",
    [
        ("cancelled", "cod", "refunded"),
        ("refunded", "online", "refunded"),
        ("delivered", "cod", "paid"),
        ("delivered", "online", "prepaid"),
        ("shipped", "cod", "pending"),
        ("new", "online", "prepaid"),
    ],
)
def test_derive_payment_status(status, method, expected):
    assert derive_payment_status(status, method) == expected


def test_calculate_total_rounds_up_supplied_total():
    pricing = calculate_total({"subtotal": 250, "total": 269.01}, [])
    assert pricing["total"] == 270


def test_calculate_total_from_components():
    items = [{"price": 100, "quantity": 2}, {"price": 49.5, "quantity": 1}]
    pricing = calculate_total({"delivery_charge": 20, "tax_amount": 5.2, "discount_amount": 10}, items)
    assert pricing["subtotal"] == 249.5
    assert pricing["total"] == 265


# ======================================================
# CREATE
# ======================================================

async def test_cod_order_reserves_stock_at_creation(db, place_order, products):
    result = await place_order()
    order = result["order"]

    assert result["warnings"] == []
    assert order["status"] == "new"
    assert order["payment_info"]["status"] == "pending"
    assert order["pricing"]["total"] == 270
    assert order["order_id"].startswith("ORD-")
    assert [h["note"] for h in order["status_history"]] == ["Order placed"]

    assert await stock_of(db, products["atta"]) == 8
    assert await stock_of(db, products["rice"]) == 9
    assert await stock_of(db, products["rice"], "1kg") == 9

    stored = await db.orders.find_one({"order_id": order["order_id"]})
    assert stored["stock"]["reserved"] is True


async def test_online_order_is_prepaid_and_not_reserved_at_creation(db, place_order, products):
    order = (await place_order(method="online"))["order"]

    assert order["payment_info"]["status"] == "prepaid"
    assert order["stock"]["reserved"] is False
    assert await stock_of(db, products["atta"]) == 10


async def test_customer_cannot_place_unverified_online_order(db, place_order, customer):
    with pytest.raises(ForbiddenError, match="payment verification"):
        await place_order(method="online", actor=customer)

    assert await db.orders.count_documents({}) == 0


async def test_failed_reservation_keeps_order_and_queues_retry(db, place_order, products):
    items = order_items(products)
    items[1]["quantity"] = 50

    result = await place_order(items=items)

    assert result["order"]["status"] == "new"
    assert result["warnings"] and "Stock reservation failed" in result["warnings"][0]
    # the line that did succeed was put back
    assert await stock_of(db, products["atta"]) == 10

    entry = await db.inventory_outbox.find_one({"source_id": result["order"]["order_id"]})
    assert entry["kind"] == "reserve"
    assert entry["status"] == "pending"


@pytest.mark.parametrize(
    "field, value, message",
    [
        ("items", [], "Order items are required"),
        ("customer_info", {"name": "Asha"}, "Customer information is required"),
        ("delivery_info", {}, "Delivery address is required"),
        ("warehouse_info", {"warehouse_id": "WH1"}, "Warehouse information is required"),
        ("payment_info", {"method": "cheque"}, "Payment method is required"),
    ],
)
async def test_create_order_rejects_incomplete_input(db, customer, products, field, value, message):
    kwargs = {
        "items": order_items(products),
        "customer_info": dict(CUSTOMER_INFO),
        "pricing": {},
        "delivery_info": dict(DELIVERY_INFO),
        "payment_info": {"method": "cod"},
        "warehouse_info": dict(WAREHOUSE),
    }
    kwargs[field] = value

    with pytest.raises(ValidationError) as exc:
        await order_lifecycle.create_order(db, actor=customer, **kwargs)

    assert exc.value.detail == message
    assert await db.orders.count_documents({}) == 0


async def test_create_order_from_payment_is_idempotent(db, customer, products, monkeypatch):
    monkeypatch.setattr(order_lifecycle, "verify_checkout_signature", lambda **kw: True)
    monkeypatch.setattr(
        order_lifecycle,
        "fetch_payment",
        lambda payment_id: {"id": payment_id, "status": "captured", "amount": 27000, "currency": "INR", "method": "upi"},
    )
    order_data = {
        "items": order_items(products),
        "customer_info": dict(CUSTOMER_INFO),
        "pricing": {"subtotal": 250, "delivery_charge": 20},
        "delivery_info": dict(DELIVERY_INFO),
        "warehouse_info": dict(WAREHOUSE),
    }
    kwargs = dict(
        actor=customer,
        razorpay_order_id="order_RZP1",
        razorpay_payment_id="pay_RZP1",
        razorpay_signature="sig",
        order_data=order_data,
    )

    first = await order_lifecycle.create_order_from_payment(db, **kwargs)
    second = await order_lifecycle.create_order_from_payment(db, **kwargs)

    order = first["order"]
    assert order["payment_info"]["status"] == "prepaid"
    assert order["payment_info"]["transaction_id"] == "pay_RZP1"
    assert order["payment_info"]["payment_details"]["amount"] == 270
    assert order["stock"]["reserved"] is True
    assert second["order"]["order_id"] == order["order_id"]
    assert await db.orders.count_documents({}) == 1
    assert await stock_of(db, products["atta"]) == 8


async def test_create_order_from_payment_requires_valid_capture(db, customer, products, monkeypatch):
    kwargs = dict(
        actor=customer,
        razorpay_order_id="order_RZP2",
        razorpay_payment_id="pay_RZP2",
        razorpay_signature="forged",
        order_data={"items": order_items(products)},
    )

    monkeypatch.setattr(order_lifecycle, "verify_checkout_signature", lambda **kw: False)
    with pytest.raises(ValidationError, match="Invalid payment signature"):
        await order_lifecycle.create_order_from_payment(db, **kwargs)

    monkeypatch.setattr(order_lifecycle, "verify_checkout_signature", lambda **kw: True)
    monkeypatch.setattr(order_lifecycle, "fetch_payment", lambda payment_id: {"status": "authorized"})
    with pytest.raises(ValidationError, match="not captured"):
        await order_lifecycle.create_order_from_payment(db, **kwargs)

    assert await db.orders.count_documents({}) == 0


# ======================================================
# TRANSITIONS
# ======================================================

async def test_happy_path_to_delivered_marks_cod_paid(db, place_order, warehouse_manager):
    order_id = (await place_order())["order"]["order_id"]

    for status, payment in (("processing", "pending"), ("shipped", "pending"), ("delivered", "paid")):
        result = await order_lifecycle.transition_status(
            db,
            order_id=order_id,
            new_status=status,
            actor=warehouse_manager,
            tracking={"tracking_number": "TRK1", "carrier": "BlueDart"} if status == "shipped" else None,
        )
        order = result["order"]
        assert order["status"] == status
        assert order["status_history"][-1]["status"] == status
        assert order["payment_info"]["status"] == payment

    assert order["actual_delivery_date"] is not None
    assert order["tracking"]["tracking_number"] == "TRK1"
    assert len(order["status_history"]) == 4


async def test_illegal_transition_leaves_order_untouched(db, place_order, admin):
    order = (await place_order())["order"]

    with pytest.raises(InvalidTransitionError):
        await order_lifecycle.transition_status(db, order_id=order["order_id"], new_status="delivered", actor=admin)

    stored = await db.orders.find_one({"order_id": order["order_id"]})
    assert stored["status"] == "new"
    assert stored["version"] == order["version"]
    assert len(stored["status_history"]) == 1


async def test_unknown_status_and_unknown_order(db, place_order, admin):
    order = (await place_order())["order"]

    with pytest.raises(ValidationError):
        await order_lifecycle.transition_status(db, order_id=order["order_id"], new_status="lost", actor=admin)

    with pytest.raises(NotFoundError):
        await order_lifecycle.transition_status(db, order_id="ORD-00000000-XXXXXX", new_status="processing", actor=admin)


async def test_refunded_to_refunded_is_a_noop(db, place_order, admin):
    order_id = (await place_order())["order"]["order_id"]
    await order_lifecycle.cancel_order(db, order_id=order_id, actor=admin, reason="Out of area")
    refunded = (await order_lifecycle.transition_status(db, order_id=order_id, new_status="refunded", actor=admin))["order"]

    again = (await order_lifecycle.transition_status(db, order_id=order_id, new_status="refunded", actor=admin))["order"]

    assert again["version"] == refunded["version"]
    assert len(again["status_history"]) == len(refunded["status_history"])


async def test_scope_is_enforced(db, place_order, other_manager, customer):
    order_id = (await place_order())["order"]["order_id"]

    with pytest.raises(ForbiddenError):
        await order_lifecycle.transition_status(db, order_id=order_id, new_status="processing", actor=other_manager)

    with pytest.raises(ForbiddenError):
        await order_lifecycle.transition_status(db, order_id=order_id, new_status="processing", actor=customer)


async def test_stale_write_raises_conflict(db, place_order, admin):
    order_id = (await place_order())["order"]["order_id"]
    stale = await db.orders.find_one({"order_id": order_id})

    await order_lifecycle.transition_status(db, order_id=order_id, new_status="processing", actor=admin)

    with pytest.raises(ConflictError):
        await update_aggregate(db, "orders", stale, set_fields={"notes": {"x": 1}})


# ======================================================
# CANCEL / STOCK RELEASE
# ======================================================

async def test_cancel_releases_stock_exactly_once(db, place_order, customer, admin, products):
    order_id = (await place_order())["order"]["order_id"]
    assert await stock_of(db, products["atta"]) == 8

    result = await order_lifecycle.cancel_order(db, order_id=order_id, actor=customer, reason="Ordered by mistake")
    order = result["order"]

    assert order["status"] == "cancelled"
    assert order["payment_info"]["status"] == "refunded"
    assert order["cancellation"]["reason"] == "Ordered by mistake"
    assert order["stock"]["released"] is True
    assert await stock_of(db, products["atta"]) == 10
    assert await stock_of(db, products["rice"], "1kg") == 10

    with pytest.raises(InvalidTransitionError):
        await order_lifecycle.cancel_order(db, order_id=order_id, actor=customer)

    await order_lifecycle.transition_status(db, order_id=order_id, new_status="refunded", actor=admin)
    assert await stock_of(db, products["atta"]) == 10

    audit = await db.audit_logs.find_one({"action": "ORDER_CANCELLED"})
    assert audit["metadata"]["order_id"] == order_id


async def test_cancel_without_reservation_releases_nothing(db, place_order, customer, products):
    order_id = (await place_order(method="online"))["order"]["order_id"]

    await order_lifecycle.cancel_order(db, order_id=order_id, actor=customer)

    assert await stock_of(db, products["atta"]) == 10


async def test_customer_cannot_cancel_someone_elses_order(db, place_order, other_customer):
    order_id = (await place_order())["order"]["order_id"]

    with pytest.raises(ForbiddenError):
        await order_lifecycle.cancel_order(db, order_id=order_id, actor=other_customer)


async def test_delivered_order_cannot_be_cancelled(db, place_order, deliver, customer):
    order_id = (await place_order())["order"]["order_id"]
    await deliver(order_id)

    with pytest.raises(InvalidTransitionError):
        await order_lifecycle.cancel_order(db, order_id=order_id, actor=customer)


async def test_order_scenario_cod_delivered_then_cancel_path(db, place_order, admin, products):
    # 2 x 100 + 1 x 50 with delivery 20, total 270
    created = await place_order()
    order_id = created["order"]["order_id"]
    assert created["order"]["pricing"]["total"] == 270
    assert created["order"]["payment_info"]["status"] == "pending"

    await order_lifecycle.transition_status(db, order_id=order_id, new_status="processing", actor=admin)
    cancelled = (await order_lifecycle.cancel_order(db, order_id=order_id, actor=admin, reason="Customer unreachable"))["order"]

    assert cancelled["payment_info"]["status"] == "refunded"
    assert await stock_of(db, products["atta"]) == 10
    assert await stock_of(db, products["rice"]) == 10


# ======================================================
# DELIVERY AGENT & OTP
# ======================================================

async def _ready_for_delivery(db, place_order, manager, agent):
    order_id = (await place_order())["order"]["order_id"]
    await order_lifecycle.transition_status(db, order_id=order_id, new_status="processing", actor=manager)
    await order_lifecycle.assign_delivery_agent(db, order_id=order_id, agent_id=agent.id, actor=manager)
    await order_lifecycle.transition_status(db, order_id=order_id, new_status="shipped", actor=manager)
    return order_id


async def test_assign_delivery_agent_records_history_without_status_change(db, place_order, warehouse_manager, agents):
    order_id = (await place_order())["order"]["order_id"]
    await order_lifecycle.transition_status(db, order_id=order_id, new_status="processing", actor=warehouse_manager)

    order = (await order_lifecycle.assign_delivery_agent(
        db, order_id=order_id, agent_id=agents[0].id, actor=warehouse_manager
    ))["order"]

    assert order["status"] == "processing"
    assert order["assigned_delivery_agent"]["id"] == agents[0].id
    assert order["status_history"][-1]["status"] == "processing"
    assert "Ravi" in order["status_history"][-1]["note"]


async def test_assign_delivery_agent_checks_state_and_role(db, place_order, admin, customer, agents):
    order_id = (await place_order())["order"]["order_id"]

    with pytest.raises(InvalidStateError):
        await order_lifecycle.assign_delivery_agent(db, order_id=order_id, agent_id=agents[0].id, actor=admin)

    await order_lifecycle.transition_status(db, order_id=order_id, new_status="processing", actor=admin)
    with pytest.raises(ValidationError, match="Invalid delivery agent"):
        await order_lifecycle.assign_delivery_agent(db, order_id=order_id, agent_id=customer.id, actor=admin)


async def test_delivery_otp_delivers_order(db, place_order, warehouse_manager, agents, sms):
    agent = agents[0]
    order_id = await _ready_for_delivery(db, place_order, warehouse_manager, agent)

    session = await order_lifecycle.generate_delivery_otp(db, order_id=order_id, actor=agent)
    assert session["sms_sent"] is True
    phone, code, sent_for = sms.delivery.call_args.args
    assert phone == CUSTOMER_INFO["phone"]
    assert sent_for == order_id
    assert session["expires_at"] - datetime.utcnow() <= timedelta(minutes=10)

    result = await order_lifecycle.verify_delivery_otp_and_deliver(
        db, order_id=order_id, otp=code, session_id=session["session_id"], actor=agent
    )
    order = result["order"]

    assert order["status"] == "delivered"
    assert order["payment_info"]["status"] == "paid"
    assert order["delivery_otp"]["verified"] is True
    assert order["actual_delivery_date"] is not None


async def test_delivery_otp_cannot_be_replayed(db, place_order, warehouse_manager, agents, sms):
    agent = agents[0]
    order_id = await _ready_for_delivery(db, place_order, warehouse_manager, agent)
    session = await order_lifecycle.generate_delivery_otp(db, order_id=order_id, actor=agent)
    code = sms.delivery.call_args.args[1]

    await order_lifecycle.verify_delivery_otp_and_deliver(
        db, order_id=order_id, otp=code, session_id=session["session_id"], actor=agent
    )

    with pytest.raises(InvalidOtpError, match="already used"):
        await order_lifecycle.verify_delivery_otp_and_deliver(
            db, order_id=order_id, otp=code, session_id=session["session_id"], actor=agent
        )

    stored = await db.orders.find_one({"order_id": order_id})
    assert [h["status"] for h in stored["status_history"]].count("delivered") == 1


async def test_delivery_otp_rejects_wrong_code_and_unassigned_agent(db, place_order, warehouse_manager, agents):
    order_id = await _ready_for_delivery(db, place_order, warehouse_manager, agents[0])

    with pytest.raises(ForbiddenError):
        await order_lifecycle.generate_delivery_otp(db, order_id=order_id, actor=agents[1])

    session = await order_lifecycle.generate_delivery_otp(db, order_id=order_id, actor=agents[0])
    with pytest.raises(OtpMismatchError):
        await order_lifecycle.verify_delivery_otp_and_deliver(
            db, order_id=order_id, otp=WRONG_CODE, session_id=session["session_id"], actor=agents[0]
        )

    stored = await db.orders.find_one({"order_id": order_id})
    assert stored["status"] == "shipped"


async def test_delivery_otp_bound_to_requester(db, place_order, warehouse_manager, agents, sms):
    order_id = await _ready_for_delivery(db, place_order, warehouse_manager, agents[0])

    session = await order_lifecycle.generate_delivery_otp(db, order_id=order_id, actor=warehouse_manager)
    code = sms.delivery.call_args.args[1]

    with pytest.raises(ForbiddenError):
        await order_lifecycle.verify_delivery_otp_and_deliver(
            db, order_id=order_id, otp=code, session_id=session["session_id"], actor=agents[0]
        )


async def test_new_delivery_otp_invalidates_previous(db, place_order, warehouse_manager, agents, sms):
    agent = agents[0]
    order_id = await _ready_for_delivery(db, place_order, warehouse_manager, agent)

    first = await order_lifecycle.generate_delivery_otp(db, order_id=order_id, actor=agent)
    first_code = sms.delivery.call_args.args[1]
    await order_lifecycle.generate_delivery_otp(db, order_id=order_id, actor=agent)

    with pytest.raises(InvalidOtpError):
        await order_lifecycle.verify_delivery_otp_and_deliver(
            db, order_id=order_id, otp=first_code, session_id=first["session_id"], actor=agent
        )


async def test_expired_delivery_otp(db, place_order, warehouse_manager, agents, sms):
    agent = agents[0]
    order_id = await _ready_for_delivery(db, place_order, warehouse_manager, agent)

    session = await order_lifecycle.generate_delivery_otp(db, order_id=order_id, actor=agent)
    code = sms.delivery.call_args.args[1]
    await db.otp_sessions.update_one(
        {"key": session["session_id"]},
        {"$set": {"expires_at": datetime.utcnow() - timedelta(seconds=1)}},
    )

    with pytest.raises(OtpExpiredError):
        await order_lifecycle.verify_delivery_otp_and_deliver(
            db, order_id=order_id, otp=code, session_id=session["session_id"], actor=agent
        )


async def test_delivery_otp_requires_deliverable_order(db, place_order, admin):
    order_id = (await place_order())["order"]["order_id"]

    with pytest.raises(InvalidTransitionError):
        await order_lifecycle.generate_delivery_otp(db, order_id=order_id, actor=admin)


async def test_delivery_otp_sms_failure_is_reported_not_raised(db, place_order, warehouse_manager, agents, sms):
    sms.delivery.return_value = False
    order_id = await _ready_for_delivery(db, place_order, warehouse_manager, agents[0])

    session = await order_lifecycle.generate_delivery_otp(db, order_id=order_id, actor=agents[0])

    assert session["sms_sent"] is False
    assert "SMS delivery failed" in session["message"]


# ======================================================
# REFUND / RECALCULATION / LISTING
# ======================================================

async def _paid_online_order(db, place_order):
    order_id = (await place_order(method="online"))["order"]["order_id"]
    await db.orders.update_one({"order_id": order_id}, {"$set": {"payment_info.transaction_id": "pay_ONLINE1"}})
    return order_id


async def test_refund_order_through_gateway(db, place_order, customer, admin, monkeypatch):
    order_id = await _paid_online_order(db, place_order)
    await order_lifecycle.cancel_order(db, order_id=order_id, actor=customer, reason="Changed my mind")

    calls = []

    def fake_refund(payment_id, amount, notes):
        calls.append((payment_id, amount))
        return {"id": "rfnd_1", "amount": 27000}

    monkeypatch.setattr(order_lifecycle, "refund_payment", fake_refund)

    result = await order_lifecycle.refund_order(db, order_id=order_id, actor=admin)
    order = result["order"]

    assert calls == [("pay_ONLINE1", None)]
    assert order["status"] == "refunded"
    assert order["cancellation"]["reason"] == "Changed my mind"
    assert order["cancellation"]["refund_status"] == "processed"
    assert order["cancellation"]["refund_amount"] == 270
    assert order["cancellation"]["refund_id"] == "rfnd_1"

    with pytest.raises(InvalidStateError):
        await order_lifecycle.refund_order(db, order_id=order_id, actor=admin)


async def test_refund_order_gateway_failure_keeps_status(db, place_order, customer, admin, monkeypatch):
    order_id = await _paid_online_order(db, place_order)
    await order_lifecycle.cancel_order(db, order_id=order_id, actor=customer)

    def failing_refund(payment_id, amount, notes):
        raise PaymentGatewayError("Razorpay refund failed")

    monkeypatch.setattr(order_lifecycle, "refund_payment", failing_refund)

    with pytest.raises(PaymentGatewayError):
        await order_lifecycle.refund_order(db, order_id=order_id, actor=admin)

    stored = await db.orders.find_one({"order_id": order_id})
    assert stored["status"] == "cancelled"
    assert stored["cancellation"]["refund_status"] == "failed"


async def test_refund_order_requires_online_payment(db, place_order, admin, warehouse_manager):
    order_id = (await place_order())["order"]["order_id"]

    with pytest.raises(ForbiddenError):
        await order_lifecycle.refund_order(db, order_id=order_id, actor=warehouse_manager)

    with pytest.raises(ValidationError):
        await order_lifecycle.refund_order(db, order_id=order_id, actor=admin)


async def test_recalculate_total(db, place_order, admin):
    order_id = (await place_order(pricing={"subtotal": 250, "delivery_charge": 20, "total": 300}))["order"]["order_id"]

    order = (await order_lifecycle.recalculate_total(db, order_id=order_id, actor=admin))["order"]

    assert order["pricing"]["total"] == 270
    assert order["status"] == "new"
    assert order["status_history"][-1]["note"] == "Order total recalculated: 300 -> 270"


async def test_list_orders_respects_scope(db, place_order, customer, other_customer, warehouse_manager, other_manager):
    await place_order()
    await place_order()

    mine = await order_lifecycle.list_orders(db, actor=customer, limit=1)
    assert len(mine["orders"]) == 1
    assert mine["pagination"]["total_orders"] == 2
    assert mine["pagination"]["has_next"] is True

    assert (await order_lifecycle.list_orders(db, actor=other_customer))["pagination"]["total_orders"] == 0
    assert (await order_lifecycle.list_orders(db, actor=warehouse_manager))["pagination"]["total_orders"] == 2
    assert (await order_lifecycle.list_orders(db, actor=other_manager))["pagination"]["total_orders"] == 0
    assert (await order_lifecycle.list_orders(db, actor=warehouse_manager, status="shipped"))["orders"] == []


async def test_list_orders_search(db, place_order, admin, customer):
    first = (await place_order())["order"]
    await place_order()
    await db.orders.update_one(
        {"order_id": first["order_id"]},
        {"$set": {"customer_info.name": "Kabir (Walk-in)", "customer_info.phone": "9123456780"}},
    )

    async def found(term, actor=admin):
        result = await order_lifecycle.list_orders(db, actor=actor, search=term)
        return [o["order_id"] for o in result["orders"]]

    assert await found("kabir") == [first["order_id"]]
    assert await found("(walk-in)") == [first["order_id"]]
    assert await found("91234") == [first["order_id"]]
    assert await found(first["order_id"].lower()) == [first["order_id"]]
    assert len(await found("ASHA@example")) == 1
    assert await found(".*") == []
    assert len(await found("  ")) == 2
    # search narrows but never widens scope
    assert await found("kabir", actor=customer) == [first["order_id"]]
