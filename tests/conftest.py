from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from models.user import Actor, Role
from utils import order_lifecycle, return_lifecycle
from utils.security import actor_from_user

WAREHOUSE = {
    "warehouse_id": "WH1",
    "warehouse_name": "Central Warehouse",
    "warehouse_address": "Sector 5, Noida",
}

CUSTOMER_INFO = {"name": "Asha Verma", "email": "asha@example.com", "phone": "9876543210"}
DELIVERY_INFO = {"address": {"line1": "12 MG Road", "city": "Noida", "pincode": "201301"}, "distance": 3.2}


@pytest.fixture
def db():
    return AsyncMongoMockClient()["bazarxpress_test"]


@pytest.fixture
def customer():
    return Actor(id=str(ObjectId()), role=Role.CUSTOMER, name="Asha Verma", phone="9876543210")


@pytest.fixture
def other_customer():
    return Actor(id=str(ObjectId()), role=Role.CUSTOMER, name="Vikram", phone="9123456780")


@pytest.fixture
def admin():
    return Actor(id=str(ObjectId()), role=Role.ADMIN, name="Admin")


@pytest.fixture
def warehouse_manager():
    return Actor(
        id=str(ObjectId()),
        role=Role.ORDER_WAREHOUSE_MANAGEMENT,
        assigned_warehouse_ids=frozenset({"WH1"}),
    )


@pytest.fixture
def other_manager():
    return Actor(
        id=str(ObjectId()),
        role=Role.ORDER_WAREHOUSE_MANAGEMENT,
        assigned_warehouse_ids=frozenset({"WH2"}),
    )


@pytest.fixture
async def products(db):
    atta = {
        "_id": ObjectId(),
        "name": "Aashirvaad Atta 5kg",
        "stock": 10,
        "returnable": True,
        "return_window": 7,
    }
    rice = {
        "_id": ObjectId(),
        "name": "Basmati Rice",
        "stock": 10,
        "returnable": False,
        "return_window": 0,
        "variants": {
            "1kg": {"name": "1kg", "sku": "RICE-1", "stock": 10},
            "5kg": {"name": "5kg", "sku": "RICE-5", "stock": 4},
        },
    }
    await db.products.insert_many([atta, rice])
    return {"atta": atta, "rice": rice}


@pytest.fixture
async def agents(db):
    users = [
        {"_id": ObjectId(), "name": "Ravi", "phone": "9000000001", "role": "delivery_boy"},
        {"_id": ObjectId(), "name": "Sunil", "phone": "9000000002", "role": "delivery_boy"},
    ]
    await db.users.insert_many(users)
    return [actor_from_user(u) for u in users]


@pytest.fixture(autouse=True)
def sms(monkeypatch):
    """Captures outgoing OTP texts; the code is the second positional argument."""
    delivery = AsyncMock(return_value=True)
    pickup = AsyncMock(return_value=True)
    monkeypatch.setattr(order_lifecycle, "send_delivery_otp", delivery)
    monkeypatch.setattr(return_lifecycle, "send_pickup_otp", pickup)
    return SimpleNamespace(delivery=delivery, pickup=pickup)


def order_items(products):
    return [
        {
            "product_id": str(products["atta"]["_id"]),
            "name": "Aashirvaad Atta 5kg",
            "price": 100,
            "quantity": 2,
            "returnable": True,
            "return_window": 7,
        },
        {
            "product_id": str(products["rice"]["_id"]),
            "name": "Basmati Rice",
            "price": 50,
            "quantity": 1,
            "variant_id": "1kg",
            "variant_name": "1kg",
            "returnable": True,
            "return_window": 7,
        },
    ]


@pytest.fixture
def place_order(db, customer, admin, products):
    """Place an order owned by ``customer``; online orders are entered by an admin."""

    async def _place(method="cod", items=None, pricing=None, actor=None):
        if actor is None:
            actor = customer if method == "cod" else admin
        return await order_lifecycle.create_order(
            db,
            actor=actor,
            items=items or order_items(products),
            customer_info=dict(CUSTOMER_INFO),
            pricing=pricing or {"subtotal": 250, "delivery_charge": 20},
            delivery_info=dict(DELIVERY_INFO),
            payment_info={"method": method},
            warehouse_info=dict(WAREHOUSE),
            user_id=customer.id,
        )

    return _place


@pytest.fixture
def deliver(db, admin):
    """Walk an order to delivered and backdate its delivery by ``days_ago``."""

    async def _deliver(order_id, days_ago=1):
        for status in ("processing", "shipped", "delivered"):
            await order_lifecycle.transition_status(db, order_id=order_id, new_status=status, actor=admin)
        await db.orders.update_one(
            {"order_id": order_id},
            {"$set": {"actual_delivery_date": datetime.utcnow() - timedelta(days=days_ago)}},
        )
        return await db.orders.find_one({"order_id": order_id})

    return _deliver


async def stock_of(db, product, variant=None):
    doc = await db.products.find_one({"_id": product["_id"]})
    if variant:
        return doc["variants"][variant]["stock"]
    return doc["stock"]
