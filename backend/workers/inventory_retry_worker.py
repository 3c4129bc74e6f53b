import asyncio
import logging
from datetime import datetime

from config.constants import STOCK_RELEASE_STATUSES
from config.env import INVENTORY_RETRY_INTERVAL_SECONDS
from database import get_db
from utils.errors import InventoryError
from utils.inventory import OUTBOX_RELEASE, OUTBOX_RESERVE, release, reserve

MAX_ATTEMPTS = 5
BATCH_SIZE = 100
logger = logging.getLogger(__name__)


async def _mark(db, entry: dict, status: str, **fields):
    await db.inventory_outbox.update_one(
        {"_id": entry["_id"]},
        {"$set": {"status": status, "updated_at": datetime.utcnow(), **fields}},
    )


async def _retry_reserve(db, entry: dict) -> None:
    order = None
    if entry.get("source") == "order":
        order = await db.orders.find_one({"order_id": entry["source_id"]})
        if not order or order.get("status") in STOCK_RELEASE_STATUSES:
            await _mark(db, entry, "skipped")
            return

    await reserve(db, entry["items"])

    if order is not None:
        result = await db.orders.update_one(
            {"_id": order["_id"], "status": {"$nin": sorted(STOCK_RELEASE_STATUSES)}},
            {"$set": {"stock.reserved": True, "stock.reserved_at": datetime.utcnow()}, "$inc": {"version": 1}},
        )
        if result.modified_count == 0:
            # order was cancelled meanwhile, give the stock straight back
            await release(db, entry["items"])

    await _mark(db, entry, "done")


async def _retry_release(db, entry: dict) -> None:
    try:
        await release(db, entry["items"])
    except InventoryError as e:
        failed = getattr(e, "failed_items", None) or entry["items"]
        await db.inventory_outbox.update_one({"_id": entry["_id"]}, {"$set": {"items": failed}})
        raise
    await _mark(db, entry, "done")


async def process_outbox_once(db) -> int:
    """Retry every pending entry once. Returns how many were settled."""
    settled = 0
    cursor = db.inventory_outbox.find({
        "status": "pending",
        "attempts": {"$lt": MAX_ATTEMPTS},
    }).sort("created_at", 1).limit(BATCH_SIZE)

    async for entry in cursor:
        try:
            if entry["kind"] == OUTBOX_RESERVE:
                await _retry_reserve(db, entry)
            elif entry["kind"] == OUTBOX_RELEASE:
                await _retry_release(db, entry)
            else:
                await _mark(db, entry, "failed", last_error=f"unknown kind {entry['kind']}")
                continue
            settled += 1
        except Exception as e:
            logger.exception("INVENTORY_RETRY_FAILED entry=%s %s=%s", entry["_id"], entry.get("source"), entry.get("source_id"))
            attempts = entry.get("attempts", 0) + 1
            await _mark(
                db,
                entry,
                "failed" if attempts >= MAX_ATTEMPTS else "pending",
                attempts=attempts,
                last_error=str(e),
            )

    return settled


async def inventory_retry_worker():
    db = get_db()

    while True:
        try:
            settled = await process_outbox_once(db)
            if settled:
                logger.info("INVENTORY_RETRY_SETTLED count=%s", settled)
        except Exception:
            logger.exception("INVENTORY_RETRY_LOOP_ERROR")

        await asyncio.sleep(INVENTORY_RETRY_INTERVAL_SECONDS)
