import logging
from datetime import datetime

from bson import ObjectId

from utils.errors import InventoryError

logger = logging.getLogger(__name__)

# ==============================
# Outbox entry kinds
# ==============================

OUTBOX_RESERVE = "reserve"
OUTBOX_RELEASE = "release"


def _as_object_id(value):
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except Exception:
        return value


def resolve_variant_key(product: dict, item: dict) -> str | None:
    """
    Find the variant of ``product`` a line item refers to.
    Tried in order: variant id or key, selected variant string,
    variant name, then the selected variant object (name, id, sku).
    """
    variants = product.get("variants") or {}
    if not variants:
        return None

    variant_id = item.get("variant_id")
    if variant_id:
        if variant_id in variants:
            return variant_id
        for key, v in variants.items():
            v = v or {}
            if str(v.get("_id", "")) == str(variant_id) or str(v.get("id", "")) == str(variant_id):
                return key

    selected = item.get("selected_variant")
    if isinstance(selected, str) and selected:
        if selected in variants:
            return selected
        for key in variants:
            if key.lower() == selected.lower():
                return key

    variant_name = item.get("variant_name")
    if variant_name:
        wanted = variant_name.lower()
        for key, v in variants.items():
            name = str((v or {}).get("name") or "").lower()
            if name == wanted or key.lower() == wanted:
                return key

    if isinstance(selected, dict) and selected:
        for key, v in variants.items():
            v = v or {}
            if selected.get("name") and v.get("name") == selected["name"]:
                return key
            if selected.get("id") and (v.get("id") == selected["id"] or str(v.get("_id", "")) == selected["id"]):
                return key
            if selected.get("sku") and v.get("sku") == selected["sku"]:
                return key

    return None


async def _adjust_line(db, item: dict, delta: int) -> bool:
    """
    Move stock for one line by ``delta``. Decrements are conditional on
    enough stock being present; increments always apply.
    """
    product_id = _as_object_id(item.get("product_id"))
    product = await db.products.find_one({"_id": product_id})
    if not product:
        logger.warning("STOCK_PRODUCT_NOT_FOUND product=%s", item.get("product_id"))
        return False

    quantity = int(item.get("quantity") or 0)
    if quantity <= 0:
        logger.warning("STOCK_INVALID_QUANTITY product=%s qty=%s", product_id, quantity)
        return False

    query = {"_id": product_id}
    inc = {"stock": delta}

    if product.get("variants"):
        variant_key = resolve_variant_key(product, item)
        if variant_key is None:
            logger.warning(
                "STOCK_VARIANT_NOT_FOUND product=%s variant_id=%s variant_name=%s",
                product_id, item.get("variant_id"), item.get("variant_name"),
            )
            return False
        inc[f"variants.{variant_key}.stock"] = delta
        if delta < 0:
            query[f"variants.{variant_key}.stock"] = {"$gte": -delta}
    elif delta < 0:
        query["stock"] = {"$gte": -delta}

    result = await db.products.update_one(query, {"$inc": inc})
    return result.modified_count == 1


async def reserve(db, items: list[dict]) -> None:
    """
    Decrement stock for every line. All-or-nothing per call: if a later
    line cannot be reserved, the lines already taken are put back.
    """
    taken = []
    for item in items:
        ok = await _adjust_line(db, item, -int(item.get("quantity") or 0))
        if not ok:
            if taken:
                await release(db, taken)
            raise InventoryError(f"Stock reservation failed for '{item.get('name') or item.get('product_id')}'")
        taken.append(item)


async def release(db, items: list[dict]) -> None:
    failed = []
    for item in items:
        ok = await _adjust_line(db, item, int(item.get("quantity") or 0))
        if not ok:
            failed.append(item)

    if failed:
        error = InventoryError(
            f"Stock release failed for products: {', '.join(str(f.get('product_id')) for f in failed)}"
        )
        error.failed_items = failed
        raise error


# ==============================
# Best-effort wrappers
# ==============================

async def _record_outbox(db, *, kind: str, source: str, source_id: str, items: list[dict], error: str):
    await db.inventory_outbox.insert_one({
        "kind": kind,
        "source": source,
        "source_id": source_id,
        "items": items,
        "status": "pending",
        "attempts": 0,
        "last_error": error,
        "created_at": datetime.utcnow(),
    })


async def try_reserve(db, items: list[dict], *, source: str, source_id: str) -> str | None:
    """Reserve without failing the caller. Returns a warning string on failure."""
    try:
        await reserve(db, items)
        return None
    except Exception as e:
        logger.exception("STOCK_RESERVE_FAILED %s=%s", source, source_id)
        await _record_outbox(db, kind=OUTBOX_RESERVE, source=source, source_id=source_id, items=items, error=str(e))
        return f"Stock reservation failed: {e}"


async def try_release(db, items: list[dict], *, source: str, source_id: str) -> str | None:
    """Release without failing the caller. Returns a warning string on failure."""
    try:
        await release(db, items)
        return None
    except Exception as e:
        logger.exception("STOCK_RELEASE_FAILED %s=%s", source, source_id)
        # only the lines that did not go back are retried
        pending = getattr(e, "failed_items", None) or items
        await _record_outbox(db, kind=OUTBOX_RELEASE, source=source, source_id=source_id, items=pending, error=str(e))
        return f"Stock restoration failed: {e}"
