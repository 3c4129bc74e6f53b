from datetime import datetime

from pymongo import ReturnDocument

from utils.errors import ConflictError


def history_entry(status: str, actor_id, note: str | None, at: datetime) -> dict:
    return {
        "status": status,
        "updated_by": str(actor_id) if actor_id is not None else None,
        "note": note or "",
        "timestamp": at,
    }


async def update_aggregate(
    db,
    collection: str,
    doc: dict,
    *,
    set_fields: dict | None = None,
    unset_fields: list[str] | None = None,
    push: dict | None = None,
    guard: dict | None = None,
) -> dict:
    """
    Conditional write against the version the caller read.
    Either the whole patch lands and the version moves by one, or ConflictError.
    ``guard`` adds conditions the stored document must still satisfy.
    """
    if "status" in (set_fields or {}) and "status_history" not in (push or {}):
        raise ValueError("status can only change together with a history entry")

    now = datetime.utcnow()
    update = {
        "$set": {"updated_at": now, **(set_fields or {})},
        "$inc": {"version": 1},
    }
    if unset_fields:
        update["$unset"] = {field: "" for field in unset_fields}
    if push:
        update["$push"] = push

    updated = await db[collection].find_one_and_update(
        {"_id": doc["_id"], "version": doc.get("version", 0), **(guard or {})},
        update,
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError(f"{collection[:-1].capitalize()} was modified concurrently, reload and retry")
    return updated


async def append_status(
    db,
    collection: str,
    doc: dict,
    *,
    status: str,
    actor_id,
    note: str | None = None,
    set_fields: dict | None = None,
    unset_fields: list[str] | None = None,
) -> dict:
    """
    Single writer of ``status``: appends the history entry and mirrors it
    onto the top-level field in the same conditional write.
    """
    entry = history_entry(status, actor_id, note, datetime.utcnow())
    return await update_aggregate(
        db,
        collection,
        doc,
        set_fields={"status": status, **(set_fields or {})},
        unset_fields=unset_fields,
        push={"status_history": entry},
    )
