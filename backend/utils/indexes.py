from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Orders
    await _create_index_safe(
        db.orders,
        [("order_id", ASCENDING)],
        name="orders_order_id_unique",
        unique=True,
    )
    await _create_index_safe(
        db.orders,
        [("payment_info.transaction_id", ASCENDING)],
        name="orders_transaction_id_unique",
        unique=True,
        sparse=True,
    )
    await _create_index_safe(
        db.orders,
        [("user_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_user_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("warehouse_info.warehouse_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)],
        name="orders_warehouse_status_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("assigned_delivery_agent.id", ASCENDING), ("status", ASCENDING)],
        name="orders_delivery_agent_idx",
        sparse=True,
    )

    # Returns
    await _create_index_safe(
        db.returns,
        [("return_id", ASCENDING)],
        name="returns_return_id_unique",
        unique=True,
    )
    await _create_index_safe(
        db.returns,
        [("order_id", ASCENDING), ("status", ASCENDING)],
        name="returns_order_status_idx",
    )
    await _create_index_safe(
        db.returns,
        [("warehouse_info.warehouse_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)],
        name="returns_warehouse_status_created_at_idx",
    )
    await _create_index_safe(
        db.returns,
        [("assigned_pickup_agent.id", ASCENDING), ("status", ASCENDING)],
        name="returns_pickup_agent_idx",
        sparse=True,
    )

    # OTP sessions
    await _create_index_safe(
        db.otp_sessions,
        [("key", ASCENDING), ("purpose", ASCENDING)],
        name="otp_sessions_key_purpose_unique",
        unique=True,
    )
    await _create_index_safe(
        db.otp_sessions,
        [("purpose", ASCENDING), ("subject_id", ASCENDING), ("consumed", ASCENDING)],
        name="otp_sessions_subject_idx",
    )
    await _create_index_safe(
        db.otp_sessions,
        [("expires_at", ASCENDING)],
        name="otp_sessions_expires_ttl_idx",
        expireAfterSeconds=0,
    )

    # Inventory outbox
    await _create_index_safe(
        db.inventory_outbox,
        [("status", ASCENDING), ("created_at", ASCENDING)],
        name="inventory_outbox_status_created_at_idx",
    )

    # Audit
    await _create_index_safe(
        db.audit_logs,
        [("created_at", ASCENDING)],
        name="audit_logs_created_at_idx",
    )
