import logging
from datetime import datetime

logger = logging.getLogger(__name__)


async def log_audit(
    db,
    actor_id: str,
    actor_role: str,
    action: str,
    metadata: dict | None = None
):
    """
    Audit trail for irreversible actions. A failed audit write is logged
    and never undoes the action it describes.
    """
    try:
        await db.audit_logs.insert_one({
            "actor_id": str(actor_id) if actor_id is not None else None,
            "actor_role": actor_role,
            "action": action,
            "metadata": metadata or {},
            "created_at": datetime.utcnow()
        })
    except Exception:
        logger.exception("AUDIT_WRITE_FAILED action=%s", action)
