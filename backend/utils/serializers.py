from bson import ObjectId
from datetime import datetime


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def serialize_doc(doc: dict | None) -> dict | None:
    if not doc:
        return doc

    out = serialize_value(doc)
    out["id"] = out.pop("_id", None)
    return out


def serialize_docs(docs):
    return [serialize_doc(d) for d in docs]


def serialize_result(result: dict, key: str) -> dict:
    """Lifecycle results carry the aggregate under ``key`` plus warnings."""
    out = {k: serialize_value(v) for k, v in result.items() if k != key}
    out[key] = serialize_doc(result[key])
    out.setdefault("warnings", [])
    return out
