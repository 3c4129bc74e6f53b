from enum import Enum

from bson import ObjectId

from models.user import Actor, Role
from utils.errors import ForbiddenError, ValidationError

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value, name: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except Exception:
        raise ValidationError(f"Invalid {name}")


# -------------------------------
# Permission matrix
# -------------------------------

class Action(str, Enum):
    ORDER_CREATE = "order:create"
    ORDER_VIEW_ALL = "order:view_all"
    ORDER_UPDATE_STATUS = "order:update_status"
    ORDER_ASSIGN_AGENT = "order:assign_agent"
    ORDER_DELIVERY_OTP = "order:delivery_otp"
    ORDER_CANCEL = "order:cancel"
    ORDER_REFUND = "order:refund"
    RETURN_CREATE = "return:create"
    RETURN_VIEW_ALL = "return:view_all"
    RETURN_UPDATE_STATUS = "return:update_status"
    RETURN_PICKUP_ACTION = "return:pickup_action"
    RETURN_VERIFY_OTP = "return:verify_otp"
    RETURN_RESEND_OTP = "return:resend_otp"
    RETURN_REFUND = "return:refund"


_STAFF = frozenset({Role.ADMIN, Role.ORDER_WAREHOUSE_MANAGEMENT})

PERMISSIONS: dict[Action, frozenset[Role]] = {
    Action.ORDER_CREATE: frozenset({Role.CUSTOMER, Role.ADMIN}),
    Action.ORDER_VIEW_ALL: _STAFF | {Role.CUSTOMER_SUPPORT_EXECUTIVE},
    Action.ORDER_UPDATE_STATUS: _STAFF,
    Action.ORDER_ASSIGN_AGENT: _STAFF,
    Action.ORDER_DELIVERY_OTP: _STAFF | {Role.DELIVERY_BOY},
    Action.ORDER_CANCEL: _STAFF | {Role.CUSTOMER},
    Action.ORDER_REFUND: frozenset({Role.ADMIN}),
    Action.RETURN_CREATE: frozenset({Role.CUSTOMER}),
    Action.RETURN_VIEW_ALL: _STAFF,
    Action.RETURN_UPDATE_STATUS: _STAFF,
    Action.RETURN_PICKUP_ACTION: frozenset({Role.DELIVERY_BOY}),
    Action.RETURN_VERIFY_OTP: _STAFF | {Role.DELIVERY_BOY},
    Action.RETURN_RESEND_OTP: _STAFF | {Role.DELIVERY_BOY},
    Action.RETURN_REFUND: _STAFF,
}

# roles whose reach is limited to their assigned warehouses
WAREHOUSE_SCOPED_ROLES = frozenset({
    Role.ORDER_WAREHOUSE_MANAGEMENT,
    Role.PRODUCT_INVENTORY_MANAGEMENT,
})


def in_warehouse_scope(actor: Actor, warehouse_id: str | None) -> bool:
    if actor.role not in WAREHOUSE_SCOPED_ROLES:
        return True
    return warehouse_id is not None and str(warehouse_id) in actor.assigned_warehouse_ids


def authorize(actor: Actor, action: Action, *, warehouse_id: str | None = None) -> None:
    if actor.role not in PERMISSIONS.get(action, frozenset()):
        raise ForbiddenError("Insufficient permissions")

    if actor.role in WAREHOUSE_SCOPED_ROLES and not actor.assigned_warehouse_ids:
        raise ForbiddenError("No warehouses assigned to this user")

    if warehouse_id is not None and not in_warehouse_scope(actor, warehouse_id):
        raise ForbiddenError("Warehouse outside your assigned scope")


def warehouse_filter(actor: Actor, field: str = "warehouse_info.warehouse_id") -> dict:
    """Mongo filter fragment limiting a listing to the actor's warehouses."""
    if actor.role in WAREHOUSE_SCOPED_ROLES:
        return {field: {"$in": sorted(actor.assigned_warehouse_ids)}}
    return {}
