from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    ORDER_WAREHOUSE_MANAGEMENT = "order_warehouse_management"
    PRODUCT_INVENTORY_MANAGEMENT = "product_inventory_management"
    CUSTOMER_SUPPORT_EXECUTIVE = "customer_support_executive"
    DELIVERY_BOY = "delivery_boy"
    CUSTOMER = "user"


class Actor(BaseModel):
    """Pre-verified caller identity and scope."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: Role
    assigned_warehouse_ids: frozenset[str] = Field(default_factory=frozenset)
    name: Optional[str] = None
    phone: Optional[str] = None
