from pydantic import BaseModel, Field
from typing import Any, Literal, Optional
from enum import Enum


class OrderStatus(str, Enum):
    NEW = "new"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PREPAID = "prepaid"
    PAID = "paid"
    REFUNDED = "refunded"


ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    OrderStatus.NEW.value: frozenset({OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value}),
    OrderStatus.PROCESSING.value: frozenset({OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value}),
    OrderStatus.SHIPPED.value: frozenset({OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value}),
    OrderStatus.DELIVERED.value: frozenset({OrderStatus.REFUNDED.value}),
    OrderStatus.CANCELLED.value: frozenset({OrderStatus.REFUNDED.value}),
    OrderStatus.REFUNDED.value: frozenset({OrderStatus.REFUNDED.value}),
}


def can_transition(current: str, target: str) -> bool:
    return target in ORDER_TRANSITIONS.get(current, frozenset())


# =====================================================
# REQUEST SCHEMAS
# =====================================================

class OrderItemIn(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., gt=0)
    image: Optional[str] = None
    category: Optional[str] = None
    category_id: Optional[str] = None
    brand: Optional[str] = None
    brand_id: Optional[str] = None
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    selected_variant: Optional[Any] = None
    cod_available: bool = True
    price_includes_tax: bool = False
    tax: Optional[dict] = None
    returnable: Optional[bool] = None
    return_window: Optional[int] = None
    warehouse: Optional[dict] = None


class CustomerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class Pricing(BaseModel):
    subtotal: Optional[float] = None
    tax_amount: float = 0
    discount_amount: float = 0
    delivery_charge: float = 0
    cod_charge: float = 0
    total: Optional[float] = None


class DeliveryInfo(BaseModel):
    address: Optional[dict] = None
    distance: Optional[float] = None
    estimated_delivery_time: Optional[str] = None
    delivery_charge: float = 0
    cod_charge: float = 0
    is_free_delivery: bool = False


class PaymentInfoIn(BaseModel):
    method: Optional[Literal["cod", "online"]] = None
    payment_method: Optional[str] = None


class WarehouseInfo(BaseModel):
    warehouse_id: Optional[str] = None
    warehouse_name: Optional[str] = None
    warehouse_address: Optional[str] = None
    is_24x7_delivery: bool = False


class CreateOrderPayload(BaseModel):
    items: list[OrderItemIn] = []
    customer_info: Optional[CustomerInfo] = None
    pricing: Pricing = Pricing()
    promo_code: Optional[dict] = None
    tax_calculation: Optional[dict] = None
    delivery_info: Optional[DeliveryInfo] = None
    payment_info: Optional[PaymentInfoIn] = None
    warehouse_info: Optional[WarehouseInfo] = None
    notes: Optional[dict] = None


class StatusUpdatePayload(BaseModel):
    status: str
    note: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None


class CancelPayload(BaseModel):
    reason: Optional[str] = None


class AssignAgentPayload(BaseModel):
    agent_id: str


class VerifyDeliveryOtpPayload(BaseModel):
    otp: str
    session_id: str
    note: Optional[str] = None


class OrderRefundPayload(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = None
