# backend/config/constants.py

# -----------------------------
# OTP
# -----------------------------
from datetime import timedelta

from config.env import DELIVERY_OTP_TTL_MINUTES, PICKUP_OTP_TTL_HOURS

OTP_DIGITS = 4
DELIVERY_OTP_TTL = timedelta(minutes=DELIVERY_OTP_TTL_MINUTES)
PICKUP_OTP_TTL = timedelta(hours=PICKUP_OTP_TTL_HOURS)
OTP_PURPOSE_DELIVERY = "delivery"
OTP_PURPOSE_PICKUP = "pickup"

# -----------------------------
# ORDERS
# -----------------------------

PAYMENT_METHOD_COD = "cod"
PAYMENT_METHOD_ONLINE = "online"
ALLOWED_PAYMENT_METHODS = {PAYMENT_METHOD_COD, PAYMENT_METHOD_ONLINE}

# statuses that put stock back on the shelf
STOCK_RELEASE_STATUSES = {"cancelled", "refunded"}

# order states in which a delivery agent may be (re)assigned
AGENT_ASSIGNABLE_STATUSES = {"processing", "confirmed", "shipped"}

NON_CANCELLABLE_STATUSES = {"delivered", "cancelled", "refunded"}

# -----------------------------
# RETURNS / REFUNDS
# -----------------------------

REFUND_METHODS = {"original_payment", "bank_transfer", "wallet"}
GATEWAY_REFUND_METHOD = "original_payment"

REFUNDABLE_RETURN_STATUSES = {"received", "partially_refunded"}

# item states that no longer follow the aggregate
TERMINAL_ITEM_STATUSES = {"refunded", "rejected"}

# a return in one of these no longer blocks a new return for the same item
CLOSED_RETURN_STATUSES = {"rejected"}

PICKUP_ACTIONS = {
    "reject": "pickup_rejected",
    "collect": "picked_up",
}

# -----------------------------
# PAGINATION
# -----------------------------

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
