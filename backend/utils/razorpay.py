import base64
import hashlib
import hmac
import json
import math
from urllib import request, error

from config.env import RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET
from utils.errors import PaymentGatewayError

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"
RAZORPAY_CURRENCY = "INR"


def _require_razorpay_config() -> tuple[str, str]:
    if not RAZORPAY_KEY_ID or not RAZORPAY_KEY_SECRET:
        raise PaymentGatewayError("Razorpay keys are not configured")
    return RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET


def _basic_auth_header(key_id: str, key_secret: str) -> str:
    token = f"{key_id}:{key_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(token).decode("utf-8")


def amount_to_paise(amount_inr: float) -> int:
    return int(round(float(amount_inr) * 100))


def paise_to_amount(amount_paise: int) -> float:
    return amount_paise / 100


def _call(method: str, path: str, payload: dict | None = None, *, action: str) -> dict:
    key_id, key_secret = _require_razorpay_config()

    req = request.Request(
        url=f"{RAZORPAY_API_BASE}{path}",
        data=json.dumps(payload).encode("utf-8") if payload is not None else None,
        headers={
            "Content-Type": "application/json",
            "Authorization": _basic_auth_header(key_id, key_secret),
        },
        method=method,
    )

    try:
        with request.urlopen(req, timeout=15) as resp:
            body = resp.read().decode("utf-8")
            return json.loads(body)
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        raise PaymentGatewayError(f"Razorpay {action} failed: {details}")
    except Exception:
        raise PaymentGatewayError(f"Razorpay {action} failed")


def create_razorpay_order(*, amount_inr: float, receipt: str, notes: dict | None = None) -> dict:
    payload = {
        "amount": amount_to_paise(math.ceil(amount_inr)),
        "currency": RAZORPAY_CURRENCY,
        "receipt": receipt,
        "notes": notes or {},
    }
    return _call("POST", "/orders", payload, action="order create")


def verify_checkout_signature(*, razorpay_order_id: str, razorpay_payment_id: str, razorpay_signature: str) -> bool:
    _, key_secret = _require_razorpay_config()
    message = f"{razorpay_order_id}|{razorpay_payment_id}".encode("utf-8")
    expected = hmac.new(key_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, razorpay_signature or "")


def fetch_payment(payment_id: str) -> dict:
    return _call("GET", f"/payments/{payment_id}", action="payment fetch")


def refund_payment(payment_id: str, amount_inr: float | None = None, notes: dict | None = None) -> dict:
    """
    Refund a captured payment. Without ``amount_inr`` the full payment is
    refunded. Returns the Razorpay refund entity (amount in paise).
    """
    payload = {"notes": notes or {}}
    if amount_inr:
        payload["amount"] = amount_to_paise(amount_inr)
    return _call("POST", f"/payments/{payment_id}/refund", payload, action="refund")
