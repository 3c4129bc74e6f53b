import os
from dotenv import load_dotenv

load_dotenv()

# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# =====================================================
# JWT
# =====================================================
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_DAYS = int(os.getenv("ACCESS_TOKEN_DAYS", 7))

# =====================================================
# RAZORPAY
# =====================================================
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")

# =====================================================
# SMS GATEWAY
# =====================================================
SMS_API_KEY = os.getenv("SMS_API_KEY")
SMS_SENDER_ID = os.getenv("SMS_SENDER_ID") or os.getenv("SENDER_ID")
SMS_ENTITY_ID = os.getenv("SMS_ENTITY_ID") or os.getenv("ENTITY_ID")
SMS_TEMPLATE_ID = os.getenv("SMS_TEMPLATE_ID") or os.getenv("TEMPLATE_ID")

# =====================================================
# OTP
# =====================================================
DELIVERY_OTP_TTL_MINUTES = int(os.getenv("DELIVERY_OTP_TTL_MINUTES", 10))
PICKUP_OTP_TTL_HOURS = int(os.getenv("PICKUP_OTP_TTL_HOURS", 24))

# =====================================================
# WORKERS
# =====================================================
INVENTORY_RETRY_INTERVAL_SECONDS = int(os.getenv("INVENTORY_RETRY_INTERVAL_SECONDS", 300))

# =====================================================
# CORS
# =====================================================
# Admin panel and storefront dev servers when nothing is configured
DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://localhost:3001"

CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in (os.getenv("CORS_ALLOWED_ORIGINS") or DEFAULT_CORS_ORIGINS).split(",")
    if origin.strip()
]


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "JWT_SECRET": JWT_SECRET,
        "RAZORPAY_KEY_ID": RAZORPAY_KEY_ID,
        "RAZORPAY_KEY_SECRET": RAZORPAY_KEY_SECRET,
        "SMS_API_KEY": SMS_API_KEY,
        "SMS_SENDER_ID": SMS_SENDER_ID,
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")
