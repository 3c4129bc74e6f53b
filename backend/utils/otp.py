import hashlib
import secrets
import logging
from datetime import datetime, timedelta

from pymongo import ReturnDocument

from config.constants import OTP_DIGITS
from utils.errors import ForbiddenError, InvalidOtpError, OtpExpiredError, OtpMismatchError

logger = logging.getLogger(__name__)


# ===============================
# GENERATE 4-DIGIT OTP
# ===============================
def generate_otp() -> str:
    low = 10 ** (OTP_DIGITS - 1)
    return str(low + secrets.randbelow(9 * low))


# ===============================
# HASH OTP
# ===============================
def hash_otp(otp: str) -> str:
    return hashlib.sha256(otp.encode()).hexdigest()


# ===============================
# VERIFY OTP
# ===============================
def verify_hash(plain_otp: str, hashed_otp: str) -> bool:
    return secrets.compare_digest(hash_otp(plain_otp), hashed_otp or "")


# ===============================
# OTP GATE (otp_sessions collection)
# ===============================

async def invalidate_otp(db, *, purpose: str, subject_id: str) -> int:
    result = await db.otp_sessions.update_many(
        {"purpose": purpose, "subject_id": subject_id, "consumed": False},
        {"$set": {"consumed": True, "invalidated_at": datetime.utcnow()}},
    )
    return result.modified_count


async def issue_otp(
    db,
    *,
    purpose: str,
    subject_id: str,
    requester_id: str,
    ttl: timedelta,
    key: str | None = None,
) -> tuple[str, str, datetime]:
    """
    Issue a code for ``subject_id``. Any earlier live code for the same
    subject stops verifying. Returns (key, code, expires_at); the key is a
    fresh session id unless the caller pins one.
    """
    now = datetime.utcnow()
    expires_at = now + ttl
    code = generate_otp()
    key = key or secrets.token_hex(16)

    await invalidate_otp(db, purpose=purpose, subject_id=subject_id)

    await db.otp_sessions.replace_one(
        {"key": key, "purpose": purpose},
        {
            "key": key,
            "purpose": purpose,
            "subject_id": subject_id,
            "requester_id": str(requester_id),
            "code_hash": hash_otp(code),
            "created_at": now,
            "expires_at": expires_at,
            "consumed": False,
            "consumed_at": None,
        },
        upsert=True,
    )

    return key, code, expires_at


async def verify_otp(
    db,
    *,
    purpose: str,
    key: str,
    code: str,
    requester_id: str | None = None,
    subject_id: str | None = None,
) -> dict:
    """
    Check ``code`` against the live record under ``key`` and consume it.
    A wrong code leaves the record usable until it expires.
    """
    record = await db.otp_sessions.find_one({"key": key, "purpose": purpose})
    if not record or record.get("consumed"):
        raise InvalidOtpError("No active OTP found, request a new one")

    if subject_id is not None and record.get("subject_id") != subject_id:
        raise InvalidOtpError("OTP does not belong to this request")

    if datetime.utcnow() > record["expires_at"]:
        raise OtpExpiredError("OTP has expired")

    if not verify_hash(str(code or "").strip(), record.get("code_hash")):
        raise OtpMismatchError("Invalid OTP")

    if requester_id is not None and record.get("requester_id") != str(requester_id):
        raise ForbiddenError("OTP was requested by a different user")

    consumed = await db.otp_sessions.find_one_and_update(
        {"_id": record["_id"], "consumed": False},
        {"$set": {"consumed": True, "consumed_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if consumed is None:
        # lost the race to a concurrent verification
        raise InvalidOtpError("OTP already used")

    logger.info("OTP_CONSUMED purpose=%s subject=%s", purpose, record.get("subject_id"))
    return consumed
