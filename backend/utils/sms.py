import asyncio
import logging
from urllib import request, parse

from config.env import SMS_API_KEY, SMS_SENDER_ID, SMS_ENTITY_ID, SMS_TEMPLATE_ID
from utils.validators import to_sms_number

SMS_GATEWAY_URL = "https://www.smsgatewayhub.com/api/mt/SendSMS"
logger = logging.getLogger(__name__)


def _build_url(number: str, message: str) -> str:
    query = parse.urlencode({
        "APIKey": SMS_API_KEY or "",
        "senderid": SMS_SENDER_ID or "",
        "channel": 2,
        "DCS": 0,
        "flashsms": 0,
        "number": number,
        "text": message,
        "route": "clickhere",
        "EntityId": SMS_ENTITY_ID or "",
        "dlttemplateid": SMS_TEMPLATE_ID or "",
    })
    return f"{SMS_GATEWAY_URL}?{query}"


def _send_blocking(url: str) -> None:
    with request.urlopen(url, timeout=10) as resp:
        resp.read()


async def send_sms(phone: str, message: str) -> bool:
    """Fire-and-forget text. Never raises; the result is for logging only."""
    try:
        number = to_sms_number(phone)
        if not SMS_API_KEY:
            raise RuntimeError("SMS gateway is not configured")
        await asyncio.to_thread(_send_blocking, _build_url(number, message))
        return True
    except Exception:
        logger.exception("SMS_SEND_FAILED phone=%s", phone)
        return False


def _otp_message(otp: str) -> str:
    # the DLT-registered template only allows this wording
    return f"Use {otp} as One Time Password (OTP) to Get your Pie Certificates HTL"


async def send_delivery_otp(phone: str, otp: str, order_id: str) -> bool:
    logger.info("DELIVERY_OTP_SMS order=%s", order_id)
    return await send_sms(phone, _otp_message(otp))


async def send_pickup_otp(phone: str, otp: str, return_id: str) -> bool:
    logger.info("PICKUP_OTP_SMS return=%s", return_id)
    return await send_sms(phone, _otp_message(otp))
