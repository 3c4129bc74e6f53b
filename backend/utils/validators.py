import re

PHONE_REGEX = re.compile(r"^(?:\+?91)?([6-9]\d{9})$")

def to_sms_number(phone: str) -> str:
    """Normalise an Indian mobile number to the 91XXXXXXXXXX form the gateway expects."""
    phone = re.sub(r"[\s-]", "", phone or "")

    match = PHONE_REGEX.match(phone)
    if not match:
        raise ValueError("Invalid phone number format")

    return "91" + match.group(1)
