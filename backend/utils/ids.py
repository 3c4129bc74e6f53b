import secrets
import string
import time

_BASE36 = string.digits + string.ascii_uppercase


def _random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def make_business_id(prefix: str) -> str:
    # <PREFIX>-<last 8 digits of epoch millis>-<6 base36 chars>
    timestamp = str(int(time.time() * 1000))
    return f"{prefix}-{timestamp[-8:]}-{_random_suffix()}"


def generate_order_id() -> str:
    return make_business_id("ORD")


def generate_return_id() -> str:
    return make_business_id("RET")


async def generate_unique_id(db, collection: str, field: str, factory) -> str:
    value = factory()

    while await db[collection].find_one({field: value}, {"_id": 1}):
        value = factory()

    return value
