from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError

from utils.jwt import decode_token
from database import get_db
from models.user import Actor, Role
from utils.guards import parse_object_id

security = HTTPBearer()


def actor_from_user(user: dict) -> Actor:
    try:
        role = Role(user.get("role") or Role.CUSTOMER.value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown role",
        )

    return Actor(
        id=str(user["_id"]),
        role=role,
        assigned_warehouse_ids=frozenset(str(w) for w in user.get("assigned_warehouses") or []),
        name=user.get("name"),
        phone=user.get("phone"),
    )


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(get_db),
) -> Actor:
    try:
        payload = decode_token(credentials.credentials)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user = await db.users.find_one({"_id": parse_object_id(user_id, "token subject")})
    if not user or user.get("is_active") is False:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    return actor_from_user(user)
