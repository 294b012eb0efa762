import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, Header, HTTPException
from passlib.context import CryptContext
from pymongo.database import Database

import config
from database import get_db

logger = logging.getLogger(__name__)

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_access_token(user: dict, expires_minutes: Optional[int] = None) -> str:
    expires = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes or config.JWT_EXPIRES_MINUTES)
    payload = {
        "email": user["email"],
        "user_id": str(user["_id"]),
        "role": user.get("role", "CUSTOMER"),
        "exp": expires,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Return the token claims; raises 401 when the token is invalid or expired."""
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Database = Depends(get_db),
) -> dict:
    # Both "Bearer <token>" and the bare token are accepted
    if not authorization:
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1] if authorization.startswith("Bearer ") else authorization
    claims = decode_access_token(token.strip())
    try:
        user = db["user"].find_one({"_id": ObjectId(claims.get("user_id"))})
    except (InvalidId, TypeError):
        user = None
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if user.get("status", "ACTIVE") != "ACTIVE":
        raise HTTPException(status_code=403, detail=f"User is {user['status']}")
    user["id"] = str(user["_id"])
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "ADMIN":
        logger.warning(f"Admin route refused for {user.get('email')}")
        raise HTTPException(status_code=401, detail="Permission denied")
    return user
