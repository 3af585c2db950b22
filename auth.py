import logging
import os
from datetime import timedelta
from typing import Optional

from bson import ObjectId
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ValidationError as PydanticValidationError
from pymongo.database import Database

from database import USERS, get_db, now_utc
from errors import Forbidden, Unauthorized
from loyalty import is_premium_active

logger = logging.getLogger(__name__)

# Auth setup
SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 24 * 60))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class CurrentUser(BaseModel):
    """Identity of the caller, loaded from the users collection once per request."""
    id: str
    email: str
    role: str
    is_premium: bool = False


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("password must not be empty")
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not password or not hashed:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except ValueError:
        # unknown or malformed hash
        return False


def create_access_token(user_id: str, email: str, role: str, is_premium: bool, expires_delta: Optional[timedelta] = None) -> str:
    issued = now_utc()
    expire = issued + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": user_id,
        "email": email,
        "role": role,
        "is_premium": is_premium,
        "iat": issued,
        "exp": expire,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> CurrentUser:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as exc:
        logger.info("Rejected token: %s", exc)
        raise Unauthorized("Invalid token")
    if payload.get("sub") is None:
        raise Unauthorized("Invalid token claims")
    try:
        return CurrentUser(
            id=payload["sub"],
            email=payload.get("email", ""),
            role=payload.get("role", ""),
            is_premium=payload.get("is_premium", False),
        )
    except PydanticValidationError:
        raise Unauthorized("Invalid token claims")


async def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> CurrentUser:
    claims = decode_access_token(token)
    if not ObjectId.is_valid(claims.id):
        raise Unauthorized("Invalid token claims")
    # role and status come from the stored user, so admin changes apply to live tokens
    user = db[USERS].find_one({"_id": ObjectId(claims.id)})
    if not user:
        raise Unauthorized("User not found")
    if not user.get("is_active", True):
        raise Forbidden("Account is deactivated")
    return CurrentUser(
        id=claims.id,
        email=user.get("email", ""),
        role=user.get("role", "customer"),
        is_premium=is_premium_active(user),
    )


def require_role(*roles: str):
    async def role_dep(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in roles:
            raise Forbidden("Insufficient permissions")
        return current_user
    return role_dep
