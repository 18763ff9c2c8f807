import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from passlib.context import CryptContext
from pydantic import BaseModel
from pymongo.database import Database

import settings
from database import get_db, to_object_id
from errors import InvalidInput

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")

SPECIAL_CHARS = r"[!@#$%^&*(),.?\":{}|<>]"


class Principal(BaseModel):
    id: str
    role: str


# Helpers

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def check_password_policy(password: str) -> None:
    # 8-16 chars, at least one uppercase and one special char
    if not (8 <= len(password) <= 16):
        raise InvalidInput("Password must be 8-16 characters long")
    if not re.search(r"[A-Z]", password):
        raise InvalidInput("Password must contain at least one uppercase letter")
    if not re.search(SPECIAL_CHARS, password):
        raise InvalidInput("Password must contain at least one special character")


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def token_for(user: dict) -> str:
    return create_access_token({"sub": str(user["_id"]), "role": user.get("role", "user")})


# Dependency: get current user
def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> Principal:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authorized, token failed",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    # Role is read from the stored user, not the token
    try:
        user = db["user"].find_one({"_id": to_object_id(user_id)})
    except InvalidInput:
        raise credentials_exception
    if not user:
        raise credentials_exception
    return Principal(id=str(user["_id"]), role=user.get("role", "user"))


# Role guard
def require_role(*roles):
    def _guard(user: Principal = Depends(get_current_user)) -> Principal:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail=f"User role {user.role} is not authorized to access this resource")
        return user
    return _guard


def can_act_on(principal: Principal, owner_id) -> bool:
    """Ownership predicate: the resource owner or an admin."""
    return principal.role == "admin" or principal.id == str(owner_id)
