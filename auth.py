"""
Identity and per-action authorization.

Authorization is decided here, on the server, from (actor role, resource
owner, action). Hidden buttons in a client are not a guard.
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext

from database import USERS, get_db, id_query, normalize_id
from errors import Forbidden

# JWT settings
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-key-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

MANAGERS = ("owner", "admin", "coordinator")
STAFF = MANAGERS + ("coach",)

READ = "read"
CREATE = "create"
UPDATE = "update"
DELETE = "delete"
MARK = "mark"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _find_user(user_id: str) -> Optional[Dict[str, Any]]:
    return get_db()[USERS].find_one(id_query(user_id))


# Auth dependencies
async def get_current_user(authorization: Optional[str] = Header(None)) -> dict:
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    try:
        payload = jwt.decode(parts[1], SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Token decode error")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = _find_user(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if user.get("status") == "inactive":
        raise HTTPException(status_code=401, detail="Account is inactive")
    return normalize_id(user)


def authorize(actor: Dict[str, Any], action: str, resource_type: str, resource: Optional[Dict[str, Any]] = None) -> None:
    """
    Raise Forbidden unless ``actor`` may perform ``action`` on the resource.

    Managers (owner/admin/coordinator) may do anything inside their own
    academy. Coaches may create batches and change only the ones they created.
    Players may read, nothing else.
    """
    role = actor.get("role")
    academy_id = (resource or {}).get("academyId")
    if academy_id and academy_id != actor.get("academyId"):
        raise Forbidden(action, resource_type, "Resource belongs to another academy")

    if action == READ:
        return
    if role in MANAGERS:
        return

    if resource_type == "batch" and role == "coach":
        if action == CREATE:
            return
        if resource and resource.get("createdBy") == actor.get("id"):
            return
        raise Forbidden(action, resource_type, "Only the coach who created this batch can change it")

    if resource_type == "attendance" and action == MARK and role in STAFF:
        return

    raise Forbidden(action, resource_type, f"Role {role!r} cannot {action} {resource_type}")
