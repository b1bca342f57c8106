import datetime as dt
import hashlib
import secrets
import uuid
from dataclasses import dataclass

import jwt
from fastapi import HTTPException, status, Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .config import settings
from .database import SessionLocal


ROLES = ("rider", "driver", "franchise", "admin")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    role: str
    subject_id: uuid.UUID | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def actor(self) -> str:
        if self.subject_id is None:
            return self.role
        return f"{self.role}:{self.subject_id}"


def create_access_token(subject_id: str, role: str) -> str:
    if role not in ROLES:
        raise ValueError(f"unknown role {role!r}")
    now = dt.datetime.utcnow()
    payload = {
        "sub": str(subject_id),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + settings.jwt_expires_delta).timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> Principal:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    role = payload.get("role")
    sub = payload.get("sub")
    if role not in ROLES or not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    try:
        subject_id = uuid.UUID(str(sub))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")
    return Principal(role=role, subject_id=subject_id)


def is_admin_token_valid(incoming: str | None) -> bool:
    if not incoming:
        return False
    token_plain = settings.ADMIN_TOKEN or ""
    for candidate in [t.strip() for t in token_plain.split(',') if t.strip()]:
        if secrets.compare_digest(incoming, candidate):
            return True
    digest = hashlib.sha256(incoming.encode()).hexdigest().lower()
    for candidate in settings.admin_token_hashes:
        if secrets.compare_digest(digest, candidate.lower()):
            return True
    return False


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_current_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> Principal:
    if x_admin_token is not None:
        if not is_admin_token_valid(x_admin_token):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token invalid")
        return Principal(role="admin")
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return decode_token(creds.credentials)


def require_roles(*roles: str):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{'/'.join(roles)} only")
        return principal

    return _dep


require_admin = require_roles("admin")
