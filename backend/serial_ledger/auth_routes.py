"""
Staff accounts for the ledger API.

Packers and support staff look up orders and download the serial export.
Correcting a serial and managing accounts is admin work. There is no self
sign-up: the first admin comes from ADMIN_DEFAULT_* at startup and every other
account is created by an admin.
"""
import os
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .logs import log_event
from .models import StaffRole, User, utcnow

router = APIRouter()

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_token = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

TOKEN_ALGORITHM = "HS256"
MIN_PASSWORD_LENGTH = 8


def _jwt_secret() -> str:
    return (os.environ.get("JWT_SECRET") or "CHANGE_ME_SECRET").strip()


def _token_ttl() -> timedelta:
    minutes = int((os.environ.get("JWT_EXPIRES_MINUTES") or "720").strip() or 720)
    return timedelta(minutes=minutes)


def hash_password(pw: str) -> str:
    return pwd_context.hash(pw)


def verify_password(pw: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(pw, hashed)
    except ValueError:
        return False


def create_access_token(user: User, *, now: Optional[datetime] = None) -> str:
    issued = now or utcnow()
    claims = {"sub": user.id, "role": user.role, "iat": issued, "exp": issued + _token_ttl()}
    return jwt.encode(claims, _jwt_secret(), algorithm=TOKEN_ALGORITHM)


def read_token_subject(token: str) -> Optional[str]:
    """User id carried by a valid, unexpired token; None otherwise."""
    try:
        claims = jwt.decode(token, _jwt_secret(), algorithms=[TOKEN_ALGORITHM])
    except JWTError:
        return None
    return claims.get("sub") or None


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


async def find_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    return await session.scalar(select(User).where(User.email == _normalize_email(email)))


async def authenticate(session: AsyncSession, email: str, password: str) -> Optional[User]:
    user = await find_user_by_email(session, email)
    if user is None or not user.is_active or not verify_password(password, user.password_hash):
        return None
    user.last_login_at = utcnow()
    await session.commit()
    return user


async def ensure_admin(session: AsyncSession, email: str, password: str, name: Optional[str] = None) -> bool:
    """
    Make `email` an active admin unless the ledger already has one.

    Returns True when an account was created or promoted.
    """
    admins = await session.scalar(
        select(func.count(User.id)).where(User.role == StaffRole.ADMIN.value, User.is_active.is_(True))
    )
    if admins:
        return False
    user = await find_user_by_email(session, email)
    if user is None:
        user = User(email=_normalize_email(email))
        session.add(user)
    user.name = (name or "").strip() or user.name
    user.password_hash = hash_password(password)
    user.role = StaffRole.ADMIN.value
    user.is_active = True
    await session.commit()
    log_event("auth", {"action": "admin_ensured", "email": user.email})
    return True


def staff_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "isActive": bool(user.is_active),
        "lastLoginAt": user.last_login_at.isoformat() if user.last_login_at else None,
    }


async def get_current_user(token: str = Depends(bearer_token), db: AsyncSession = Depends(get_session)) -> User:
    uid = read_token_subject(token)
    user = await db.get(User, uid) if uid else None
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != StaffRole.ADMIN.value:
        raise HTTPException(status_code=403, detail="admin required")
    return user


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


class StaffCreateBody(BaseModel):
    email: EmailStr
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)
    name: Optional[str] = None
    role: StaffRole = StaffRole.STAFF


class StaffUpdateBody(BaseModel):
    name: Optional[str] = None
    role: Optional[StaffRole] = None
    is_active: Optional[bool] = None
    password: Optional[str] = Field(default=None, min_length=MIN_PASSWORD_LENGTH)


@router.post("/api/auth/login", response_model=TokenResponse)
async def login(body: LoginBody, db: AsyncSession = Depends(get_session)):
    user = await authenticate(db, body.email, body.password)
    if user is None:
        log_event("auth", {"action": "login", "email": _normalize_email(body.email), "status": "rejected"})
        raise HTTPException(status_code=401, detail="invalid credentials")
    return {"access_token": create_access_token(user), "user": staff_to_dict(user)}


@router.get("/api/auth/me")
async def me(user: User = Depends(get_current_user)):
    return staff_to_dict(user)


@router.get("/api/staff")
async def list_staff(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    users: List[User] = list((await db.scalars(select(User).order_by(User.email))).all())
    return {"staff": [staff_to_dict(u) for u in users]}


@router.post("/api/staff", status_code=201)
async def create_staff(
    body: StaffCreateBody,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    if await find_user_by_email(db, body.email) is not None:
        raise HTTPException(status_code=409, detail="email already has an account")
    user = User(
        email=_normalize_email(body.email),
        name=(body.name or "").strip() or None,
        password_hash=hash_password(body.password),
        role=body.role.value,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    log_event("auth", {"action": "staff_created", "email": user.email, "role": user.role, "by": admin.email})
    return staff_to_dict(user)


@router.patch("/api/staff/{user_id}")
async def update_staff(
    user_id: str,
    body: StaffUpdateBody,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="staff account not found")
    # An admin cannot lock themselves out of serial corrections
    if user.id == admin.id and (body.is_active is False or body.role == StaffRole.STAFF):
        raise HTTPException(status_code=400, detail="cannot demote or deactivate your own account")

    if body.name is not None:
        user.name = body.name.strip() or None
    if body.role is not None:
        user.role = body.role.value
    if body.is_active is not None:
        user.is_active = body.is_active
    if body.password is not None:
        user.password_hash = hash_password(body.password)
    await db.commit()
    log_event("auth", {"action": "staff_updated", "email": user.email, "by": admin.email})
    return staff_to_dict(user)
