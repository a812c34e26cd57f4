from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple

import bcrypt
from fastapi import Response
from jose import JWTError, jwt
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from .config import (
    JWT_SECRET, TOKEN_EXPIRES_SECONDS, IS_PRODUCTION,
    ADMIN_TOKEN_COOKIE, AFFILIATE_TOKEN_COOKIE,
)
from .helpers import ok, fail
from .model import Admin, Affiliate, User

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
BCRYPT_ROUNDS = 10
INVALID_CREDENTIALS = "Invalid credentials"


@dataclass
class AdminUser:
    id: str
    email: str


@dataclass
class AffiliateUser:
    id: str
    user_id: str
    email: str
    ref_code: str


# ----------------------------
# passwords & tokens
# ----------------------------
def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode(), salt).decode()


def check_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        # malformed hash or over-long password
        return False


def issue_token(claims: Dict[str, Any],
                expires_in: int = TOKEN_EXPIRES_SECONDS,
                secret: str = JWT_SECRET) -> str:
    iat = int(time.time())
    payload = dict(claims, iat=iat, exp=iat + expires_in)
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str, secret: str = JWT_SECRET) -> Optional[Dict]:
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.info("token rejected: %s", e)
        return None


def set_auth_cookie(response: Response, name: str, token: str) -> None:
    response.set_cookie(
        name,
        token,
        max_age=TOKEN_EXPIRES_SECONDS,
        httponly=True,
        secure=IS_PRODUCTION,
        samesite="strict",
        path="/",
    )


def clear_auth_cookie(response: Response, name: str) -> None:
    response.delete_cookie(name, path="/")


# ----------------------------
# admin
# ----------------------------
async def login_admin(
    db: AsyncSession, email: str, password: str
) -> Tuple[Dict[str, Any], Optional[str]]:
    """Returns ({success, error}, token)."""
    try:
        email = (email or "").strip().lower()
        admin = (await db.execute(
            select(Admin).where(func.lower(Admin.email) == email)
        )).scalar_one_or_none()
        if admin is None or not check_password(password or "",
                                               admin.password):
            return fail(INVALID_CREDENTIALS), None

        token = issue_token({"id": admin.id, "email": admin.email})
        return ok(), token
    except Exception:
        logger.exception("[login_admin] login error")
        return fail("An error occurred during login"), None


async def verify_admin_token(
    db: AsyncSession, token: Optional[str]
) -> Optional[AdminUser]:
    if not token:
        return None
    decoded = decode_token(token)
    if not decoded or not decoded.get("id"):
        return None
    admin = await db.get(Admin, decoded["id"])
    if admin is None:
        return None
    return AdminUser(id=admin.id, email=admin.email)


# ----------------------------
# affiliate (sub-admin)
# ----------------------------
async def login_affiliate(
    db: AsyncSession, email: str, password: str
) -> Tuple[Dict[str, Any], Optional[str]]:
    try:
        email = (email or "").strip().lower()
        affiliate = (await db.execute(
            select(Affiliate)
            .join(User, Affiliate.user_id == User.id)
            .where(func.lower(User.email) == email)
        )).scalar_one_or_none()
        if affiliate is None or not affiliate.password_hash:
            return fail(INVALID_CREDENTIALS), None
        if not check_password(password or "", affiliate.password_hash):
            return fail(INVALID_CREDENTIALS), None

        token = issue_token({
            "id": affiliate.id,
            "userId": affiliate.user_id,
            "email": affiliate.user.email,
            "refCode": affiliate.ref_code,
            "role": "affiliate",
        })
        return ok(), token
    except Exception:
        logger.exception("[login_affiliate] login error")
        return fail("Login failed"), None


async def verify_affiliate_token(
    db: AsyncSession, token: Optional[str]
) -> Optional[AffiliateUser]:
    if not token:
        return None
    decoded = decode_token(token)
    if not decoded or decoded.get("role") != "affiliate":
        return None
    if not decoded.get("id"):
        return None
    affiliate = await db.get(Affiliate, decoded["id"])
    if affiliate is None:
        return None
    return AffiliateUser(
        id=affiliate.id,
        user_id=affiliate.user_id,
        email=affiliate.user.email,
        ref_code=affiliate.ref_code,
    )
