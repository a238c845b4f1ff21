"""
sessions.py — Session tokens and the request guards built on them.

A session is an HS256 JWT (sub = profile id, iat as a float timestamp).
Revoking a user's sessions stamps profiles.sessions_revoked_at; any token
issued before that instant is refused. Force-logout and the device gate
both go through revoke_sessions().

A device token (typ "device") pins a browser fingerprint to a profile.
active_user only lets a request through when that device row is approved.
"""

import logging
import secrets
import time
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends, Header, HTTPException

import config
import store
from db import utcnow
from errors import ErrorKind, ServiceError

log = logging.getLogger("sessions")

ALGORITHM = "HS256"
ADMIN_ROLES = {"admin", "owner"}

_fallback_secret = secrets.token_hex(32)


def jwt_secret() -> str:
    return config.JWT_SECRET or _fallback_secret


def _to_ts(value: datetime) -> float:
    return value.replace(tzinfo=timezone.utc).timestamp()


def issue_session_token(user_id: str) -> str:
    now = time.time()
    return jwt.encode({
        "sub": user_id,
        "typ": "session",
        "iat": now,
        "exp": now + timedelta(hours=config.JWT_EXPIRY_HOURS).total_seconds(),
    }, jwt_secret(), algorithm=ALGORITHM)


def decode_session_token(token: str) -> dict:
    try:
        claims = jwt.decode(token, jwt_secret(), algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise ServiceError(ErrorKind.UNAUTHORIZED, "Session expired")
    except jwt.InvalidTokenError:
        raise ServiceError(ErrorKind.UNAUTHORIZED, "Unauthorized")
    if claims.get("typ") != "session" or not claims.get("sub"):
        raise ServiceError(ErrorKind.UNAUTHORIZED, "Unauthorized")
    return claims


def issue_device_token(user_id: str, fingerprint: str) -> str:
    return jwt.encode(
        {"sub": user_id, "dev": fingerprint, "typ": "device"},
        jwt_secret(), algorithm=ALGORITHM
    )


def read_device_token(token: str, user_id: str):
    """Fingerprint pinned by a device token, or None if the token is unusable."""
    if not token:
        return None
    try:
        claims = jwt.decode(token, jwt_secret(), algorithms=[ALGORITHM])
    except jwt.InvalidTokenError:
        return None
    if claims.get("typ") != "device" or claims.get("sub") != user_id:
        return None
    return claims.get("dev")


def revoke_sessions(user_id: str):
    store.update_profile(user_id, sessions_revoked_at=utcnow())
    log.info(f"Sessions revoked for {user_id}")


def session_is_revoked(claims: dict, profile: dict) -> bool:
    revoked_at = profile.get("sessions_revoked_at")
    if not revoked_at:
        return False
    return float(claims.get("iat", 0)) < _to_ts(revoked_at)


def is_banned(profile: dict) -> bool:
    ban_until = profile.get("ban_until")
    return bool(ban_until) and ban_until > utcnow()


# ── FastAPI dependencies ──────────────────────────────────────────────────────
def current_user(authorization: str = Header(None)) -> dict:
    """Resolve the bearer token to a profile row."""
    if not authorization or not authorization.startswith("Bearer "):
        raise ServiceError(ErrorKind.UNAUTHORIZED, "No authorization header")
    claims = decode_session_token(authorization[len("Bearer "):].strip())
    profile = store.get_profile(claims["sub"])
    if not profile or session_is_revoked(claims, profile):
        raise ServiceError(ErrorKind.UNAUTHORIZED, "Unauthorized")
    return profile


def active_user(profile: dict = Depends(current_user), x_device_token: str = Header(None)) -> dict:
    """current_user, minus anyone still inside a ban window or on a device
    an admin hasn't approved. The device is proven by X-Device-Token, which
    only /devices/track hands out."""
    if is_banned(profile):
        raise ServiceError(ErrorKind.BANNED, profile.get("ban_message") or "You have been banned.")

    fingerprint = read_device_token(x_device_token, profile["id"])
    device = store.get_device_session(profile["id"], fingerprint) if fingerprint else None
    if not device or not device["is_approved"]:
        raise ServiceError(ErrorKind.DEVICE_NOT_APPROVED, "Device not approved")
    return profile


def admin_user(profile: dict = Depends(current_user)) -> dict:
    profile["roles"] = store.get_roles(profile["id"])
    if not profile["roles"] & ADMIN_ROLES:
        raise ServiceError(ErrorKind.FORBIDDEN, "Unauthorized: Admin or Owner privileges required")
    return profile


def owner_user(profile: dict = Depends(admin_user)) -> dict:
    if "owner" not in profile["roles"]:
        raise ServiceError(ErrorKind.FORBIDDEN, "Unauthorized: Owner privileges required")
    return profile


def verify_internal(x_internal_key: str = Header(None)):
    """Constant-time check of the service-to-service key."""
    if not x_internal_key or not config.INTERNAL_API_KEY or \
       not secrets.compare_digest(x_internal_key, config.INTERNAL_API_KEY):
        raise HTTPException(status_code=403, detail="Invalid internal key")
