"""
profile_service.py — The Locker Room
=====================================
Profile reads, username changes (once per 30 days), theme colours and the
weekly reward wheel.
"""

import logging
import secrets
from datetime import timedelta

from fastapi import FastAPI, Depends
from pydantic import BaseModel
from typing import Optional

import store
from db import init_db_if_configured, utcnow
from errors import ErrorKind, ServiceError, install_error_handler
from sessions import active_user, current_user, is_banned
from validators import validate_username

logging.basicConfig(level=logging.INFO, format="%(asctime)s [PROFILE] %(levelname)s %(message)s")
log = logging.getLogger("profile")

app = FastAPI(title="Reseller Profile Service")
install_error_handler(app)

init_db_if_configured()

USERNAME_COOLDOWN = timedelta(days=30)
SPIN_COOLDOWN     = timedelta(days=7)
SPIN_REWARDS      = [0, 1, 2, 3]

DEFAULT_THEME = {
    "primary":    "263 70% 50%",
    "accent":     "263 70% 60%",
    "background": None,
    "lightning":  None,
    "segment":    None,
}


def resolve_theme(profile: dict) -> dict:
    """Colours the dashboard should render with; fills gaps from the defaults."""
    stored = profile.get("theme_colors") or {}
    return {
        "primary":    stored.get("primary") or DEFAULT_THEME["primary"],
        "accent":     stored.get("accent") or DEFAULT_THEME["accent"],
        "background": profile.get("background_color") or DEFAULT_THEME["background"],
        "lightning":  profile.get("lightning_color") or DEFAULT_THEME["lightning"],
        "segment":    profile.get("segment_color") or DEFAULT_THEME["segment"],
    }


def username_change_allowed_at(profile: dict):
    last = profile.get("last_username_change")
    return last + USERNAME_COOLDOWN if last else None


def next_spin_at(last_spin):
    return last_spin["spin_date"] + SPIN_COOLDOWN if last_spin else None


def public_profile(profile: dict) -> dict:
    return {
        "id":                   profile["id"],
        "email":                profile["email"],
        "username":             profile["username"],
        "approval_status":      profile["approval_status"],
        "credits":              profile["credits"],
        "is_banned":            is_banned(profile),
        "ban_until":            profile.get("ban_until"),
        "ban_message":          profile.get("ban_message") if is_banned(profile) else None,
        "last_username_change": profile.get("last_username_change"),
        "totp_enabled":         bool(profile.get("totp_secret")),
        "theme":                resolve_theme(profile),
    }


# ── Models ────────────────────────────────────────────────────────────────────
class UsernameRequest(BaseModel):
    username: str

class ThemeRequest(BaseModel):
    primary:    Optional[str] = None
    accent:     Optional[str] = None
    background: Optional[str] = None
    lightning:  Optional[str] = None
    segment:    Optional[str] = None


# ── ENDPOINTS ─────────────────────────────────────────────────────────────────
@app.get("/health")
async def health():
    return {"status": "healthy", "service": "profile"}

@app.get("/profile")
def get_profile(profile: dict = Depends(current_user)):
    """Banned users still get their profile so the dashboard can show the ban."""
    return public_profile(profile)

@app.post("/profile/username")
def change_username(req: UsernameRequest, profile: dict = Depends(active_user)):
    new_name = req.username.strip()
    validate_username(new_name)
    if new_name == profile["username"]:
        raise ServiceError(ErrorKind.INVALID_REQUEST, "That is already your username")

    allowed_at = username_change_allowed_at(profile)
    now = utcnow()
    if allowed_at and now < allowed_at:
        days_left = (allowed_at - now).days + 1
        raise ServiceError(ErrorKind.RATE_LIMITED,
                           f"You can change your username in {days_left} days")

    if store.get_profile_by_username(new_name):
        raise ServiceError(ErrorKind.INVALID_REQUEST, "Username is already taken")

    updated = store.update_profile(profile["id"], username=new_name, last_username_change=now)
    log.info(f"Username changed: {profile['username']} -> {new_name}")
    return public_profile(updated)

@app.post("/profile/theme")
def update_theme(req: ThemeRequest, profile: dict = Depends(active_user)):
    current = resolve_theme(profile)
    updated = store.update_profile(
        profile["id"],
        theme_colors={"primary": req.primary or current["primary"],
                      "accent":  req.accent or current["accent"]},
        background_color=req.background or current["background"],
        lightning_color=req.lightning or current["lightning"],
        segment_color=req.segment or current["segment"],
    )
    return {"theme": resolve_theme(updated)}

# ── Weekly reward wheel ───────────────────────────────────────────────────────
@app.get("/profile/spin")
def spin_status(profile: dict = Depends(active_user)):
    next_at = next_spin_at(store.get_last_spin(profile["id"]))
    return {
        "can_spin":  next_at is None or utcnow() >= next_at,
        "next_spin": next_at,
    }

@app.post("/profile/spin")
def spin(profile: dict = Depends(active_user)):
    next_at = next_spin_at(store.get_last_spin(profile["id"]))
    if next_at and utcnow() < next_at:
        raise ServiceError(ErrorKind.RATE_LIMITED, "You already spun this week")

    won = secrets.choice(SPIN_REWARDS)
    balance = store.record_spin(profile["id"], won)
    log.info(f"{profile['username']} spun the wheel and won {won} credit(s)")
    return {"credits_won": won, "credits": balance, "next_spin": utcnow() + SPIN_COOLDOWN}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
