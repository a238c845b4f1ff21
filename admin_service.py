"""
admin_service.py — The Control Room
====================================
Role-gated moderation for the reseller dashboard.

Admins (admin or owner role): approvals, credit balances, force-logout,
key and device moderation, answering user requests, reading
private conversations and per-user activity.
Owners only: bans and promoting/demoting admins.
"""

import logging
from datetime import timedelta

from fastapi import FastAPI, Depends
from pydantic import BaseModel
from typing import Optional

import store
from db import init_db_if_configured, utcnow
from errors import ErrorKind, ServiceError, install_error_handler
from sessions import admin_user, is_banned, owner_user, revoke_sessions

logging.basicConfig(level=logging.INFO, format="%(asctime)s [ADMIN] %(levelname)s %(message)s")
log = logging.getLogger("admin")

app = FastAPI(title="Reseller Control Room")
install_error_handler(app)

init_db_if_configured()

BAN_DURATIONS = {"1day": 1, "1week": 7, "1month": 30, "1year": 365}
DEFAULT_BAN_MESSAGE = "You have been banned."
APPROVAL_STATUSES = {"pending", "approved", "rejected"}
BOT_SENDER = "SonicBot"


def target_profile(user_id: str) -> dict:
    profile = store.get_profile(user_id)
    if not profile:
        raise ServiceError(ErrorKind.NOT_FOUND, "User not found")
    return profile


def admin_view(profile: dict, admins: set, owners: set) -> dict:
    return {
        "id":              profile["id"],
        "username":        profile["username"],
        "email":           profile["email"],
        "approval_status": profile["approval_status"],
        "credits":         profile["credits"],
        "ban_until":       profile.get("ban_until"),
        "ban_message":     profile.get("ban_message"),
        "is_banned":       is_banned(profile),
        "is_admin":        profile["id"] in admins,
        "is_owner":        profile["id"] in owners,
        "created_at":      profile.get("created_at"),
    }


# ── Models ───────────────────────────────────────────────────────────────────
class ApprovalRequest(BaseModel): status: str
class CreditsRequest(BaseModel): credits: int
class BanRequest(BaseModel): duration: str = "1day"; message: str = ""
class MessageRequest(BaseModel):
    message:   str = ""
    image_url: Optional[str] = None
    video_url: Optional[str] = None


@app.get("/health")
def health():
    return {"status": "online", "service": "admin-control-room"}

# ── Users ────────────────────────────────────────────────────────────────────
@app.get("/admin/users")
def list_users(admin: dict = Depends(admin_user)):
    admins = store.list_role_members("admin")
    owners = store.list_role_members("owner")
    return [admin_view(p, admins, owners) for p in store.list_profiles()]

@app.post("/admin/users/{user_id}/approval")
def set_approval(user_id: str, req: ApprovalRequest, admin: dict = Depends(admin_user)):
    if req.status not in APPROVAL_STATUSES:
        raise ServiceError(ErrorKind.INVALID_REQUEST, f"Unknown approval status: {req.status}")
    target_profile(user_id)
    store.update_profile(user_id, approval_status=req.status)
    log.info(f"{admin['username']} set {user_id} to {req.status}")
    return {"status": req.status, "user_id": user_id}

@app.post("/admin/users/{user_id}/credits")
def set_credits(user_id: str, req: CreditsRequest, admin: dict = Depends(admin_user)):
    if req.credits < 0:
        raise ServiceError(ErrorKind.INVALID_REQUEST, "Credits cannot be negative")
    target_profile(user_id)
    store.update_profile(user_id, credits=req.credits)
    log.info(f"{admin['username']} set credits of {user_id} to {req.credits}")
    return {"credits": req.credits, "user_id": user_id}

@app.post("/admin/users/{user_id}/force-logout")
def force_logout(user_id: str, admin: dict = Depends(admin_user)):
    target_profile(user_id)
    revoke_sessions(user_id)
    log.info(f"User {user_id} has been logged out by {admin['username']}")
    return {"success": True, "message": "User has been logged out"}

@app.post("/admin/users/{user_id}/messages")
def message_user(user_id: str, req: MessageRequest, admin: dict = Depends(admin_user)):
    if not (req.message.strip() or req.image_url or req.video_url):
        raise ServiceError(ErrorKind.INVALID_REQUEST, "Message is empty")
    target_profile(user_id)
    return store.insert_private_message(user_id, BOT_SENDER, req.message.strip() or None,
                                        req.image_url, req.video_url)

# ── Owner only ───────────────────────────────────────────────────────────────
@app.post("/owner/users/{user_id}/ban")
def ban_user(user_id: str, req: BanRequest, owner: dict = Depends(owner_user)):
    days = BAN_DURATIONS.get(req.duration)
    if not days:
        raise ServiceError(ErrorKind.INVALID_REQUEST, f"Unknown ban duration: {req.duration}")
    target_profile(user_id)
    ban_until = utcnow() + timedelta(days=days)
    store.update_profile(user_id, ban_until=ban_until,
                         ban_message=req.message.strip() or DEFAULT_BAN_MESSAGE)
    log.info(f"{owner['username']} banned {user_id} until {ban_until}")
    return {"user_id": user_id, "ban_until": ban_until}

@app.post("/owner/users/{user_id}/unban")
def unban_user(user_id: str, owner: dict = Depends(owner_user)):
    target_profile(user_id)
    store.update_profile(user_id, ban_until=None, ban_message=None)
    log.info(f"{owner['username']} unbanned {user_id}")
    return {"user_id": user_id, "ban_until": None}

@app.post("/owner/users/{user_id}/admin")
def promote_admin(user_id: str, owner: dict = Depends(owner_user)):
    target_profile(user_id)
    store.add_role(user_id, "admin")
    log.info(f"{owner['username']} promoted {user_id} to admin")
    return {"user_id": user_id, "is_admin": True}

@app.delete("/owner/users/{user_id}/admin")
def demote_admin(user_id: str, owner: dict = Depends(owner_user)):
    if not store.remove_role(user_id, "admin"):
        raise ServiceError(ErrorKind.NOT_FOUND, "User is not an admin")
    log.info(f"{owner['username']} removed admin role from {user_id}")
    return {"user_id": user_id, "is_admin": False}

# ── Keys (no ownership filter) ───────────────────────────────────────────────
@app.get("/admin/keys")
def keys_for_username(username: str, admin: dict = Depends(admin_user)):
    profile = store.get_profile_by_username(username.strip())
    if not profile:
        raise ServiceError(ErrorKind.NOT_FOUND, f"User not found: {username}")
    return {"user_id": profile["id"], "username": profile["username"],
            "keys": store.list_keys(profile["id"])}

@app.delete("/admin/keys/{key_id}")
def remove_key(key_id: int, admin: dict = Depends(admin_user)):
    """Drops the local row only; AuthTool is left to the user's own delete."""
    if not store.delete_key(key_id):
        raise ServiceError(ErrorKind.NOT_FOUND, "Key not found")
    log.info(f"{admin['username']} deleted key row {key_id}")
    return {"success": True}

# ── Devices ──────────────────────────────────────────────────────────────────
@app.get("/admin/devices")
def list_devices(admin: dict = Depends(admin_user)):
    return store.list_device_sessions()

@app.post("/admin/devices/{session_id}/approve")
def approve_device(session_id: int, admin: dict = Depends(admin_user)):
    if not store.approve_device_session(session_id, admin["id"]):
        raise ServiceError(ErrorKind.NOT_FOUND, "Device session not found")
    log.info(f"{admin['username']} approved device session {session_id}")
    return {"success": True}

@app.delete("/admin/devices/{session_id}")
def ban_device(session_id: int, admin: dict = Depends(admin_user)):
    """The row stays (unapproved) so the same fingerprint is refused next time."""
    session = store.block_device_session(session_id, admin["id"])
    if not session:
        raise ServiceError(ErrorKind.NOT_FOUND, "Device session not found")
    revoke_sessions(session["user_id"])
    log.info(f"{admin['username']} banned device session {session_id}")
    return {"success": True, "is_approved": False}

# ── Private conversations & activity ─────────────────────────────────────────
@app.get("/admin/messages/private")
def private_conversations(user_id: Optional[str] = None, admin: dict = Depends(admin_user)):
    """Every private thread, or one user's when user_id is given."""
    return store.list_private_messages(user_id)

@app.get("/admin/activity")
def user_activity(admin: dict = Depends(admin_user)):
    return store.list_user_activity()

# ── User requests ────────────────────────────────────────────────────────────
@app.get("/admin/requests")
def list_requests(status: Optional[str] = None, admin: dict = Depends(admin_user)):
    return store.list_user_requests(status)

@app.post("/admin/requests/{request_id}/respond")
def respond_to_request(request_id: int, req: MessageRequest, admin: dict = Depends(admin_user)):
    user_request = store.get_user_request(request_id)
    if not user_request:
        raise ServiceError(ErrorKind.NOT_FOUND, "Request not found")
    if not (req.message.strip() or req.image_url or req.video_url):
        raise ServiceError(ErrorKind.INVALID_REQUEST, "Message is empty")

    message = store.insert_private_message(user_request["user_id"], BOT_SENDER,
                                           req.message.strip() or None,
                                           req.image_url, req.video_url)
    store.complete_user_request(request_id)
    log.info(f"{admin['username']} answered request {request_id} ({user_request['request_type']})")
    return {"success": True, "message": message}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
