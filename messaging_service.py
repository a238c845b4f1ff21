"""
messaging_service.py — The Help Desk
=====================================
Support chat (shared room with read receipts), private inbox from the
admins, user-submitted key requests and media uploads for attachments.
"""

import logging

from fastapi import FastAPI, Depends, File, UploadFile
from pydantic import BaseModel
from typing import Optional

import storage_client
import store
from db import init_db_if_configured
from errors import ErrorKind, ServiceError, install_error_handler
from sessions import ADMIN_ROLES, active_user, current_user

logging.basicConfig(level=logging.INFO, format="%(asctime)s [MESSAGES] %(levelname)s %(message)s")
log = logging.getLogger("messages")

app = FastAPI(title="Reseller Help Desk")
install_error_handler(app)

init_db_if_configured()

REQUEST_TYPES = {"reset_key", "delete_key", "ban_udid", "block_key", "unblock_key",
                 "device_info", "other"}
KEY_REQUEST_TYPES = REQUEST_TYPES - {"other"}


# ── Models ────────────────────────────────────────────────────────────────────
class ChatMessage(BaseModel):
    message:   str = ""
    image_url: Optional[str] = None
    video_url: Optional[str] = None

class UserRequestBody(BaseModel):
    request_type: str
    key_code:     Optional[str] = None
    udid:         Optional[str] = None
    details:      Optional[dict] = None


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "messages"}

# ── Support chat ──────────────────────────────────────────────────────────────
@app.get("/support/messages")
def support_messages(profile: dict = Depends(current_user)):
    """Whole room, oldest first. Everything the caller didn't write is marked read."""
    messages = store.list_support_messages()
    store.mark_messages_read(
        profile["id"], [m["id"] for m in messages if m["user_id"] != profile["id"]]
    )

    read_by = {}
    for receipt in store.list_read_receipts():
        read_by.setdefault(receipt["message_id"], []).append(receipt["user_id"])

    return [dict(m, read_by=read_by.get(m["id"], [])) for m in messages]

@app.post("/support/messages")
def post_support_message(req: ChatMessage, profile: dict = Depends(active_user)):
    text = req.message.strip()
    if not (text or req.image_url or req.video_url):
        raise ServiceError(ErrorKind.INVALID_REQUEST, "Message is empty")
    is_admin = bool(store.get_roles(profile["id"]) & ADMIN_ROLES)
    return store.insert_support_message(profile["id"], profile["username"], text or None,
                                        req.image_url, req.video_url, is_admin)

# ── Private inbox ─────────────────────────────────────────────────────────────
@app.get("/messages/private")
def private_messages(profile: dict = Depends(current_user)):
    return store.list_private_messages(profile["id"])

@app.post("/messages/private/read")
def mark_private_read(profile: dict = Depends(current_user)):
    return {"marked": store.mark_private_messages_read(profile["id"])}

# ── Requests to the admins ────────────────────────────────────────────────────
@app.post("/requests")
def submit_request(req: UserRequestBody, profile: dict = Depends(active_user)):
    if req.request_type not in REQUEST_TYPES:
        raise ServiceError(ErrorKind.INVALID_REQUEST, f"Unknown request type: {req.request_type}")

    key = None
    if req.request_type in KEY_REQUEST_TYPES:
        if not req.key_code:
            raise ServiceError(ErrorKind.INVALID_REQUEST, "key_code is required")
        key = store.get_owned_key(req.key_code, profile["id"])
        if not key:
            raise ServiceError(ErrorKind.NOT_FOUND, "Key not found or unauthorized")
    if req.request_type == "ban_udid" and not req.udid:
        raise ServiceError(ErrorKind.INVALID_REQUEST, "udid is required")

    row = store.insert_user_request(profile["id"], profile["username"], req.request_type,
                                    req.key_code, req.udid, req.details)

    if req.request_type == "delete_key":
        store.update_key(key["id"], status="deleted")

    store.log_user_action(profile["id"], req.request_type,
                          {"key_code": req.key_code, "udid": req.udid})
    log.info(f"Request {row['id']} from {profile['username']}: {req.request_type}")
    return row

# ── Attachments ───────────────────────────────────────────────────────────────
@app.post("/media/{kind}")
async def upload_media(kind: str, file: UploadFile = File(...),
                       profile: dict = Depends(active_user)):
    content = await file.read()
    url = await storage_client.upload(kind, profile["id"], file.filename or "upload",
                                      content, file.content_type)
    return {"url": url, "kind": kind}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
