"""
device_service.py — The Doorman
================================
Recognises returning devices and gates every new one behind admin approval.

The fingerprint is a coarse 32-bit hash of browser/OS signals. It is only a
way to recognise a device again, not a security boundary. Once a device is
known the client is handed a signed device token; presenting that token
pins the device identity so signal drift (new browser version, resized
window) doesn't look like a brand new device. The same token is what
sessions.active_user checks before any key, profile or chat action.
"""

import json
import logging

from fastapi import FastAPI, Depends, Header, Request
from pydantic import BaseModel

import store
from db import init_db_if_configured
from errors import ErrorKind, ServiceError, install_error_handler
from sessions import current_user, issue_device_token, read_device_token, revoke_sessions

logging.basicConfig(level=logging.INFO, format="%(asctime)s [DEVICES] %(levelname)s %(message)s")
log = logging.getLogger("devices")

app = FastAPI(title="Reseller Device Service")
install_error_handler(app)

init_db_if_configured()


# ── Fingerprinting ────────────────────────────────────────────────────────────
def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value

def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return "".join(reversed(out))

def fingerprint_hash(signals: dict) -> str:
    """Sum-shift hash over the compact JSON of the signals, base 36.

    Same result the browser computes: h = h*31 + code unit, kept to a
    signed 32-bit integer, absolute value.
    """
    text = json.dumps(signals, separators=(",", ":"), ensure_ascii=False)
    h = 0
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        code_unit = data[i] | (data[i + 1] << 8)
        h = _to_int32((h << 5) - h + code_unit)
    return _base36(abs(h))


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ── Models ────────────────────────────────────────────────────────────────────
class TrackRequest(BaseModel):
    signals:     dict
    device_info: dict = {}


# ── ENDPOINTS ─────────────────────────────────────────────────────────────────
@app.get("/health")
async def health():
    return {"status": "healthy", "service": "devices"}

@app.post("/devices/track")
def track_device(
    req: TrackRequest,
    request: Request,
    profile: dict = Depends(current_user),
    x_device_token: str = Header(None),
):
    """Runs on every dashboard mount.

    Unknown device on an account with no devices: approved on the spot.
    Unknown device on an account that already has one: stored unapproved
    and every session of the account is ended until an admin approves it.
    """
    user_id = profile["id"]
    ip = client_ip(request)
    fingerprint = read_device_token(x_device_token, user_id) or fingerprint_hash(req.signals)

    existing = store.get_device_session(user_id, fingerprint)
    if existing:
        if not existing["is_approved"]:
            revoke_sessions(user_id)
            log.warning(f"Unapproved device {fingerprint} for {profile['username']}, signed out")
            raise ServiceError(ErrorKind.DEVICE_NOT_APPROVED, "Device not approved",
                               device_fingerprint=fingerprint)
        store.touch_device_session(existing["id"], ip)
        return {
            "status":             "approved",
            "device_fingerprint": fingerprint,
            "device_token":       issue_device_token(user_id, fingerprint),
        }

    first_device = store.count_device_sessions(user_id) == 0
    store.insert_device_session(user_id, fingerprint, req.device_info, ip, is_approved=first_device)

    if not first_device:
        revoke_sessions(user_id)
        log.info(f"New device {fingerprint} for {profile['username']} needs approval")
        raise ServiceError(ErrorKind.DEVICE_REQUIRES_APPROVAL, "Device requires approval",
                           device_fingerprint=fingerprint)

    log.info(f"First device {fingerprint} for {profile['username']} auto-approved")
    return {
        "status":             "approved",
        "device_fingerprint": fingerprint,
        "device_token":       issue_device_token(user_id, fingerprint),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
