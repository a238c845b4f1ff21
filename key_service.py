"""
key_service.py — The Key Counter
=================================
Every key action follows the same path:
  1. caller must own the key row (key_code + user id)
  2. one call to AuthTool
  3. on success only, mirror the result into the local keys table
  4. for create, the credit cost is taken before step 2 and handed back
     if AuthTool refuses

There is no retry and no idempotency key. If the process dies between the
AuthTool call and the local write, AuthTool holds a key the local table
never sees; reconciliation only walks local rows, so that gap is accepted.
"""

import logging

from fastapi import FastAPI, Depends
from pydantic import BaseModel

import authtool_client
import config
import reconciler
import store
from db import init_db_if_configured, utcnow
from errors import ErrorKind, ServiceError, install_error_handler
from sessions import active_user, verify_internal

logging.basicConfig(level=logging.INFO, format="%(asctime)s [KEYS] %(levelname)s %(message)s")
log = logging.getLogger("keys")

app = FastAPI(title="Reseller Key Service")
install_error_handler(app)

init_db_if_configured()

# ── Pricing ───────────────────────────────────────────────────────────────────
DURATIONS = {
    "1day":   {"days": 1,  "credits": 1},
    "1week":  {"days": 7,  "credits": 3},
    "25days": {"days": 25, "credits": 5},
}


def credit_cost(duration: str) -> int:
    plan = DURATIONS.get(duration)
    if not plan:
        raise ServiceError(ErrorKind.INVALID_REQUEST, "Invalid duration")
    return plan["credits"]


def owned_key(key_code: str, user_id: str) -> dict:
    """The only authorization check for key actions: ownership."""
    if not key_code:
        raise ServiceError(ErrorKind.INVALID_REQUEST, "key_code is required")
    key = store.get_owned_key(key_code, user_id)
    if not key:
        log.warning(f"User {user_id} tried to act on key {key_code} they don't own")
        raise ServiceError(ErrorKind.NOT_FOUND, "Key not found or unauthorized")
    return key


# ── Models ────────────────────────────────────────────────────────────────────
class CreateKeyRequest(BaseModel):
    duration: str

class KeyRequest(BaseModel):
    key_code: str

class BanDeviceRequest(BaseModel):
    key_code: str
    udid:     str


# ── ENDPOINTS ─────────────────────────────────────────────────────────────────
@app.get("/health")
async def health():
    return {"status": "healthy", "service": "keys"}

@app.get("/keys")
def list_my_keys(profile: dict = Depends(active_user)):
    return store.list_keys(profile["id"])

@app.post("/keys/create")
async def create_key(req: CreateKeyRequest, profile: dict = Depends(active_user)):
    if profile["approval_status"] != "approved":
        raise ServiceError(ErrorKind.PENDING_APPROVAL, "Your account is pending approval")

    cost = credit_cost(req.duration)
    insufficient = ServiceError(ErrorKind.INSUFFICIENT_CREDITS,
                                f"Insufficient credits. You need {cost} credits for this duration.")
    if profile["credits"] < cost:
        raise insufficient

    # Guarded debit: a parallel request that already spent the balance loses here.
    remaining = store.deduct_credits(profile["id"], cost)
    if remaining is None:
        raise insufficient

    plan = DURATIONS[req.duration]
    try:
        key_code = await authtool_client.create_key(plan["days"], config.AUTHTOOL_PACKAGE_IDS)
    except ServiceError:
        store.refund_credits(profile["id"], cost)
        log.warning(f"AuthTool refused a {req.duration} key for {profile['username']}, refunded {cost}")
        raise
    log.info(f"Key created in AuthTool: {key_code} for {profile['username']} ({req.duration})")

    key = store.insert_key(
        user_id=profile["id"],
        key_code=key_code,
        duration=req.duration,
        package_ids=config.AUTHTOOL_PACKAGE_IDS,
        expired_at=utcnow() + reconciler.PENDING_WINDOW,
    )

    return {
        "success":           True,
        "key_code":          key_code,
        "status":            key["status"],
        "credits_remaining": remaining,
    }

@app.post("/keys/reset")
async def reset_key(req: KeyRequest, profile: dict = Depends(active_user)):
    key = owned_key(req.key_code, profile["id"])
    await authtool_client.reset_key(key["key_code"])
    store.update_key(key["id"], activate_count=0)
    log.info(f"Key reset: {key['key_code']}")
    return {"success": True}

@app.post("/keys/block")
async def block_key(req: KeyRequest, profile: dict = Depends(active_user)):
    key = owned_key(req.key_code, profile["id"])
    await authtool_client.change_status(key["key_code"], enabled=False)
    store.update_key(key["id"], status="blocked")
    log.info(f"Key blocked: {key['key_code']}")
    return {"success": True, "status": "blocked"}

@app.post("/keys/unblock")
async def unblock_key(req: KeyRequest, profile: dict = Depends(active_user)):
    key = owned_key(req.key_code, profile["id"])
    await authtool_client.change_status(key["key_code"], enabled=True)
    store.update_key(key["id"], status="active")
    log.info(f"Key unblocked: {key['key_code']}")
    return {"success": True, "status": "active"}

@app.post("/keys/delete")
async def delete_key(req: KeyRequest, profile: dict = Depends(active_user)):
    key = owned_key(req.key_code, profile["id"])
    await authtool_client.delete_key(key["key_code"])
    store.delete_key(key["id"])
    log.info(f"Key deleted: {key['key_code']}")
    return {"success": True}

@app.post("/keys/ban-device")
async def ban_device(req: BanDeviceRequest, profile: dict = Depends(active_user)):
    key = owned_key(req.key_code, profile["id"])
    if not req.udid.strip():
        raise ServiceError(ErrorKind.INVALID_REQUEST, "udid is required")
    await authtool_client.ban_device(key["key_code"], req.udid.strip())
    log.info(f"Device {req.udid} banned on key {key['key_code']}")
    return {"success": True}

@app.post("/keys/details")
async def key_details(req: KeyRequest, profile: dict = Depends(active_user)):
    key = owned_key(req.key_code, profile["id"])
    details = await authtool_client.get_key_details(key["key_code"])

    count = details["key"].get("activateCount")
    if isinstance(count, int) and count != key["activate_count"]:
        store.update_key(key["id"], activate_count=count, last_synced_at=utcnow())

    return {"key_code": key["key_code"], "status": key["status"], **details}

# ── Reconciliation ────────────────────────────────────────────────────────────
@app.post("/keys/sync")
async def sync_my_keys(profile: dict = Depends(active_user)):
    """Called by the dashboard on load and on its polling interval."""
    return await reconciler.sync_user_keys(profile["id"])

@app.post("/internal/reconcile", dependencies=[Depends(verify_internal)])
async def reconcile_everything():
    """Called by scheduler_worker for every user's keys."""
    return await reconciler.reconcile_all()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
