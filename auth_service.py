"""
auth_service.py — The Front Door
=================================
Handles:
- Sign-up (new profiles start pending approval, zero credits)
- Sign-in with password and optional TOTP second factor
- Session token issuance and self sign-out
- Password change and TOTP enrollment
"""

import uuid
import logging

import bcrypt
import pyotp
from fastapi import FastAPI, Depends
from pydantic import BaseModel

import store
from db import init_db_if_configured
from errors import ErrorKind, ServiceError, install_error_handler
from sessions import current_user, issue_session_token, revoke_sessions
from validators import validate_password, validate_username

logging.basicConfig(level=logging.INFO, format="%(asctime)s [AUTH] %(levelname)s %(message)s")
log = logging.getLogger("auth")

app = FastAPI(title="Reseller Auth Service")
install_error_handler(app)

init_db_if_configured()

TOTP_ISSUER = "Sonic Reseller"


# ── Helpers ───────────────────────────────────────────────────────────────────
def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


# ── Models ────────────────────────────────────────────────────────────────────
class SignUpRequest(BaseModel):
    email:    str
    password: str
    username: str

class SignInRequest(BaseModel):
    email:     str
    password:  str
    totp_code: str = ""

class PasswordRequest(BaseModel):
    new_password: str

class TotpVerifyRequest(BaseModel):
    secret: str
    code:   str


# ── ENDPOINTS ─────────────────────────────────────────────────────────────────
@app.get("/health")
async def health():
    return {"status": "healthy", "service": "auth"}

@app.post("/auth/signup")
def sign_up(req: SignUpRequest):
    email = req.email.strip().lower()
    if "@" not in email:
        raise ServiceError(ErrorKind.INVALID_REQUEST, "Invalid email address")
    validate_username(req.username)
    validate_password(req.password)

    if store.get_profile_by_email(email):
        raise ServiceError(ErrorKind.INVALID_REQUEST, "An account with this email already exists")
    if store.get_profile_by_username(req.username):
        raise ServiceError(ErrorKind.INVALID_REQUEST, "Username is already taken")

    user_id = str(uuid.uuid4())
    profile = store.create_profile(user_id, email, hash_password(req.password), req.username)
    log.info(f"New account {req.username} ({email}) awaiting approval")

    return {
        "user_id":         profile["id"],
        "username":        profile["username"],
        "approval_status": profile["approval_status"],
        "token":           issue_session_token(profile["id"]),
    }

@app.post("/auth/signin")
def sign_in(req: SignInRequest):
    profile = store.get_profile_by_email(req.email.strip().lower())
    if not profile or not check_password(req.password, profile["password_hash"]):
        log.warning(f"Failed sign-in for {req.email}")
        raise ServiceError(ErrorKind.UNAUTHORIZED, "Invalid email or password")

    if profile.get("totp_secret"):
        if not req.totp_code:
            raise ServiceError(ErrorKind.UNAUTHORIZED, "Verification code required")
        if not pyotp.TOTP(profile["totp_secret"]).verify(req.totp_code, valid_window=1):
            log.warning(f"Bad TOTP code for {profile['username']}")
            raise ServiceError(ErrorKind.UNAUTHORIZED, "Invalid verification code")

    return {
        "token":           issue_session_token(profile["id"]),
        "user_id":         profile["id"],
        "username":        profile["username"],
        "approval_status": profile["approval_status"],
    }

@app.post("/auth/signout")
def sign_out(profile: dict = Depends(current_user)):
    """Ends every session of the caller, this one included."""
    revoke_sessions(profile["id"])
    return {"status": "signed_out"}

@app.post("/auth/password")
def change_password(req: PasswordRequest, profile: dict = Depends(current_user)):
    validate_password(req.new_password)
    store.update_profile(profile["id"], password_hash=hash_password(req.new_password))
    log.info(f"Password changed for {profile['username']}")
    return {"status": "updated"}

@app.post("/auth/totp/enroll")
def enroll_totp(profile: dict = Depends(current_user)):
    """Hands out a fresh secret. Nothing is stored until /auth/totp/verify."""
    secret = pyotp.random_base32()
    uri = pyotp.TOTP(secret).provisioning_uri(name=profile["email"], issuer_name=TOTP_ISSUER)
    return {"secret": secret, "provisioning_uri": uri}

@app.post("/auth/totp/verify")
def verify_totp(req: TotpVerifyRequest, profile: dict = Depends(current_user)):
    if not pyotp.TOTP(req.secret).verify(req.code, valid_window=1):
        raise ServiceError(ErrorKind.INVALID_REQUEST, "Invalid verification code")
    store.update_profile(profile["id"], totp_secret=req.secret)
    log.info(f"TOTP enabled for {profile['username']}")
    return {"status": "enabled"}

@app.delete("/auth/totp")
def disable_totp(profile: dict = Depends(current_user)):
    store.update_profile(profile["id"], totp_secret=None)
    return {"status": "disabled"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
