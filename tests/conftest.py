import itertools
import sys
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))
import authtool_client
import config
import storage_client
import store
from db import utcnow


class FakeStore:
    """In-memory stand-in for the store module's functions."""

    def __init__(self):
        self.profiles = {}
        self.roles = {}
        self.keys = {}
        self.devices = {}
        self.support = {}
        self.receipts = set()
        self.private = {}
        self.requests = {}
        self.actions = []
        self.spins = []
        self._ids = itertools.count(1)

    # profiles & roles
    def create_profile(self, user_id, email, password_hash, username):
        now = utcnow()
        self.profiles[user_id] = {
            "id": user_id, "email": email, "password_hash": password_hash,
            "username": username, "approval_status": "pending", "credits": 0,
            "ban_until": None, "ban_message": None, "last_username_change": None,
            "theme_colors": None, "background_color": None, "lightning_color": None,
            "segment_color": None, "totp_secret": None, "sessions_revoked_at": None,
            "created_at": now, "updated_at": now,
        }
        self.roles[user_id] = {"user"}
        return dict(self.profiles[user_id])

    def get_profile(self, user_id):
        p = self.profiles.get(user_id)
        return dict(p) if p else None

    def get_profile_by_email(self, email):
        for p in self.profiles.values():
            if p["email"].lower() == email.lower():
                return dict(p)
        return None

    def get_profile_by_username(self, username):
        for p in self.profiles.values():
            if p["username"] == username:
                return dict(p)
        return None

    def list_profiles(self):
        return [dict(p) for p in self.profiles.values()]

    def update_profile(self, user_id, **fields):
        unknown = set(fields) - store.PROFILE_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        if user_id not in self.profiles:
            return None
        self.profiles[user_id].update(fields)
        return dict(self.profiles[user_id])

    def deduct_credits(self, user_id, amount):
        p = self.profiles[user_id]
        if p["credits"] < amount:
            return None
        p["credits"] -= amount
        return p["credits"]

    def refund_credits(self, user_id, amount):
        self.profiles[user_id]["credits"] += amount
        return self.profiles[user_id]["credits"]

    def get_roles(self, user_id):
        return set(self.roles.get(user_id, set()))

    def list_role_members(self, role):
        return {uid for uid, roles in self.roles.items() if role in roles}

    def add_role(self, user_id, role):
        self.roles.setdefault(user_id, set()).add(role)

    def remove_role(self, user_id, role):
        roles = self.roles.get(user_id, set())
        if role in roles:
            roles.discard(role)
            return True
        return False

    # keys
    def get_owned_key(self, key_code, user_id):
        for k in self.keys.values():
            if k["key_code"] == key_code and k["user_id"] == user_id:
                return dict(k)
        return None

    def insert_key(self, user_id, key_code, duration, package_ids, expired_at,
                   status="pending", created_at=None, last_synced_at=None, activate_count=0):
        key_id = next(self._ids)
        self.keys[key_id] = {
            "id": key_id, "user_id": user_id, "key_code": key_code, "duration": duration,
            "status": status, "activate_count": activate_count, "activate_limit": 1,
            "package_ids": package_ids, "is_cleanable": False, "expired_at": expired_at,
            "last_synced_at": last_synced_at, "created_at": created_at or utcnow(),
        }
        return dict(self.keys[key_id])

    def update_key(self, key_id, **fields):
        unknown = set(fields) - store.KEY_MUTABLE
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        if key_id not in self.keys:
            return None
        self.keys[key_id].update(fields)
        return dict(self.keys[key_id])

    def delete_key(self, key_id):
        return self.keys.pop(key_id, None) is not None

    def list_keys(self, user_id):
        return [dict(k) for k in self.keys.values() if k["user_id"] == user_id]

    def list_all_keys(self):
        return [dict(k) for k in self.keys.values()]

    def list_pending_keys_before(self, cutoff):
        return [dict(k) for k in self.keys.values()
                if k["status"] == "pending" and k["created_at"] < cutoff]

    # device sessions
    def get_device_session(self, user_id, fingerprint):
        for d in self.devices.values():
            if d["user_id"] == user_id and d["device_fingerprint"] == fingerprint:
                return dict(d)
        return None

    def count_device_sessions(self, user_id):
        return sum(1 for d in self.devices.values() if d["user_id"] == user_id)

    def insert_device_session(self, user_id, fingerprint, device_info, ip_address, is_approved):
        session_id = next(self._ids)
        self.devices[session_id] = {
            "id": session_id, "user_id": user_id, "device_fingerprint": fingerprint,
            "device_info": device_info, "ip_address": ip_address,
            "is_approved": is_approved, "approved_by": None,
            "last_active": utcnow(), "created_at": utcnow(),
        }
        return dict(self.devices[session_id])

    def touch_device_session(self, session_id, ip_address):
        self.devices[session_id].update(ip_address=ip_address, last_active=utcnow())

    def list_device_sessions(self):
        return [dict(d, username=self.profiles.get(d["user_id"], {}).get("username"))
                for d in self.devices.values()]

    def approve_device_session(self, session_id, approved_by):
        if session_id not in self.devices:
            return False
        self.devices[session_id].update(is_approved=True, approved_by=approved_by)
        return True

    def block_device_session(self, session_id, blocked_by):
        if session_id not in self.devices:
            return None
        self.devices[session_id].update(is_approved=False, approved_by=blocked_by)
        return dict(self.devices[session_id])

    # support chat
    def list_support_messages(self):
        return [dict(m) for m in self.support.values()]

    def insert_support_message(self, user_id, username, message, image_url, video_url, is_admin):
        message_id = next(self._ids)
        self.support[message_id] = {
            "id": message_id, "user_id": user_id, "username": username, "message": message,
            "image_url": image_url, "video_url": video_url, "is_admin": is_admin,
            "created_at": utcnow(),
        }
        return dict(self.support[message_id])

    def mark_messages_read(self, user_id, message_ids):
        for mid in message_ids:
            self.receipts.add((mid, user_id))

    def list_read_receipts(self):
        return [{"message_id": mid, "user_id": uid, "read_at": None}
                for mid, uid in sorted(self.receipts)]

    # private messages
    def list_private_messages(self, user_id=None):
        return [dict(m) for m in self.private.values()
                if user_id is None or m["user_id"] == user_id]

    def insert_private_message(self, user_id, sender_name, message, image_url=None, video_url=None):
        message_id = next(self._ids)
        self.private[message_id] = {
            "id": message_id, "user_id": user_id, "sender_name": sender_name,
            "message": message, "image_url": image_url, "video_url": video_url,
            "is_read": False, "created_at": utcnow(),
        }
        return dict(self.private[message_id])

    def mark_private_messages_read(self, user_id):
        count = 0
        for m in self.private.values():
            if m["user_id"] == user_id and not m["is_read"]:
                m["is_read"] = True
                count += 1
        return count

    # requests & action log
    def insert_user_request(self, user_id, username, request_type, key_code=None,
                            udid=None, details=None):
        request_id = next(self._ids)
        self.requests[request_id] = {
            "id": request_id, "user_id": user_id, "username": username,
            "request_type": request_type, "key_code": key_code, "udid": udid,
            "details": details, "status": "pending", "created_at": utcnow(),
        }
        return dict(self.requests[request_id])

    def list_user_requests(self, status=None):
        return [dict(r) for r in self.requests.values() if status is None or r["status"] == status]

    def get_user_request(self, request_id):
        r = self.requests.get(request_id)
        return dict(r) if r else None

    def complete_user_request(self, request_id):
        self.requests[request_id]["status"] = "completed"

    def log_user_action(self, user_id, action_type, details=None):
        self.actions.append({"user_id": user_id, "action_type": action_type,
                             "action_details": details or {}, "created_at": utcnow()})

    def list_user_activity(self):
        rows = []
        for p in self.profiles.values():
            stamps = [a["created_at"] for a in self.actions if a["user_id"] == p["id"]]
            rows.append({
                "user_id": p["id"], "username": p["username"],
                "key_count": sum(1 for k in self.keys.values() if k["user_id"] == p["id"]),
                "last_activity": max(stamps) if stamps else None,
            })
        return rows

    # weekly spins
    def get_last_spin(self, user_id):
        spins = [s for s in self.spins if s["user_id"] == user_id]
        return dict(spins[-1]) if spins else None

    def record_spin(self, user_id, credits_won):
        self.spins.append({"user_id": user_id, "credits_won": credits_won, "spin_date": utcnow()})
        self.profiles[user_id]["credits"] += credits_won
        return self.profiles[user_id]["credits"]


STORE_FUNCTIONS = [
    name for name in dir(FakeStore)
    if not name.startswith("_") and callable(getattr(FakeStore, name))
]


@pytest.fixture
def fake_store(monkeypatch):
    fake = FakeStore()
    for name in STORE_FUNCTIONS:
        monkeypatch.setattr(store, name, getattr(fake, name))
    return fake


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    monkeypatch.setattr(config, "JWT_SECRET", "test-secret")
    monkeypatch.setattr(config, "INTERNAL_API_KEY", "internal-test-key")
    monkeypatch.setattr(config, "AUTHTOOL_API_KEY", "authtool-test-key")
    monkeypatch.setattr(config, "AUTHTOOL_API_URL", "https://authtool.test/public/v1")
    monkeypatch.setattr(config, "AUTHTOOL_PACKAGE_IDS", [3915])
    monkeypatch.setattr(config, "STORAGE_URL", "https://storage.test")
    monkeypatch.setattr(config, "STORAGE_SERVICE_KEY", "storage-test-key")
    monkeypatch.setattr(config, "SYNC_STALENESS_SECONDS", 15)
    monkeypatch.setattr(authtool_client, "transport", None)
    monkeypatch.setattr(storage_client, "transport", None)


class AuthToolStub:
    """Records requests and answers from a handler(request) -> httpx.Response."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return self.handler(request)

    @property
    def paths(self):
        return [(r.method, r.url.path) for r in self.requests]


@pytest.fixture
def authtool(monkeypatch):
    """authtool(handler) installs a mock transport and returns the recorder."""
    def install(handler):
        stub = AuthToolStub(handler)
        monkeypatch.setattr(authtool_client, "transport", httpx.MockTransport(stub))
        return stub
    return install


@pytest.fixture
def make_user(fake_store):
    """Create a profile and return (profile, auth headers).

    With device=True the user also gets an approved device and the headers
    carry its X-Device-Token, as a browser past /devices/track would.
    """
    from sessions import issue_device_token, issue_session_token

    def make(username="reseller", credits=0, approval_status="approved", roles=(), device=True):
        user_id = f"user-{username}"
        fake_store.create_profile(user_id, f"{username}@example.com", "x", username)
        fake_store.update_profile(user_id, credits=credits, approval_status=approval_status)
        for role in roles:
            fake_store.add_role(user_id, role)
        headers = {"Authorization": f"Bearer {issue_session_token(user_id)}"}
        if device:
            fake_store.insert_device_session(user_id, f"fp-{username}", {}, "127.0.0.1", True)
            headers["X-Device-Token"] = issue_device_token(user_id, f"fp-{username}")
        return fake_store.get_profile(user_id), headers
    return make
