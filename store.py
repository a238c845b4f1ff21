"""
store.py — Every query the services run against Postgres.

Rows come back as plain dicts. Driver errors are rolled back and surfaced as
STORE_FAILURE with a generic message; the real error only goes to the log.
"""

import json
import logging
import psycopg2
import psycopg2.extras
from contextlib import contextmanager
from datetime import datetime

from db import get_db
from errors import ErrorKind, ServiceError

log = logging.getLogger("store")

PROFILE_COLUMNS = """
    id, email, password_hash, username, approval_status, credits,
    ban_until, ban_message, last_username_change, theme_colors,
    background_color, lightning_color, segment_color, totp_secret,
    sessions_revoked_at, created_at, updated_at
"""

KEY_COLUMNS = """
    id, user_id, key_code, duration, status, activate_count, activate_limit,
    package_ids, is_cleanable, expired_at, last_synced_at, created_at
"""

# Columns a caller may change through update_profile / update_key.
PROFILE_MUTABLE = {
    "username", "approval_status", "credits", "ban_until", "ban_message",
    "last_username_change", "theme_colors", "background_color",
    "lightning_color", "segment_color", "totp_secret", "password_hash",
    "sessions_revoked_at",
}
KEY_MUTABLE = {"status", "activate_count", "activate_limit", "expired_at", "last_synced_at"}


@contextmanager
def _cursor(action: str):
    """Yield (conn, dict-cursor); wrap driver errors as STORE_FAILURE."""
    try:
        with get_db() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                yield conn, cur
    except psycopg2.Error as e:
        log.error(f"{action} failed: {e}")
        raise ServiceError(ErrorKind.STORE_FAILURE, "Failed to update database")


def _one(cur):
    row = cur.fetchone()
    return dict(row) if row else None


def _all(cur):
    return [dict(r) for r in cur.fetchall()]


def _set_clause(fields: dict, allowed: set):
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Cannot update columns: {sorted(unknown)}")
    cols, values = [], []
    for name, value in fields.items():
        if name == "theme_colors" and value is not None:
            value = psycopg2.extras.Json(value)
        cols.append(f"{name} = %s")
        values.append(value)
    return ", ".join(cols), values


# ── Profiles & roles ──────────────────────────────────────────────────────────
def create_profile(user_id: str, email: str, password_hash: str, username: str) -> dict:
    with _cursor("create_profile") as (conn, cur):
        cur.execute(f"""
            INSERT INTO profiles (id, email, password_hash, username)
            VALUES (%s, %s, %s, %s)
            RETURNING {PROFILE_COLUMNS}
        """, (user_id, email, password_hash, username))
        profile = _one(cur)
        cur.execute(
            "INSERT INTO user_roles (user_id, role) VALUES (%s, 'user') ON CONFLICT DO NOTHING",
            (user_id,)
        )
        conn.commit()
    return profile

def get_profile(user_id: str):
    with _cursor("get_profile") as (conn, cur):
        cur.execute(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = %s", (user_id,))
        return _one(cur)

def get_profile_by_email(email: str):
    with _cursor("get_profile_by_email") as (conn, cur):
        cur.execute(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE LOWER(email) = LOWER(%s)", (email,))
        return _one(cur)

def get_profile_by_username(username: str):
    with _cursor("get_profile_by_username") as (conn, cur):
        cur.execute(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE username = %s", (username,))
        return _one(cur)

def list_profiles() -> list:
    with _cursor("list_profiles") as (conn, cur):
        cur.execute(f"SELECT {PROFILE_COLUMNS} FROM profiles ORDER BY created_at DESC")
        return _all(cur)

def update_profile(user_id: str, **fields):
    clause, values = _set_clause(fields, PROFILE_MUTABLE)
    with _cursor("update_profile") as (conn, cur):
        cur.execute(f"""
            UPDATE profiles SET {clause}, updated_at = NOW()
            WHERE id = %s
            RETURNING {PROFILE_COLUMNS}
        """, (*values, user_id))
        profile = _one(cur)
        conn.commit()
    return profile

def deduct_credits(user_id: str, amount: int):
    """Returns the new balance, or None when the balance is too low."""
    with _cursor("deduct_credits") as (conn, cur):
        cur.execute("""
            UPDATE profiles SET credits = credits - %s, updated_at = NOW()
            WHERE id = %s AND credits >= %s
            RETURNING credits
        """, (amount, user_id, amount))
        row = cur.fetchone()
        conn.commit()
    return row["credits"] if row else None

def refund_credits(user_id: str, amount: int) -> int:
    with _cursor("refund_credits") as (conn, cur):
        cur.execute("""
            UPDATE profiles SET credits = credits + %s, updated_at = NOW()
            WHERE id = %s RETURNING credits
        """, (amount, user_id))
        row = cur.fetchone()
        conn.commit()
    return row["credits"] if row else 0

def get_roles(user_id: str) -> set:
    with _cursor("get_roles") as (conn, cur):
        cur.execute("SELECT role FROM user_roles WHERE user_id = %s", (user_id,))
        return {r["role"] for r in cur.fetchall()}

def list_role_members(role: str) -> set:
    with _cursor("list_role_members") as (conn, cur):
        cur.execute("SELECT user_id FROM user_roles WHERE role = %s", (role,))
        return {r["user_id"] for r in cur.fetchall()}

def add_role(user_id: str, role: str):
    with _cursor("add_role") as (conn, cur):
        cur.execute(
            "INSERT INTO user_roles (user_id, role) VALUES (%s, %s) ON CONFLICT DO NOTHING",
            (user_id, role)
        )
        conn.commit()

def remove_role(user_id: str, role: str) -> bool:
    with _cursor("remove_role") as (conn, cur):
        cur.execute("DELETE FROM user_roles WHERE user_id = %s AND role = %s", (user_id, role))
        removed = cur.rowcount > 0
        conn.commit()
    return removed


# ── Keys ──────────────────────────────────────────────────────────────────────
def get_owned_key(key_code: str, user_id: str):
    with _cursor("get_owned_key") as (conn, cur):
        cur.execute(
            f"SELECT {KEY_COLUMNS} FROM keys WHERE key_code = %s AND user_id = %s",
            (key_code, user_id)
        )
        return _one(cur)

def insert_key(user_id: str, key_code: str, duration: str, package_ids: list,
               expired_at: datetime, status: str = "pending") -> dict:
    with _cursor("insert_key") as (conn, cur):
        cur.execute(f"""
            INSERT INTO keys (user_id, key_code, duration, package_ids, status, expired_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING {KEY_COLUMNS}
        """, (user_id, key_code, duration, package_ids, status, expired_at))
        key = _one(cur)
        conn.commit()
    return key

def update_key(key_id: int, **fields):
    clause, values = _set_clause(fields, KEY_MUTABLE)
    with _cursor("update_key") as (conn, cur):
        cur.execute(
            f"UPDATE keys SET {clause} WHERE id = %s RETURNING {KEY_COLUMNS}",
            (*values, key_id)
        )
        key = _one(cur)
        conn.commit()
    return key

def delete_key(key_id: int) -> bool:
    with _cursor("delete_key") as (conn, cur):
        cur.execute("DELETE FROM keys WHERE id = %s", (key_id,))
        deleted = cur.rowcount > 0
        conn.commit()
    return deleted

def list_keys(user_id: str) -> list:
    with _cursor("list_keys") as (conn, cur):
        cur.execute(
            f"SELECT {KEY_COLUMNS} FROM keys WHERE user_id = %s ORDER BY created_at DESC",
            (user_id,)
        )
        return _all(cur)

def list_all_keys() -> list:
    with _cursor("list_all_keys") as (conn, cur):
        cur.execute(f"SELECT {KEY_COLUMNS} FROM keys ORDER BY created_at ASC")
        return _all(cur)

def list_pending_keys_before(cutoff: datetime) -> list:
    with _cursor("list_pending_keys_before") as (conn, cur):
        cur.execute(
            f"SELECT {KEY_COLUMNS} FROM keys WHERE status = 'pending' AND created_at < %s",
            (cutoff,)
        )
        return _all(cur)


# ── Device sessions ───────────────────────────────────────────────────────────
DEVICE_COLUMNS = """
    id, user_id, device_fingerprint, device_info, ip_address, is_approved,
    approved_by, last_active, created_at
"""

def get_device_session(user_id: str, fingerprint: str):
    with _cursor("get_device_session") as (conn, cur):
        cur.execute(
            f"SELECT {DEVICE_COLUMNS} FROM device_sessions WHERE user_id = %s AND device_fingerprint = %s",
            (user_id, fingerprint)
        )
        return _one(cur)

def count_device_sessions(user_id: str) -> int:
    with _cursor("count_device_sessions") as (conn, cur):
        cur.execute("SELECT COUNT(*) AS n FROM device_sessions WHERE user_id = %s", (user_id,))
        return cur.fetchone()["n"]

def insert_device_session(user_id: str, fingerprint: str, device_info: dict,
                          ip_address: str, is_approved: bool) -> dict:
    with _cursor("insert_device_session") as (conn, cur):
        cur.execute(f"""
            INSERT INTO device_sessions
                (user_id, device_fingerprint, device_info, ip_address, is_approved)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {DEVICE_COLUMNS}
        """, (user_id, fingerprint, json.dumps(device_info), ip_address, is_approved))
        session = _one(cur)
        conn.commit()
    return session

def touch_device_session(session_id: int, ip_address: str):
    with _cursor("touch_device_session") as (conn, cur):
        cur.execute(
            "UPDATE device_sessions SET last_active = NOW(), ip_address = %s WHERE id = %s",
            (ip_address, session_id)
        )
        conn.commit()

def list_device_sessions() -> list:
    with _cursor("list_device_sessions") as (conn, cur):
        cur.execute("""
            SELECT d.id, d.user_id, d.device_fingerprint, d.device_info, d.ip_address,
                   d.is_approved, d.approved_by, d.last_active, d.created_at, p.username
            FROM device_sessions d LEFT JOIN profiles p ON p.id = d.user_id
            ORDER BY d.created_at DESC
        """)
        return _all(cur)

def approve_device_session(session_id: int, approved_by: str) -> bool:
    with _cursor("approve_device_session") as (conn, cur):
        cur.execute(
            "UPDATE device_sessions SET is_approved = TRUE, approved_by = %s WHERE id = %s",
            (approved_by, session_id)
        )
        updated = cur.rowcount > 0
        conn.commit()
    return updated

def block_device_session(session_id: int, blocked_by: str):
    """Keep the row but unapprove it, so the fingerprint stays known and refused."""
    with _cursor("block_device_session") as (conn, cur):
        cur.execute(f"""
            UPDATE device_sessions SET is_approved = FALSE, approved_by = %s
            WHERE id = %s RETURNING {DEVICE_COLUMNS}
        """, (blocked_by, session_id))
        session = _one(cur)
        conn.commit()
    return session


# ── Support chat ──────────────────────────────────────────────────────────────
def list_support_messages() -> list:
    with _cursor("list_support_messages") as (conn, cur):
        cur.execute("""
            SELECT id, user_id, username, message, image_url, video_url, is_admin, created_at
            FROM support_messages ORDER BY created_at ASC
        """)
        return _all(cur)

def insert_support_message(user_id: str, username: str, message, image_url,
                           video_url, is_admin: bool) -> dict:
    with _cursor("insert_support_message") as (conn, cur):
        cur.execute("""
            INSERT INTO support_messages (user_id, username, message, image_url, video_url, is_admin)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING id, user_id, username, message, image_url, video_url, is_admin, created_at
        """, (user_id, username, message, image_url, video_url, is_admin))
        row = _one(cur)
        conn.commit()
    return row

def mark_messages_read(user_id: str, message_ids: list):
    if not message_ids:
        return
    with _cursor("mark_messages_read") as (conn, cur):
        psycopg2.extras.execute_values(cur, """
            INSERT INTO message_read_receipts (message_id, user_id) VALUES %s
            ON CONFLICT (message_id, user_id) DO NOTHING
        """, [(mid, user_id) for mid in message_ids])
        conn.commit()

def list_read_receipts() -> list:
    with _cursor("list_read_receipts") as (conn, cur):
        cur.execute("SELECT message_id, user_id, read_at FROM message_read_receipts")
        return _all(cur)


# ── Private messages ──────────────────────────────────────────────────────────
def list_private_messages(user_id: str = None) -> list:
    with _cursor("list_private_messages") as (conn, cur):
        if user_id:
            cur.execute("""
                SELECT id, user_id, sender_name, message, image_url, video_url, is_read, created_at
                FROM private_messages WHERE user_id = %s ORDER BY created_at ASC
            """, (user_id,))
        else:
            cur.execute("""
                SELECT id, user_id, sender_name, message, image_url, video_url, is_read, created_at
                FROM private_messages ORDER BY created_at ASC
            """)
        return _all(cur)

def insert_private_message(user_id: str, sender_name: str, message, image_url=None,
                           video_url=None) -> dict:
    with _cursor("insert_private_message") as (conn, cur):
        cur.execute("""
            INSERT INTO private_messages (user_id, sender_name, message, image_url, video_url)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id, user_id, sender_name, message, image_url, video_url, is_read, created_at
        """, (user_id, sender_name, message, image_url, video_url))
        row = _one(cur)
        conn.commit()
    return row

def mark_private_messages_read(user_id: str) -> int:
    with _cursor("mark_private_messages_read") as (conn, cur):
        cur.execute(
            "UPDATE private_messages SET is_read = TRUE WHERE user_id = %s AND is_read = FALSE",
            (user_id,)
        )
        count = cur.rowcount
        conn.commit()
    return count


# ── User requests & action log ────────────────────────────────────────────────
REQUEST_COLUMNS = "id, user_id, username, request_type, key_code, udid, details, status, created_at"

def insert_user_request(user_id: str, username: str, request_type: str,
                        key_code=None, udid=None, details=None) -> dict:
    with _cursor("insert_user_request") as (conn, cur):
        cur.execute(f"""
            INSERT INTO user_requests (user_id, username, request_type, key_code, udid, details)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING {REQUEST_COLUMNS}
        """, (user_id, username, request_type, key_code, udid,
              json.dumps(details) if details is not None else None))
        row = _one(cur)
        conn.commit()
    return row

def list_user_requests(status: str = None) -> list:
    with _cursor("list_user_requests") as (conn, cur):
        if status:
            cur.execute(
                f"SELECT {REQUEST_COLUMNS} FROM user_requests WHERE status = %s ORDER BY created_at DESC",
                (status,)
            )
        else:
            cur.execute(f"SELECT {REQUEST_COLUMNS} FROM user_requests ORDER BY created_at DESC")
        return _all(cur)

def get_user_request(request_id: int):
    with _cursor("get_user_request") as (conn, cur):
        cur.execute(f"SELECT {REQUEST_COLUMNS} FROM user_requests WHERE id = %s", (request_id,))
        return _one(cur)

def complete_user_request(request_id: int):
    with _cursor("complete_user_request") as (conn, cur):
        cur.execute("UPDATE user_requests SET status = 'completed' WHERE id = %s", (request_id,))
        conn.commit()

def log_user_action(user_id: str, action_type: str, details: dict = None):
    with _cursor("log_user_action") as (conn, cur):
        cur.execute(
            "INSERT INTO user_actions (user_id, action_type, action_details) VALUES (%s, %s, %s)",
            (user_id, action_type, json.dumps(details or {}))
        )
        conn.commit()

def list_user_activity() -> list:
    """Per user: how many keys they hold and when they last did anything."""
    with _cursor("list_user_activity") as (conn, cur):
        cur.execute("""
            SELECT p.id AS user_id, p.username,
                   (SELECT COUNT(*) FROM keys k WHERE k.user_id = p.id) AS key_count,
                   (SELECT MAX(a.created_at) FROM user_actions a WHERE a.user_id = p.id) AS last_activity
            FROM profiles p
            ORDER BY last_activity DESC NULLS LAST, p.username
        """)
        return _all(cur)


# ── Weekly spins ──────────────────────────────────────────────────────────────
def get_last_spin(user_id: str):
    with _cursor("get_last_spin") as (conn, cur):
        cur.execute("""
            SELECT id, user_id, credits_won, spin_date FROM weekly_spins
            WHERE user_id = %s ORDER BY spin_date DESC LIMIT 1
        """, (user_id,))
        return _one(cur)

def record_spin(user_id: str, credits_won: int) -> int:
    """Insert the spin and add the reward in one transaction; returns the new balance."""
    with _cursor("record_spin") as (conn, cur):
        cur.execute(
            "INSERT INTO weekly_spins (user_id, credits_won) VALUES (%s, %s)",
            (user_id, credits_won)
        )
        cur.execute("""
            UPDATE profiles SET credits = credits + %s, updated_at = NOW()
            WHERE id = %s RETURNING credits
        """, (credits_won, user_id))
        row = cur.fetchone()
        conn.commit()
    return row["credits"] if row else 0
