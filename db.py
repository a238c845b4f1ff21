"""
db.py — Connection pool and schema for the hosted Postgres store.
"""

import logging
import psycopg2
import psycopg2.pool
from contextlib import contextmanager
from datetime import datetime, timezone

import config

log = logging.getLogger("db")


def utcnow() -> datetime:
    """Naive UTC, matching the TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

# ── Connection pool ───────────────────────────────────────────────────────────
db_pool = None

def get_pool():
    global db_pool
    if db_pool is None:
        db_pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=1, maxconn=10, dsn=config.DATABASE_URL
        )
        log.info("Database connection pool created (1-10 connections)")
    return db_pool

@contextmanager
def get_db():
    """Borrow a pooled connection; rolls back anything left uncommitted."""
    pool = get_pool()
    conn = pool.getconn()
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


# ── Schema ────────────────────────────────────────────────────────────────────
SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id                   TEXT PRIMARY KEY,
        email                TEXT UNIQUE NOT NULL,
        password_hash        TEXT NOT NULL,
        username             TEXT UNIQUE NOT NULL,
        approval_status      TEXT NOT NULL DEFAULT 'pending',
        credits              INTEGER NOT NULL DEFAULT 0 CHECK (credits >= 0),
        ban_until            TIMESTAMP,
        ban_message          TEXT,
        last_username_change TIMESTAMP,
        theme_colors         JSONB,
        background_color     TEXT,
        lightning_color      TEXT,
        segment_color        TEXT,
        totp_secret          TEXT,
        sessions_revoked_at  TIMESTAMP,
        created_at           TIMESTAMP DEFAULT NOW(),
        updated_at           TIMESTAMP DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_roles (
        id      SERIAL PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES profiles(id),
        role    TEXT NOT NULL,
        UNIQUE (user_id, role)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS keys (
        id             SERIAL PRIMARY KEY,
        user_id        TEXT NOT NULL REFERENCES profiles(id),
        key_code       TEXT UNIQUE NOT NULL,
        duration       TEXT NOT NULL,
        status         TEXT NOT NULL DEFAULT 'pending',
        activate_count INTEGER NOT NULL DEFAULT 0,
        activate_limit INTEGER NOT NULL DEFAULT 1,
        package_ids    INTEGER[] NOT NULL DEFAULT '{}',
        is_cleanable   BOOLEAN NOT NULL DEFAULT FALSE,
        expired_at     TIMESTAMP,
        last_synced_at TIMESTAMP,
        created_at     TIMESTAMP DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS device_sessions (
        id                 SERIAL PRIMARY KEY,
        user_id            TEXT NOT NULL REFERENCES profiles(id),
        device_fingerprint TEXT NOT NULL,
        device_info        JSONB DEFAULT '{}',
        ip_address         TEXT,
        is_approved        BOOLEAN NOT NULL DEFAULT FALSE,
        approved_by        TEXT,
        last_active        TIMESTAMP DEFAULT NOW(),
        created_at         TIMESTAMP DEFAULT NOW(),
        UNIQUE (user_id, device_fingerprint)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS support_messages (
        id         SERIAL PRIMARY KEY,
        user_id    TEXT NOT NULL,
        username   TEXT,
        message    TEXT,
        image_url  TEXT,
        video_url  TEXT,
        is_admin   BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_read_receipts (
        id         SERIAL PRIMARY KEY,
        message_id INTEGER NOT NULL REFERENCES support_messages(id) ON DELETE CASCADE,
        user_id    TEXT NOT NULL,
        read_at    TIMESTAMP DEFAULT NOW(),
        UNIQUE (message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS private_messages (
        id          SERIAL PRIMARY KEY,
        user_id     TEXT NOT NULL,
        sender_name TEXT NOT NULL DEFAULT 'SonicBot',
        message     TEXT,
        image_url   TEXT,
        video_url   TEXT,
        is_read     BOOLEAN NOT NULL DEFAULT FALSE,
        created_at  TIMESTAMP DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_requests (
        id           SERIAL PRIMARY KEY,
        user_id      TEXT NOT NULL,
        username     TEXT NOT NULL,
        request_type TEXT NOT NULL,
        key_code     TEXT,
        udid         TEXT,
        details      JSONB,
        status       TEXT NOT NULL DEFAULT 'pending',
        created_at   TIMESTAMP DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_actions (
        id             SERIAL PRIMARY KEY,
        user_id        TEXT NOT NULL,
        action_type    TEXT NOT NULL,
        action_details JSONB,
        created_at     TIMESTAMP DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS weekly_spins (
        id          SERIAL PRIMARY KEY,
        user_id     TEXT NOT NULL,
        credits_won INTEGER NOT NULL DEFAULT 0,
        spin_date   TIMESTAMP DEFAULT NOW()
    )
    """,
]

def init_db():
    """Create all required tables."""
    with get_db() as conn:
        with conn.cursor() as cur:
            for statement in SCHEMA:
                cur.execute(statement)
        conn.commit()
    log.info("Database initialized.")

def init_db_if_configured():
    if not config.DATABASE_URL:
        return
    try:
        init_db()
    except Exception as e:
        log.warning(f"DB Init: {e}")
