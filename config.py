"""
config.py — Shared Environment Settings
=======================================
Every service reads its settings from here so the env var names live in
one place. Values come from the process environment (or a local .env).
"""

import os
from dotenv import load_dotenv

load_dotenv()


def normalize_url(raw: str, default: str) -> str:
    if not raw: return default
    raw = raw.strip().rstrip("/")
    if raw.startswith("http://") or raw.startswith("https://"):
        return raw
    return f"http://{raw}:10000"


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


# ── Database ──────────────────────────────────────────────────────────────────
DATABASE_URL       = os.getenv("DATABASE_URL")

# ── Sessions ──────────────────────────────────────────────────────────────────
JWT_SECRET         = os.getenv("JWT_SECRET", "")
JWT_EXPIRY_HOURS   = _int_env("JWT_EXPIRY_HOURS", 24)
INTERNAL_API_KEY   = os.getenv("INTERNAL_API_KEY")

# ── External licensing API (AuthTool) ─────────────────────────────────────────
AUTHTOOL_API_URL   = normalize_url(os.getenv("AUTHTOOL_API_URL", ""), "https://api.authtool.app/public/v1")
AUTHTOOL_API_KEY   = os.getenv("AUTHTOOL_API_KEY")       # never sent to the browser
AUTHTOOL_PACKAGE_IDS = [
    int(p) for p in os.getenv("AUTHTOOL_PACKAGE_IDS", "3915").split(",") if p.strip()
]

# ── Object storage ────────────────────────────────────────────────────────────
STORAGE_URL        = os.getenv("STORAGE_URL", "").rstrip("/")
STORAGE_SERVICE_KEY = os.getenv("STORAGE_SERVICE_KEY", "")

# ── Reconciliation ────────────────────────────────────────────────────────────
SYNC_STALENESS_SECONDS     = _int_env("SYNC_STALENESS_SECONDS", 15)
RECONCILE_INTERVAL_SECONDS = _int_env("RECONCILE_INTERVAL_SECONDS", 300)
RECONCILER_SERVICE_URL     = normalize_url(os.getenv("RECONCILER_SERVICE_URL", ""), "http://reseller-keys:10000")
