"""
reconciler.py — Keeps the local keys table in line with AuthTool.

The local row is a cache of the licensing API. A sweep looks each key up
and only ever deletes or updates:

- 404 from AuthTool            -> local row deleted
- found, activated, pending    -> promoted to active, activation count copied
- network error / other status -> row left exactly as it was

Rows synced within SYNC_STALENESS_SECONDS are skipped, so overlapping
sweeps (dashboard poll + cron) don't hammer the API for the same key.
"""

import asyncio
import logging
from datetime import timedelta

import authtool_client
import config
import store
from db import utcnow
from errors import ServiceError

log = logging.getLogger("reconciler")

PENDING_WINDOW = timedelta(hours=1)
MAX_CONCURRENT_LOOKUPS = 5

DELETED   = "deleted"
ACTIVATED = "activated"
EXPIRED   = "expired"
UNCHANGED = "unchanged"
SKIPPED   = "skipped"
ERROR     = "error"


def is_fresh(key: dict, now) -> bool:
    synced = key.get("last_synced_at")
    if not synced:
        return False
    return (now - synced).total_seconds() < config.SYNC_STALENESS_SECONDS


async def reconcile_key(key: dict, now) -> str:
    """Check one key against AuthTool and mirror the answer locally."""
    lookup = await authtool_client.lookup_key(key["key_code"])

    if lookup.state == authtool_client.UNKNOWN:
        return ERROR

    try:
        if lookup.state == authtool_client.MISSING:
            log.info(f"Key {key['key_code']} not found in AuthTool, deleting local row")
            store.delete_key(key["id"])
            return DELETED

        if key["status"] == "pending" and lookup.activate_count > 0:
            store.update_key(key["id"], status="active",
                             activate_count=lookup.activate_count, last_synced_at=now)
            log.info(f"Key {key['key_code']} activated ({lookup.activate_count})")
            return ACTIVATED

        store.update_key(key["id"], activate_count=lookup.activate_count, last_synced_at=now)
        return UNCHANGED
    except ServiceError as e:
        log.error(f"Could not mirror {key['key_code']}: {e.message}")
        return ERROR


async def expire_pending_key(key: dict, now) -> str:
    """A pending key past its window either activated or is dead."""
    lookup = await authtool_client.lookup_key(key["key_code"])

    if lookup.state == authtool_client.UNKNOWN:
        return ERROR

    try:
        if lookup.state == authtool_client.MISSING:
            store.delete_key(key["id"])
            return DELETED
        if lookup.activate_count > 0:
            store.update_key(key["id"], status="active",
                             activate_count=lookup.activate_count, last_synced_at=now)
            return ACTIVATED
        store.update_key(key["id"], status="deleted", last_synced_at=now)
        log.info(f"Marked key {key['key_code']} as deleted (expired pending)")
        return EXPIRED
    except ServiceError as e:
        log.error(f"Could not expire {key['key_code']}: {e.message}")
        return ERROR


async def _run(keys: list, check, now) -> dict:
    semaphore = asyncio.Semaphore(MAX_CONCURRENT_LOOKUPS)

    async def guarded(key):
        if is_fresh(key, now):
            return SKIPPED
        async with semaphore:
            return await check(key, now)

    outcomes = await asyncio.gather(*(guarded(k) for k in keys))
    summary = {"checked": 0, DELETED: 0, ACTIVATED: 0, EXPIRED: 0, SKIPPED: 0, "errors": 0}
    for outcome in outcomes:
        if outcome == SKIPPED:
            summary[SKIPPED] += 1
            continue
        summary["checked"] += 1
        if outcome == ERROR:
            summary["errors"] += 1
        elif outcome in summary:
            summary[outcome] += 1
    return summary


async def sync_user_keys(user_id: str) -> dict:
    keys = store.list_keys(user_id)
    summary = await _run(keys, reconcile_key, utcnow())
    log.info(f"Synced keys for {user_id}: {summary}")
    return summary


async def expire_pending_keys() -> dict:
    now = utcnow()
    keys = store.list_pending_keys_before(now - PENDING_WINDOW)
    # The window check overrides staleness: these keys must be decided now.
    summary = await _run([dict(k, last_synced_at=None) for k in keys], expire_pending_key, now)
    log.info(f"Pending key expiry: {summary}")
    return summary


async def reconcile_all() -> dict:
    sweep = await _run(store.list_all_keys(), reconcile_key, utcnow())
    log.info(f"Full sweep: {sweep}")
    pending = await expire_pending_keys()
    return {"sweep": sweep, "pending": pending}
