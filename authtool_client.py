"""
authtool_client.py — External licensing API (AuthTool, public v1)
==================================================================
One async call per key action. Contract pinned here:

    POST   /key/single-activate       create, data = [key_code]
    GET    /key/{code}                lookup, data.key.activateCount
    GET    /key/{code}/detail         details, data.key + data.devices
    PATCH  /key/{code}/change-status  {status: 0 blocked | 1 enabled}
    POST   /key/{code}/reset          clear activations
    POST   /key/{code}/ban-device     {udid}
    DELETE /key/{code}

A call fails when the HTTP status is not 2xx or the body carries
status "error"/"failed" or success=false.
"""

import logging
from dataclasses import dataclass, field

import httpx

import config
from errors import ErrorKind, ServiceError

log = logging.getLogger("authtool")

# Tests swap this for httpx.MockTransport.
transport = None

TIMEOUT = 15

FOUND   = "found"
MISSING = "missing"
UNKNOWN = "unknown"


@dataclass
class KeyLookup:
    state: str                       # FOUND | MISSING | UNKNOWN
    activate_count: int = 0
    raw: dict = field(default_factory=dict)


def _client() -> httpx.AsyncClient:
    if not config.AUTHTOOL_API_KEY:
        log.error("AUTHTOOL_API_KEY not configured")
        raise ServiceError(ErrorKind.MISCONFIGURED, "AuthTool API key not configured")
    return httpx.AsyncClient(
        base_url=config.AUTHTOOL_API_URL,
        headers={"X-API-Key": config.AUTHTOOL_API_KEY},
        timeout=TIMEOUT,
        transport=transport,
    )


def _json(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"data": body}


def _embedded_failure(body: dict) -> bool:
    if body.get("success") is False:
        return True
    return str(body.get("status", "")).lower() in ("error", "failed", "fail")


def _check(resp: httpx.Response, action: str) -> dict:
    body = _json(resp)
    if resp.is_success and not _embedded_failure(body):
        return body
    message = body.get("message") or body.get("error") or f"Failed to {action} key"
    log.error(f"AuthTool {action} failed ({resp.status_code}): {resp.text[:300]}")
    raise ServiceError(ErrorKind.EXTERNAL_FAILURE, str(message))


async def _call(method: str, path: str, action: str, **kwargs) -> dict:
    async with _client() as client:
        try:
            resp = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            log.error(f"AuthTool {action} network error: {e}")
            raise ServiceError(ErrorKind.EXTERNAL_FAILURE, f"Failed to {action} key")
    return _check(resp, action)


# ── Key actions ───────────────────────────────────────────────────────────────
async def create_key(days: int, package_ids: list) -> str:
    body = await _call("POST", "/key/single-activate", "create", json={
        "quantity":   1,
        "packageIds": package_ids,
        "duration":   days,
        "unit":       "day",
    })
    data = body.get("data")
    if not isinstance(data, list) or not data:
        log.error(f"AuthTool create returned no key: {body}")
        raise ServiceError(ErrorKind.EXTERNAL_FAILURE, "Failed to create key")
    return str(data[0])

async def reset_key(key_code: str) -> dict:
    return await _call("POST", f"/key/{key_code}/reset", "reset")

async def change_status(key_code: str, enabled: bool) -> dict:
    action = "unblock" if enabled else "block"
    return await _call("PATCH", f"/key/{key_code}/change-status", action,
                       json={"status": 1 if enabled else 0})

async def delete_key(key_code: str) -> dict:
    return await _call("DELETE", f"/key/{key_code}", "delete")

async def ban_device(key_code: str, udid: str) -> dict:
    return await _call("POST", f"/key/{key_code}/ban-device", "ban device for",
                       json={"udid": udid})

async def get_key_details(key_code: str) -> dict:
    body = await _call("GET", f"/key/{key_code}/detail", "fetch details for")
    data = body.get("data") or {}
    return {
        "key":     data.get("key") or {},
        "devices": data.get("devices") or [],
    }


# ── Reconciliation lookup ─────────────────────────────────────────────────────
async def lookup_key(key_code: str) -> KeyLookup:
    """Read-only check. Never raises for remote trouble: a 404 is MISSING,
    anything else that isn't a clean 2xx is UNKNOWN."""
    async with _client() as client:
        try:
            resp = await client.get(f"/key/{key_code}")
        except httpx.HTTPError as e:
            log.warning(f"Lookup {key_code} network error: {e}")
            return KeyLookup(UNKNOWN)

    if resp.status_code == 404:
        return KeyLookup(MISSING)
    if not resp.is_success:
        log.warning(f"Lookup {key_code} returned {resp.status_code}")
        return KeyLookup(UNKNOWN)

    body = _json(resp)
    if _embedded_failure(body):
        log.warning(f"Lookup {key_code} reported failure: {body.get('message')}")
        return KeyLookup(UNKNOWN)
    key = (body.get("data") or {}).get("key") or {}
    try:
        count = int(key.get("activateCount") or 0)
    except (TypeError, ValueError):
        count = 0
    return KeyLookup(FOUND, activate_count=count, raw=body)
