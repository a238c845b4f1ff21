"""
storage_client.py — Object storage for chat attachments.

Two public buckets: support-images and support-videos. Uploads go through
the storage REST API with the service key; readers get a public URL.
"""

import logging
import secrets

import httpx

import config
from errors import ErrorKind, ServiceError

log = logging.getLogger("storage")

transport = None

BUCKETS = {"image": "support-images", "video": "support-videos"}
MAX_BYTES = {"image": 10 * 1024 * 1024, "video": 50 * 1024 * 1024}


def public_url(bucket: str, path: str) -> str:
    return f"{config.STORAGE_URL}/storage/v1/object/public/{bucket}/{path}"


def object_path(owner_id: str, filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    return f"{owner_id}/{secrets.token_hex(8)}.{ext}"


async def upload(kind: str, owner_id: str, filename: str, content: bytes,
                 content_type: str) -> str:
    """Store the file and return its public URL."""
    bucket = BUCKETS.get(kind)
    if not bucket:
        raise ServiceError(ErrorKind.INVALID_REQUEST, f"Unsupported media kind: {kind}")
    if len(content) > MAX_BYTES[kind]:
        raise ServiceError(ErrorKind.INVALID_REQUEST, f"{kind.capitalize()} is too large")
    if not config.STORAGE_URL or not config.STORAGE_SERVICE_KEY:
        raise ServiceError(ErrorKind.MISCONFIGURED, "Storage not configured")

    path = object_path(owner_id, filename)
    async with httpx.AsyncClient(timeout=60, transport=transport) as client:
        try:
            resp = await client.post(
                f"{config.STORAGE_URL}/storage/v1/object/{bucket}/{path}",
                content=content,
                headers={
                    "Authorization": f"Bearer {config.STORAGE_SERVICE_KEY}",
                    "Content-Type":  content_type or "application/octet-stream",
                },
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            log.error(f"Storage returned {e.response.status_code}: {e.response.text}")
            raise ServiceError(ErrorKind.EXTERNAL_FAILURE, f"Failed to upload {kind}")
        except httpx.HTTPError as e:
            log.error(f"Failed to call storage: {e}")
            raise ServiceError(ErrorKind.EXTERNAL_FAILURE, f"Failed to upload {kind}")

    log.info(f"Uploaded {kind} to {bucket}/{path}")
    return public_url(bucket, path)
