"""Proof-image storage for spiffs.

Uploads go to the Supabase Storage bucket when Supabase is configured, and to
a local directory served under /uploads otherwise. Either way the caller gets
back a public URL to store on the Spiff row.
"""

import logging
import os
import re
import secrets

import httpx

from .auth import SUPABASE_ANON_KEY, SUPABASE_ENABLED, SUPABASE_URL, get_http_client

logger = logging.getLogger("storage")

STORAGE_BUCKET = os.environ.get("STORAGE_BUCKET", "sales-documents")
SPIFF_IMAGE_PREFIX = "spiff-images"
_EXT_RE = re.compile(r"[a-z0-9]{1,8}")
UPLOAD_DIR = os.environ.get("UPLOAD_DIR", "/tmp/commission-uploads")
LOCAL_URL_PREFIX = "/uploads"

MAX_UPLOAD_BYTES = 5 * 1024 * 1024


class StorageError(Exception):
    pass


def spiff_image_path(filename: str) -> str:
    """Random object path under spiff-images/, keeping the uploaded file's extension."""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in (filename or "") else ""
    if not _EXT_RE.fullmatch(ext):
        ext = "bin"
    return f"{SPIFF_IMAGE_PREFIX}/{secrets.token_hex(16)}.{ext}"


def public_url(path: str) -> str:
    if SUPABASE_ENABLED:
        return f"{SUPABASE_URL}/storage/v1/object/public/{STORAGE_BUCKET}/{path}"
    return f"{LOCAL_URL_PREFIX}/{path}"


async def upload(path: str, content: bytes, content_type: str = "application/octet-stream") -> str:
    """Store `content` at `path` and return its public URL."""
    if len(content) > MAX_UPLOAD_BYTES:
        raise StorageError("Image is too large (max 5 MB)")

    if SUPABASE_ENABLED:
        await _upload_supabase(path, content, content_type)
    else:
        _upload_local(path, content)
    return public_url(path)


async def _upload_supabase(path: str, content: bytes, content_type: str) -> None:
    try:
        r = await get_http_client().post(
            f"{SUPABASE_URL}/storage/v1/object/{STORAGE_BUCKET}/{path}",
            headers={
                "apikey": SUPABASE_ANON_KEY,
                "Authorization": f"Bearer {SUPABASE_ANON_KEY}",
                "Content-Type": content_type,
            },
            content=content,
        )
    except httpx.HTTPError as e:
        logger.warning(f"Storage upload to {path} failed: {e}")
        raise StorageError("Error uploading image") from e
    if r.status_code not in (200, 201):
        logger.warning(f"Storage upload to {path} returned {r.status_code}: {r.text[:200]}")
        raise StorageError("Error uploading image")


def _upload_local(path: str, content: bytes) -> None:
    dest = os.path.join(UPLOAD_DIR, path)
    os.makedirs(os.path.dirname(dest), exist_ok=True)
    with open(dest, "wb") as fh:
        fh.write(content)
    logger.info(f"Stored upload locally at {dest}")
