"""
auth.py: authentication layer for the sales dashboard.

Strategy:
  - PRIMARY: Supabase Auth (email/password) via the Supabase REST API.
    When SUPABASE_URL + SUPABASE_ANON_KEY are set, sign-up / sign-in /
    sign-out go through Supabase and the user is mirrored into our local
    `users` table keyed by supabase_id.

  - FALLBACK: local username/password (pbkdf2_hmac) when the Supabase env
    vars are absent.

Sessions:
  - Stored in the `user_sessions` table, token in the `ct_session` cookie.
  - TTL: 30 days (remember me) or 24 hours (session only).
  - Small in-memory cache (TTL=30s) in front of the session lookup.
"""

import hashlib
import logging
import os
import secrets
import time
from datetime import datetime, timedelta, timezone

def _utcnow() -> datetime:
    """Naive UTC now; the session columns are TIMESTAMP, not TIMESTAMPTZ."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

import httpx
from fastapi import Request
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import User, UserSession

logger = logging.getLogger("auth")

# ── Supabase config ────────────────────────────────────────────────────────────
SUPABASE_URL = os.environ.get("SUPABASE_URL", "").rstrip("/")
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY", "")
SUPABASE_AUTH_URL = f"{SUPABASE_URL}/auth/v1" if SUPABASE_URL else ""
SUPABASE_REST_URL = f"{SUPABASE_URL}/rest/v1" if SUPABASE_URL else ""
SUPABASE_ENABLED = bool(SUPABASE_URL and SUPABASE_ANON_KEY)

SESSION_COOKIE = "ct_session"
SESSION_TTL_REMEMBER = timedelta(days=30)
SESSION_TTL_SHORT = timedelta(hours=24)

# ── Shared HTTP client (module-level, keep-alive across requests) ──
_http_client: httpx.AsyncClient | None = None

def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=10,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
    return _http_client

async def close_http_client() -> None:
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None

# ── In-memory session cache ────────────────────────────────────────────────────
# token -> (user_id, expires_monotonic). A revoked session stays valid for at
# most _SESSION_CACHE_TTL seconds on other workers.
_SESSION_CACHE: dict[str, tuple[int, float]] = {}
_SESSION_CACHE_TTL = 30.0  # seconds

def _cache_get(token: str) -> int | None:
    entry = _SESSION_CACHE.get(token)
    if entry and time.monotonic() < entry[1]:
        return entry[0]
    if entry:
        del _SESSION_CACHE[token]
    return None

def _cache_set(token: str, user_id: int) -> None:
    if len(_SESSION_CACHE) > 500:
        cutoff = time.monotonic()
        expired = [k for k, v in _SESSION_CACHE.items() if v[1] < cutoff]
        for k in expired:
            del _SESSION_CACHE[k]
    _SESSION_CACHE[token] = (user_id, time.monotonic() + _SESSION_CACHE_TTL)

def _cache_delete(token: str) -> None:
    _SESSION_CACHE.pop(token, None)

# ── Password hashing (legacy fallback) ────────────────────────────────────────
def hash_password(password: str) -> tuple[str, str]:
    salt = secrets.token_hex(16)
    h = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 100_000)
    return h.hex(), salt

def verify_password(password: str, stored_hash: str, stored_salt: str) -> bool:
    if not stored_hash or not stored_salt:
        return False
    h = hashlib.pbkdf2_hmac("sha256", password.encode(), stored_salt.encode(), 100_000)
    return secrets.compare_digest(h.hex(), stored_hash)

# ── Supabase Auth helpers ──────────────────────────────────────────────────────
def supabase_headers(access_token: str | None = None) -> dict:
    headers = {"apikey": SUPABASE_ANON_KEY, "Content-Type": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers

def _error_message(r: httpx.Response, default: str) -> str:
    try:
        data = r.json()
    except ValueError:
        return default
    return data.get("error_description") or data.get("msg") or data.get("message") or default

async def supabase_sign_up(email: str, password: str) -> dict:
    if not SUPABASE_ENABLED:
        return {"error": "Supabase not configured"}
    r = await get_http_client().post(
        f"{SUPABASE_AUTH_URL}/signup",
        headers=supabase_headers(),
        json={"email": email, "password": password},
    )
    if r.status_code not in (200, 201):
        return {"error": _friendly_error(_error_message(r, "Sign-up failed"))}
    return r.json()

async def supabase_sign_in(email: str, password: str) -> dict:
    if not SUPABASE_ENABLED:
        return {"error": "Supabase not configured"}
    r = await get_http_client().post(
        f"{SUPABASE_AUTH_URL}/token?grant_type=password",
        headers=supabase_headers(),
        json={"email": email, "password": password},
    )
    if r.status_code != 200:
        return {"error": _friendly_error(_error_message(r, "Invalid credentials"))}
    return r.json()

async def supabase_sign_out(access_token: str) -> dict:
    if not SUPABASE_ENABLED:
        return {"error": "Supabase not configured"}
    r = await get_http_client().post(
        f"{SUPABASE_AUTH_URL}/logout",
        headers=supabase_headers(access_token),
    )
    if r.status_code in (200, 204):
        return {}
    return {"error": _friendly_error(_error_message(r, "Sign-out failed"))}

async def supabase_user_id_from_email(email: str) -> str | None:
    """Ask the get_user_id_from_email RPC for a Supabase user id."""
    if not SUPABASE_ENABLED:
        return None
    try:
        r = await get_http_client().post(
            f"{SUPABASE_REST_URL}/rpc/get_user_id_from_email",
            headers=supabase_headers(),
            json={"email_address": email},
        )
    except httpx.HTTPError as e:
        logger.warning(f"get_user_id_from_email RPC failed: {e}")
        return None
    if r.status_code != 200:
        logger.warning(f"get_user_id_from_email RPC returned {r.status_code}")
        return None
    return r.json() or None

def _friendly_error(msg: str) -> str:
    m = msg.lower()
    if "invalid login" in m or "invalid credentials" in m or "email not confirmed" in m:
        return "Incorrect email or password. Please try again."
    if "email already" in m or "already registered" in m or "already exists" in m:
        return "An account with this email already exists."
    if "password should be" in m or "password must" in m:
        return "Password must be at least 6 characters."
    if "rate limit" in m or "too many" in m:
        return "Too many attempts. Please wait a few minutes and try again."
    if "user not found" in m:
        return "No account found with that email address."
    return msg

# ── Local user sync ────────────────────────────────────────────────────────────
async def _unique_username(db: AsyncSession, wanted: str) -> str:
    base = wanted[:80] or "user"
    username = base
    i = 1
    while (await db.execute(select(User).where(User.username == username))).scalar_one_or_none():
        username = f"{base}{i}"
        i += 1
    return username

async def get_or_create_user_from_supabase(
    db: AsyncSession,
    supabase_user: dict,
    display_name: str = "",
) -> User:
    sb_id = supabase_user.get("id", "")
    email = (supabase_user.get("email") or "").lower().strip()
    email_verified = supabase_user.get("email_confirmed_at") is not None

    user = (await db.execute(select(User).where(User.supabase_id == sb_id))).scalar_one_or_none()

    if user is None and email:
        user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
        if user:
            user.supabase_id = sb_id

    if user is None:
        username = await _unique_username(db, email.split("@")[0] if email else sb_id)
        user = User(
            username=username, email=email or None,
            display_name=display_name or username,
            supabase_id=sb_id, email_verified=email_verified,
            password_hash="", password_salt="",
            created_at=_utcnow().isoformat(),
        )
        db.add(user)
    else:
        user.email = email or user.email
        user.email_verified = email_verified

    await db.commit()
    await db.refresh(user)
    return user

async def create_local_user(
    db: AsyncSession, username: str, password: str,
    email: str = "", display_name: str = "",
) -> User:
    pw_hash, salt = hash_password(password)
    user = User(
        username=await _unique_username(db, username),
        email=email or None,
        display_name=display_name or username,
        password_hash=pw_hash, password_salt=salt,
        created_at=_utcnow().isoformat(),
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user

async def lookup_user_id_by_email(db: AsyncSession, email: str) -> int | None:
    """Resolve an email to a local user id. Local table first, then the Supabase RPC."""
    email = (email or "").strip().lower()
    if not email:
        return None
    user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if user:
        return user.id

    sb_id = await supabase_user_id_from_email(email)
    if not sb_id:
        return None
    user = (await db.execute(select(User).where(User.supabase_id == sb_id))).scalar_one_or_none()
    return user.id if user else None

# ── DB-backed session management ──────────────────────────────────────────────
async def create_session(
    db: AsyncSession,
    user_id: int,
    remember_me: bool = False,
    request: Request | None = None,
    access_token: str | None = None,
) -> str:
    token = secrets.token_urlsafe(64)
    ttl = SESSION_TTL_REMEMBER if remember_me else SESSION_TTL_SHORT
    ua = (request.headers.get("user-agent") or "")[:256] if request else None
    ip = (request.client.host if request.client else None) if request else None

    db.add(UserSession(
        token=token, user_id=user_id, expires_at=_utcnow() + ttl,
        remember_me=remember_me, user_agent=ua, ip_address=ip,
        access_token=access_token,
    ))
    await db.commit()

    _cache_set(token, user_id)
    return token


async def get_user_id_from_session(db: AsyncSession, token: str | None) -> int | None:
    if not token:
        return None

    cached = _cache_get(token)
    if cached is not None:
        return cached

    row = (
        await db.execute(
            select(UserSession.user_id).where(
                UserSession.token == token,
                UserSession.expires_at > _utcnow(),
            )
        )
    ).first()
    if row is None:
        return None
    _cache_set(token, row.user_id)
    return row.user_id


async def destroy_session(db: AsyncSession, token: str | None):
    if not token:
        return
    _cache_delete(token)
    sess = (await db.execute(select(UserSession).where(UserSession.token == token))).scalar_one_or_none()
    if sess is not None and sess.access_token and SUPABASE_ENABLED:
        result = await supabase_sign_out(sess.access_token)
        if "error" in result:
            logger.warning(f"Supabase sign-out failed: {result['error']}")
    await db.execute(delete(UserSession).where(UserSession.token == token))
    await db.commit()


async def cleanup_expired_sessions(db: AsyncSession) -> int:
    result = await db.execute(
        delete(UserSession).where(UserSession.expires_at <= _utcnow())
    )
    await db.commit()
    if result.rowcount:
        logger.info(f"Session cleanup: removed {result.rowcount} expired row(s)")
    return result.rowcount

# ── Request helpers ────────────────────────────────────────────────────────────
def get_session_token(request: Request) -> str | None:
    return request.cookies.get(SESSION_COOKIE)
