import asyncio
import csv
import io
import logging
import os
import time
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Depends, UploadFile, File, HTTPException
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy import select, or_, and_
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from .models import Base, User, Sale, Spiff
from .schemas import SaleIn, SpiffIn, TradeInIn, ShareIn, ShareResponseIn, LoginIn, RegisterIn
from .payplan import calculate_commissions, build_grid_rows, sort_grid_rows, calc_month_stats, display_name
from .utils import month_bounds, parse_month
from .auth import (
    SUPABASE_ENABLED, SESSION_COOKIE,
    verify_password, create_local_user,
    supabase_sign_up, supabase_sign_in, get_or_create_user_from_supabase,
    create_session, get_user_id_from_session, destroy_session, cleanup_expired_sessions,
    get_session_token, close_http_client,
)
from .sharing import (
    SharingError, SHARE_ACCEPTED,
    share_sale, respond_to_shared_sale, get_shared_sale_notifications, mark_notification_as_read,
)
from . import storage


logger = logging.getLogger("main")

# ─── DB setup ───
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:////tmp/commission.db").strip()

_SSL_PARAMS = {"sslmode", "sslrootcert", "sslcert", "sslkey"}

def _sanitize_url(url: str) -> str:
    """Drop libpq ssl query params that asyncpg rejects. Non-Postgres URLs pass through untouched."""
    try:
        u = make_url(url)
    except ArgumentError:
        return url
    if not u.drivername.startswith("postgres"):
        return url
    drop = [k for k in u.query if k.lower() in _SSL_PARAMS]
    return u.difference_update_query(drop).render_as_string(hide_password=False)

db_url = _sanitize_url(DATABASE_URL)
if db_url.startswith("postgres://"):
    db_url = db_url.replace("postgres://", "postgresql+asyncpg://", 1)
elif db_url.startswith("postgresql://") and "+asyncpg" not in db_url:
    db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)

_is_pg = "asyncpg" in db_url

engine_kwargs = {"echo": False, "future": True}
if _is_pg:
    engine_kwargs.update(
        connect_args={"statement_cache_size": 0, "prepared_statement_cache_size": 0},
        pool_size=2,
        max_overflow=3,
        pool_recycle=120,
        pool_pre_ping=True,
    )

engine = create_async_engine(db_url, **engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


# ─── App setup ───
@asynccontextmanager
async def lifespan(application: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with SessionLocal() as db:
        await cleanup_expired_sessions(db)
    yield
    await close_http_client()
    await engine.dispose()

app = FastAPI(title="Sales Commission Dashboard", lifespan=lifespan)
app.add_middleware(GZipMiddleware, minimum_size=1000)

if not SUPABASE_ENABLED:
    os.makedirs(storage.UPLOAD_DIR, exist_ok=True)
    app.mount(storage.LOCAL_URL_PREFIX, StaticFiles(directory=storage.UPLOAD_DIR), name="uploads")


@app.exception_handler(Exception)
async def _exc(request: Request, exc: Exception):
    logger.error(f"Unhandled exception at {request.url}: {traceback.format_exc()}")
    return JSONResponse({"ok": False, "error": "An unexpected error occurred."}, status_code=500)

async def get_db():
    async with SessionLocal() as session:
        yield session


# ─── Auth middleware ───
PUBLIC_PATHS = {"/login", "/register", "/healthz"}
PUBLIC_PREFIXES = (storage.LOCAL_URL_PREFIX + "/",)

@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    path = request.url.path
    if path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES):
        return await call_next(request)

    async with SessionLocal() as db:
        uid_val = await get_user_id_from_session(db, get_session_token(request))
    if uid_val is None:
        return JSONResponse({"ok": False, "error": "Not authenticated"}, status_code=401)

    request.state.user_id = uid_val
    return await call_next(request)


# Must stay registered after auth_middleware: the last one added is outermost.
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


def uid(request: Request) -> int:
    return request.state.user_id


# ─── Login rate limiting ───
_LOGIN_ATTEMPTS: dict[str, list[float]] = {}  # ip -> list of timestamps
_LOGIN_RATE_LIMIT = 10  # max attempts per window
_LOGIN_RATE_WINDOW = 900.0  # 15 minute window

def _check_rate_limit(ip: str) -> bool:
    """Returns True if the IP is rate-limited (too many attempts)."""
    now = time.monotonic()
    attempts = [t for t in _LOGIN_ATTEMPTS.get(ip, []) if now - t < _LOGIN_RATE_WINDOW]
    _LOGIN_ATTEMPTS[ip] = attempts
    return len(attempts) >= _LOGIN_RATE_LIMIT

def _record_failed_login(ip: str):
    if len(_LOGIN_ATTEMPTS) > 1000:
        _LOGIN_ATTEMPTS.clear()
    _LOGIN_ATTEMPTS.setdefault(ip, []).append(time.monotonic())


def _set_session_cookie(resp, token: str, remember_me: bool):
    max_age = 60 * 60 * 24 * 30 if remember_me else None  # 30 days or session cookie
    is_secure = not db_url.startswith("sqlite")
    resp.set_cookie(
        SESSION_COOKIE, token,
        httponly=True,
        samesite="lax",
        secure=is_secure,
        max_age=max_age,
    )


def _user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "display_name": display_name(user.email) if user.email else (user.display_name or user.username),
    }


# ─── Serializers ───
def _sale_dict(sale: Sale) -> dict:
    c = calculate_commissions(sale)
    return {
        "id": sale.id,
        "user_id": sale.user_id,
        "date": sale.date.isoformat() if sale.date else None,
        "stock_number": sale.stock_number,
        "customer_name": sale.customer_name,
        "sale_type": sale.sale_type,
        "sale_price": sale.sale_price,
        "accessories_price": sale.accessories_price,
        "warranty_price": sale.warranty_price,
        "warranty_cost": sale.warranty_cost,
        "maintenance_price": sale.maintenance_price,
        "maintenance_cost": sale.maintenance_cost,
        "trade_in_commission": sale.trade_in_commission,
        "shared_with_email": sale.shared_with_email,
        "shared_with_id": sale.shared_with_id,
        "shared_status": sale.shared_status,
        "commissions": {
            "car_commission": c.car_commission,
            "accessories_commission": c.accessories_commission,
            "warranty_commission": c.warranty_commission,
            "maintenance_commission": c.maintenance_commission,
            "total_commission": c.total_commission,
        },
    }

def _spiff_dict(spiff: Spiff) -> dict:
    return {
        "id": spiff.id,
        "user_id": spiff.user_id,
        "date": spiff.date.isoformat() if spiff.date else None,
        "amount": spiff.amount,
        "note": spiff.note,
        "image_url": spiff.image_url,
    }


async def _owned_sale(db: AsyncSession, sale_id: int, user_id: int) -> Sale:
    sale = (await db.execute(select(Sale).where(Sale.id == sale_id, Sale.user_id == user_id))).scalar_one_or_none()
    if sale is None:
        raise HTTPException(status_code=404, detail="Sale not found")
    return sale


# ════════════════════════════════════════════════
# AUTH
# ════════════════════════════════════════════════
@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.post("/register")
async def register(body: RegisterIn, request: Request, db: AsyncSession = Depends(get_db)):
    email = body.email.strip().lower()
    uname = (body.username or email.split("@")[0]).strip().lower()

    if SUPABASE_ENABLED:
        if not email:
            return JSONResponse({"ok": False, "error": "Please enter your email."}, status_code=400)
        result = await supabase_sign_up(email, body.password)
        if "error" in result:
            return JSONResponse({"ok": False, "error": result["error"]}, status_code=400)
        sb_user = result.get("user") or result
        user = await get_or_create_user_from_supabase(db, sb_user, body.display_name)
        access_token = result.get("access_token")
        if not access_token:
            # Email confirmation pending: account exists but no session yet
            return JSONResponse({"ok": True, "user": _user_dict(user), "confirm_email": True}, status_code=201)
    else:
        if not uname:
            return JSONResponse({"ok": False, "error": "Please enter a username or email."}, status_code=400)
        clash = (await db.execute(
            select(User).where(or_(User.username == uname, and_(User.email.is_not(None), User.email == (email or None))))
        )).scalar_one_or_none()
        if clash:
            return JSONResponse({"ok": False, "error": "An account with this email already exists."}, status_code=400)
        user = await create_local_user(db, uname, body.password, email=email, display_name=body.display_name)
        access_token = None

    token = await create_session(db, user.id, request=request, access_token=access_token)
    resp = JSONResponse({"ok": True, "user": _user_dict(user)}, status_code=201)
    _set_session_cookie(resp, token, False)
    return resp


@app.post("/login")
async def login(body: LoginIn, request: Request, db: AsyncSession = Depends(get_db)):
    client_ip = request.client.host if request.client else "unknown"
    if _check_rate_limit(client_ip):
        return JSONResponse(
            {"ok": False, "error": "Too many login attempts. Please wait a few minutes and try again."},
            status_code=429,
        )

    access_token = None
    if SUPABASE_ENABLED:
        login_email = (body.email or body.username).strip().lower()
        result = await supabase_sign_in(login_email, body.password)
        if "error" in result:
            _record_failed_login(client_ip)
            return JSONResponse({"ok": False, "error": result["error"]}, status_code=401)
        user = await get_or_create_user_from_supabase(db, result.get("user") or {})
        access_token = result.get("access_token")
    else:
        uname = (body.username or body.email).strip().lower()
        user = (await db.execute(
            select(User).where(or_(User.username == uname, User.email == uname))
        )).scalar_one_or_none()
        if not (user and verify_password(body.password, user.password_hash, user.password_salt)):
            _record_failed_login(client_ip)
            # Slow down automated guessing
            await asyncio.sleep(0.5)
            return JSONResponse(
                {"ok": False, "error": "Incorrect username or password. Please try again."},
                status_code=401,
            )

    token = await create_session(db, user.id, remember_me=body.remember_me, request=request, access_token=access_token)
    resp = JSONResponse({"ok": True, "user": _user_dict(user)})
    _set_session_cookie(resp, token, body.remember_me)
    return resp


@app.get("/logout")
async def logout(request: Request, db: AsyncSession = Depends(get_db)):
    await destroy_session(db, get_session_token(request))
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@app.get("/api/me")
async def me(request: Request, db: AsyncSession = Depends(get_db)):
    user = (await db.execute(select(User).where(User.id == uid(request)))).scalar_one()
    return _user_dict(user)


# ════════════════════════════════════════════════
# DASHBOARD
# ════════════════════════════════════════════════
async def _month_entries(db: AsyncSession, user_id: int, month: str | None):
    start, end = month_bounds(parse_month(month))
    sales = (await db.execute(
        select(Sale)
        .where(
            or_(
                Sale.user_id == user_id,
                and_(Sale.shared_with_id == user_id, Sale.shared_status == SHARE_ACCEPTED),
            ),
            Sale.date >= start, Sale.date < end,
        )
        .order_by(Sale.date.desc(), Sale.id.desc())
    )).scalars().all()
    spiffs = (await db.execute(
        select(Spiff)
        .where(Spiff.user_id == user_id, Spiff.date >= start, Spiff.date < end)
        .order_by(Spiff.date.desc(), Spiff.id.desc())
    )).scalars().all()
    return start, sales, spiffs


@app.get("/api/dashboard")
async def dashboard(
    request: Request,
    month: str | None = None,
    sort: str | None = "date",
    desc: bool = True,
    db: AsyncSession = Depends(get_db),
):
    start, sales, spiffs = await _month_entries(db, uid(request), month)
    try:
        rows = sort_grid_rows(build_grid_rows(sales, spiffs), sort, descending=desc)
    except ValueError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)

    return {
        "month": start.strftime("%Y-%m"),
        "stats": calc_month_stats(sales, spiffs).to_dict(),
        "rows": [r.to_dict() for r in rows],
        "sales": [_sale_dict(s) for s in sales],
        "spiffs": [_spiff_dict(s) for s in spiffs],
    }


# ════════════════════════════════════════════════
# SALES
# ════════════════════════════════════════════════
@app.post("/api/sales", status_code=201)
async def sale_create(body: SaleIn, request: Request, db: AsyncSession = Depends(get_db)):
    sale = Sale(**body.model_dump(), user_id=uid(request))
    db.add(sale)
    await db.commit()
    await db.refresh(sale)
    return _sale_dict(sale)


@app.put("/api/sales/{sale_id}")
async def sale_update(sale_id: int, body: SaleIn, request: Request, db: AsyncSession = Depends(get_db)):
    sale = await _owned_sale(db, sale_id, uid(request))
    for k, v in body.model_dump().items():
        setattr(sale, k, v)
    await db.commit()
    await db.refresh(sale)
    return _sale_dict(sale)


@app.delete("/api/sales/{sale_id}")
async def sale_delete(sale_id: int, request: Request, db: AsyncSession = Depends(get_db)):
    sale = await _owned_sale(db, sale_id, uid(request))
    await db.delete(sale)
    await db.commit()
    return {"ok": True}


@app.put("/api/sales/{sale_id}/trade-in")
async def sale_trade_in(sale_id: int, body: TradeInIn, request: Request, db: AsyncSession = Depends(get_db)):
    sale = await _owned_sale(db, sale_id, uid(request))
    sale.trade_in_commission = body.trade_in_commission
    await db.commit()
    await db.refresh(sale)
    return _sale_dict(sale)


@app.get("/api/sales/{sale_id}/commissions")
async def sale_commissions(sale_id: int, request: Request, db: AsyncSession = Depends(get_db)):
    user_id = uid(request)
    sale = (await db.execute(
        select(Sale).where(Sale.id == sale_id, or_(Sale.user_id == user_id, Sale.shared_with_id == user_id))
    )).scalar_one_or_none()
    if sale is None:
        raise HTTPException(status_code=404, detail="Sale not found")
    return _sale_dict(sale)["commissions"]


# ════════════════════════════════════════════════
# SPIFFS
# ════════════════════════════════════════════════
@app.post("/api/spiffs", status_code=201)
async def spiff_create(body: SpiffIn, request: Request, db: AsyncSession = Depends(get_db)):
    spiff = Spiff(**body.model_dump(), user_id=uid(request))
    db.add(spiff)
    await db.commit()
    await db.refresh(spiff)
    return _spiff_dict(spiff)


@app.delete("/api/spiffs/{spiff_id}")
async def spiff_delete(spiff_id: int, request: Request, db: AsyncSession = Depends(get_db)):
    spiff = (await db.execute(
        select(Spiff).where(Spiff.id == spiff_id, Spiff.user_id == uid(request))
    )).scalar_one_or_none()
    if spiff is None:
        raise HTTPException(status_code=404, detail="Spiff not found")
    await db.delete(spiff)
    await db.commit()
    return {"ok": True}


@app.post("/api/uploads/spiff-image")
async def spiff_image_upload(file: UploadFile = File(...)):
    if not (file.content_type or "").startswith("image/"):
        return JSONResponse({"ok": False, "error": "Only image files can be uploaded"}, status_code=400)
    path = storage.spiff_image_path(file.filename or "")
    content = await file.read()
    try:
        url = await storage.upload(path, content, file.content_type)
    except storage.StorageError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=502)
    return {"ok": True, "path": path, "url": url}


# ════════════════════════════════════════════════
# SHARING + NOTIFICATIONS
# ════════════════════════════════════════════════
@app.post("/api/sales/{sale_id}/share")
async def sale_share(sale_id: int, body: ShareIn, request: Request, db: AsyncSession = Depends(get_db)):
    user_id = uid(request)
    sale = await _owned_sale(db, sale_id, user_id)
    try:
        await share_sale(db, sale, body.email, user_id)
    except SharingError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    return {"ok": True, "sale": _sale_dict(sale)}


@app.post("/api/sales/{sale_id}/respond")
async def sale_respond(sale_id: int, body: ShareResponseIn, request: Request, db: AsyncSession = Depends(get_db)):
    user_id = uid(request)
    sale = (await db.execute(
        select(Sale).where(Sale.id == sale_id, Sale.shared_with_id == user_id)
    )).scalar_one_or_none()
    if sale is None:
        raise HTTPException(status_code=404, detail="Sale not found")
    try:
        await respond_to_shared_sale(db, sale, user_id, body.response)
    except SharingError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    return {"ok": True, "sale": _sale_dict(sale)}


@app.get("/api/notifications")
async def notifications(request: Request, db: AsyncSession = Depends(get_db)):
    return {"notifications": await get_shared_sale_notifications(db, uid(request))}


@app.post("/api/notifications/{notification_id}/read")
async def notification_read(notification_id: int, request: Request, db: AsyncSession = Depends(get_db)):
    if not await mark_notification_as_read(db, notification_id, uid(request)):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"ok": True}


# ════════════════════════════════════════════════
# CSV EXPORT
# ════════════════════════════════════════════════
@app.get("/reports/export")
async def export_csv(request: Request, month: str | None = None, db: AsyncSession = Depends(get_db)):
    start, sales, spiffs = await _month_entries(db, uid(request), month)
    rows = sort_grid_rows(build_grid_rows(sales, spiffs), "date", descending=True)

    out = io.StringIO(); w = csv.writer(out)
    w.writerow(["Date Sold", "Stock #", "Customer Name", "Type", "Car Commis.", "Accessories", "Warranty",
                "Maintenance", "Trade-In", "TOTAL", "Shared", "Shared With"])
    for r in rows:
        w.writerow([r.date or "", r.stock_number or "-", r.customer_name or "-", r.type,
                    r.car_commission, r.accessories_commission, r.warranty_commission,
                    r.maintenance_commission, f"{r.trade_in_commission:.2f}", f"{r.total_commission:.2f}",
                    "Yes" if r.shared else "No", r.shared_with])
    out.seek(0)
    name = start.strftime("%Y-%m")
    return StreamingResponse(
        iter([out.getvalue()]), media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename=commission-export-{name}.csv"},
    )
