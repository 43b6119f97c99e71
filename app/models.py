from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import String, Integer, Float, Date, Boolean, Text, DateTime
import datetime as dt
from datetime import datetime, timezone

def _utcnow() -> datetime:
    """Naive UTC now, for TIMESTAMP columns (not TIMESTAMPTZ)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

class Base(DeclarativeBase):
    pass


# ════════════════════════════════════════════════
# USER: mirrored from Supabase Auth, or a legacy local account
# ════════════════════════════════════════════════
class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(254), unique=True, nullable=True)
    display_name: Mapped[str] = mapped_column(String(120), default="")
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    password_salt: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    supabase_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[str] = mapped_column(String(32), default="")


class UserSession(Base):
    """Login session. The token lives in the ct_session cookie."""
    __tablename__ = "user_sessions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    remember_me: Mapped[bool] = mapped_column(Boolean, default=False)
    user_agent: Mapped[str | None] = mapped_column(String(256), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Supabase access token, kept so sign-out can revoke it upstream
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)


# ════════════════════════════════════════════════
# SALE: one vehicle sold
# ════════════════════════════════════════════════
class Sale(Base):
    __tablename__ = "sales"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)

    stock_number: Mapped[str] = mapped_column(String(40), default="")
    customer_name: Mapped[str] = mapped_column(String(120), default="")
    sale_type: Mapped[str] = mapped_column(String(16), default="New")
    # New | Used | Trade-In

    sale_price: Mapped[float] = mapped_column(Float, default=0.0)
    accessories_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    warranty_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    warranty_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    maintenance_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    maintenance_cost: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Negotiated with the sales manager, entered separately from the sale form
    trade_in_commission: Mapped[float | None] = mapped_column(Float, nullable=True)

    shared_with_email: Mapped[str | None] = mapped_column(String(254), nullable=True)
    shared_with_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    shared_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    # pending | accepted | rejected

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


# ════════════════════════════════════════════════
# SPIFF: a bonus not tied to a particular sale
# ════════════════════════════════════════════════
class Spiff(Base):
    __tablename__ = "spiffs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    note: Mapped[str] = mapped_column(Text, default="")
    image_url: Mapped[str] = mapped_column(String(512), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


# ════════════════════════════════════════════════
# NOTIFICATION: "someone shared a sale with you"
# ════════════════════════════════════════════════
class Notification(Base):
    __tablename__ = "notifications"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)  # recipient
    sale_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    sender_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    type: Mapped[str] = mapped_column(String(40), default="shared_sale_pending")
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
