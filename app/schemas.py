from typing import Literal

from pydantic import BaseModel, Field, field_validator
import datetime as dt

SPIFF_NOTE_MAX_WORDS = 40


class SaleIn(BaseModel):
    date: dt.date
    stock_number: str = ""
    customer_name: str = ""
    sale_type: Literal["New", "Used", "Trade-In"] = "New"

    sale_price: float = Field(0.0, ge=0)
    accessories_price: float | None = Field(None, ge=0)
    warranty_price: float | None = Field(None, ge=0)
    warranty_cost: float | None = Field(None, ge=0)
    maintenance_price: float | None = Field(None, ge=0)
    maintenance_cost: float | None = Field(None, ge=0)

    @field_validator("stock_number", "customer_name")
    @classmethod
    def _strip(cls, v: str) -> str:
        return (v or "").strip()


class TradeInIn(BaseModel):
    trade_in_commission: float = Field(..., ge=0)


class SpiffIn(BaseModel):
    date: dt.date
    amount: float = Field(..., gt=0)
    note: str = ""
    image_url: str = ""

    @field_validator("note")
    @classmethod
    def _note_words(cls, v: str) -> str:
        v = (v or "").strip()
        if v and len(v.split()) > SPIFF_NOTE_MAX_WORDS:
            raise ValueError(f"Note cannot exceed {SPIFF_NOTE_MAX_WORDS} words")
        return v


class ShareIn(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _normalize(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if "@" not in v:
            raise ValueError("Enter a valid email address")
        return v


class ShareResponseIn(BaseModel):
    response: Literal["accepted", "rejected"]


class LoginIn(BaseModel):
    email: str = ""
    username: str = ""
    password: str
    remember_me: bool = False


class RegisterIn(BaseModel):
    email: str = ""
    username: str = ""
    password: str = Field(..., min_length=6)
    display_name: str = ""
