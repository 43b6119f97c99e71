"""Commission pay plan.

Per-sale commission breakdown plus the monthly roll-ups the dashboard shows.
Everything in here is pure: no DB access, no I/O. Callers pass in Sale /
Spiff ORM rows, SaleIn schemas, or anything else exposing the same attributes.

Usage:
    breakdown = calculate_commissions(sale)

    rows = sort_grid_rows(build_grid_rows(sales, spiffs), "date", descending=True)
    stats = calc_month_stats(sales, spiffs)
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Any


# ── Plan constants ───────────────────────────────────────────────────────────

# (ceiling, commission): first tier whose ceiling is above the price wins
CAR_TIERS = (
    (10_000, 200),
    (20_000, 300),
    (30_000, 400),
)
CAR_TOP_TIER = 500

ACCESSORIES_THRESHOLD_NEW = 988
ACCESSORIES_THRESHOLD_OTHER = 488
ACCESSORIES_MIN_ELIGIBLE = 800
ACCESSORIES_BONUS = 100

WARRANTY_STEP = 1000
WARRANTY_PER_STEP = 100

MAINTENANCE_MIN_PRICE = 800
MAINTENANCE_BONUS = 100

SALE_TYPES = ("New", "Used", "Trade-In")


# ── Result containers ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CommissionBreakdown:
    car_commission: int = 0
    accessories_commission: int = 0
    warranty_commission: int = 0
    maintenance_commission: int = 0
    total_commission: int = 0


@dataclass
class GridRow:
    """One line of the combined sales + spiffs table."""
    id: int
    date: Any = None
    stock_number: str | None = None
    customer_name: str | None = None
    type: str = ""
    car_commission: int = 0
    accessories_commission: int = 0
    warranty_commission: int = 0
    maintenance_commission: int = 0
    trade_in_commission: float = 0.0
    total_commission: float = 0
    shared: bool = False
    shared_with_email: str | None = None
    shared_with: str = "-"
    shared_status: str | None = None
    is_spiff: bool = False

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        if self.date is not None and hasattr(self.date, "isoformat"):
            d["date"] = self.date.isoformat()
        return d


@dataclass
class MonthStats:
    """Totals for the selected month."""
    sales_count: int = 0
    new_count: int = 0
    used_count: int = 0
    trade_in_count: int = 0
    car_total: int = 0
    accessories_total: int = 0
    warranty_total: int = 0
    maintenance_total: int = 0
    trade_in_total: float = 0.0
    sales_commission: float = 0.0
    spiff_count: int = 0
    spiff_total: float = 0.0
    grand_total: float = 0.0
    by_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Per-sale commission ──────────────────────────────────────────────────────

def _car_commission(sale_price) -> int:
    for ceiling, amount in CAR_TIERS:
        if sale_price < ceiling:
            return amount
    return CAR_TOP_TIER


def calculate_commissions(sale) -> CommissionBreakdown:
    """Break a sale down into car / accessories / warranty / maintenance commission.

    Optional prices that are missing, None or zero contribute nothing. The
    warranty component uses floor division, so a loss on the warranty pulls
    the total down (profit of -500 is -100, not 0).
    """
    sale_price = getattr(sale, "sale_price", 0) or 0
    sale_type = getattr(sale, "sale_type", "") or ""
    accessories = getattr(sale, "accessories_price", None)
    warranty_price = getattr(sale, "warranty_price", None)
    warranty_cost = getattr(sale, "warranty_cost", None)
    maintenance = getattr(sale, "maintenance_price", None)

    car = _car_commission(sale_price)

    accessories_comm = 0
    if accessories:
        threshold = ACCESSORIES_THRESHOLD_NEW if sale_type == "New" else ACCESSORIES_THRESHOLD_OTHER
        if accessories - threshold > ACCESSORIES_MIN_ELIGIBLE:
            accessories_comm = ACCESSORIES_BONUS

    warranty_comm = 0
    if warranty_price and warranty_cost:
        profit = warranty_price - warranty_cost
        warranty_comm = int(profit // WARRANTY_STEP) * WARRANTY_PER_STEP

    maintenance_comm = 0
    if maintenance and maintenance > MAINTENANCE_MIN_PRICE:
        maintenance_comm = MAINTENANCE_BONUS

    return CommissionBreakdown(
        car_commission=car,
        accessories_commission=accessories_comm,
        warranty_commission=warranty_comm,
        maintenance_commission=maintenance_comm,
        total_commission=car + accessories_comm + warranty_comm + maintenance_comm,
    )


# ── Grid rows ────────────────────────────────────────────────────────────────

def display_name(email: str | None) -> str:
    """'jane.doe@x.com' -> 'Jane.doe'; empty -> '-'."""
    if not email:
        return "-"
    local = email.split("@")[0]
    return local[:1].upper() + local[1:]


def build_grid_rows(sales: list, spiffs: list) -> list[GridRow]:
    rows: list[GridRow] = []

    for sale in sales:
        c = calculate_commissions(sale)
        trade_in = getattr(sale, "trade_in_commission", None) or 0.0
        shared_email = getattr(sale, "shared_with_email", None)
        rows.append(GridRow(
            id=sale.id,
            date=sale.date,
            stock_number=sale.stock_number,
            customer_name=sale.customer_name,
            type=sale.sale_type,
            car_commission=c.car_commission,
            accessories_commission=c.accessories_commission,
            warranty_commission=c.warranty_commission,
            maintenance_commission=c.maintenance_commission,
            trade_in_commission=float(trade_in),
            total_commission=c.total_commission + trade_in,
            shared=bool(shared_email),
            shared_with_email=shared_email,
            shared_with=display_name(shared_email),
            shared_status=getattr(sale, "shared_status", None),
        ))

    for spiff in spiffs:
        rows.append(GridRow(
            id=spiff.id,
            date=spiff.date,
            type="Spiff",
            total_commission=spiff.amount or 0.0,
            is_spiff=True,
        ))

    return rows


SORTABLE_COLUMNS = frozenset(
    name for name in GridRow.__dataclass_fields__ if name not in ("is_spiff",)
)


def sort_grid_rows(rows: list[GridRow], key: str | None, descending: bool = False) -> list[GridRow]:
    """Stable sort by a grid column. None values sort last either way."""
    if not key:
        return list(rows)
    if key not in SORTABLE_COLUMNS:
        raise ValueError(f"Cannot sort by {key!r}")

    present = [r for r in rows if getattr(r, key) is not None]
    missing = [r for r in rows if getattr(r, key) is None]
    present.sort(key=lambda r: getattr(r, key), reverse=descending)
    return present + missing


# ── Monthly stats ────────────────────────────────────────────────────────────

def calc_month_stats(sales: list, spiffs: list) -> MonthStats:
    stats = MonthStats(by_type={t: 0 for t in SALE_TYPES})

    for sale in sales:
        c = calculate_commissions(sale)
        trade_in = getattr(sale, "trade_in_commission", None) or 0.0

        stats.sales_count += 1
        stats.by_type[sale.sale_type] = stats.by_type.get(sale.sale_type, 0) + 1
        stats.car_total += c.car_commission
        stats.accessories_total += c.accessories_commission
        stats.warranty_total += c.warranty_commission
        stats.maintenance_total += c.maintenance_commission
        stats.trade_in_total += trade_in
        stats.sales_commission += c.total_commission + trade_in

    stats.new_count = stats.by_type.get("New", 0)
    stats.used_count = stats.by_type.get("Used", 0)
    stats.trade_in_count = stats.by_type.get("Trade-In", 0)

    stats.spiff_count = len(spiffs)
    stats.spiff_total = float(sum((s.amount or 0.0) for s in spiffs))
    stats.grand_total = stats.sales_commission + stats.spiff_total
    return stats
