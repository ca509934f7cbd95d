from __future__ import annotations

import math
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from posbill.config import settings
from posbill.dates import as_utc, get_timezone, local_date, to_utc
from posbill.models import CashNote, Order

NO_DATA = "No data"
TOP_ITEMS_LIMIT = 10
RECENT_NOTES_LIMIT = 10

ZERO = Decimal("0")
ONE_DECIMAL = Decimal("0.1")


def revenue_orders(policy: Optional[str] = None) -> list:
    """Criteria an order must meet to count as revenue.

    ``"all"`` recognises every order in range whatever its payment state;
    ``"paid"`` keeps only orders whose payment status is paid.
    """
    policy = policy or settings.revenue_recognition
    if policy == "all":
        return []
    if policy == "paid":
        return [func.lower(Order.payment_status) == "paid"]
    raise ValueError(f"unknown revenue recognition policy: {policy}")


def _fetch_orders(
    db: Session,
    start: datetime,
    end: datetime,
    policy: Optional[str],
    inclusive_end: bool = True,
) -> list[Order]:
    upper = Order.order_time <= end if inclusive_end else Order.order_time < end
    query = (
        select(Order)
        .options(selectinload(Order.items))
        .where(Order.order_time >= start, upper, *revenue_orders(policy))
        .order_by(Order.order_time.desc())
    )
    return list(db.scalars(query).all())


def _fetch_cash_notes(db: Session, start: datetime, end: datetime) -> list[CashNote]:
    query = (
        select(CashNote)
        .where(CashNote.date >= start, CashNote.date <= end)
        .order_by(CashNote.date.desc(), CashNote.created_at.desc(), CashNote.id.desc())
    )
    return list(db.scalars(query).all())


def _number(value: Decimal) -> float:
    return float(value)


def _round_one(value: Decimal) -> Decimal:
    return value.quantize(ONE_DECIMAL, rounding=ROUND_HALF_UP)


def _growth(current: Decimal, previous: Decimal) -> float:
    if previous == 0:
        return 0.0
    return float(_round_one((current - previous) / previous * 100))


def _empty_day(key: str) -> dict:
    return {
        "date": key,
        "revenue": ZERO,
        "orders": 0,
        "credits": ZERO,
        "debits": ZERO,
        "netProfit": ZERO,
    }


def daily_sales(
    orders: list[Order],
    notes: list[CashNote],
    tz: ZoneInfo,
) -> list[dict]:
    days: dict[str, dict] = {}
    for order in orders:
        key = local_date(order.order_time, tz).isoformat()
        day = days.setdefault(key, _empty_day(key))
        day["revenue"] += order.final_amount
        day["orders"] += 1
    for note in notes:
        key = local_date(note.date, tz).isoformat()
        day = days.setdefault(key, _empty_day(key))
        if note.type == "credit":
            day["credits"] += note.amount
        else:
            day["debits"] += note.amount

    rows = []
    for key in sorted(days):
        day = days[key]
        net = day["revenue"] + day["credits"] - day["debits"]
        rows.append(
            {
                "date": key,
                "revenue": _number(day["revenue"]),
                "orders": day["orders"],
                "credits": _number(day["credits"]),
                "debits": _number(day["debits"]),
                "netProfit": _number(net),
            }
        )
    return rows


def top_items(orders: list[Order], limit: int = TOP_ITEMS_LIMIT) -> list[dict]:
    sales: dict[str, dict] = {}
    for order in orders:
        for item in order.items:
            entry = sales.setdefault(item.name, {"quantity": 0, "revenue": ZERO})
            entry["quantity"] += item.quantity
            entry["revenue"] += item.price * item.quantity
    ranked = sorted(sales.items(), key=lambda pair: pair[1]["revenue"], reverse=True)
    return [
        {"name": name, "quantity": data["quantity"], "revenue": _number(data["revenue"])}
        for name, data in ranked[:limit]
    ]


def _cash_note_entry(note: CashNote) -> dict:
    return {
        "id": note.id,
        "type": note.type,
        "amount": _number(note.amount),
        "description": note.description,
        "date": as_utc(note.date).isoformat(),
        "createdBy": note.created_by,
        "createdAt": as_utc(note.created_at).isoformat(),
        "updatedAt": as_utc(note.updated_at).isoformat(),
    }


def build_report(
    db: Session,
    from_dt: datetime,
    to_dt: datetime,
    tz: Optional[ZoneInfo] = None,
    policy: Optional[str] = None,
) -> dict[str, Any]:
    tz = tz or get_timezone()
    start = to_utc(from_dt, tz)
    end = to_utc(to_dt, tz)

    orders = _fetch_orders(db, start, end, policy)
    notes = _fetch_cash_notes(db, start, end)

    total_revenue = sum((order.final_amount for order in orders), ZERO)
    total_orders = len(orders)
    credits = [note for note in notes if note.type == "credit"]
    debits = [note for note in notes if note.type == "debit"]
    total_credits = sum((note.amount for note in credits), ZERO)
    total_debits = sum((note.amount for note in debits), ZERO)
    net_profit = total_revenue + total_credits - total_debits

    ranked_items = top_items(orders)
    if total_orders:
        average_order_value = int((total_revenue / total_orders).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    else:
        average_order_value = 0

    range_days = math.ceil((end - start) / timedelta(days=1))
    previous_orders = _fetch_orders(
        db, start - timedelta(days=range_days), start, policy, inclusive_end=False
    )
    previous_revenue = sum((order.final_amount for order in previous_orders), ZERO)

    if total_revenue:
        profit_margin = str(_round_one(net_profit / total_revenue * 100))
    else:
        profit_margin = "0"

    return {
        "dailySales": daily_sales(orders, notes, tz),
        "topItems": ranked_items,
        "summary": {
            "totalRevenue": _number(total_revenue),
            "totalOrders": total_orders,
            "averageOrderValue": average_order_value,
            "topSellingItem": ranked_items[0]["name"] if ranked_items else NO_DATA,
            "netProfit": _number(net_profit),
            "revenueGrowth": _growth(total_revenue, previous_revenue),
            "ordersGrowth": _growth(Decimal(total_orders), Decimal(len(previous_orders))),
            "profitMargin": profit_margin,
        },
        "cashFlow": {
            "totalCredits": _number(total_credits),
            "totalDebits": _number(total_debits),
            "netCashFlow": _number(total_credits - total_debits),
            "creditTransactions": len(credits),
            "debitTransactions": len(debits),
        },
        "recentCashNotes": [_cash_note_entry(note) for note in notes[:RECENT_NOTES_LIMIT]],
        "dateRange": {
            "from": start.isoformat(),
            "to": end.isoformat(),
            "days": range_days,
        },
    }
