from __future__ import annotations

import logging
import socket
from datetime import datetime
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from posbill.dates import as_utc, get_timezone
from posbill.models import Order

logger = logging.getLogger(__name__)

ESC = b"\x1b"
GS = b"\x1d"
INIT = ESC + b"@"
ALIGN_LEFT = ESC + b"a\x00"
ALIGN_CENTER = ESC + b"a\x01"
NORMAL_SIZE = GS + b"!\x00"
PARTIAL_CUT = GS + b"V\x01"

LINE_WIDTH = 32
RULE = "-" * LINE_WIDTH


class PrinterError(RuntimeError):
    pass


def _line(text: str = "") -> bytes:
    return (text + "\n").encode("ascii", "replace")


def _columns(left: str, right: str, width: int = LINE_WIDTH) -> str:
    space = max(width - len(left) - len(right), 1)
    return f"{left}{' ' * space}{right}"


def _money(value: Decimal) -> str:
    return f"{Decimal(value):.2f}"


def build_test_receipt(now: datetime, restaurant_name: str = "POSBill") -> bytes:
    parts = [
        INIT,
        ALIGN_CENTER,
        NORMAL_SIZE,
        _line("*** TEST RECEIPT ***"),
        _line(restaurant_name),
        _line(RULE),
        _line("Printing to 58mm ESC/POS printer."),
        _line("Date: " + now.strftime("%Y-%m-%d %H:%M:%S")),
        _line(RULE),
        _line("Thank you!"),
        b"\n\n",
        PARTIAL_CUT,
    ]
    return b"".join(parts)


def build_order_receipt(
    order: Order,
    restaurant_name: str,
    tz: Optional[ZoneInfo] = None,
) -> bytes:
    placed = as_utc(order.order_time).astimezone(tz or get_timezone())
    parts = [
        INIT,
        ALIGN_CENTER,
        NORMAL_SIZE,
        _line(restaurant_name),
        _line(f"Order {order.order_number}"),
        _line(placed.strftime("%Y-%m-%d %H:%M")),
        ALIGN_LEFT,
        _line(RULE),
    ]
    if order.table_number:
        parts.append(_line(f"Table: {order.table_number}"))
    if order.customer_name:
        parts.append(_line(f"Customer: {order.customer_name}"))
    for item in order.items:
        amount = Decimal(item.price) * item.quantity
        parts.append(_line(_columns(f"{item.quantity} x {item.name}"[:22], _money(amount))))
    parts.append(_line(RULE))
    parts.append(_line(_columns("Total", _money(order.total_amount))))
    if order.discount:
        parts.append(_line(_columns("Discount", "-" + _money(order.discount))))
    parts.append(_line(_columns("To pay", _money(order.final_amount))))
    parts.extend([ALIGN_CENTER, _line("Thank you!"), b"\n\n", PARTIAL_CUT])
    return b"".join(parts)


def send_to_printer(host: str, port: int, payload: bytes, timeout: float = 5.0) -> None:
    try:
        with socket.create_connection((host, port), timeout=timeout) as conn:
            conn.sendall(payload)
    except OSError as exc:
        logger.warning("printing to %s:%s failed: %s", host, port, exc)
        raise PrinterError(f"could not print to {host}:{port}: {exc}") from exc
