"""Day-scoped order numbers, ``<sequence>-<YYYYMMDD>``, guarded only by ``uq_order_order_number``."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from posbill.config import settings
from posbill.dates import get_timezone, utc_now
from posbill.models import Order

logger = logging.getLogger(__name__)

ORDER_NUMBER_CONSTRAINT = "uq_order_order_number"


class OrderNumberExhausted(RuntimeError):
    pass


def format_date_key(now: datetime, tz: Optional[ZoneInfo] = None) -> str:
    return now.astimezone(tz or get_timezone()).strftime("%Y%m%d")


def _taken(db: Session, order_number: str) -> bool:
    return db.scalar(select(Order.id).where(Order.order_number == order_number)) is not None


def generate_order_number(
    db: Session,
    now: Optional[datetime] = None,
    tz: Optional[ZoneInfo] = None,
    max_attempts: Optional[int] = None,
) -> str:
    date_str = format_date_key(now or utc_now(), tz)
    max_attempts = settings.order_number_max_attempts if max_attempts is None else max_attempts
    pattern = re.compile(rf"^(\d+)-{date_str}$")

    existing = db.scalars(
        select(Order.order_number).where(Order.order_number.like(f"%-{date_str}"))
    ).all()
    sequences = [int(match.group(1)) for match in map(pattern.match, existing) if match]
    next_number = max(sequences) + 1 if sequences else 1
    candidate = f"{next_number}-{date_str}"

    attempts = 0
    while _taken(db, candidate):
        if attempts >= max_attempts:
            logger.error("order number allocation exhausted after %s attempts for %s", attempts, date_str)
            raise OrderNumberExhausted(f"no free order number for {date_str} after {attempts} attempts")
        next_number += 1
        candidate = f"{next_number}-{date_str}"
        attempts += 1
    return candidate


def _is_order_number_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return ORDER_NUMBER_CONSTRAINT in message or "order.order_number" in message


def insert_order(db: Session, order: Order, now: Optional[datetime] = None) -> Order:
    """Number, insert and commit ``order``, retrying once on a lost race."""
    order.order_number = generate_order_number(db, now)
    db.add(order)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if not _is_order_number_conflict(exc):
            raise
        logger.warning(
            "order number %s already taken, allocating a new one",
            order.order_number,
            extra={"order_number": order.order_number},
        )
        order.order_number = generate_order_number(db, now)
        db.add(order)
        try:
            db.commit()
        except IntegrityError as retry_exc:
            db.rollback()
            if not _is_order_number_conflict(retry_exc):
                raise
            logger.error(
                "order number %s collided on retry",
                order.order_number,
                extra={"order_number": order.order_number},
            )
            raise OrderNumberExhausted(
                f"order number {order.order_number} collided twice"
            ) from retry_exc
    db.refresh(order)
    return order
