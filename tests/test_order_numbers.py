from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from posbill import order_numbers
from posbill.db import Base
from posbill.models import Order, OrderItem
from posbill.order_numbers import (
    OrderNumberExhausted,
    format_date_key,
    generate_order_number,
    insert_order,
)

KOLKATA = ZoneInfo("Asia/Kolkata")
MORNING = datetime(2025, 9, 20, 4, 30, tzinfo=timezone.utc)


def _new_order(user_id: int) -> Order:
    now = datetime.now(timezone.utc)
    return Order(
        status="Pending",
        payment_status="Pending",
        total_amount=Decimal("120"),
        discount=Decimal("0"),
        final_amount=Decimal("120"),
        order_time=now,
        created_by=user_id,
        created_at=now,
        updated_at=now,
        items=[OrderItem(position=0, name="Masala Dosa", quantity=1, price=Decimal("120"))],
    )


def test_format_date_key_uses_local_calendar_day() -> None:
    late_evening_utc = datetime(2025, 9, 20, 20, 0, tzinfo=timezone.utc)
    assert format_date_key(late_evening_utc, KOLKATA) == "20250921"
    assert format_date_key(late_evening_utc, ZoneInfo("UTC")) == "20250920"


def test_first_order_of_the_day_starts_at_one(db) -> None:
    assert generate_order_number(db, MORNING, KOLKATA) == "1-20250920"


def test_sequential_inserts_increase(db, make_user) -> None:
    user = make_user("staff")
    numbers = [insert_order(db, _new_order(user.id), MORNING).order_number for _ in range(3)]
    assert numbers == ["1-20250920", "2-20250920", "3-20250920"]


def test_sequence_continues_from_highest_number_of_the_day(db, add_order) -> None:
    add_order(MORNING, 10, order_number="7-20250920")
    add_order(MORNING, 10, order_number="3-20250920")
    add_order(MORNING, 10, order_number="99-20250919")
    add_order(MORNING, 10, order_number="x12-20250920")
    add_order(MORNING, 10, order_number="12-20250920-copy")
    assert generate_order_number(db, MORNING, KOLKATA) == "8-20250920"


def test_new_day_restarts_the_sequence(db, add_order) -> None:
    add_order(MORNING, 10, order_number="41-20250920")
    next_day = datetime(2025, 9, 21, 4, 30, tzinfo=timezone.utc)
    assert generate_order_number(db, next_day, KOLKATA) == "1-20250921"


def test_taken_candidates_are_skipped(db, monkeypatch) -> None:
    taken = {"1-20250920", "2-20250920"}
    monkeypatch.setattr(order_numbers, "_taken", lambda _db, number: number in taken)
    assert generate_order_number(db, MORNING, KOLKATA) == "3-20250920"


def test_retry_ceiling_raises(db, monkeypatch) -> None:
    monkeypatch.setattr(order_numbers, "_taken", lambda _db, number: True)
    with pytest.raises(OrderNumberExhausted):
        generate_order_number(db, MORNING, KOLKATA, max_attempts=3)


def test_lost_race_is_retried_once(db, add_order, make_user, monkeypatch) -> None:
    add_order(MORNING, 10, order_number="1-20250920")
    user = make_user("staff")
    real_generate = order_numbers.generate_order_number
    calls = []

    def stale_then_real(session, now=None):
        calls.append(now)
        if len(calls) == 1:
            return "1-20250920"
        return real_generate(session, now)

    monkeypatch.setattr(order_numbers, "generate_order_number", stale_then_real)
    order = insert_order(db, _new_order(user.id), MORNING)

    assert len(calls) == 2
    assert order.order_number == "2-20250920"
    assert [item.name for item in order.items] == ["Masala Dosa"]


def test_second_collision_is_fatal_and_never_duplicates(db, add_order, make_user, monkeypatch) -> None:
    add_order(MORNING, 10, order_number="1-20250920")
    user = make_user("staff")
    monkeypatch.setattr(order_numbers, "generate_order_number", lambda session, now=None: "1-20250920")

    with pytest.raises(OrderNumberExhausted):
        insert_order(db, _new_order(user.id), MORNING)

    numbers = db.scalars(select(Order.order_number)).all()
    assert numbers.count("1-20250920") == 1
    assert len(numbers) == 1


def test_parallel_inserts_never_share_a_number(tmp_path) -> None:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'orders.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    def create(_: int) -> str | None:
        with factory() as session:
            try:
                return insert_order(session, _new_order(1), MORNING).order_number
            except OrderNumberExhausted:
                return None

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(create, range(12)))

    with factory() as session:
        stored = session.scalars(select(Order.order_number)).all()
    engine.dispose()

    assert stored
    assert len(stored) == len(set(stored))
    assert sorted(n for n in results if n) == sorted(stored)
    assert all(number.endswith("-20250920") for number in stored)
