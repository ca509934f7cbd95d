import itertools
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TIMEZONE"] = "Asia/Kolkata"

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from posbill.auth import hash_password, issue_token, permissions_for
from posbill.db import Base, get_db
from posbill.main import app
from posbill.models import CashNote, Order, OrderItem, User


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db):
    counter = {"n": 0}

    def _make_user(role: str = "admin", password: str = "secret123", is_super: bool = False, **kwargs) -> User:
        counter["n"] += 1
        now = datetime.now(timezone.utc)
        user = User(
            name=kwargs.get("name", f"{role} {counter['n']}"),
            email=kwargs.get("email", f"{role}{counter['n']}@posbill.test"),
            password_hash=hash_password(password),
            role=role,
            permissions=permissions_for(role),
            is_active=kwargs.get("is_active", True),
            is_super=is_super,
            created_at=now,
            updated_at=now,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture()
def auth_headers(db, make_user):
    def _auth_headers(role: str = "admin") -> dict:
        user = make_user(role)
        session = issue_token(db, user)
        return {"Authorization": f"Bearer {session.token}"}

    return _auth_headers


@pytest.fixture()
def add_order(db, make_user):
    owner = {}
    sequence = itertools.count(1)

    def _add_order(
        order_time: datetime,
        final_amount,
        items=(),
        order_number: str | None = None,
        payment_status: str = "Pending",
        status: str = "Pending",
    ) -> Order:
        if "user" not in owner:
            owner["user"] = make_user("staff")
        final = Decimal(str(final_amount))
        order = Order(
            order_number=order_number or f"fixture-{next(sequence)}",
            status=status,
            payment_status=payment_status,
            total_amount=final,
            discount=Decimal("0"),
            final_amount=final,
            order_time=order_time,
            created_by=owner["user"].id,
            created_at=order_time,
            updated_at=order_time,
            items=[
                OrderItem(position=i, name=name, quantity=qty, price=Decimal(str(price)))
                for i, (name, qty, price) in enumerate(items)
            ],
        )
        db.add(order)
        db.commit()
        return order

    return _add_order


@pytest.fixture()
def add_note(db):
    def _add_note(note_date: datetime, note_type: str, amount, description: str = "") -> CashNote:
        note = CashNote(
            type=note_type,
            amount=Decimal(str(amount)),
            description=description,
            date=note_date,
            created_at=note_date,
            updated_at=note_date,
        )
        db.add(note)
        db.commit()
        return note

    return _add_note
