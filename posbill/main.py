from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from posbill import order_numbers, printing, reports
from posbill.auth import (
    authenticate,
    get_current_user,
    hash_password,
    issue_token,
    permissions_for,
    require_permission,
)
from posbill.config import settings
from posbill.dates import (
    InvalidDateRange,
    as_utc,
    end_of_day,
    get_timezone,
    resolve_order_list_range,
    resolve_report_range,
    start_of_day,
    to_utc,
    utc_now,
)
from posbill.db import get_db
from posbill.logging_setup import RequestIDMiddleware, get_request_id, setup_json_logging
from posbill.models import (
    AuthSession,
    CashNote,
    Category,
    Order,
    OrderItem,
    RestaurantSettings,
    SubCategory,
    User,
)

setup_json_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="POSBill Backend")
app.add_middleware(RequestIDMiddleware)

_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials="*" not in _origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _meta(warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": f"req_{get_request_id()}",
        "warnings": warnings or [],
    }


def _page_meta(page: int, page_size: int, total: int) -> dict:
    meta = _meta()
    meta["page"] = {"page": page, "page_size": page_size, "total": total}
    return meta


def _now() -> datetime:
    return utc_now()


def _money(value: Optional[Decimal]) -> float:
    return float(value or 0)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


# Auth and users


def _user_data(user: User) -> dict:
    return {
        "user_id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "permissions": user.permissions or [],
        "is_active": user.is_active,
        "is_super": user.is_super,
        "last_login": _iso(user.last_login),
        "created_at": _iso(user.created_at),
    }


class LoginRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {"email": "admin@posbill.local", "password": "secret123"}}}
    email: str
    password: str


@app.post("/api/auth/login", tags=["Auth"])
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> dict:
    user = authenticate(db, payload.email, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="invalid email or password")
    session = issue_token(db, user)
    return {
        "data": {
            "token": session.token,
            "expires_at": _iso(session.expires_at),
            "user": _user_data(user),
        },
        "meta": _meta(),
    }


@app.get("/api/auth/me", tags=["Auth"])
def read_me(user: User = Depends(get_current_user)) -> dict:
    return {"data": _user_data(user), "meta": _meta()}


@app.post("/api/auth/logout", tags=["Auth"])
def logout(
    user: User = Depends(get_current_user),
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> dict:
    token = authorization.split(" ", 1)[1]
    db.query(AuthSession).filter(
        AuthSession.user_id == user.id, AuthSession.token == token
    ).delete()
    db.commit()
    return {"data": {"logged_out": True}, "meta": _meta()}


class UserCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"name": "Ravi", "email": "ravi@posbill.local", "password": "secret123", "role": "staff", "is_active": True}}}
    name: str = Field(min_length=1, max_length=50)
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=6)
    role: Literal["admin", "manager", "staff"] = "staff"
    is_active: bool = True


class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN)
    role: Optional[Literal["admin", "manager", "staff"]] = None
    is_active: Optional[bool] = None


@app.get("/api/users", tags=["Users"])
def list_users(
    _: User = Depends(require_permission("manage_users")),
    db: Session = Depends(get_db),
) -> dict:
    users = db.scalars(select(User).order_by(User.created_at.desc(), User.id.desc())).all()
    return {"data": [_user_data(user) for user in users], "meta": _meta()}


@app.post("/api/users", tags=["Users"], status_code=201)
def create_user(
    payload: UserCreate,
    _: User = Depends(require_permission("manage_users")),
    db: Session = Depends(get_db),
) -> dict:
    email = payload.email.strip().lower()
    if db.scalar(select(User.id).where(User.email == email)) is not None:
        raise HTTPException(status_code=400, detail="email already exists")
    now = _now()
    user = User(
        name=payload.name.strip(),
        email=email,
        password_hash=hash_password(payload.password),
        role=payload.role,
        permissions=permissions_for(payload.role),
        is_active=payload.is_active,
        is_super=False,
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return {"data": _user_data(user), "meta": _meta()}


@app.get("/api/users/{user_id}", tags=["Users"])
def get_user(
    user_id: int,
    _: User = Depends(require_permission("manage_users")),
    db: Session = Depends(get_db),
) -> dict:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="user not found")
    return {"data": _user_data(user), "meta": _meta()}


@app.put("/api/users/{user_id}", tags=["Users"])
def update_user(
    user_id: int,
    payload: UserUpdate,
    _: User = Depends(require_permission("manage_users")),
    db: Session = Depends(get_db),
) -> dict:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="user not found")
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("email"):
        email = changes["email"].strip().lower()
        clash = db.scalar(select(User.id).where(User.email == email, User.id != user.id))
        if clash is not None:
            raise HTTPException(status_code=400, detail="email already exists")
        user.email = email
    if changes.get("name"):
        user.name = changes["name"].strip()
    if changes.get("role"):
        user.role = changes["role"]
        user.permissions = permissions_for(user.role)
    if changes.get("is_active") is not None:
        user.is_active = changes["is_active"]
    user.updated_at = _now()
    db.commit()
    db.refresh(user)
    return {"data": _user_data(user), "meta": _meta()}


@app.delete("/api/users/{user_id}", tags=["Users"])
def delete_user(
    user_id: int,
    _: User = Depends(require_permission("manage_users")),
    db: Session = Depends(get_db),
) -> dict:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="user not found")
    if user.is_super:
        raise HTTPException(status_code=403, detail="cannot delete super admin user")
    owned_orders = db.scalar(select(func.count(Order.id)).where(Order.created_by == user.id))
    owned_notes = db.scalar(select(func.count(CashNote.id)).where(CashNote.created_by == user.id))
    if owned_orders or owned_notes:
        raise HTTPException(
            status_code=400,
            detail="cannot delete user with existing orders or cash notes; deactivate instead",
        )
    db.query(AuthSession).filter(AuthSession.user_id == user.id).delete()
    db.delete(user)
    db.commit()
    return {"data": {"user_id": user_id, "deleted": True}, "meta": _meta()}


# Menu


def _category_data(category: Category) -> dict:
    return {
        "category_id": category.id,
        "name": category.name,
        "description": category.description,
        "icon": category.icon,
        "status": category.status,
        "created_at": _iso(category.created_at),
        "updated_at": _iso(category.updated_at),
    }


class CategoryCreate(BaseModel):
    model_config = {
        "str_strip_whitespace": True,
        "json_schema_extra": {"example": {"name": "Thali", "description": "Full meals", "icon": "🍛", "status": "active"}},
    }
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    icon: Optional[str] = None
    status: Literal["active", "inactive"] = "active"


class CategoryUpdate(BaseModel):
    model_config = {"str_strip_whitespace": True}
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    icon: Optional[str] = None
    status: Optional[Literal["active", "inactive"]] = None


@app.get("/api/categories", tags=["Categories"])
def list_categories(
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = select(Category)
    if status is not None:
        query = query.where(Category.status == status)
    categories = db.scalars(query.order_by(Category.name)).all()
    return {"data": [_category_data(category) for category in categories], "meta": _meta()}


@app.post("/api/categories", tags=["Categories"], status_code=201)
def create_category(
    payload: CategoryCreate,
    _: User = Depends(require_permission("manage_menu")),
    db: Session = Depends(get_db),
) -> dict:
    now = _now()
    category = Category(**payload.model_dump(), created_at=now, updated_at=now)
    db.add(category)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="category name already exists")
    db.refresh(category)
    return {"data": _category_data(category), "meta": _meta()}


@app.get("/api/categories/{category_id}", tags=["Categories"])
def get_category(category_id: int, db: Session = Depends(get_db)) -> dict:
    category = db.get(Category, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="category not found")
    return {"data": _category_data(category), "meta": _meta()}


@app.put("/api/categories/{category_id}", tags=["Categories"])
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    _: User = Depends(require_permission("manage_menu")),
    db: Session = Depends(get_db),
) -> dict:
    category = db.get(Category, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="category not found")
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(category, field, value)
    category.updated_at = _now()
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="category name already exists")
    db.refresh(category)
    return {"data": _category_data(category), "meta": _meta()}


@app.delete("/api/categories/{category_id}", tags=["Categories"])
def delete_category(
    category_id: int,
    _: User = Depends(require_permission("manage_menu")),
    db: Session = Depends(get_db),
) -> dict:
    category = db.get(Category, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="category not found")
    children = db.scalar(
        select(func.count(SubCategory.id)).where(SubCategory.main_category_id == category_id)
    )
    if children:
        raise HTTPException(
            status_code=400,
            detail="cannot delete category with existing subcategories",
        )
    db.delete(category)
    db.commit()
    return {"data": {"category_id": category_id, "deleted": True}, "meta": _meta()}


def _subcategory_data(sub: SubCategory) -> dict:
    return {
        "subcategory_id": sub.id,
        "main_category_id": sub.main_category_id,
        "main_category_name": sub.category.name if sub.category else None,
        "name": sub.name,
        "price": _money(sub.price),
        "base_price": _money(sub.base_price),
        "description": sub.description,
        "icon": sub.icon,
        "status": sub.status,
        "created_at": _iso(sub.created_at),
        "updated_at": _iso(sub.updated_at),
    }


class SubCategoryCreate(BaseModel):
    model_config = {
        "str_strip_whitespace": True,
        "json_schema_extra": {"example": {"main_category_id": 1, "name": "Paneer Tikka", "price": 240.0, "base_price": 180.0, "status": "active"}},
    }
    main_category_id: int
    name: str = Field(min_length=1, max_length=100)
    price: Decimal = Field(ge=0)
    base_price: Decimal = Field(ge=0)
    description: Optional[str] = Field(default=None, max_length=500)
    icon: Optional[str] = None
    status: Literal["active", "inactive"] = "active"


class SubCategoryUpdate(BaseModel):
    model_config = {"str_strip_whitespace": True}
    main_category_id: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    price: Optional[Decimal] = Field(default=None, ge=0)
    base_price: Optional[Decimal] = Field(default=None, ge=0)
    description: Optional[str] = Field(default=None, max_length=500)
    icon: Optional[str] = None
    status: Optional[Literal["active", "inactive"]] = None


@app.get("/api/subcategories", tags=["Subcategories"])
def list_subcategories(
    category_id: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = select(SubCategory)
    if category_id is not None:
        query = query.where(SubCategory.main_category_id == category_id)
    if status is not None:
        query = query.where(SubCategory.status == status)
    subs = db.scalars(query.order_by(SubCategory.name)).all()
    return {"data": [_subcategory_data(sub) for sub in subs], "meta": _meta()}


@app.post("/api/subcategories", tags=["Subcategories"], status_code=201)
def create_subcategory(
    payload: SubCategoryCreate,
    _: User = Depends(require_permission("manage_menu")),
    db: Session = Depends(get_db),
) -> dict:
    if not db.get(Category, payload.main_category_id):
        raise HTTPException(status_code=400, detail="invalid main_category_id")
    now = _now()
    sub = SubCategory(**payload.model_dump(), created_at=now, updated_at=now)
    db.add(sub)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="subcategory name already exists in this category")
    db.refresh(sub)
    return {"data": _subcategory_data(sub), "meta": _meta()}


@app.get("/api/subcategories/{subcategory_id}", tags=["Subcategories"])
def get_subcategory(subcategory_id: int, db: Session = Depends(get_db)) -> dict:
    sub = db.get(SubCategory, subcategory_id)
    if not sub:
        raise HTTPException(status_code=404, detail="subcategory not found")
    return {"data": _subcategory_data(sub), "meta": _meta()}


@app.put("/api/subcategories/{subcategory_id}", tags=["Subcategories"])
def update_subcategory(
    subcategory_id: int,
    payload: SubCategoryUpdate,
    _: User = Depends(require_permission("manage_menu")),
    db: Session = Depends(get_db),
) -> dict:
    sub = db.get(SubCategory, subcategory_id)
    if not sub:
        raise HTTPException(status_code=404, detail="subcategory not found")
    changes = payload.model_dump(exclude_unset=True)
    if "main_category_id" in changes and not db.get(Category, changes["main_category_id"]):
        raise HTTPException(status_code=400, detail="invalid main_category_id")
    for field, value in changes.items():
        setattr(sub, field, value)
    sub.updated_at = _now()
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="subcategory name already exists in this category")
    db.refresh(sub)
    return {"data": _subcategory_data(sub), "meta": _meta()}


@app.delete("/api/subcategories/{subcategory_id}", tags=["Subcategories"])
def delete_subcategory(
    subcategory_id: int,
    _: User = Depends(require_permission("manage_menu")),
    db: Session = Depends(get_db),
) -> dict:
    sub = db.get(SubCategory, subcategory_id)
    if not sub:
        raise HTTPException(status_code=404, detail="subcategory not found")
    db.delete(sub)
    db.commit()
    return {"data": {"subcategory_id": subcategory_id, "deleted": True}, "meta": _meta()}


# Orders


def _order_data(order: Order) -> dict:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "order_type": order.order_type,
        "table_number": order.table_number or "",
        "customer_name": order.customer_name or "",
        "customer_phone": order.customer_phone or "",
        "notes": order.notes or "",
        "total_amount": _money(order.total_amount),
        "discount": _money(order.discount),
        "final_amount": _money(order.final_amount),
        "order_time": _iso(order.order_time),
        "created_by": order.created_by,
        "items": [
            {"name": item.name, "quantity": item.quantity, "price": _money(item.price)}
            for item in order.items
        ],
    }


def _find_order(db: Session, ref: str) -> Order:
    if ref.isdigit():
        order = db.get(Order, int(ref))
    else:
        order = db.scalar(select(Order).where(Order.order_number == ref))
    if not order:
        raise HTTPException(status_code=404, detail="order not found")
    return order


class OrderItemInput(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    price: Decimal = Field(ge=0)


def _order_items(items: list[OrderItemInput]) -> list[OrderItem]:
    return [
        OrderItem(position=index, name=item.name, quantity=item.quantity, price=item.price)
        for index, item in enumerate(items)
    ]


class OrderCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'items': [{'name': 'Paneer Tikka', 'quantity': 2, 'price': 240.0}, {'name': 'Butter Naan', 'quantity': 4, 'price': 40.0}], 'discount': 20.0, 'table_number': 'T4', 'order_type': 'Dining', 'status': 'Pending', 'payment_status': 'Pending'}}}
    items: list[OrderItemInput]
    order_number: Optional[str] = None
    customer_name: str = ""
    customer_phone: str = ""
    table_number: str = ""
    notes: str = ""
    total_amount: Optional[Decimal] = Field(default=None, ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    final_amount: Optional[Decimal] = None
    status: Literal["Pending", "Waiting", "Paid"] = "Pending"
    payment_status: str = "Pending"
    order_type: Literal["Dining", "Parcel"] = "Dining"
    order_time: Optional[datetime] = None


class OrderUpdate(BaseModel):
    items: Optional[list[OrderItemInput]] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    table_number: Optional[str] = None
    notes: Optional[str] = None
    total_amount: Optional[Decimal] = Field(default=None, ge=0)
    discount: Optional[Decimal] = Field(default=None, ge=0)
    final_amount: Optional[Decimal] = None
    status: Optional[Literal["Pending", "Waiting", "Paid"]] = None
    payment_status: Optional[str] = None
    order_type: Optional[Literal["Dining", "Parcel"]] = None


@app.post("/api/orders", tags=["Orders"], status_code=201)
def create_order(
    payload: OrderCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    total = payload.total_amount
    if total is None:
        total = sum((item.price * item.quantity for item in payload.items), Decimal("0"))
    final = payload.final_amount if payload.final_amount is not None else total - payload.discount
    now = _now()
    order = Order(
        customer_name=payload.customer_name,
        customer_phone=payload.customer_phone,
        table_number=payload.table_number,
        notes=payload.notes,
        total_amount=total,
        discount=payload.discount,
        final_amount=final,
        status=payload.status,
        payment_status=payload.payment_status,
        order_type=payload.order_type,
        order_time=to_utc(payload.order_time) if payload.order_time else now,
        created_by=user.id,
        created_at=now,
        updated_at=now,
        items=_order_items(payload.items),
    )
    if payload.order_number:
        order.order_number = payload.order_number
        db.add(order)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise HTTPException(status_code=400, detail="order number already exists")
        db.refresh(order)
    else:
        try:
            order_numbers.insert_order(db, order)
        except order_numbers.OrderNumberExhausted:
            logger.exception("order creation failed for user %s", user.id, extra={"user_id": user.id})
            raise HTTPException(status_code=500, detail="failed to allocate order number")
    return {"data": _order_data(order), "meta": _meta()}


@app.get("/api/orders", tags=["Orders"])
def list_orders(
    date_range: Optional[str] = Query(default="today"),
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    status: Optional[str] = Query(default=None),
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    try:
        lower, upper = resolve_order_list_range(date_range, start, end)
    except InvalidDateRange as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    query = select(Order)
    if lower is not None and upper is not None:
        query = query.where(Order.order_time >= to_utc(lower), Order.order_time <= to_utc(upper))
    if status is not None:
        query = query.where(Order.status == status)
    orders = db.scalars(query.order_by(Order.order_time.desc(), Order.id.desc())).all()
    return {"data": [_order_data(order) for order in orders], "meta": _meta()}


@app.get("/api/orders/{order_ref}", tags=["Orders"])
def get_order(
    order_ref: str,
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": _order_data(_find_order(db, order_ref)), "meta": _meta()}


@app.put("/api/orders/{order_ref}", tags=["Orders"])
def update_order(
    order_ref: str,
    payload: OrderUpdate,
    _: User = Depends(require_permission("manage_orders")),
    db: Session = Depends(get_db),
) -> dict:
    order = _find_order(db, order_ref)
    changes = payload.model_dump(exclude_unset=True, exclude={"items"})
    for field, value in changes.items():
        if value is not None:
            setattr(order, field, value)
    if payload.items is not None:
        order.items = _order_items(payload.items)
    order.updated_at = _now()
    db.commit()
    db.refresh(order)
    return {"data": _order_data(order), "meta": _meta()}


@app.delete("/api/orders/{order_ref}", tags=["Orders"])
def delete_order(
    order_ref: str,
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    order = _find_order(db, order_ref)
    data = {"order_id": order.id, "order_number": order.order_number, "deleted": True}
    db.delete(order)
    db.commit()
    return {"data": data, "meta": _meta()}


# Cash notes


def _cash_note_data(note: CashNote) -> dict:
    return {
        "id": note.id,
        "type": note.type,
        "amount": _money(note.amount),
        "description": note.description,
        "date": _iso(note.date),
        "created_by": note.created_by,
        "created_at": _iso(note.created_at),
        "updated_at": _iso(note.updated_at),
    }


class CashNoteCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'type': 'debit', 'amount': 450.0, 'description': 'Vegetables', 'date': '2025-09-20T10:00:00+05:30'}}}
    type: Literal["credit", "debit"]
    amount: Decimal = Field(ge=0)
    description: str = ""
    date: datetime


class CashNoteUpdate(BaseModel):
    type: Optional[Literal["credit", "debit"]] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    description: Optional[str] = None
    date: Optional[datetime] = None


@app.get("/api/cash-notes", tags=["Cash Notes"])
def list_cash_notes(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=500),
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    criteria = []
    if start is not None:
        criteria.append(CashNote.date >= to_utc(start))
    if end is not None:
        criteria.append(CashNote.date <= to_utc(end))
    total = db.scalar(select(func.count(CashNote.id)).where(*criteria))
    notes = db.scalars(
        select(CashNote)
        .where(*criteria)
        .order_by(CashNote.date.desc(), CashNote.created_at.desc(), CashNote.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return {
        "data": {"notes": [_cash_note_data(note) for note in notes], "total": total},
        "meta": _page_meta(page, page_size, total),
    }


@app.post("/api/cash-notes", tags=["Cash Notes"], status_code=201)
def create_cash_note(
    payload: CashNoteCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    now = _now()
    note = CashNote(
        type=payload.type,
        amount=payload.amount,
        description=payload.description.strip(),
        date=to_utc(payload.date),
        created_by=user.id,
        created_at=now,
        updated_at=now,
    )
    db.add(note)
    db.commit()
    db.refresh(note)
    return {"data": _cash_note_data(note), "meta": _meta()}


@app.get("/api/cash-notes/{note_id}", tags=["Cash Notes"])
def get_cash_note(
    note_id: int,
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    note = db.get(CashNote, note_id)
    if not note:
        raise HTTPException(status_code=404, detail="cash note not found")
    return {"data": _cash_note_data(note), "meta": _meta()}


@app.put("/api/cash-notes/{note_id}", tags=["Cash Notes"])
def update_cash_note(
    note_id: int,
    payload: CashNoteUpdate,
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    note = db.get(CashNote, note_id)
    if not note:
        raise HTTPException(status_code=404, detail="cash note not found")
    changes = payload.model_dump(exclude_unset=True)
    for field, value in changes.items():
        if value is None:
            continue
        setattr(note, field, to_utc(value) if field == "date" else value)
    note.updated_at = _now()
    db.commit()
    db.refresh(note)
    return {"data": _cash_note_data(note), "meta": _meta()}


@app.delete("/api/cash-notes/{note_id}", tags=["Cash Notes"])
def delete_cash_note(
    note_id: int,
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    note = db.get(CashNote, note_id)
    if not note:
        raise HTTPException(status_code=404, detail="cash note not found")
    db.delete(note)
    db.commit()
    return {"data": {"cash_note_id": note_id, "deleted": True}, "meta": _meta()}


# Reports and dashboard


@app.get("/api/reports", tags=["Reports"])
def get_report(
    date_range: Optional[str] = Query(default="7days", alias="dateRange"),
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    _: User = Depends(require_permission("view_reports")),
    db: Session = Depends(get_db),
) -> dict:
    tz = get_timezone()
    try:
        from_dt, to_dt = resolve_report_range(date_range, start_date, end_date, tz=tz)
    except InvalidDateRange as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return reports.build_report(db, from_dt, to_dt, tz=tz)


@app.get("/api/dashboard", tags=["Dashboard"])
def get_dashboard(
    _: User = Depends(require_permission("view_dashboard")),
    db: Session = Depends(get_db),
) -> dict:
    tz = get_timezone()
    today = _now().astimezone(tz).date()
    lower = to_utc(start_of_day(today, tz))
    upper = to_utc(end_of_day(today, tz))
    in_today = (Order.order_time >= lower, Order.order_time <= upper)

    order_count = db.scalar(select(func.count(Order.id)).where(*in_today))
    pending = db.scalar(
        select(func.count(Order.id)).where(*in_today, Order.status.in_(["Pending", "Waiting"]))
    )
    earnings = db.scalar(
        select(func.coalesce(func.sum(Order.final_amount), 0)).where(
            *in_today, *reports.revenue_orders()
        )
    )
    debit_total, debit_count = db.execute(
        select(func.coalesce(func.sum(CashNote.amount), 0), func.count(CashNote.id)).where(
            CashNote.type == "debit", CashNote.date >= lower, CashNote.date <= upper
        )
    ).one()
    menu_items = db.scalar(select(func.count(SubCategory.id)).where(SubCategory.status == "active"))
    return {
        "data": {
            "today_orders": {"count": order_count, "pending": pending},
            "today_earnings": {"amount": _money(earnings)},
            "today_debit": {"amount": _money(debit_total), "count": debit_count},
            "total_menu_items": {"count": menu_items},
        },
        "meta": _meta(),
    }


# Settings and printing


def _load_settings(db: Session) -> RestaurantSettings:
    stored = db.scalar(select(RestaurantSettings).order_by(RestaurantSettings.id))
    if stored:
        return stored
    stored = RestaurantSettings(
        restaurant_name="POSBill Restaurant",
        address="123 Main Street",
        phone="9876543210",
        email="info@posbill.local",
        currency="INR",
        timezone=settings.timezone,
        tax_rate=Decimal("18"),
        service_charge=Decimal("0"),
        printer_host=settings.printer_host,
        printer_port=settings.printer_port,
        metadata_json={
            "operating_hours": {"open": "09:00", "close": "23:00", "is_open_24_hours": False},
            "payment_methods": {"cash": True, "card": True, "upi": True, "online": False},
        },
        updated_at=_now(),
    )
    db.add(stored)
    db.commit()
    db.refresh(stored)
    return stored


def _settings_data(stored: RestaurantSettings) -> dict:
    return {
        "restaurant_name": stored.restaurant_name,
        "address": stored.address,
        "phone": stored.phone,
        "email": stored.email,
        "gst_number": stored.gst_number,
        "currency": stored.currency,
        "timezone": stored.timezone,
        "tax_rate": _money(stored.tax_rate),
        "service_charge": _money(stored.service_charge),
        "printer_host": stored.printer_host,
        "printer_port": stored.printer_port,
        "metadata": stored.metadata_json or {},
        "updated_at": _iso(stored.updated_at),
    }


class SettingsUpdate(BaseModel):
    restaurant_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    address: Optional[str] = Field(default=None, min_length=1, max_length=500)
    phone: Optional[str] = Field(default=None, pattern=r"^[0-9]{10}$")
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN)
    gst_number: Optional[str] = None
    currency: Optional[Literal["INR", "USD", "EUR", "GBP"]] = None
    timezone: Optional[str] = None
    tax_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)
    service_charge: Optional[Decimal] = Field(default=None, ge=0, le=100)
    printer_host: Optional[str] = None
    printer_port: Optional[int] = Field(default=None, ge=1, le=65535)
    metadata: Optional[dict] = None


@app.get("/api/settings", tags=["Settings"])
def get_settings(
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": _settings_data(_load_settings(db)), "meta": _meta()}


@app.put("/api/settings", tags=["Settings"])
def update_settings(
    payload: SettingsUpdate,
    _: User = Depends(require_permission("manage_settings")),
    db: Session = Depends(get_db),
) -> dict:
    stored = _load_settings(db)
    changes = payload.model_dump(exclude_unset=True)
    if "metadata" in changes:
        stored.metadata_json = changes.pop("metadata")
    for field, value in changes.items():
        setattr(stored, field, value)
    stored.updated_at = _now()
    db.commit()
    db.refresh(stored)
    return {"data": _settings_data(stored), "meta": _meta()}


class PrintRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {'printer_host': '192.168.1.50', 'printer_port': 9100, 'order_ref': '12-20250920'}}}
    printer_host: Optional[str] = None
    printer_port: Optional[int] = Field(default=None, ge=1, le=65535)
    order_ref: Optional[str] = None


def _printer_address(db: Session, host: Optional[str], port: Optional[int]) -> tuple[Optional[str], int]:
    host = host or settings.printer_host
    if not host or not port:
        stored = _load_settings(db)
        host = host or stored.printer_host
        port = port or stored.printer_port
    return host, port or settings.printer_port


@app.get("/api/print", tags=["Printing"])
def get_printer(
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    host, port = _printer_address(db, None, None)
    return {"data": {"printer_host": host, "printer_port": port}, "meta": _meta()}


@app.post("/api/print", tags=["Printing"])
def print_receipt(
    payload: PrintRequest,
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    host, port = _printer_address(db, payload.printer_host, payload.printer_port)
    if not host:
        raise HTTPException(status_code=400, detail="printer_host is required")
    restaurant_name = _load_settings(db).restaurant_name
    if payload.order_ref:
        order = _find_order(db, payload.order_ref)
        receipt = printing.build_order_receipt(order, restaurant_name)
    else:
        receipt = printing.build_test_receipt(_now().astimezone(get_timezone()), restaurant_name)
    try:
        printing.send_to_printer(host, port, receipt, timeout=settings.printer_timeout)
    except printing.PrinterError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {
        "data": {"printed": True, "printer_host": host, "printer_port": port, "bytes": len(receipt)},
        "meta": _meta(),
    }
