import argparse
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from posbill.auth import hash_password, permissions_for
from posbill.config import settings
from posbill.dates import utc_now
from posbill.db import Base, SessionLocal, engine
from posbill.models import User


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Create tables and the super admin account.")
    parser.add_argument("--name", default="Super Admin")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    args = parser.parse_args(argv)

    if len(args.password) < 6:
        print("password must be at least 6 characters")
        return 2

    print(f"DATABASE_URL={settings.database_url}")
    try:
        Base.metadata.create_all(bind=engine)
        with SessionLocal() as db:
            email = args.email.strip().lower()
            if db.scalar(select(User.id).where(User.email == email)) is not None:
                print(f"user {email} already exists")
                return 1
            now = utc_now()
            db.add(
                User(
                    name=args.name,
                    email=email,
                    password_hash=hash_password(args.password),
                    role="admin",
                    permissions=permissions_for("admin"),
                    is_active=True,
                    is_super=True,
                    created_at=now,
                    updated_at=now,
                )
            )
            db.commit()
    except SQLAlchemyError as exc:
        print("DB setup FAILED")
        print(exc)
        return 1
    print(f"super admin {email} created")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
