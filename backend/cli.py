"""CLI tool for admin operations.

Usage:
    python -m backend.cli create-user [--admin]
    python -m backend.cli issue-token <username>
    python -m backend.cli sweep
    python -m backend.cli reconcile
"""

import asyncio
import sys

from sqlmodel import Session, select

from backend.config import settings
from backend.database import engine, create_db_and_tables
from backend.models.user import User
from backend.services.auth import create_access_token
from backend.utils.logging import setup_logging


def create_user(admin: bool = False):
    """Create a user with the configured starting balance."""
    create_db_and_tables()

    username = input("Username: ").strip()
    if not username:
        print("Username cannot be empty.")
        sys.exit(1)

    with Session(engine) as session:
        existing = session.exec(select(User).where(User.username == username)).first()
        if existing:
            print(f"User '{username}' already exists.")
            sys.exit(1)

        user = User(username=username, is_admin=admin, balance=settings.starting_balance)
        session.add(user)
        session.commit()
        session.refresh(user)

    role = "Admin user" if admin else "User"
    print(f"\n{role} '{username}' created (id={user.id}, balance={user.balance}).")
    print(f"Access token: {create_access_token(user.id)}")


def issue_token(username: str):
    with Session(engine) as session:
        user = session.exec(select(User).where(User.username == username)).first()
    if not user or not user.is_active:
        print(f"User '{username}' not found or inactive.")
        sys.exit(1)
    print(create_access_token(user.id))


def run_sweep():
    """Run one expiry sweep against the configured database."""
    from backend.engine.auto_closer import get_evaluator

    create_db_and_tables()
    report = asyncio.run(get_evaluator().run_expiry_sweep())
    print(f"Sweep {report.status}: {report.summary()}")
    if report.failed:
        sys.exit(2)


def run_reconcile():
    from backend.engine.rating import rating_engine

    create_db_and_tables()
    count = rating_engine.reconcile_all()
    print(f"Reconciled ratings for {count} users.")


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m backend.cli <command>")
        print("Commands: create-user [--admin], issue-token <username>, sweep, reconcile")
        sys.exit(1)

    setup_logging()
    command = sys.argv[1]
    if command == "create-user":
        create_user(admin="--admin" in sys.argv[2:])
    elif command == "issue-token":
        if len(sys.argv) < 3:
            print("Usage: python -m backend.cli issue-token <username>")
            sys.exit(1)
        issue_token(sys.argv[2])
    elif command == "sweep":
        run_sweep()
    elif command == "reconcile":
        run_reconcile()
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
