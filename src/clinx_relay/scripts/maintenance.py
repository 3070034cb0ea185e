"""
Operational helpers meant for cron jobs and local development.

Subcommands:
1. ``sweep-invites``: delete expired, unaccepted team invites
2. ``create-tables``: create every table without running migrations
3. ``issue-token``: print a bearer token for a user id
"""

import argparse
import logging

from sqlalchemy.orm import Session

from clinx_relay.core.security import create_access_token
from clinx_relay.db.session import SessionLocal, create_tables
from clinx_relay.services import users as user_service
from clinx_relay.services.invites import sweep_expired

logger = logging.getLogger(__name__)


def sweep_invites(db: Session) -> int:
    """Remove expired invites and report how many went away."""
    removed = sweep_expired(db)
    print(f"Removed {removed} expired team invites")
    return removed


def issue_token(db: Session, user_id: int) -> str:
    user = user_service.require_user(db, user_id)
    token = create_access_token(user.id)
    print(token)
    return token


def main() -> None:
    parser = argparse.ArgumentParser(description="Clinx Relay maintenance tasks")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("sweep-invites", help="Delete expired team invites")
    sub.add_parser("create-tables", help="Create all tables from model metadata")
    token_parser = sub.add_parser("issue-token", help="Print a bearer token for a user")
    token_parser.add_argument("user_id", type=int)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    if args.command == "create-tables":
        create_tables()
        print("Database tables created.")
        return

    db = SessionLocal()
    try:
        if args.command == "sweep-invites":
            sweep_invites(db)
        else:
            issue_token(db, args.user_id)
    finally:
        db.close()


if __name__ == "__main__":
    main()
