#!/usr/bin/env python3
"""
Issue or revoke a user's API token.

Usage:
    python scripts/update_api_token.py <user_id>            # issue a new token
    python scripts/update_api_token.py <user_id> --remove   # revoke

Issuing replaces the stored credential, so any token handed out before stops
working immediately.
"""

import argparse
import sys
from typing import List, Optional


def update_user_api_token(user_id: int, remove: bool = False, session_factory=None) -> Optional[str]:
    """
    Rotate or clear the stored credential of ``user_id``.

    Returns the new token (None when removing). Raises LookupError if the
    user does not exist.
    """
    from sqlalchemy import select

    from docket_api.auth import create_api_token
    from docket_api.db.models import User
    from docket_api.db.session import session_scope
    from docket_api.token_store import CredentialStore

    with session_scope(session_factory) as db:
        user = db.execute(select(User.id, User.username).where(User.id == user_id)).first()
    if user is None:
        raise LookupError(f"User with ID {user_id} not found.")

    store = CredentialStore(session_factory)
    if remove:
        store.clear_credential(user.id)
        return None

    token = create_api_token(user.id, user.username)
    store.store_credential(user.id, token)
    return token


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Issue or revoke a user's API token.")
    parser.add_argument("user_id", type=int, help="ID of the user")
    parser.add_argument("--remove", action="store_true", help="Remove the token instead of issuing one")
    args = parser.parse_args(argv)

    from docket_api.db.session import init_db

    init_db()

    try:
        token = update_user_api_token(args.user_id, remove=args.remove)
    except LookupError as e:
        print(str(e), file=sys.stderr)
        return 1

    if args.remove:
        print(f"API token removed for user ID {args.user_id}")
    else:
        print(f"API token generated for user ID {args.user_id}")
        print(f"Token: {token}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
