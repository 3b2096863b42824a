"""
API Credential Store
====================

Reads and rotates the single API credential each user currently holds
(``users.api_access_token``). Revocation is immediate: clearing or replacing
the stored value invalidates every previously issued token on the next
request, without waiting for the token's own expiry.
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from .db.models import User
from .db.session import session_scope

logger = logging.getLogger(__name__)


class CredentialStore:
    """Data-store accessor for the currently valid API credential per user."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def get_active_credential(self, user_id: int) -> Optional[str]:
        """
        Return the stored credential for ``user_id``.

        Returns None if the user does not exist or holds no credential.
        Data-store errors propagate; the verifier decides how to fail.
        """
        with session_scope(self.session_factory) as db:
            return db.execute(
                select(User.api_access_token).where(User.id == user_id)
            ).scalar_one_or_none()

    def store_credential(self, user_id: int, token: str) -> bool:
        """Replace the user's credential. Returns False if the user is unknown."""
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(User).where(User.id == user_id).values(api_access_token=token)
            )
            stored = result.rowcount > 0

        if stored:
            logger.info(f"API credential rotated for user {user_id}")
        else:
            logger.warning(f"Cannot store credential: user {user_id} not found")
        return stored

    def clear_credential(self, user_id: int) -> bool:
        """Revoke the user's credential. Returns False if the user is unknown."""
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(User).where(User.id == user_id).values(api_access_token=None)
            )
            cleared = result.rowcount > 0

        if cleared:
            logger.info(f"API credential revoked for user {user_id}")
        return cleared
