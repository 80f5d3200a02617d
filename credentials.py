import asyncio
import logging
from typing import Optional

import bcrypt
from sqlalchemy import select

from database import Database, User

logger = logging.getLogger(__name__)


def hash_password(password: str, rounds: int = 12) -> str:
    """Hash a password with bcrypt"""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash, or a password longer than bcrypt accepts
        return False


# Compared against when the email is unknown so both failure paths cost one bcrypt check
_DUMMY_HASH = hash_password("records-mcp-dummy-password")


class CredentialStore:
    """Verifies user passwords against the bcrypt hashes stored on user records"""

    def __init__(self, database: Database):
        self.database = database

    async def verify(self, email: str, password: str) -> Optional[int]:
        """Return the user id when the password matches, otherwise None"""
        if not email or not password:
            return None

        async with self.database.session() as session:
            result = await session.execute(select(User.id, User.password).where(User.email == email))
            row = result.first()

        if row is None or not row.password:
            await asyncio.to_thread(check_password, password, _DUMMY_HASH)
            logger.warning(f"Login failed for unknown or passwordless account: {email}")
            return None

        if not await asyncio.to_thread(check_password, password, row.password):
            logger.warning(f"Login failed for user {row.id}: wrong password")
            return None

        return row.id
