"""
Storage backings for the token ledger.

Three kinds of artifact are kept: authorization codes, access tokens and
refresh tokens. Keys are SHA-256 digests of the secret values. ``take`` is the
only way to consume an artifact: it deletes and returns in one step, so two
concurrent redemptions of the same code or refresh token cannot both succeed.
``rotate`` is ``take`` plus the writes of the replacement tokens, committed
together, and ``put_many`` writes a token pair as a unit.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple, Type, Union

from sqlalchemy import delete, func, select

from database import AccessTokenRow, AuthorizationCodeRow, Database, RefreshTokenRow
from models import AuthorizationCode, IssuedToken

logger = logging.getLogger(__name__)

CODE = "code"
ACCESS = "access"
REFRESH = "refresh"
KINDS = (CODE, ACCESS, REFRESH)

Record = Union[AuthorizationCode, IssuedToken]
Entry = Tuple[str, str, Record]


class TokenStore(ABC):
    """put/get/take/delete over the three artifact kinds"""

    @abstractmethod
    async def put(self, kind: str, key: str, record: Record) -> None:
        ...

    @abstractmethod
    async def put_many(self, entries: List[Entry]) -> None:
        """Write every (kind, key, record) entry, or none of them"""

    @abstractmethod
    async def get(self, kind: str, key: str) -> Optional[Record]:
        ...

    @abstractmethod
    async def take(self, kind: str, key: str) -> Optional[Record]:
        """Atomically delete and return the record, or None if it is gone"""

    @abstractmethod
    async def rotate(self, kind: str, key: str, entries: List[Entry]) -> Optional[Record]:
        """Take the record at key and write entries in one step.

        Returns the taken record. When it is already gone nothing is written
        and None is returned.
        """

    @abstractmethod
    async def delete(self, kind: str, key: str) -> bool:
        ...

    @abstractmethod
    async def purge_expired(self, now: float) -> Dict[str, int]:
        """Delete every record whose expiry has passed; returns counts per kind"""

    @abstractmethod
    async def count(self, kind: str) -> int:
        ...


class MemoryTokenStore(TokenStore):
    """Process-local store backed by dicts"""

    def __init__(self):
        self._records: Dict[str, Dict[str, Record]] = {kind: {} for kind in KINDS}
        self._lock = asyncio.Lock()

    async def put(self, kind: str, key: str, record: Record) -> None:
        async with self._lock:
            self._records[kind][key] = record

    async def put_many(self, entries: List[Entry]) -> None:
        async with self._lock:
            for kind, key, record in entries:
                self._records[kind][key] = record

    async def get(self, kind: str, key: str) -> Optional[Record]:
        return self._records[kind].get(key)

    async def take(self, kind: str, key: str) -> Optional[Record]:
        async with self._lock:
            return self._records[kind].pop(key, None)

    async def rotate(self, kind: str, key: str, entries: List[Entry]) -> Optional[Record]:
        async with self._lock:
            taken = self._records[kind].pop(key, None)
            if taken is None:
                return None
            for entry_kind, entry_key, record in entries:
                self._records[entry_kind][entry_key] = record
        return taken

    async def delete(self, kind: str, key: str) -> bool:
        async with self._lock:
            return self._records[kind].pop(key, None) is not None

    async def purge_expired(self, now: float) -> Dict[str, int]:
        counts = {}
        async with self._lock:
            for kind, records in self._records.items():
                expired = [key for key, record in records.items() if now > record.expires_at]
                for key in expired:
                    del records[key]
                counts[kind] = len(expired)
        return counts

    async def count(self, kind: str) -> int:
        return len(self._records[kind])


class DatabaseTokenStore(TokenStore):
    """Store backed by the SQL database"""

    _tables = {
        CODE: (AuthorizationCodeRow, "code_hash"),
        ACCESS: (AccessTokenRow, "token_hash"),
        REFRESH: (RefreshTokenRow, "token_hash"),
    }

    def __init__(self, database: Database):
        self.database = database

    def _table(self, kind: str):
        table, key_column = self._tables[kind]
        return table, getattr(table, key_column), key_column

    @staticmethod
    def _model_for(kind: str) -> Type[Record]:
        return AuthorizationCode if kind == CODE else IssuedToken

    def _to_record(self, kind: str, row) -> Record:
        model = self._model_for(kind)
        return model(**{name: getattr(row, name) for name in model.model_fields})

    async def put(self, kind: str, key: str, record: Record) -> None:
        await self.put_many([(kind, key, record)])

    def _rows(self, entries: List[Entry]) -> list:
        rows = []
        for kind, key, record in entries:
            table, _, key_column = self._table(kind)
            rows.append(table(**{key_column: key}, **record.model_dump()))
        return rows

    async def put_many(self, entries: List[Entry]) -> None:
        async with self.database.session() as session:
            session.add_all(self._rows(entries))
            await session.commit()

    async def get(self, kind: str, key: str) -> Optional[Record]:
        table, column, _ = self._table(kind)
        async with self.database.session() as session:
            row = (await session.execute(select(table).where(column == key))).scalar_one_or_none()
            return self._to_record(kind, row) if row is not None else None

    async def take(self, kind: str, key: str) -> Optional[Record]:
        table, column, _ = self._table(kind)
        async with self.database.session() as session:
            result = await session.execute(delete(table).where(column == key).returning(table))
            row = result.scalar_one_or_none()
            record = self._to_record(kind, row) if row is not None else None
            await session.commit()
        return record

    async def rotate(self, kind: str, key: str, entries: List[Entry]) -> Optional[Record]:
        table, column, _ = self._table(kind)
        async with self.database.session() as session:
            result = await session.execute(delete(table).where(column == key).returning(table))
            row = result.scalar_one_or_none()
            if row is None:
                await session.rollback()
                return None
            taken = self._to_record(kind, row)
            # The delete is only committed together with the new rows
            session.add_all(self._rows(entries))
            await session.commit()
        return taken

    async def delete(self, kind: str, key: str) -> bool:
        table, column, _ = self._table(kind)
        async with self.database.session() as session:
            result = await session.execute(delete(table).where(column == key))
            await session.commit()
        return result.rowcount > 0

    async def purge_expired(self, now: float) -> Dict[str, int]:
        counts = {}
        async with self.database.session() as session:
            for kind in KINDS:
                table, _, _ = self._table(kind)
                result = await session.execute(delete(table).where(table.expires_at < now))
                counts[kind] = result.rowcount
            await session.commit()
        return counts

    async def count(self, kind: str) -> int:
        table, column, _ = self._table(kind)
        async with self.database.session() as session:
            return (await session.execute(select(func.count(column)))).scalar_one()


def create_token_store(kind: str, database: Database) -> TokenStore:
    """Build the store selected by TOKEN_STORE"""
    if kind == "memory":
        logger.info("Using in-memory token store")
        return MemoryTokenStore()
    logger.info("Using database token store")
    return DatabaseTokenStore(database)
