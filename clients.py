"""
Registry of OAuth clients.

Reads are served from an in-memory cache filled from the database by
``initialize()``. Until that has run, ``get()`` returns None instead of
waiting on storage. New registrations land in the cache immediately and are
written to the database in the background; if that write fails the cache
entry is removed again.
"""

import asyncio
import hmac
import logging
import secrets
import time
import uuid
from typing import Dict, List, Optional, Set

from sqlalchemy import delete, select

from auth import OAuthError
from config import Config
from database import Database, OAuthClientRow
from models import ClientRegistrationRequest, OAuthClient

logger = logging.getLogger(__name__)


class ClientRegistry:
    """Cached catalogue of registered OAuth clients"""

    def __init__(self, config: Config, database: Database):
        self.config = config
        self.database = database
        self._clients: Dict[str, OAuthClient] = {}
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()
        self.initialized = False

    async def initialize(self):
        """Load every stored client into the cache"""
        if self.initialized:
            return

        try:
            logger.info("Loading OAuth clients from database...")
            async with self.database.session() as session:
                rows = (await session.execute(select(OAuthClientRow))).scalars().all()

            async with self._lock:
                for row in rows:
                    self._clients[row.client_id] = self._from_row(row)

            logger.info(f"Loaded {len(rows)} OAuth clients from database")
        except Exception as e:
            logger.error(f"Error loading clients from database: {e}")
        finally:
            # Marked even on error so lookups stop reporting the startup window
            self.initialized = True

    def get(self, client_id: str) -> Optional[OAuthClient]:
        if not self.initialized:
            logger.warning(f"Clients not initialized yet, returning None for client: {client_id}")
            return None
        return self._clients.get(client_id)

    def __len__(self) -> int:
        return len(self._clients)

    async def register(self, request: ClientRegistrationRequest) -> OAuthClient:
        """Register a client, generating any missing credentials"""
        scope = request.scope or " ".join(self.config.oauth_scopes)
        unsupported = [s for s in scope.split() if s not in self.config.oauth_scopes]
        if unsupported:
            raise OAuthError("invalid_client_metadata", f"Unsupported scope: {' '.join(unsupported)}")

        now = int(time.time())
        client = OAuthClient(
            client_id=str(uuid.uuid4()),
            client_secret=None if request.token_endpoint_auth_method == "none" else secrets.token_hex(32),
            client_name=request.client_name,
            redirect_uris=request.redirect_uris,
            grant_types=request.grant_types,
            response_types=request.response_types,
            scope=scope,
            client_id_issued_at=now,
            client_secret_expires_at=0 if request.token_endpoint_auth_method == "none" else now + self.config.client_secret_expiry
        )
        await self._cache_and_persist(client)
        logger.info(f"Registered new client: {client.client_id} ({client.client_name or 'unnamed'})")
        return client

    async def ensure_client(
        self,
        client_id: str,
        client_secret: Optional[str],
        redirect_uris: List[str],
        client_name: Optional[str] = None
    ) -> OAuthClient:
        """Create or overwrite a statically configured client and wait for it to be stored"""
        client = OAuthClient(
            client_id=client_id,
            client_secret=client_secret,
            client_name=client_name or client_id,
            redirect_uris=redirect_uris,
            scope=" ".join(self.config.oauth_scopes),
            client_id_issued_at=int(time.time()),
            client_secret_expires_at=0
        )
        async with self._lock:
            self._clients[client_id] = client
        await self._persist(client)
        logger.info(f"Bootstrap client ready: {client_id}")
        return client

    async def rotate_secret(self, client_id: str) -> OAuthClient:
        """Issue a fresh secret for an existing client"""
        async with self._lock:
            current = self._clients.get(client_id)
            if current is None:
                raise OAuthError("invalid_client", "Unknown client", status_code=401)
            rotated = current.model_copy(update={
                "client_secret": secrets.token_hex(32),
                "client_secret_expires_at": int(time.time()) + self.config.client_secret_expiry
            })
            self._clients[client_id] = rotated

        try:
            await self._persist(rotated)
        except Exception:
            async with self._lock:
                self._clients[client_id] = current
            raise

        logger.info(f"Client secret rotated: {client_id}")
        return rotated

    async def delete(self, client_id: str) -> bool:
        async with self._lock:
            removed = self._clients.pop(client_id, None)
        async with self.database.session() as session:
            result = await session.execute(delete(OAuthClientRow).where(OAuthClientRow.client_id == client_id))
            await session.commit()
        if removed is not None or result.rowcount:
            logger.info(f"Client deleted: {client_id}")
            return True
        return False

    def authenticate(self, client_id: Optional[str], client_secret: Optional[str]) -> OAuthClient:
        """Resolve and authenticate a client at the token or revocation endpoint"""
        if not client_id:
            raise OAuthError("invalid_request", "client_id is required")

        client = self.get(client_id)
        if client is None:
            raise OAuthError("invalid_client", "Invalid client_id", status_code=401)

        if client.client_secret:
            if not client_secret or not hmac.compare_digest(client.client_secret, client_secret):
                raise OAuthError("invalid_client", "Invalid client_secret", status_code=401)
            if client.client_secret_expires_at and client.client_secret_expires_at < time.time():
                raise OAuthError("invalid_client", "Client secret has expired", status_code=401)

        return client

    async def wait_persisted(self):
        """Wait for background persistence of registrations to finish"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _cache_and_persist(self, client: OAuthClient):
        async with self._lock:
            self._clients[client.client_id] = client

        task = asyncio.create_task(self._persist_or_rollback(client))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist_or_rollback(self, client: OAuthClient):
        try:
            await self._persist(client)
        except Exception as e:
            logger.error(f"Error persisting client {client.client_id} to database: {e}")
            async with self._lock:
                # A later write for the same id must not be undone
                if self._clients.get(client.client_id) is client:
                    del self._clients[client.client_id]

    async def _persist(self, client: OAuthClient):
        async with self.database.session() as session:
            await session.merge(OAuthClientRow(**client.model_dump()))
            await session.commit()

    @staticmethod
    def _from_row(row: OAuthClientRow) -> OAuthClient:
        return OAuthClient(
            client_id=row.client_id,
            client_secret=row.client_secret,
            client_name=row.client_name,
            redirect_uris=list(row.redirect_uris or []),
            grant_types=list(row.grant_types or []),
            response_types=list(row.response_types or []),
            scope=row.scope or "",
            client_id_issued_at=row.client_id_issued_at or 0,
            client_secret_expires_at=row.client_secret_expires_at or 0
        )
