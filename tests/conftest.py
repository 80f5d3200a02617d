import secrets
from typing import Dict, Tuple
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from auth import pkce_challenge
from config import Config
from credentials import hash_password
from database import Database, Post, User
from main import create_app

PASSWORD = "password123"
REDIRECT_URI = "https://app.example/cb"


async def seed_users(database: Database) -> Dict[str, int]:
    """Two users, each with one published post and one draft"""
    ids = {}
    async with database.session() as session:
        for email, name in (("alice@example.com", "Alice"), ("bob@example.com", "Bob")):
            user = User(email=email, name=name, password=hash_password(PASSWORD, rounds=4))
            session.add(user)
            await session.flush()
            session.add_all([
                Post(title=f"{name}'s published post", content="Hello world", published=True, author_id=user.id),
                Post(title=f"{name}'s draft", content="Work in progress", published=False, author_id=user.id),
            ])
            ids[email] = user.id
        await session.commit()
    return ids


def query_params(url: str) -> Dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


@pytest.fixture
def config(monkeypatch, tmp_path) -> Config:
    monkeypatch.setenv("ENVIRONMENT", "testing")
    monkeypatch.setenv("BASE_URL", "http://testserver")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    monkeypatch.setenv("LOGIN_RESPONSE_MODE", "redirect")
    monkeypatch.setenv("TOKEN_STORE", "database")
    monkeypatch.delenv("BOOTSTRAP_CLIENT_ID", raising=False)
    return Config()


@pytest.fixture
async def database(config):
    db = Database(config.database_url)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
async def users(database) -> Dict[str, int]:
    return await seed_users(database)


@pytest.fixture
def pkce() -> Tuple[str, str]:
    verifier = secrets.token_urlsafe(48)
    return verifier, pkce_challenge(verifier)


@pytest.fixture
async def app(config):
    app = create_app(config)
    async with app.router.lifespan_context(app):
        yield app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http_client:
        yield http_client


@pytest.fixture
async def app_users(app) -> Dict[str, int]:
    return await seed_users(app.state.database)


@pytest.fixture
async def registered_client(client) -> Dict:
    response = await client.post("/oauth/register", json={
        "client_name": "Example App",
        "redirect_uris": [REDIRECT_URI],
    })
    assert response.status_code == 201
    return response.json()


@pytest.fixture
async def tokens(app, app_users):
    """Token factory: (user email, scopes) -> access token"""
    async def issue(email: str = "alice@example.com", scopes=("read", "write")) -> str:
        access_token, _, _ = await app.state.ledger.issue_token_pair("test-client", app_users[email], list(scopes))
        return access_token
    return issue
