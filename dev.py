#!/usr/bin/env python3

"""
Development utility for Records Remote MCP Server
"""

import argparse
import asyncio
import getpass
import os
import secrets
import subprocess
import sys
from pathlib import Path

DEMO_PASSWORD = "password123"

DEMO_USERS = [
    {
        "email": "alex@zenstack.dev",
        "name": "Alex",
        "posts": [
            {"title": "Getting started with access policies", "content": "Policies decide who sees what.", "published": True},
            {"title": "Draft: session transports", "content": "Notes on Streamable HTTP.", "published": False},
        ],
    },
    {
        "email": "sarah@stripe.com",
        "name": "Sarah",
        "posts": [
            {"title": "Idempotency keys in practice", "content": "Retries without double charges.", "published": True},
        ],
    },
    {
        "email": "jordan@vercel.com",
        "name": "Jordan",
        "posts": [
            {"title": "Edge caching notes", "content": "Unpublished thoughts.", "published": False},
        ],
    },
]

TEST_CLIENT_ID = "test_client"
TEST_CLIENT_SECRET = "test_secret"
TEST_REDIRECT_URIS = ["http://localhost:8000/callback"]


def run_command(cmd, check=True, capture_output=False):
    """Run a shell command"""
    print(f"🔧 Running: {cmd}")
    result = subprocess.run(cmd, shell=True, check=check, capture_output=capture_output, text=True)
    if capture_output:
        return result.stdout.strip()
    return result.returncode == 0


def run_server():
    """Run development server"""
    print("🚀 Starting development server...")
    os.environ.setdefault("ENVIRONMENT", "development")
    run_command("uvicorn main:app --reload --host 0.0.0.0 --port 8000", check=False)


def run_tests():
    """Run the test suite"""
    print("🧪 Running tests...")
    return run_command(f"{sys.executable} -m pytest -q", check=False)


async def _seed():
    from sqlalchemy import select

    from clients import ClientRegistry
    from config import Config
    from credentials import hash_password
    from database import Database, Post, User

    config = Config()
    database = Database(config.database_url)
    try:
        await database.create_all()

        async with database.session() as session:
            for demo in DEMO_USERS:
                existing = (await session.execute(select(User).where(User.email == demo["email"]))).scalar_one_or_none()
                if existing is not None:
                    print(f"   ↩️  User exists: {demo['email']}")
                    continue
                user = User(email=demo["email"], name=demo["name"], password=hash_password(DEMO_PASSWORD))
                session.add(user)
                await session.flush()
                session.add_all(Post(author_id=user.id, **post) for post in demo["posts"])
                print(f"   👤 Created user: {demo['email']} ({len(demo['posts'])} posts)")
            await session.commit()

        registry = ClientRegistry(config, database)
        await registry.initialize()
        await registry.ensure_client(TEST_CLIENT_ID, TEST_CLIENT_SECRET, TEST_REDIRECT_URIS, client_name="Test Client")
        print(f"   🔑 Test client: {TEST_CLIENT_ID} / {TEST_CLIENT_SECRET}")
    finally:
        await database.close()


def seed():
    """Create demo users, posts and a test client"""
    print("🌱 Seeding database...")
    asyncio.run(_seed())
    print(f"✅ Seed complete. Demo users log in with password '{DEMO_PASSWORD}'")


async def _register_client(name, redirect_uris, public):
    from clients import ClientRegistry
    from config import Config
    from database import Database
    from models import ClientRegistrationRequest

    config = Config()
    database = Database(config.database_url)
    try:
        await database.create_all()
        registry = ClientRegistry(config, database)
        await registry.initialize()
        client = await registry.register(ClientRegistrationRequest(
            client_name=name,
            redirect_uris=redirect_uris,
            token_endpoint_auth_method="none" if public else "client_secret_post"
        ))
        await registry.wait_persisted()
        return client
    finally:
        await database.close()


def register_client(name, redirect_uris, public=False):
    """Register an OAuth client directly in the database"""
    print(f"📝 Registering client '{name}'...")
    client = asyncio.run(_register_client(name, redirect_uris, public))
    print(f"✅ client_id:     {client.client_id}")
    if client.client_secret:
        print(f"🔑 client_secret: {client.client_secret}")
    print(f"↪️  redirect_uris: {', '.join(client.redirect_uris)}")


async def _rotate_secret(client_id):
    from clients import ClientRegistry
    from config import Config
    from database import Database

    config = Config()
    database = Database(config.database_url)
    try:
        registry = ClientRegistry(config, database)
        await registry.initialize()
        return await registry.rotate_secret(client_id)
    finally:
        await database.close()


def rotate_secret(client_id):
    """Issue a new secret for an existing client"""
    from auth import OAuthError

    print(f"🔄 Rotating secret for {client_id}...")
    try:
        client = asyncio.run(_rotate_secret(client_id))
    except OAuthError as e:
        print(f"❌ {e.description}")
        return False
    print(f"🔑 New client_secret: {client.client_secret}")
    return True


def hash_password_command(password=None):
    """Print a bcrypt hash for a password"""
    from credentials import hash_password

    password = password or getpass.getpass("Password: ")
    print(hash_password(password))


def generate_secret_key():
    """Generate secure secret key"""
    secret = secrets.token_urlsafe(32)
    print(f"🔐 Generated secret: {secret}")
    print("Use it for BOOTSTRAP_CLIENT_SECRET in your .env file")
    return secret


def check_env():
    """Check environment configuration"""
    print("🔍 Checking environment configuration...")

    recommended_production = ["BASE_URL", "ALLOWED_ORIGINS", "DATABASE_URL"]
    missing_production = []
    environment = os.getenv("ENVIRONMENT", "development")
    if environment == "production":
        missing_production = [var for var in recommended_production if not os.getenv(var)]
        for var in missing_production:
            print(f"⚠️  {var} is not set (recommended for production)")

    try:
        from config import Config
        config = Config()
    except ValueError as e:
        print(f"❌ Invalid configuration: {e}")
        return False

    if not missing_production:
        print("✅ Environment configuration looks good!")

    # Show current config
    print("\n📋 Current configuration:")
    print(f"   Environment: {config.environment}")
    print(f"   Host: {config.host}")
    print(f"   Port: {config.port}")
    print(f"   Base URL: {config.base_url}")
    print(f"   Database: {config.database_url}")
    print(f"   Token store: {config.token_store}")
    print(f"   Login response mode: {config.login_response_mode}")
    print(f"   Rate limiting: {config.rate_limit_enabled}")
    if config.bootstrap_client_id:
        print(f"   Bootstrap client: {config.bootstrap_client_id}")

    return True


def status():
    """Show server status"""
    print("📊 Server Status:")
    import httpx

    base_url = os.getenv("BASE_URL", "http://localhost:8000").rstrip("/")

    async def check_health():
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}/health", timeout=5)
            return response.json()

    try:
        health = asyncio.run(check_health())
    except httpx.HTTPError as e:
        print(f"❌ Server at {base_url} is not reachable: {e}")
        return False

    print(f"✅ Server at {base_url} is running")
    print(f"   Status: {health.get('status')}")
    print(f"   Version: {health.get('version')}")
    print(f"   Environment: {health.get('environment')}")
    print(f"   Open sessions: {health.get('sessions')}")
    return True


def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(
        description="Development utility for Records Remote MCP Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python dev.py seed                                   # Create demo users, posts and a test client
  python dev.py run                                    # Run development server
  python dev.py test                                   # Run tests
  python dev.py register-client "My App" https://app.example/cb
  python dev.py rotate-secret test_client
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run development server")
    subparsers.add_parser("test", help="Run tests")
    subparsers.add_parser("seed", help="Create demo users, posts and a test client")

    register = subparsers.add_parser("register-client", help="Register an OAuth client")
    register.add_argument("name", help="Client display name")
    register.add_argument("redirect_uris", nargs="+", help="Allowed redirect URIs")
    register.add_argument("--public", action="store_true", help="Register a public client without a secret")

    rotate = subparsers.add_parser("rotate-secret", help="Rotate a client's secret")
    rotate.add_argument("client_id")

    hasher = subparsers.add_parser("hash-password", help="Print a bcrypt hash for a password")
    hasher.add_argument("password", nargs="?", help="Password (prompted when omitted)")

    subparsers.add_parser("secret", help="Generate secure secret key")
    subparsers.add_parser("check", help="Check environment configuration")
    subparsers.add_parser("status", help="Show server status")

    args = parser.parse_args()

    # Change to script directory
    os.chdir(Path(__file__).parent)

    if args.command != "hash-password":
        print("🛠️  Records Remote MCP Server - Development Utility")
        print("=" * 60)

    if args.command == "run":
        run_server()
    elif args.command == "test":
        sys.exit(0 if run_tests() else 1)
    elif args.command == "seed":
        seed()
    elif args.command == "register-client":
        register_client(args.name, args.redirect_uris, args.public)
    elif args.command == "rotate-secret":
        sys.exit(0 if rotate_secret(args.client_id) else 1)
    elif args.command == "hash-password":
        hash_password_command(args.password)
    elif args.command == "secret":
        generate_secret_key()
    elif args.command == "check":
        sys.exit(0 if check_env() else 1)
    elif args.command == "status":
        sys.exit(0 if status() else 1)


if __name__ == "__main__":
    main()
