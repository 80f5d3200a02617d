import asyncio
import time

import pytest
from sqlalchemy.exc import IntegrityError

import auth
from auth import OAuthError, RateLimiter, TokenLedger, pkce_challenge, token_digest, verify_pkce
from models import AuthorizationCode, IssuedToken
from token_store import ACCESS, CODE, REFRESH, DatabaseTokenStore, create_token_store

REDIRECT = "https://app.example/cb"


@pytest.fixture(params=["memory", "database"])
def ledger(request, config, database):
    return TokenLedger(config, create_token_store(request.param, database))


async def issue(ledger, challenge, client_id="client-a", user_id=1, scopes=("read", "write")):
    return await ledger.issue_code(client_id, user_id, challenge, REDIRECT, list(scopes))


def test_pkce_challenge_matches_rfc7636_example():
    verifier = "dBjftJeZ4CVP-mJ0kzyN0Nm8JZXT8e-5HjPHRlhtJ3E"
    assert pkce_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
    assert verify_pkce(verifier, "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM")
    assert not verify_pkce(verifier + "x", "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM")


def test_token_digest_is_not_the_token():
    assert token_digest("abc") != "abc"
    assert len(token_digest("abc")) == 64


async def test_redeem_with_matching_verifier(ledger, pkce):
    verifier, challenge = pkce
    code = await issue(ledger, challenge, user_id=7)

    user_id, scopes = await ledger.redeem_code("client-a", code, verifier, REDIRECT)

    assert user_id == 7
    assert scopes == ["read", "write"]


async def test_redeem_with_wrong_verifier_fails(ledger, pkce):
    _, challenge = pkce
    code = await issue(ledger, challenge)

    with pytest.raises(OAuthError) as exc:
        await ledger.redeem_code("client-a", code, "not-the-verifier", REDIRECT)
    assert exc.value.error == "invalid_grant"


async def test_code_is_single_use(ledger, pkce):
    verifier, challenge = pkce
    code = await issue(ledger, challenge)

    await ledger.redeem_code("client-a", code, verifier, REDIRECT)
    with pytest.raises(OAuthError) as exc:
        await ledger.redeem_code("client-a", code, verifier, REDIRECT)
    assert exc.value.error == "invalid_grant"


async def test_concurrent_redemption_has_one_winner(ledger, pkce):
    verifier, challenge = pkce
    code = await issue(ledger, challenge)

    results = await asyncio.gather(
        ledger.redeem_code("client-a", code, verifier, REDIRECT),
        ledger.redeem_code("client-a", code, verifier, REDIRECT),
        return_exceptions=True
    )

    successes = [r for r in results if isinstance(r, tuple)]
    failures = [r for r in results if isinstance(r, OAuthError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert failures[0].error == "invalid_grant"


async def test_code_bound_to_client_and_redirect(ledger, pkce):
    verifier, challenge = pkce
    code = await issue(ledger, challenge)

    with pytest.raises(OAuthError) as exc:
        await ledger.redeem_code("client-b", code, verifier, REDIRECT)
    assert exc.value.error == "invalid_grant"

    with pytest.raises(OAuthError) as exc:
        await ledger.redeem_code("client-a", code, verifier, "https://evil.example/cb")
    assert exc.value.error == "invalid_grant"


async def test_expired_code_is_rejected_and_deleted(ledger):
    now = time.time()
    key = token_digest("expired-code")
    await ledger.store.put(CODE, key, AuthorizationCode(
        client_id="client-a",
        user_id=1,
        code_challenge="unused",
        redirect_uri=REDIRECT,
        scopes=["read"],
        created_at=now - 700,
        expires_at=now - 100
    ))

    with pytest.raises(OAuthError) as exc:
        await ledger.redeem_code("client-a", "expired-code")
    assert exc.value.error == "invalid_grant"
    assert await ledger.store.get(CODE, key) is None


async def test_token_pair_and_verification(ledger):
    access, refresh, expires_in = await ledger.issue_token_pair("client-a", 3, ["read"])

    assert access != refresh
    assert expires_in == 3600
    identity = await ledger.verify_access_token(access)
    assert identity.user_id == 3
    assert identity.client_id == "client-a"
    assert identity.has_scope("read")
    assert not identity.has_scope("write")


async def test_unknown_access_token_is_invalid(ledger):
    with pytest.raises(OAuthError) as exc:
        await ledger.verify_access_token("nope")
    assert exc.value.error == "invalid_token"
    assert exc.value.status_code == 401


async def test_expired_access_token_is_deleted(ledger):
    now = time.time()
    key = token_digest("old-token")
    await ledger.store.put(ACCESS, key, IssuedToken(
        client_id="client-a", user_id=1, scopes=["read"], created_at=now - 7200, expires_at=now - 3600
    ))

    with pytest.raises(OAuthError) as exc:
        await ledger.verify_access_token("old-token")
    assert exc.value.error == "invalid_token"
    assert await ledger.store.get(ACCESS, key) is None


async def test_refresh_rotates(ledger):
    _, refresh, _ = await ledger.issue_token_pair("client-a", 3, ["read", "write"])

    access, new_refresh, expires_in, scopes = await ledger.refresh("client-a", refresh)

    assert new_refresh != refresh
    assert scopes == ["read", "write"]
    assert (await ledger.verify_access_token(access)).user_id == 3
    with pytest.raises(OAuthError) as exc:
        await ledger.refresh("client-a", refresh)
    assert exc.value.error == "invalid_grant"


async def test_refresh_can_narrow_but_not_widen_scopes(ledger):
    _, refresh, _ = await ledger.issue_token_pair("client-a", 3, ["read", "write"])

    _, refresh, _, scopes = await ledger.refresh("client-a", refresh, ["read"])
    assert scopes == ["read"]

    with pytest.raises(OAuthError) as exc:
        await ledger.refresh("client-a", refresh, ["read", "write"])
    assert exc.value.error == "invalid_scope"


async def test_refresh_by_other_client_fails(ledger):
    _, refresh, _ = await ledger.issue_token_pair("client-a", 3, ["read"])

    with pytest.raises(OAuthError) as exc:
        await ledger.refresh("client-b", refresh)
    assert exc.value.error == "invalid_grant"


async def test_expired_refresh_token_is_rejected(ledger):
    now = time.time()
    await ledger.store.put(REFRESH, token_digest("stale"), IssuedToken(
        client_id="client-a", user_id=1, scopes=["read"], created_at=now - 100, expires_at=now - 1
    ))

    with pytest.raises(OAuthError) as exc:
        await ledger.refresh("client-a", "stale")
    assert exc.value.error == "invalid_grant"


async def test_revoke_unknown_token_is_silent(ledger):
    await ledger.revoke("client-a", "never-issued")


async def test_revoke_foreign_token_changes_nothing(ledger):
    access, _, _ = await ledger.issue_token_pair("client-a", 3, ["read"])

    await ledger.revoke("client-b", access)

    assert (await ledger.verify_access_token(access)).client_id == "client-a"


async def test_revoke_own_tokens(ledger):
    access, refresh, _ = await ledger.issue_token_pair("client-a", 3, ["read"])

    await ledger.revoke("client-a", access, "access_token")
    await ledger.revoke("client-a", refresh, "refresh_token")

    with pytest.raises(OAuthError):
        await ledger.verify_access_token(access)
    with pytest.raises(OAuthError):
        await ledger.refresh("client-a", refresh)


async def test_introspect(ledger):
    access, _, _ = await ledger.issue_token_pair("client-a", 3, ["read"])

    active = await ledger.introspect(access)
    assert active["active"] is True
    assert active["sub"] == "3"
    assert active["scope"] == "read"
    assert await ledger.introspect("unknown") == {"active": False}


async def test_purge_expired(ledger):
    now = time.time()
    await ledger.store.put(ACCESS, token_digest("gone"), IssuedToken(
        client_id="client-a", user_id=1, scopes=[], created_at=now - 10, expires_at=now - 5
    ))
    live, _, _ = await ledger.issue_token_pair("client-a", 1, [])

    counts = await ledger.purge_expired()

    assert counts[ACCESS] == 1
    assert await ledger.store.count(ACCESS) == 1
    await ledger.verify_access_token(live)


async def test_exchange_code_issues_pair(ledger, pkce):
    verifier, challenge = pkce
    code = await issue(ledger, challenge, user_id=5, scopes=("read",))

    access, refresh, expires_in, scopes = await ledger.exchange_code("client-a", code, verifier, REDIRECT)

    assert scopes == ["read"]
    assert expires_in == 3600
    assert (await ledger.verify_access_token(access)).user_id == 5
    assert await ledger.store.get(REFRESH, token_digest(refresh)) is not None
    assert await ledger.store.count(CODE) == 0


async def test_concurrent_exchange_issues_one_pair(ledger, pkce):
    verifier, challenge = pkce
    code = await issue(ledger, challenge)

    results = await asyncio.gather(
        ledger.exchange_code("client-a", code, verifier, REDIRECT),
        ledger.exchange_code("client-a", code, verifier, REDIRECT),
        return_exceptions=True
    )

    assert len([r for r in results if isinstance(r, tuple)]) == 1
    assert await ledger.store.count(ACCESS) == 1
    assert await ledger.store.count(REFRESH) == 1


@pytest.fixture
def database_ledger(config, database):
    return TokenLedger(config, DatabaseTokenStore(database))


def use_secrets(monkeypatch, *values):
    supply = iter(values)
    monkeypatch.setattr(auth, "generate_secret", lambda nbytes=32: next(supply))


async def test_failed_pair_write_issues_nothing(database_ledger, monkeypatch):
    _, existing_refresh, _ = await database_ledger.issue_token_pair("client-a", 4, ["read"])

    # The new refresh token collides with a stored one, so the second insert fails
    use_secrets(monkeypatch, "fresh-access", existing_refresh)
    with pytest.raises(IntegrityError):
        await database_ledger.issue_token_pair("client-a", 3, ["read"])

    with pytest.raises(OAuthError):
        await database_ledger.verify_access_token("fresh-access")
    assert await database_ledger.store.count(ACCESS) == 1


async def test_failed_refresh_write_keeps_old_refresh_token(database_ledger, monkeypatch):
    _, refresh, _ = await database_ledger.issue_token_pair("client-a", 3, ["read"])
    _, existing_refresh, _ = await database_ledger.issue_token_pair("client-a", 4, ["read"])

    use_secrets(monkeypatch, "fresh-access", existing_refresh)
    with pytest.raises(IntegrityError):
        await database_ledger.refresh("client-a", refresh)

    with pytest.raises(OAuthError):
        await database_ledger.verify_access_token("fresh-access")
    record = await database_ledger.store.get(REFRESH, token_digest(refresh))
    assert record is not None
    assert record.user_id == 3


async def test_failed_exchange_write_keeps_code(database_ledger, monkeypatch, pkce):
    verifier, challenge = pkce
    code = await issue(database_ledger, challenge, user_id=9)
    _, existing_refresh, _ = await database_ledger.issue_token_pair("client-a", 4, ["read"])

    use_secrets(monkeypatch, "fresh-access", existing_refresh)
    with pytest.raises(IntegrityError):
        await database_ledger.exchange_code("client-a", code, verifier, REDIRECT)

    with pytest.raises(OAuthError):
        await database_ledger.verify_access_token("fresh-access")
    user_id, _ = await database_ledger.redeem_code("client-a", code, verifier, REDIRECT)
    assert user_id == 9


def test_rate_limiter(config):
    config.rate_limit_enabled = True
    limiter = RateLimiter(config)

    assert limiter.check_rate_limit("k", max_requests=2, window_seconds=60)
    assert limiter.check_rate_limit("k", max_requests=2, window_seconds=60)
    assert not limiter.check_rate_limit("k", max_requests=2, window_seconds=60)
    assert limiter.check_rate_limit("other", max_requests=2, window_seconds=60)


def test_rate_limiter_disabled(config):
    limiter = RateLimiter(config)
    assert all(limiter.check_rate_limit("k", max_requests=1) for _ in range(5))
