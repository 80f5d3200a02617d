from conftest import PASSWORD
from credentials import CredentialStore, check_password, hash_password


def test_hash_and_check():
    hashed = hash_password("s3cret", rounds=4)
    assert hashed != "s3cret"
    assert check_password("s3cret", hashed)
    assert not check_password("other", hashed)


def test_malformed_hash_does_not_match():
    assert not check_password("s3cret", "not-a-bcrypt-hash")


async def test_verify(database, users):
    store = CredentialStore(database)

    assert await store.verify("alice@example.com", PASSWORD) == users["alice@example.com"]
    assert await store.verify("alice@example.com", "wrong") is None
    assert await store.verify("nobody@example.com", PASSWORD) is None
    assert await store.verify("", PASSWORD) is None
