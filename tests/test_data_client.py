import json

import pytest

from data_client import DataAccessError, RecordAccessor
from tools import build_tool_registry


@pytest.fixture
def alice(database, users):
    return RecordAccessor(database, users["alice@example.com"])


@pytest.fixture
def bob(database, users):
    return RecordAccessor(database, users["bob@example.com"])


async def titles(accessor, **args):
    return sorted(post["title"] for post in await accessor.execute("Post", "findMany", args))


async def test_posts_visible_to_user(alice):
    assert await titles(alice) == ["Alice's draft", "Alice's published post", "Bob's published post"]


async def test_filters(alice):
    assert await titles(alice, where={"published": False}) == ["Alice's draft"]
    assert await titles(alice, where={"title": {"contains": "Bob"}}) == ["Bob's published post"]
    assert await titles(alice, where={"title": {"in": ["Alice's draft", "Bob's draft"]}}) == ["Alice's draft"]


async def test_order_and_pagination(alice):
    posts = await alice.execute("Post", "findMany", {"orderBy": {"title": "desc"}, "take": 2, "skip": 1})
    assert [post["title"] for post in posts] == ["Alice's published post", "Alice's draft"]


async def test_post_record_shape(alice, users):
    post = (await alice.execute("Post", "findMany", {"where": {"published": False}}))[0]
    assert set(post) == {"id", "title", "content", "published", "viewCount", "authorId", "createdAt", "updatedAt"}
    assert post["authorId"] == users["alice@example.com"]


async def test_unknown_field_and_operator(alice):
    with pytest.raises(DataAccessError):
        await alice.execute("Post", "findMany", {"where": {"password": "x"}})
    with pytest.raises(DataAccessError):
        await alice.execute("Post", "findMany", {"where": {"title": {"regex": ".*"}}})
    with pytest.raises(DataAccessError):
        await alice.execute("Comment", "findMany", {})


async def test_create_posts_as_self_only(alice, bob, users):
    result = await alice.execute("Post", "createMany", {"data": [{"title": "One"}, {"title": "Two", "published": True}]})
    assert result == {"count": 2}

    with pytest.raises(DataAccessError):
        await alice.execute("Post", "createMany", {"data": {"title": "Forged", "authorId": users["bob@example.com"]}})

    assert await titles(bob, where={"title": {"in": ["One", "Two"]}}) == ["Two"]


async def test_update_and_delete_only_own_posts(alice, bob):
    updated = await alice.execute("Post", "updateMany", {"where": {"title": "Bob's published post"}, "data": {"title": "Hijacked"}})
    deleted = await alice.execute("Post", "deleteMany", {"where": {"title": "Bob's published post"}})
    assert updated == {"count": 0}
    assert deleted == {"count": 0}

    assert await bob.execute("Post", "updateMany", {"where": {"published": False}, "data": {"published": True}}) == {"count": 1}
    assert "Bob's draft" in await titles(alice)

    assert await bob.execute("Post", "deleteMany", {}) == {"count": 2}
    assert await titles(alice) == ["Alice's draft", "Alice's published post"]


async def test_cannot_write_protected_fields(alice):
    with pytest.raises(DataAccessError):
        await alice.execute("Post", "updateMany", {"data": {"authorId": 99}})


async def test_users_hide_password(alice):
    users = await alice.execute("User", "findMany", {"orderBy": {"email": "asc"}})
    assert [user["email"] for user in users] == ["alice@example.com", "bob@example.com"]
    assert all(set(user) == {"id", "email", "name"} for user in users)


async def test_user_may_update_only_self(alice, bob):
    assert await alice.execute("User", "updateMany", {"data": {"name": "Alicia"}}) == {"count": 1}
    assert await alice.execute("User", "updateMany", {"where": {"email": "bob@example.com"}, "data": {"name": "Robert"}}) == {"count": 0}

    names = {user["email"]: user["name"] for user in await bob.execute("User", "findMany")}
    assert names == {"alice@example.com": "Alicia", "bob@example.com": "Bob"}


async def test_users_cannot_be_created_or_deleted(alice):
    with pytest.raises(DataAccessError):
        await alice.execute("User", "createMany", {"data": {"email": "eve@example.com"}})
    with pytest.raises(DataAccessError):
        await alice.execute("User", "deleteMany", {})


async def test_tool_registry(alice, users):
    registry = build_tool_registry(alice)

    assert len(registry) == 8
    assert "Post_findMany" in registry
    assert not registry.get("Post_findMany").write
    assert registry.get("User_updateMany").write
    assert all(f"The current user id is '{users['alice@example.com']}'" in tool.description for tool in registry.tools())

    definition = registry.get("Post_createMany").definition()
    assert definition.inputSchema["required"] == ["args"]

    text = await registry.call("Post_findMany", {"args": {"where": {"published": False}}})
    assert [post["title"] for post in json.loads(text)] == ["Alice's draft"]

    with pytest.raises(KeyError):
        await registry.call("Missing_tool", {})
