import pytest

from errors import KeyNotFoundError
from store import ClientOptions, CoordinationClient, format_key


def make_client() -> CoordinationClient:
    return CoordinationClient([], ClientOptions(backend="memory"))


def test_format_key_strips_single_leading_separator():
    assert format_key("/a/b") == "a/b"
    assert format_key("a/b") == "a/b"
    assert format_key("//a") == "/a"
    assert format_key("/") == ""
    assert format_key("a/b/") == "a/b/"


@pytest.mark.asyncio
async def test_put_then_get_returns_value_and_growing_version():
    client = make_client()

    await client.put("cfg/db", b"one")
    value, first = await client.get("cfg/db")
    assert value == b"one"
    assert first >= 1

    await client.put("cfg/db", b"two")
    value, second = await client.get("cfg/db")
    assert value == b"two"
    assert second > first


@pytest.mark.asyncio
async def test_leading_separator_addresses_same_key():
    client = make_client()
    await client.put("/cfg/db", b"x")
    entry = await client.get("cfg/db")
    assert entry.value == b"x"


@pytest.mark.asyncio
async def test_get_missing_key_raises_not_found():
    client = make_client()
    with pytest.raises(KeyNotFoundError):
        await client.get("never/written")


@pytest.mark.asyncio
async def test_exists_reports_presence_as_boolean():
    client = make_client()
    assert await client.exists("flag") is False
    await client.put("flag", b"")
    assert await client.exists("flag") is True


@pytest.mark.asyncio
async def test_delete_is_safe_on_missing_key():
    client = make_client()
    await client.delete("nothing/here")

    await client.put("k", b"v")
    await client.delete("k")
    assert await client.exists("k") is False


@pytest.mark.asyncio
async def test_get_range_empty_prefix_returns_empty_list():
    client = make_client()
    assert await client.get_range("nodes") == []


@pytest.mark.asyncio
async def test_get_range_lists_nested_values_in_key_order_without_prefix_entry():
    client = make_client()
    await client.put("nodes", b"dir-marker")
    await client.put("nodes/b", b"B")
    await client.put("nodes/a", b"A")
    await client.put("nodes/a/deep", b"AD")
    await client.put("other/x", b"X")

    values = await client.get_range("/nodes")
    assert values == [b"A", b"AD", b"B"]


@pytest.mark.asyncio
async def test_delete_range_removes_subtree_only():
    client = make_client()
    await client.put("app/one", b"1")
    await client.put("app/two/three", b"3")
    await client.put("keep/me", b"k")

    await client.delete_range("app/")

    assert await client.get_range("app/") == []
    assert (await client.get("keep/me")).value == b"k"


@pytest.mark.asyncio
async def test_client_context_manager_closes_backend():
    async with make_client() as client:
        await client.put("a", b"1")
        assert await client.exists("a")
