# tests/test_registry.py
"""Source registry backends: CRUD rules, status write-back and file persistence."""

import pytest
from pydantic import ValidationError

from routemerge.errors import DuplicateSourceError, RegistryError, SourceNotFoundError
from routemerge.models import SourceCreate, SourceUpdate
from routemerge.registry import FileSourceRegistry, InMemorySourceRegistry
from routemerge.utils.common import utc_now


def test_create_request_rules():
    req = SourceCreate(name="  ext ", url="https://cfg.example.com/http", refresh_interval=2)
    assert req.name == "ext"
    assert req.interval_or_default() == 30
    assert SourceCreate(name="ext", url="http://x").interval_or_default() == 30
    assert SourceCreate(name="ext", url="http://x", refresh_interval=12).interval_or_default() == 12
    assert req.is_active is True

    with pytest.raises(ValidationError):
        SourceCreate(name="", url="https://x")
    with pytest.raises(ValidationError):
        SourceCreate(name="ext", url="ftp://x")


def test_local_name_is_reserved():
    with pytest.raises(ValidationError):
        SourceCreate(name="local", url="http://x")
    with pytest.raises(ValidationError):
        SourceCreate(name=" local ", url="http://x")
    with pytest.raises(ValidationError):
        SourceUpdate(name="local")
    assert SourceUpdate(name="  ").name is None


@pytest.mark.asyncio
async def test_create_list_get():
    registry = InMemorySourceRegistry()
    low = await registry.create_source(SourceCreate(name="low", url="http://low", priority=1))
    high = await registry.create_source(SourceCreate(name="high", url="http://high", priority=9))
    tie = await registry.create_source(SourceCreate(name="tie", url="http://tie", priority=1))

    assert [s.id for s in await registry.list_sources()] == [high.id, low.id, tie.id]
    assert (await registry.get_source(low.id)).name == "low"
    assert await registry.get_source(12345) is None
    assert low.created_at is not None


@pytest.mark.asyncio
async def test_duplicate_names_are_rejected():
    registry = InMemorySourceRegistry()
    await registry.create_source(SourceCreate(name="a", url="http://a"))
    b = await registry.create_source(SourceCreate(name="b", url="http://b"))

    with pytest.raises(DuplicateSourceError):
        await registry.create_source(SourceCreate(name="a", url="http://other"))
    with pytest.raises(DuplicateSourceError):
        await registry.update_source(b.id, SourceUpdate(name="a"))


@pytest.mark.asyncio
async def test_update_rules():
    registry = InMemorySourceRegistry()
    src = await registry.create_source(SourceCreate(name="a", url="http://a", refresh_interval=60))

    updated = await registry.update_source(src.id, SourceUpdate(priority=7, refresh_interval=3, name="", url=""))

    assert updated.priority == 7
    assert updated.refresh_interval == 60
    assert updated.name == "a"
    assert updated.url == "http://a"

    updated = await registry.update_source(src.id, SourceUpdate(refresh_interval=10, is_active=False))
    assert updated.refresh_interval == 10
    assert updated.is_active is False

    with pytest.raises(SourceNotFoundError):
        await registry.update_source(999, SourceUpdate(priority=1))


@pytest.mark.asyncio
async def test_returned_records_are_copies():
    registry = InMemorySourceRegistry()
    src = await registry.create_source(SourceCreate(name="a", url="http://a"))
    src.priority = 1000
    assert (await registry.get_source(src.id)).priority == 0


@pytest.mark.asyncio
async def test_update_status_leaves_unset_fields():
    registry = InMemorySourceRegistry()
    src = await registry.create_source(SourceCreate(name="a", url="http://a"))
    now = utc_now()

    await registry.update_status(src.id, last_error="", last_fetched=now, router_count=3, service_count=2, middleware_count=1)
    await registry.update_status(src.id, last_error="HTTP 500: 500 Internal Server Error")

    record = await registry.get_source(src.id)
    assert record.last_fetched == now
    assert record.router_count == 3
    assert record.last_error == "HTTP 500: 500 Internal Server Error"

    with pytest.raises(SourceNotFoundError):
        await registry.update_status(999, last_error="x")


@pytest.mark.asyncio
async def test_delete():
    registry = InMemorySourceRegistry()
    src = await registry.create_source(SourceCreate(name="a", url="http://a"))
    await registry.delete_source(src.id)
    assert await registry.list_sources() == []
    with pytest.raises(SourceNotFoundError):
        await registry.delete_source(src.id)


@pytest.mark.asyncio
async def test_file_registry_persists(tmp_path):
    path = tmp_path / "data" / "sources.json"
    registry = FileSourceRegistry(path)
    assert await registry.load() == 0
    a = await registry.create_source(SourceCreate(name="a", url="http://a", priority=3))
    await registry.create_source(SourceCreate(name="b", url="http://b"))
    await registry.update_status(a.id, last_error="Connection error: refused")
    await registry.delete_source(a.id + 1)

    reopened = FileSourceRegistry(path)
    assert await reopened.load() == 1
    record = await reopened.get_source(a.id)
    assert record.priority == 3
    assert record.last_error == "Connection error: refused"

    c = await reopened.create_source(SourceCreate(name="c", url="http://c"))
    assert c.id == a.id + 2


@pytest.mark.asyncio
async def test_file_registry_rejects_corrupt_file(tmp_path):
    path = tmp_path / "sources.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(RegistryError):
        await FileSourceRegistry(path).load()

    path.write_text('{"sources": [{"id": "x"}]}', encoding="utf-8")
    with pytest.raises(RegistryError):
        await FileSourceRegistry(path).load()


@pytest.mark.asyncio
async def test_interval_policy_comes_from_the_registry():
    registry = InMemorySourceRegistry(min_interval=10, default_interval=45)
    short = await registry.create_source(SourceCreate(name="short", url="http://short", refresh_interval=5))
    unset = await registry.create_source(SourceCreate(name="unset", url="http://unset"))
    ok = await registry.create_source(SourceCreate(name="ok", url="http://ok", refresh_interval=10))

    assert short.refresh_interval == 45
    assert unset.refresh_interval == 45
    assert ok.refresh_interval == 10

    assert (await registry.update_source(ok.id, SourceUpdate(refresh_interval=9))).refresh_interval == 10
    assert (await registry.update_source(ok.id, SourceUpdate(refresh_interval=20))).refresh_interval == 20


@pytest.mark.asyncio
async def test_failed_write_leaves_memory_untouched(tmp_path, monkeypatch):
    registry = FileSourceRegistry(tmp_path / "sources.json")
    await registry.load()
    a = await registry.create_source(SourceCreate(name="a", url="http://a", priority=3))

    def disk_full(path, data):
        raise OSError("No space left on device")

    monkeypatch.setattr("routemerge.registry.safe_write_json", disk_full)

    with pytest.raises(RegistryError):
        await registry.create_source(SourceCreate(name="b", url="http://b"))
    with pytest.raises(RegistryError):
        await registry.update_source(a.id, SourceUpdate(priority=9))
    with pytest.raises(RegistryError):
        await registry.update_status(a.id, last_error="Connection error: refused")
    with pytest.raises(RegistryError):
        await registry.delete_source(a.id)

    sources = await registry.list_sources()
    assert [(s.name, s.priority, s.last_error) for s in sources] == [("a", 3, "")]

    monkeypatch.undo()
    b = await registry.create_source(SourceCreate(name="b", url="http://b"))
    assert b.id == a.id + 1
