# tests/test_commands.py

from __future__ import annotations

from types import SimpleNamespace

import pytest

from taskkeep.cli.bootstrap import create_app
from taskkeep.cli.commands import CommandRegistry, registry
from taskkeep.core.errors import ValidationError

from .fakes import FakeBackupServer


@pytest.mark.asyncio
async def test_command_registry_routes_and_renders_core_errors(settings: SimpleNamespace) -> None:
    reg = CommandRegistry()
    notes: list[str] = []

    async def ok(ctx, args, emit):
        if emit is not None:
            emit("note")
        return "ok:" + ",".join(args)

    async def bad(ctx, args, emit):
        raise ValidationError("Todo text cannot be empty")

    reg.register("ok", ok, "ok", aliases=["k"])
    reg.register("bad", bad, "bad")
    ctx = create_app(settings=settings)

    assert await reg.handle(ctx, "hello") is None
    assert await reg.handle(ctx, "/K a b", emit=notes.append) == "ok:a,b"
    assert notes == ["note"]
    assert await reg.handle(ctx, "/bad") == "[Invalid Data] Todo text cannot be empty"
    assert "Unknown command" in (await reg.handle(ctx, "/nope") or "")
    assert "/ok" in reg.build_help()
    await ctx.dispose()


@pytest.mark.asyncio
async def test_todo_lifecycle_through_commands(settings: SimpleNamespace) -> None:
    ctx = create_app(settings=settings)

    assert await registry.handle(ctx, "/add Buy milk") == "Added: Buy milk"
    assert "Buy milk" in (await registry.handle(ctx, "/list") or "")
    assert await registry.handle(ctx, "/done 1") == "Completed: Buy milk"
    assert "[x] Buy milk" in (await registry.handle(ctx, "/list done") or "")
    assert await registry.handle(ctx, "/list open") == "No todos."
    assert await registry.handle(ctx, "/edit 1 Buy bread") == "Updated: Buy bread"
    assert await registry.handle(ctx, "/rm 1") == "Deleted."
    assert await registry.handle(ctx, "/list") == "No todos."

    assert await registry.handle(ctx, "/add") == "[Invalid Data] Todo text cannot be empty"
    assert await registry.handle(ctx, "/rm 99") == "[Task Missing] Todo with id 99 not found"

    stats = await registry.handle(ctx, "/stats") or ""
    assert "Total: 0" in stats
    await ctx.dispose()


@pytest.mark.asyncio
async def test_addall_is_all_or_nothing_and_full_ids_resolve(settings: SimpleNamespace) -> None:
    ctx = create_app(settings=settings)

    assert await registry.handle(ctx, "/addall milk; eggs;  ; bread") == "Added 3 todo(s)."
    assert len(await ctx.store.read()) == 3

    reply = await registry.handle(ctx, "/addall ok; " + "x" * 501) or ""
    assert reply.startswith("[Invalid Data] Todo at index 1")
    assert await registry.handle(ctx, "/addall") == "[Invalid Data] At least one todo is required"
    assert len(await ctx.store.read()) == 3

    milk = next(t for t in await ctx.store.read() if t.text == "milk")
    assert await registry.handle(ctx, f"/done {milk.id}") == "Completed: milk"
    await ctx.dispose()


@pytest.mark.asyncio
async def test_sync_disabled_keeps_changes_locally(settings: SimpleNamespace) -> None:
    ctx = create_app(settings=settings)
    await registry.handle(ctx, "/add one")

    reply = await registry.handle(ctx, "/sync") or ""
    assert reply.startswith("[Connection Issue]")
    assert ctx.sync.pending_sync_count() == 2

    status = await registry.handle(ctx, "/status") or ""
    assert "volatile" in status
    assert "disabled" in status
    assert await registry.handle(ctx, "/clear") == "This removes every todo. Confirm with: /clear yes"
    await ctx.dispose()


@pytest.mark.asyncio
async def test_sync_enabled_pushes_operations_and_backup(settings: SimpleNamespace) -> None:
    settings.sync_url = "https://backup.test/api"
    server = FakeBackupServer()
    http = server.client()
    ctx = create_app(settings=settings, http_client=http)

    await registry.handle(ctx, "/add Ship release")
    await ctx.sync.join()
    assert server.calls == [("POST", "/api/todos")]

    assert await registry.handle(ctx, "/sync") == "Synced 1 todo(s)."
    assert server.calls[-1] == ("POST", "/api/todos/backup")
    assert ctx.writer.get("todos")["lastSyncTimestamp"] is not None

    assert await registry.handle(ctx, "/offline") == "Marked offline."
    assert not ctx.sync.is_network_online()
    reply = await registry.handle(ctx, "/retry") or ""
    assert reply.startswith("[Connection Issue]")

    await ctx.dispose()
    await http.aclose()
