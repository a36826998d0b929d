# src/taskkeep/cli/commands.py

from __future__ import annotations

import contextlib
import logging
from collections.abc import Awaitable, Callable

from ..core.errors import TaskKeepError, describe_error
from ..core.models import SyncAction, Task, TaskStatus
from ..core.state import AppContext
from ..core.validation import is_valid_uuid

CommandEmitter = Callable[[str], None]
CommandHandler = Callable[[AppContext, list[str], CommandEmitter | None], Awaitable[str]]

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Slash-command registry used by the console (/add, /list, /sync, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(
        self,
        ctx: AppContext,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        Core errors are rendered through describe_error(); anything else propagates.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            return await handler(ctx, args, emit)
        except TaskKeepError as e:
            logger.debug("Command /%s failed: %r", name, e)
            return format_error(e)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def format_error(exc: BaseException) -> str:
    state = describe_error(exc)
    text = f"[{state.title}] {state.message}"
    if state.recoverable and state.retry_action is not None:
        text += " (use /retry to save again)"
    return text


def format_task(index: int, task: Task) -> str:
    mark = "x" if task.completed else " "
    flag = " *" if task.pending else ""
    return f"{index:>3}. [{mark}] {task.text}  ({task.id[:8]}){flag}"


async def _resolve(ctx: AppContext, ref: str) -> str:
    """List index (as shown by /list) or a unique id prefix -> record id."""
    if is_valid_uuid(ref):
        return ref
    tasks = await ctx.store.read()
    if ref.isdigit():
        i = int(ref)
        if 1 <= i <= len(tasks):
            return tasks[i - 1].id
    matches = [t.id for t in tasks if t.id.startswith(ref)]
    if len(matches) == 1:
        return matches[0]
    return ref


def _queue(ctx: AppContext, task_id: str, action: SyncAction, task: Task | None = None) -> None:
    if ctx.sync_enabled:
        ctx.sync.queue_operation(task_id, action, task.to_dict() if task is not None else None)


async def cmd_help(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    return registry.build_help()


async def cmd_add(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    task = await ctx.store.create(" ".join(args))
    _queue(ctx, task.id, SyncAction.CREATE, task)
    return f"Added: {task.text}"


async def cmd_addall(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    """/addall milk; eggs; bread -> one todo per ";"-separated item, all or none."""
    items = [part.strip() for part in " ".join(args).split(";")]
    tasks = await ctx.store.create_many([item for item in items if item])
    for task in tasks:
        _queue(ctx, task.id, SyncAction.CREATE, task)
    return f"Added {len(tasks)} todo(s)."


async def cmd_list(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /list               -> everything, newest first
    /list done|open     -> filter by status
    /list [status] text -> plus substring search
    """
    status = TaskStatus.parse(args[0]) if args else None
    rest = args[1:] if status is not None else args
    search = " ".join(rest) or None

    tasks = await ctx.store.read(status=status, search_text=search)
    if not tasks:
        return "No todos."
    return "\n".join(format_task(i, t) for i, t in enumerate(tasks, start=1))


async def cmd_done(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /done <n|id>"
    task = await ctx.store.toggle(await _resolve(ctx, args[0]))
    _queue(ctx, task.id, SyncAction.UPDATE, task)
    return f"{'Completed' if task.completed else 'Reopened'}: {task.text}"


async def cmd_edit(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    if len(args) < 2:
        return "Usage: /edit <n|id> <new text>"
    task = await ctx.store.update(await _resolve(ctx, args[0]), text=" ".join(args[1:]))
    _queue(ctx, task.id, SyncAction.UPDATE, task)
    return f"Updated: {task.text}"


async def cmd_rm(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /rm <n|id>"
    task_id = await _resolve(ctx, args[0])
    await ctx.store.delete(task_id)
    _queue(ctx, task_id, SyncAction.DELETE)
    return "Deleted."


async def cmd_clear(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args or args[0].lower() != "yes":
        return "This removes every todo. Confirm with: /clear yes"
    await ctx.store.clear_all()
    return "All todos cleared."


async def cmd_sync(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    def on_retry(attempt: int) -> None:
        if emit:
            with contextlib.suppress(Exception):
                emit(f"[SYNC] Attempt {attempt} failed, retrying...")

    records = await ctx.store.read()
    await ctx.sync.sync_now(records, on_retry=on_retry)
    return f"Synced {len(records)} todo(s)."


async def cmd_retry(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    Re-save after a storage failure, then push whatever sync work is pending.
    """
    await ctx.store.retry_save()
    if not ctx.sync_enabled:
        return "Saved. Sync is disabled (set TASKKEEP_SYNC_URL)."
    await ctx.sync.retry_pending_sync()
    return f"Saved and synced. Pending sync items: {ctx.sync.pending_sync_count()}"


async def cmd_online(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not ctx.sync_enabled:
        return "Sync is disabled (set TASKKEEP_SYNC_URL)."
    ctx.env.connectivity.set_online(True)
    return "Marked online."


async def cmd_offline(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    ctx.env.connectivity.set_online(False)
    return "Marked offline."


async def cmd_status(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    info = await ctx.store.storage_info()
    usage = "n/a"
    if info.usage is not None:
        quota = info.usage.quota if info.usage.quota is not None else "unlimited"
        usage = f"{info.usage.used} / {quota} bytes"
    sync = ctx.settings.sync_url or "disabled"
    return (
        "Status:\n"
        f"  Storage: {'persistent' if info.persistent else 'volatile (memory only)'}\n"
        f"  Usage: {usage}\n"
        f"  Todos: {info.record_count}\n"
        f"  Sync: {sync} ({'online' if ctx.sync.is_network_online() else 'offline'}, {ctx.sync.state.value})\n"
        f"  Pending sync items: {ctx.sync.pending_sync_count()}"
    )


async def cmd_stats(ctx: AppContext, args: list[str], emit: CommandEmitter | None = None) -> str:
    m = await ctx.store.metrics()
    lines = [
        "Stats:",
        f"  Total: {m.total} (completed {m.completed}, open {m.pending})",
        f"  Average text length: {m.average_text_length:.1f}",
    ]
    if m.oldest is not None and m.newest is not None:
        lines.append(f"  Oldest: {m.oldest.astimezone():%Y-%m-%d %H:%M}")
        lines.append(f"  Newest: {m.newest.astimezone():%Y-%m-%d %H:%M}")
    return "\n".join(lines)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("add", cmd_add, help_text="Add a todo: /add <text>.", aliases=["a"])
registry.register("addall", cmd_addall, help_text="Add several todos: /addall <a>; <b>; ...")
registry.register("list", cmd_list, help_text="List todos: /list [done|open] [search].", aliases=["ls"])
registry.register("done", cmd_done, help_text="Toggle completion: /done <n|id>.", aliases=["toggle"])
registry.register("edit", cmd_edit, help_text="Change text: /edit <n|id> <text>.")
registry.register("rm", cmd_rm, help_text="Delete a todo: /rm <n|id>.", aliases=["del"])
registry.register("clear", cmd_clear, help_text="Delete every todo: /clear yes.")
registry.register("sync", cmd_sync, help_text="Back up all todos now.")
registry.register("retry", cmd_retry, help_text="Retry a failed save and pending sync.")
registry.register("online", cmd_online, help_text="Mark the network as online.")
registry.register("offline", cmd_offline, help_text="Mark the network as offline.")
registry.register("status", cmd_status, help_text="Show storage and sync status.")
registry.register("stats", cmd_stats, help_text="Show todo statistics.")
