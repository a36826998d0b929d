# src/taskkeep/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppContext, then runs the console REPL on the asyncio loop.
Blocking input() runs in the default executor so timers (batch flushes, sync retries,
the reachability probe) keep firing while waiting for the user.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from datetime import datetime

from ..config import get_settings
from ..core.signals import LifecycleEvent
from ..core.state import AppContext
from ..logging_setup import setup_logging
from .bootstrap import create_app
from .commands import registry

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


async def _handle_line(ctx: AppContext, line: str) -> str:
    """Slash commands go to the registry; plain text is added as a new todo."""
    try:
        reply = await registry.handle(ctx, line, emit=_print_ts)
    except Exception:
        logger.exception("Command handler crashed.")
        return "Internal error while handling a command."
    if reply is not None:
        return reply

    reply = await registry.handle(ctx, "/add " + line, emit=_print_ts)
    return reply or ""


async def run_console_loop(ctx: AppContext, stop: asyncio.Event) -> None:
    logger.info("Console started.")
    _print_ts("[CONSOLE] Type a todo to add it. Use /help for commands, /exit to quit.\n")
    loop = asyncio.get_running_loop()

    while not stop.is_set():
        read = loop.run_in_executor(None, input, ">>> ")
        waiter = asyncio.ensure_future(stop.wait())
        done, _ = await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()
        if read not in done:
            _print_ts("Stopping... press Enter to exit.")
            break

        try:
            user_input = read.result().strip()
        except EOFError:
            logger.info("Console EOF received, exiting.")
            break
        except KeyboardInterrupt:
            logger.info("Console KeyboardInterrupt, exiting.")
            print()
            break

        if not user_input:
            continue
        if user_input.lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        _print_ts(await _handle_line(ctx, user_input))

        # Idle input is the console's "hidden" state: nothing should sit unflushed.
        ctx.env.lifecycle.notify(LifecycleEvent.HIDDEN)


async def _amain() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s...", settings.app_name)
    ctx = create_app(settings=settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not every platform supports loop signal handlers.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    try:
        await ctx.store.load()
        ctx.start_probe()
        await run_console_loop(ctx, stop)
    finally:
        await ctx.dispose()
        logger.info("Bye.")


def main() -> None:
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_amain())


if __name__ == "__main__":
    main()
