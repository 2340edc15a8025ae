import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI

_log = logging.getLogger("medride.lifecycle")


def background_lifespan(
    on_startup: Callable[[], None] | None = None,
    workers: list[Callable[[], Awaitable[None]]] | None = None,
):
    """
    Build a FastAPI ``lifespan`` that runs ``on_startup`` once, starts each
    worker coroutine as a task and cancels them on shutdown.
    Usage:
        app = FastAPI(lifespan=background_lifespan(_startup, [sweep_forever]))
    """

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        if on_startup is not None:
            on_startup()
        tasks = [asyncio.create_task(w()) for w in (workers or [])]
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    _log.exception("background worker exited with error")

    return _lifespan
