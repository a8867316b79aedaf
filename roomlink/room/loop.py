"""Background asyncio loop thread for WebSocket I/O.

The channel server and client each own one :class:`BackgroundLoop`.  Socket
work runs as coroutines on that loop; the consumer thread hands work over with
:meth:`BackgroundLoop.submit` or :meth:`BackgroundLoop.spawn` and never awaits
anything itself.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import threading
from typing import Any, Awaitable, Coroutine

from loguru import logger


class BackgroundLoop:
    """An asyncio event loop running in a daemon thread.

    Parameters
    ----------
    name:
        Thread name, also used as the log label.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()

    @property
    def running(self) -> bool:
        return self._loop is not None and self._loop.is_running()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._ready.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=self.name)
        self._thread.start()
        self._ready.wait()

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        loop.call_soon(self._ready.set)
        try:
            loop.run_forever()
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            self._loop = None
            logger.debug("[Room/Loop] {} closed", self.name)

    def submit(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future:
        """Schedule *coro* on the loop from any thread."""
        if self._loop is None:
            coro.close()
            raise RuntimeError(f"{self.name} loop is not running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str = "") -> None:
        """Fire-and-forget *coro* as a supervised task; failures are logged."""
        if self._loop is None:
            coro.close()
            raise RuntimeError(f"{self.name} loop is not running")
        self._loop.call_soon_threadsafe(functools.partial(supervised_task, coro, name=name))

    def run(self, coro: Coroutine[Any, Any, Any], timeout: float | None = None) -> Any:
        """Run *coro* on the loop and block until it returns."""
        return self.submit(coro).result(timeout)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop and join its thread; idempotent."""
        loop = self._loop
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(loop.stop)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None


def supervised_task(
    coro: Awaitable[Any],
    *,
    name: str = "",
) -> asyncio.Task:
    """Wrap ``asyncio.create_task`` with an error-logging callback.

    Must be called from inside the running loop.  If the task raises (other
    than ``CancelledError``) the exception is logged instead of being lost.
    """
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)

    def _on_done(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error(
                "[Room/Loop] supervised task {!r} failed: {!r}",
                t.get_name(), exc,
            )

    task.add_done_callback(_on_done)
    return task
