# Leadboard: background event loop
#
# The board is single-threaded: all state lives on one asyncio loop.
# BoardRuntime runs that loop in a daemon thread so synchronous callers
# (Flask request handlers, scripts) can hand work to it and wait for the result.

import asyncio
import inspect
import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class BoardRuntime:
    """Owns the event loop thread a Board runs on."""

    def __init__(self, board, timeout: float = 30.0):
        self.board = board
        self.timeout = timeout
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, mount: bool = True) -> "BoardRuntime":
        """Start the loop thread and (by default) mount the board on it."""
        if self.running:
            return self

        def _worker():
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._ready.set()
            try:
                self._loop.run_forever()
            finally:
                self._loop.close()

        self._thread = threading.Thread(target=_worker, name="leadboard-loop", daemon=True)
        self._thread.start()
        self._ready.wait()
        logger.info("Board loop started")

        if mount and not self.call(self.board.mount):
            logger.warning("Initial board load failed; serving an empty board until the next resync")
        return self

    def call(self, fn, *args, **kwargs):
        """
        Run ``fn(*args, **kwargs)`` on the loop and wait for its result.

        ``fn`` may be a plain function or a coroutine function. Exceptions
        raised by it propagate to the caller.
        """
        if not self.running:
            raise RuntimeError("Board runtime is not running")

        async def _invoke():
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        future = asyncio.run_coroutine_threadsafe(_invoke(), self._loop)
        return future.result(timeout=self.timeout)

    def stop(self) -> None:
        """Let in-flight mutations settle, then stop the loop."""
        if not self.running:
            return
        try:
            self.call(self.board.controller.settle)
        except Exception as e:
            logger.warning(f"Stopping with unsettled mutations: {e}")
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=self.timeout)
        self._thread = None
        self._ready.clear()
        logger.info("Board loop stopped")
