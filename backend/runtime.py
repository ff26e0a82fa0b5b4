# backend/runtime.py
import asyncio
import logging
import threading
from typing import Any, Awaitable, Optional

import config

logger = logging.getLogger("brainplay_runtime")


class GameLoop:
    """
    One asyncio loop on a daemon thread hosting every GameController.
    Flask worker threads hand coroutines over with run() and block on the result,
    so round timers keep ticking between requests.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(
                target=self._serve, args=(self._loop,), name="brainplay-loop", daemon=True
            )
            self._thread.start()
            logger.info("Game loop thread started")

    @staticmethod
    def _serve(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        loop.run_forever()

    def run(self, coro: Awaitable[Any], timeout: Optional[float] = config.REQUEST_TIMEOUT) -> Any:
        self.start()
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout)

    def stop(self) -> None:
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = self._thread = None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=5)
        logger.info("Game loop thread stopped")
