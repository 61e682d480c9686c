"""
The Async/Sync Bridge.

aiomqtt is asyncio-only, while the public client surface is blocking. This
module runs one asyncio event loop on a dedicated daemon thread and lets
synchronous callers submit coroutines to it and wait for their outcome:

- `start()` spins up the loop thread (idempotent).
- `run(coro)` blocks the calling thread until the coroutine resolves and
  returns its result or re-raises its exception.
- `stop()` cancels whatever is still scheduled on the loop and joins the thread.
"""
import asyncio
import logging
import threading
from typing import Any, Awaitable, Optional

logger = logging.getLogger(__name__)


class EventLoopThread:
    name: str
    _loop: Optional[asyncio.AbstractEventLoop]
    _thread: Optional[threading.Thread]
    _ready: threading.Event
    _lifecycle_lock: threading.Lock

    def __init__(self, name: str = "mqtt-transport"):
        self.name = name
        self._loop = None
        self._thread = None
        self._ready = threading.Event()
        self._lifecycle_lock = threading.Lock()

    @property
    def loop(self) -> Optional[asyncio.AbstractEventLoop]:
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def in_loop_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def start(self):
        """
        Starts the loop thread if it is not already running.
        Returns only once the loop is accepting work.
        """
        with self._lifecycle_lock:
            if self.is_running:
                return
            self._ready.clear()
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
            self._thread.start()
        self._ready.wait()
        logger.debug(f"Event loop thread '{self.name}' started.")

    def _run_loop(self):
        loop = self._loop
        asyncio.set_event_loop(loop)
        loop.call_soon(self._ready.set)
        try:
            loop.run_forever()
        finally:
            # Cancel anything still scheduled (receive loops etc.) and let it unwind
            pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            logger.debug(f"Event loop thread '{self.name}' has stopped.")

    def run(self, coro: Awaitable[Any]) -> Any:
        """
        Runs a coroutine on the loop thread and blocks until it resolves.

        There is no timeout here: coroutines handed to the bridge are expected
        to be bounded by the transport's own timeouts.
        """
        if self.in_loop_thread():
            # Blocking the loop on itself would never return
            coro.close()
            raise RuntimeError(f"Blocking call issued from inside the '{self.name}' event loop thread")
        self.start()
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    def stop(self, timeout: Optional[float] = 5.0):
        """Stops the loop and waits for its thread to finish."""
        with self._lifecycle_lock:
            if not self.is_running:
                return
            loop, thread = self._loop, self._thread
            loop.call_soon_threadsafe(loop.stop)
        if threading.current_thread() is not thread:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Event loop thread '{self.name}' did not stop within {timeout}s.")
