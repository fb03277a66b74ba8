"""
Main-context dispatcher
Serializes completions onto one designated thread.

Background work (camera reader, landmark analysis, still capture, JPEG
encoding, network upload) never touches pipeline or UI-observable state
directly. It posts a callable here and the main context runs it.
"""
import logging
import queue
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class MainThreadDispatcher:
    """
    FIFO of callables drained by a single thread.

    Tests drain it synchronously with run_pending(); the web service
    calls start() to drain it on a dedicated "main-dispatcher" thread.
    """

    def __init__(self):
        self._queue: "queue.Queue[Optional[tuple]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._owner: Optional[int] = None

    def post(self, fn: Callable, *args, **kwargs):
        """Schedule fn(*args, **kwargs) on the main context."""
        self._queue.put((fn, args, kwargs))

    def is_main_context(self) -> bool:
        """True when called from the thread currently draining the queue."""
        return self._owner == threading.get_ident()

    def run_pending(self) -> int:
        """
        Run every callable queued so far on the calling thread.

        Returns:
            int: Number of callables executed
        """
        self._owner = threading.get_ident()
        executed = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return executed
            if item is None:
                continue
            self._run(item)
            executed += 1

    def _run(self, item):
        fn, args, kwargs = item
        try:
            fn(*args, **kwargs)
        except Exception as e:
            logger.error(f"Main-context callback {getattr(fn, '__name__', fn)} failed: {e}", exc_info=True)

    def _loop(self):
        self._owner = threading.get_ident()
        logger.info("Main dispatcher started")
        while True:
            item = self._queue.get()
            if item is None:
                break
            self._run(item)
        logger.info("Main dispatcher stopped")

    def start(self):
        """Drain the queue on a dedicated thread (idempotent)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._loop, name="main-dispatcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        """Stop the dedicated thread after the callables already queued."""
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout=timeout)
        self._thread = None
