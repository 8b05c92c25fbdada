"""
Best-effort background writer.

Durable-store and roster writes must never block or fail a poll cycle.
Callers submit small tasks to a bounded queue drained by one daemon
worker thread:

- a full queue drops the task with a warning (the synchronizer's push
  repairs whatever the durable store missed)
- a task that raises is logged and counted, the worker carries on
- ``flush()`` waits for the queue to drain (tests, graceful shutdown)

With ``synchronous=True`` tasks run inline in the caller's thread. The
batch jobs use this mode, where there is no loop to protect.
"""

import logging
import queue
import threading
import time
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

# (description, fn, args)
Task = Tuple[str, Callable[..., Any], Tuple[Any, ...]]

_STOP = object()


class BestEffortWriter:
    """Bounded fire-and-forget work queue with a single worker."""

    def __init__(self, max_size: int = 1000, synchronous: bool = False):
        self.max_size = max_size
        self.synchronous = synchronous

        self._queue: 'queue.Queue' = queue.Queue(maxsize=max_size)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

        self._submitted = 0
        self._completed = 0
        self._failed = 0
        self._dropped = 0
        self._last_error: Optional[str] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker thread (no-op in synchronous mode)."""
        if self.synchronous:
            return
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run,
                name='presence-writer',
                daemon=True,
            )
            self._thread.start()
        logger.info(f'Background writer started (queue size={self.max_size})')

    def stop(self, timeout: float = 5.0) -> None:
        """Drain pending tasks, then stop the worker."""
        thread = self._thread
        if not thread or not thread.is_alive():
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning('Writer queue full at shutdown, pending tasks abandoned')
            return
        thread.join(timeout=timeout)
        logger.info('Background writer stopped')

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(self, description: str, fn: Callable[..., Any], *args: Any) -> bool:
        """
        Queue ``fn(*args)``.

        Returns False if the task was dropped because the queue is full.
        Never raises for task failures.
        """
        with self._lock:
            self._submitted += 1

        if self.synchronous:
            self._execute((description, fn, args))
            return True

        if not self.running:
            self.start()

        try:
            self._queue.put_nowait((description, fn, args))
        except queue.Full:
            with self._lock:
                self._dropped += 1
            logger.warning(f'Writer queue full, dropping task: {description}')
            return False
        return True

    def flush(self, timeout: float = 10.0) -> bool:
        """Wait until all queued tasks have run. Returns False on timeout."""
        if self.synchronous or not self.running:
            return True
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._execute(item)
            finally:
                self._queue.task_done()

    def _execute(self, task: Task) -> None:
        description, fn, args = task
        try:
            fn(*args)
        except Exception as e:
            with self._lock:
                self._failed += 1
                self._last_error = f'{description}: {e}'
            logger.error(f'Background write failed ({description}): {e}')
            return
        with self._lock:
            self._completed += 1

    @property
    def stats(self) -> dict:
        """Get writer statistics."""
        with self._lock:
            return {
                'submitted': self._submitted,
                'completed': self._completed,
                'failed': self._failed,
                'dropped': self._dropped,
                'pending': self._queue.qsize(),
                'last_error': self._last_error,
                'running': self.running or self.synchronous,
            }
