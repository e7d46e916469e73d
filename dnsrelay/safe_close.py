"""Coordinated shutdown of a service and the worker threads it starts.

1. The main service thread waits on ``receive_close_signal`` and calls
   ``done`` before it returns.
2. Worker threads are started with ``attach`` and wait on the close signal.
3. On a fatal error any service thread may call ``send_close_signal``;
   it must not call ``close_wait``, which would deadlock.
4. Anyone else may call ``close_wait`` to stop the service.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional


class SafeClose:
    """Closes a service and waits until all of its threads have finished."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._close_signal = threading.Event()
        self._done = threading.Event()
        self._active = 0
        self._idle = threading.Condition(self._lock)
        self._close_err: Optional[BaseException] = None

    def close_wait(self) -> None:
        """Send the close signal and block until ``done`` was called and
        every attached thread has finished. Safe to call many times."""
        with self._lock:
            self._close_signal.set()
            while self._active > 0:
                self._idle.wait()
        self._done.wait()

    def send_close_signal(self, err: Optional[BaseException]) -> None:
        """Send the close signal; only the first call's error is kept."""
        with self._lock:
            if not self._close_signal.is_set():
                self._close_err = err
                self._close_signal.set()

    @property
    def err(self) -> Optional[BaseException]:
        """The error given to the first ``send_close_signal``."""
        with self._lock:
            return self._close_err

    def receive_close_signal(self) -> threading.Event:
        """The event that is set once closing has begun."""
        return self._close_signal

    def attach(
        self, func: Callable[[Callable[[], None], threading.Event], None]
    ) -> None:
        """Run func(done, close_signal) in a new thread tracked by close_wait.

        func must watch close_signal and call done when it finishes. If the
        close signal was already sent, func is not run.
        """
        with self._lock:
            if self._close_signal.is_set():
                return
            self._active += 1
            thread = threading.Thread(
                target=func, args=(self._attach_done, self._close_signal), daemon=True
            )
            thread.start()

    def _attach_done(self) -> None:
        with self._lock:
            self._active -= 1
            if self._active <= 0:
                self._idle.notify_all()

    def done(self) -> None:
        """Tell close_wait that the main service has finished. Idempotent."""
        self._done.set()