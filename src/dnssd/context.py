"""Cancellation contexts for long-running browse operations.

Brief:
  A Context is a one-shot cancellation signal with a cause. Contexts form a
  tree: cancelling a parent cancels every child with the parent's error,
  while cancelling a child leaves the parent running. Deadlines are
  implemented with a daemon ``threading.Timer``.

Example:
  >>> ctx = Context.background().with_cancel()
  >>> ctx.done()
  False
  >>> ctx.cancel("user stopped browsing")
  >>> ctx.err().cause
  'user stopped browsing'
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from .errors import Cancelled, ContextError, DeadlineExceeded

logger = logging.getLogger(__name__)

DoneCallback = Callable[["Context"], None]


class Context:
    """Brief: Cancellation token shared between a caller and an operation.

    Inputs:
      - parent: Optional parent context; the new context is done as soon as
        the parent is.

    Outputs:
      - Context instance.

    Notes:
      - Use ``with ctx:`` to guarantee the context (and its deadline timer) is
        released when the block exits.
    """

    def __init__(self, parent: Optional["Context"] = None) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._err: Optional[ContextError] = None
        self._callbacks: List[DoneCallback] = []
        self._timer: Optional[threading.Timer] = None
        self._parent = parent
        if parent is not None:
            parent.add_done_callback(self._on_parent_done)

    def _on_parent_done(self, parent: "Context") -> None:
        self._finish(parent.err())

    @classmethod
    def background(cls) -> "Context":
        """Brief: Return a new root context that is never done on its own."""

        return cls()

    def with_cancel(self) -> "Context":
        return Context(parent=self)

    def with_timeout(self, seconds: float) -> "Context":
        """Brief: Return a child context that expires after ``seconds``.

        Inputs:
          - seconds: Non-negative delay; 0 expires the child immediately.

        Outputs:
          - Context whose error becomes DeadlineExceeded on expiry.
        """

        child = Context(parent=self)
        delay = max(0.0, float(seconds))
        timer = threading.Timer(
            delay,
            lambda: child._finish(DeadlineExceeded(cause=f"timeout after {delay}s")),
        )
        timer.daemon = True
        child._timer = timer
        timer.start()
        return child

    def cancel(self, cause: object = None) -> None:
        """Brief: Mark the context as done with a Cancelled error.

        Inputs:
          - cause: Optional reason stored on the resulting error.

        Outputs:
          - None. Cancelling a context that is already done has no effect.
        """

        self._finish(Cancelled(cause=cause))

    def _finish(self, err: Optional[ContextError]) -> None:
        if err is None:
            err = Cancelled()
        with self._lock:
            if self._err is not None:
                return
            self._err = err
            callbacks = list(self._callbacks)
            self._callbacks.clear()
            timer = self._timer
            parent = self._parent
            self._parent = None
        if timer is not None:
            timer.cancel()
        if parent is not None:
            parent.remove_done_callback(self._on_parent_done)
        self._event.set()
        for cb in callbacks:
            try:
                cb(self)
            except Exception:
                logger.exception("context done callback failed")

    def add_done_callback(self, fn: DoneCallback) -> None:
        """Brief: Run ``fn(ctx)`` once the context is done.

        Inputs:
          - fn: Callable invoked from the cancelling thread; when the context
            is already done it runs immediately in the calling thread.

        Outputs:
          - None.
        """

        with self._lock:
            if self._err is None:
                self._callbacks.append(fn)
                return
        fn(self)

    def remove_done_callback(self, fn: DoneCallback) -> bool:
        """Brief: Unregister a callback added with add_done_callback().

        Outputs:
          - bool: True when ``fn`` was still pending and got removed.
        """

        with self._lock:
            try:
                self._callbacks.remove(fn)
            except ValueError:
                return False
        return True

    def done(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Brief: Block until the context is done or ``timeout`` elapses.

        Outputs:
          - bool: True when the context is done.
        """

        return self._event.wait(timeout)

    def err(self) -> Optional[ContextError]:
        return self._err

    @property
    def cause(self) -> object:
        err = self._err
        return err.cause if err is not None else None

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()
