"""Bounded-concurrency streaming stages over thread-backed queues.

A Pipe is a single-use sequence. Each stage consumes one Pipe and returns a
new one, so a chain is strictly linear:

    p = Pipe.from_slice(rebuilds)
    p = p.par_do(10, fetch_logs)
    summaries = par_into(50, p, summarize)
    for summary in summaries.out():
        ...

Only ``from_slice`` and ``do`` preserve order. ``par_do``/``par_into`` run
``n`` workers against a shared input and output; their output closes once the
input is drained and every worker has returned.

Every pipe in a chain shares one CancelToken. Abandoning ``out()`` before it
is exhausted cancels the token, which releases every upstream worker.
"""

from __future__ import annotations

import logging
import queue
import threading
from enum import Enum
from typing import Callable, Generic, Iterable, Iterator, Optional, TypeVar

LOG = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

Emit = Callable[[U], None]
StageFn = Callable[[T, Emit], None]

POLL_INTERVAL = 0.05

_CLOSED = object()


class PipeCancelled(RuntimeError):
    """Raised from ``emit`` once the chain has been cancelled."""


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to ``timeout`` seconds; True if cancelled."""
        return self._event.wait(timeout)


class PipeState(str, Enum):
    UNSTARTED = "unstarted"
    DRAINING = "draining"
    CLOSED = "closed"


class Pipe(Generic[T]):
    def __init__(self, channel: "queue.Queue", cancel: CancelToken, *, buffer: int = 1):
        self._channel = channel
        self._buffer = buffer
        self._lock = threading.Lock()
        self._taken = False
        self._state = PipeState.UNSTARTED
        self.cancel_token = cancel

    @classmethod
    def from_slice(cls, items: Iterable[T], *, cancel: Optional[CancelToken] = None, buffer: int = 1) -> "Pipe[T]":
        token = cancel or CancelToken()
        buffer = max(1, buffer)
        channel: queue.Queue = queue.Queue(maxsize=buffer)
        snapshot = list(items)

        def _produce() -> None:
            for item in snapshot:
                if not _put(channel, item, token):
                    return
            _put(channel, _CLOSED, token)

        _start(_produce, "pipe-source")
        return cls(channel, token, buffer=buffer)

    @property
    def state(self) -> PipeState:
        return self._state

    def do(self, fn: StageFn) -> "Pipe":
        """Run ``fn`` over each item on one worker, preserving order."""
        return self._stage(1, fn, "do")

    def par_do(self, workers: int, fn: StageFn) -> "Pipe":
        """Run ``fn`` over items on ``workers`` threads; output is unordered."""
        if workers < 1:
            raise ValueError(f"Parallelism must be at least 1, got {workers}.")
        return self._stage(workers, fn, "par_do")

    def out(self) -> Iterator[T]:
        self._take()
        return self._drain()

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def _take(self) -> None:
        with self._lock:
            if self._taken:
                raise RuntimeError("Pipe has already been consumed.")
            self._taken = True
            self._state = PipeState.DRAINING

    def _pull(self):
        item = _get(self._channel, self.cancel_token)
        if item is _CLOSED:
            self._state = PipeState.CLOSED
            # Leave the marker for sibling workers sharing this input.
            _put(self._channel, _CLOSED, self.cancel_token)
        return item

    def _stage(self, workers: int, fn: StageFn, name: str) -> "Pipe":
        self._take()
        token = self.cancel_token
        output: queue.Queue = queue.Queue(maxsize=self._buffer)

        def emit(value) -> None:
            if not _put(output, value, token):
                raise PipeCancelled(f"{name} stage cancelled")

        def _work() -> None:
            while True:
                item = self._pull()
                if item is _CLOSED:
                    return
                try:
                    fn(item, emit)
                except PipeCancelled:
                    return
                except Exception as exc:  # noqa: BLE001
                    LOG.warning("%s stage dropped an item: %s", name, exc)

        threads = [_start(_work, f"pipe-{name}-{i}") for i in range(workers)]

        def _join() -> None:
            for thread in threads:
                thread.join()
            _put(output, _CLOSED, token)

        _start(_join, f"pipe-{name}-join")
        return Pipe(output, token, buffer=self._buffer)

    def _drain(self) -> Iterator[T]:
        exhausted = False
        try:
            while True:
                item = _get(self._channel, self.cancel_token)
                if item is _CLOSED:
                    exhausted = True
                    self._state = PipeState.CLOSED
                    return
                yield item
        finally:
            if not exhausted:
                self.cancel_token.cancel()


def do_into(pipe: Pipe, fn: StageFn) -> Pipe:
    return pipe.do(fn)


def par_into(workers: int, pipe: Pipe, fn: StageFn) -> Pipe:
    return pipe.par_do(workers, fn)


def _put(channel: "queue.Queue", item, token: CancelToken) -> bool:
    while not token.cancelled:
        try:
            channel.put(item, timeout=POLL_INTERVAL)
            return True
        except queue.Full:
            continue
    return False


def _get(channel: "queue.Queue", token: CancelToken):
    while not token.cancelled:
        try:
            return channel.get(timeout=POLL_INTERVAL)
        except queue.Empty:
            continue
    return _CLOSED


def _start(target: Callable[[], None], name: str) -> threading.Thread:
    thread = threading.Thread(target=target, name=name, daemon=True)
    thread.start()
    return thread
