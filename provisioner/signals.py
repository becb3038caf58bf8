"""
Signal Translation
==================

Turns OS signals into SignalKind events on a FIFO queue that the lifecycle
controller drains. The handlers only append; all real work happens on the
controller thread.
"""

from __future__ import annotations
import enum
import logging
import signal
from collections import deque
from typing import Optional

log = logging.getLogger(__name__)


class SignalKind(enum.Enum):
    CHILD_EXITED = "CLD"
    TERMINATE    = "TERM"
    INTERRUPT    = "INT"


OS_SIGNALS = {
    signal.SIGCHLD: SignalKind.CHILD_EXITED,
    signal.SIGTERM: SignalKind.TERMINATE,
    signal.SIGINT:  SignalKind.INTERRUPT,
}


class SignalQueue:
    # deque append/popleft are atomic, so the handler never needs a lock
    def __init__(self):
        self._events: deque[SignalKind] = deque()

    def put(self, kind: SignalKind):
        self._events.append(kind)

    def pop(self) -> Optional[SignalKind]:
        try:
            return self._events.popleft()
        except IndexError:
            return None

    def __len__(self) -> int:
        return len(self._events)

    def __repr__(self) -> str:
        return f"SignalQueue({[k.value for k in self._events]})"


def install_handlers(queue: SignalQueue) -> dict:
    """
    Route SIGCHLD, SIGTERM and SIGINT into queue.
    Must run on the main thread. Returns the previous handlers.
    """
    previous = {}
    for signum, kind in OS_SIGNALS.items():
        previous[signum] = signal.signal(signum, lambda s, f, kind=kind: queue.put(kind))
    log.debug(f"installed handlers for {[k.value for k in OS_SIGNALS.values()]}")
    return previous


def restore_handlers(previous: dict):
    for signum, handler in previous.items():
        # None means the old handler was not set from Python; leave ours in place
        if handler is not None:
            signal.signal(signum, handler)
