"""Debounced pushing of operations to the replicated store."""

from __future__ import annotations

import itertools
import logging
from typing import Callable, Iterable, List, Optional

from mesos_dns_sync.stores import ReplicatedStore
from mesos_dns_sync.zone import Operation

logger = logging.getLogger(__name__)

DEFAULT_PUSH_INTERVAL = 1.0


class OperationBatcher:
    """Pushes at most one request per interval to the store.

    The first submit while idle goes out immediately and arms the timer. Later
    submits are buffered until the timer expires, when the buffer is pushed as
    one request and the batcher goes idle again.

    ``schedule(delay, ref)`` must arrange for ``on_timer(ref)`` to be called
    after ``delay`` seconds.
    """

    def __init__(
        self,
        store: ReplicatedStore,
        zone: str,
        *,
        schedule: Callable[[float, int], None],
        interval: float = DEFAULT_PUSH_INTERVAL,
    ):
        self.store = store
        self.zone = zone
        self.interval = interval
        self._schedule = schedule
        self._refs = itertools.count(1)
        self._timer_ref: Optional[int] = None
        self._buffer: List[Operation] = []

    @property
    def pending(self) -> bool:
        return self._timer_ref is not None

    @property
    def buffered(self) -> List[Operation]:
        return list(self._buffer)

    def submit(self, ops: Iterable[Operation]) -> None:
        ops = [op for op in ops if op.records]
        if not ops:
            return
        if self._timer_ref is not None:
            self._buffer.extend(ops)
            return
        self._push(ops)
        self._timer_ref = next(self._refs)
        self._schedule(self.interval, self._timer_ref)

    def on_timer(self, ref: int) -> bool:
        """Flush the buffer. Returns False for an expiry of a superseded timer."""
        if ref != self._timer_ref:
            logger.debug(f"Ignoring stale push timer {ref}")
            return False
        ops, self._buffer = self._buffer, []
        self._timer_ref = None
        if ops:
            self._push(ops)
        return True

    def _push(self, ops: List[Operation]) -> None:
        logger.debug(f"Pushing {len(ops)} operation(s) to zone {self.zone}")
        self.store.apply(self.zone, ops)
