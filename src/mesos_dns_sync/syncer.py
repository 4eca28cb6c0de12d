"""The DNS sync actor.

One thread owns all state (task index, masters snapshot, operation buffer,
subscription) and processes a single mailbox in arrival order: task events,
subscription loss, and the masters and push-ops timers.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Hashable, List, Optional

from mesos_dns_sync.batcher import DEFAULT_PUSH_INTERVAL, OperationBatcher
from mesos_dns_sync.index import TaskRecordIndex
from mesos_dns_sync.records import (
    DEFAULT_DOMAIN,
    DEFAULT_TTL,
    DNSRecord,
    Workload,
    leader_record,
    master_records,
    task_records,
    zone_records,
)
from mesos_dns_sync.sources import (
    AlreadySubscribedError,
    SubscribeError,
    SubscribeTimeoutError,
    Subscription,
    SubscriptionDown,
    TaskUpdated,
    WorkloadEventSource,
)
from mesos_dns_sync.stores import ReplicatedStore
from mesos_dns_sync.zone import complement, diff_operations

logger = logging.getLogger(__name__)

DEFAULT_MASTERS_INTERVAL = 5.0
DEFAULT_RETRY_DELAY = 0.1

MASTERS_TIMER = "masters"
PUSH_OPS_TIMER = "push_ops"

# =============================================================================
# Messages and States
# =============================================================================


@dataclass(frozen=True)
class Init:
    """Start (or retry) the subscription."""


@dataclass(frozen=True)
class TimerExpired:
    kind: str
    ref: int


class SyncState(Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    TERMINATED = "terminated"


class SyncTerminated(Exception):
    """The syncer hit a condition it cannot recover from and must be restarted."""


TimerFactory = Callable[[float, Callable[[], None]], object]


def start_timer(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


# =============================================================================
# Syncer
# =============================================================================


class MesosDNSSyncer:
    def __init__(
        self,
        *,
        event_source: WorkloadEventSource,
        store: ReplicatedStore,
        resolvers: Callable[[], List[str]],
        node_ip: str,
        domain: str = DEFAULT_DOMAIN,
        ttl: int = DEFAULT_TTL,
        masters_interval: float = DEFAULT_MASTERS_INTERVAL,
        push_interval: float = DEFAULT_PUSH_INTERVAL,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timer_factory: TimerFactory = start_timer,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.event_source = event_source
        self.store = store
        self.resolvers = resolvers
        self.node_ip = node_ip
        self.domain = domain
        self.ttl = ttl
        self.masters_interval = masters_interval
        self.retry_delay = retry_delay
        self._timer_factory = timer_factory
        self._sleep = sleep
        self._mailbox: "queue.Queue[object]" = queue.Queue()

        self.state = SyncState.UNSUBSCRIBED
        self.index = TaskRecordIndex()
        self.masters: List[DNSRecord] = []
        self._handle: Optional[Hashable] = None
        self._masters_refs = itertools.count(1)
        self._masters_ref: Optional[int] = None
        self.batcher = OperationBatcher(
            store,
            domain,
            schedule=lambda delay, ref: self._start_timer(PUSH_OPS_TIMER, delay, ref),
            interval=push_interval,
        )

    # -------------------------------------------------------------------------
    # Mailbox
    # -------------------------------------------------------------------------

    def post(self, message: object) -> None:
        """Queue a message for the syncer thread. Safe to call from any thread."""
        self._mailbox.put(message)

    def run(self) -> None:
        """Process the mailbox until a fatal condition raises out of here."""
        self.post(Init())
        while True:
            message = self._mailbox.get()
            try:
                self.handle(message)
            except Exception:
                self.state = SyncState.TERMINATED
                raise

    def handle(self, message: object) -> None:
        if self.state == SyncState.TERMINATED:
            raise SyncTerminated("syncer already terminated")

        if isinstance(message, Init):
            self._handle_init()
        elif isinstance(message, TaskUpdated):
            if message.handle == self._handle:
                self.event_source.next(message.handle)
                self._handle_task_updated(message.task_id, message.task)
        elif isinstance(message, SubscriptionDown):
            if message.handle == self._handle:
                self._terminate(f"event source went down: {message.reason}")
        elif isinstance(message, TimerExpired):
            if message.kind == MASTERS_TIMER and message.ref == self._masters_ref:
                self._handle_masters()
            elif message.kind == PUSH_OPS_TIMER:
                self.batcher.on_timer(message.ref)
        else:
            logger.debug(f"Ignoring unexpected message {message!r}")

    def _start_timer(self, kind: str, delay: float, ref: int) -> None:
        self._timer_factory(delay, lambda: self.post(TimerExpired(kind, ref)))

    def _terminate(self, reason: str) -> None:
        self.state = SyncState.TERMINATED
        logger.error(f"DNS sync terminated: {reason}")
        raise SyncTerminated(reason)

    # -------------------------------------------------------------------------
    # Subscription
    # -------------------------------------------------------------------------

    def _handle_init(self) -> None:
        if self.state != SyncState.UNSUBSCRIBED:
            return
        self.state = SyncState.SUBSCRIBING
        try:
            subscription = self.event_source.subscribe(self.post)
        except SubscribeTimeoutError as e:
            self._terminate(f"subscription timed out: {e}")
        except AlreadySubscribedError as e:
            self._terminate(f"already subscribed: {e}")
        except SubscribeError as e:
            logger.warning(f"Failed to subscribe to {self.event_source.name}, retrying: {e}")
            self.state = SyncState.UNSUBSCRIBED
            self._sleep(self.retry_delay)
            self.post(Init())
            return
        self._handle_subscribed(subscription)

    def _handle_subscribed(self, subscription: Subscription) -> None:
        self._handle = subscription.handle
        self.index = TaskRecordIndex()
        for task_id, task in subscription.tasks.items():
            if task.is_running:
                self.index.apply(task_id, True, task_records(task_id, task, self.domain, self.ttl))

        self.masters = self._master_records(previous=[])
        desired = set(self.index.records())
        desired.update(zone_records(self.domain))
        desired.update(self.masters)
        desired.add(leader_record(self.node_ip, self.domain, self.ttl))

        added, removed = complement(desired, self.store.read(self.domain))
        self.batcher.submit(diff_operations(added, removed))
        logger.info(
            f"DNS sync: {len(added)} records were added, {len(removed)} records were removed"
        )

        self._arm_masters_timer()
        self.state = SyncState.SUBSCRIBED

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def _handle_task_updated(self, task_id: str, task: Workload) -> None:
        records = task_records(task_id, task, self.domain, self.ttl) if task.is_running else []
        ops = self.index.apply(task_id, task.is_running, records)
        if ops:
            logger.debug(f"Task {task_id} ({task.name}, {task.state}): {len(ops)} operation(s)")
        self.batcher.submit(ops)

    # -------------------------------------------------------------------------
    # Masters
    # -------------------------------------------------------------------------

    def _master_records(self, previous: List[DNSRecord]) -> List[DNSRecord]:
        try:
            resolvers = self.resolvers()
            return master_records(resolvers, self.domain, self.ttl)
        except ValueError as e:
            logger.warning(f"Failed to load Mesos resolvers, keeping previous masters: {e}")
            return previous

    def _arm_masters_timer(self) -> None:
        self._masters_ref = next(self._masters_refs)
        self._start_timer(MASTERS_TIMER, self.masters_interval, self._masters_ref)

    def _handle_masters(self) -> None:
        records = self._master_records(previous=self.masters)
        added, removed = complement(records, self.masters)
        for record in added:
            logger.info(f"DNS records: master {record.data} was added")
        for record in removed:
            logger.info(f"DNS records: master {record.data} was removed")

        self.masters = records
        self._arm_masters_timer()
        self.batcher.submit(diff_operations(added, removed))
