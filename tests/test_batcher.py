"""Unit tests for OperationBatcher debouncing."""

from typing import List, Sequence, Set, Tuple

import pytest

from mesos_dns_sync.batcher import OperationBatcher
from mesos_dns_sync.records import DNSRecord, RecordType
from mesos_dns_sync.stores import ReplicatedStore, StoreError
from mesos_dns_sync.zone import Operation, add_all, remove_all

ZONE = "dcos.thisdcos.directory"


def rr(ip: str) -> DNSRecord:
    return DNSRecord(name=f"app.marathon.agentip.{ZONE}", type=RecordType.A, ttl=5, data=ip)


class RecordingStore(ReplicatedStore):
    """Store that only records apply() calls."""

    def __init__(self) -> None:
        self.apply_calls: List[Tuple[str, List[Operation]]] = []
        self.fail = False

    @property
    def name(self) -> str:
        return "RecordingStore"

    def read(self, zone: str) -> Set[DNSRecord]:
        return set()

    def apply(self, zone: str, ops: Sequence[Operation]) -> None:
        if self.fail:
            raise StoreError("store unavailable")
        self.apply_calls.append((zone, list(ops)))


class ManualScheduler:
    def __init__(self) -> None:
        self.scheduled: List[Tuple[float, int]] = []

    def __call__(self, delay: float, ref: int) -> None:
        self.scheduled.append((delay, ref))


def make_batcher() -> Tuple[OperationBatcher, RecordingStore, ManualScheduler]:
    store = RecordingStore()
    scheduler = ManualScheduler()
    batcher = OperationBatcher(store, ZONE, schedule=scheduler, interval=1.0)
    return batcher, store, scheduler


def test_empty_submit_is_noop() -> None:
    batcher, store, scheduler = make_batcher()

    batcher.submit([])
    batcher.submit([add_all([])])

    assert store.apply_calls == []
    assert scheduler.scheduled == []
    assert not batcher.pending


def test_first_submit_pushes_immediately_and_arms_timer() -> None:
    batcher, store, scheduler = make_batcher()

    batcher.submit([add_all([rr("10.0.0.1")])])

    assert store.apply_calls == [(ZONE, [add_all([rr("10.0.0.1")])])]
    assert len(scheduler.scheduled) == 1
    assert scheduler.scheduled[0][0] == 1.0
    assert batcher.pending


def test_submits_within_window_are_coalesced() -> None:
    """N submits in one window: one immediate push and one flush of the rest."""
    batcher, store, scheduler = make_batcher()
    first = [add_all([rr("10.0.0.1")])]
    second = [add_all([rr("10.0.0.2")])]
    third = [remove_all([rr("10.0.0.1")]), add_all([rr("10.0.0.3")])]

    batcher.submit(first)
    batcher.submit(second)
    batcher.submit(third)

    assert len(store.apply_calls) == 1
    assert batcher.buffered == second + third

    _, ref = scheduler.scheduled[0]
    assert batcher.on_timer(ref) is True

    assert store.apply_calls == [(ZONE, first), (ZONE, second + third)]
    assert len(scheduler.scheduled) == 1
    assert not batcher.pending
    assert batcher.buffered == []


def test_timer_with_empty_buffer_disarms_without_push() -> None:
    batcher, store, scheduler = make_batcher()
    batcher.submit([add_all([rr("10.0.0.1")])])

    batcher.on_timer(scheduler.scheduled[0][1])

    assert len(store.apply_calls) == 1
    assert not batcher.pending


def test_submit_after_flush_pushes_immediately_again() -> None:
    batcher, store, scheduler = make_batcher()
    batcher.submit([add_all([rr("10.0.0.1")])])
    batcher.on_timer(scheduler.scheduled[0][1])

    batcher.submit([add_all([rr("10.0.0.2")])])

    assert len(store.apply_calls) == 2
    assert len(scheduler.scheduled) == 2
    assert scheduler.scheduled[0][1] != scheduler.scheduled[1][1]


def test_stale_timer_is_ignored() -> None:
    batcher, store, scheduler = make_batcher()
    batcher.submit([add_all([rr("10.0.0.1")])])
    stale_ref = scheduler.scheduled[0][1]
    batcher.on_timer(stale_ref)
    batcher.submit([add_all([rr("10.0.0.2")])])
    batcher.submit([add_all([rr("10.0.0.3")])])

    assert batcher.on_timer(stale_ref) is False

    assert batcher.pending
    assert batcher.buffered == [add_all([rr("10.0.0.3")])]
    assert len(store.apply_calls) == 2


def test_store_failure_propagates() -> None:
    batcher, store, _ = make_batcher()
    store.fail = True

    with pytest.raises(StoreError):
        batcher.submit([add_all([rr("10.0.0.1")])])
