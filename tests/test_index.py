"""Unit tests for the task record index and zone diffing."""

import pytest

from mesos_dns_sync.index import TaskRecordIndex
from mesos_dns_sync.records import DNSRecord, RecordType
from mesos_dns_sync.zone import OpKind, add_all, complement, diff_operations, remove_all

DOMAIN = "dcos.thisdcos.directory"


def rr(name: str, ip: str) -> DNSRecord:
    return DNSRecord(name=f"{name}.{DOMAIN}", type=RecordType.A, ttl=5, data=ip)


AGENT = rr("web.marathon.agentip", "10.0.0.1")
CONTAINER = rr("web.marathon.containerip", "9.0.0.5")
AUTO = rr("web.marathon.autoip", "9.0.0.5")
W1_RECORDS = [AGENT, CONTAINER, AUTO]


# =============================================================================
# Transitions
# =============================================================================


def test_running_task_adds_its_records() -> None:
    index = TaskRecordIndex()

    ops = index.apply("w1", True, W1_RECORDS)

    assert ops == [add_all(W1_RECORDS)]
    assert "w1" in index
    assert index.records() == set(W1_RECORDS)


def test_stopped_task_removes_its_records() -> None:
    index = TaskRecordIndex()
    index.apply("w1", True, W1_RECORDS)

    ops = index.apply("w1", False)

    assert ops == [remove_all(W1_RECORDS)]
    assert "w1" not in index
    assert index.records() == set()


def test_shared_record_kept_while_another_task_needs_it() -> None:
    """Removing one of two tasks sharing a record must not remove the record."""
    index = TaskRecordIndex()
    w2_agent = AGENT
    w2_records = [w2_agent, rr("web.marathon.containerip", "9.0.0.6")]
    index.apply("w1", True, W1_RECORDS)
    index.apply("w2", True, w2_records)
    assert index.refcount(AGENT) == 2

    ops = index.apply("w1", False)

    assert ops == [remove_all([CONTAINER, AUTO])]
    assert index.refcount(AGENT) == 1
    assert AGENT in index.records()


def test_last_task_removal_emits_shared_record() -> None:
    index = TaskRecordIndex()
    index.apply("w1", True, [AGENT])
    index.apply("w2", True, [AGENT])
    index.apply("w1", False)

    ops = index.apply("w2", False)

    assert ops == [remove_all([AGENT])]
    assert index.refcount(AGENT) == 0
    assert index.records() == set()


def test_duplicate_running_event_is_noop() -> None:
    index = TaskRecordIndex()
    index.apply("w1", True, W1_RECORDS)

    ops = index.apply("w1", True, W1_RECORDS)

    assert ops == []
    assert index.refcount(AGENT) == 1


def test_not_running_event_for_absent_task_is_noop() -> None:
    index = TaskRecordIndex()

    assert index.apply("w1", False) == []
    assert len(index) == 0


def test_running_task_without_records_is_tracked_but_emits_nothing() -> None:
    index = TaskRecordIndex()

    assert index.apply("w1", True, []) == []
    assert "w1" in index
    assert index.apply("w1", False) == []


def test_task_with_duplicate_records_is_counted_per_occurrence() -> None:
    index = TaskRecordIndex()
    index.apply("w1", True, [CONTAINER, CONTAINER])
    assert index.refcount(CONTAINER) == 2

    ops = index.apply("w1", False)

    assert ops == [remove_all([CONTAINER])]
    assert index.refcount(CONTAINER) == 0


def test_refcounts_match_running_tasks_after_mixed_sequence() -> None:
    """A record is present iff at least one running task derives it."""
    index = TaskRecordIndex()
    shared = rr("db.marathon.agentip", "10.0.0.2")
    sequence = [
        ("a", True, [AGENT, shared]),
        ("b", True, [shared]),
        ("c", True, [CONTAINER]),
        ("a", False, []),
        ("b", True, [shared]),
        ("c", False, []),
        ("d", True, [AGENT]),
    ]
    running = {}
    for task_id, is_running, records in sequence:
        index.apply(task_id, is_running, records)
        if is_running:
            running.setdefault(task_id, records)
        else:
            running.pop(task_id, None)

    expected = {record for records in running.values() for record in records}
    assert index.records() == expected
    assert index.refcount(shared) == 1
    assert index.refcount(AGENT) == 1


def test_initial_load_order_does_not_matter() -> None:
    tasks = {
        "w1": W1_RECORDS,
        "w2": [AGENT],
        "w3": [rr("db.marathon.agentip", "10.0.0.2")],
    }
    forward = TaskRecordIndex()
    for task_id in sorted(tasks):
        forward.apply(task_id, True, tasks[task_id])
    backward = TaskRecordIndex()
    for task_id in sorted(tasks, reverse=True):
        backward.apply(task_id, True, tasks[task_id])

    assert forward.records() == backward.records()
    assert forward.tasks == backward.tasks


def test_contribute_twice_raises() -> None:
    index = TaskRecordIndex()
    index.contribute("w1", [AGENT])

    with pytest.raises(KeyError):
        index.contribute("w1", [AGENT])


def test_retract_unknown_task_raises() -> None:
    with pytest.raises(KeyError):
        TaskRecordIndex().retract("missing")


def test_tasks_view_is_a_copy() -> None:
    index = TaskRecordIndex()
    index.apply("w1", True, W1_RECORDS)

    index.tasks["w1"].clear()

    assert index.tasks["w1"] == W1_RECORDS


# =============================================================================
# Zone Diff
# =============================================================================


def test_diff_of_equal_sets_is_empty() -> None:
    records = set(W1_RECORDS)
    assert complement(records, set(records)) == ([], [])
    assert complement([], []) == ([], [])


def test_diff_reports_missing_record_as_added() -> None:
    assert complement(set(W1_RECORDS), {AGENT, CONTAINER}) == ([AUTO], [])


def test_diff_reports_extra_record_as_removed() -> None:
    assert complement({AGENT, CONTAINER}, set(W1_RECORDS)) == ([], [AUTO])


def test_diff_results_are_sorted() -> None:
    added, removed = complement(W1_RECORDS, [])
    assert added == sorted(W1_RECORDS, key=DNSRecord.sort_key)
    assert removed == []


def test_diff_operations_removes_first_and_drops_empty() -> None:
    assert diff_operations([], []) == []
    assert diff_operations([AGENT], []) == [add_all([AGENT])]
    ops = diff_operations([AGENT], [AUTO])
    assert [op.kind for op in ops] == [OpKind.REMOVE_ALL, OpKind.ADD_ALL]
    assert ops[0].records == (AUTO,)
    assert ops[1].records == (AGENT,)
