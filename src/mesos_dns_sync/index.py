"""Per-task record index with reference counting.

Several tasks can derive the very same record (e.g. two instances of an app on
one agent share the ``agentip`` record). A record stays in the zone as long as
at least one running task contributes it.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Set

from mesos_dns_sync.records import DNSRecord
from mesos_dns_sync.zone import Operation, add_all, remove_all

logger = logging.getLogger(__name__)


class TaskRecordIndex:
    """Records contributed by each running task, plus a refcount per record.

    Invariants:
      - a task id is present iff its last observed state was running
      - a record is counted iff at least one present task contributes it
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, List[DNSRecord]] = {}
        self._refcounts: Dict[DNSRecord, int] = {}

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def tasks(self) -> Mapping[str, List[DNSRecord]]:
        return {task_id: list(records) for task_id, records in self._tasks.items()}

    def records(self) -> Set[DNSRecord]:
        """The deduplicated set of records that running tasks need."""
        return set(self._refcounts)

    def refcount(self, record: DNSRecord) -> int:
        return self._refcounts.get(record, 0)

    def contribute(self, task_id: str, records: Iterable[DNSRecord]) -> List[DNSRecord]:
        """Register ``records`` for a task that is not yet present."""
        if task_id in self._tasks:
            raise KeyError(f"Task {task_id} already contributes records")
        task_records = list(records)
        self._tasks[task_id] = task_records
        for record in task_records:
            self._refcounts[record] = self._refcounts.get(record, 0) + 1
        return task_records

    def retract(self, task_id: str) -> List[DNSRecord]:
        """Drop a task and return the records no other task still contributes."""
        task_records = self._tasks.pop(task_id)
        for record in task_records:
            count = self._refcounts[record] - 1
            if count == 0:
                del self._refcounts[record]
            else:
                self._refcounts[record] = count
        orphaned: List[DNSRecord] = []
        for record in task_records:
            if record not in self._refcounts and record not in orphaned:
                orphaned.append(record)
        return orphaned

    def apply(self, task_id: str, running: bool, records: Iterable[DNSRecord] = ()) -> List[Operation]:
        """Apply a task state change and return the resulting store operations."""
        if running == (task_id in self._tasks):
            return []
        if running:
            task_records = self.contribute(task_id, records)
            logger.debug(f"Task {task_id} is running with {len(task_records)} records")
            return [add_all(task_records)] if task_records else []
        orphaned = self.retract(task_id)
        logger.debug(f"Task {task_id} is gone, {len(orphaned)} records orphaned")
        return [remove_all(orphaned)] if orphaned else []
