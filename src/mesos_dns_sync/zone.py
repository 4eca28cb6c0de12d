"""Replicated-set operations and zone diffing."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Tuple

from mesos_dns_sync.records import DNSRecord


class OpKind(Enum):
    ADD_ALL = "add_all"
    REMOVE_ALL = "remove_all"


@dataclass(frozen=True)
class Operation:
    """One replicated-set update: add or remove a group of records."""

    kind: OpKind
    records: Tuple[DNSRecord, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.kind.value, "records": [r.to_dict() for r in self.records]}


def add_all(records: Iterable[DNSRecord]) -> Operation:
    return Operation(OpKind.ADD_ALL, tuple(records))


def remove_all(records: Iterable[DNSRecord]) -> Operation:
    return Operation(OpKind.REMOVE_ALL, tuple(records))


def sort_records(records: Iterable[DNSRecord]) -> List[DNSRecord]:
    return sorted(records, key=DNSRecord.sort_key)


def complement(
    desired: Iterable[DNSRecord], observed: Iterable[DNSRecord]
) -> Tuple[List[DNSRecord], List[DNSRecord]]:
    """Return ``(desired - observed, observed - desired)`` as sorted lists."""
    desired_set = set(desired)
    observed_set = set(observed)
    if desired_set == observed_set:
        return [], []
    return sort_records(desired_set - observed_set), sort_records(observed_set - desired_set)


def diff_operations(added: List[DNSRecord], removed: List[DNSRecord]) -> List[Operation]:
    """Turn a diff into operations. Removes go first; empty groups are dropped."""
    ops: List[Operation] = []
    if removed:
        ops.append(remove_all(removed))
    if added:
        ops.append(add_all(added))
    return ops
