"""Replicated zone stores.

The store holds one record set per zone and merges ``add_all``/``remove_all``
operations from every node. Adds are idempotent and duplicate-tolerant, so the
syncer never needs exclusive access.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Sequence, Set

import requests
from requests.auth import HTTPBasicAuth

from mesos_dns_sync.records import DNSRecord
from mesos_dns_sync.zone import OpKind, Operation, sort_records

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """The replicated store could not be read or did not accept an update."""


# =============================================================================
# Store Interface
# =============================================================================


class ReplicatedStore(ABC):
    """Abstract base class for replicated zone stores."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the store name for logging."""
        pass

    @abstractmethod
    def read(self, zone: str) -> Set[DNSRecord]:
        """Return the current record set of a zone (empty if the zone is absent)."""
        pass

    @abstractmethod
    def apply(self, zone: str, ops: Sequence[Operation]) -> None:
        """Apply all operations to a zone as one request."""
        pass


def _parse_records(raw: Any, source: str) -> Set[DNSRecord]:
    if not isinstance(raw, list):
        raise StoreError(f"Unexpected records format from {source}: expected list")
    records: Set[DNSRecord] = set()
    for item in raw:
        try:
            records.add(DNSRecord.from_dict(item))
        except ValueError as e:
            logger.warning(f"Skipping malformed record from {source}: {e}")
    return records


# =============================================================================
# HTTP Store
# =============================================================================


class HTTPReplicatedStore(ReplicatedStore):
    """Replicated store reached over its HTTP API."""

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        timeout: float = 5.0,
        verify_tls: bool = True,
    ):
        self._url = url.rstrip("/")
        self._timeout = timeout
        self._verify = verify_tls
        self._session = requests.Session()
        if username and password:
            self._session.auth = HTTPBasicAuth(username, password)

    @property
    def name(self) -> str:
        return "HTTP store"

    def test_connection(self) -> bool:
        try:
            response = self._session.get(
                f"{self._url}/v1/version", timeout=self._timeout, verify=self._verify
            )
            response.raise_for_status()
            logger.info(f"{self.name} connection successful")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def read(self, zone: str) -> Set[DNSRecord]:
        try:
            response = self._session.get(
                f"{self._url}/v1/zones/{zone}/records",
                timeout=self._timeout,
                verify=self._verify,
            )
            if response.status_code == 404:
                return set()
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to read zone {zone} from {self.name}: {e}") from e
        return _parse_records(data, self.name)

    def apply(self, zone: str, ops: Sequence[Operation]) -> None:
        if not ops:
            return
        payload = {"ops": [op.to_dict() for op in ops]}
        try:
            response = self._session.post(
                f"{self._url}/v1/zones/{zone}/ops",
                json=payload,
                timeout=self._timeout,
                verify=self._verify,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise StoreError(f"Failed to update zone {zone} in {self.name}: {e}") from e
        logger.debug(f"Applied {len(ops)} operation(s) to zone {zone}")


# =============================================================================
# File Store
# =============================================================================


class FileReplicatedStore(ReplicatedStore):
    """Single-node store kept in a JSON file, written atomically."""

    def __init__(self, path: str):
        self.path = Path(path)

    @property
    def name(self) -> str:
        return f"file store {self.path}"

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"version": 1, "zones": {}}
        try:
            state = json.loads(self.path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to load {self.path}: {e}") from e
        if not isinstance(state, dict):
            raise StoreError(f"Unexpected content in {self.path}: expected object")
        state.setdefault("version", 1)
        state.setdefault("zones", {})
        return state

    def save(self, state: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(state, indent=2, sort_keys=True), "utf-8")
            tmp_path.replace(self.path)
        except OSError as e:
            raise StoreError(f"Failed to write {self.path}: {e}") from e

    def read(self, zone: str) -> Set[DNSRecord]:
        state = self.load()
        return _parse_records(state["zones"].get(zone, []), self.name)

    def apply(self, zone: str, ops: Sequence[Operation]) -> None:
        if not ops:
            return
        state = self.load()
        records = _parse_records(state["zones"].get(zone, []), self.name)
        for op in ops:
            if op.kind == OpKind.ADD_ALL:
                records.update(op.records)
            else:
                records.difference_update(op.records)
        zone_records: List[Dict[str, Any]] = [r.to_dict() for r in sort_records(records)]
        state["zones"][zone] = zone_records
        self.save(state)
