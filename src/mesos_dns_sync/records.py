"""DNS record types and derivation of records from Mesos tasks.

Every running task contributes records under three naming schemes, all of the
form ``<task-name>.<framework-name>.<scheme>.<domain>``:

    agentip       the IP of the agent the task runs on
    containerip   the container IPs (only when the task has any)
    autoip        agent IP when the task uses host port mappings (NAT),
                  container IPs otherwise

The zone apex also carries a fixed SOA/NS pair, and the ``master`` and
``leader`` names point at the Mesos masters and at this node.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN = "dcos.thisdcos.directory"
DEFAULT_TTL = 5
APEX_TTL = 3600
NAMESERVER = "ns.spartan"
HOSTMASTER = "support.mesosphere.com"

TASK_RUNNING = "TASK_RUNNING"

LABEL_INVALID_RE = re.compile(r"[^a-z0-9-]")
LABEL_MAX_LENGTH = 63
EMPTY_LABEL = "unnamed"

# =============================================================================
# Enums
# =============================================================================


class RecordType(Enum):
    A = "A"
    AAAA = "AAAA"
    NS = "NS"
    SOA = "SOA"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class SOAData:
    """Start-of-authority payload."""

    mname: str
    rname: str
    serial: int
    refresh: int
    retry: int
    expire: int
    minimum: int


@dataclass(frozen=True)
class DNSRecord:
    """A resource record. Records compare and hash by value."""

    name: str
    type: RecordType
    ttl: int
    data: Union[str, SOAData]

    def sort_key(self) -> Tuple[str, str, int, str]:
        return (self.name, self.type.value, self.ttl, str(self.data))

    def to_dict(self) -> Dict[str, Any]:
        data: Any = self.data
        if isinstance(data, SOAData):
            data = {
                "mname": data.mname,
                "rname": data.rname,
                "serial": data.serial,
                "refresh": data.refresh,
                "retry": data.retry,
                "expire": data.expire,
                "minimum": data.minimum,
            }
        return {"name": self.name, "type": self.type.value, "ttl": self.ttl, "data": data}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "DNSRecord":
        """Parse a record from its JSON form. Raises ValueError on malformed input."""
        if not isinstance(raw, dict):
            raise ValueError(f"Expected record object, got {type(raw).__name__}")
        try:
            record_type = RecordType(str(raw["type"]).upper())
            name = str(raw["name"])
            ttl = int(raw["ttl"])
            data = raw["data"]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed record {raw}: {e}") from e

        if record_type == RecordType.SOA:
            if not isinstance(data, dict):
                raise ValueError(f"Malformed SOA data in record {raw}")
            try:
                data = SOAData(
                    mname=str(data["mname"]),
                    rname=str(data["rname"]),
                    serial=int(data["serial"]),
                    refresh=int(data["refresh"]),
                    retry=int(data["retry"]),
                    expire=int(data["expire"]),
                    minimum=int(data["minimum"]),
                )
            except (KeyError, TypeError) as e:
                raise ValueError(f"Malformed SOA data in record {raw}: {e}") from e
        elif not isinstance(data, str):
            raise ValueError(f"Malformed {record_type.value} data in record {raw}")
        return cls(name=name, type=record_type, ttl=ttl, data=data)


@dataclass(frozen=True)
class PortMapping:
    """A task port. ``host_port`` is set only when the port is mapped (NAT)."""

    container_port: int
    host_port: Optional[int] = None
    protocol: str = "tcp"


@dataclass(frozen=True)
class Workload:
    """A Mesos task as seen by the DNS syncer."""

    name: str
    framework: str
    state: str
    agent_ip: Optional[str] = None
    container_ips: Tuple[str, ...] = ()
    ports: Tuple[PortMapping, ...] = field(default_factory=tuple)

    @property
    def is_running(self) -> bool:
        return self.state == TASK_RUNNING

    @property
    def uses_port_mapping(self) -> bool:
        return any(port.host_port is not None for port in self.ports)


# =============================================================================
# Names
# =============================================================================


def label(name: str) -> str:
    """Sanitize a string into a single DNS label."""
    value = LABEL_INVALID_RE.sub("-", name.lower()).strip("-")
    value = value[:LABEL_MAX_LENGTH].rstrip("-")
    if not value:
        logger.warning(f"Name {name!r} has no valid DNS characters, using {EMPTY_LABEL!r}")
        return EMPTY_LABEL
    return value


def format_name(parts: Iterable[str], domain: str) -> str:
    prefix = ".".join(label(part) for part in parts)
    return f"{prefix}.{domain}"


# =============================================================================
# Records
# =============================================================================


def dns_record(name: str, ip: str, ttl: int = DEFAULT_TTL) -> DNSRecord:
    """Build an A or AAAA record depending on the address family of ``ip``."""
    address = ipaddress.ip_address(ip)
    record_type = RecordType.A if address.version == 4 else RecordType.AAAA
    return DNSRecord(name=name, type=record_type, ttl=ttl, data=str(address))


def dns_records(name: str, ips: Iterable[str], ttl: int = DEFAULT_TTL) -> List[DNSRecord]:
    return [dns_record(name, ip, ttl) for ip in ips]


def task_agentip(
    task_id: str, task: Workload, domain: str = DEFAULT_DOMAIN, ttl: int = DEFAULT_TTL
) -> List[DNSRecord]:
    if not task.agent_ip:
        logger.warning(f"Unexpected task {task_id} without agent IP: {task}")
        return []
    name = format_name([task.name, task.framework, "agentip"], domain)
    return dns_records(name, [task.agent_ip], ttl)


def task_containerip(
    task_id: str, task: Workload, domain: str = DEFAULT_DOMAIN, ttl: int = DEFAULT_TTL
) -> List[DNSRecord]:
    if not task.container_ips:
        return []
    name = format_name([task.name, task.framework, "containerip"], domain)
    return dns_records(name, task.container_ips, ttl)


def task_autoip(
    task_id: str, task: Workload, domain: str = DEFAULT_DOMAIN, ttl: int = DEFAULT_TTL
) -> List[DNSRecord]:
    if not task.agent_ip:
        logger.warning(f"Unexpected task {task_id} without agent IP: {task}")
        return []
    name = format_name([task.name, task.framework, "autoip"], domain)
    # Container IPs are not reachable from outside when ports are mapped
    if task.container_ips and not task.uses_port_mapping:
        return dns_records(name, task.container_ips, ttl)
    return dns_records(name, [task.agent_ip], ttl)


def task_records(
    task_id: str, task: Workload, domain: str = DEFAULT_DOMAIN, ttl: int = DEFAULT_TTL
) -> List[DNSRecord]:
    """All records a task contributes, in agentip/containerip/autoip order."""
    return (
        task_agentip(task_id, task, domain, ttl)
        + task_containerip(task_id, task, domain, ttl)
        + task_autoip(task_id, task, domain, ttl)
    )


def zone_records(domain: str = DEFAULT_DOMAIN) -> List[DNSRecord]:
    """Apex SOA and NS records, present regardless of task state."""
    return [
        DNSRecord(
            name=domain,
            type=RecordType.SOA,
            ttl=APEX_TTL,
            data=SOAData(
                mname=NAMESERVER,
                rname=HOSTMASTER,
                serial=1,
                refresh=60,
                retry=180,
                expire=86400,
                minimum=1,
            ),
        ),
        DNSRecord(name=domain, type=RecordType.NS, ttl=APEX_TTL, data=NAMESERVER),
    ]


def master_records(
    resolvers: Iterable[str], domain: str = DEFAULT_DOMAIN, ttl: int = DEFAULT_TTL
) -> List[DNSRecord]:
    return dns_records(f"master.{domain}", resolvers, ttl)


def leader_record(node_ip: str, domain: str = DEFAULT_DOMAIN, ttl: int = DEFAULT_TTL) -> DNSRecord:
    # The syncer only talks to the local Mesos master and the operator API only
    # answers on the leading master, so this node is the leader.
    return dns_record(f"leader.{domain}", node_ip, ttl)
