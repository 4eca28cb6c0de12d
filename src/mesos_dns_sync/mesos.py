"""Task events from the Mesos master operator API.

The syncer subscribes with ``{"type": "SUBSCRIBE"}`` on ``/api/v1`` and reads
a RecordIO stream of JSON events (``<length>\\n<json>`` frames). The first
event is ``SUBSCRIBED`` with the full cluster state; after it come
``TASK_ADDED``/``TASK_UPDATED`` and framework/agent bookkeeping events.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterable, Iterator, List, Optional, Tuple

import requests
from requests.auth import HTTPBasicAuth

from mesos_dns_sync.records import PortMapping, Workload
from mesos_dns_sync.sources import (
    AlreadySubscribedError,
    SubscribeError,
    SubscribeTimeoutError,
    Subscription,
    SubscriptionDown,
    TaskUpdated,
    WorkloadEventSource,
)

logger = logging.getLogger(__name__)

AGENT_PID_RE = re.compile(r"@\[?([^\]@]+?)\]?:\d+$")

TERMINAL_STATES = {
    "TASK_FINISHED",
    "TASK_FAILED",
    "TASK_KILLED",
    "TASK_LOST",
    "TASK_ERROR",
    "TASK_DROPPED",
    "TASK_GONE",
    "TASK_GONE_BY_OPERATOR",
}

# Mesos sends heartbeats every 15 seconds by default
STREAM_READ_TIMEOUT = 60.0

# =============================================================================
# RecordIO
# =============================================================================


def read_recordio(chunks: Iterable[bytes]) -> Iterator[Dict[str, Any]]:
    """Decode RecordIO-framed JSON objects from a byte stream."""
    buffer = b""
    for chunk in chunks:
        buffer += chunk
        while True:
            newline = buffer.find(b"\n")
            if newline < 0:
                break
            try:
                length = int(buffer[:newline])
            except ValueError:
                raise ValueError(f"Invalid RecordIO frame length: {buffer[:newline]!r}") from None
            end = newline + 1 + length
            if len(buffer) < end:
                break
            frame = buffer[newline + 1 : end]
            buffer = buffer[end:]
            yield json.loads(frame)
    if buffer.strip():
        raise ValueError("RecordIO stream ended in the middle of a frame")


# =============================================================================
# Task Translation
# =============================================================================


def _value(obj: Any, key: str) -> Optional[str]:
    """Read a Mesos ``{"value": ...}`` id field."""
    if not isinstance(obj, dict):
        return None
    inner = obj.get(key)
    if isinstance(inner, dict) and inner.get("value") is not None:
        return str(inner["value"])
    return None


def _valid_ip(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def agent_ip(agent: Dict[str, Any]) -> Optional[str]:
    """Extract the IP of an agent from its ``pid`` (``slave(1)@IP:port``)."""
    pid = agent.get("pid")
    if isinstance(pid, str):
        match = AGENT_PID_RE.search(pid)
        if match:
            ip = _valid_ip(match.group(1))
            if ip:
                return ip
    agent_info = agent.get("agent_info") or {}
    return _valid_ip(agent_info.get("hostname"))


def _status_ips(status: Any) -> Tuple[str, ...]:
    if not isinstance(status, dict):
        return ()
    network_infos = (status.get("container_status") or {}).get("network_infos") or []
    ips: List[str] = []
    for network_info in network_infos:
        for address in network_info.get("ip_addresses") or []:
            ip = _valid_ip(address.get("ip_address"))
            if ip and ip not in ips:
                ips.append(ip)
    return tuple(ips)


def _container_ips(task: Dict[str, Any]) -> Tuple[str, ...]:
    for status in reversed(task.get("statuses") or []):
        ips = _status_ips(status)
        if ips:
            return ips
    return ()


def _record_status(task: Dict[str, Any], status: Dict[str, Any]) -> None:
    """Keep only the newest status that carries container IPs."""
    if _status_ips(status):
        task["statuses"] = [status]
        return
    for previous in reversed(task.get("statuses") or []):
        if _status_ips(previous):
            task["statuses"] = [previous]
            return
    task["statuses"] = []


def _port_mappings(task: Dict[str, Any]) -> Tuple[PortMapping, ...]:
    container = task.get("container") or {}
    raw_mappings: List[Dict[str, Any]] = list((container.get("docker") or {}).get("port_mappings") or [])
    for network_info in container.get("network_infos") or []:
        raw_mappings.extend(network_info.get("port_mappings") or [])

    ports: List[PortMapping] = []
    for mapping in raw_mappings:
        if not isinstance(mapping, dict):
            continue
        host_port = mapping.get("host_port")
        ports.append(
            PortMapping(
                container_port=int(mapping.get("container_port") or 0),
                host_port=int(host_port) if host_port is not None else None,
                protocol=str(mapping.get("protocol") or "tcp").lower(),
            )
        )
    return tuple(ports)


def workload_from_task(
    task: Dict[str, Any], frameworks: Dict[str, str], agents: Dict[str, str]
) -> Workload:
    """Translate a Mesos ``Task`` JSON object into a Workload."""
    framework_id = _value(task, "framework_id") or ""
    return Workload(
        name=str(task.get("name") or ""),
        framework=frameworks.get(framework_id, framework_id),
        state=str(task.get("state") or ""),
        agent_ip=agents.get(_value(task, "agent_id") or ""),
        container_ips=_container_ips(task),
        ports=_port_mappings(task),
    )


@dataclass
class ClusterState:
    """Frameworks, agents and tasks as reported by the operator API."""

    frameworks: Dict[str, str] = field(default_factory=dict)
    agents: Dict[str, str] = field(default_factory=dict)
    tasks: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_subscribed(cls, subscribed: Dict[str, Any]) -> "ClusterState":
        state = cls()
        get_state = subscribed.get("get_state") or {}
        for framework in (get_state.get("get_frameworks") or {}).get("frameworks") or []:
            state._add_framework(framework)
        for agent in (get_state.get("get_agents") or {}).get("agents") or []:
            state._add_agent(agent)
        for task in (get_state.get("get_tasks") or {}).get("tasks") or []:
            task_id = _value(task, "task_id")
            if task_id:
                state.tasks[task_id] = task
        return state

    def workload(self, task_id: str) -> Workload:
        return workload_from_task(self.tasks[task_id], self.frameworks, self.agents)

    def workloads(self) -> Dict[str, Workload]:
        return {task_id: self.workload(task_id) for task_id in self.tasks}

    def handle(self, event: Dict[str, Any]) -> Optional[Tuple[str, Workload]]:
        """Apply an event. Returns ``(task_id, workload)`` for task events."""
        event_type = event.get("type")
        if event_type == "TASK_ADDED":
            task = (event.get("task_added") or {}).get("task") or {}
            task_id = _value(task, "task_id")
            if not task_id:
                logger.warning(f"Skipping TASK_ADDED without task id: {event}")
                return None
            self.tasks[task_id] = task
            return task_id, self.workload(task_id)

        if event_type == "TASK_UPDATED":
            update = event.get("task_updated") or {}
            status = update.get("status") or {}
            task_id = _value(status, "task_id")
            task = self.tasks.get(task_id or "")
            if task_id is None or task is None:
                logger.debug(f"Skipping update of unknown task {task_id}")
                return None
            task["state"] = update.get("state") or status.get("state") or task.get("state")
            _record_status(task, status)
            workload = self.workload(task_id)
            if workload.state in TERMINAL_STATES:
                del self.tasks[task_id]
            return task_id, workload

        if event_type in ("FRAMEWORK_ADDED", "FRAMEWORK_UPDATED"):
            key = "framework_added" if event_type == "FRAMEWORK_ADDED" else "framework_updated"
            self._add_framework((event.get(key) or {}).get("framework") or {})
        elif event_type == "AGENT_ADDED":
            self._add_agent((event.get("agent_added") or {}).get("agent") or {})
        elif event_type == "AGENT_REMOVED":
            self.agents.pop(_value(event.get("agent_removed"), "agent_id") or "", None)
        elif event_type != "HEARTBEAT":
            logger.debug(f"Ignoring operator API event {event_type}")
        return None

    def _add_framework(self, framework: Dict[str, Any]) -> None:
        info = framework.get("framework_info") or {}
        framework_id = _value(info, "id")
        if framework_id:
            self.frameworks[framework_id] = str(info.get("name") or framework_id)

    def _add_agent(self, agent: Dict[str, Any]) -> None:
        agent_id = _value(agent.get("agent_info"), "id")
        ip = agent_ip(agent)
        if agent_id and ip:
            self.agents[agent_id] = ip
        elif agent_id:
            logger.warning(f"Agent {agent_id} has no usable IP address")


# =============================================================================
# Event Source
# =============================================================================


@dataclass
class _Stream:
    handle: str
    response: requests.Response
    listener: Callable[[object], None]
    state: ClusterState
    ack: threading.Semaphore = field(default_factory=lambda: threading.Semaphore(0))
    closed: bool = False


class MesosOperatorEventSource(WorkloadEventSource):
    """Event source backed by a ``SUBSCRIBE`` call on the Mesos operator API."""

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
        self._lock = threading.Lock()
        self._stream: Optional[_Stream] = None

    @property
    def name(self) -> str:
        return "Mesos operator API"

    def subscribe(self, listener: Callable[[object], None]) -> Subscription:
        with self._lock:
            if self._stream is not None:
                raise AlreadySubscribedError(f"{self.name} already has an active subscription")

        try:
            response = self._session.post(
                f"{self._url}/api/v1",
                json={"type": "SUBSCRIBE"},
                headers={"Accept": "application/json"},
                stream=True,
                timeout=(self._timeout, STREAM_READ_TIMEOUT),
                verify=self._verify,
            )
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise SubscribeTimeoutError(f"{self.name} subscription timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise SubscribeError(f"Failed to subscribe to {self.name}: {e}") from e

        frames = read_recordio(response.iter_content(chunk_size=None))
        try:
            first = next(frames)
            if first.get("type") != "SUBSCRIBED":
                raise SubscribeError(f"Expected SUBSCRIBED event, got {first.get('type')}")
            state = ClusterState.from_subscribed(first.get("subscribed") or {})
        except StopIteration:
            response.close()
            raise SubscribeError(f"{self.name} closed the stream before SUBSCRIBED") from None
        except SubscribeError:
            response.close()
            raise
        except (requests.exceptions.RequestException, ValueError, AttributeError) as e:
            response.close()
            raise SubscribeError(f"Failed to read subscription from {self.name}: {e}") from e

        stream = _Stream(
            handle=uuid.uuid4().hex,
            response=response,
            listener=listener,
            state=state,
        )
        with self._lock:
            if self._stream is not None:
                response.close()
                raise AlreadySubscribedError(f"{self.name} already has an active subscription")
            self._stream = stream

        logger.info(
            f"Subscribed to {self.name}: {len(state.tasks)} tasks, "
            f"{len(state.frameworks)} frameworks, {len(state.agents)} agents"
        )
        thread = threading.Thread(
            target=self._pump, args=(stream, frames), name="mesos-events", daemon=True
        )
        thread.start()
        return Subscription(handle=stream.handle, tasks=state.workloads())

    def next(self, handle: Hashable) -> None:
        stream = self._stream
        if stream is not None and stream.handle == handle:
            stream.ack.release()

    def close(self) -> None:
        """Stop the active subscription without notifying the listener."""
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is not None:
            stream.closed = True
            stream.response.close()

    def _pump(self, stream: _Stream, frames: Iterator[Dict[str, Any]]) -> None:
        reason = "event stream closed"
        try:
            for frame in frames:
                if not isinstance(frame, dict):
                    logger.warning(f"Skipping non-object event: {frame}")
                    continue
                update = stream.state.handle(frame)
                if update is None:
                    continue
                task_id, workload = update
                stream.listener(TaskUpdated(stream.handle, task_id, workload))
                while not stream.ack.acquire(timeout=1.0):
                    if stream.closed:
                        return
        except (requests.exceptions.RequestException, ValueError) as e:
            reason = f"event stream failed: {e}"
        except Exception as e:
            logger.error(f"Unexpected error while reading {self.name} events: {e}")
            reason = f"malformed event: {e}"
        finally:
            with self._lock:
                if self._stream is stream:
                    self._stream = None
            stream.response.close()

        if not stream.closed:
            logger.warning(f"{self.name} subscription ended: {reason}")
            stream.listener(SubscriptionDown(stream.handle, reason))
