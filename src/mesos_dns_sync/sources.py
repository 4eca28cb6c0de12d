"""Task event source interface and the messages it delivers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Hashable

from mesos_dns_sync.records import Workload

# =============================================================================
# Errors
# =============================================================================


class SubscribeError(Exception):
    """Subscribing failed. Worth retrying unless a subclass says otherwise."""


class SubscribeTimeoutError(SubscribeError):
    """The event source did not answer the subscription in time."""


class AlreadySubscribedError(SubscribeError):
    """The event source already has an active subscriber."""


# =============================================================================
# Messages
# =============================================================================


@dataclass(frozen=True)
class TaskUpdated:
    handle: Hashable
    task_id: str
    task: Workload


@dataclass(frozen=True)
class SubscriptionDown:
    handle: Hashable
    reason: str


@dataclass(frozen=True)
class Subscription:
    """A live subscription and the task snapshot it started from."""

    handle: Hashable
    tasks: Dict[str, Workload]


# =============================================================================
# Event Source Interface
# =============================================================================


class WorkloadEventSource(ABC):
    """Abstract base class for task event sources.

    After a successful ``subscribe`` the source calls ``listener`` with a
    ``TaskUpdated`` for every task change, one at a time: the next event is
    only delivered after ``next(handle)`` acknowledges the previous one. When
    the stream ends the listener gets a final ``SubscriptionDown``.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name for logging."""
        pass

    @abstractmethod
    def subscribe(self, listener: Callable[[object], None]) -> Subscription:
        """Subscribe to task events.

        Raises:
            SubscribeTimeoutError: the source timed out
            AlreadySubscribedError: another subscription is active
            SubscribeError: any other, transient, failure
        """
        pass

    @abstractmethod
    def next(self, handle: Hashable) -> None:
        """Acknowledge the last event so the next one can be delivered."""
        pass
