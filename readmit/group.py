"""Group communication layer abstraction.

The group layer is the consensus/membership transport that actually
executes membership changes. The orchestrator only sees it through the
GroupCommunication interface below: member-state and GTID queries, channel
introspection, the join primitive, a protocol-version probe and a
best-effort configuration persistence call.

Key types:
- GroupError / TransientClusterError / CommunicationError: Error taxonomy
- GroupCommunication: ABC consumed by the orchestrator
- RecoveryModel: Lognormal distribution of recovery length (in polls)
- SimulatedMember / SimulatedGroup: In-memory implementation for testing
  and for the command-line simulator
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Tuple

import numpy as np

from readmit.gtid import GTIDSet, union_all
from readmit.snapshot import MemberState, ReplicationChannel, Version

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class GroupError(Exception):
    """Base class for errors raised by the group communication layer."""
    pass


class TransientClusterError(GroupError):
    """Cluster is still settling (member recovering, peer joining).

    Retried within the rejoin budget; never surfaced on its own.
    """
    pass


class CommunicationError(GroupError):
    """Unrecoverable group layer failure. Never retried."""
    pass


class MemberUnreachableError(CommunicationError):
    """A specific member could not be contacted."""

    def __init__(self, instance_id: str, message: str | None = None):
        self.instance_id = instance_id
        super().__init__(message or f"Instance '{instance_id}' is unreachable.")


class NoQuorumViewError(CommunicationError):
    """No ONLINE cluster member could be contacted."""
    pass


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class GroupCommunication(ABC):
    """Primitives the orchestrator consumes from the group layer.

    All calls are synchronous queries. Implementations raise
    CommunicationError (or MemberUnreachableError) when a member cannot be
    contacted and TransientClusterError when the answer is not yet
    available.
    """

    @abstractmethod
    def list_members(self) -> Tuple[str, ...]:
        """All instances registered in the cluster metadata."""
        ...

    @abstractmethod
    def get_member_state(self, instance_id: str) -> MemberState:
        ...

    @abstractmethod
    def get_executed_gtids(self, instance_id: str) -> GTIDSet:
        ...

    @abstractmethod
    def get_purged_gtids(self, instance_id: str) -> GTIDSet:
        ...

    @abstractmethod
    def list_replication_channels(self, instance_id: str) -> Tuple[ReplicationChannel, ...]:
        ...

    @abstractmethod
    def get_server_version(self, instance_id: str) -> Version:
        ...

    @abstractmethod
    def request_join(
        self,
        instance_id: str,
        cluster_id: str,
        options: Mapping[str, str],
    ) -> None:
        """Ask the group to admit instance_id. Raises CommunicationError on failure."""
        ...

    @abstractmethod
    def get_protocol_version(self, instance_id: str) -> Version:
        """Group communication protocol version as seen from instance_id.

        May raise TransientClusterError while membership is settling.
        """
        ...

    @abstractmethod
    def persist_configuration(self, instance_id: str, options: Mapping[str, str]) -> None:
        """Best-effort persistence of the group configuration."""
        ...


# ---------------------------------------------------------------------------
# Simulated group
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecoveryModel:
    """Number of RECOVERING polls a joining member reports.

    Drawn from a lognormal with the given median, floored at min_polls.
    """
    median_polls: float = 3.0
    sigma: float = 0.5
    min_polls: int = 0

    def __post_init__(self):
        if self.median_polls <= 0:
            raise ValueError(f"median_polls must be > 0, got {self.median_polls}")
        if self.sigma < 0:
            raise ValueError(f"sigma must be >= 0, got {self.sigma}")

    def sample(self, rng: np.random.RandomState) -> int:
        raw = rng.lognormal(mean=float(np.log(self.median_polls)), sigma=self.sigma)
        return max(int(round(raw)), self.min_polls)


@dataclass
class SimulatedMember:
    """Mutable state of one simulated server.

    Attributes:
        recovery_polls: RECOVERING answers given after a join before the
            member flips to ONLINE. None draws from the group's RecoveryModel.
        state_errors: State queries answered with TransientClusterError
            before real answers are returned
        probe_failures: Protocol-version probes failing transiently
        join_error: If set, request_join raises CommunicationError with it
        persist_error: If set, persist_configuration raises it
    """
    instance_id: str
    version: Version
    state: MemberState = MemberState.ONLINE
    executed: GTIDSet = field(default_factory=GTIDSet)
    purged: GTIDSet = field(default_factory=GTIDSet)
    channels: Tuple[ReplicationChannel, ...] = ()
    reachable: bool = True
    recovery_polls: Optional[int] = 0
    state_errors: int = 0
    probe_failures: int = 0
    join_error: Optional[str] = None
    persist_error: Optional[str] = None

    # Bookkeeping
    joins_requested: int = 0
    persisted: Optional[Dict[str, str]] = None
    _remaining_recovery: int = 0


class SimulatedGroup(GroupCommunication):
    """In-memory group layer with scripted member behaviour.

    A member that receives a join goes to RECOVERING and answers
    `recovery_polls` state queries with RECOVERING. The next query flips it
    to ONLINE, at which point its executed set catches up with the rest
    of the group.

    Thread-safe: cluster state aggregation queries members concurrently.
    """

    def __init__(
        self,
        members: Iterable[SimulatedMember],
        recovery: RecoveryModel | None = None,
        rng: np.random.RandomState | None = None,
    ):
        self._members: Dict[str, SimulatedMember] = {}
        for member in members:
            if member.instance_id in self._members:
                raise ValueError(f"Duplicate member {member.instance_id!r}")
            self._members[member.instance_id] = member
        self._recovery = recovery or RecoveryModel()
        self._rng = rng if rng is not None else np.random.RandomState()
        self._lock = threading.RLock()

    def member(self, instance_id: str) -> SimulatedMember:
        try:
            return self._members[instance_id]
        except KeyError:
            raise CommunicationError(
                f"Instance '{instance_id}' does not belong to the cluster."
            ) from None

    def _reachable(self, instance_id: str) -> SimulatedMember:
        member = self.member(instance_id)
        if not member.reachable:
            raise MemberUnreachableError(instance_id)
        return member

    def list_members(self) -> Tuple[str, ...]:
        return tuple(self._members)

    def get_member_state(self, instance_id: str) -> MemberState:
        with self._lock:
            member = self.member(instance_id)
            if not member.reachable:
                return MemberState.UNREACHABLE
            if member.state_errors > 0:
                member.state_errors -= 1
                raise TransientClusterError(
                    f"Member state of '{instance_id}' is not available yet."
                )
            if member.state is MemberState.RECOVERING:
                if member._remaining_recovery > 0:
                    member._remaining_recovery -= 1
                else:
                    self._finish_recovery(member)
            return member.state

    def _finish_recovery(self, member: SimulatedMember) -> None:
        peers = [
            m.executed for m in self._members.values()
            if m is not member and m.state is MemberState.ONLINE and m.reachable
        ]
        member.executed = union_all([member.executed, *peers])
        member.state = MemberState.ONLINE
        logger.debug(f"Simulated member {member.instance_id} is ONLINE")

    def get_executed_gtids(self, instance_id: str) -> GTIDSet:
        with self._lock:
            return self._reachable(instance_id).executed

    def get_purged_gtids(self, instance_id: str) -> GTIDSet:
        with self._lock:
            return self._reachable(instance_id).purged

    def list_replication_channels(self, instance_id: str) -> Tuple[ReplicationChannel, ...]:
        with self._lock:
            return self._reachable(instance_id).channels

    def get_server_version(self, instance_id: str) -> Version:
        with self._lock:
            return self._reachable(instance_id).version

    def request_join(
        self,
        instance_id: str,
        cluster_id: str,
        options: Mapping[str, str],
    ) -> None:
        with self._lock:
            member = self._reachable(instance_id)
            member.joins_requested += 1
            if member.join_error:
                raise CommunicationError(member.join_error)
            if member.state in (MemberState.ONLINE, MemberState.RECOVERING):
                raise CommunicationError(
                    f"Instance '{instance_id}' is already a member of cluster '{cluster_id}'."
                )
            if member.recovery_polls is None:
                member._remaining_recovery = self._recovery.sample(self._rng)
            else:
                member._remaining_recovery = member.recovery_polls
            member.state = MemberState.RECOVERING
            logger.debug(
                f"Simulated join of {instance_id} to {cluster_id} "
                f"(recovery_polls={member._remaining_recovery}, options={dict(options)})"
            )

    def get_protocol_version(self, instance_id: str) -> Version:
        with self._lock:
            member = self._reachable(instance_id)
            if member.probe_failures > 0:
                member.probe_failures -= 1
                raise TransientClusterError(
                    "Can't initialize function 'group_replication_get_communication_protocol'; "
                    "A member is joining the group, wait for it to be ONLINE."
                )
            online = [
                m.version for m in self._members.values()
                if m.state is MemberState.ONLINE and m.reachable
            ]
            return min(online) if online else member.version

    def persist_configuration(self, instance_id: str, options: Mapping[str, str]) -> None:
        with self._lock:
            member = self._reachable(instance_id)
            if member.persist_error:
                raise CommunicationError(member.persist_error)
            member.persisted = dict(options)
