"""Rejoin orchestration.

The orchestrator sequences the validators, issues the join and waits for
the member to become stable. Each rejoin is a RejoinAttempt moving through

    INIT -> VALIDATING -> JOIN_REQUESTED -> WAIT_STABLE -> ONLINE
                      \\-> REJECTED            \\-> TIMEOUT | REJECTED | CANCELLED
                      \\-> TIMEOUT | CANCELLED
                      \\-> VALIDATED (dry run)

States only move forward. The attempt is released when it reaches a
terminal state; at most one attempt per target instance exists at a time.

Like the rest of the package, execute() is a generator: it yields bare
floats (poll delays in milliseconds) and returns a RejoinResult. It
suspends while retrying an incomplete cluster view in VALIDATING and
between WAIT_STABLE polls; both draw on the same RetryPolicy budget.
RejoinRunner turns the yielded delays into SimPy timeouts.

Key types (public):
- RejoinState / RejoinOutcome: Attempt lifecycle and caller-facing outcome
- StateClass / DEFAULT_STATE_CLASSES: Member state classifier for polling
- RetryPolicy: Poll interval, poll count and deadline budget, backoff
- RejoinAttempt: Mutable per-target attempt record
- RejoinResult: Immutable result
- RejoinOrchestrator: The state machine
- validate_candidate(): Pure validation over snapshots
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum, auto
from typing import Dict, Generator, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from readmit.capability import NegotiationResult, negotiate, supports_set_persist
from readmit.cluster import DEFAULT_MAX_WORKERS, gather_cluster_state
from readmit.group import (
    CommunicationError,
    GroupCommunication,
    GroupError,
    TransientClusterError,
)
from readmit.reconciler import reconcile
from readmit.snapshot import (
    ClusterState,
    InstanceSnapshot,
    MemberState,
    resolve_address_family,
    split_endpoint,
)
from readmit.topology import validate_topology
from readmit.verdict import (
    Notice,
    RejectReason,
    Rejected,
    ValidationError,
    ValidationVerdict,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RejoinState(Enum):
    """Attempt lifecycle states."""
    INIT = auto()
    VALIDATING = auto()
    JOIN_REQUESTED = auto()
    WAIT_STABLE = auto()
    ONLINE = auto()
    TIMEOUT = auto()
    REJECTED = auto()
    CANCELLED = auto()
    VALIDATED = auto()


_STATE_RANK = {
    RejoinState.INIT: 0,
    RejoinState.VALIDATING: 1,
    RejoinState.JOIN_REQUESTED: 2,
    RejoinState.WAIT_STABLE: 3,
    RejoinState.ONLINE: 4,
    RejoinState.TIMEOUT: 4,
    RejoinState.REJECTED: 4,
    RejoinState.CANCELLED: 4,
    RejoinState.VALIDATED: 4,
}

TERMINAL_STATES = frozenset(s for s, rank in _STATE_RANK.items() if rank == 4)


class RejoinOutcome(Enum):
    """Caller-facing result of a rejoin."""
    ALLOWED = "Allowed"
    REJECTED = "Rejected"
    TIMED_OUT = "TimedOut"
    ONLINE = "Online"
    CANCELLED = "Cancelled"


class StateClass(Enum):
    """How a polled member state moves the WAIT_STABLE loop.

    SETTLING states are tolerated for RetryPolicy.settling_polls consecutive
    polls and are fatal after that.
    """
    SUCCESS = auto()
    TRANSIENT = auto()
    SETTLING = auto()
    FATAL = auto()


DEFAULT_STATE_CLASSES: Dict[MemberState, StateClass] = {
    MemberState.ONLINE: StateClass.SUCCESS,
    MemberState.RECOVERING: StateClass.TRANSIENT,
    MemberState.OFFLINE: StateClass.SETTLING,
    MemberState.UNREACHABLE: StateClass.FATAL,
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ConcurrentRejoinError(Exception):
    """A rejoin of the same instance is already in flight."""

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"A rejoin of instance '{instance_id}' is already in progress.")


class RejoinTimeoutError(Exception):
    """The attempt exhausted its retry budget."""
    pass


class RejoinCancelledError(Exception):
    pass


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """Budget for the WAIT_STABLE poll loop.

    At least one of max_polls and deadline_ms must be set. With backoff
    disabled every poll waits poll_interval_ms. With backoff enabled poll n
    waits min(base * multiplier^(n-1), max) scaled by a jitter factor drawn
    uniformly from [1 - jitter, 1 + jitter].

    The same budget covers retries of the cluster view while validating.
    settling_polls is how many consecutive SETTLING answers are tolerated.
    """
    poll_interval_ms: float = 1000.0
    max_polls: Optional[int] = 60
    deadline_ms: Optional[float] = None
    settling_polls: int = 3

    backoff_enabled: bool = False
    backoff_base_ms: float = 100.0
    backoff_multiplier: float = 2.0
    backoff_max_ms: float = 5000.0
    backoff_jitter: float = 0.0

    def __post_init__(self):
        if self.max_polls is None and self.deadline_ms is None:
            raise ValueError("RetryPolicy needs max_polls or deadline_ms")
        if self.max_polls is not None and self.max_polls < 0:
            raise ValueError(f"max_polls must be >= 0, got {self.max_polls}")
        if self.deadline_ms is not None and self.deadline_ms < 0:
            raise ValueError(f"deadline_ms must be >= 0, got {self.deadline_ms}")
        if self.poll_interval_ms < 0:
            raise ValueError(f"poll_interval_ms must be >= 0, got {self.poll_interval_ms}")
        if self.settling_polls < 0:
            raise ValueError(f"settling_polls must be >= 0, got {self.settling_polls}")
        if not 0.0 <= self.backoff_jitter <= 1.0:
            raise ValueError(f"backoff_jitter must be in [0, 1], got {self.backoff_jitter}")

    def delay_ms(self, poll_number: int, rng: np.random.RandomState) -> float:
        """Delay before poll `poll_number` (1-indexed)."""
        if not self.backoff_enabled:
            return self.poll_interval_ms

        backoff = self.backoff_base_ms * (self.backoff_multiplier ** (poll_number - 1))
        backoff = min(backoff, self.backoff_max_ms)
        if self.backoff_jitter > 0:
            backoff *= 1.0 + rng.uniform(-self.backoff_jitter, self.backoff_jitter)
        return max(0.0, float(backoff))


# ---------------------------------------------------------------------------
# Attempt and result
# ---------------------------------------------------------------------------

class RejoinAttempt:
    """Mutable record of one rejoin, owned by the orchestrator."""

    def __init__(self, instance_id: str, deadline_ms: Optional[float] = None):
        self.instance_id = instance_id
        self.deadline_ms = deadline_ms
        self.polls = 0
        self.elapsed_ms = 0.0
        self._state = RejoinState.INIT
        self._cancelled = threading.Event()

    @property
    def state(self) -> RejoinState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop polling at the next opportunity. Does not undo a join."""
        self._cancelled.set()

    def advance(self, state: RejoinState) -> None:
        if self.is_terminal or _STATE_RANK[state] <= _STATE_RANK[self._state]:
            raise ValueError(
                f"Invalid rejoin transition {self._state.name} -> {state.name} "
                f"for {self.instance_id}"
            )
        logger.debug(f"{self.elapsed_ms:.0f} REJOIN {self.instance_id} "
                     f"{self._state.name} -> {state.name}")
        self._state = state


@dataclass(frozen=True)
class RejoinResult:
    """Immutable result of a rejoin.

    reason and detail are set for REJECTED outcomes. cause carries the
    underlying group layer error for fatal communication failures.
    """
    instance_id: str
    outcome: RejoinOutcome
    final_state: RejoinState
    reason: Optional[RejectReason] = None
    detail: Tuple[str, ...] = ()
    message: str = ""
    notices: Tuple[Notice, ...] = ()
    polls: int = 0
    elapsed_ms: float = 0.0
    cause: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (RejoinOutcome.ONLINE, RejoinOutcome.ALLOWED)

    def raise_for_outcome(self) -> None:
        """Raise the exception matching a non-successful outcome."""
        if self.outcome is RejoinOutcome.REJECTED:
            if self.reason is RejectReason.COMMUNICATION_FAILURE:
                raise CommunicationError(self.cause or self.message)
            raise ValidationError(Rejected(self.reason, self.detail, self.message))
        if self.outcome is RejoinOutcome.TIMED_OUT:
            raise RejoinTimeoutError(self.message)
        if self.outcome is RejoinOutcome.CANCELLED:
            raise RejoinCancelledError(self.message)


# ---------------------------------------------------------------------------
# Pure validation
# ---------------------------------------------------------------------------

def validate_candidate(
    candidate: InstanceSnapshot,
    cluster: ClusterState,
    requested_options: Mapping[str, str] | None = None,
    exempt_channels: Iterable[str] = (),
) -> Tuple[ValidationVerdict, Optional[NegotiationResult]]:
    """Run topology, GTID and capability checks in order.

    Returns the first rejection, or ALLOWED with the negotiation result.
    The negotiation is None when an earlier check rejected.
    """
    verdict = validate_topology(candidate.channels, exempt_channels)
    if not verdict.allowed:
        return verdict, None

    verdict = reconcile(candidate.executed, cluster.executed, cluster.purged)
    if not verdict.allowed:
        return verdict, None

    # The candidate becomes a member too, so it counts towards the minimum.
    group_min_version = min(cluster.min_version, candidate.version)
    negotiation = negotiate(
        instance_id=candidate.instance_id,
        host=candidate.host,
        candidate_version=candidate.version,
        cluster_min_version=group_min_version,
        requested_options=requested_options,
    )
    return negotiation.verdict, negotiation


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class RejoinOrchestrator:
    """Drives rejoin attempts against one cluster.

    Usage:
        orch = RejoinOrchestrator(group, "prod")
        attempt = orch.start("db2:3306")
        result = yield from orch.execute(attempt)

    start() registers the attempt and raises ConcurrentRejoinError if the
    instance already has one in flight. execute() must then be driven to
    completion (or discard() called) to release it.
    """

    def __init__(
        self,
        group: GroupCommunication,
        cluster_id: str,
        policy: RetryPolicy | None = None,
        requested_options: Mapping[str, str] | None = None,
        exempt_channels: Iterable[str] = (),
        state_classes: Mapping[MemberState, StateClass] | None = None,
        rng: np.random.RandomState | None = None,
        dry_run: bool = False,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self._group = group
        self._cluster_id = cluster_id
        self._policy = policy or RetryPolicy()
        self._options = dict(requested_options or {})
        self._exempt = frozenset(exempt_channels)
        self._classes = dict(DEFAULT_STATE_CLASSES)
        if state_classes:
            self._classes.update(state_classes)
        self._rng = rng if rng is not None else np.random.RandomState()
        self._dry_run = dry_run
        self._max_workers = max_workers

        self._lock = threading.Lock()
        self._active: Dict[str, RejoinAttempt] = {}

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Attempt registry
    # ------------------------------------------------------------------

    def start(self, instance_id: str) -> RejoinAttempt:
        with self._lock:
            if instance_id in self._active:
                raise ConcurrentRejoinError(instance_id)
            attempt = RejoinAttempt(instance_id, deadline_ms=self._policy.deadline_ms)
            self._active[instance_id] = attempt
            return attempt

    def active(self, instance_id: str) -> Optional[RejoinAttempt]:
        with self._lock:
            return self._active.get(instance_id)

    def discard(self, attempt: RejoinAttempt) -> None:
        """Release an attempt that will not be executed."""
        with self._lock:
            if self._active.get(attempt.instance_id) is attempt:
                del self._active[attempt.instance_id]

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def rejoin(self, instance_id: str) -> Generator[float, None, RejoinResult]:
        """Register an attempt now and return the generator that executes it.

        Raises ConcurrentRejoinError immediately if the instance is busy. The
        returned generator must be driven to completion to release the
        instance.
        """
        attempt = self.start(instance_id)
        return self.execute(attempt)

    def execute(self, attempt: RejoinAttempt) -> Generator[float, None, RejoinResult]:
        """Run an attempt to a terminal state."""
        try:
            result = yield from self._run(attempt)
        finally:
            self.discard(attempt)
        logger.info(f"Rejoin of {attempt.instance_id}: {result.outcome.value} "
                    f"({result.final_state.name}, polls={result.polls})")
        return result

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def snapshot_candidate(self, instance_id: str) -> InstanceSnapshot:
        """Capture the candidate's state from the group layer."""
        host, _ = split_endpoint(instance_id)
        return InstanceSnapshot(
            instance_id=instance_id,
            host=host,
            address_family=resolve_address_family(host),
            version=self._group.get_server_version(instance_id),
            executed=self._group.get_executed_gtids(instance_id),
            purged=self._group.get_purged_gtids(instance_id),
            channels=tuple(self._group.list_replication_channels(instance_id)),
        )

    def _run(self, attempt: RejoinAttempt) -> Generator[float, None, RejoinResult]:
        notices: List[Notice] = []

        if attempt.cancelled:
            attempt.advance(RejoinState.CANCELLED)
            return self._make_result(attempt, RejoinOutcome.CANCELLED, notices,
                                     message="Rejoin cancelled before validation.")

        # VALIDATING: snapshots are taken once a complete view is available
        # and never refreshed.
        attempt.advance(RejoinState.VALIDATING)
        while True:
            try:
                candidate = self.snapshot_candidate(attempt.instance_id)
                cluster = gather_cluster_state(
                    self._group, attempt.instance_id, self._max_workers,
                )
                break
            except TransientClusterError as e:
                logger.debug(f"{attempt.elapsed_ms:.0f} REJOIN {attempt.instance_id} "
                             f"validation retry {attempt.polls + 1}: {e}")
            except CommunicationError as e:
                return self._fail(attempt, e, notices)

            if attempt.cancelled:
                return self._cancel(attempt, notices)
            delay = self._next_delay(attempt)
            if delay is None:
                return self._timeout(attempt, notices)
            yield delay
            attempt.elapsed_ms += delay
            attempt.polls += 1

        verdict, negotiation = validate_candidate(
            candidate, cluster, self._options, self._exempt,
        )
        if negotiation is not None:
            notices.extend(negotiation.warnings)

        if not verdict.allowed:
            attempt.advance(RejoinState.REJECTED)
            logger.error(f"Rejoin of {attempt.instance_id} rejected: "
                         f"{verdict.reason.value}")
            return self._make_result(
                attempt, RejoinOutcome.REJECTED, notices,
                reason=verdict.reason,
                detail=verdict.detail,
                message=verdict.message,
            )

        for notice in notices:
            logger.warning(notice.text)

        if self._dry_run:
            attempt.advance(RejoinState.VALIDATED)
            return self._make_result(attempt, RejoinOutcome.ALLOWED, notices)

        # JOIN_REQUESTED: a failed join is never retried.
        attempt.advance(RejoinState.JOIN_REQUESTED)
        options = negotiation.options
        try:
            self._group.request_join(attempt.instance_id, self._cluster_id, options)
        except TransientClusterError as e:
            return self._fail(attempt, CommunicationError(str(e)), notices)
        except CommunicationError as e:
            return self._fail(attempt, e, notices)

        attempt.advance(RejoinState.WAIT_STABLE)
        result = yield from self._wait_stable(attempt, candidate, options, notices)
        return result

    def _wait_stable(
        self,
        attempt: RejoinAttempt,
        candidate: InstanceSnapshot,
        options: Mapping[str, str],
        notices: List[Notice],
    ) -> Generator[float, None, RejoinResult]:
        """Poll member state until success, fatal state, budget or cancel."""
        settling = 0

        while True:
            if attempt.cancelled:
                return self._cancel(attempt, notices)

            delay = self._next_delay(attempt)
            if delay is None:
                return self._timeout(attempt, notices)

            yield delay
            attempt.elapsed_ms += delay

            if attempt.cancelled:
                return self._cancel(attempt, notices)

            attempt.polls += 1
            try:
                state = self._group.get_member_state(attempt.instance_id)
            except TransientClusterError as e:
                logger.debug(f"{attempt.elapsed_ms:.0f} REJOIN {attempt.instance_id} "
                             f"poll {attempt.polls}: {e}")
                continue
            except CommunicationError as e:
                return self._fail(attempt, e, notices)

            state_class = self._classes.get(state, StateClass.FATAL)
            logger.debug(f"{attempt.elapsed_ms:.0f} REJOIN {attempt.instance_id} "
                         f"poll {attempt.polls}: {state.value}")

            if state_class is StateClass.SETTLING:
                settling += 1
                if settling <= self._policy.settling_polls:
                    continue
                state_class = StateClass.FATAL
            else:
                settling = 0

            if state_class is StateClass.TRANSIENT:
                continue

            if state_class is StateClass.FATAL:
                return self._fail(
                    attempt,
                    CommunicationError(
                        f"Instance '{attempt.instance_id}' reported state "
                        f"{state.value} while joining the cluster."
                    ),
                    notices,
                )

            try:
                self._probe_protocol(attempt, notices)
            except CommunicationError as e:
                return self._fail(attempt, e, notices)
            self._persist(attempt, candidate, options, notices)
            attempt.advance(RejoinState.ONLINE)
            return self._make_result(attempt, RejoinOutcome.ONLINE, notices)

    def _probe_protocol(self, attempt: RejoinAttempt, notices: List[Notice]) -> None:
        """Check the communication protocol version once the member is ONLINE.

        Fails transiently while another member is still joining; that is
        reported as a NOTE only.
        """
        try:
            version = self._group.get_protocol_version(attempt.instance_id)
        except TransientClusterError as e:
            text = ("Unable to determine the Group Replication protocol version, "
                    "while verifying if a protocol upgrade would be possible: "
                    f"{e}")
            logger.info(f"NOTE: {text}")
            notices.append(Notice.note(text))
            return
        logger.debug(f"Group protocol version seen from {attempt.instance_id}: {version}")

    def _persist(
        self,
        attempt: RejoinAttempt,
        candidate: InstanceSnapshot,
        options: Mapping[str, str],
        notices: List[Notice],
    ) -> None:
        if not supports_set_persist(candidate.version):
            return
        try:
            self._group.persist_configuration(attempt.instance_id, options)
        except GroupError as e:
            text = (f"Unable to persist Group Replication configuration on instance "
                    f"'{attempt.instance_id}': {e}")
            logger.warning(text)
            notices.append(Notice.warning(text))

    def _next_delay(self, attempt: RejoinAttempt) -> Optional[float]:
        """Delay before the next poll, or None once the budget is spent.

        The deadline is checked before sleeping so no poll lands after it.
        """
        policy = self._policy
        if policy.max_polls is not None and attempt.polls >= policy.max_polls:
            return None
        delay = policy.delay_ms(attempt.polls + 1, self._rng)
        if (attempt.deadline_ms is not None
                and attempt.elapsed_ms + delay > attempt.deadline_ms):
            return None
        return delay

    # ------------------------------------------------------------------
    # Terminal helpers
    # ------------------------------------------------------------------

    def _fail(
        self,
        attempt: RejoinAttempt,
        error: CommunicationError,
        notices: List[Notice],
    ) -> RejoinResult:
        attempt.advance(RejoinState.REJECTED)
        logger.error(f"Rejoin of {attempt.instance_id} failed: {error}")
        return self._make_result(
            attempt, RejoinOutcome.REJECTED, notices,
            reason=RejectReason.COMMUNICATION_FAILURE,
            detail=(str(error),),
            message=str(error),
            cause=f"{type(error).__name__}: {error}",
        )

    def _timeout(self, attempt: RejoinAttempt, notices: List[Notice]) -> RejoinResult:
        if attempt.state is RejoinState.VALIDATING:
            waited_for = "a complete view of the cluster"
        else:
            waited_for = f"instance '{attempt.instance_id}' to become ONLINE"
        attempt.advance(RejoinState.TIMEOUT)
        return self._make_result(
            attempt, RejoinOutcome.TIMED_OUT, notices,
            message=f"Timeout waiting for {waited_for} after {attempt.polls} polls "
                    f"({attempt.elapsed_ms:.0f} ms).",
        )

    def _cancel(self, attempt: RejoinAttempt, notices: List[Notice]) -> RejoinResult:
        message = (f"Rejoin of instance '{attempt.instance_id}' cancelled after "
                   f"{attempt.polls} polls")
        if attempt.state is RejoinState.VALIDATING:
            message += " before the join was requested."
        else:
            message += "; the join request was not rolled back."
        attempt.advance(RejoinState.CANCELLED)
        return self._make_result(attempt, RejoinOutcome.CANCELLED, notices, message=message)

    def _make_result(
        self,
        attempt: RejoinAttempt,
        outcome: RejoinOutcome,
        notices: List[Notice],
        reason: Optional[RejectReason] = None,
        detail: Tuple[str, ...] = (),
        message: str = "",
        cause: Optional[str] = None,
    ) -> RejoinResult:
        return RejoinResult(
            instance_id=attempt.instance_id,
            outcome=outcome,
            final_state=attempt.state,
            reason=reason,
            detail=tuple(detail),
            message=message,
            notices=tuple(notices),
            polls=attempt.polls,
            elapsed_ms=attempt.elapsed_ms,
            cause=cause,
        )
