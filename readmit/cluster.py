"""Cluster state aggregation.

gather_cluster_state() fans out to every cluster member except the
candidate, collects member state, GTID sets and versions concurrently, and
folds them into a ClusterState:

- executed = union of executed GTIDs over ONLINE members
- purged   = intersection of purged GTIDs over ONLINE members
- min_version over ONLINE and RECOVERING members

Members that cannot be contacted (CommunicationError) are excluded from the
aggregate and reported in ClusterState.unreachable. A member that answers
with TransientClusterError is still part of the cluster, so the view is
incomplete: TransientClusterError is raised and the caller retries the
whole gather. If no ONLINE member answers there is no view of the cluster
history at all and NoQuorumViewError is raised.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import List, Optional

from readmit.gtid import GTIDSet, intersection_all, union_all
from readmit.group import (
    CommunicationError,
    GroupCommunication,
    MemberUnreachableError,
    NoQuorumViewError,
    TransientClusterError,
)
from readmit.snapshot import ClusterState, MemberState, Version

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


@dataclass(frozen=True)
class MemberView:
    """What one member reported during aggregation."""
    instance_id: str
    state: MemberState
    version: Optional[Version] = None
    executed: Optional[GTIDSet] = None
    purged: Optional[GTIDSet] = None


def query_member(group: GroupCommunication, instance_id: str) -> MemberView:
    """Collect one member's view. GTIDs are only read from active members."""
    state = group.get_member_state(instance_id)
    if state is MemberState.UNREACHABLE:
        raise MemberUnreachableError(instance_id)
    if state not in (MemberState.ONLINE, MemberState.RECOVERING):
        return MemberView(instance_id=instance_id, state=state)
    return MemberView(
        instance_id=instance_id,
        state=state,
        version=group.get_server_version(instance_id),
        executed=group.get_executed_gtids(instance_id),
        purged=group.get_purged_gtids(instance_id),
    )


def gather_cluster_state(
    group: GroupCommunication,
    candidate_id: str,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> ClusterState:
    """Scatter-gather the current cluster view, excluding the candidate."""
    peers = [m for m in group.list_members() if m != candidate_id]
    views: List[MemberView] = []
    unreachable = set()
    settling = set()

    if peers:
        with ThreadPoolExecutor(max_workers=min(max_workers, len(peers))) as pool:
            futures = {
                pool.submit(query_member, group, member_id): member_id
                for member_id in peers
            }
            for future in as_completed(futures):
                member_id = futures[future]
                try:
                    views.append(future.result())
                except CommunicationError as e:
                    logger.warning(f"Excluding member {member_id} from cluster view: {e}")
                    unreachable.add(member_id)
                except TransientClusterError as e:
                    logger.debug(f"Member {member_id} not ready for cluster view: {e}")
                    settling.add(member_id)

    if settling:
        names = ", ".join(sorted(settling))
        raise TransientClusterError(f"Cluster view incomplete, members still settling: {names}")

    views.sort(key=lambda v: v.instance_id)
    online = [v for v in views if v.state is MemberState.ONLINE]
    active = [v for v in views if v.state in (MemberState.ONLINE, MemberState.RECOVERING)]

    if not online:
        raise NoQuorumViewError(
            f"Unable to rejoin instance '{candidate_id}': no ONLINE cluster member "
            f"could be reached ({len(unreachable)} unreachable of {len(peers)})."
        )

    state = ClusterState(
        executed=union_all(v.executed for v in online),
        purged=intersection_all(v.purged for v in online),
        min_version=min(v.version for v in active),
        members=frozenset(v.instance_id for v in active),
        unreachable=frozenset(unreachable),
    )
    logger.debug(
        f"Cluster view: members={sorted(state.members)} "
        f"unreachable={sorted(state.unreachable)} min_version={state.min_version}"
    )
    return state
