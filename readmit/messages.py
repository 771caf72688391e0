"""Operator-facing rendering of rejoin results.

Wording follows the administration shell output operators already parse.
Only the reason codes and the ordered detail lines are guaranteed; the
surrounding prose may change.
"""

from __future__ import annotations

from typing import List

from readmit.orchestrator import RejoinOutcome, RejoinResult
from readmit.verdict import RejectReason


def _async_channels(instance_id: str, result: RejoinResult) -> List[str]:
    return [
        f"ERROR: Cannot rejoin instance '{instance_id}' to the cluster because it has "
        f"asynchronous (source-replica) replication channel(s) configured. MySQL InnoDB "
        f"Cluster does not support manually configured channels as they are not managed "
        f"using the AdminAPI (e.g. when PRIMARY moves to another member) which may cause "
        f"cause replication to break or even create split-brain scenarios (data loss).",
        "",
        *result.detail,
        "",
        f"The instance '{instance_id}' has asynchronous replication configured.",
    ]


def _errant(instance_id: str, result: RejoinResult) -> List[str]:
    return [
        f"ERROR: A GTID set check of the MySQL instance at '{instance_id}' determined "
        f"that it contains transactions that do not originate from the cluster, which "
        f"must be discarded before it can join the cluster.",
        "",
        f"{instance_id} has the following errant GTIDs that do not exist in the cluster:",
        *result.detail,
        "",
        "Having extra GTID events is not expected, and it is recommended to investigate "
        "this further and ensure that the data can be removed prior to rejoining the "
        "instance to the cluster.",
        "",
        f"Discarding these extra GTID events can either be done manually or by completely "
        f"overwriting the state of {instance_id} with a physical snapshot from an existing "
        f"cluster member. To achieve this remove the instance from the cluster and add it "
        f"back using <Cluster>.addInstance() and setting the 'recoveryMethod' option to "
        f"'clone'.",
        "",
        f"The instance '{instance_id}' contains errant transactions that did not "
        f"originate from the cluster.",
    ]


def _empty(instance_id: str, result: RejoinResult) -> List[str]:
    return [
        f"ERROR: The target instance '{instance_id}' has an empty GTID set so it cannot "
        f"be safely rejoined to the cluster. Please remove it and add it back to the "
        f"cluster.",
        "",
        f"The instance '{instance_id}' has an empty GTID set.",
    ]


def _missing_purged(instance_id: str, result: RejoinResult) -> List[str]:
    return [
        f"ERROR: A GTID set check of the MySQL instance at '{instance_id}' determined "
        f"that it is missing transactions that were purged from all cluster members.",
        "",
        f"{instance_id} is missing the following purged GTIDs:",
        *result.detail,
        "",
        f"The instance '{instance_id}' is missing transactions that were purged from "
        f"all cluster members.",
    ]


def _detail_then_message(instance_id: str, result: RejoinResult) -> List[str]:
    lines = [f"ERROR: {line}" for line in result.detail]
    if result.message and result.message not in result.detail:
        lines += ["", result.message]
    return lines


_RENDERERS = {
    RejectReason.ASYNC_CHANNELS_PRESENT: _async_channels,
    RejectReason.ERRANT_TRANSACTIONS: _errant,
    RejectReason.EMPTY_GTID_SET: _empty,
    RejectReason.MISSING_PURGED_TRANSACTIONS: _missing_purged,
    RejectReason.UNSUPPORTED_ADDRESS_FAMILY: _detail_then_message,
    RejectReason.UNSUPPORTED_CONFIG_OPTION: _detail_then_message,
    RejectReason.COMMUNICATION_FAILURE: _detail_then_message,
}


def render(result: RejoinResult) -> List[str]:
    """Render notices followed by the outcome as output lines."""
    lines = [str(n) for n in result.notices]
    instance_id = result.instance_id

    if result.outcome is RejoinOutcome.REJECTED:
        lines += _RENDERERS[result.reason](instance_id, result)
    elif result.outcome is RejoinOutcome.ONLINE:
        lines.append(f"The instance '{instance_id}' was successfully rejoined to the cluster.")
    elif result.outcome is RejoinOutcome.ALLOWED:
        lines.append(f"The instance '{instance_id}' is valid to be rejoined to the cluster.")
    else:
        lines.append(f"ERROR: {result.message}")
    return lines
