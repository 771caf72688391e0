"""GTID reconciliation between a candidate and the cluster.

reconcile() decides whether a candidate's transaction history is
compatible with the cluster's. Checks run in a fixed order and the first
failure wins:

1. Empty candidate set: the instance cannot be proven consistent and must
   be provisioned again instead of rejoined.
2. Errant transactions (candidate - cluster_executed): history the cluster
   never saw. Reported before purge gaps since merging foreign history
   risks silent data loss.
3. Missing purged transactions (cluster_purged - candidate): history the
   candidate never had and can no longer fetch from any member.
"""

from __future__ import annotations

import logging

from readmit.gtid import GTIDSet
from readmit.verdict import ALLOWED, RejectReason, Rejected, ValidationVerdict

logger = logging.getLogger(__name__)


def reconcile(
    candidate: GTIDSet,
    cluster_executed: GTIDSet,
    cluster_purged: GTIDSet,
) -> ValidationVerdict:
    """Compare candidate executed GTIDs against the cluster aggregate."""
    if candidate.is_empty:
        return Rejected(
            reason=RejectReason.EMPTY_GTID_SET,
            message="The instance has an empty GTID set.",
        )

    errant = candidate.difference(cluster_executed)
    if not errant.is_empty:
        logger.debug(f"Errant GTIDs found: {errant.entries()}")
        return Rejected(
            reason=RejectReason.ERRANT_TRANSACTIONS,
            detail=errant.entries(),
            message="The instance contains errant transactions that did not "
                    "originate from the cluster.",
        )

    missing = cluster_purged.difference(candidate)
    if not missing.is_empty:
        logger.debug(f"Purged GTIDs missing on candidate: {missing.entries()}")
        return Rejected(
            reason=RejectReason.MISSING_PURGED_TRANSACTIONS,
            detail=missing.entries(),
            message="The instance is missing transactions that were purged "
                    "from all cluster members.",
        )

    return ALLOWED
