"""Replication topology validation.

A candidate with any manually configured asynchronous replication channel
is refused, whether the channel is running or stopped: the channel is not
managed by the cluster and keeps pointing at its source when the primary
role moves, which can break replication or split the cluster.

Channels whose names are listed in `exempt` are ignored. The default
exemption list is empty.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from readmit.snapshot import ReplicationChannel
from readmit.verdict import ALLOWED, RejectReason, Rejected, ValidationVerdict


def validate_topology(
    channels: Sequence[ReplicationChannel],
    exempt: Iterable[str] = (),
) -> ValidationVerdict:
    exempt_names = frozenset(exempt)
    offending = [c for c in channels if c.name not in exempt_names]
    if not offending:
        return ALLOWED
    return Rejected(
        reason=RejectReason.ASYNC_CHANNELS_PRESENT,
        detail=tuple(c.describe() for c in offending),
        message="The instance has asynchronous replication configured.",
    )
