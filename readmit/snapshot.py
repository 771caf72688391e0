"""Immutable snapshot types for candidate and cluster state.

This module defines the data passed from the orchestrator to the
validators. All types are frozen dataclasses: validation never reads live
server state, only snapshots captured at a specific point in time.

Key types:
- MemberState: Group membership state of one server
- AddressFamily: Resolved address family of an instance host
- Version: Server version with total ordering
- ReplicationChannel: One configured asynchronous replication channel
- InstanceSnapshot: Candidate instance state at validation time
- ClusterState: Aggregated view over the reachable cluster members
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Tuple

from readmit.gtid import GTIDSet


class MemberState(Enum):
    """Membership state reported by the group communication layer."""
    ONLINE = "ONLINE"
    RECOVERING = "RECOVERING"
    OFFLINE = "OFFLINE"
    UNREACHABLE = "UNREACHABLE"


class AddressFamily(Enum):
    IPV4 = "IPv4"
    IPV6 = "IPv6"


_VERSION_RE = re.compile(r"^\s*(\d+)\.(\d+)(?:\.(\d+))?")


@dataclass(frozen=True, order=True)
class Version:
    """Server version (major.minor.patch). Suffixes like '-log' are ignored."""
    major: int
    minor: int = 0
    patch: int = 0

    @classmethod
    def parse(cls, text: str | Version) -> Version:
        if isinstance(text, Version):
            return text
        m = _VERSION_RE.match(str(text))
        if not m:
            raise ValueError(f"Invalid server version: {text!r}")
        return cls(int(m.group(1)), int(m.group(2)), int(m.group(3) or 0))

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


# ---------------------------------------------------------------------------
# Endpoint helpers
# ---------------------------------------------------------------------------

def split_endpoint(endpoint: str) -> Tuple[str, int | None]:
    """Split 'host:port' or '[v6]:port' into (host, port).

    A bare IPv6 literal without brackets is returned whole with no port.
    """
    endpoint = endpoint.strip()
    if endpoint.startswith("["):
        host, sep, rest = endpoint[1:].partition("]")
        if not sep:
            raise ValueError(f"Unterminated IPv6 literal in endpoint {endpoint!r}")
        port = rest[1:] if rest.startswith(":") else ""
        return host, int(port) if port else None
    if endpoint.count(":") > 1:
        return endpoint, None
    host, _, port = endpoint.partition(":")
    return host, int(port) if port else None


def resolve_address_family(host: str) -> AddressFamily:
    """Address family of a host.

    Only literal IPv6 addresses are classified as IPv6; hostnames and
    IPv4 literals are reported as IPv4.
    """
    try:
        address = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return AddressFamily.IPV4
    return AddressFamily.IPV6 if address.version == 6 else AddressFamily.IPV4


def is_ipv6_literal(text: str) -> bool:
    """True if text (optionally with a /prefix) is an IPv6 address or network."""
    candidate = text.strip().strip("[]")
    try:
        return ipaddress.ip_network(candidate, strict=False).version == 6
    except ValueError:
        return False


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReplicationChannel:
    """Asynchronous replication channel configured on an instance."""
    name: str
    running: bool

    def describe(self) -> str:
        label = self.name if self.name else "<default>"
        return f"{label} ({'running' if self.running else 'stopped'})"


@dataclass(frozen=True)
class InstanceSnapshot:
    """Candidate instance state captured at validation time.

    Attributes:
        instance_id: Endpoint the instance is known by ('host:port')
        host: Host part of the endpoint
        address_family: Resolved address family of host
        version: Server version
        executed: @@gtid_executed
        purged: @@gtid_purged
        channels: Configured asynchronous replication channels
    """
    instance_id: str
    host: str
    address_family: AddressFamily
    version: Version
    executed: GTIDSet
    purged: GTIDSet
    channels: Tuple[ReplicationChannel, ...] = ()


@dataclass(frozen=True)
class ClusterState:
    """Aggregated cluster view, recomputed for every rejoin attempt.

    Attributes:
        executed: Union of executed GTIDs over ONLINE members
        purged: Intersection of purged GTIDs over ONLINE members (a
            transaction purged everywhere can no longer be recovered)
        min_version: Lowest version among ONLINE and RECOVERING members
        members: Reachable ONLINE/RECOVERING member ids
        unreachable: Members excluded from the aggregate
    """
    executed: GTIDSet
    purged: GTIDSet
    min_version: Version
    members: FrozenSet[str]
    unreachable: FrozenSet[str] = field(default_factory=frozenset)
