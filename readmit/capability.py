"""Capability negotiation between a candidate and the cluster.

Resolves version-dependent feature gates before a join is requested:

- IPv6 addresses are only routable by the group layer from 8.0.14, so a
  candidate reporting an IPv6 literal host is refused while any member
  (the candidate included) is older than that.
- Option aliases are migrated through a single versioned table
  (OPTION_MIGRATIONS). A deprecated name on a server that knows the
  replacement yields a warning and the value is carried over to the new
  name.
- SET PERSIST needs 8.0.11; older candidates only get an advisory warning
  telling the operator to persist configuration locally.

Warnings never turn an allowed verdict into a rejection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Tuple

from readmit.snapshot import (
    AddressFamily,
    Version,
    is_ipv6_literal,
    resolve_address_family,
    split_endpoint,
)
from readmit.verdict import (
    ALLOWED,
    Notice,
    RejectReason,
    Rejected,
    ValidationVerdict,
)

logger = logging.getLogger(__name__)


IPV6_MIN_VERSION = Version(8, 0, 14)
SET_PERSIST_MIN_VERSION = Version(8, 0, 11)

MEMBER_SSL_MODES = ("AUTO", "DISABLED", "REQUIRED", "VERIFY_CA", "VERIFY_IDENTITY")


@dataclass(frozen=True)
class OptionMigration:
    """Rename of a deprecated option, effective from `since` onwards."""
    deprecated: str
    replacement: str
    since: Version


OPTION_MIGRATIONS: Tuple[OptionMigration, ...] = (
    OptionMigration("ipWhitelist", "ipAllowlist", Version(8, 0, 23)),
)

SUPPORTED_OPTIONS = frozenset({
    "ipAllowlist",
    "ipWhitelist",
    "localAddress",
    "memberSslMode",
})

_ALLOWLIST_OPTIONS = ("ipAllowlist", "ipWhitelist")


@dataclass(frozen=True)
class NegotiationResult:
    """Verdict, ordered warnings and the options to pass to the join.

    effective_options is empty when the verdict is a rejection.
    """
    verdict: ValidationVerdict
    warnings: Tuple[Notice, ...] = ()
    effective_options: Tuple[Tuple[str, str], ...] = field(default=())

    @property
    def options(self) -> Dict[str, str]:
        return dict(self.effective_options)


def _option_error(message: str) -> Rejected:
    return Rejected(
        reason=RejectReason.UNSUPPORTED_CONFIG_OPTION,
        detail=(message,),
        message=message,
    )


def resolve_options(
    requested: Mapping[str, str],
    candidate_version: Version,
    cluster_min_version: Version,
) -> Tuple[Dict[str, str], Tuple[Notice, ...], ValidationVerdict]:
    """Single resolution pass over the requested options.

    Returns (effective_options, warnings, verdict).
    """
    unknown = sorted(set(requested) - SUPPORTED_OPTIONS)
    if unknown:
        return {}, (), _option_error(f"Invalid options: {', '.join(unknown)}")

    effective: Dict[str, str] = {}
    warnings = []

    for migration in OPTION_MIGRATIONS:
        if migration.deprecated in requested and migration.replacement in requested:
            return {}, (), _option_error(
                f"Cannot use the {migration.deprecated} and {migration.replacement} "
                f"options simultaneously."
            )

    renames = {
        m.deprecated: m for m in OPTION_MIGRATIONS
        if candidate_version >= m.since
    }

    for name, raw_value in requested.items():
        value = str(raw_value)

        if name in _ALLOWLIST_OPTIONS and cluster_min_version < IPV6_MIN_VERSION:
            for entry in (e.strip() for e in value.split(",")):
                if entry and is_ipv6_literal(entry):
                    return {}, (), _option_error(
                        f"Invalid value for {name} '{entry}': IPv6 not supported "
                        f"(version >= {IPV6_MIN_VERSION} required for IPv6 support)."
                    )

        if name == "localAddress" and cluster_min_version < IPV6_MIN_VERSION:
            try:
                host, _ = split_endpoint(value)
            except ValueError:
                return {}, (), _option_error(f"Invalid value for localAddress '{value}'.")
            if is_ipv6_literal(host):
                return {}, (), _option_error(
                    f"Invalid value for localAddress '{value}': IPv6 not supported "
                    f"(version >= {IPV6_MIN_VERSION} required for IPv6 support)."
                )

        if name == "memberSslMode":
            value = value.upper()
            if value not in MEMBER_SSL_MODES:
                return {}, (), _option_error(
                    f"Invalid value for memberSslMode option. "
                    f"Supported values: {','.join(MEMBER_SSL_MODES)}."
                )

        migration = renames.get(name)
        if migration is not None:
            warnings.append(Notice.warning(
                f"The {migration.deprecated} option is deprecated in favor of "
                f"{migration.replacement}. {migration.replacement} will be set instead."
            ))
            logger.debug(f"Option {migration.deprecated} migrated to {migration.replacement}")
            name = migration.replacement

        effective[name] = value

    return effective, tuple(warnings), ALLOWED


def negotiate(
    instance_id: str,
    host: str,
    candidate_version: Version,
    cluster_min_version: Version,
    requested_options: Mapping[str, str] | None = None,
) -> NegotiationResult:
    """Check version and address-family compatibility and migrate options."""
    family = resolve_address_family(host)
    if family is AddressFamily.IPV6 and cluster_min_version < IPV6_MIN_VERSION:
        return NegotiationResult(Rejected(
            reason=RejectReason.UNSUPPORTED_ADDRESS_FAMILY,
            detail=(
                f"Cannot use host '{host}' for instance '{instance_id}' because it is "
                f"an IPv6 address which is only supported by Group Replication from "
                f"MySQL version >= {IPV6_MIN_VERSION}. Set the MySQL server "
                f"'report_host' variable to an IPv4 address or hostname that "
                f"resolves an IPv4 address.",
            ),
            message=f"Unsupported IP address '{host}'. IPv6 is only supported by "
                    f"Group Replication on MySQL version >= {IPV6_MIN_VERSION}.",
        ))

    options, warnings, verdict = resolve_options(
        requested_options or {}, candidate_version, cluster_min_version,
    )
    if not verdict.allowed:
        return NegotiationResult(verdict, warnings)

    if candidate_version < SET_PERSIST_MIN_VERSION:
        warnings = warnings + (Notice.warning(
            f"Instance '{instance_id}' cannot persist Group Replication configuration "
            f"since MySQL version {candidate_version} does not support the SET PERSIST "
            f"command (MySQL version >= {SET_PERSIST_MIN_VERSION} required). Please use "
            f"the dba.configureLocalInstance() command locally to persist the changes."
        ),)

    return NegotiationResult(ALLOWED, warnings, tuple(options.items()))


def supports_set_persist(version: Version) -> bool:
    return version >= SET_PERSIST_MIN_VERSION
