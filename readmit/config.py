"""Configuration parsing and validation.

This module contains:
- load_rejoin_config(): the single entry point for configuration
- validate_config(): collects errors and warnings from a raw TOML dict
- build_orchestrator() / build_runner(): construct components from a
  loaded RejoinConfig

A configuration describes the rejoin policy and, since the group layer is
an external collaborator, the simulated cluster the command-line tool runs
against:

    [simulation]
    seed = 42

    [rejoin]
    cluster_id = "prod"
    poll_interval_ms = 1000
    max_polls = 60

    [rejoin.options]
    ipWhitelist = "10.0.0.0/8"

    [[member]]
    endpoint = "db1:3306"
    version = "8.0.27"
    executed = "3e11fa47-71ca-11e1-9e33-c80aa9429562:1-100"
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import tomllib

from readmit.capability import SUPPORTED_OPTIONS
from readmit.group import RecoveryModel, SimulatedGroup, SimulatedMember
from readmit.gtid import GTIDParseError, GTIDSet
from readmit.ledger import Ledger
from readmit.orchestrator import RejoinOrchestrator, RetryPolicy
from readmit.runner import RejoinRunner
from readmit.snapshot import MemberState, ReplicationChannel, Version

logger = logging.getLogger(__name__)

_KNOWN_SECTIONS = frozenset({"simulation", "rejoin", "recovery", "member"})
_MEMBER_KEYS = frozenset({
    "endpoint", "version", "state", "executed", "purged", "channels",
    "reachable", "recovery_polls", "state_errors", "probe_failures",
    "join_error", "persist_error",
})


# ---------------------------------------------------------------------------
# Configuration error
# ---------------------------------------------------------------------------

class ConfigurationError(Exception):
    """Fatal configuration error(s)."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("\n".join(errors))


# ---------------------------------------------------------------------------
# Loaded configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RejoinConfig:
    """Fully constructed configuration.

    The config is frozen; the SimulatedGroup it carries is the only
    mutable component and is shared by everything built from it.
    """
    cluster_id: str
    group: SimulatedGroup
    policy: RetryPolicy
    options: Tuple[Tuple[str, str], ...]
    exempt_channels: Tuple[str, ...]
    targets: Tuple[str, ...]
    dry_run: bool = False
    seed: Optional[int] = None
    realtime: bool = False
    realtime_factor: float = 0.001


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_config(raw: dict) -> tuple[list[str], list[str]]:
    """Validate a raw configuration dict.

    Returns:
        (errors, warnings). Any error makes the configuration unusable.
    """
    errors: list[str] = []
    warnings: list[str] = []

    for section in sorted(set(raw) - _KNOWN_SECTIONS):
        warnings.append(f"Unknown configuration section [{section}] ignored")

    members = raw.get("member", [])
    if not isinstance(members, list) or not members:
        errors.append("At least one [[member]] must be configured")
        members = []

    endpoints = set()
    has_online = False
    for i, member in enumerate(members):
        where = f"member[{i}]"
        endpoint = member.get("endpoint")
        if not endpoint:
            errors.append(f"{where}.endpoint is required")
        elif endpoint in endpoints:
            errors.append(f"{where}.endpoint {endpoint!r} is duplicated")
        else:
            endpoints.add(endpoint)

        for key in sorted(set(member) - _MEMBER_KEYS):
            warnings.append(f"{where}.{key} is not a recognized member setting")

        try:
            Version.parse(member.get("version", ""))
        except ValueError:
            errors.append(f"{where}.version {member.get('version')!r} is not a valid version")

        state = member.get("state", "ONLINE")
        try:
            if MemberState(state) is MemberState.ONLINE and member.get("reachable", True):
                has_online = True
        except ValueError:
            errors.append(
                f"{where}.state must be one of "
                f"{[s.value for s in MemberState]}, got {state!r}"
            )

        for key in ("executed", "purged"):
            try:
                GTIDSet.parse(member.get(key, ""))
            except GTIDParseError as e:
                errors.append(f"{where}.{key}: {e}")

        for channel in member.get("channels", []):
            if not isinstance(channel, dict) or "name" not in channel:
                errors.append(f"{where}.channels entries need a 'name'")

        for key in ("recovery_polls", "state_errors", "probe_failures"):
            _check_number(errors, f"{where}.{key}", member.get(key), minimum=0, integer=True)

    if members and not has_online:
        warnings.append("No reachable ONLINE member configured; every rejoin will fail")

    rejoin_cfg = raw.get("rejoin", {})
    _check_number(errors, "rejoin.max_polls", rejoin_cfg.get("max_polls"),
                  minimum=0, integer=True)
    _check_number(errors, "rejoin.settling_polls", rejoin_cfg.get("settling_polls"),
                  minimum=0, integer=True)
    _check_number(errors, "rejoin.deadline_ms", rejoin_cfg.get("deadline_ms"), minimum=0)
    _check_number(errors, "rejoin.poll_interval_ms", rejoin_cfg.get("poll_interval_ms"),
                  minimum=0)

    backoff_cfg = rejoin_cfg.get("backoff", {})
    _check_number(errors, "rejoin.backoff.base_ms", backoff_cfg.get("base_ms"), minimum=0)
    _check_number(errors, "rejoin.backoff.max_ms", backoff_cfg.get("max_ms"), minimum=0)
    _check_number(errors, "rejoin.backoff.jitter", backoff_cfg.get("jitter"),
                  minimum=0, maximum=1)
    multiplier = backoff_cfg.get("multiplier")
    _check_number(errors, "rejoin.backoff.multiplier", multiplier)
    if _is_number(multiplier) and multiplier < 1.0:
        warnings.append("rejoin.backoff.multiplier < 1 makes poll delays shrink")

    _check_bool(errors, "rejoin.dry_run", rejoin_cfg.get("dry_run"))
    _check_bool(errors, "rejoin.backoff.enabled", backoff_cfg.get("enabled"))

    for name in sorted(set(rejoin_cfg.get("options", {})) - SUPPORTED_OPTIONS):
        warnings.append(f"rejoin.options.{name} is not supported and will be rejected")

    for target in rejoin_cfg.get("targets", []):
        if target not in endpoints:
            errors.append(f"rejoin.targets: {target!r} is not a configured member")

    recovery_cfg = raw.get("recovery", {})
    _check_number(errors, "recovery.median_polls", recovery_cfg.get("median_polls"),
                  minimum=0, exclusive=True)
    _check_number(errors, "recovery.sigma", recovery_cfg.get("sigma"), minimum=0)
    _check_number(errors, "recovery.min_polls", recovery_cfg.get("min_polls"),
                  minimum=0, integer=True)

    sim_cfg = raw.get("simulation", {})
    _check_number(errors, "simulation.seed", sim_cfg.get("seed"), minimum=0, integer=True)
    _check_number(errors, "simulation.realtime_factor", sim_cfg.get("realtime_factor"),
                  minimum=0, exclusive=True)
    _check_bool(errors, "simulation.realtime", sim_cfg.get("realtime"))

    return errors, warnings


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_number(
    errors: list[str],
    name: str,
    value,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
    exclusive: bool = False,
    integer: bool = False,
) -> None:
    """Append an error unless value is absent or a number within bounds.

    TOML booleans are not accepted as numbers.
    """
    if value is None:
        return
    if not _is_number(value) or (integer and not isinstance(value, int)):
        kind = "an integer" if integer else "a number"
        errors.append(f"{name} must be {kind}, got {value!r}")
        return
    if minimum is not None and (value <= minimum if exclusive else value < minimum):
        errors.append(f"{name} must be {'>' if exclusive else '>='} {minimum}, got {value}")
    elif maximum is not None and value > maximum:
        errors.append(f"{name} must be <= {maximum}, got {value}")


def _check_bool(errors: list[str], name: str, value) -> None:
    if value is not None and not isinstance(value, bool):
        errors.append(f"{name} must be true or false, got {value!r}")


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_rejoin_config(
    config_path: str,
    *,
    seed_override: int | None = None,
) -> RejoinConfig:
    """Load rejoin configuration from TOML file.

    Args:
        config_path: Path to TOML configuration file.
        seed_override: If provided, overrides the seed in the config file.

    Returns:
        Fully constructed RejoinConfig.
    """
    with open(config_path, "rb") as f:
        raw = tomllib.load(f)
    return build_config(raw, seed_override=seed_override)


def build_config(raw: dict, *, seed_override: int | None = None) -> RejoinConfig:
    """Validate and build a RejoinConfig from an already parsed dict."""
    if seed_override is not None:
        raw = {**raw, "simulation": {**raw.get("simulation", {}), "seed": seed_override}}

    errors, warnings = validate_config(raw)
    if errors:
        raise ConfigurationError(errors)
    for warning in warnings:
        logger.warning(warning)

    sim_cfg = raw.get("simulation", {})
    seed = sim_cfg.get("seed")
    rng = np.random.RandomState(seed) if seed is not None else np.random.RandomState()

    members = [_build_member(m) for m in raw["member"]]
    group = SimulatedGroup(
        members,
        recovery=_build_recovery(raw.get("recovery", {})),
        rng=rng,
    )

    rejoin_cfg = raw.get("rejoin", {})
    targets = rejoin_cfg.get("targets") or [
        m.instance_id for m in members if m.state is MemberState.OFFLINE
    ]

    return RejoinConfig(
        cluster_id=rejoin_cfg.get("cluster_id", "cluster"),
        group=group,
        policy=_build_policy(rejoin_cfg),
        options=tuple((k, str(v)) for k, v in rejoin_cfg.get("options", {}).items()),
        exempt_channels=tuple(rejoin_cfg.get("exempt_channels", ())),
        targets=tuple(targets),
        dry_run=rejoin_cfg.get("dry_run", False),
        seed=seed,
        realtime=sim_cfg.get("realtime", False),
        realtime_factor=sim_cfg.get("realtime_factor", 0.001),
    )


def _build_member(member_cfg: dict) -> SimulatedMember:
    """Build SimulatedMember from one [[member]] table.

    A missing recovery_polls draws the recovery length from [recovery].
    """
    return SimulatedMember(
        instance_id=member_cfg["endpoint"],
        version=Version.parse(member_cfg["version"]),
        state=MemberState(member_cfg.get("state", "ONLINE")),
        executed=GTIDSet.parse(member_cfg.get("executed", "")),
        purged=GTIDSet.parse(member_cfg.get("purged", "")),
        channels=tuple(
            ReplicationChannel(name=c["name"], running=c.get("running", True))
            for c in member_cfg.get("channels", [])
        ),
        reachable=member_cfg.get("reachable", True),
        recovery_polls=member_cfg.get("recovery_polls"),
        state_errors=member_cfg.get("state_errors", 0),
        probe_failures=member_cfg.get("probe_failures", 0),
        join_error=member_cfg.get("join_error"),
        persist_error=member_cfg.get("persist_error"),
    )


def _build_recovery(recovery_cfg: dict) -> RecoveryModel:
    return RecoveryModel(
        median_polls=recovery_cfg.get("median_polls", 3.0),
        sigma=recovery_cfg.get("sigma", 0.5),
        min_polls=recovery_cfg.get("min_polls", 0),
    )


def _default_max_polls(rejoin_cfg: dict) -> int | None:
    """Poll count budget when none is configured: unbounded if a deadline is set."""
    return None if "deadline_ms" in rejoin_cfg else 60


def _build_policy(rejoin_cfg: dict) -> RetryPolicy:
    """Build RetryPolicy from [rejoin] and [rejoin.backoff]."""
    backoff_cfg = rejoin_cfg.get("backoff", {})
    return RetryPolicy(
        poll_interval_ms=float(rejoin_cfg.get("poll_interval_ms", 1000.0)),
        max_polls=rejoin_cfg.get("max_polls", _default_max_polls(rejoin_cfg)),
        deadline_ms=rejoin_cfg.get("deadline_ms"),
        settling_polls=rejoin_cfg.get("settling_polls", 3),
        backoff_enabled=backoff_cfg.get("enabled", False),
        backoff_base_ms=backoff_cfg.get("base_ms", 100.0),
        backoff_multiplier=backoff_cfg.get("multiplier", 2.0),
        backoff_max_ms=backoff_cfg.get("max_ms", 5000.0),
        backoff_jitter=backoff_cfg.get("jitter", 0.0),
    )


# ---------------------------------------------------------------------------
# Component builders
# ---------------------------------------------------------------------------

def build_orchestrator(config: RejoinConfig, dry_run: bool | None = None) -> RejoinOrchestrator:
    seed = config.seed
    return RejoinOrchestrator(
        group=config.group,
        cluster_id=config.cluster_id,
        policy=config.policy,
        requested_options=dict(config.options),
        exempt_channels=config.exempt_channels,
        rng=np.random.RandomState(seed + 1) if seed is not None else None,
        dry_run=config.dry_run if dry_run is None else dry_run,
    )


def build_runner(
    config: RejoinConfig,
    ledger: Ledger | None = None,
    dry_run: bool | None = None,
) -> RejoinRunner:
    return RejoinRunner(
        build_orchestrator(config, dry_run=dry_run),
        ledger=ledger,
        realtime=config.realtime,
        realtime_factor=config.realtime_factor,
    )
