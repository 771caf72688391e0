"""Tests for config loading and the command-line entry point.

Tests:
- load_rejoin_config: valid TOML → RejoinConfig
- Defaults: poll budget, targets (every OFFLINE member), cluster id
- Seed handling: from config, override
- Validation: invalid or wrongly typed values raise ConfigurationError,
  warnings logged
- Component wiring: runner built from config rejoins end to end
- cli(): exit codes, dry run, parquet export
"""

import os
import sys
import tempfile

import pandas as pd
import pytest

from readmit.config import (
    ConfigurationError,
    build_config,
    build_runner,
    load_rejoin_config,
    validate_config,
)
from readmit.main import cli
from readmit.orchestrator import RejoinOutcome
from readmit.snapshot import MemberState, Version

U1 = "3e11fa47-71ca-11e1-9e33-c80aa9429562"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def write_toml(content: str) -> str:
    """Write TOML content to a temp file and return its path."""
    fd, path = tempfile.mkstemp(suffix=".toml")
    os.write(fd, content.encode())
    os.close(fd)
    return path


MINIMAL_CONFIG = f"""\
[simulation]
seed = 42

[rejoin]
cluster_id = "testCluster"
poll_interval_ms = 100

[[member]]
endpoint = "db1:3306"
version = "8.0.27"
executed = "{U1}:1-100"
purged = "{U1}:1-20"

[[member]]
endpoint = "db3:3306"
version = "8.0.27"
state = "OFFLINE"
executed = "{U1}:1-90"
recovery_polls = 2
"""


def minimal_raw():
    return {
        "member": [
            {"endpoint": "db1:3306", "version": "8.0.27", "executed": f"{U1}:1-100"},
            {"endpoint": "db3:3306", "version": "8.0.27", "state": "OFFLINE",
             "executed": f"{U1}:1-90"},
        ],
    }


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

class TestLoadRejoinConfig:
    def test_minimal(self):
        path = write_toml(MINIMAL_CONFIG)
        try:
            config = load_rejoin_config(path)
        finally:
            os.unlink(path)

        assert config.cluster_id == "testCluster"
        assert config.seed == 42
        assert config.targets == ("db3:3306",)
        assert config.policy.poll_interval_ms == 100.0
        assert config.policy.max_polls == 60
        assert config.policy.deadline_ms is None
        assert config.group.member("db3:3306").state is MemberState.OFFLINE
        assert config.group.get_server_version("db1:3306") == Version(8, 0, 27)

    def test_seed_override(self):
        path = write_toml(MINIMAL_CONFIG)
        try:
            config = load_rejoin_config(path, seed_override=7)
        finally:
            os.unlink(path)
        assert config.seed == 7

    def test_seed_override_leaves_raw_config_untouched(self):
        raw = minimal_raw()
        raw["simulation"] = {"seed": 42}

        config = build_config(raw, seed_override=7)

        assert config.seed == 7
        assert raw["simulation"] == {"seed": 42}
        bare = minimal_raw()
        build_config(bare, seed_override=7)
        assert "simulation" not in bare

    def test_settling_polls(self):
        raw = minimal_raw()
        assert build_config(raw).policy.settling_polls == 3
        raw["rejoin"] = {"settling_polls": 0}
        assert build_config(raw).policy.settling_polls == 0

    def test_deadline_only_budget(self):
        path = write_toml(MINIMAL_CONFIG.replace(
            "poll_interval_ms = 100", "poll_interval_ms = 100\ndeadline_ms = 5000",
        ))
        try:
            config = load_rejoin_config(path)
        finally:
            os.unlink(path)
        assert config.policy.max_polls is None
        assert config.policy.deadline_ms == 5000

    def test_options_channels_and_backoff(self):
        content = MINIMAL_CONFIG.replace('poll_interval_ms = 100\n', (
            'poll_interval_ms = 100\n'
            'exempt_channels = ["managed"]\n'
            'targets = ["db3:3306"]\n\n'
            '[rejoin.options]\n'
            'ipWhitelist = "10.0.0.0/8"\n\n'
            '[rejoin.backoff]\n'
            'enabled = true\n'
            'base_ms = 50\n'
            'jitter = 0.2\n'
        )) + (
            '\n[[member.channels]]\n'
            'name = "managed"\n'
            'running = false\n'
        )
        path = write_toml(content)
        try:
            config = load_rejoin_config(path)
        finally:
            os.unlink(path)

        assert config.options == (("ipWhitelist", "10.0.0.0/8"),)
        assert config.exempt_channels == ("managed",)
        assert config.policy.backoff_enabled
        assert config.policy.backoff_base_ms == 50
        assert config.policy.backoff_jitter == pytest.approx(0.2)
        channels = config.group.list_replication_channels("db3:3306")
        assert [c.name for c in channels] == ["managed"]


class TestComponentBuilding:
    def test_runner_rejoins_default_targets(self):
        path = write_toml(MINIMAL_CONFIG)
        try:
            config = load_rejoin_config(path)
        finally:
            os.unlink(path)

        runner = build_runner(config)
        results = runner.run(config.targets)

        assert [r.outcome for r in results] == [RejoinOutcome.ONLINE]
        assert results[0].polls == 3
        assert runner.ledger.online == 1

    def test_dry_run_override(self):
        path = write_toml(MINIMAL_CONFIG)
        try:
            config = load_rejoin_config(path)
        finally:
            os.unlink(path)

        result = build_runner(config, dry_run=True).rejoin("db3:3306")

        assert result.outcome is RejoinOutcome.ALLOWED
        assert config.group.member("db3:3306").joins_requested == 0


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidateConfig:
    def test_minimal_is_clean(self):
        errors, warnings = validate_config(minimal_raw())
        assert errors == []
        assert warnings == []

    def test_no_members(self):
        errors, _ = validate_config({})
        assert any("[[member]]" in e for e in errors)

    @pytest.mark.parametrize("key,value,fragment", [
        ("version", "eight", "version"),
        ("state", "JOINING", "state"),
        ("executed", "garbage", "executed"),
        ("purged", "3e11fa47-71ca-11e1-9e33-c80aa9429562:0", "purged"),
        ("recovery_polls", -1, "recovery_polls"),
    ])
    def test_bad_member_values(self, key, value, fragment):
        raw = minimal_raw()
        raw["member"][1][key] = value
        errors, _ = validate_config(raw)
        assert any(e.startswith("member[1]") and fragment in e for e in errors)

    def test_duplicate_endpoint(self):
        raw = minimal_raw()
        raw["member"][1]["endpoint"] = "db1:3306"
        errors, _ = validate_config(raw)
        assert any("duplicated" in e for e in errors)

    def test_unknown_target(self):
        raw = minimal_raw()
        raw["rejoin"] = {"targets": ["db9:3306"]}
        errors, _ = validate_config(raw)
        assert any("db9:3306" in e for e in errors)

    @pytest.mark.parametrize("rejoin", [
        {"max_polls": -1},
        {"deadline_ms": -1},
        {"poll_interval_ms": -5},
        {"backoff": {"jitter": 2.0}},
    ])
    def test_bad_budget(self, rejoin):
        raw = minimal_raw()
        raw["rejoin"] = rejoin
        errors, _ = validate_config(raw)
        assert errors

    @pytest.mark.parametrize("section,values,name", [
        ("rejoin", {"max_polls": "5"}, "rejoin.max_polls"),
        ("rejoin", {"max_polls": 2.5}, "rejoin.max_polls"),
        ("rejoin", {"settling_polls": -1}, "rejoin.settling_polls"),
        ("rejoin", {"deadline_ms": "soon"}, "rejoin.deadline_ms"),
        ("rejoin", {"poll_interval_ms": True}, "rejoin.poll_interval_ms"),
        ("rejoin", {"backoff": {"jitter": "x"}}, "rejoin.backoff.jitter"),
        ("rejoin", {"backoff": {"multiplier": "fast"}}, "rejoin.backoff.multiplier"),
        ("rejoin", {"backoff": {"enabled": "yes"}}, "rejoin.backoff.enabled"),
        ("recovery", {"median_polls": "3"}, "recovery.median_polls"),
        ("recovery", {"sigma": -0.1}, "recovery.sigma"),
        ("simulation", {"realtime_factor": "fast"}, "simulation.realtime_factor"),
        ("simulation", {"seed": "42"}, "simulation.seed"),
    ])
    def test_wrongly_typed_values_are_errors(self, section, values, name):
        raw = minimal_raw()
        raw[section] = values
        errors, _ = validate_config(raw)
        assert any(e.startswith(name) for e in errors)

    def test_wrongly_typed_values_raise_configuration_error(self):
        raw = minimal_raw()
        raw["rejoin"] = {"max_polls": "5", "backoff": {"jitter": "x"}}
        with pytest.raises(ConfigurationError) as exc_info:
            build_config(raw)
        assert len(exc_info.value.errors) == 2

    def test_warnings(self):
        raw = minimal_raw()
        raw["extra"] = {}
        raw["member"][0]["colour"] = "blue"
        raw["rejoin"] = {"options": {"groupSeeds": "x"}}
        errors, warnings = validate_config(raw)
        assert errors == []
        assert len(warnings) == 3

    def test_no_online_member_warns(self):
        raw = minimal_raw()
        raw["member"][0]["reachable"] = False
        _, warnings = validate_config(raw)
        assert any("ONLINE" in w for w in warnings)

    def test_load_raises_configuration_error(self):
        path = write_toml('[[member]]\nendpoint = "db1:3306"\nversion = "x"\n')
        try:
            with pytest.raises(ConfigurationError) as exc_info:
                load_rejoin_config(path)
        finally:
            os.unlink(path)
        assert exc_info.value.errors


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

class TestCli:
    def run_cli(self, monkeypatch, *args):
        monkeypatch.setattr(sys, "argv", ["readmit", *args])
        with pytest.raises(SystemExit) as exc_info:
            cli()
        return exc_info.value.code

    def test_rejoin_succeeds(self, monkeypatch, capsys, tmp_path):
        path = tmp_path / "cluster.toml"
        path.write_text(MINIMAL_CONFIG)

        code = self.run_cli(monkeypatch, str(path), "--no-progress")

        assert code == 0
        out = capsys.readouterr().out
        assert "was successfully rejoined" in out
        assert "Rejoined 1/1" in out

    def test_rejected_exit_code(self, monkeypatch, capsys, tmp_path):
        path = tmp_path / "cluster.toml"
        path.write_text(MINIMAL_CONFIG.replace(
            f'executed = "{U1}:1-90"', f'executed = "{U1}:1-150"',
        ))

        code = self.run_cli(monkeypatch, str(path), "-q")

        assert code == 1
        assert "errant GTIDs" in capsys.readouterr().out

    def test_dry_run_with_export(self, monkeypatch, tmp_path):
        path = tmp_path / "cluster.toml"
        path.write_text(MINIMAL_CONFIG)
        output = tmp_path / "results.parquet"

        code = self.run_cli(
            monkeypatch, str(path), "db3:3306", "--dry-run", "-q", "-o", str(output),
        )

        assert code == 0
        df = pd.read_parquet(output)
        assert list(df["outcome"]) == ["Allowed"]

    def test_invalid_config_exit_code(self, monkeypatch, capsys, tmp_path):
        path = tmp_path / "cluster.toml"
        path.write_text("[simulation]\nseed = 1\n")

        code = self.run_cli(monkeypatch, str(path))

        assert code == 2
        assert "Configuration validation failed" in capsys.readouterr().out
