"""Tests for capability negotiation.

Tests:
- IPv6 host: rejected below 8.0.14, allowed at 8.0.14
- Deprecated allow-list option: warning plus substitution at >= 8.0.23,
  kept as-is below
- Option errors: both names, unknown options, bad memberSslMode, IPv6
  values on old clusters
- SET PERSIST advisory warning below 8.0.11
- Warnings never turn an allowed verdict into a rejection
"""

import pytest

from readmit.capability import (
    IPV6_MIN_VERSION,
    negotiate,
    resolve_options,
    supports_set_persist,
)
from readmit.snapshot import Version
from readmit.verdict import ALLOWED, NoticeLevel, RejectReason


def v(text):
    return Version.parse(text)


def run(host="db2", candidate="8.0.27", cluster="8.0.27", options=None):
    return negotiate(
        instance_id=f"{host}:3306" if ":" not in host else f"[{host}]:3306",
        host=host,
        candidate_version=v(candidate),
        cluster_min_version=v(cluster),
        requested_options=options,
    )


class TestAddressFamily:
    def test_ipv6_rejected_on_8_0_13(self):
        result = run(host="2001:db8::5", cluster="8.0.13")
        assert result.verdict.reason is RejectReason.UNSUPPORTED_ADDRESS_FAMILY
        assert "2001:db8::5" in result.verdict.message
        assert "[2001:db8::5]:3306" in result.verdict.detail[0]
        assert result.effective_options == ()

    def test_ipv6_allowed_on_8_0_14(self):
        result = run(host="2001:db8::5", cluster="8.0.14")
        assert result.verdict is ALLOWED

    def test_ipv4_and_hostnames_never_rejected(self):
        assert run(host="10.0.0.5", cluster="5.7.30").verdict.allowed
        assert run(host="db2.example.com", cluster="5.7.30").verdict.allowed

    def test_threshold_constant(self):
        assert IPV6_MIN_VERSION == Version(8, 0, 14)


class TestOptionMigration:
    def test_deprecated_name_migrated_with_warning(self):
        result = run(candidate="8.0.23", options={"ipWhitelist": "10.0.0.0/8"})
        assert result.verdict is ALLOWED
        assert result.options == {"ipAllowlist": "10.0.0.0/8"}
        assert [str(w) for w in result.warnings] == [
            "WARNING: The ipWhitelist option is deprecated in favor of ipAllowlist. "
            "ipAllowlist will be set instead."
        ]

    def test_deprecated_name_kept_on_older_server(self):
        result = run(candidate="8.0.22", cluster="8.0.22", options={"ipWhitelist": "10.0.0.0/8"})
        assert result.options == {"ipWhitelist": "10.0.0.0/8"}
        assert result.warnings == ()

    def test_both_names_rejected(self):
        result = run(options={"ipWhitelist": "a", "ipAllowlist": "b"})
        assert result.verdict.reason is RejectReason.UNSUPPORTED_CONFIG_OPTION
        assert result.verdict.message == (
            "Cannot use the ipWhitelist and ipAllowlist options simultaneously."
        )

    def test_unknown_option_rejected(self):
        result = run(options={"groupSeeds": "x", "bogus": "y"})
        assert result.verdict.reason is RejectReason.UNSUPPORTED_CONFIG_OPTION
        assert result.verdict.message == "Invalid options: bogus, groupSeeds"

    def test_member_ssl_mode_normalized(self):
        result = run(options={"memberSslMode": "required"})
        assert result.options == {"memberSslMode": "REQUIRED"}

    def test_member_ssl_mode_invalid(self):
        result = run(options={"memberSslMode": "sometimes"})
        assert result.verdict.reason is RejectReason.UNSUPPORTED_CONFIG_OPTION

    def test_ipv6_allowlist_rejected_on_old_cluster(self):
        effective, warnings, verdict = resolve_options(
            {"ipAllowlist": "10.0.0.0/8, fe80::/64"}, v("8.0.13"), v("8.0.13"),
        )
        assert verdict.reason is RejectReason.UNSUPPORTED_CONFIG_OPTION
        assert "fe80::/64" in verdict.message
        assert effective == {}

    def test_ipv6_local_address_rejected_on_old_cluster(self):
        _, _, verdict = resolve_options(
            {"localAddress": "[::1]:33061"}, v("8.0.13"), v("8.0.13"),
        )
        assert verdict.reason is RejectReason.UNSUPPORTED_CONFIG_OPTION

    def test_ipv6_local_address_allowed_on_new_cluster(self):
        effective, _, verdict = resolve_options(
            {"localAddress": "[::1]:33061"}, v("8.0.14"), v("8.0.14"),
        )
        assert verdict is ALLOWED
        assert effective == {"localAddress": "[::1]:33061"}


class TestSetPersist:
    def test_warning_below_8_0_11(self):
        result = run(candidate="8.0.4", cluster="8.0.4")
        assert result.verdict is ALLOWED
        assert len(result.warnings) == 1
        warning = result.warnings[0]
        assert warning.level is NoticeLevel.WARNING
        assert "SET PERSIST" in warning.text
        assert "dba.configureLocalInstance()" in warning.text

    def test_no_warning_at_8_0_11(self):
        assert run(candidate="8.0.11", cluster="8.0.11").warnings == ()

    def test_old_server_keeps_option_and_warns_once(self):
        result = run(candidate="8.0.4", cluster="8.0.4", options={"ipWhitelist": "x"})
        assert result.verdict.allowed
        assert result.options == {"ipWhitelist": "x"}
        assert len(result.warnings) == 1

    @pytest.mark.parametrize("version,expected", [
        ("5.7.30", False),
        ("8.0.10", False),
        ("8.0.11", True),
        ("8.0.27", True),
    ])
    def test_supports_set_persist(self, version, expected):
        assert supports_set_persist(v(version)) is expected
