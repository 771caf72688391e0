"""Tests for operator-facing result rendering."""

from readmit.messages import render
from readmit.orchestrator import RejoinOutcome, RejoinResult, RejoinState
from readmit.verdict import Notice, RejectReason

U1 = "3e11fa47-71ca-11e1-9e33-c80aa9429562"
U2 = "8a94f357-aab4-11df-86ab-c80aa9429563"

INSTANCE = "db3:3306"


def rejected(reason, detail=(), message=""):
    return RejoinResult(
        instance_id=INSTANCE,
        outcome=RejoinOutcome.REJECTED,
        final_state=RejoinState.REJECTED,
        reason=reason,
        detail=detail,
        message=message,
    )


class TestRender:
    def test_errant_gtids_one_per_line(self):
        lines = render(rejected(
            RejectReason.ERRANT_TRANSACTIONS,
            detail=(f"{U2}:1-3", f"{U2}:7"),
        ))
        header = f"{INSTANCE} has the following errant GTIDs that do not exist in the cluster:"
        i = lines.index(header)
        assert lines[i + 1:i + 3] == [f"{U2}:1-3", f"{U2}:7"]
        assert lines[0].startswith("ERROR: A GTID set check")

    def test_missing_purged(self):
        lines = render(rejected(
            RejectReason.MISSING_PURGED_TRANSACTIONS, detail=(f"{U1}:1-5",),
        ))
        assert f"{U1}:1-5" in lines
        assert lines[-1] == (
            f"The instance '{INSTANCE}' is missing transactions that were purged "
            f"from all cluster members."
        )

    def test_empty_gtid_set(self):
        lines = render(rejected(RejectReason.EMPTY_GTID_SET))
        assert lines[-1] == f"The instance '{INSTANCE}' has an empty GTID set."

    def test_async_channels(self):
        lines = render(rejected(
            RejectReason.ASYNC_CHANNELS_PRESENT, detail=("<default> (stopped)",),
        ))
        assert "<default> (stopped)" in lines
        assert lines[-1] == f"The instance '{INSTANCE}' has asynchronous replication configured."

    def test_communication_failure(self):
        lines = render(rejected(
            RejectReason.COMMUNICATION_FAILURE,
            detail=("Group Replication failed to start.",),
            message="Group Replication failed to start.",
        ))
        assert lines == ["ERROR: Group Replication failed to start."]

    def test_address_family_detail_then_message(self):
        lines = render(rejected(
            RejectReason.UNSUPPORTED_ADDRESS_FAMILY,
            detail=("Cannot use host '::1' for instance '[::1]:3306'",),
            message="Unsupported IP address '::1'.",
        ))
        assert lines == [
            "ERROR: Cannot use host '::1' for instance '[::1]:3306'",
            "",
            "Unsupported IP address '::1'.",
        ]

    def test_notices_come_first(self):
        result = RejoinResult(
            instance_id=INSTANCE,
            outcome=RejoinOutcome.ONLINE,
            final_state=RejoinState.ONLINE,
            notices=(Notice.warning("deprecated"), Notice.note("protocol version unavailable")),
        )
        assert render(result) == [
            "WARNING: deprecated",
            "NOTE: protocol version unavailable",
            f"The instance '{INSTANCE}' was successfully rejoined to the cluster.",
        ]

    def test_dry_run(self):
        result = RejoinResult(
            instance_id=INSTANCE,
            outcome=RejoinOutcome.ALLOWED,
            final_state=RejoinState.VALIDATED,
        )
        assert render(result) == [
            f"The instance '{INSTANCE}' is valid to be rejoined to the cluster."
        ]

    def test_timeout(self):
        result = RejoinResult(
            instance_id=INSTANCE,
            outcome=RejoinOutcome.TIMED_OUT,
            final_state=RejoinState.TIMEOUT,
            message="Timeout waiting.",
        )
        assert render(result) == ["ERROR: Timeout waiting."]
