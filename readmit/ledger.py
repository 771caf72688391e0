"""Result ledger with parquet export.

Every RejoinResult handled by a runner is recorded here: aggregate counters
for quick summaries and a row per attempt for export. Detail lines are
joined with newlines so one errant GTID interval stays on one line.
"""

from __future__ import annotations

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from readmit.orchestrator import RejoinOutcome, RejoinResult

_ARROW_SCHEMA = pa.schema([
    ("instance_id", pa.string()),
    ("outcome", pa.string()),
    ("final_state", pa.string()),
    ("reason", pa.string()),
    ("detail", pa.string()),
    ("message", pa.string()),
    ("notices", pa.string()),
    ("polls", pa.int32()),
    ("elapsed_ms", pa.float64()),
    ("cause", pa.string()),
])


def _result_to_row(r: RejoinResult) -> dict:
    """Convert a RejoinResult to a dict matching the Arrow schema."""
    return {
        "instance_id": r.instance_id,
        "outcome": r.outcome.value,
        "final_state": r.final_state.name,
        "reason": r.reason.value if r.reason is not None else None,
        "detail": "\n".join(r.detail),
        "message": r.message,
        "notices": "\n".join(str(n) for n in r.notices),
        "polls": r.polls,
        "elapsed_ms": round(r.elapsed_ms, 2),
        "cause": r.cause,
    }


def _rows_to_arrow_table(rows: list[dict]) -> pa.Table:
    arrays = {}
    for field in _ARROW_SCHEMA:
        arrays[field.name] = pa.array(
            [row[field.name] for row in rows],
            type=field.type,
        )
    return pa.table(arrays, schema=_ARROW_SCHEMA)


class Ledger:
    """Collected rejoin results."""

    def __init__(self):
        self.results: list[RejoinResult] = []
        self.counts: dict[RejoinOutcome, int] = {o: 0 for o in RejoinOutcome}
        self.total_polls: int = 0

    def record(self, result: RejoinResult) -> None:
        self.results.append(result)
        self.counts[result.outcome] += 1
        self.total_polls += result.polls

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def online(self) -> int:
        return self.counts[RejoinOutcome.ONLINE]

    @property
    def rejected(self) -> int:
        return self.counts[RejoinOutcome.REJECTED]

    @property
    def timed_out(self) -> int:
        return self.counts[RejoinOutcome.TIMED_OUT]

    @property
    def success_rate(self) -> float:
        """Fraction of attempts that ended ONLINE or ALLOWED."""
        if self.total == 0:
            return 0.0
        return sum(1 for r in self.results if r.succeeded) / self.total

    def to_dataframe(self) -> pd.DataFrame:
        if not self.results:
            return pd.DataFrame(columns=[f.name for f in _ARROW_SCHEMA])
        rows = [_result_to_row(r) for r in self.results]
        return _rows_to_arrow_table(rows).to_pandas()

    def export_parquet(self, path: str) -> None:
        rows = [_result_to_row(r) for r in self.results]
        table = _rows_to_arrow_table(rows)
        pq.write_table(table, path, compression="snappy")
