"""GTID set algebra.

A GTID set is the collection of transactions a server has executed (or
purged), grouped by source server UUID. Each source maps to a sorted list of
closed, non-overlapping, non-adjacent intervals of transaction numbers.

Key types:
- GTIDSet: Immutable GTID set with difference/union/intersection/subset
- GTIDParseError: Raised for malformed textual GTID sets

Textual form is the one servers report in @@gtid_executed:

    3e11fa47-71ca-11e1-9e33-c80aa9429562:1-5:11-18,
    3e11fa47-71ca-11e1-9e33-c80aa9429563:1

All operations return new sets. Nothing here performs I/O.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Mapping, Tuple

Interval = Tuple[int, int]
Intervals = Tuple[Interval, ...]


class GTIDParseError(ValueError):
    """Raised when a textual GTID set cannot be parsed."""
    pass


# ---------------------------------------------------------------------------
# Interval helpers
# ---------------------------------------------------------------------------

def _normalize(intervals: Iterable[Interval]) -> Intervals:
    """Sort and merge overlapping or adjacent closed intervals."""
    ordered = sorted(intervals)
    merged: list[list[int]] = []
    for start, end in ordered:
        if start < 1 or end < start:
            raise ValueError(f"Invalid GTID interval {start}-{end}")
        if merged and start <= merged[-1][1] + 1:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])
    return tuple((s, e) for s, e in merged)


def _subtract(left: Intervals, right: Intervals) -> Intervals:
    """Intervals in left not covered by right. Both must be normalized."""
    result = []
    j = 0
    for start, end in left:
        cur = start
        while j < len(right) and right[j][1] < cur:
            j += 1
        k = j
        while k < len(right) and right[k][0] <= end:
            r_start, r_end = right[k]
            if r_start > cur:
                result.append((cur, r_start - 1))
            cur = max(cur, r_end + 1)
            if cur > end:
                break
            k += 1
        if cur <= end:
            result.append((cur, end))
    return tuple(result)


def _intersect(left: Intervals, right: Intervals) -> Intervals:
    """Intervals covered by both left and right. Both must be normalized."""
    result = []
    i = j = 0
    while i < len(left) and j < len(right):
        start = max(left[i][0], right[j][0])
        end = min(left[i][1], right[j][1])
        if start <= end:
            result.append((start, end))
        if left[i][1] < right[j][1]:
            i += 1
        else:
            j += 1
    return tuple(result)


def _format_interval(interval: Interval) -> str:
    start, end = interval
    return str(start) if start == end else f"{start}-{end}"


def _canonical_uuid(text: str) -> str:
    try:
        return str(uuid.UUID(text.strip()))
    except ValueError:
        raise GTIDParseError(f"Invalid source UUID in GTID set: {text!r}") from None


# ---------------------------------------------------------------------------
# GTIDSet
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GTIDSet:
    """Immutable set of global transaction identifiers.

    Attributes:
        sources: Tuple of (source_uuid, intervals) sorted by UUID. Intervals
            are normalized on construction; sources with no intervals are
            dropped.
    """
    sources: Tuple[Tuple[str, Intervals], ...] = ()

    def __post_init__(self):
        normalized: Dict[str, list[Interval]] = {}
        for source, intervals in self.sources:
            normalized.setdefault(_canonical_uuid(source), []).extend(intervals)
        frozen = tuple(
            (source, _normalize(intervals))
            for source, intervals in sorted(normalized.items())
            if intervals
        )
        object.__setattr__(self, "sources", frozen)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def empty(cls) -> GTIDSet:
        return cls()

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Iterable[Interval]]) -> GTIDSet:
        """Build from {source_uuid: [(start, end), ...]}."""
        return cls(tuple((src, tuple(ivs)) for src, ivs in mapping.items()))

    @classmethod
    def parse(cls, text: str | None) -> GTIDSet:
        """Parse the textual form reported by the server.

        Whitespace and newlines between entries are ignored. An empty or
        None input yields the empty set.
        """
        if text is None or not text.strip():
            return cls()

        sources: list[Tuple[str, Intervals]] = []
        for raw_entry in text.split(","):
            entry = "".join(raw_entry.split())
            if not entry:
                continue
            parts = entry.split(":")
            if len(parts) < 2:
                raise GTIDParseError(f"GTID entry without intervals: {entry!r}")
            source = _canonical_uuid(parts[0])
            intervals = []
            for part in parts[1:]:
                intervals.append(cls._parse_interval(part, entry))
            sources.append((source, tuple(intervals)))
        try:
            return cls(tuple(sources))
        except ValueError as e:
            if isinstance(e, GTIDParseError):
                raise
            raise GTIDParseError(str(e)) from None

    @staticmethod
    def _parse_interval(part: str, entry: str) -> Interval:
        bounds = part.split("-")
        try:
            if len(bounds) == 1:
                n = int(bounds[0])
                return (n, n)
            if len(bounds) == 2:
                return (int(bounds[0]), int(bounds[1]))
        except ValueError:
            pass
        raise GTIDParseError(f"Invalid interval {part!r} in GTID entry {entry!r}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_empty(self) -> bool:
        return not self.sources

    def __bool__(self) -> bool:
        return not self.is_empty

    def __contains__(self, gtid: Tuple[str, int]) -> bool:
        source, number = gtid
        intervals = self._intervals_for(_canonical_uuid(source))
        return any(start <= number <= end for start, end in intervals)

    def __str__(self) -> str:
        return ",\n".join(
            source + ":" + ":".join(_format_interval(iv) for iv in intervals)
            for source, intervals in self.sources
        )

    @property
    def transaction_count(self) -> int:
        """Number of individual transactions in the set."""
        return sum(
            end - start + 1
            for _, intervals in self.sources
            for start, end in intervals
        )

    def source_uuids(self) -> Tuple[str, ...]:
        return tuple(source for source, _ in self.sources)

    def entries(self) -> Tuple[str, ...]:
        """One 'uuid:interval' string per interval, in set order."""
        return tuple(self._iter_entries())

    def _iter_entries(self) -> Iterator[str]:
        for source, intervals in self.sources:
            for interval in intervals:
                yield f"{source}:{_format_interval(interval)}"

    def _intervals_for(self, source: str) -> Intervals:
        for candidate, intervals in self.sources:
            if candidate == source:
                return intervals
        return ()

    def _as_dict(self) -> Dict[str, Intervals]:
        return dict(self.sources)

    # ------------------------------------------------------------------
    # Set algebra
    # ------------------------------------------------------------------

    def union(self, other: GTIDSet) -> GTIDSet:
        merged: Dict[str, list[Interval]] = {}
        for source, intervals in self.sources + other.sources:
            merged.setdefault(source, []).extend(intervals)
        return GTIDSet.from_mapping(merged)

    def difference(self, other: GTIDSet) -> GTIDSet:
        theirs = other._as_dict()
        return GTIDSet(tuple(
            (source, _subtract(intervals, theirs.get(source, ())))
            for source, intervals in self.sources
        ))

    def intersection(self, other: GTIDSet) -> GTIDSet:
        theirs = other._as_dict()
        return GTIDSet(tuple(
            (source, _intersect(intervals, theirs[source]))
            for source, intervals in self.sources
            if source in theirs
        ))

    def issubset(self, other: GTIDSet) -> bool:
        return self.difference(other).is_empty

    def issuperset(self, other: GTIDSet) -> bool:
        return other.issubset(self)

    __or__ = union
    __sub__ = difference
    __and__ = intersection
    __le__ = issubset
    __ge__ = issuperset


def union_all(sets: Iterable[GTIDSet]) -> GTIDSet:
    """Union of any number of GTID sets (empty set for no input)."""
    result = GTIDSet()
    for gtid_set in sets:
        result = result.union(gtid_set)
    return result


def intersection_all(sets: Iterable[GTIDSet]) -> GTIDSet:
    """Intersection of any number of GTID sets (empty set for no input)."""
    result = None
    for gtid_set in sets:
        result = gtid_set if result is None else result.intersection(gtid_set)
    return result if result is not None else GTIDSet()
