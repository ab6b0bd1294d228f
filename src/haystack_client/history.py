"""Merging of history reads performed against disjoint sets of points

A large hisRead is split into blocks of point IDs. Each block comes back as
its own grid with columns v0..vK local to that block. The routines here
re-key those columns onto one global column numbering and align rows by
timestamp, so the blocks can be folded together in any order.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .exceptions import HisMergeError
from .haystack import epoch_ms, parse_datetime


@dataclass
class MergeAccumulator:
    """State carried across merges of one multi-block read"""

    his_start: int | None = None
    his_end: int | None = None
    col_id: dict[str, int] = field(default_factory=dict)
    rows_by_ts: dict[int, dict] = field(default_factory=dict)

    def register(self, ids: Iterable[str]) -> list[int]:
        """Assign global column indices to IDs not seen before

        Returns:
            The column index of each given ID
        """
        columns = []
        for point_id in ids:
            if point_id not in self.col_id:
                self.col_id[point_id] = len(self.col_id)
            columns.append(self.col_id[point_id])
        return columns


def new_result_grid(accumulator: MergeAccumulator) -> dict:
    """Create the output grid with one value column per registered ID"""
    cols = [{"name": "ts"}]
    for point_id, column in sorted(
        accumulator.col_id.items(), key=lambda item: item[1]
    ):
        cols.append({"name": f"v{column}", "id": point_id})
    return {
        "meta": {"ver": "2.0", "hisStart": None, "hisEnd": None},
        "cols": cols,
        "rows": [],
    }


def merge_into(
    accumulator: MergeAccumulator,
    result_grid: dict,
    partial: dict,
    block_ids: Sequence[str],
) -> None:
    """Fold one partial hisRead grid into the accumulator and result grid

    Args:
        accumulator: State shared by every block of the read
        result_grid: Output grid; its meta is updated in place
        partial: Grid returned for one block of points
        block_ids: block_ids[c] is the point behind column v<c> of partial,
            or behind its "val" column when the block holds one point

    Raises:
        HisMergeError: If a row has no date/time ts, or a block ID was
            never registered with the accumulator
    """
    meta = partial.get("meta") or {}
    result_meta = result_grid.setdefault("meta", {})

    start = parse_datetime(meta.get("hisStart"))
    if start is not None:
        start_ms = epoch_ms(start)
        if accumulator.his_start is None or accumulator.his_start > start_ms:
            accumulator.his_start = start_ms
            result_meta["hisStart"] = meta["hisStart"]

    end = parse_datetime(meta.get("hisEnd"))
    if end is not None:
        end_ms = epoch_ms(end)
        if accumulator.his_end is None or accumulator.his_end < end_ms:
            accumulator.his_end = end_ms
            result_meta["hisEnd"] = meta["hisEnd"]

    for name, value in meta.items():
        if name not in result_meta:
            result_meta[name] = value

    columns = []
    for point_id in block_ids:
        if point_id not in accumulator.col_id:
            raise HisMergeError(f"Unexpected ID {point_id}")
        columns.append(accumulator.col_id[point_id])

    for in_row in partial.get("rows") or []:
        raw_ts = in_row.get("ts")
        ts = parse_datetime(raw_ts)
        if ts is None:
            got = "undefined" if "ts" not in in_row else raw_ts
            raise HisMergeError(
                f"Expected date/time for ts column, got: {got}"
            )

        key = epoch_ms(ts)
        out_row = accumulator.rows_by_ts.get(key)
        if out_row is None:
            out_row = {"ts": raw_ts}
            accumulator.rows_by_ts[key] = out_row

        for local, column in enumerate(columns):
            # a single point read answers with a "val" column
            if len(columns) == 1 and "val" in in_row:
                value = in_row["val"]
            else:
                value = in_row.get(f"v{local}")
            if value is None:
                continue
            out_row.setdefault(f"v{column}", value)


def collect_rows(accumulator: MergeAccumulator) -> list[dict]:
    """Return the merged rows in timestamp order"""
    return [
        accumulator.rows_by_ts[key] for key in sorted(accumulator.rows_by_ts)
    ]
