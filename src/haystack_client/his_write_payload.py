"""HisWritePayload - builder for time-keyed hisWrite payloads"""

from collections.abc import Iterable, Mapping


class HisWritePayload:
    """Accumulates hisWrite records as {ts: {point id: value}}

    The resulting payload is the keyed form accepted by
    HaystackClient.his_write and by the batch hisWrite helper.
    """

    def __init__(self, payload: dict | None = None) -> None:
        self._payload: dict[str, dict[str, object]] = payload or {}
        self._rows = self.calculate_size(self._payload)

    @staticmethod
    def calculate_size(data: Mapping[str, Mapping]) -> int:
        """Count the (ts, point) values in a keyed payload"""
        return sum(len(entries) for entries in data.values())

    @property
    def payload(self) -> dict[str, dict[str, object]]:
        return self._payload

    @property
    def size(self) -> int:
        """Get the number of values added to the payload"""
        return self._rows

    def add(self, point_id: str, data: Iterable[Mapping]) -> None:
        """Add time series values for one point

        Numeric values with a unit ("n:12 kW") have the unit stripped.

        Args:
            point_id: Point id with the Haystack reference prefix ("r:...")
            data: Rows of {"ts": <t:...>, "val": <prefixed value or bool>}

        Raises:
            TypeError: If point_id is not a string
            ValueError: If point_id is not a reference or a row is malformed
        """
        if not isinstance(point_id, str):
            raise TypeError("Id must be a string")
        if not point_id.startswith("r:"):
            raise ValueError(
                "Id must have Haystack reference type prefix applied"
            )

        for i, row in enumerate(data):
            if "ts" not in row:
                raise ValueError("Row in data missing 'ts' property")
            if "val" not in row:
                raise ValueError("Row in data missing 'val' property")

            val = row["val"]
            if not isinstance(val, (str, bool)):
                raise ValueError(f"'val' in row {i} missing Haystack prefix")
            if isinstance(val, str) and val.startswith("n:") and " " in val:
                val = val.split(" ", 1)[0]

            self._payload.setdefault(row["ts"], {})[point_id] = val
            self._rows += 1

    def reset(self) -> None:
        self._payload = {}
        self._rows = 0
