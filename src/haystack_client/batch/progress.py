"""Progress reporting for batch operations"""

from typing import Protocol, runtime_checkable

from tqdm import tqdm


@runtime_checkable
class ProgressSink(Protocol):
    """Receives the number of units completed by a batch operation"""

    def start(self, total: int) -> None:
        """Begin tracking an operation of `total` units."""
        ...

    def advance(self, units: int) -> None:
        """Record that `units` more units have completed.

        Called once per settled partition, failed ones included, so the
        total is always reached.
        """
        ...

    def close(self) -> None:
        """Finish tracking."""
        ...


class TqdmProgress:
    """ProgressSink rendering a tqdm progress bar"""

    def __init__(self, desc: str | None = None, unit: str = "unit") -> None:
        self._desc = desc
        self._unit = unit
        self._bar: tqdm | None = None

    @property
    def completed(self) -> int:
        return int(self._bar.n) if self._bar is not None else 0

    def start(self, total: int) -> None:
        self._bar = tqdm(total=total, desc=self._desc, unit=self._unit)

    def advance(self, units: int) -> None:
        if self._bar is not None:
            self._bar.update(units)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
