"""Batch payload variants and partitioning"""

from collections.abc import Hashable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from ..exceptions import BatchPayloadError


@dataclass(frozen=True)
class Partition:
    """One bounded slice of a payload dispatched as a single call"""

    index: int
    chunk: Any
    size: int


@dataclass(frozen=True)
class SequencePayload:
    """Ordered sequence of opaque units, sliced contiguously"""

    units: Sequence[Any]

    def __len__(self) -> int:
        return len(self.units)

    def partitions(self, batch_size: int) -> Iterator[Partition]:
        for index, offset in enumerate(range(0, len(self.units), batch_size)):
            chunk = list(self.units[offset : offset + batch_size])
            yield Partition(index, chunk, len(chunk))


@dataclass(frozen=True)
class KeyedPayload:
    """Outer key -> inner mapping of units (e.g. timestamp -> {id: value})

    Units are the inner key/value pairs. An inner mapping that does not fit
    in the current partition is split, so a partition may hold the tail of
    one outer key and the head of the next.
    """

    entries: Mapping[Hashable, Mapping[Hashable, Any]]

    def __len__(self) -> int:
        return sum(len(inner) for inner in self.entries.values())

    def partitions(self, batch_size: int) -> Iterator[Partition]:
        index = 0
        current: dict[Hashable, dict] = {}
        count = 0

        for key, inner in self.entries.items():
            items = list(inner.items())
            if not items:
                current.setdefault(key, {})
                continue

            pos = 0
            while pos < len(items):
                take = items[pos : pos + batch_size - count]
                current.setdefault(key, {}).update(take)
                count += len(take)
                pos += len(take)

                if count == batch_size:
                    yield Partition(index, current, count)
                    index += 1
                    current = {}
                    count = 0

        # trailing empty inner mappings alone do not make a partition
        if count:
            yield Partition(index, current, count)


BatchPayload = SequencePayload | KeyedPayload


def resolve_payload(payload: Any) -> BatchPayload:
    """Resolve a raw payload into its variant once, before partitioning

    Raises:
        BatchPayloadError: If payload is neither a list/tuple nor a mapping
            of mappings
    """
    if isinstance(payload, (list, tuple)):
        return SequencePayload(payload)

    if isinstance(payload, Mapping):
        for inner in payload.values():
            if not isinstance(inner, Mapping):
                raise BatchPayloadError(
                    "Object payload structure for batch operation is malformed"
                )
        return KeyedPayload(payload)

    raise BatchPayloadError(
        "First element of parameter should be of type list or mapping"
    )
