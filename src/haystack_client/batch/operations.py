"""Batch helpers exposed as `client.batch`"""

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from loguru import logger

from ..exceptions import PartitionError
from ..haystack import get_id, normalise_id, to_ref
from ..his_write_payload import HisWritePayload
from .executor import BatchExecutor, BatchOutcome
from .options import BatchOptions, resolve_options

if TYPE_CHECKING:
    from ..client import HaystackClient

# Virtual tags maintained by the server, ignored when comparing entities
SERVER_TAGS = (
    "id",
    "mod",
    "lastHisTime",
    "lastHisVal",
    "curVal",
    "curStatus",
    "curError",
)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Options = BatchOptions | Mapping[str, Any] | None


@dataclass(frozen=True)
class EntityCriteria:
    """Conditional change applied by BatchOperations.update_by_filter

    Attributes:
        name: Name of the criteria
        condition: Decides whether a found entity is affected
        change: Writes tags into the update record (which already holds the
            entity's id), given the found entity for reference
    """

    name: str
    condition: Callable[[Mapping], bool]
    change: Callable[[dict, Mapping], None]

    def is_valid(self, entity: Mapping) -> bool:
        return bool(self.condition(entity))

    def apply_changes(self, record: dict, entity: Mapping) -> None:
        self.change(record, entity)


def _is_pair_list(value: object, sizes: tuple[int, ...]) -> bool:
    return isinstance(value, (list, tuple)) and all(
        isinstance(item, (list, tuple)) and len(item) in sizes for item in value
    )


class BatchOperations:
    """Bulk variants of the client operations

    Every helper resolves its options against the operation's profile and
    the client's configured defaults, then runs through
    HaystackClient.perform_op_in_batch. Failures are collected per
    partition in the returned BatchOutcome rather than raised.
    """

    def __init__(self, client: "HaystackClient") -> None:
        self._client = client

    def _resolve(self, operation: str, options: Options) -> BatchOptions:
        if isinstance(options, BatchOptions):
            return options
        return resolve_options(
            operation, options, self._client.options.batch_defaults(operation)
        )

    async def his_write(
        self, data: Mapping | HisWritePayload, options: Options = None
    ) -> BatchOutcome:
        """Write history in batches of (ts, point) values

        Args:
            data: {<ts>: {<point id>: <value>}} or a HisWritePayload
            options: Batch options (default batch size 10000)
        """
        if isinstance(data, HisWritePayload):
            data = data.payload
        elif not isinstance(data, Mapping):
            raise TypeError("parameter data must be a mapping")

        return await self._client.perform_op_in_batch(
            "his_write", [data], self._resolve("his_write", options)
        )

    async def his_read(
        self,
        ids: Sequence[str],
        start: str | datetime,
        end: datetime | None = None,
        options: Options = None,
    ) -> BatchOutcome:
        """Read history of many points, grouped per point

        Returns:
            BatchOutcome whose success holds one list of {ts, val} rows per
            entry of ids, in the same order
        """
        resolved = self._resolve("his_read", options)
        resolved = resolved.model_copy(update={"return_result": True})
        ids = list(ids)

        # one request per partition
        outcome = await self._client.perform_op_in_batch(
            "his_read", [ids, start, end, resolved.batch_size + 1], resolved
        )

        by_entity: list[list[dict]] = [[] for _ in ids]
        for index, grid in zip(outcome.success_partitions, outcome.success):
            base = index * resolved.batch_size
            block_len = min(resolved.batch_size, len(ids) - base)
            rows = grid.get("rows") or []
            if block_len == 1:
                by_entity[base] = list(rows)
                continue

            for row in rows:
                ts = row.get("ts")
                for col, val in row.items():
                    if col == "ts":
                        continue
                    by_entity[base + int(col[1:])].append({"ts": ts, "val": val})

        return BatchOutcome(success=by_entity, errors=outcome.errors)

    async def his_delete(
        self,
        ids: Sequence[str],
        history_range: str,
        options: Options = None,
    ) -> BatchOutcome:
        """Delete history of many points over one range, batched by point"""
        return await self._client.perform_op_in_batch(
            "his_delete",
            [list(ids), history_range],
            self._resolve("his_delete", options),
        )

    async def create(
        self, entities: Sequence[Mapping], options: Options = None
    ) -> BatchOutcome:
        if not isinstance(entities, (list, tuple)):
            raise TypeError("parameter entities is not a list")
        return await self._client.perform_op_in_batch(
            "create", [list(entities)], self._resolve("create", options)
        )

    async def update(
        self, entities: Sequence[Mapping], options: Options = None
    ) -> BatchOutcome:
        if not isinstance(entities, (list, tuple)):
            raise TypeError("parameter entities is not a list")
        return await self._client.perform_op_in_batch(
            "update", [list(entities)], self._resolve("update", options)
        )

    async def delete_by_id(
        self, ids: Sequence[str], options: Options = None
    ) -> BatchOutcome:
        return await self._client.perform_op_in_batch(
            "delete_by_id",
            [list(ids)],
            self._resolve("delete_by_id", options),
        )

    @staticmethod
    def _lookup_failed(filter: str, limit: int, e: Exception) -> BatchOutcome:
        logger.warning(f"Lookup of '{filter}' failed: {e}")
        return BatchOutcome(
            errors=[PartitionError(str(e), ["find", filter, limit], e)]
        )

    async def _find_ids(
        self, filter: str, limit: int
    ) -> tuple[list[str] | None, BatchOutcome | None]:
        try:
            ids = await self._client.find_ids(filter, limit)
        except Exception as e:
            return None, self._lookup_failed(filter, limit, e)
        return ids, None

    async def _find_rows(
        self, filter: str, limit: int
    ) -> tuple[list[dict] | None, BatchOutcome | None]:
        try:
            grid = await self._client.find(filter, limit)
        except Exception as e:
            return None, self._lookup_failed(filter, limit, e)
        return list(grid.get("rows") or []), None

    async def _find_each(self, queries: Sequence[Sequence]) -> list[list[dict]]:
        found = []
        for filter, limit in queries:
            grid = await self._client.find(filter, limit)
            found.append(list(grid.get("rows") or []))
        return found

    async def multi_find(
        self, filter_and_limits: Sequence[Sequence], options: Options = None
    ) -> BatchOutcome:
        """Find the entities matching each of many filters

        Filters are looked up in batches of batch_size filters.

        Args:
            filter_and_limits: [[<filter>, <limit>], ...]; a missing limit
                means no limit
            options: Batch options (default batch size 100)

        Returns:
            BatchOutcome whose success holds one list of rows per filter in
            input order. Filters of a failed batch get an empty list.

        Raises:
            TypeError: If filter_and_limits is not a list of pairs
        """
        if not _is_pair_list(filter_and_limits, (1, 2)):
            raise TypeError(
                "parameter filter_and_limits is not a 2D list as specified"
            )

        queries = [
            [pair[0], pair[1] if len(pair) > 1 and pair[1] is not None else 0]
            for pair in filter_and_limits
        ]
        resolved = self._resolve("multi_find", options)
        resolved = resolved.model_copy(update={"return_result": True})

        finder = BatchExecutor(lambda _name: self._find_each)
        outcome = await finder.perform_op_in_batch("find", [queries], resolved)

        rows_per_filter: list[list[dict]] = [[] for _ in queries]
        for index, found in zip(outcome.success_partitions, outcome.success):
            base = index * resolved.batch_size
            rows_per_filter[base : base + len(found)] = found
        return BatchOutcome(success=rows_per_filter, errors=outcome.errors)

    async def delete_by_filter(
        self, filter: str, limit: int = 0, options: Options = None
    ) -> BatchOutcome:
        """Delete the entities matching a filter, batched by id"""
        resolved = self._resolve("delete_by_filter", options)
        ids, failed = await self._find_ids(filter, limit)
        if failed is not None:
            return failed
        return await self._client.perform_op_in_batch(
            "delete_by_id", [ids], resolved
        )

    async def his_read_by_filter(
        self,
        filter: str,
        start: str | datetime,
        end: datetime | None = None,
        limit: int = 0,
        options: Options = None,
    ) -> BatchOutcome:
        """Read history of the points matching a filter

        Returns:
            BatchOutcome as for his_read, in the order the lookup returned
            the points
        """
        resolved = self._resolve("his_read_by_filter", options)
        ids, failed = await self._find_ids(filter, limit)
        if failed is not None:
            return failed
        return await self.his_read(ids, start, end, resolved)

    async def his_delete_by_filter(
        self,
        filter: str,
        history_range: str,
        limit: int = 0,
        options: Options = None,
    ) -> BatchOutcome:
        """Delete history over one range of the points matching a filter"""
        resolved = self._resolve("his_delete_by_filter", options)
        ids, failed = await self._find_ids(filter, limit)
        if failed is not None:
            return failed
        return await self.his_delete(ids, history_range, resolved)

    async def update_by_filter(
        self,
        filter: str,
        criteria: Sequence[EntityCriteria],
        limit: int = 0,
        options: Options = None,
    ) -> BatchOutcome:
        """Apply conditional changes to the entities matching a filter

        Each found entity gets an update record holding only its id. Every
        criteria valid for the entity writes its changes into that record.
        Records no criteria changed are not sent.

        Raises:
            TypeError: If an element of criteria is not an EntityCriteria
        """
        if not all(isinstance(c, EntityCriteria) for c in criteria):
            raise TypeError("Not class EntityCriteria")

        resolved = self._resolve("update_by_filter", options)
        entities, failed = await self._find_rows(filter, limit)
        if failed is not None:
            return failed

        records = []
        for entity in entities:
            record = {"id": entity["id"]}
            for item in criteria:
                if item.is_valid(entity):
                    item.apply_changes(record, entity)
            if len(record) > 1:
                records.append(record)

        logger.info(
            f"update_by_filter: {len(records)} of {len(entities)} entities "
            "changed"
        )
        return await self._client.perform_op_in_batch(
            "update", [records], resolved
        )

    async def add_children_by_filter(
        self,
        filter: str,
        children: Sequence[Mapping],
        ref_tags: Sequence[Sequence[str]],
        limit: int = 0,
        options: Options = None,
    ) -> BatchOutcome:
        """Create a copy of every child below each parent matching a filter

        Args:
            filter: Filter selecting the parents
            children: Entities to create below each parent
            ref_tags: [[<parent tag>, <child tag>], ...]; each parent tag
                present on the parent is copied onto the child copy
            limit: Maximum number of parents
            options: Batch options for the create (default batch size 2000)

        Copies that received no tag from their parent are not created.

        Raises:
            TypeError: If children or ref_tags are malformed
        """
        if not isinstance(children, (list, tuple)) or not all(
            isinstance(child, Mapping) for child in children
        ):
            raise TypeError("parameter children is not a list of mappings")
        if not _is_pair_list(ref_tags, (2,)):
            raise TypeError("parameter ref_tags is not a 2D list as specified")

        resolved = self._resolve("add_children_by_filter", options)
        parents, failed = await self._find_rows(filter, limit)
        if failed is not None:
            return failed

        to_create = []
        for parent in parents:
            for child in children:
                assigned = {
                    child_tag: parent[parent_tag]
                    for parent_tag, child_tag in ref_tags
                    if parent_tag in parent
                }
                if assigned:
                    to_create.append({**child, **assigned})

        logger.info(
            f"add_children_by_filter: {len(to_create)} children below "
            f"{len(parents)} parents"
        )
        return await self._client.perform_op_in_batch(
            "create", [to_create], resolved
        )

    async def migrate_history(
        self, from_id: str, to_id: str, options: Options = None
    ) -> BatchOutcome:
        """Copy the whole history of one point onto another

        The history of from_id is read from the epoch until now and written
        to to_id through his_write. If the read fails nothing is written
        and the read errors are returned.
        """
        resolved = self._resolve("migrate_history", options)
        read = await self.his_read([from_id], EPOCH, datetime.now(timezone.utc))
        if read.errors:
            return BatchOutcome(errors=read.errors)

        payload = HisWritePayload()
        rows = [row for row in read.success[0] if "val" in row]
        payload.add(to_ref(to_id), rows)
        logger.info(
            f"Migrating {payload.size} values from {from_id} to {to_id}"
        )
        return await self.his_write(payload, resolved)

    async def update_or_create(
        self, entities: Sequence[Mapping], options: Options = None
    ) -> BatchOutcome:
        """Update entities that exist and create those that do not

        Entities carrying an id are looked up first. If the lookup reports
        errors nothing is written and those errors are returned. Existing
        entities are updated only when a tag differs from the stored record.

        Returns:
            BatchOutcome whose success holds the written or unchanged
            entities
        """
        if not isinstance(entities, (list, tuple)):
            raise TypeError("parameter entities is not a list")

        resolved = self._resolve("update_or_create", options)
        outcome = BatchOutcome()
        if not entities:
            return outcome

        with_id = [normalise_id(e["id"]) for e in entities if e.get("id")]
        existing: dict[str, dict] = {}
        if with_id:
            lookup = await self._client.perform_op_in_batch(
                "read",
                [with_id],
                resolve_options(
                    "perform_op_in_batch",
                    {
                        "batch_size": resolved.batch_size,
                        "parallel": resolved.parallel,
                        "return_result": True,
                    },
                ),
            )
            if lookup.errors:
                return BatchOutcome(errors=lookup.errors)
            for grid in lookup.success:
                for row in grid.get("rows") or []:
                    if row.get("id"):
                        existing[get_id(row)] = row

        to_create: list[Mapping] = []
        to_update: list[Mapping] = []
        for entity in entities:
            stored = (
                existing.get(normalise_id(entity["id"]))
                if entity.get("id")
                else None
            )
            if stored is None:
                to_create.append(entity)
            elif self._differs(entity, stored):
                to_update.append(entity)
            else:
                outcome.success.append(entity)

        logger.info(
            f"update_or_create: {len(to_create)} to create, "
            f"{len(to_update)} to update, {len(outcome.success)} unchanged"
        )
        for operation, pending in (("create", to_create), ("update", to_update)):
            if not pending:
                continue
            written = await self._client.perform_op_in_batch(
                operation, [pending], resolved
            )
            for grid in written.success:
                outcome.success.extend(grid.get("rows") or [])
            outcome.errors.extend(written.errors)

        return outcome

    @staticmethod
    def _differs(entity: Mapping, stored: Mapping) -> bool:
        tags = (set(entity) | set(stored)).difference(SERVER_TAGS)
        return any(entity.get(tag) != stored.get(tag) for tag in tags)
