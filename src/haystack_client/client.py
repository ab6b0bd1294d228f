"""HaystackClient - facade over token, request and batch components"""

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from loguru import logger

from .auth import TokenManager
from .batch.executor import BatchExecutor, BatchOutcome
from .batch.operations import BatchOperations
from .batch.options import BatchOptions, resolve_options
from .batch.progress import ProgressSink, TqdmProgress
from .config import ClientConfig, ClientOptions
from .haystack import format_range, get_id, ref_zinc, to_ref
from .history import MergeAccumulator, collect_rows, merge_into, new_result_grid
from .requests import RequestSession
from .transport import HttpxTransport, Transport

# Special columns, placed first in this order
SPECIAL_COLS = ("id", "name", "dis")

HIS_DELETE_KEYWORDS = ("last", "first", "today", "yesterday")

HIS_READ_PARALLEL = 4


def _is_iso8601(value: str) -> bool:
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        datetime.fromisoformat(value)
    except ValueError:
        return False
    return True


class HaystackClient:
    """Client for a Haystack API server

    A facade delegating to TokenManager (credentials), RequestSession
    (authenticated requests) and BatchExecutor (bulk operations). Batch
    helpers are available under `client.batch`.
    """

    def __init__(
        self,
        base_uri: str,
        username: str,
        password: str,
        client_id: str,
        client_secret: str,
        access_token: dict | None = None,
        options: ClientOptions | Mapping[str, Any] | None = None,
        transport: Transport | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize client

        Args:
            base_uri: URI of the API server (excluding /api)
            username: User to authenticate as
            password: Password of the user
            client_id: OAuth2 client ID
            client_secret: OAuth2 client secret
            access_token: Previously issued token response to reuse
            options: ClientOptions or a mapping of them
            transport: Transport to use instead of HttpxTransport
            timeout: Request timeout in seconds for the default transport

        Raises:
            ValueError: If credentials are missing or access_token invalid
            pydantic.ValidationError: If options are invalid
        """
        if options is None:
            options = ClientOptions()
        elif not isinstance(options, ClientOptions):
            options = ClientOptions.model_validate(options)

        self.base_uri = base_uri
        self._options = options
        self._transport = transport or HttpxTransport(base_uri, timeout)
        self._token_manager = TokenManager(
            self._transport,
            username,
            password,
            client_id,
            client_secret,
            access_token=access_token,
        )
        self._session = RequestSession(
            self._transport,
            self._token_manager,
            accept_gzip=options.accept_gzip,
            impersonate_as=options.impersonate_as,
        )
        self._executor = BatchExecutor(
            self._resolve_op,
            defaults=options.perform_op_in_batch,
            progress_factory=(
                self._create_progress if options.progress_enabled else None
            ),
        )
        self.batch = BatchOperations(self)

    @classmethod
    def from_config(
        cls, config: ClientConfig, transport: Transport | None = None
    ) -> "HaystackClient":
        """Create a client from a ClientConfig"""
        return cls(
            config.server_url,
            config.username,
            config.password,
            config.client_id,
            config.client_secret,
            access_token=config.access_token,
            options=config.options,
            transport=transport,
            timeout=config.timeout,
        )

    @classmethod
    def from_env(cls) -> "HaystackClient":
        """Create a client from HAYSTACK_* environment variables"""
        return cls.from_config(ClientConfig.from_env())

    async def __aenter__(self) -> "HaystackClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def options(self) -> ClientOptions:
        return self._options

    @property
    def token_manager(self) -> TokenManager:
        return self._token_manager

    @property
    def session(self) -> RequestSession:
        return self._session

    @property
    def executor(self) -> BatchExecutor:
        return self._executor

    async def aclose(self) -> None:
        """Close the underlying transport"""
        await self._transport.aclose()

    async def login(self) -> str:
        """Log in if not already done, returning the access token"""
        return await self._token_manager.get_valid_token()

    def logout(self) -> None:
        self._token_manager.reset()

    def impersonate_as(self, user_id: str) -> None:
        self._session.impersonate_as(user_id)

    def is_impersonating(self) -> bool:
        return self._session.is_impersonating()

    def unset_impersonate(self) -> None:
        self._session.unset_impersonate()

    def set_accept_gzip(self, accept_gzip: bool) -> None:
        self._session.set_accept_gzip(accept_gzip)

    def is_accepting_gzip(self) -> bool:
        return self._session.is_accepting_gzip()

    async def submit_request(
        self,
        method: str,
        uri: str,
        body: Any = None,
        config: dict | None = None,
    ) -> Any:
        """Submit an authenticated request (see RequestSession)"""
        return await self._session.submit_request(method, uri, body, config)

    async def perform_op_in_batch(
        self,
        op_name: str,
        args: Sequence[Any],
        options: BatchOptions | Mapping[str, Any] | None = None,
    ) -> BatchOutcome:
        """Perform a client operation in batches, optionally in parallel

        Args:
            op_name: Client method to call per batch (e.g. "create"); dotted
                names reach into attributes (e.g. "batch.his_read")
            args: Payload to be batched followed by fixed arguments
            options: Batch options (see BatchOptions)

        Returns:
            BatchOutcome of the operation
        """
        return await self._executor.perform_op_in_batch(op_name, args, options)

    def _resolve_op(self, op_name: str) -> Any:
        target: Any = self
        for part in op_name.split("."):
            if part.startswith("_"):
                raise ValueError(f"Operation {op_name} is not public")
            target = getattr(target, part)
        if not callable(target):
            raise TypeError(f"Operation {op_name} is not callable")
        return target

    def _create_progress(self, op_name: str) -> ProgressSink:
        return TqdmProgress(desc=op_name)

    async def _op_by_ids(self, ids: str | Sequence[str], uri: str) -> Any:
        """Perform the operation at uri on one or more entity ids

        Raises:
            ValueError: If ids is empty or holds an invalid reference
            TypeError: If ids is neither an id nor a sequence of ids
        """
        if isinstance(ids, str) or (
            isinstance(ids, (list, tuple)) and len(ids) == 1
        ):
            single = ids if isinstance(ids, str) else ids[0]
            return await self.submit_request(
                "GET", uri, None, {"params": {"id": ref_zinc(single)}}
            )

        if not isinstance(ids, (list, tuple)):
            raise TypeError(
                "Parameter 'ids' is neither a single id or a list of ids."
            )
        if not ids:
            raise ValueError("An empty list of ids was given.")

        for point_id in ids:
            if not isinstance(point_id, (str, dict)):
                raise TypeError(
                    "Parameter 'ids' contains an element that is not a "
                    f"string. Found {type(point_id).__name__}."
                )

        return await self.submit_request(
            "POST",
            uri,
            {
                "meta": {"ver": "2.0"},
                "cols": [{"name": "id"}],
                "rows": [{"id": to_ref(point_id)} for point_id in ids],
            },
        )

    async def _by_filter(self, op: str, filter: str, limit: int) -> Any:
        if limit < 0:
            raise ValueError("Invalid negative limit given.")
        if not isinstance(filter, str):
            raise TypeError(
                f"Invalid filter type {type(filter).__name__} given. "
                "Expected string."
            )
        return await self.submit_request(
            "GET",
            f"/api/{op}",
            None,
            {"params": {"filter": filter, "limit": limit}},
        )

    async def read(self, ids: str | Sequence[str]) -> Any:
        """Read one or more entities by id, returning the raw grid"""
        return await self._op_by_ids(ids, "/api/read")

    async def find(self, filter: str, limit: int = 0) -> Any:
        """Read entities matching a filter, returning the raw grid"""
        return await self._by_filter("read", filter, limit)

    async def find_ids(self, filter: str, limit: int = 0) -> list[str]:
        """Return the ids of the entities matching a filter"""
        grid = await self.find(filter, limit)
        return [get_id(row) for row in grid.get("rows", [])]

    async def query(self, graphql: str) -> Any:
        """Submit a GraphQL query, returning the GraphQL response"""
        return await self.submit_request("POST", "/graphql", {"query": graphql})

    async def reload_cache(self) -> Any:
        return await self.submit_request("GET", "/api/reloadAuthCache")

    async def _create_or_update(
        self, op: str, entities: Mapping | Sequence[Mapping]
    ) -> Any:
        if isinstance(entities, Mapping):
            entities = [entities]

        present: set[str] = set()
        ver = "2.0"
        for entity in entities:
            for col, value in entity.items():
                present.add(col)
                if isinstance(value, list):
                    ver = "3.0"

        if "id" not in present and op == "updateRec":
            raise ValueError("id is missing")

        cols = [c for c in SPECIAL_COLS if c in present]
        cols += sorted(present.difference(SPECIAL_COLS))

        return await self.submit_request(
            "POST",
            f"/api/{op}",
            {
                "meta": {"ver": ver},
                "cols": [{"name": c} for c in cols],
                "rows": list(entities),
            },
        )

    async def create(self, entities: Mapping | Sequence[Mapping]) -> Any:
        """Create one or more entities, returning the raw grid"""
        return await self._create_or_update("createRec", entities)

    async def update(self, entities: Mapping | Sequence[Mapping]) -> Any:
        """Update one or more entities, returning the raw grid"""
        return await self._create_or_update("updateRec", entities)

    async def update_or_create(
        self, entities: Mapping | Sequence[Mapping]
    ) -> BatchOutcome:
        """Update the entities that exist and create the rest

        See BatchOperations.update_or_create.
        """
        if isinstance(entities, Mapping):
            entities = [entities]
        return await self.batch.update_or_create(list(entities))

    async def delete_by_id(self, ids: str | Sequence[str]) -> Any:
        return await self._op_by_ids(ids, "/api/deleteRec")

    async def delete_by_filter(self, filter: str, limit: int = 0) -> Any:
        return await self._by_filter("deleteRec", filter, limit)

    async def update_password(self, new_password: str) -> Any:
        """Change the password of the session user"""
        if not new_password:
            raise ValueError("New password cannot be empty.")
        return await self.submit_request(
            "POST", "/user/updatePassword", {"newPassword": new_password}
        )

    async def his_read(
        self,
        ids: str | Sequence[str],
        start: str | datetime,
        end: datetime | None = None,
        batch_size: int = 50,
        parallel: int = HIS_READ_PARALLEL,
    ) -> dict:
        """Perform a history read

        Reads of fewer than batch_size points go out as one request. Larger
        reads are split into blocks of batch_size points and merged into
        one grid with columns ts, v0..vN in the order of ids.

        Args:
            ids: Point id or ids to read
            start: Range keyword/string (e.g. "today") or start datetime
            end: End datetime; start must then be a datetime too
            batch_size: Maximum points per request
            parallel: Number of blocks read concurrently

        Returns:
            The hisRead grid

        Raises:
            TypeError: If end is given but a bound is not a datetime
            HisMergeError: If a block response is inconsistent
            Exception: The error of the first failed block
        """
        history_range = format_range(start, end)
        if isinstance(ids, (str, dict)):
            ids = [ids]
        refs = [to_ref(point_id) for point_id in ids]

        if len(refs) < batch_size:
            return await self._his_read(refs, history_range)

        accumulator = MergeAccumulator()
        accumulator.register(refs)
        result = new_result_grid(accumulator)

        async def read_block(block: list[str], history_range: str) -> None:
            # folded in as soon as the block arrives
            block_res = await self._his_read(block, history_range)
            merge_into(accumulator, result, block_res, block)

        reader = BatchExecutor(lambda _name: read_block)
        outcome = await reader.perform_op_in_batch(
            "his_read",
            [refs, history_range],
            resolve_options(
                "perform_op_in_batch",
                {"batch_size": batch_size, "parallel": parallel},
            ),
        )
        if outcome.errors:
            failure = outcome.errors[0]
            raise failure.cause if failure.cause is not None else failure

        result["rows"] = collect_rows(accumulator)
        return result

    async def _his_read(self, refs: Sequence[str], history_range: str) -> Any:
        params: dict[str, str] = {"range": history_range}
        if len(refs) == 1:
            params["id"] = ref_zinc(refs[0])
        else:
            for idx, ref in enumerate(refs):
                params[f"id{idx}"] = ref_zinc(ref)

        return await self.submit_request(
            "GET", "/api/hisRead", None, {"params": params}
        )

    async def his_write(self, records: Mapping[str, Mapping[str, Any]]) -> Any:
        """Perform a history write

        Args:
            records: {<ts>: {<point id>: <value>, ...}, ...} with every
                value in Haystack JSON form

        Returns:
            The raw response grid
        """
        col_of: dict[str, str] = {}
        out_cols: list[dict] = [{"name": "ts"}]
        rows = []

        for ts, record in records.items():
            row = {"ts": ts}
            for point_id in sorted(record):
                col = col_of.get(point_id)
                if col is None:
                    col = f"v{len(out_cols) - 1}"
                    out_cols.append({"name": col, "id": point_id})
                    col_of[point_id] = col
                row[col] = record[point_id]
            rows.append(row)

        rows.sort(key=lambda r: r["ts"])

        return await self.submit_request(
            "POST",
            "/api/hisWrite",
            {"meta": {"ver": "2.0"}, "cols": out_cols, "rows": rows},
        )

    async def his_delete(
        self, ids: str | Sequence[str], history_range: str
    ) -> Any:
        """Delete history of one or more points within a range

        Args:
            ids: Point id or ids
            history_range: "s:" prefixed range, a keyword (today, yesterday,
                first, last) or one or two comma separated ISO 8601
                timestamps

        Raises:
            ValueError: If no ids are given or the range is invalid
        """
        if isinstance(ids, str):
            ids = [ids]
        if not ids:
            raise ValueError("`ids` must contain at least one point UUID.")

        range_err = "An invalid hisRead range input was given: "
        if not history_range.startswith("s:"):
            raise ValueError(range_err + "Missing `s:`.")

        range_val = history_range[2:]
        if range_val == "":
            raise ValueError(range_err + "No range was given.")

        if range_val not in HIS_DELETE_KEYWORDS:
            bounds = range_val.split(",")
            if len(bounds) > 2:
                raise ValueError(
                    range_err + "Number of timestamps cannot exceed 2."
                )
            for bound in bounds:
                # drop a trailing timezone name ("... UTC")
                if not _is_iso8601(bound.strip().split(" ", 1)[0]):
                    raise ValueError(range_err + "Invalid ISO8601 timestamp.")

        refs = [to_ref(point_id) for point_id in ids]
        payload: dict[str, Any] = {
            "meta": {"ver": "2.0"},
            "cols": [{"name": "range"}],
            "rows": [{"range": history_range}],
        }
        if len(refs) == 1:
            payload["rows"][0]["id"] = refs[0]
            payload["cols"].append({"name": "id"})
        else:
            for idx, ref in enumerate(refs):
                payload["rows"][0][f"id{idx}"] = ref
                payload["cols"].append({"name": f"id{idx}"})

        logger.debug(f"Deleting history of {len(refs)} point(s)")
        return await self.submit_request("POST", "/api/hisDelete", payload, {})
