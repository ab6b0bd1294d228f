"""BatchExecutor - partition, dispatch and aggregate bulk operations"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from ..exceptions import PartitionError
from .options import BatchOptions, resolve_options
from .payload import Partition, resolve_payload
from .progress import ProgressSink

OpResolver = Callable[[str], Callable[..., Any]]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class BatchOutcome:
    """Aggregated result of a batch operation

    Attributes:
        success: Results of successful partitions in partition order, only
            kept when return_result is set
        errors: One PartitionError per failed partition in partition order
        success_partitions: Partition index of each entry in success
    """

    success: list = field(default_factory=list)
    errors: list[PartitionError] = field(default_factory=list)
    success_partitions: list[int] = field(default_factory=list)

    def extend(self, other: "BatchOutcome") -> None:
        self.success.extend(other.success)
        self.errors.extend(other.errors)
        self.success_partitions.extend(other.success_partitions)

    def to_dict(self) -> dict:
        return {
            "success": list(self.success),
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass
class _Settled:
    partition: Partition
    result: Any = None
    error: PartitionError | None = None


class BatchExecutor:
    """Executes one logical bulk operation as a series of partitions

    The executor knows nothing about HTTP or tokens: operations are looked
    up by name through the injected resolver and may be sync or async.
    """

    def __init__(
        self,
        resolve_op: OpResolver,
        defaults: BatchOptions | Mapping[str, Any] | None = None,
        progress_factory: Callable[[str], ProgressSink] | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize batch executor

        Args:
            resolve_op: Maps an operation name to the callable to invoke
            defaults: Default options for perform_op_in_batch calls
            progress_factory: Creates a ProgressSink per operation when the
                options do not carry one
            sleep: Awaitable delay used for pacing
        """
        self._resolve_op = resolve_op
        self._defaults = defaults
        self._progress_factory = progress_factory
        self._sleep = sleep

    async def perform_op_in_batch(
        self,
        op_name: str,
        args: Sequence[Any],
        options: BatchOptions | Mapping[str, Any] | None = None,
    ) -> BatchOutcome:
        """Perform an operation in batches, optionally in parallel

        Args:
            op_name: Name of the operation to call for each partition
            args: Payload to be batched followed by fixed arguments passed
                to every call
            options: BatchOptions, or a mapping validated against the
                perform_op_in_batch profile

        Returns:
            BatchOutcome once every partition has settled

        Raises:
            ValueError: If args does not hold at least the payload
            BatchPayloadError: If the payload cannot be partitioned
        """
        if not isinstance(args, (list, tuple)) or len(args) == 0:
            raise ValueError(
                "args parameter must be a list consisting of at least the "
                "payload to be batched"
            )

        if not isinstance(options, BatchOptions):
            options = resolve_options(
                "perform_op_in_batch", options, self._defaults
            )

        payload = resolve_payload(args[0])
        fixed_args = list(args[1:])
        outcome = BatchOutcome()
        if len(payload) == 0:
            return outcome

        op = self._resolve_op(op_name)
        partitions = list(payload.partitions(options.batch_size))
        lanes = [
            partitions[k :: options.parallel]
            for k in range(min(options.parallel, len(partitions)))
        ]
        settled: list[_Settled | None] = [None] * len(partitions)

        progress = options.progress
        if progress is None and self._progress_factory is not None:
            progress = self._progress_factory(op_name)

        logger.info(
            f"Performing {op_name} in {len(partitions)} batch(es) "
            f"across {len(lanes)} lane(s)"
        )
        if progress is not None:
            progress.start(len(payload))
        try:
            await asyncio.gather(
                *(
                    self._run_lane(
                        lane_no,
                        lane,
                        op_name,
                        op,
                        fixed_args,
                        options,
                        progress,
                        settled,
                    )
                    for lane_no, lane in enumerate(lanes)
                )
            )
        finally:
            if progress is not None:
                progress.close()

        for record in settled:
            if record is None:
                continue
            if record.error is not None:
                outcome.errors.append(record.error)
            elif options.return_result:
                outcome.success.append(record.result)
                outcome.success_partitions.append(record.partition.index)

        if outcome.errors:
            logger.warning(
                f"{op_name}: {len(outcome.errors)} of {len(partitions)} "
                "batch(es) failed"
            )
        else:
            logger.info(f"{op_name}: {len(partitions)} batch(es) completed")
        return outcome

    async def _run_lane(
        self,
        lane_no: int,
        lane: list[Partition],
        op_name: str,
        op: Callable[..., Any],
        fixed_args: list,
        options: BatchOptions,
        progress: ProgressSink | None,
        settled: list[_Settled | None],
    ) -> None:
        """Dispatch a lane's partitions in order, pacing between them"""
        if lane_no and options.parallel_delay > 0:
            await self._sleep(lane_no * options.parallel_delay)

        for position, partition in enumerate(lane):
            if position and options.batch_delay > 0:
                await self._sleep(options.batch_delay)

            settled[partition.index] = await self._dispatch(
                partition, op_name, op, fixed_args, options
            )
            if progress is not None:
                progress.advance(partition.size)

    async def _dispatch(
        self,
        partition: Partition,
        op_name: str,
        op: Callable[..., Any],
        fixed_args: list,
        options: BatchOptions,
    ) -> _Settled:
        call_args = [partition.chunk, *fixed_args]
        try:
            if options.transformer is not None:
                call_args = list(options.transformer(call_args))
            result = op(*call_args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning(
                f"{op_name} batch {partition.index} failed: {e}"
            )
            return _Settled(
                partition,
                error=PartitionError(str(e), [op_name, *call_args], e),
            )
        return _Settled(partition, result=result)
