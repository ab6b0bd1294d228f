"""Unit tests for BatchExecutor"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from haystack_client.batch.executor import BatchExecutor
from haystack_client.batch.options import resolve_options
from haystack_client.exceptions import BatchPayloadError


class RecordingSleep:
    """Sleep double recording requested delays without waiting"""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeOps:
    """Operation target recording the arguments of every call"""

    def __init__(self, fail_on: set[int] | None = None) -> None:
        self.calls: list[tuple] = []
        self.fail_on = fail_on or set()

    async def write(self, chunk, *fixed):
        call_no = len(self.calls)
        self.calls.append((chunk, *fixed))
        await asyncio.sleep(0)
        if call_no in self.fail_on:
            raise RuntimeError(f"call {call_no} failed")
        return {"written": len(chunk)}

    def sync_write(self, chunk):
        self.calls.append((chunk,))
        return len(chunk)


@pytest.fixture
def ops() -> FakeOps:
    return FakeOps()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def executor(ops, sleep) -> BatchExecutor:
    return BatchExecutor(lambda name: getattr(ops, name), sleep=sleep)


@pytest.mark.unit
class TestPerformOpInBatch:
    """Tests for BatchExecutor.perform_op_in_batch()"""

    @pytest.mark.asyncio
    async def test_sequence_split_into_two_calls(self, executor, ops):
        """Test 104 units at batch size 100 dispatch 100 then 4"""
        units = [f"r:{i}" for i in range(104)]

        outcome = await executor.perform_op_in_batch(
            "write", [units, "fixed"], {"batch_size": 100}
        )

        assert [len(call[0]) for call in ops.calls] == [100, 4]
        assert all(call[1] == "fixed" for call in ops.calls)
        assert outcome.errors == []
        assert outcome.success == []

    @pytest.mark.asyncio
    async def test_return_result_in_partition_order(self, executor):
        outcome = await executor.perform_op_in_batch(
            "write",
            [list(range(7))],
            {"batch_size": 3, "parallel": 3, "return_result": True},
        )

        assert outcome.success == [
            {"written": 3},
            {"written": 3},
            {"written": 1},
        ]
        assert outcome.success_partitions == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_keyed_payload(self, executor, ops):
        data = {
            "t:1": {"r:a": "n:1", "r:b": "n:2"},
            "t:2": {"r:a": "n:3", "r:b": "n:4"},
        }

        await executor.perform_op_in_batch("write", [data], {"batch_size": 3})

        assert ops.calls[0][0] == {"t:1": data["t:1"], "t:2": {"r:a": "n:3"}}
        assert ops.calls[1][0] == {"t:2": {"r:b": "n:4"}}

    @pytest.mark.asyncio
    async def test_failed_partition_isolated(self, sleep):
        """Test a failing partition is recorded while others succeed"""
        ops = FakeOps(fail_on={1})
        executor = BatchExecutor(lambda name: getattr(ops, name), sleep=sleep)

        outcome = await executor.perform_op_in_batch(
            "write",
            [[1, 2, 3, 4, 5], "extra"],
            {"batch_size": 2, "return_result": True},
        )

        assert len(ops.calls) == 3
        assert outcome.success == [{"written": 2}, {"written": 1}]
        assert outcome.success_partitions == [0, 2]
        assert len(outcome.errors) == 1
        error = outcome.errors[0]
        assert error.error == "call 1 failed"
        assert error.op_args == ["write", [3, 4], "extra"]
        assert isinstance(error.cause, RuntimeError)
        assert outcome.to_dict()["errors"] == [
            {"error": "call 1 failed", "args": ["write", [3, 4], "extra"]}
        ]

    @pytest.mark.asyncio
    async def test_sync_operation(self, executor, ops):
        outcome = await executor.perform_op_in_batch(
            "sync_write", [[1, 2, 3]], {"batch_size": 2, "return_result": True}
        )

        assert outcome.success == [2, 1]

    @pytest.mark.asyncio
    async def test_transformer_applied_to_call_args(self, executor, ops):
        """Test the transformer rewrites each partition's argument list"""
        ids = ["r:a", "r:b"]

        await executor.perform_op_in_batch(
            "write",
            [["range1", "range2"]],
            {"batch_size": 1, "transformer": lambda args: [ids, args[0][0]]},
        )

        assert ops.calls == [(ids, "range1"), (ids, "range2")]

    @pytest.mark.asyncio
    async def test_transformer_error_recorded(self, executor, ops):
        def broken(args):
            raise ValueError("bad transform")

        outcome = await executor.perform_op_in_batch(
            "write", [[1]], {"transformer": broken}
        )

        assert ops.calls == []
        assert outcome.errors[0].error == "bad transform"

    @pytest.mark.asyncio
    async def test_empty_payload(self, executor, ops):
        outcome = await executor.perform_op_in_batch("write", [[]])

        assert ops.calls == []
        assert outcome.success == []
        assert outcome.errors == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("args", [[], "payload", None])
    async def test_args_must_hold_payload(self, executor, args):
        with pytest.raises(ValueError, match="at least the payload"):
            await executor.perform_op_in_batch("write", args)

    @pytest.mark.asyncio
    async def test_malformed_payload(self, executor):
        with pytest.raises(BatchPayloadError):
            await executor.perform_op_in_batch("write", [42])

    @pytest.mark.asyncio
    async def test_defaults_used_when_options_absent(self, ops, sleep):
        executor = BatchExecutor(
            lambda name: getattr(ops, name), defaults={"batch_size": 2}, sleep=sleep
        )

        await executor.perform_op_in_batch("write", [[1, 2, 3]])

        assert [call[0] for call in ops.calls] == [[1, 2], [3]]


@pytest.mark.unit
class TestPacing:
    @pytest.mark.asyncio
    async def test_batch_delay_between_dispatches(self, executor, sleep):
        await executor.perform_op_in_batch(
            "write", [list(range(6))], {"batch_size": 2, "batch_delay": 0.5}
        )

        assert sleep.delays == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_parallel_lanes_staggered(self, executor, ops, sleep):
        """Test lane k starts after k * parallel_delay"""
        await executor.perform_op_in_batch(
            "write",
            [list(range(6))],
            {"batch_size": 1, "parallel": 3, "parallel_delay": 0.2},
        )

        assert sorted(sleep.delays) == [0.2, 0.4]
        assert sorted(c[0][0] for c in ops.calls) == list(range(6))

    @pytest.mark.asyncio
    async def test_parallel_bounds_in_flight(self, sleep):
        """Test no more than `parallel` operations run at once"""
        in_flight = 0
        peak = 0

        async def op(chunk):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        executor = BatchExecutor(lambda name: op, sleep=sleep)
        await executor.perform_op_in_batch(
            "op", [list(range(10))], {"batch_size": 1, "parallel": 3}
        )

        assert peak == 3

    @pytest.mark.asyncio
    async def test_no_sleep_without_delays(self, executor, sleep):
        await executor.perform_op_in_batch(
            "write", [list(range(6))], {"batch_size": 1, "parallel": 2}
        )

        assert sleep.delays == []


@pytest.mark.unit
class TestProgress:
    @pytest.mark.asyncio
    async def test_progress_counts_units(self, sleep):
        """Test progress starts with the unit total and advances per partition"""
        ops = FakeOps(fail_on={0})
        executor = BatchExecutor(lambda name: getattr(ops, name), sleep=sleep)
        sink = MagicMock()

        await executor.perform_op_in_batch(
            "write", [list(range(5))], {"batch_size": 2, "progress": sink}
        )

        sink.start.assert_called_once_with(5)
        assert [c.args[0] for c in sink.advance.call_args_list] == [2, 2, 1]
        sink.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_progress_reaches_total_when_partitions_fail(self, sleep):
        ops = FakeOps(fail_on={0, 1, 2})
        executor = BatchExecutor(lambda name: getattr(ops, name), sleep=sleep)
        sink = MagicMock()

        outcome = await executor.perform_op_in_batch(
            "write", [list(range(5))], {"batch_size": 2, "progress": sink}
        )

        assert len(outcome.errors) == 3
        assert sum(c.args[0] for c in sink.advance.call_args_list) == 5

    @pytest.mark.asyncio
    async def test_progress_factory_used_without_sink(self, ops, sleep):
        sink = MagicMock()
        factory = MagicMock(return_value=sink)
        executor = BatchExecutor(
            lambda name: getattr(ops, name), progress_factory=factory, sleep=sleep
        )

        await executor.perform_op_in_batch("write", [[1, 2, 3]])

        factory.assert_called_once_with("write")
        sink.start.assert_called_once_with(3)

    @pytest.mark.asyncio
    async def test_resolved_options_passed_through(self, sleep):
        op = AsyncMock(return_value="ok")
        executor = BatchExecutor(lambda name: op, sleep=sleep)

        outcome = await executor.perform_op_in_batch(
            "op",
            [["a", "b"]],
            resolve_options("his_read", {"batch_size": 1}),
        )

        assert outcome.success == ["ok", "ok"]
