"""
Tests for LocalGroup and its per-rank transports.

Exchanges are exercised directly, without the gather API on top.
"""

import time

import pytest
import torch

from src.rank_gather.errors import TransportError
from src.rank_gather.group.local import LocalGroup


class TestConstruction:

    def test_size_below_one_raises(self):
        with pytest.raises(ValueError, match="at least 1"):
            LocalGroup(0)

    def test_transports_know_their_rank(self):
        group = LocalGroup(4)

        assert [group.transport(r).rank for r in range(4)] == [0, 1, 2, 3]
        assert all(group.transport(r).size == 4 for r in range(4))

    def test_call_ids_increase(self):
        transport = LocalGroup(2).transport(0)

        assert [transport.next_call_id() for _ in range(3)] == [0, 1, 2]

    def test_call_ids_are_per_rank(self):
        group = LocalGroup(2)
        group.transport(0).next_call_id()

        assert group.transport(1).next_call_id() == 0


class TestRun:

    def test_results_are_indexed_by_rank(self):
        assert LocalGroup(3).run(lambda t: t.rank * 2) == [0, 2, 4]

    def test_first_failure_is_reraised(self):
        def body(t):
            if t.rank == 1:
                raise KeyError("boom")
            return t.rank

        with pytest.raises(KeyError, match="boom"):
            LocalGroup(3).run(body)

    def test_failure_unblocks_waiting_ranks(self):
        """Ranks blocked in an exchange fail fast once another rank fails."""
        def body(t):
            if t.rank == 0:
                raise RuntimeError("rank 0 gave up")
            t.fixed_size_exchange(torch.tensor([t.rank]), None, 0, t.next_call_id())

        start = time.monotonic()
        with pytest.raises(RuntimeError, match="gave up"):
            LocalGroup(3, timeout=30).run(body)

        assert time.monotonic() - start < 10


class TestFixedSizeExchange:

    def test_root_receives_in_rank_order(self):
        group = LocalGroup(3)
        out = torch.zeros(6, dtype=torch.int64)

        def body(t):
            local = torch.tensor([t.rank, t.rank + 10])
            t.fixed_size_exchange(local, out if t.rank == 2 else None, 2, t.next_call_id())

        group.run(body)

        assert out.tolist() == [0, 10, 1, 11, 2, 12]

    def test_dtype_mismatch_raises(self):
        group = LocalGroup(2)

        def body(t):
            if t.rank == 0:
                t.fixed_size_exchange(torch.tensor([1.0]), torch.zeros(2), 0, t.next_call_id())
            else:
                t.fixed_size_exchange(torch.tensor([1]), None, 0, t.next_call_id())

        with pytest.raises(TransportError, match="TypeMismatch") as info:
            group.run(body)

        assert info.value.operation == "fixed_size_exchange"

    def test_missing_rank_times_out(self):
        group = LocalGroup(2, timeout=0.2)

        def body(t):
            if t.rank == 0:
                t.fixed_size_exchange(torch.tensor([0]), torch.zeros(2, dtype=torch.int64), 0, t.next_call_id())

        with pytest.raises(TransportError, match="did not join") as info:
            group.run(body)

        assert info.value.status == "BrokenBarrierError"


class TestVariableSizeExchange:

    def test_payloads_land_at_offsets(self):
        group = LocalGroup(3)
        sizes = [1, 0, 3]
        offsets = [0, 1, 1]
        recv = bytearray(4)

        def body(t):
            payload = [b"a", b"", b"xyz"][t.rank]
            if t.rank == 0:
                t.variable_size_exchange(payload, recv, sizes, offsets, 0, t.next_call_id())
            else:
                t.variable_size_exchange(payload, None, None, None, 0, t.next_call_id())

        group.run(body)

        assert bytes(recv) == b"axyz"

    def test_size_mismatch_raises(self):
        group = LocalGroup(2)

        def body(t):
            if t.rank == 0:
                t.variable_size_exchange(b"", bytearray(2), [0, 2], [0, 0], 0, t.next_call_id())
            else:
                t.variable_size_exchange(b"abc", None, None, None, 0, t.next_call_id())

        with pytest.raises(TransportError, match="SizeMismatch"):
            group.run(body)
