"""
LocalGroup: An in-process process group, one thread per rank.

Useful for single-host pipelines and for exercising collectives without a
distributed launcher. Contributions are posted to a shared mailbox keyed by
(call id, rank); a cyclic barrier makes every exchange a true collective, so
a rank that never shows up is reported as a TransportError once the barrier
times out rather than hanging the group.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import torch

from ..errors import TransportError
from .communication import GroupTransport

logger = logging.getLogger(__name__)


class LocalGroup:
    """
    A group of `size` ranks living in the current process.

    Examples::

        group = LocalGroup(3)
        results = group.run(lambda transport: gather(transport, transport.rank * 10, root=1))
        # results == [None, [0, 10, 20], None]
    """

    def __init__(self, size: int, timeout: Optional[float] = 30.0):
        """
        Args:
            size: Number of ranks, at least 1
            timeout: Seconds a rank waits for the others at an exchange.
                     None waits forever.

        Raises:
            ValueError: If size is below 1
        """
        if size < 1:
            raise ValueError(f"Group size must be at least 1, got {size}")
        self.size = size
        self.timeout = timeout
        self._barrier = threading.Barrier(size, timeout=timeout)
        self._lock = threading.Lock()
        self._mailbox: Dict[Tuple[int, int], Any] = {}
        self._transports = [LocalTransport(self, rank) for rank in range(size)]

    def transport(self, rank: int) -> "LocalTransport":
        """Transport used by the given rank."""
        return self._transports[rank]

    def abort(self) -> None:
        """Break the group; every pending and future exchange fails."""
        self._barrier.abort()

    def run(self, fn: Callable[["LocalTransport"], Any]) -> List[Any]:
        """
        Execute fn(transport) on every rank concurrently.

        Args:
            fn: Callable run once per rank with that rank's transport

        Returns:
            The return values of fn, indexed by rank

        Raises:
            Exception: The first failure raised by any rank. The group is
                       aborted so the remaining ranks fail fast.
        """
        results: List[Any] = [None] * self.size
        failures: List[BaseException] = []

        def worker(rank: int) -> None:
            try:
                results[rank] = fn(self.transport(rank))
            except BaseException as e:
                logger.debug("Rank %d failed with %s, aborting group", rank, type(e).__name__)
                with self._lock:
                    failures.append(e)
                self.abort()

        threads = [
            threading.Thread(target=worker, args=(rank,), name=f"rank-{rank}")
            for rank in range(self.size)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        if failures:
            raise failures[0]
        return results

    # -------------------------------------------------------------------------
    # Mailbox
    # -------------------------------------------------------------------------

    def _post(self, key: Tuple[int, int], item: Any) -> None:
        with self._lock:
            self._mailbox[key] = item

    def _take(self, key: Tuple[int, int]) -> Any:
        with self._lock:
            return self._mailbox.pop(key)

    def _wait(self, operation: str) -> None:
        try:
            self._barrier.wait()
        except threading.BrokenBarrierError as e:
            raise TransportError(
                operation,
                type(e).__name__,
                "group aborted or a rank did not join the exchange in time",
            ) from e


class LocalTransport(GroupTransport):
    """Per-rank view of a LocalGroup."""

    def __init__(self, group: LocalGroup, rank: int):
        super().__init__()
        self._group = group
        self._rank = rank

    @property
    def rank(self) -> int:
        return self._rank

    @property
    def size(self) -> int:
        return self._group.size

    def fixed_size_exchange(
        self,
        local: torch.Tensor,
        out: Optional[torch.Tensor],
        root: int,
        call_id: int,
    ) -> None:
        self._group._post((call_id, self._rank), local.detach().clone())
        self._group._wait("fixed_size_exchange")
        if out is None:
            return

        n = local.numel()
        for src in range(self.size):
            chunk = self._group._take((call_id, src))
            if chunk.dtype != local.dtype or chunk.numel() != n:
                raise TransportError(
                    "fixed_size_exchange",
                    "TypeMismatch",
                    f"rank {src} sent {chunk.numel()} x {chunk.dtype}, expected {n} x {local.dtype}",
                )
            out[src * n:(src + 1) * n].copy_(chunk)

    def variable_size_exchange(
        self,
        local: bytes,
        recv: Optional[bytearray],
        sizes: Optional[Sequence[int]],
        offsets: Optional[Sequence[int]],
        root: int,
        call_id: int,
    ) -> None:
        self._group._post((call_id, self._rank), bytes(local))
        self._group._wait("variable_size_exchange")
        if recv is None:
            return

        for src in range(self.size):
            payload = self._group._take((call_id, src))
            if len(payload) != sizes[src]:
                raise TransportError(
                    "variable_size_exchange",
                    "SizeMismatch",
                    f"rank {src} sent {len(payload)} bytes, expected {sizes[src]}",
                )
            recv[offsets[src]:offsets[src] + sizes[src]] = payload
