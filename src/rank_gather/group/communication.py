"""
Communication: Process group transports used by rank_gather collectives.

A transport exposes the identity of the calling process within its group and
the two all-to-one exchanges every gather is built from:

- fixed_size_exchange: each rank contributes a tensor of the same dtype and
  element count; the root receives them back to back in rank order.
- variable_size_exchange: each rank contributes a byte payload of its own
  length; the root receives them into one buffer at caller supplied offsets.

Ranks and roots are always expressed relative to the transport's group.
"""

import itertools
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Generator, Optional, Sequence

import torch
from torch import distributed as dist

from ..errors import TransportError

logger = logging.getLogger(__name__)


class GroupTransport(ABC):
    """
    Contract between the gather paths and a process group.

    Both exchanges are blocking collectives: every rank of the group must call
    the matching exchange with the same root and call id before any of them
    returns. Only the root passes receive parameters.
    """

    def __init__(self):
        self._call_counter = itertools.count()

    @property
    @abstractmethod
    def rank(self) -> int:
        """This process's rank in the group."""
        ...

    @property
    @abstractmethod
    def size(self) -> int:
        """Number of ranks in the group."""
        ...

    def next_call_id(self) -> int:
        """
        Identifier for the next collective call on this group.

        Every rank issues collectives in the same order, so the counters of
        all ranks agree without any communication.
        """
        return next(self._call_counter)

    @abstractmethod
    def fixed_size_exchange(
        self,
        local: torch.Tensor,
        out: Optional[torch.Tensor],
        root: int,
        call_id: int,
    ) -> None:
        """
        Gather equally sized 1-D tensors to the root.

        Args:
            local: This rank's contribution
            out: Root only. Contiguous 1-D tensor of size * local.numel()
                 elements, filled in rank order. None on other ranks.
            root: Rank receiving the result
            call_id: Identifier from next_call_id()

        Raises:
            TransportError: If the exchange fails
        """
        ...

    @abstractmethod
    def variable_size_exchange(
        self,
        local: bytes,
        recv: Optional[bytearray],
        sizes: Optional[Sequence[int]],
        offsets: Optional[Sequence[int]],
        root: int,
        call_id: int,
    ) -> None:
        """
        Gather byte payloads of differing lengths to the root.

        Args:
            local: This rank's payload
            recv: Root only. Buffer of sum(sizes) bytes
            sizes: Root only. Payload length of every rank
            offsets: Root only. Where every rank's payload starts in recv
            root: Rank receiving the result
            call_id: Identifier from next_call_id()

        Raises:
            TransportError: If the exchange fails
        """
        ...


@contextmanager
def translate_errors(operation: str) -> Generator[None, None, None]:
    """Re-raise backend failures inside the block as TransportError."""
    try:
        yield
    except RuntimeError as e:
        raise TransportError(operation, type(e).__name__, str(e)) from e


class TorchGroupTransport(GroupTransport):
    """
    Transport over an initialized torch.distributed process group.

    Fixed-size exchanges map onto dist.gather. Variable-size exchanges are
    point-to-point sends to the root tagged with the call id, each received
    directly into that rank's region of the root buffer. Empty payloads are
    never put on the wire; both sides know they are empty.

    Tensors are built on the CPU by the gather paths. Backends that only move
    device memory (NCCL) get them staged onto the current CUDA device, and the
    root copies results back into its CPU buffers.
    """

    def __init__(self, group: Optional[dist.ProcessGroup] = None):
        """
        Args:
            group: Process group to work on. None for the default group.

        Raises:
            EnvironmentError: If torch.distributed is not initialized
        """
        if not (dist.is_available() and dist.is_initialized()):
            raise EnvironmentError("Distributed world is not initialized")
        super().__init__()
        self._group = group
        self.device = self.device_for_backend(dist.get_backend(group))

    @staticmethod
    def device_for_backend(backend: str) -> torch.device:
        """Device whose tensors the backend can exchange."""
        if str(backend).lower() == "nccl":
            return torch.device("cuda", torch.cuda.current_device())
        return torch.device("cpu")

    @property
    def size(self) -> int:
        """Number of ranks in the distributed group."""
        return dist.get_world_size(self._group)

    @property
    def rank(self) -> int:
        """This process's rank in the distributed group."""
        return dist.get_rank(self._group)

    def _global_rank(self, group_rank: int) -> int:
        if self._group is None:
            return group_rank
        return dist.get_global_rank(self._group, group_rank)

    @staticmethod
    def _tag(call_id: int) -> int:
        # Backends carry tags as 32 bit integers
        return call_id & 0x7FFFFFFF

    def fixed_size_exchange(
        self,
        local: torch.Tensor,
        out: Optional[torch.Tensor],
        root: int,
        call_id: int,
    ) -> None:
        local = local.to(self.device)
        received = None
        gather_list = None
        if out is not None:
            received = out if out.device == self.device else torch.empty_like(out, device=self.device)
            n = local.numel()
            gather_list = [received[r * n:(r + 1) * n] for r in range(self.size)]
        logger.debug("call %d: dist.gather of %d x %s to rank %d", call_id, local.numel(), local.dtype, root)
        with translate_errors("fixed_size_exchange"):
            dist.gather(local, gather_list, dst=self._global_rank(root), group=self._group)
        if received is not None and received is not out:
            out.copy_(received)

    def variable_size_exchange(
        self,
        local: bytes,
        recv: Optional[bytearray],
        sizes: Optional[Sequence[int]],
        offsets: Optional[Sequence[int]],
        root: int,
        call_id: int,
    ) -> None:
        tag = self._tag(call_id)
        if recv is None:
            if len(local) > 0:
                payload = torch.frombuffer(bytearray(local), dtype=torch.uint8).to(self.device)
                logger.debug("call %d: sending %d bytes to rank %d", call_id, len(local), root)
                with translate_errors("variable_size_exchange"):
                    dist.send(payload, dst=self._global_rank(root), group=self._group, tag=tag)
            return

        if len(recv) == 0:
            return
        region = torch.frombuffer(recv, dtype=torch.uint8)
        for src in range(self.size):
            start, length = offsets[src], sizes[src]
            if length == 0:
                continue
            if src == root:
                recv[start:start + length] = local
                continue
            target = region[start:start + length]
            staged = target if self.device.type == "cpu" else torch.empty(length, dtype=torch.uint8, device=self.device)
            logger.debug("call %d: receiving %d bytes from rank %d", call_id, length, src)
            with translate_errors("variable_size_exchange"):
                dist.recv(staged, src=self._global_rank(src), group=self._group, tag=tag)
            if staged is not target:
                target.copy_(staged)
