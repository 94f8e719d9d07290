"""
Process group bootstrap for rank_gather.

Uses the same environment variables torch.distributed reads for env://
initialization (MASTER_ADDR, MASTER_PORT, RANK, WORLD_SIZE), so processes
started by torchrun, a job scheduler or by hand all configure the same way.
"""

import logging
import os
from datetime import timedelta
from typing import Any, Mapping, Optional

from torch import distributed as dist

from .communication import TorchGroupTransport

logger = logging.getLogger(__name__)


class GroupConfig:
    """
    Coordinates of this process within a torch.distributed group.

    Args:
        rank: Global rank of this process (0 to world_size-1)
        world_size: Total number of processes in the group
        master_addr: Address of the rendezvous host (default: "localhost")
        master_port: Port of the rendezvous host (default: 29500)
        backend: torch.distributed backend (default: "gloo"). With "nccl" every
                 process must have its CUDA device selected before gathering.
        timeout: Seconds before a blocked collective fails. None for the
                 backend default.
    """

    def __init__(
            self,
            rank: int,
            world_size: int,
            master_addr: str = "localhost",
            master_port: int = 29500,
            backend: str = "gloo",
            timeout: Optional[float] = None,
    ):
        if world_size < 1:
            raise ValueError(f"world_size must be at least 1, got {world_size}")
        if not 0 <= rank < world_size:
            raise ValueError(f"rank must be in [0, {world_size}), got {rank}")
        self.rank = rank
        self.world_size = world_size
        self.master_addr = master_addr
        self.master_port = master_port
        self.backend = backend
        self.timeout = timeout

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "GroupConfig":
        """
        Build a config from environment variables.

        Args:
            environ: Mapping to read instead of os.environ
            **overrides: Constructor arguments taking precedence over the environment

        Raises:
            KeyError: If RANK or WORLD_SIZE is missing and not overridden
        """
        environ = os.environ if environ is None else environ
        kwargs = {}
        for key, variable in (("rank", "RANK"), ("world_size", "WORLD_SIZE")):
            if variable in environ:
                kwargs[key] = int(environ[variable])
            elif key not in overrides:
                raise KeyError(f"Missing environment variable '{variable}' for process group config")
        if "MASTER_ADDR" in environ:
            kwargs["master_addr"] = environ["MASTER_ADDR"]
        if "MASTER_PORT" in environ:
            kwargs["master_port"] = int(environ["MASTER_PORT"])
        if "RANK_GATHER_BACKEND" in environ:
            kwargs["backend"] = environ["RANK_GATHER_BACKEND"]
        kwargs.update(overrides)
        return cls(**kwargs)

    def export(self) -> None:
        """Write the coordinates to the environment for env:// initialization."""
        os.environ['MASTER_ADDR'] = self.master_addr
        os.environ['MASTER_PORT'] = str(self.master_port)
        os.environ['RANK'] = str(self.rank)
        os.environ['WORLD_SIZE'] = str(self.world_size)


def init_process_group(config: Optional[GroupConfig] = None) -> TorchGroupTransport:
    """
    Initialize the default torch.distributed group and wrap it in a transport.

    Blocks until all world_size processes have joined.

    Args:
        config: Group coordinates. Read from the environment when None.

    Returns:
        Transport over the default process group
    """
    config = GroupConfig.from_env() if config is None else config
    config.export()
    kwargs = {}
    if config.timeout is not None:
        kwargs["timeout"] = timedelta(seconds=config.timeout)
    logger.info(
        "Joining %s process group as rank %d of %d at %s:%d",
        config.backend, config.rank, config.world_size, config.master_addr, config.master_port,
    )
    dist.init_process_group(
        backend=config.backend,
        init_method="env://",
        rank=config.rank,
        world_size=config.world_size,
        **kwargs,
    )
    return TorchGroupTransport()
