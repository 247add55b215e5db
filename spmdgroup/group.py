"""Process-group membership for one task of an SPMD run.

Resolves where this task sits in the group (CLI overrides, torchrun or SLURM
environment), joins the ``torch.distributed`` process group, exposes the
task's identity and releases the group again, whatever happened in between.
"""

import logging
import os
import socket
from dataclasses import dataclass
from typing import Optional

import torch
import torch.distributed as dist

from .errors import ErrorCode, RunResult

__all__ = [
    "GroupConfig",
    "GroupContext",
    "TRANSPORT_ERRORS",
    "resolve_group_config",
]


logger = logging.getLogger(__name__)

# What the transport raises when an operation fails; DistError and its
# subclasses derive from RuntimeError.
TRANSPORT_ERRORS = (RuntimeError, ValueError, TimeoutError)

_DEFAULT_MASTER_ADDR = "127.0.0.1"
_DEFAULT_MASTER_PORT = 29500
_GROUP_NAME = "WORLD"


@dataclass
class GroupConfig:
    """Where this task sits in the group and how to reach the others."""
    rank: int
    world_size: int
    local_rank: int
    backend: str
    init_method: str
    device: torch.device
    master_addr: str
    master_port: int
    verbose: bool = False


def _first_slurm_host(nodelist: str) -> str:
    # "node01", "node[01-04]" or "node01,node02"
    if "[" in nodelist:
        base = nodelist.split("[")[0]
        first_num = nodelist.split("[")[1].split("-")[0].split(",")[0].rstrip("]")
        return f"{base}{first_num}"
    if "," in nodelist:
        return nodelist.split(",")[0]
    return nodelist


def _select_device(backend: str, local_rank: int, set_cuda_device: bool) -> torch.device:
    if backend != "nccl" or not set_cuda_device or not torch.cuda.is_available():
        return torch.device("cpu")

    visible_device_count = torch.cuda.device_count()
    if visible_device_count == 0:
        raise RuntimeError(
            "Backend 'nccl' needs a CUDA device but none is visible. "
            "Use backend='gloo' for CPU-only runs."
        )
    if local_rank >= visible_device_count:
        # More tasks than visible GPUs on this node; wrap around.
        assigned_index = local_rank % visible_device_count
        logger.warning(
            "Local rank %s exceeds visible GPUs (%s); remapping to CUDA:%s.",
            local_rank,
            visible_device_count,
            assigned_index,
        )
    else:
        assigned_index = local_rank
    return torch.device(f"cuda:{assigned_index}")


def resolve_group_config(
    backend: str = "gloo",
    init_method: str = "env://",
    rank: Optional[int] = None,
    world_size: Optional[int] = None,
    local_rank: Optional[int] = None,
    master_addr: Optional[str] = None,
    master_port: Optional[int] = None,
    verbose: bool = False,
    set_cuda_device: bool = True,
) -> GroupConfig:
    """Work out this task's group placement.

    Priority: explicit arguments, then torchrun variables (``RANK``,
    ``WORLD_SIZE``, ``LOCAL_RANK``), then SLURM variables (``SLURM_PROCID``,
    ``SLURM_NTASKS``, ``SLURM_LOCALID``).

    Args:
        backend: Communication backend ("gloo", "nccl", "mpi")
        init_method: Rendezvous URL handed to ``init_process_group``
        rank: Global rank override
        world_size: Group size override
        local_rank: Rank on this node; defaults to ``rank`` when only rank and
            world size are given
        master_addr: Rendezvous host override
        master_port: Rendezvous port override
        verbose: Let every rank log to the console
        set_cuda_device: Pick a CUDA device by local rank for ``nccl``

    Returns:
        GroupConfig for this task

    Raises:
        RuntimeError: If no placement source is available
    """
    if rank is not None and world_size is not None:
        resolved_rank = rank
        resolved_world_size = world_size
        resolved_local_rank = rank if local_rank is None else local_rank
        resolved_master_addr = master_addr or _DEFAULT_MASTER_ADDR
        resolved_master_port = master_port or _DEFAULT_MASTER_PORT
    elif "RANK" in os.environ and "WORLD_SIZE" in os.environ:
        resolved_rank = int(os.environ["RANK"])
        resolved_world_size = int(os.environ["WORLD_SIZE"])
        resolved_local_rank = int(os.environ.get("LOCAL_RANK", resolved_rank))
        resolved_master_addr = master_addr or os.environ.get("MASTER_ADDR", _DEFAULT_MASTER_ADDR)
        resolved_master_port = master_port or int(os.environ.get("MASTER_PORT", _DEFAULT_MASTER_PORT))
    elif "SLURM_PROCID" in os.environ:
        if "SLURM_NTASKS" not in os.environ or "SLURM_LOCALID" not in os.environ:
            raise RuntimeError(
                "Running under SLURM but required environment variables are missing. "
                "Expected SLURM_PROCID, SLURM_NTASKS, and SLURM_LOCALID."
            )
        resolved_rank = int(os.environ["SLURM_PROCID"])
        resolved_world_size = int(os.environ["SLURM_NTASKS"])
        resolved_local_rank = int(os.environ["SLURM_LOCALID"])
        if master_addr is None and "SLURM_JOB_NODELIST" in os.environ:
            resolved_master_addr = _first_slurm_host(os.environ["SLURM_JOB_NODELIST"])
        else:
            resolved_master_addr = master_addr or _DEFAULT_MASTER_ADDR
        resolved_master_port = master_port or int(
            os.environ.get("SLURM_STEP_RESV_PORTS", str(_DEFAULT_MASTER_PORT)).split("-")[0]
        )
    else:
        raise RuntimeError(
            "Cannot infer group placement. "
            "Pass --rank and --world-size, launch with torchrun (RANK, WORLD_SIZE), "
            "run under SLURM (SLURM_PROCID, SLURM_NTASKS, SLURM_LOCALID) "
            "or use --spawn N for a local group."
        )

    return GroupConfig(
        rank=resolved_rank,
        world_size=resolved_world_size,
        local_rank=resolved_local_rank,
        backend=backend,
        init_method=init_method,
        device=_select_device(backend, resolved_local_rank, set_cuda_device),
        master_addr=resolved_master_addr,
        master_port=resolved_master_port,
        verbose=verbose,
    )


class GroupContext:
    """Identity and lifecycle of one task inside a fixed-size group.

    ``backend`` is the collective facility, normally the
    ``torch.distributed`` module; tests pass a stand-in with the same
    functions.

    Example:
        >>> context = GroupContext(config, manager_rank=0)
        >>> if context.init() is ErrorCode.NONE:
        ...     print(context.task_name())
        >>> exit_code = context.finalize()
    """

    def __init__(self, config: GroupConfig, manager_rank: int = 0, backend=dist):
        self.config = config
        self.backend = backend
        self.run_result = RunResult()
        self._manager_rank = manager_rank
        self._group_size: Optional[int] = None
        self._self_rank: Optional[int] = None
        self._joined = False
        self._finalized = False

    @property
    def device(self) -> torch.device:
        return self.config.device

    @property
    def group_size(self) -> int:
        if self._group_size is None:
            raise RuntimeError("group size is unknown before a successful init()")
        return self._group_size

    @property
    def self_rank(self) -> int:
        if self._self_rank is None:
            raise RuntimeError("rank is unknown before a successful init()")
        return self._self_rank

    @property
    def manager_rank(self) -> int:
        return self._manager_rank

    @property
    def is_manager(self) -> bool:
        return self.self_rank == self._manager_rank

    @property
    def finalized(self) -> bool:
        return self._finalized

    def record_error(self, code: ErrorCode) -> ErrorCode:
        """Record a failure on this run (first error wins)."""
        return self.run_result.record(code)

    def init(self) -> ErrorCode:
        """Join the group, then query its size and this task's rank.

        The three steps short-circuit: a later one is not attempted once an
        earlier one has failed.

        Returns:
            ``ErrorCode.NONE`` on success, else INIT, COMM_SIZE or COMM_RANK
        """
        init_kwargs = {
            "backend": self.config.backend,
            "init_method": self.config.init_method,
            "rank": self.config.rank,
            "world_size": self.config.world_size,
        }
        if self.config.init_method == "env://":
            os.environ["MASTER_ADDR"] = self.config.master_addr
            os.environ["MASTER_PORT"] = str(self.config.master_port)
        if self.config.device.type == "cuda":
            torch.cuda.set_device(self.config.device)

        try:
            self.backend.init_process_group(**init_kwargs)
        except TRANSPORT_ERRORS:
            logger.error("Could not join the process group", exc_info=True)
            return self.record_error(ErrorCode.INIT)
        self._joined = True

        try:
            group_size = int(self.backend.get_world_size())
        except TRANSPORT_ERRORS:
            logger.error("Could not query the group size", exc_info=True)
            return self.record_error(ErrorCode.COMM_SIZE)
        if group_size < 1:
            logger.error(f"Group reported invalid size {group_size}")
            return self.record_error(ErrorCode.COMM_SIZE)
        self._group_size = group_size

        try:
            self_rank = int(self.backend.get_rank())
        except TRANSPORT_ERRORS:
            logger.error("Could not query this task's rank", exc_info=True)
            return self.record_error(ErrorCode.COMM_RANK)
        if not 0 <= self_rank < group_size:
            logger.error(f"Group reported rank {self_rank} outside 0..{group_size - 1}")
            return self.record_error(ErrorCode.COMM_RANK)
        if not 0 <= self._manager_rank < group_size:
            logger.error(
                f"Manager rank {self._manager_rank} is not a member of a group of size {group_size}"
            )
            return self.record_error(ErrorCode.COMM_RANK)
        self._self_rank = self_rank

        logger.info(
            f"Joined group: rank={self_rank}, size={group_size}, manager={self._manager_rank}, "
            f"backend={self.config.backend}, device={self.config.device}"
        )
        return ErrorCode.NONE

    def finalize(self) -> ErrorCode:
        """Release the group, whatever state the run is in.

        A teardown failure is recorded only when nothing failed before it.
        Calling this again after the first time changes nothing.

        Returns:
            The run's final error code
        """
        if self._finalized:
            return self.run_result.code
        self._finalized = True

        if self._joined:
            try:
                self.backend.destroy_process_group()
            except TRANSPORT_ERRORS:
                logger.error("Could not release the process group", exc_info=True)
                self.record_error(ErrorCode.FINALIZE)
            self._joined = False
        return self.run_result.code

    def task_name(self) -> str:
        """Return ``"<group>.<rank>@<host>"`` for log lines."""
        rank = self._self_rank if self._self_rank is not None else self.config.rank
        return f"{_GROUP_NAME}.{rank}@{socket.gethostname()}"

    def version_string(self) -> str:
        """Return the transport library and backend in use."""
        return f"torch.distributed {torch.__version__} backend({self.config.backend})"
