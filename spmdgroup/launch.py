"""Process entry for one task, plus a helper that starts a whole group locally.

USAGE:
  torchrun --nproc_per_node=4 -m spmdgroup -t 1000000
  srun -n 8 python -m spmdgroup --throws 50000000
  python -m spmdgroup --spawn 4 -t 1000000      # local group, no launcher
"""

import argparse
import logging
import os
import socket
import sys
import time
from typing import List, Optional, Sequence

import torch.multiprocessing as mp

from .cli import parse_launch_args
from .darts import DARTS_WORKLOADS
from .errors import ErrorCode
from .group import GroupContext, resolve_group_config
from .logging_utils import format_timespan, setup_basic_logging, setup_rank_logging
from .runner import RoleRunner, RoleWorkloads

__all__ = ["main", "run_task", "spawn_local"]


logger = logging.getLogger(__name__)


def run_task(
    args: argparse.Namespace,
    workload_args: Sequence[str],
    workloads: RoleWorkloads = DARTS_WORKLOADS,
) -> ErrorCode:
    """Join the group described by ``args``, run ``workloads`` and leave again."""
    setup_basic_logging(args.verbose_logs)
    try:
        config = resolve_group_config(
            backend=args.backend,
            init_method=args.init_method,
            rank=args.rank,
            world_size=args.world_size,
            local_rank=args.local_rank,
            master_addr=args.master_addr,
            master_port=args.master_port,
            verbose=args.verbose_logs,
            set_cuda_device=not args.no_set_cuda_device,
        )
    except RuntimeError as exc:
        logger.error(f"Cannot place this task in a group: {exc}")
        return ErrorCode.INIT

    log_path = setup_rank_logging(config.rank, args.verbose_logs, args.log_dir)
    if log_path is not None:
        logger.info(f"Logging initialized: log_file={log_path}")

    context = GroupContext(config, manager_rank=args.manager_rank)
    runner = RoleRunner(
        context,
        workloads,
        sync_starts=args.sync_starts,
        sync_ends=args.sync_ends,
    )

    wall_start = time.perf_counter()
    result = runner.run(workload_args)
    logger.info(f"Total runtime: {format_timespan(time.perf_counter() - wall_start)}")
    return result


def _free_local_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _local_task(rank: int, world_size: int, init_method: str, argv: List[str]) -> None:
    if sys.platform.startswith("linux"):
        # All members share this host; keep gloo off external interfaces.
        os.environ.setdefault("GLOO_SOCKET_IFNAME", "lo")
    args, workload_args = parse_launch_args(argv)
    args.rank = rank
    args.world_size = world_size
    args.local_rank = rank
    args.init_method = init_method
    sys.exit(int(run_task(args, workload_args)))


def spawn_local(world_size: int, argv: Sequence[str] = ()) -> List[int]:
    """Run a ``world_size``-task group as child processes of this one.

    Every child parses ``argv`` like a normally launched task; placement
    flags are overridden so the children rendezvous on a free localhost port.

    Returns:
        Exit code of every task, indexed by rank
    """
    ctx = mp.get_context("spawn")
    init_method = f"tcp://127.0.0.1:{_free_local_port()}"
    processes = [
        ctx.Process(target=_local_task, args=(rank, world_size, init_method, list(argv)))
        for rank in range(world_size)
    ]
    for process in processes:
        process.start()
    for process in processes:
        process.join()

    codes = []
    for rank, process in enumerate(processes):
        if process.exitcode < 0:
            logger.error(f"Task {rank} was killed by signal {-process.exitcode}")
        codes.append(process.exitcode)
    return codes


def _group_exit_status(codes: Sequence[int]) -> int:
    for code in codes:
        if code > 0:
            return code
        if code < 0:
            return 128 - code
    return int(ErrorCode.NONE)


def main(argv: Optional[Sequence[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args, workload_args = parse_launch_args(argv)
    if args.spawn is None:
        return int(run_task(args, workload_args))

    setup_basic_logging(args.verbose_logs)
    logger.info(f"Spawning a local group of {args.spawn} tasks")
    return _group_exit_status(spawn_local(args.spawn, argv))
