"""Command-line interface for launching one task of a group run."""

from __future__ import annotations

import argparse
from typing import List, Optional, Sequence, Tuple


def add_group_args(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Attach process-group and run-sequencing arguments to ``parser``."""

    # Process-group placement
    parser.add_argument(
        "--backend",
        type=str,
        default="gloo",
        help="Backend handed to torch.distributed.init_process_group",
    )
    parser.add_argument(
        "--init-method",
        type=str,
        default="env://",
        help="Process-group init method (e.g., env://, tcp://<host>:<port>)",
    )
    parser.add_argument("--rank", type=int, default=None, help="Explicit global rank override")
    parser.add_argument(
        "--world-size", type=int, default=None, help="Explicit group-size override"
    )
    parser.add_argument(
        "--local-rank",
        type=int,
        default=None,
        help="Explicit local-rank override (torchrun/SLURM typically set this)",
    )
    parser.add_argument(
        "--master-addr",
        type=str,
        default=None,
        help="Rendezvous address (defaults to SLURM or torchrun env)",
    )
    parser.add_argument(
        "--master-port",
        type=int,
        default=None,
        help="Rendezvous port (defaults to SLURM or torchrun env)",
    )
    parser.add_argument(
        "--no-set-cuda-device",
        action="store_true",
        help="Skip automatic torch.cuda.set_device(local_rank) for nccl",
    )

    # Run sequencing
    parser.add_argument(
        "--manager-rank",
        type=int,
        default=0,
        help="Rank of the task that distributes the config and owns the result",
    )
    parser.add_argument(
        "--no-sync-starts",
        dest="sync_starts",
        action="store_false",
        help="Skip the barrier before the workload starts",
    )
    parser.add_argument(
        "--sync-ends",
        action="store_true",
        help="Add a barrier after a successful workload",
    )

    # Local launch and output
    parser.add_argument(
        "--spawn",
        type=int,
        default=None,
        metavar="N",
        help="Start an N-task group on this machine instead of joining an existing launch",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Write one log file per rank into this directory",
    )
    parser.add_argument(
        "--verbose-logs",
        action="store_true",
        help="Emit console logs from every rank instead of rank 0 only",
    )

    return parser


def parse_launch_args(argv: Optional[Sequence[str]] = None) -> Tuple[argparse.Namespace, List[str]]:
    """Split ``argv`` into launcher options and the arguments meant for the workload."""
    parser = argparse.ArgumentParser(
        description="Run one task of an SPMD dart-throwing pi estimate",
        epilog="Unrecognised arguments (e.g. -t/--throws) are passed to the workload.",
        allow_abbrev=False,
    )
    add_group_args(parser)
    args, workload_args = parser.parse_known_args(argv)
    if args.spawn is not None and args.spawn < 1:
        parser.error("--spawn needs at least one task")
    return args, workload_args
