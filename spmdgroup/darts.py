"""Monte-Carlo estimate of pi by throwing darts at the unit circle.

The manager parses the run options, broadcasts them as a fixed-size
``WorkloadConfig`` and every task throws its share of darts. Hit counts are
sum-reduced onto the manager, which reports the estimate.
"""

from __future__ import annotations

import argparse
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

import numpy as np

from .collectives import CollectiveOps
from .errors import ErrorCode, WorkloadArgsError
from .group import GroupContext
from .logging_utils import format_timespan
from .metrics import append_metrics_jsonl
from .runner import RoleWorkloads

__all__ = [
    "DARTS_WORKLOADS",
    "DEFAULT_TOTAL_THROWS",
    "WorkloadConfig",
    "WorkloadOptions",
    "local_share",
    "parse_workload_args",
    "run_as_manager",
    "run_as_worker",
    "throw_darts",
]


logger = logging.getLogger(__name__)

DEFAULT_TOTAL_THROWS = 5_000_000
_CHUNK_SIZE = 1 << 20

_CONFIG_DTYPE = np.dtype([("total_throws", "<u8"), ("seed", "<i8")])


@dataclass(frozen=True)
class WorkloadConfig:
    """Run parameters every task must agree on.

    Travels as a fixed 16-byte little-endian record: ``total_throws`` (uint64)
    then ``seed`` (int64, negative for OS entropy).
    """
    total_throws: int = DEFAULT_TOTAL_THROWS
    seed: int = -1

    SIZE = _CONFIG_DTYPE.itemsize

    def to_bytes(self) -> bytes:
        record = np.array([(self.total_throws, self.seed)], dtype=_CONFIG_DTYPE)
        return record.tobytes()

    @classmethod
    def from_bytes(cls, payload) -> "WorkloadConfig":
        record = np.frombuffer(bytes(payload[: cls.SIZE]), dtype=_CONFIG_DTYPE, count=1)[0]
        return cls(total_throws=int(record["total_throws"]), seed=int(record["seed"]))


@dataclass(frozen=True)
class WorkloadOptions:
    """Manager-side options: the shared config plus purely local settings."""
    config: WorkloadConfig
    metrics_file: Optional[Path] = None


class _WorkloadArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        raise WorkloadArgsError(message)


_MAX_THROWS = int(np.iinfo(np.uint64).max)
_MAX_SEED = int(np.iinfo(np.int64).max)


def _bounded_decimal(limit: int):
    """Argparse type accepting plain decimal digits in ``0..limit``."""

    def parse(value: str) -> int:
        if not (value.isascii() and value.isdigit()):
            raise ValueError(f"expected a decimal integer, got {value!r}")
        number = int(value)
        if number > limit:
            raise ValueError(f"{value} exceeds the maximum of {limit}")
        return number

    parse.__name__ = "decimal integer"
    return parse


def _build_parser() -> argparse.ArgumentParser:
    parser = _WorkloadArgumentParser(
        prog="spmd-darts",
        description="Dart-throwing pi estimator options (read by the manager only)",
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument(
        "-t",
        "--throws",
        type=_bounded_decimal(_MAX_THROWS),
        default=DEFAULT_TOTAL_THROWS,
        help="Total darts thrown across the whole group",
    )
    parser.add_argument(
        "--seed",
        type=_bounded_decimal(_MAX_SEED),
        default=None,
        help="Base seed; task N uses seed + N (default: OS entropy)",
    )
    parser.add_argument(
        "--metrics-file",
        type=str,
        default=None,
        help="Append a JSON line with the run summary to this file",
    )
    return parser


def parse_workload_args(args: Sequence[str]) -> WorkloadOptions:
    """Parse the manager's workload arguments.

    Unknown arguments are ignored so launcher flags may share the command line.

    Raises:
        WorkloadArgsError: On a flag with a missing or malformed value
    """
    namespace, _ = _build_parser().parse_known_args(list(args))
    config = WorkloadConfig(
        total_throws=namespace.throws,
        seed=-1 if namespace.seed is None else namespace.seed,
    )
    metrics_file = Path(namespace.metrics_file) if namespace.metrics_file else None
    return WorkloadOptions(config=config, metrics_file=metrics_file)


def local_share(total: int, group_size: int, is_manager: bool) -> int:
    """Number of darts one task throws.

    Every task throws ``total // group_size``; the manager also throws the
    ``total % group_size`` left over so the group throws exactly ``total``.

    Example:
        >>> [local_share(10, 3, rank == 0) for rank in range(3)]
        [4, 3, 3]
    """
    per_task = total // group_size
    if is_manager:
        return per_task + total % group_size
    return per_task


def throw_darts(num_darts: int, rng: np.random.Generator) -> int:
    """Count darts landing inside the unit circle out of ``num_darts`` uniform throws."""
    hits = 0
    remaining = num_darts
    while remaining > 0:
        batch = min(remaining, _CHUNK_SIZE)
        x = rng.uniform(-1.0, 1.0, batch)
        y = rng.uniform(-1.0, 1.0, batch)
        hits += int(np.count_nonzero(x * x + y * y <= 1.0))
        remaining -= batch
    return hits


def _task_rng(config: WorkloadConfig, rank: int) -> np.random.Generator:
    if config.seed < 0:
        return np.random.default_rng()
    return np.random.default_rng(config.seed + rank)


def _throw_local_share(context: GroupContext, config: WorkloadConfig) -> int:
    num_throws = local_share(config.total_throws, context.group_size, context.is_manager)
    hits = throw_darts(num_throws, _task_rng(config, context.self_rank))
    print(f"Task {context.self_rank} had {hits} hits out of {num_throws} throws", flush=True)
    return hits


def _report(config: WorkloadConfig, total_hits: int, group_size: int, elapsed: float) -> dict:
    computed_pi = (4.0 * total_hits) / config.total_throws if config.total_throws else float("nan")
    pi_error = math.pi - computed_pi
    print(f"After {config.total_throws} throws...", flush=True)
    print(f"  Computed PI : {computed_pi:.8f}", flush=True)
    print(f"  Actual   PI : {math.pi:.8f}", flush=True)
    print(f"  Error       : {pi_error:g}", flush=True)
    return {
        "total_throws": config.total_throws,
        "hits": total_hits,
        "pi": computed_pi,
        "error": pi_error,
        "group_size": group_size,
        "elapsed_s": elapsed,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def run_as_manager(context: GroupContext, ops: CollectiveOps, args: Sequence[str]) -> ErrorCode:
    """Parse options, share them, throw the manager's share and report pi."""
    print(context.version_string(), flush=True)

    try:
        options = parse_workload_args(args)
    except WorkloadArgsError as exc:
        logger.error(f"Invalid workload arguments: {exc}")
        return ErrorCode.ARGS
    config = options.config
    logger.debug(f"Workload config: total_throws={config.total_throws}, seed={config.seed}")

    payload = bytearray(config.to_bytes())
    if not ops.broadcast(payload, WorkloadConfig.SIZE):
        return ErrorCode.BCAST

    start = time.perf_counter()
    hits = _throw_local_share(context, config)

    if not ops.barrier():
        return ErrorCode.BARRIER
    ok, total_hits = ops.reduce_sum(hits)
    if not ok:
        return ErrorCode.REDUCE

    elapsed = time.perf_counter() - start
    record = _report(config, total_hits, context.group_size, elapsed)
    logger.info(f"Estimate from {context.group_size} tasks took {format_timespan(elapsed)}")
    if options.metrics_file is not None:
        append_metrics_jsonl(options.metrics_file, record)
    return ErrorCode.NONE


def run_as_worker(context: GroupContext, ops: CollectiveOps, args: Sequence[str]) -> ErrorCode:
    """Receive the manager's options, throw this task's share and contribute the hits."""
    payload = bytearray(WorkloadConfig.SIZE)
    if not ops.broadcast(payload, WorkloadConfig.SIZE):
        return ErrorCode.BCAST
    config = WorkloadConfig.from_bytes(payload)

    hits = _throw_local_share(context, config)

    if not ops.barrier():
        return ErrorCode.BARRIER
    ok, _ = ops.reduce_sum(hits)
    if not ok:
        return ErrorCode.REDUCE
    return ErrorCode.NONE


DARTS_WORKLOADS = RoleWorkloads(manager=run_as_manager, worker=run_as_worker)
