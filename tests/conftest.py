"""Shared fixtures: a scriptable stand-in for ``torch.distributed``.

``FakeDist`` plays one task of a group. What the other members would send
is scripted up front (``peer_payload`` for broadcasts, ``peer_sum`` for
reductions), and any operation can be made to raise on chosen calls.
"""

import json
from pathlib import Path
from typing import Dict, Optional, Set

import pytest
import torch

from spmdgroup.group import GroupConfig, GroupContext

_PLACEMENT_ENV = (
    "RANK",
    "WORLD_SIZE",
    "LOCAL_RANK",
    "MASTER_ADDR",
    "MASTER_PORT",
    "SLURM_PROCID",
    "SLURM_NTASKS",
    "SLURM_LOCALID",
    "SLURM_JOB_NODELIST",
    "SLURM_STEP_RESV_PORTS",
)


class FakeDist:
    def __init__(
        self,
        rank: int = 0,
        world_size: int = 1,
        peer_payload: Optional[bytes] = None,
        peer_sum: int = 0,
        fail: Optional[Dict[str, Optional[Set[int]]]] = None,
    ):
        self.rank = rank
        self.world_size = world_size
        self.peer_payload = peer_payload
        self.peer_sum = peer_sum
        # op name -> 1-based call numbers that raise; None raises on every call
        self.fail = dict(fail or {})
        self.calls = []
        self.broadcasts = []
        self.reduce_roots = []
        self.init_kwargs = None
        self.initialized = False

    def _enter(self, op: str) -> None:
        self.calls.append(op)
        if op in self.fail:
            which = self.fail[op]
            if which is None or self.calls.count(op) in which:
                raise RuntimeError(f"injected {op} failure")

    def count(self, op: str) -> int:
        return self.calls.count(op)

    def init_process_group(self, **kwargs):
        self._enter("init_process_group")
        self.init_kwargs = kwargs
        self.initialized = True

    def is_initialized(self) -> bool:
        return self.initialized

    def get_world_size(self) -> int:
        self._enter("get_world_size")
        return self.world_size

    def get_rank(self) -> int:
        self._enter("get_rank")
        return self.rank

    def barrier(self):
        self._enter("barrier")

    def broadcast(self, tensor, src):
        self._enter("broadcast")
        if src != self.rank and self.peer_payload is not None:
            tensor.copy_(torch.frombuffer(bytearray(self.peer_payload), dtype=torch.uint8))
        self.broadcasts.append((src, tensor.numpy().tobytes()))

    def reduce(self, tensor, dst, op):
        self._enter("reduce")
        self.reduce_roots.append(dst)
        if dst == self.rank:
            tensor += self.peer_sum

    def destroy_process_group(self):
        self._enter("destroy_process_group")
        self.initialized = False


def make_config(rank: int = 0, world_size: int = 1) -> GroupConfig:
    return GroupConfig(
        rank=rank,
        world_size=world_size,
        local_rank=rank,
        backend="gloo",
        init_method="fake://",
        device=torch.device("cpu"),
        master_addr="127.0.0.1",
        master_port=29500,
    )


def make_context(fake: FakeDist, manager_rank: int = 0, context_cls=GroupContext) -> GroupContext:
    return context_cls(make_config(fake.rank, fake.world_size), manager_rank=manager_rank, backend=fake)


@pytest.fixture
def clean_placement_env(monkeypatch):
    for key in _PLACEMENT_ENV:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def read_metrics_jsonl(path: Path) -> list:
    """Load every run summary the manager appended to ``path``."""
    with Path(path).open("r", encoding="utf-8") as handle:
        return [json.loads(line) for line in handle if line.strip()]
