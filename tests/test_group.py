import socket

import pytest
import torch

from conftest import FakeDist, make_context
from spmdgroup.errors import ErrorCode
from spmdgroup.group import resolve_group_config


def test_init_populates_identity() -> None:
    fake = FakeDist(rank=2, world_size=4)
    context = make_context(fake, manager_rank=0)

    assert context.init() is ErrorCode.NONE
    assert context.group_size == 4
    assert context.self_rank == 2
    assert context.manager_rank == 0
    assert not context.is_manager
    assert fake.init_kwargs == {
        "backend": "gloo",
        "init_method": "fake://",
        "rank": 2,
        "world_size": 4,
    }


def test_identity_is_unavailable_before_init() -> None:
    context = make_context(FakeDist())
    with pytest.raises(RuntimeError):
        context.group_size
    with pytest.raises(RuntimeError):
        context.self_rank


def test_init_failure_short_circuits() -> None:
    fake = FakeDist(fail={"init_process_group": None})
    context = make_context(fake)

    assert context.init() is ErrorCode.INIT
    assert fake.calls == ["init_process_group"]


def test_size_failure_skips_rank_query() -> None:
    fake = FakeDist(fail={"get_world_size": None})
    context = make_context(fake)

    assert context.init() is ErrorCode.COMM_SIZE
    assert fake.calls == ["init_process_group", "get_world_size"]


def test_rank_failure_is_reported() -> None:
    fake = FakeDist(world_size=3, fail={"get_rank": None})
    assert make_context(fake).init() is ErrorCode.COMM_RANK


def test_manager_rank_outside_group_is_rejected() -> None:
    fake = FakeDist(rank=0, world_size=2)
    assert make_context(fake, manager_rank=5).init() is ErrorCode.COMM_RANK


def test_finalize_releases_group_once() -> None:
    fake = FakeDist()
    context = make_context(fake)
    context.init()

    assert context.finalize() is ErrorCode.NONE
    assert context.finalize() is ErrorCode.NONE
    assert fake.count("destroy_process_group") == 1
    assert context.finalized


def test_finalize_failure_recorded_when_run_was_clean() -> None:
    fake = FakeDist(fail={"destroy_process_group": None})
    context = make_context(fake)
    context.init()

    assert context.finalize() is ErrorCode.FINALIZE


def test_finalize_failure_does_not_mask_earlier_error() -> None:
    fake = FakeDist(fail={"destroy_process_group": None})
    context = make_context(fake)
    context.init()
    context.record_error(ErrorCode.REDUCE)

    assert context.finalize() is ErrorCode.REDUCE
    assert fake.count("destroy_process_group") == 1


def test_finalize_without_joined_group_touches_nothing() -> None:
    fake = FakeDist(fail={"init_process_group": None})
    context = make_context(fake)
    context.init()

    assert context.finalize() is ErrorCode.INIT
    assert fake.count("destroy_process_group") == 0


def test_descriptive_strings() -> None:
    context = make_context(FakeDist(rank=1, world_size=2))
    context.init()

    assert context.task_name() == f"WORLD.1@{socket.gethostname()}"
    assert torch.__version__ in context.version_string()
    assert "backend(gloo)" in context.version_string()


def test_resolve_explicit_placement(clean_placement_env) -> None:
    config = resolve_group_config(rank=3, world_size=8)

    assert (config.rank, config.world_size, config.local_rank) == (3, 8, 3)
    assert config.master_addr == "127.0.0.1"
    assert config.master_port == 29500
    assert config.device == torch.device("cpu")


def test_resolve_torchrun_placement(clean_placement_env) -> None:
    clean_placement_env.setenv("RANK", "5")
    clean_placement_env.setenv("WORLD_SIZE", "6")
    clean_placement_env.setenv("LOCAL_RANK", "1")
    clean_placement_env.setenv("MASTER_ADDR", "head")
    clean_placement_env.setenv("MASTER_PORT", "12345")

    config = resolve_group_config()

    assert (config.rank, config.world_size, config.local_rank) == (5, 6, 1)
    assert (config.master_addr, config.master_port) == ("head", 12345)


def test_resolve_slurm_placement(clean_placement_env) -> None:
    clean_placement_env.setenv("SLURM_PROCID", "7")
    clean_placement_env.setenv("SLURM_NTASKS", "8")
    clean_placement_env.setenv("SLURM_LOCALID", "3")
    clean_placement_env.setenv("SLURM_JOB_NODELIST", "node[01-04]")
    clean_placement_env.setenv("SLURM_STEP_RESV_PORTS", "30100-30110")

    config = resolve_group_config()

    assert (config.rank, config.world_size, config.local_rank) == (7, 8, 3)
    assert config.master_addr == "node01"
    assert config.master_port == 30100


def test_resolve_incomplete_slurm_placement(clean_placement_env) -> None:
    clean_placement_env.setenv("SLURM_PROCID", "0")
    with pytest.raises(RuntimeError, match="SLURM"):
        resolve_group_config()


def test_resolve_without_any_source(clean_placement_env) -> None:
    with pytest.raises(RuntimeError, match="Cannot infer"):
        resolve_group_config()
