"""
Pytest Configuration and Fixtures for Distributed Testing.

This module provides pytest fixtures to set up and tear down a distributed
environment for running tests on CPU with the `gloo` backend, so the suite
needs no GPUs.

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

-   **`distributed_env` fixture**: Initializes the default group for the
    test and destroys it afterwards. Tests marked `world_size(N)` with
    N > 1 only run under a launcher such as `torchrun` that sets a matching
    `WORLD_SIZE`; otherwise a single-process group is used.
-   **`device` fixture**: Provides the `torch.device` tests should allocate on.
-   **`spawn_world` fixture**: Runs a module-level worker function on N
    freshly spawned processes that rendezvous through a `FileStore`, and
    collects what each rank returned.
-   **`make_config` fixture**: Builds a small CPU `RunConfig` with overrides.

Multi-rank scenarios (such as the 2x2 grid) therefore run in-process with
`torch.multiprocessing.spawn`; no `torchrun` launcher is needed.

===============================================================================
"""

import os
import pytest
import torch
import torch.distributed as dist
import torch.multiprocessing as mp
from typing import Generator

from GridInfer.core.config import build_run_config


def is_distributed() -> bool:
    """
    Checks if the `torch.distributed` environment is currently initialized.
    """
    return dist.is_available() and dist.is_initialized()


@pytest.fixture(scope="function")
def distributed_env(request: pytest.FixtureRequest, tmp_path) -> Generator[None, None, None]:
    """
    Initializes and tears down a gloo group for one test.

    Usage:
        @pytest.mark.world_size(2) # Needs a launcher with WORLD_SIZE=2
        def test_my_distributed_function(distributed_env):
            # ... test logic ...
    """
    marker = request.node.get_closest_marker("world_size")
    expected_world_size = marker.args[0] if marker else 1
    current_world_size = int(os.environ.get("WORLD_SIZE", "1"))

    if current_world_size != expected_world_size:
        pytest.skip(f"Test requires world_size={expected_world_size}, but environment is WORLD_SIZE={current_world_size}")

    if not is_distributed():
        if expected_world_size > 1:
            # torchrun provides MASTER_ADDR, MASTER_PORT and RANK.
            dist.init_process_group(backend="gloo", init_method="env://")
        else:
            dist.init_process_group(
                backend="gloo",
                init_method=f"file://{tmp_path / 'store'}",
                rank=0,
                world_size=1,
            )

    yield # Yield control to the test function

    # Teardown: Destroy the process group after the test function completes.
    if is_distributed():
        dist.destroy_process_group()


@pytest.fixture
def device() -> torch.device:
    """Every test allocates on CPU."""
    return torch.device('cpu')


def _run_rank(rank, worker, world_size, store_path, result_dir, args):
    result = worker(rank, world_size, f"file://{store_path}", *args)
    torch.save(result, os.path.join(result_dir, f"rank_{rank}.pt"))


@pytest.fixture
def spawn_world(tmp_path):
    """
    Returns a callable `spawn(worker, world_size, *args)`.

    `worker(rank, world_size, init_method, *args)` must be defined at module
    level. Its return value on every rank is collected into a list indexed by
    rank.
    """
    def spawn(worker, world_size, *args):
        result_dir = tmp_path / "results"
        result_dir.mkdir(exist_ok=True)
        store_path = tmp_path / f"store_{worker.__name__}"
        mp.spawn(
            _run_rank,
            args=(worker, world_size, str(store_path), str(result_dir), args),
            nprocs=world_size,
            join=True,
        )
        return [torch.load(result_dir / f"rank_{rank}.pt", weights_only=False) for rank in range(world_size)]
    return spawn


def small_config(**overrides):
    """A CPU configuration for a 1x1 grid, updated section by section."""
    config = {
        'parallelism': {
            'tensor_para_size': 1,
            'pipeline_para_size': 1,
            'backend': 'gloo',
            'device_type': 'cpu',
            'timeout_seconds': 60,
        },
        'model': {
            'head_num': 4,
            'size_per_head': 8,
            'vocab_size': 100,
            'decoder_layers': 4,
            'max_seq_len': 8,
        },
        'sampling': {
            'beam_width': 1,
            'start_id': 7,
            'end_id': 7,
        },
        'request': {
            'request_batch_size': 1,
            'request_output_len': 3,
        },
        'executor': 'echo',
    }
    for key, value in overrides.items():
        if isinstance(value, dict):
            config.setdefault(key, {}).update(value)
        else:
            config[key] = value
    return build_run_config(config)


@pytest.fixture
def make_config():
    return small_config
