"""
Tests for device binding and the world-level helpers.
"""

import pytest
import torch

from GridInfer.core.distributed import (
    setup_distributed,
    cleanup_distributed,
    select_device,
    broadcast_seed,
    world_barrier,
)
from GridInfer.core.errors import ConfigurationError


def test_cpu_device():
    assert select_device('cpu', rank=3) == torch.device('cpu')


def test_unknown_device_type_is_a_configuration_error():
    with pytest.raises(ConfigurationError, match="device_type"):
        select_device('tpu', rank=0)


def test_cuda_without_devices_is_a_configuration_error(monkeypatch):
    monkeypatch.setattr(torch.cuda, "device_count", lambda: 0)
    with pytest.raises(ConfigurationError, match="no CUDA device"):
        select_device('cuda', rank=0)


def test_seed_is_unchanged_on_a_single_rank(distributed_env, device):
    assert broadcast_seed(1234, device) == 1234
    world_barrier(device)


def _seed_worker(rank, world_size, init_method):
    setup_distributed(backend='gloo', init_method=init_method, timeout_seconds=60,
                      rank=rank, world_size=world_size)
    try:
        device = torch.device('cpu')
        seed = broadcast_seed(100 + rank, device)
        world_barrier(device)
        return seed
    finally:
        cleanup_distributed()


def test_every_rank_gets_rank_zero_seed(spawn_world):
    assert spawn_world(_seed_worker, 2) == [100, 100]
