"""
Distributed Backend Initialization and Management.

This module contains utilities for:
- Setting up the default process group (init_process_group)
- Binding each rank to its device
- Full-world barriers with a device synchronization point
- Sharing one random seed across all ranks
- Cleanup and finalization
"""

import os
from datetime import timedelta
from typing import Optional

import torch
import torch.distributed as dist

from .errors import ConfigurationError


def setup_distributed(
    backend: str = 'nccl',
    init_method: Optional[str] = None,
    timeout_seconds: int = 1800,
    rank: Optional[int] = None,
    world_size: Optional[int] = None,
):
    """
    Initialize the default process group.

    When launched with `torchrun`, `rank` and `world_size` come from the
    environment and can be left as None. Calling this twice is a no-op.

    Args:
        backend: Communication backend ('nccl' for GPU, 'gloo' for CPU)
        init_method: Initialization method (env://, tcp://, file://)
        timeout_seconds: Timeout for collective operations
        rank: Explicit global rank (for launchers other than torchrun)
        world_size: Explicit world size (for launchers other than torchrun)
    """
    if dist.is_initialized():
        return

    kwargs = {'backend': backend, 'timeout': timedelta(seconds=timeout_seconds)}
    if init_method is not None:
        kwargs['init_method'] = init_method
    if rank is not None:
        kwargs['rank'] = rank
    if world_size is not None:
        kwargs['world_size'] = world_size

    dist.init_process_group(**kwargs)


def cleanup_distributed():
    """Destroy the default process group if one exists."""
    if dist.is_initialized():
        dist.destroy_process_group()


def get_rank() -> int:
    """Get the rank of the current process."""
    if dist.is_initialized():
        return dist.get_rank()
    return 0


def select_device(device_type: str = 'cuda', rank: Optional[int] = None) -> torch.device:
    """
    Bind the current process to its device.

    CUDA ranks use `LOCAL_RANK` when the launcher sets it, otherwise
    `rank % device_count`.

    Returns:
        torch.device: The device this rank computes on.

    Raises:
        ConfigurationError: If the device type is unknown or has no device.
    """
    if device_type == 'cpu':
        return torch.device('cpu')

    if device_type != 'cuda':
        raise ConfigurationError(f"Unsupported device_type '{device_type}', expected 'cuda' or 'cpu'")

    if rank is None:
        rank = get_rank()
    device_count = torch.cuda.device_count()
    if device_count == 0:
        raise ConfigurationError("device_type 'cuda' requested but no CUDA device is visible")

    local_rank = int(os.environ.get("LOCAL_RANK", rank)) % device_count
    torch.cuda.set_device(local_rank)
    return torch.device(f"cuda:{local_rank}")


def synchronize_device(device: torch.device):
    """Block until all queued work on `device` has finished."""
    if device.type == 'cuda':
        torch.cuda.synchronize(device)


def world_barrier(device: torch.device):
    """
    Synchronize the device, then wait for every rank in the world.

    There is no timeout beyond the process group's own: a rank that never
    arrives blocks the others.
    """
    synchronize_device(device)
    if dist.is_initialized() and dist.get_world_size() > 1:
        if device.type == 'cuda':
            dist.barrier(device_ids=[device.index])
        else:
            dist.barrier()


def broadcast_seed(seed: int, device: torch.device) -> int:
    """
    Return rank 0's `seed` on every rank.

    Args:
        seed: This rank's candidate seed; only rank 0's value survives.
        device: Device to stage the broadcast tensor on.
    """
    if not dist.is_initialized() or dist.get_world_size() == 1:
        return seed
    seed_tensor = torch.tensor([seed], dtype=torch.int64, device=device)
    dist.broadcast(seed_tensor, src=0)
    return int(seed_tensor.item())
