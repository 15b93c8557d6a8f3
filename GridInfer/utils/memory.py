"""
Memory Tracking.
"""

import torch
from typing import Dict, Optional


def get_memory_usage(device: Optional[torch.device] = None) -> Dict[str, float]:
    """
    Get current memory usage statistics.

    Returns:
        Dictionary with memory stats in bytes (allocated, reserved, etc.).
        All zeros on CPU.
    """
    if device is None:
        device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    if device.type != 'cuda':
        return {"allocated": 0, "reserved": 0, "max_allocated": 0, "max_reserved": 0}
    return {
        "allocated": torch.cuda.memory_allocated(device),
        "reserved": torch.cuda.memory_reserved(device),
        "max_allocated": torch.cuda.max_memory_allocated(device),
        "max_reserved": torch.cuda.max_memory_reserved(device),
    }


def format_memory_usage(device: Optional[torch.device] = None) -> str:
    """One-line human readable form of `get_memory_usage`."""
    stats = get_memory_usage(device)
    mib = 1024 ** 2
    return ", ".join(f"{k}={v / mib:.2f} MiB" for k, v in stats.items())
