"""
Utility Functions for GridInfer.
"""

from .logging import setup_logger, log_rank_0
from .logger import setup_rank_logging, restore_rank_logging
from .profiling import profile_time, Timer
from .memory import get_memory_usage, format_memory_usage
from .io import read_start_ids, write_output_ids

__all__ = [
    'setup_logger',
    'log_rank_0',
    'setup_rank_logging',
    'restore_rank_logging',
    'profile_time',
    'Timer',
    'get_memory_usage',
    'format_memory_usage',
    'read_start_ids',
    'write_output_ids',
]
