"""
Distributed Logging Utilities.
"""

import logging
import os
from typing import Optional

import torch.distributed as dist

_FORMAT = '%(asctime)s [Rank %(rank)s] %(levelname)s %(name)s: %(message)s'


class _RankFilter(logging.Filter):
    """Stamps every record with the current global rank."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.rank = dist.get_rank() if dist.is_available() and dist.is_initialized() else 0
        return True


def setup_logger(
    name: str = 'gridinfer',
    level: int = logging.INFO,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Setup logger with rank-aware formatting.

    Repeated calls with the same name reuse the existing handlers; a
    `log_file` is attached at most once.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    if not any(isinstance(f, _RankFilter) for f in logger.filters):
        logger.addFilter(_RankFilter())

    formatter = logging.Formatter(_FORMAT)
    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    if log_file is not None:
        attached = [getattr(h, 'baseFilename', None) for h in logger.handlers]
        if os.path.abspath(log_file) not in attached:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


def log_rank_0(message: str, level: int = logging.INFO, name: str = 'gridinfer'):
    """
    Log message only from rank 0 to avoid duplicate logs.
    """
    if dist.is_available() and dist.is_initialized() and dist.get_rank() != 0:
        return
    setup_logger(name).log(level, message)
