"""
Reading request prompts and writing the output artifact.
"""

import csv
import os
from typing import Iterable, List, Optional, Sequence

from ..core.errors import ConfigurationError


def read_start_ids(path: Optional[str], batch_size: Optional[int] = None) -> List[List[int]]:
    """
    Read prompts from a CSV file, one prompt of comma separated token ids per
    line.

    A missing path, a missing file or a file with no prompts yields an empty
    list, which means unconditional generation. Lines past `batch_size` are
    ignored.

    Raises:
        ConfigurationError: If a line holds something other than integers.
    """
    if path is None or not os.path.exists(path):
        return []

    prompts = []
    with open(path, 'r', newline='') as f:
        for line_no, row in enumerate(csv.reader(f), start=1):
            try:
                tokens = [int(tok) for tok in row if tok.strip()]
            except ValueError as e:
                raise ConfigurationError(f"{path}:{line_no}: start ids must be integers ({e})") from e
            if not tokens:
                continue
            prompts.append(tokens)
            if batch_size is not None and len(prompts) == batch_size:
                break
    return prompts


def format_sequences(token_ids: Sequence[int], sequence_len: int) -> Iterable[str]:
    """Yield one line per sequence: ids joined by single spaces, newline terminated."""
    if sequence_len <= 0:
        return
    for start in range(0, len(token_ids), sequence_len):
        yield " ".join(str(tok) for tok in token_ids[start:start + sequence_len]) + "\n"


def write_output_ids(path: str, token_ids: Sequence[int], sequence_len: int) -> int:
    """
    Write the flattened `(batch, beam, sequence_len)` output ids to `path`.

    Returns:
        int: Number of token ids written.

    Raises:
        OSError: If the file cannot be opened.
    """
    if sequence_len > 0 and len(token_ids) % sequence_len != 0:
        raise ValueError(f"{len(token_ids)} ids do not split into sequences of length {sequence_len}")

    with open(path, 'w') as f:
        f.writelines(format_sequences(token_ids, sequence_len))
    return len(token_ids)
