"""
Collective Handle Initialization

Each parallel group needs one communication identity that every member
agrees on before the first collective is issued on that group. The member
with group-local rank 0 generates it and broadcasts it to the others:

    tensor group {2, 3}                     pipeline group {1, 3}

    rank 2 (local 0)   rank 3 (local 1)     rank 1 (local 0)   rank 3 (local 1)
    ┌───────────────┐                       ┌───────────────┐
    │ generate uid  │                       │ generate uid  │
    └──────┬────────┘                       └──────┬────────┘
           │  broadcast(src=2, group=tp)           │  broadcast(src=1, group=pp)
           ├──────────────────► uid                ├──────────────────► uid
           ▼                                       ▼
      CommHandle(tp)      CommHandle(tp)      CommHandle(pp)      CommHandle(pp)

The broadcast blocks until it returns on every member, so no member can
use a handle that its peers do not hold yet.

Known limitation: if a peer never reaches the broadcast (it crashed, or it
failed validation that the others passed) the remaining members block until
the process group timeout expires. There is no internal timeout or retry;
supervision is left to the launcher.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import torch
import torch.distributed as dist

from .process_groups import ProcessGroupManager, TENSOR_PARALLEL, PIPELINE_PARALLEL
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

# Same size as an NCCL unique id.
UNIQUE_ID_BYTES = 128


def generate_unique_id() -> bytes:
    """Create a fresh, random communication identity."""
    return os.urandom(UNIQUE_ID_BYTES)


@dataclass
class CommHandle:
    """
    Communication identity of one parallel group, as held by one member.

    Immutable after distribution apart from `released`, which is set once at
    shutdown.
    """
    kind: str
    ranks: List[int]
    unique_id: bytes
    group_rank: int
    process_group: Optional[dist.ProcessGroup] = field(default=None, repr=False, compare=False)
    released: bool = field(default=False, compare=False)

    @property
    def group_size(self) -> int:
        return len(self.ranks)

    @property
    def root_rank(self) -> int:
        """Global rank that generated the handle."""
        return self.ranks[0]

    def release(self):
        """Destroy the underlying process group. Safe to call twice."""
        if self.released:
            return
        if self.process_group is not None and dist.is_initialized():
            dist.destroy_process_group(self.process_group)
        self.process_group = None
        self.released = True


class CollectiveHandleInitializer:
    """
    Distributes one `CommHandle` per parallel group kind ('tp' and 'pp').

    Every rank calls `initialize()`; it returns once both broadcasts have
    completed on the calling rank.
    """
    def __init__(self, pg_manager: ProcessGroupManager, device: Optional[torch.device] = None):
        """
        Args:
            pg_manager (ProcessGroupManager): Holds this rank's sub-groups.
            device (torch.device, optional): Device used to stage the
                broadcast. Required for NCCL groups, ignored by gloo.
        """
        self.pg_manager = pg_manager
        self.device = device
        self.handles: Dict[str, CommHandle] = {}

    def _distribute(self, kind: str) -> CommHandle:
        ranks = self.pg_manager.get_group_ranks(kind)
        group = self.pg_manager.get_group(kind)
        group_rank = self.pg_manager.get_group_rank(kind)

        payload = [generate_unique_id() if group_rank == 0 else None]
        if len(ranks) > 1:
            broadcast_device = self.device if self.device is not None and self.device.type == 'cuda' else None
            dist.broadcast_object_list(payload, src=ranks[0], group=group, device=broadcast_device)

        unique_id = payload[0]
        if not isinstance(unique_id, bytes) or len(unique_id) != UNIQUE_ID_BYTES:
            raise RuntimeError(f"Rank {self.pg_manager.rank} received a malformed {kind} handle from rank {ranks[0]}")

        logger.debug(f"{kind} handle {unique_id[:4].hex()}... shared by ranks {ranks}")
        return CommHandle(kind=kind, ranks=ranks, unique_id=unique_id,
                          group_rank=group_rank, process_group=group)

    def initialize(self) -> Dict[str, CommHandle]:
        """
        Generate or receive the tensor-parallel handle, then the
        pipeline-parallel one.

        Returns:
            Dict[str, CommHandle]: {'tp': ..., 'pp': ...}
        """
        if self.handles:
            return self.handles
        for kind in (TENSOR_PARALLEL, PIPELINE_PARALLEL):
            self.handles[kind] = self._distribute(kind)
        return self.handles

    def release(self):
        """Release every handle created by `initialize`."""
        for handle in self.handles.values():
            handle.release()
