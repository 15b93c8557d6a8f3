"""
Process Topology

This module maps the flat set of worker ranks onto a 2D grid of
`pipeline_para_size x tensor_para_size` cells and derives, for each rank,
its grid coordinate and the members of its two parallel groups. It is pure
integer arithmetic: nothing here touches `torch.distributed`, so the mapping
can be checked without starting any process.

===============================================================================
EXAMPLE: THE 2x2 GRID
===============================================================================

    tensor_para_size=2, pipeline_para_size=2, world_size=4

          TP dimension →
         ┌─────┬─────┐
   PP  0 │  0  │  1  │   ← tensor-parallel group {0, 1}
   dim   ├─────┼─────┤
   ↓   1 │  2  │  3  │   ← tensor-parallel group {2, 3}
         └─────┴─────┘
            ↑     ↑
            │     └── pipeline-parallel group {1, 3}
            └──────── pipeline-parallel group {0, 2}

    rank 0 -> (pp=0, tp=0)     rank 1 -> (pp=0, tp=1)
    rank 2 -> (pp=1, tp=0)     rank 3 -> (pp=1, tp=1)

Ranks fill the grid row-major (pipeline dimension outer, tensor dimension
inner). Within every group the members are listed in ascending rank order,
so the lowest rank of a group sits in row 0 (pipeline groups) or column 0
(tensor groups) and is the group's local rank 0.

===============================================================================
"""

from dataclasses import dataclass
from typing import List, Tuple, Optional

from .errors import ConfigurationError


@dataclass(frozen=True)
class GridCoordinate:
    """Position of one rank in the (pipeline, tensor) grid."""
    pipeline_rank: int
    tensor_rank: int


class ProcessTopology:
    """
    The rank grid for one run.

    The constructor validates every static constraint so that a mismatch is
    raised before any communication handle is created:

    - `tensor_para_size * pipeline_para_size == world_size`
    - `decoder_layers % pipeline_para_size == 0` (when layers are given)
    - `head_num % tensor_para_size == 0` (when heads are given)
    """

    def __init__(self,
                 world_size: int,
                 tensor_para_size: int,
                 pipeline_para_size: int,
                 decoder_layers: Optional[int] = None,
                 head_num: Optional[int] = None):
        for name, value in (('world_size', world_size),
                            ('tensor_para_size', tensor_para_size),
                            ('pipeline_para_size', pipeline_para_size)):
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        if tensor_para_size * pipeline_para_size != world_size:
            raise ConfigurationError(
                f"tensor_para_size ({tensor_para_size}) * pipeline_para_size "
                f"({pipeline_para_size}) should equal to world_size ({world_size})"
            )

        if decoder_layers is not None and decoder_layers % pipeline_para_size != 0:
            raise ConfigurationError(
                f"decoder_layers ({decoder_layers}) should be divisible by "
                f"pipeline_para_size ({pipeline_para_size})"
            )

        if head_num is not None and head_num % tensor_para_size != 0:
            raise ConfigurationError(
                f"head_num ({head_num}) should be divisible by "
                f"tensor_para_size ({tensor_para_size})"
            )

        self.world_size = world_size
        self.tensor_para_size = tensor_para_size
        self.pipeline_para_size = pipeline_para_size
        self.decoder_layers = decoder_layers
        self.head_num = head_num

    def _check_rank(self, rank: int):
        if not 0 <= rank < self.world_size:
            raise ValueError(f"rank {rank} is outside [0, {self.world_size})")

    def coordinate(self, rank: int) -> GridCoordinate:
        """Grid cell of a global rank."""
        self._check_rank(rank)
        return GridCoordinate(
            pipeline_rank=rank // self.tensor_para_size,
            tensor_rank=rank % self.tensor_para_size,
        )

    def rank_of(self, coord: GridCoordinate) -> int:
        """Inverse of `coordinate`."""
        if not (0 <= coord.pipeline_rank < self.pipeline_para_size
                and 0 <= coord.tensor_rank < self.tensor_para_size):
            raise ValueError(f"{coord} is outside the {self.pipeline_para_size}x{self.tensor_para_size} grid")
        return coord.pipeline_rank * self.tensor_para_size + coord.tensor_rank

    def tensor_group_ranks(self, pipeline_rank: int) -> List[int]:
        """Members of the tensor-parallel group in grid row `pipeline_rank`."""
        start = pipeline_rank * self.tensor_para_size
        return list(range(start, start + self.tensor_para_size))

    def pipeline_group_ranks(self, tensor_rank: int) -> List[int]:
        """Members of the pipeline-parallel group in grid column `tensor_rank`."""
        return list(range(tensor_rank, self.world_size, self.tensor_para_size))

    def all_tensor_groups(self) -> List[List[int]]:
        return [self.tensor_group_ranks(pp) for pp in range(self.pipeline_para_size)]

    def all_pipeline_groups(self) -> List[List[int]]:
        return [self.pipeline_group_ranks(tp) for tp in range(self.tensor_para_size)]

    def groups_of(self, rank: int) -> Tuple[List[int], List[int]]:
        """Return `(tensor_group, pipeline_group)` containing `rank`."""
        coord = self.coordinate(rank)
        return (self.tensor_group_ranks(coord.pipeline_rank),
                self.pipeline_group_ranks(coord.tensor_rank))

    def layer_range(self, pipeline_rank: int) -> range:
        """Contiguous decoder layers owned by one pipeline stage."""
        if self.decoder_layers is None:
            raise ConfigurationError("decoder_layers was not given to this topology")
        per_stage = self.decoder_layers // self.pipeline_para_size
        return range(pipeline_rank * per_stage, (pipeline_rank + 1) * per_stage)

    def head_range(self, tensor_rank: int) -> range:
        """Contiguous attention heads owned by one tensor shard."""
        if self.head_num is None:
            raise ConfigurationError("head_num was not given to this topology")
        per_shard = self.head_num // self.tensor_para_size
        return range(tensor_rank * per_shard, (tensor_rank + 1) * per_shard)

    @property
    def root_coordinate(self) -> GridCoordinate:
        return GridCoordinate(0, 0)

    def is_root(self, rank: int) -> bool:
        """True for the rank at (0, 0), the one that reports results."""
        return self.coordinate(rank) == self.root_coordinate

    def __repr__(self) -> str:
        return (f"ProcessTopology(world_size={self.world_size}, "
                f"tensor_para_size={self.tensor_para_size}, "
                f"pipeline_para_size={self.pipeline_para_size})")


def build_topology(world_size: int, parallelism, model=None) -> ProcessTopology:
    """
    Build a `ProcessTopology` from config sections.

    Args:
        world_size (int): Number of launched processes.
        parallelism: A `ParallelismConfig`.
        model: An optional `ModelConfig`; when given, the layer and head
            divisibility constraints are checked too.
    """
    return ProcessTopology(
        world_size=world_size,
        tensor_para_size=parallelism.tensor_para_size,
        pipeline_para_size=parallelism.pipeline_para_size,
        decoder_layers=model.decoder_layers if model is not None else None,
        head_num=model.head_num if model is not None else None,
    )
