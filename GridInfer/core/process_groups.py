"""
Process Group Management

This module turns the rank lists of a `ProcessTopology` into
`torch.distributed` sub-groups: one tensor-parallel group per grid row and
one pipeline-parallel group per grid column.

===============================================================================
CONCEPTUAL EXAMPLE:
===============================================================================

.. code-block:: python

    from GridInfer.core.topology import ProcessTopology
    from GridInfer.core.process_groups import init_process_groups

    topology = ProcessTopology(world_size=4, tensor_para_size=2, pipeline_para_size=2)

    # Every rank makes this same call. Rank 3 ends up holding
    # tp -> <ProcessGroup [2, 3]> and pp -> <ProcessGroup [1, 3]>.
    pg_manager = init_process_groups(topology, backend='gloo')
    tp_group = pg_manager.get_group('tp')

`dist.new_group` is itself a collective over the default group: every rank
must create every group, in the same order, even the groups it is not a
member of. The manager therefore walks all tensor groups and then all
pipeline groups and keeps only the two that contain the calling rank.

===============================================================================
"""

from datetime import timedelta
from typing import Dict, List, Optional

import torch.distributed as dist

from .topology import ProcessTopology, GridCoordinate

TENSOR_PARALLEL = 'tp'
PIPELINE_PARALLEL = 'pp'


class ProcessGroupManager:
    """
    Creates and hands out the tensor- and pipeline-parallel process groups of
    the calling rank.
    """
    def __init__(self,
                 topology: ProcessTopology,
                 backend: Optional[str] = None,
                 timeout_seconds: Optional[int] = None,
                 rank: Optional[int] = None):
        """
        Args:
            topology (ProcessTopology): The validated rank grid.
            backend (str, optional): Backend for the sub-groups; defaults to the
                backend of the default group.
            timeout_seconds (int, optional): Collective timeout for the sub-groups.
            rank (int, optional): Global rank; read from the default group when None.
        """
        if not dist.is_initialized():
            raise RuntimeError("The default process group must be initialized before creating sub-groups")

        if dist.get_world_size() != topology.world_size:
            raise RuntimeError(
                f"Topology expects world_size {topology.world_size} but the default "
                f"process group has {dist.get_world_size()} ranks"
            )

        self.topology = topology
        self.rank = dist.get_rank() if rank is None else rank
        self.coordinate: GridCoordinate = topology.coordinate(self.rank)
        self.groups: Dict[str, dist.ProcessGroup] = {}
        self.group_ranks: Dict[str, List[int]] = {}

        kwargs = {}
        if backend is not None:
            kwargs['backend'] = backend
        if timeout_seconds is not None:
            kwargs['timeout'] = timedelta(seconds=timeout_seconds)

        self._init_groups(TENSOR_PARALLEL, topology.all_tensor_groups(), kwargs)
        self._init_groups(PIPELINE_PARALLEL, topology.all_pipeline_groups(), kwargs)

    def _init_groups(self, dim_name: str, all_groups: List[List[int]], kwargs: dict):
        for ranks in all_groups:
            new_pg = dist.new_group(ranks=ranks, **kwargs)
            if self.rank in ranks:
                self.groups[dim_name] = new_pg
                self.group_ranks[dim_name] = ranks

    def get_group(self, dim_name: str) -> dist.ProcessGroup:
        """
        Get the process group for a specific dimension.

        Args:
            dim_name (str): 'tp' or 'pp'.

        Returns:
            dist.ProcessGroup: The communication group for that dimension.
        """
        return self.groups[dim_name]

    def get_group_ranks(self, dim_name: str) -> List[int]:
        """Global ranks of this rank's group along `dim_name`, ascending."""
        return self.group_ranks[dim_name]

    def get_group_rank(self, dim_name: str) -> int:
        """This rank's local rank inside its `dim_name` group."""
        return self.group_ranks[dim_name].index(self.rank)

    def get_all_groups(self) -> Dict[str, dist.ProcessGroup]:
        return self.groups

    def print_mesh_info(self):
        """
        Prints the grid configuration and rank assignments.
        Only prints from global rank 0.
        """
        if self.rank != 0:
            return
        topology = self.topology
        print("\n" + "=" * 60)
        print("Device Grid Configuration")
        print("=" * 60)
        print(f"Pipeline parallel size: {topology.pipeline_para_size}")
        print(f"Tensor parallel size:   {topology.tensor_para_size}")
        print("-" * 60)
        print("Global Rank | Coordinates")
        print("-" * 60)
        for rank in range(topology.world_size):
            coord = topology.coordinate(rank)
            print(f"Rank {rank:3d}    | pp={coord.pipeline_rank}, tp={coord.tensor_rank}")
        print("=" * 60 + "\n")


def init_process_groups(topology: ProcessTopology,
                        backend: Optional[str] = None,
                        timeout_seconds: Optional[int] = None) -> ProcessGroupManager:
    """
    A factory function to initialize the ProcessGroupManager.

    Args:
        topology (ProcessTopology): The validated rank grid.
        backend (str, optional): Backend for the sub-groups.
        timeout_seconds (int, optional): Collective timeout for the sub-groups.

    Returns:
        ProcessGroupManager: An initialized instance of the manager.
    """
    return ProcessGroupManager(topology, backend=backend, timeout_seconds=timeout_seconds)
