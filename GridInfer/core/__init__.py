"""
Core components of GridInfer.

This module contains:
- Process topology (rank -> grid coordinate, group membership)
- Distributed backend initialization
- Process group and communication handle management
- The tensor contract and the inference driver
"""

from .errors import (
    GridInferError,
    ConfigurationError,
    ShapeError,
    ExecutorFailure,
    CommunicationFailure,
)
from .config import load_config, build_run_config, RunConfig
from .topology import ProcessTopology, GridCoordinate, build_topology
from .distributed import setup_distributed, cleanup_distributed
from .process_groups import ProcessGroupManager, init_process_groups
from .comm_handles import CollectiveHandleInitializer, CommHandle
from .tensor_contract import (
    InferenceRequest,
    InferenceResult,
    TensorDescriptor,
    TensorContract,
    MemoryLocation,
    build_tensor_contract,
)
from .driver import DistributedInferenceDriver, DriverState, RunOutcome, run_inference

__all__ = [
    'GridInferError',
    'ConfigurationError',
    'ShapeError',
    'ExecutorFailure',
    'CommunicationFailure',
    'load_config',
    'build_run_config',
    'RunConfig',
    'ProcessTopology',
    'GridCoordinate',
    'build_topology',
    'setup_distributed',
    'cleanup_distributed',
    'ProcessGroupManager',
    'init_process_groups',
    'CollectiveHandleInitializer',
    'CommHandle',
    'InferenceRequest',
    'InferenceResult',
    'TensorDescriptor',
    'TensorContract',
    'MemoryLocation',
    'build_tensor_contract',
    'DistributedInferenceDriver',
    'DriverState',
    'RunOutcome',
    'run_inference',
]
