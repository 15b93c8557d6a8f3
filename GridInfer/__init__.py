"""
GridInfer - Tensor x Pipeline Parallel Inference Bootstrap

Coordinates one distributed inference call of a sharded language model:
- Mapping ranks onto a pipeline x tensor grid
- Creating the parallel groups and distributing their communication handles
- Building the request/response tensor contract
- Running and timing the warm-up and measured passes

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "GridInfer Team"

from .core import (
    ProcessTopology,
    GridCoordinate,
    ProcessGroupManager,
    CollectiveHandleInitializer,
    CommHandle,
    InferenceRequest,
    TensorDescriptor,
    build_tensor_contract,
    DistributedInferenceDriver,
    run_inference,
    load_config,
    build_run_config,
    ConfigurationError,
    ShapeError,
    ExecutorFailure,
    CommunicationFailure,
)
from .core.executor import ModelExecutor, register_executor, get_executor

__all__ = [
    'ProcessTopology',
    'GridCoordinate',
    'ProcessGroupManager',
    'CollectiveHandleInitializer',
    'CommHandle',
    'InferenceRequest',
    'TensorDescriptor',
    'build_tensor_contract',
    'DistributedInferenceDriver',
    'run_inference',
    'load_config',
    'build_run_config',
    'ModelExecutor',
    'register_executor',
    'get_executor',
    'ConfigurationError',
    'ShapeError',
    'ExecutorFailure',
    'CommunicationFailure',
]
