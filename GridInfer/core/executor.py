"""
Model Executor Interface

The numerical forward pass and weight loading live outside GridInfer. The
driver only needs something it can call with the tensor contract:

.. code-block:: python

    executor.forward(output_tensors, input_tensors)

Executors are created by name through `get_executor`, the same way a
strategy is picked from a config string. Names registered with
`register_executor` are looked up first; anything of the form
`package.module:ClassName` is imported.

`EchoExecutor` is the built-in `echo` executor. It does no model math: it
copies each prompt into the output, fills the generated tail with a
deterministic token pattern, and issues one all-reduce on each parallel
group so that broken group wiring fails loudly.
"""

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Type

import torch
import torch.distributed as dist

from .config import RunConfig
from .comm_handles import CommHandle
from .errors import ConfigurationError
from .process_groups import TENSOR_PARALLEL, PIPELINE_PARALLEL
from .tensor_contract import TensorDescriptor
from .topology import GridCoordinate


@dataclass
class ExecutorContext:
    """Everything an executor may need to build its shard of the model."""
    config: RunConfig
    coordinate: GridCoordinate
    layer_range: range
    head_range: range
    device: torch.device
    handles: Dict[str, CommHandle] = field(default_factory=dict)
    seed: int = 0
    stream: Optional[Any] = None


class ModelExecutor(ABC):
    """
    Abstract base class for model executors.

    `forward` reads the input descriptors and writes into the output
    descriptors' buffers in place. It must return only after all of its
    device work has been queued on the context's stream; the driver
    synchronizes before reading anything back.
    """
    def __init__(self, context: ExecutorContext):
        self.context = context

    @abstractmethod
    def forward(self,
                output_tensors: Dict[str, TensorDescriptor],
                input_tensors: Dict[str, TensorDescriptor]):
        pass


_EXECUTORS: Dict[str, Type[ModelExecutor]] = {}


def register_executor(name: str):
    """Class decorator adding an executor to the registry under `name`."""
    def decorator(cls):
        _EXECUTORS[name] = cls
        return cls
    return decorator


def resolve_executor(name: str) -> Type[ModelExecutor]:
    if name in _EXECUTORS:
        return _EXECUTORS[name]

    if ':' in name:
        module_name, _, class_name = name.partition(':')
        try:
            executor_class = getattr(importlib.import_module(module_name), class_name)
        except (ImportError, AttributeError) as e:
            raise ConfigurationError(f"Cannot import executor '{name}': {e}") from e
        if not (isinstance(executor_class, type) and issubclass(executor_class, ModelExecutor)):
            raise ConfigurationError(f"'{name}' is not a ModelExecutor subclass")
        return executor_class

    raise ConfigurationError(
        f"Unknown executor: '{name}'. Available executors are: {sorted(_EXECUTORS)} "
        f"or a 'module:ClassName' import path"
    )


def get_executor(name: str, context: ExecutorContext) -> ModelExecutor:
    """
    Factory function to build a model executor.

    Args:
        name (str): A registered name or a 'module:ClassName' path.
        context (ExecutorContext): Shard and device information for this rank.

    Raises:
        ConfigurationError: If `name` cannot be resolved.
    """
    return resolve_executor(name)(context)


@register_executor('echo')
class EchoExecutor(ModelExecutor):
    """
    Deterministic stand-in for a real model.

    For sequence (b, w) the output is the padded prompt followed by
    `(start_id + step) % vocab_size` for each generated step. Parent ids are
    the beam index, sequence lengths are `total_output_len` and log-probs are
    zero.
    """
    def _check_group(self, kind: str):
        handle = self.context.handles.get(kind)
        if handle is None or handle.process_group is None:
            return
        probe = torch.ones(1, dtype=torch.int32, device=self.context.device)
        dist.all_reduce(probe, group=handle.process_group)
        if int(probe.item()) != handle.group_size:
            raise RuntimeError(
                f"{kind} group all-reduce returned {int(probe.item())}, expected {handle.group_size}"
            )

    @torch.no_grad()
    def forward(self, output_tensors, input_tensors):
        self._check_group(TENSOR_PARALLEL)
        self._check_group(PIPELINE_PARALLEL)

        sampling = self.context.config.sampling
        vocab_size = self.context.config.model.vocab_size

        input_ids = input_tensors['input_ids'].data
        total_len = int(input_tensors['output_seq_len'].data[0].item())
        output_ids = output_tensors['output_ids'].data
        batch, beam, _ = output_ids.shape
        input_len = input_ids.shape[1]

        if input_len > 0:
            output_ids[:, :, :input_len] = input_ids.view(batch, beam, input_len)
        steps = torch.arange(total_len - input_len, dtype=torch.int64, device=output_ids.device)
        output_ids[:, :, input_len:] = ((sampling.start_id + steps) % vocab_size).to(output_ids.dtype)

        parent_ids = output_tensors['parent_ids'].data
        parent_ids.copy_(torch.arange(beam, dtype=parent_ids.dtype, device=parent_ids.device).expand_as(parent_ids))

        output_tensors['sequence_length'].data.fill_(total_len)

        log_probs = output_tensors['output_log_probs'].data
        if log_probs is not None:
            log_probs.zero_()
