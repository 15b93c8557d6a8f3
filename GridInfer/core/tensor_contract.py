"""
Tensor Contract

This module builds the shaped tensors that frame one inference call: what
the driver hands to the model executor and what the executor fills in.

===============================================================================
SHAPES (batch=B, beam=W, max_input_len=I, request_output_len=R, T=I+R)
===============================================================================

    inputs                      location   dtype     shape
    ───────────────────────────────────────────────────────────
    input_ids                   device     int32     (B*W, I)
    input_lengths               device     int32     (B*W,)
    output_seq_len              host       int32     (1,)       holds T

    outputs
    ───────────────────────────────────────────────────────────
    output_ids                  device     int32     (B, W, T)
    parent_ids                  device     int32     (T, B, W)
    sequence_length             device     int32     (B, W)
    output_log_probs            device     float32   (R, B, W)  optional

Every prompt is repeated W times consecutively in `input_ids`, so row
`b*W + w` holds prompt `b` for beam `w`.

All buffers are allocated once, sized to T, and never grow: a request with
`I + R > max_seq_len` is rejected with `ShapeError` before anything is
allocated. With `I == 0` (unconditional generation) `input_ids` is an empty
`(B*W, 0)` buffer and `input_lengths` is all zeros.

===============================================================================
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import torch

from .errors import ShapeError
from .topology import GridCoordinate


class MemoryLocation(Enum):
    HOST = 'host'
    DEVICE = 'device'


@dataclass
class TensorDescriptor:
    """
    A tensor as seen by the executor: where it lives, its element type, its
    shape and the buffer itself. `data` is None for optional outputs that
    were not requested.
    """
    location: MemoryLocation
    dtype: torch.dtype
    shape: Tuple[int, ...]
    data: Optional[torch.Tensor] = None

    def __post_init__(self):
        self.shape = tuple(int(dim) for dim in self.shape)
        if self.data is not None and tuple(self.data.shape) != self.shape:
            raise ShapeError(f"buffer shape {tuple(self.data.shape)} does not match descriptor shape {self.shape}")

    @property
    def numel(self) -> int:
        count = 1
        for dim in self.shape:
            count *= dim
        return count


@dataclass(frozen=True)
class InferenceRequest:
    """
    One batch of prompts. `input_token_ids` holds one prompt per batch
    element, right-padded to `max_input_len`; `input_lengths` holds the
    unpadded lengths.
    """
    batch_size: int
    beam_width: int
    max_input_len: int
    request_output_len: int
    input_token_ids: Tuple[Tuple[int, ...], ...]
    input_lengths: Tuple[int, ...]

    def __post_init__(self):
        for name in ('batch_size', 'beam_width', 'request_output_len'):
            value = getattr(self, name)
            if value <= 0:
                raise ShapeError(f"{name} must be positive, got {value}")
        if self.max_input_len < 0:
            raise ShapeError(f"max_input_len must be non-negative, got {self.max_input_len}")
        if len(self.input_lengths) != self.batch_size:
            raise ShapeError(f"expected {self.batch_size} input lengths, got {len(self.input_lengths)}")
        if len(self.input_token_ids) != self.batch_size:
            raise ShapeError(f"expected {self.batch_size} prompts, got {len(self.input_token_ids)}")
        for ids, length in zip(self.input_token_ids, self.input_lengths):
            if len(ids) != self.max_input_len:
                raise ShapeError(f"prompt of {len(ids)} ids is not padded to max_input_len {self.max_input_len}")
            if not 0 <= length <= self.max_input_len:
                raise ShapeError(f"input length {length} outside [0, {self.max_input_len}]")

    @property
    def total_output_len(self) -> int:
        return self.max_input_len + self.request_output_len

    @property
    def is_unconditional(self) -> bool:
        return self.max_input_len == 0

    @classmethod
    def from_prompts(cls,
                     prompts: Sequence[Sequence[int]],
                     batch_size: int,
                     beam_width: int,
                     request_output_len: int,
                     end_id: int) -> 'InferenceRequest':
        """
        Build a request from unpadded prompts.

        Prompts are padded with `end_id`. If fewer prompts than `batch_size`
        are given they are reused cyclically; extra prompts are dropped. An
        empty `prompts` gives an unconditional request.
        """
        if not prompts:
            return cls(batch_size, beam_width, 0, request_output_len,
                       tuple(() for _ in range(batch_size)), tuple(0 for _ in range(batch_size)))

        batch = [list(prompts[i % len(prompts)]) for i in range(batch_size)]
        max_input_len = max(len(p) for p in batch)
        padded = tuple(tuple(p + [end_id] * (max_input_len - len(p))) for p in batch)
        return cls(batch_size, beam_width, max_input_len, request_output_len,
                   padded, tuple(len(p) for p in batch))


@dataclass
class InferenceResult:
    """Executor outputs; device resident until `to_host` is called."""
    output_ids: torch.Tensor
    parent_ids: torch.Tensor
    sequence_lengths: torch.Tensor
    output_log_probs: Optional[torch.Tensor] = None

    def to_host(self) -> 'InferenceResult':
        return InferenceResult(
            output_ids=self.output_ids.cpu(),
            parent_ids=self.parent_ids.cpu(),
            sequence_lengths=self.sequence_lengths.cpu(),
            output_log_probs=self.output_log_probs.cpu() if self.output_log_probs is not None else None,
        )


@dataclass
class TensorContract:
    """The full descriptor set for one call, owned by the driver."""
    request: InferenceRequest
    coordinate: Optional[GridCoordinate]
    inputs: Dict[str, TensorDescriptor]
    outputs: Dict[str, TensorDescriptor]

    @property
    def total_output_len(self) -> int:
        return self.request.total_output_len

    def shapes(self) -> Dict[str, Tuple[int, ...]]:
        return {name: desc.shape for name, desc in {**self.inputs, **self.outputs}.items()}

    def result(self) -> InferenceResult:
        return InferenceResult(
            output_ids=self.outputs['output_ids'].data,
            parent_ids=self.outputs['parent_ids'].data,
            sequence_lengths=self.outputs['sequence_length'].data,
            output_log_probs=self.outputs['output_log_probs'].data,
        )


def check_capacity(request: InferenceRequest, max_seq_len: int):
    """Raise `ShapeError` if the request does not fit the sequence buffers."""
    if request.total_output_len > max_seq_len:
        raise ShapeError(
            f"total_output_len ({request.total_output_len}) = max_input_len ({request.max_input_len}) "
            f"+ request_output_len ({request.request_output_len}) should be <= max_seq_len ({max_seq_len})"
        )


def _tile_beams(rows: Sequence, beam_width: int) -> List:
    return [row for row in rows for _ in range(beam_width)]


def build_tensor_contract(request: InferenceRequest,
                          max_seq_len: int,
                          device: torch.device,
                          coordinate: Optional[GridCoordinate] = None,
                          return_log_probs: bool = False) -> TensorContract:
    """
    Allocate and describe every tensor of one inference call.

    Args:
        request (InferenceRequest): The batch of prompts.
        max_seq_len (int): Capacity of the sequence buffers.
        device (torch.device): Device for the device-resident buffers.
        coordinate (GridCoordinate, optional): The caller's grid cell. Every
            rank builds the same shapes; it is kept for bookkeeping.
        return_log_probs (bool): Allocate `output_log_probs`.

    Returns:
        TensorContract: Inputs filled in, outputs zero-initialised.

    Raises:
        ShapeError: If `max_input_len + request_output_len > max_seq_len`.
    """
    check_capacity(request, max_seq_len)

    batch, beam = request.batch_size, request.beam_width
    rows = batch * beam
    total_len = request.total_output_len
    host = torch.device('cpu')

    if request.is_unconditional:
        input_ids = torch.empty((rows, 0), dtype=torch.int32, device=device)
        input_lengths = torch.zeros((rows,), dtype=torch.int32, device=device)
    else:
        input_ids = torch.tensor(_tile_beams(request.input_token_ids, beam), dtype=torch.int32, device=device)
        input_lengths = torch.tensor(_tile_beams(request.input_lengths, beam), dtype=torch.int32, device=device)

    inputs = {
        'input_ids': TensorDescriptor(MemoryLocation.DEVICE, torch.int32, (rows, request.max_input_len), input_ids),
        'input_lengths': TensorDescriptor(MemoryLocation.DEVICE, torch.int32, (rows,), input_lengths),
        'output_seq_len': TensorDescriptor(MemoryLocation.HOST, torch.int32, (1,),
                                           torch.tensor([total_len], dtype=torch.int32, device=host)),
    }

    log_probs_shape = (request.request_output_len, batch, beam)
    outputs = {
        'output_ids': TensorDescriptor(MemoryLocation.DEVICE, torch.int32, (batch, beam, total_len),
                                       torch.zeros((batch, beam, total_len), dtype=torch.int32, device=device)),
        'parent_ids': TensorDescriptor(MemoryLocation.DEVICE, torch.int32, (total_len, batch, beam),
                                       torch.zeros((total_len, batch, beam), dtype=torch.int32, device=device)),
        'sequence_length': TensorDescriptor(MemoryLocation.DEVICE, torch.int32, (batch, beam),
                                            torch.zeros((batch, beam), dtype=torch.int32, device=device)),
        'output_log_probs': TensorDescriptor(
            MemoryLocation.DEVICE, torch.float32, log_probs_shape,
            torch.zeros(log_probs_shape, dtype=torch.float32, device=device) if return_log_probs else None),
    }

    return TensorContract(request=request, coordinate=coordinate, inputs=inputs, outputs=outputs)
