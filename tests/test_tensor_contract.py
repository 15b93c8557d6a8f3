"""
Tests for the Tensor Contract.

These tests verify the descriptor shapes handed to the model executor, the
sequence capacity check, beam tiling of prompts and the unconditional
(no prompt) case. Everything runs on CPU without a process group.
"""

import pytest
import torch

from GridInfer.core.errors import ShapeError
from GridInfer.core.tensor_contract import (
    InferenceRequest,
    MemoryLocation,
    TensorDescriptor,
    build_tensor_contract,
)
from GridInfer.core.topology import GridCoordinate


def request_with(batch=1, beam=1, input_len=5, output_len=3):
    prompts = [list(range(1, input_len + 1))] * batch if input_len else []
    return InferenceRequest.from_prompts(prompts, batch_size=batch, beam_width=beam,
                                         request_output_len=output_len, end_id=0)


def test_single_sequence_shapes(device):
    contract = build_tensor_contract(request_with(), max_seq_len=8, device=device)

    assert contract.total_output_len == 8
    assert contract.outputs['output_ids'].shape == (1, 1, 8)
    assert contract.outputs['output_ids'].numel == 8
    assert contract.inputs['input_ids'].shape == (1, 5)
    assert contract.inputs['output_seq_len'].location is MemoryLocation.HOST
    assert contract.inputs['output_seq_len'].data.tolist() == [8]


def test_batch_and_beam_shapes(device):
    contract = build_tensor_contract(request_with(batch=3, beam=2, input_len=4, output_len=6),
                                     max_seq_len=16, device=device, return_log_probs=True)

    assert contract.shapes() == {
        'input_ids': (6, 4),
        'input_lengths': (6,),
        'output_seq_len': (1,),
        'output_ids': (3, 2, 10),
        'parent_ids': (10, 3, 2),
        'sequence_length': (3, 2),
        'output_log_probs': (6, 3, 2),
    }
    assert contract.outputs['output_log_probs'].dtype == torch.float32
    assert contract.outputs['output_log_probs'].data is not None
    for desc in list(contract.inputs.values()) + list(contract.outputs.values()):
        assert tuple(desc.data.shape) == desc.shape


def test_log_probs_descriptor_without_buffer(device):
    contract = build_tensor_contract(request_with(), max_seq_len=8, device=device)
    log_probs = contract.outputs['output_log_probs']

    assert log_probs.shape == (3, 1, 1)
    assert log_probs.data is None
    assert contract.result().output_log_probs is None


def test_capacity_boundary(device):
    build_tensor_contract(request_with(input_len=5, output_len=3), max_seq_len=8, device=device)
    with pytest.raises(ShapeError, match="max_seq_len"):
        build_tensor_contract(request_with(input_len=6, output_len=3), max_seq_len=8, device=device)


def test_identical_requests_give_identical_shapes(device):
    request = request_with(batch=2, beam=3)
    coord = GridCoordinate(1, 0)

    first = build_tensor_contract(request, max_seq_len=8, device=device, coordinate=coord)
    second = build_tensor_contract(request, max_seq_len=8, device=device, coordinate=coord)

    assert first.shapes() == second.shapes()


def test_unconditional_request_uses_empty_buffers(device):
    request = request_with(batch=2, beam=2, input_len=0, output_len=4)
    contract = build_tensor_contract(request, max_seq_len=4, device=device)

    assert request.is_unconditional
    input_ids = contract.inputs['input_ids']
    assert input_ids.shape == (4, 0)
    assert input_ids.data is not None and input_ids.data.numel() == 0
    assert contract.inputs['input_lengths'].data.tolist() == [0, 0, 0, 0]
    assert contract.outputs['output_ids'].shape == (2, 2, 4)

    result = contract.result()
    assert result.output_ids is not None
    assert result.to_host().output_ids.shape == (2, 2, 4)


def test_prompts_are_padded_cycled_and_tiled(device):
    request = InferenceRequest.from_prompts([[5, 6, 7], [8]], batch_size=3, beam_width=2,
                                            request_output_len=1, end_id=99)

    assert request.max_input_len == 3
    assert request.input_token_ids == ((5, 6, 7), (8, 99, 99), (5, 6, 7))
    assert request.input_lengths == (3, 1, 3)

    contract = build_tensor_contract(request, max_seq_len=4, device=device)
    assert contract.inputs['input_ids'].data.tolist() == [
        [5, 6, 7], [5, 6, 7], [8, 99, 99], [8, 99, 99], [5, 6, 7], [5, 6, 7],
    ]
    assert contract.inputs['input_lengths'].data.tolist() == [3, 3, 1, 1, 3, 3]


def test_extra_prompts_are_dropped():
    request = InferenceRequest.from_prompts([[1], [2, 3], [4, 5, 6]], batch_size=2, beam_width=1,
                                            request_output_len=1, end_id=0)
    assert request.input_token_ids == ((1, 0), (2, 3))


def test_malformed_requests_raise():
    with pytest.raises(ShapeError):
        InferenceRequest(batch_size=0, beam_width=1, max_input_len=0, request_output_len=1,
                         input_token_ids=(), input_lengths=())
    with pytest.raises(ShapeError):
        InferenceRequest(batch_size=1, beam_width=1, max_input_len=2, request_output_len=1,
                         input_token_ids=((1,),), input_lengths=(1,))
    with pytest.raises(ShapeError):
        InferenceRequest(batch_size=1, beam_width=1, max_input_len=2, request_output_len=1,
                         input_token_ids=((1, 2),), input_lengths=(3,))


def test_descriptor_rejects_mismatched_buffer():
    with pytest.raises(ShapeError):
        TensorDescriptor(MemoryLocation.DEVICE, torch.int32, (2, 3), torch.zeros(3, 2, dtype=torch.int32))
