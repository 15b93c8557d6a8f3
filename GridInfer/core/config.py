"""
Configuration Management for GridInfer

This module loads the settings of one distributed inference run from a YAML
file and turns them into typed dataclasses. The run needs four groups of
settings: how the world is split into a tensor/pipeline grid, the shape of
the model, the decoding parameters, and the request itself.

===============================================================================
CONCEPTUAL EXAMPLE:
===============================================================================

.. code-block:: yaml

    # In gpt_config.yaml
    parallelism:
      tensor_para_size: 2
      pipeline_para_size: 2
    model:
      model_name: gpt_124M
      head_num: 12
      size_per_head: 64
      vocab_size: 50257
      decoder_layers: 12
      max_seq_len: 128
    sampling:
      beam_width: 1
      top_k: 1
    request:
      request_batch_size: 8
      request_output_len: 32

.. code-block:: python

    from GridInfer.core.config import load_config, build_run_config

    run_config = build_run_config(load_config('gpt_config.yaml'))
    run_config.model.hidden_units   # 768
    run_config.parallelism.world_size  # 4

===============================================================================
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional
import os

import yaml

from .errors import ConfigurationError


@dataclass
class ParallelismConfig:
    """
    Grid dimensions and backend settings.

    `timeout_seconds` is forwarded to process-group creation; it is the only
    watchdog on a collective that never completes.
    """
    tensor_para_size: int = 1
    pipeline_para_size: int = 1
    backend: str = 'nccl'
    device_type: str = 'cuda'
    timeout_seconds: int = 1800

    @property
    def world_size(self) -> int:
        return self.tensor_para_size * self.pipeline_para_size


@dataclass
class ModelConfig:
    """Static shape of the sharded model."""
    head_num: int
    size_per_head: int
    vocab_size: int
    decoder_layers: int
    max_seq_len: int
    model_name: str = 'gpt'
    model_dir: Optional[str] = None
    is_half: bool = False

    @property
    def hidden_units(self) -> int:
        return self.head_num * self.size_per_head

    @property
    def inter_size(self) -> int:
        return 4 * self.hidden_units


@dataclass
class SamplingConfig:
    beam_width: int = 1
    top_k: int = 1
    top_p: float = 0.0
    temperature: float = 1.0
    repetition_penalty: float = 1.0
    len_penalty: float = 1.0
    beam_search_diversity_rate: float = 0.0
    start_id: int = 50256
    end_id: int = 50256


@dataclass
class RequestConfig:
    request_batch_size: int
    request_output_len: int
    start_ids_path: Optional[str] = None
    return_log_probs: bool = False


@dataclass
class RunConfig:
    """Everything one `torchrun` invocation needs."""
    parallelism: ParallelismConfig
    model: ModelConfig
    sampling: SamplingConfig
    request: RequestConfig
    executor: str = 'echo'
    output_path: str = 'out'
    log_dir: Optional[str] = None
    warmup_iterations: int = 1
    timed_iterations: int = 1
    seed: int = 0
    executor_options: Dict[str, Any] = field(default_factory=dict)


# Fields that must be strictly positive integers wherever they appear.
_POSITIVE_INT_FIELDS = (
    'tensor_para_size', 'pipeline_para_size', 'timeout_seconds',
    'head_num', 'size_per_head', 'vocab_size', 'decoder_layers', 'max_seq_len',
    'beam_width', 'request_batch_size', 'request_output_len',
    'warmup_iterations', 'timed_iterations',
)


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Loads a configuration from a specified YAML file path.

    Args:
        config_path (str): The path to the YAML configuration file.

    Returns:
        Dict[str, Any]: A dictionary containing the loaded configuration settings.

    Raises:
        FileNotFoundError: If the `config_path` does not exist.
        RuntimeError: If there is an error parsing the YAML file.
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found at: {config_path}")

    with open(config_path, 'r') as f:
        try:
            # Use safe_load to avoid arbitrary code execution
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise RuntimeError(f"Error parsing YAML file: {e}")

    return config or {}


def _build_section(cls, section_name: str, values: Optional[Dict[str, Any]]):
    """Instantiate one dataclass section, rejecting unknown or missing keys."""
    values = dict(values or {})
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in '{section_name}' section: {unknown}. "
            f"Valid keys are: {sorted(known)}"
        )

    for name, value in values.items():
        if name in _POSITIVE_INT_FIELDS:
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(
                    f"'{section_name}.{name}' must be a positive integer, got {value!r}"
                )

    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigurationError(f"Incomplete '{section_name}' section: {e}") from e


def build_run_config(config: Dict[str, Any]) -> RunConfig:
    """
    Converts a raw configuration mapping (as returned by `load_config`) into
    a `RunConfig`.

    Args:
        config (Dict[str, Any]): Mapping with `parallelism`, `model`,
            `sampling` and `request` sections plus optional top-level keys.

    Returns:
        RunConfig: The typed configuration.

    Raises:
        ConfigurationError: On missing sections, unknown keys or non-positive
            integer values.
    """
    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration must be a mapping, got {type(config).__name__}")

    for required in ('model', 'request'):
        if required not in config:
            raise ConfigurationError(f"Missing required '{required}' section")

    top_level = {k: v for k, v in config.items()
                 if k not in ('parallelism', 'model', 'sampling', 'request')}
    for name in ('warmup_iterations', 'timed_iterations'):
        value = top_level.get(name, 1)
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ConfigurationError(f"'{name}' must be a positive integer, got {value!r}")

    try:
        return RunConfig(
            parallelism=_build_section(ParallelismConfig, 'parallelism', config.get('parallelism')),
            model=_build_section(ModelConfig, 'model', config.get('model')),
            sampling=_build_section(SamplingConfig, 'sampling', config.get('sampling')),
            request=_build_section(RequestConfig, 'request', config.get('request')),
            **top_level,
        )
    except TypeError as e:
        raise ConfigurationError(f"Unknown top-level configuration key: {e}") from e
