"""
Tests for YAML configuration loading.
"""

from pathlib import Path

import pytest
import yaml

from GridInfer.core.config import load_config, build_run_config
from GridInfer.core.errors import ConfigurationError

EXAMPLE_CONFIG = Path(__file__).parent.parent / "GridInfer" / "examples" / "gpt_config.yaml"


def test_example_config_loads():
    config = build_run_config(load_config(str(EXAMPLE_CONFIG)))

    assert config.parallelism.world_size == 4
    assert config.model.hidden_units == 768
    assert config.model.inter_size == 4 * 768
    assert config.sampling.end_id == 50256
    assert config.request.request_batch_size == 8
    assert config.executor == 'echo'


def test_defaults(make_config):
    config = make_config()
    assert config.output_path == 'out'
    assert config.warmup_iterations == 1
    assert config.timed_iterations == 1
    assert config.sampling.len_penalty == 1.0
    assert config.request.return_log_probs is False


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/gridinfer.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("model: [unterminated")
    with pytest.raises(RuntimeError, match="Error parsing YAML"):
        load_config(str(path))


def test_round_trip_through_yaml(tmp_path, make_config):
    raw = {
        'model': {'head_num': 2, 'size_per_head': 4, 'vocab_size': 10, 'decoder_layers': 2, 'max_seq_len': 16},
        'request': {'request_batch_size': 2, 'request_output_len': 4},
        'timed_iterations': 3,
    }
    path = tmp_path / "run.yaml"
    path.write_text(yaml.safe_dump(raw))

    config = build_run_config(load_config(str(path)))
    assert config.timed_iterations == 3
    assert config.parallelism.tensor_para_size == 1


@pytest.mark.parametrize("raw, message", [
    ({'request': {'request_batch_size': 1, 'request_output_len': 1}}, "model"),
    ({'model': {'head_num': 0, 'size_per_head': 1, 'vocab_size': 1, 'decoder_layers': 1, 'max_seq_len': 1},
      'request': {'request_batch_size': 1, 'request_output_len': 1}}, "head_num"),
    ({'model': {'head_num': 1, 'size_per_head': 1, 'vocab_size': 1, 'decoder_layers': 1, 'max_seq_len': 1},
      'request': {'request_batch_size': 1, 'request_output_len': 1, 'bogus': 1}}, "bogus"),
    ({'model': {'head_num': 1},
      'request': {'request_batch_size': 1, 'request_output_len': 1}}, "Incomplete"),
    ({'model': {'head_num': 1, 'size_per_head': 1, 'vocab_size': 1, 'decoder_layers': 1, 'max_seq_len': 1},
      'request': {'request_batch_size': 1, 'request_output_len': 1}, 'timed_iterations': 0}, "timed_iterations"),
])
def test_invalid_configs(raw, message):
    with pytest.raises(ConfigurationError, match=message):
        build_run_config(raw)
