"""
================================================================================
Multi-GPU GPT Inference Example (Tensor x Pipeline Parallel)
================================================================================

Runs one timed, distributed inference call across a 2D grid of GPUs.

    world_size = pipeline_para_size x tensor_para_size

          TP →
         ┌─────┬─────┐
   PP  0 │ GPU0│ GPU1│   layers 0..L/2-1, heads split in two
   ↓     ├─────┼─────┤
       1 │ GPU2│ GPU3│   layers L/2..L-1, heads split in two
         └─────┴─────┘

Rank (0, 0) writes the generated ids to `output_path` (one line per
sequence) and prints the timing of the measured pass.

Usage:
    torchrun --nproc_per_node=4 -m GridInfer.examples.multi_gpu_gpt \
        --config GridInfer/examples/gpt_config.yaml

Exit codes:
    0 success, 2 configuration error, 3 shape error, 4 executor failure
"""

import argparse
import sys

from ..core import load_config, build_run_config, run_inference, ConfigurationError


def main(argv=None) -> int:
    """
    Parse arguments, run the inference call and return the exit code.
    """
    parser = argparse.ArgumentParser(description="GridInfer Multi-GPU GPT Inference")
    parser.add_argument('--config', type=str, default='GridInfer/examples/gpt_config.yaml',
                        help='Path to the YAML configuration file.')
    parser.add_argument('--executor', type=str, default=None,
                        help="Executor name or 'module:ClassName'; overrides the config.")
    parser.add_argument('--output', type=str, default=None,
                        help='Output file for generated ids; overrides the config.')
    args = parser.parse_args(argv)

    try:
        config = build_run_config(load_config(args.config))
    except (ConfigurationError, FileNotFoundError, RuntimeError) as e:
        print(f"[ERROR] Can't load '{args.config}': {e}", file=sys.stderr)
        return ConfigurationError.exit_code

    if args.executor is not None:
        config.executor = args.executor
    if args.output is not None:
        config.output_path = args.output

    outcome = run_inference(config)
    return outcome.exit_code


if __name__ == "__main__":
    sys.exit(main())
