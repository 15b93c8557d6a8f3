"""
Distributed Inference Driver

This module runs one distributed inference invocation end to end on every
rank. The driver walks a fixed sequence of states:

    Idle ─► TopologyReady ─► CommReady ─► WarmedUp ─► Executed ─► Reported ─► Done
      │           │               │            │            │           │
      │      grid + shape     sub-groups,   warm-up     timed pass   rank (0,0)
      │      validation       handles,      + world     bracketed    writes the
      │      (no comms)       executor      barrier     by barriers  output file

All validation (group sizes, layer/head divisibility, sequence capacity,
executor name) happens in `Idle -> TopologyReady`, before the default
process group is even created. Since every rank validates the same static
configuration, every rank fails the same way and nobody is left waiting in
a collective.

Once communication starts there is no recovery: an executor error on any
rank is raised as `ExecutorFailure` and ends the run. Peers blocked in the
next barrier stay blocked until the process-group timeout or the launcher
kills them. Handles and groups are released on the way out, whatever
happened.

===============================================================================
CONCEPTUAL EXAMPLE:
===============================================================================

.. code-block:: python

    from GridInfer.core.config import load_config, build_run_config
    from GridInfer.core.driver import run_inference

    outcome = run_inference(build_run_config(load_config('gpt_config.yaml')))
    sys.exit(outcome.exit_code)

===============================================================================
"""

import contextlib
import functools
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence

import torch
import torch.distributed as dist

from .config import RunConfig
from .comm_handles import CollectiveHandleInitializer
from .distributed import (
    setup_distributed,
    cleanup_distributed,
    select_device,
    synchronize_device,
    world_barrier,
    broadcast_seed,
)
from .errors import GridInferError, ExecutorFailure
from .executor import ExecutorContext, ModelExecutor, get_executor, resolve_executor
from .process_groups import ProcessGroupManager, init_process_groups
from .tensor_contract import InferenceRequest, TensorContract, build_tensor_contract, check_capacity
from .topology import ProcessTopology, GridCoordinate, build_topology
from ..utils.io import read_start_ids, write_output_ids
from ..utils.logger import setup_rank_logging, restore_rank_logging
from ..utils.logging import setup_logger, log_rank_0
from ..utils.memory import format_memory_usage
from ..utils.profiling import profile_time

logger = setup_logger(__name__)

PREVIEW_SIZE = 10


class DriverState(Enum):
    IDLE = 'Idle'
    TOPOLOGY_READY = 'TopologyReady'
    COMM_READY = 'CommReady'
    WARMED_UP = 'WarmedUp'
    EXECUTED = 'Executed'
    REPORTED = 'Reported'
    DONE = 'Done'


@dataclass
class InferenceContext:
    """
    Per-run resources owned by the driver: the device and its stream, the
    communication handles and the output path. `close()` releases them.
    """
    output_path: str
    device: Optional[torch.device] = None
    stream: Optional[Any] = None
    pg_manager: Optional[ProcessGroupManager] = None
    handles: Optional[CollectiveHandleInitializer] = None
    owns_default_group: bool = False
    closed: bool = False

    def stream_scope(self):
        if self.stream is None:
            return contextlib.nullcontext()
        return torch.cuda.stream(self.stream)

    def close(self):
        if self.closed:
            return
        if self.handles is not None:
            self.handles.release()
        if self.owns_default_group:
            cleanup_distributed()
        self.closed = True


@dataclass
class InferenceReport:
    """What a rank knows once the run is over. Only the root fills in the output fields."""
    rank: int
    coordinate: GridCoordinate
    state: DriverState
    elapsed_ms: Optional[float] = None
    is_root: bool = False
    output_path: Optional[str] = None
    written_count: Optional[int] = None
    zero_count: Optional[int] = None
    preview: List[int] = field(default_factory=list)
    output_ids: Optional[torch.Tensor] = None


class DistributedInferenceDriver:
    """
    Runs the warm-up and timed passes of one `InferenceRequest` on one rank.

    Args:
        config (RunConfig): The run configuration.
        rank (int): This process's global rank.
        world_size (int): Number of processes in the run.
        prompts (Sequence[Sequence[int]], optional): Prompts to use instead of
            reading `config.request.start_ids_path`.
        init_method (str, optional): Rendezvous URL for the default group;
            torchrun's environment is used when None.
    """
    def __init__(self,
                 config: RunConfig,
                 rank: int,
                 world_size: int,
                 prompts: Optional[Sequence[Sequence[int]]] = None,
                 init_method: Optional[str] = None):
        self.config = config
        self.rank = rank
        self.world_size = world_size
        self.prompts = prompts
        self.init_method = init_method

        self.state = DriverState.IDLE
        self.topology: Optional[ProcessTopology] = None
        self.coordinate: Optional[GridCoordinate] = None
        self.request: Optional[InferenceRequest] = None
        self.context: Optional[InferenceContext] = None
        self.executor: Optional[ModelExecutor] = None
        self.contract: Optional[TensorContract] = None
        self.elapsed_ms: Optional[float] = None

    def _require(self, expected: DriverState):
        if self.state is not expected:
            raise RuntimeError(f"Driver is in state {self.state.value}, expected {expected.value}")

    def _enter(self, new_state: DriverState):
        self.state = new_state
        logger.debug(f"state -> {new_state.value}")

    # ------------------------------------------------------------------
    # Idle -> TopologyReady
    # ------------------------------------------------------------------
    def prepare(self):
        """Validate everything static. No communication happens here."""
        self._require(DriverState.IDLE)
        config = self.config
        self.topology = build_topology(self.world_size, config.parallelism, config.model)
        self.coordinate = self.topology.coordinate(self.rank)

        prompts = self.prompts
        if prompts is None:
            prompts = read_start_ids(config.request.start_ids_path, config.request.request_batch_size)
        self.request = InferenceRequest.from_prompts(
            prompts,
            batch_size=config.request.request_batch_size,
            beam_width=config.sampling.beam_width,
            request_output_len=config.request.request_output_len,
            end_id=config.sampling.end_id,
        )
        check_capacity(self.request, config.model.max_seq_len)
        resolve_executor(config.executor)

        self._enter(DriverState.TOPOLOGY_READY)

    # ------------------------------------------------------------------
    # TopologyReady -> CommReady
    # ------------------------------------------------------------------
    def connect(self):
        """Join the world, build the sub-groups, distribute the handles and build the executor."""
        self._require(DriverState.TOPOLOGY_READY)
        config = self.config
        parallelism = config.parallelism

        owns_default_group = not dist.is_initialized()
        setup_distributed(
            backend=parallelism.backend,
            init_method=self.init_method,
            timeout_seconds=parallelism.timeout_seconds,
            rank=self.rank,
            world_size=self.world_size,
        )
        self.context = InferenceContext(output_path=config.output_path, owns_default_group=owns_default_group)

        device = select_device(parallelism.device_type, self.rank)
        stream = torch.cuda.Stream(device) if device.type == 'cuda' else None
        self.context.device = device
        self.context.stream = stream

        if config.log_dir:
            setup_rank_logging(config.log_dir)

        if self.rank == 0:
            print(f"Total ranks: {self.world_size}.")
        device_name = torch.cuda.get_device_name(device) if device.type == 'cuda' else 'cpu'
        logger.info(f"P{self.rank} is running on {device} ({device_name}) at grid {self.coordinate}")

        self.context.pg_manager = init_process_groups(self.topology, timeout_seconds=parallelism.timeout_seconds)
        self.context.pg_manager.print_mesh_info()
        self.context.handles = CollectiveHandleInitializer(self.context.pg_manager, device)
        handles = self.context.handles.initialize()

        seed = broadcast_seed(config.seed, device)
        self.executor = get_executor(config.executor, ExecutorContext(
            config=config,
            coordinate=self.coordinate,
            layer_range=self.topology.layer_range(self.coordinate.pipeline_rank),
            head_range=self.topology.head_range(self.coordinate.tensor_rank),
            device=device,
            handles=handles,
            seed=seed,
            stream=stream,
        ))

        self.contract = build_tensor_contract(
            self.request,
            max_seq_len=config.model.max_seq_len,
            device=device,
            coordinate=self.coordinate,
            return_log_probs=config.request.return_log_probs,
        )

        self._enter(DriverState.COMM_READY)

    def _forward(self, iterations: int):
        try:
            with self.context.stream_scope():
                for _ in range(iterations):
                    self.executor.forward(self.contract.outputs, self.contract.inputs)
            synchronize_device(self.context.device)
        except Exception as e:
            raise ExecutorFailure(f"Model executor failed on rank {self.rank}: {e}") from e

    # ------------------------------------------------------------------
    # CommReady -> WarmedUp
    # ------------------------------------------------------------------
    def warm_up(self):
        self._require(DriverState.COMM_READY)
        logger.info(f"Memory before warm-up: {format_memory_usage(self.context.device)}")
        self._forward(self.config.warmup_iterations)
        world_barrier(self.context.device)
        log_rank_0(f"Warm-up finished on all {self.world_size} ranks")
        self._enter(DriverState.WARMED_UP)

    # ------------------------------------------------------------------
    # WarmedUp -> Executed
    # ------------------------------------------------------------------
    def execute(self) -> float:
        """Timed pass. Returns the mean milliseconds per iteration."""
        self._require(DriverState.WARMED_UP)
        barrier = functools.partial(world_barrier, self.context.device)
        iterations = self.config.timed_iterations
        with profile_time(before=barrier, after=barrier) as timer:
            self._forward(iterations)
        self.elapsed_ms = timer.elapsed_ms / iterations
        self._enter(DriverState.EXECUTED)
        return self.elapsed_ms

    # ------------------------------------------------------------------
    # Executed -> Reported
    # ------------------------------------------------------------------
    def report(self) -> InferenceReport:
        self._require(DriverState.EXECUTED)
        report = InferenceReport(rank=self.rank, coordinate=self.coordinate,
                                 state=DriverState.REPORTED, elapsed_ms=self.elapsed_ms)
        if self.topology.is_root(self.rank):
            self._report_root(report)
        self._enter(DriverState.REPORTED)
        return report

    def _report_root(self, report: InferenceReport):
        config = self.config
        total_len = self.contract.total_output_len

        synchronize_device(self.context.device)
        host_ids = self.contract.result().output_ids.cpu()
        flat_ids = host_ids.reshape(-1).tolist()

        report.is_root = True
        report.output_ids = host_ids
        report.zero_count = sum(1 for tok in flat_ids if tok == 0)
        report.preview = flat_ids[:PREVIEW_SIZE]

        print(f"Writing {len(flat_ids)} elements")
        print(" ".join(f"{tok:5d}" for tok in report.preview))
        print(f"zeroCount = {report.zero_count}")

        try:
            report.written_count = write_output_ids(self.context.output_path, flat_ids, total_len)
            report.output_path = self.context.output_path
        except OSError as e:
            print(f"[WARNING] Cannot write results into output file {self.context.output_path}: {e}")

        model, sampling, request = config.model, config.sampling, config.request
        print(f"[INFO] request_batch_size {request.request_batch_size} beam_width {sampling.beam_width} "
              f"head_num {model.head_num} size_per_head {model.size_per_head} total_output_len {total_len} "
              f"decoder_layers {model.decoder_layers} vocab_size {model.vocab_size} "
              f"decoding-time {self.elapsed_ms:.2f} ms", flush=True)

    # ------------------------------------------------------------------
    # -> Done
    # ------------------------------------------------------------------
    def shutdown(self):
        if self.context is not None:
            self.context.close()
        if self.config.log_dir:
            restore_rank_logging()
        self.state = DriverState.DONE

    def run(self) -> InferenceReport:
        """
        Run every state in order and release resources at the end.

        Raises:
            ConfigurationError, ShapeError: From validation, before any communication.
            ExecutorFailure: If the model executor raises.
        """
        try:
            self.prepare()
            self.connect()
            self.warm_up()
            self.execute()
            report = self.report()
        finally:
            self.shutdown()
        report.state = self.state
        return report


@dataclass
class RunOutcome:
    """Success or the error that ended the run, mapped to a process exit code."""
    report: Optional[InferenceReport] = None
    error: Optional[GridInferError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def exit_code(self) -> int:
        return 0 if self.error is None else self.error.exit_code


def run_inference(config: RunConfig,
                  rank: Optional[int] = None,
                  world_size: Optional[int] = None,
                  prompts: Optional[Sequence[Sequence[int]]] = None,
                  init_method: Optional[str] = None) -> RunOutcome:
    """
    Run one distributed inference call on this rank and capture the outcome.

    `rank` and `world_size` default to the `RANK` / `WORLD_SIZE` environment
    variables set by torchrun. GridInfer errors are reported on stderr and
    returned in the outcome; anything else propagates.
    """
    if rank is None:
        rank = int(os.environ.get('RANK', 0))
    if world_size is None:
        world_size = int(os.environ.get('WORLD_SIZE', 1))

    driver = DistributedInferenceDriver(config, rank, world_size, prompts=prompts, init_method=init_method)
    try:
        return RunOutcome(report=driver.run())
    except GridInferError as e:
        print(f"[ERROR] rank {rank}: {type(e).__name__}: {e}", file=sys.stderr, flush=True)
        return RunOutcome(error=e)
