import sys
import os
import torch.distributed as dist

class TeeStream(object):
    """
    Stream that writes to both a file and the original stdout/stderr.
    """
    def __init__(self, filename, stream):
        self.terminal = stream
        self.log = open(filename, "a")

    def write(self, message):
        self.terminal.write(message)
        self.log.write(message)
        self.log.flush() # Ensure immediate write to file

    def flush(self):
        self.terminal.flush()
        self.log.flush()

    def close(self):
        self.log.close()

def setup_rank_logging(log_dir="logs"):
    """
    Tee stdout and stderr of this rank into '{log_dir}/rank_{rank}.log'.

    Returns the log file path.
    """
    rank = dist.get_rank() if dist.is_initialized() else 0

    # Several ranks may race to create the directory.
    os.makedirs(log_dir, exist_ok=True)

    log_file = os.path.join(log_dir, f"rank_{rank}.log")

    sys.stdout = TeeStream(log_file, sys.stdout)
    sys.stderr = TeeStream(log_file, sys.stderr)

    print(f"[Rank {rank}] Logging initialized. Writing to {log_file}", flush=True)
    return log_file

def restore_rank_logging():
    """Undo `setup_rank_logging`."""
    for name in ('stdout', 'stderr'):
        stream = getattr(sys, name)
        if isinstance(stream, TeeStream):
            stream.close()
            setattr(sys, name, stream.terminal)
