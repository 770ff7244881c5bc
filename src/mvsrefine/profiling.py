"""Stage timing helpers."""

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager

import torch
from torch.profiler import record_function


@contextmanager
def timed_stage(name: str, logger: logging.Logger, sync: bool = False) -> Iterator[None]:
    """Time a pipeline stage and label it for torch.profiler traces.

    Args:
        name: Stage name (e.g., "refine_fuse").
        logger: Logger receiving the DEBUG timing line.
        sync: Synchronize CUDA before reading the clock so queued device
            work is included. Leave False to keep the stream asynchronous.

    Yields:
        None.
    """
    start = time.perf_counter()
    with record_function(name):
        yield
    if sync and torch.cuda.is_available():
        torch.cuda.synchronize()
    logger.debug("%s took %.1f ms", name, (time.perf_counter() - start) * 1000.0)
