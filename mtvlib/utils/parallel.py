"""Worker pool sizing and per-channel dispatch.

Channel-level work (forward/adjoint evaluations, Hessian diagonals, image
updates) is independent across channels. It is dispatched to a thread pool
since the heavy lifting happens in torch kernels that release the GIL.
A worker count of 0 runs everything sequentially in the calling thread.
"""

import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, TypeVar

__all__ = ["MAX_WORKERS", "effective_workers", "map_channels"]

MAX_WORKERS = 8

T = TypeVar("T")
R = TypeVar("R")


def effective_workers(requested: Optional[int], num_channels: int) -> int:
    """Cap a requested worker count.

    Args:
        requested: Requested workers; None means one per CPU.
        num_channels: Number of independent work items.

    Returns:
        min(requested, num_channels, MAX_WORKERS), or 0 (sequential) when
        fewer than two workers would be used.
    """
    if requested is None:
        requested = os.cpu_count() or 1
    workers = min(int(requested), int(num_channels), MAX_WORKERS)
    return workers if workers > 1 else 0


def map_channels(
    fn: Callable[[T], R],
    items: Sequence[T],
    workers: int = 0,
) -> List[R]:
    """Apply ``fn`` to every item, preserving order.

    Args:
        fn: Function of one item.
        items: Work items, typically channels.
        workers: Effective worker count from :func:`effective_workers`.
    """
    if workers <= 1 or len(items) <= 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(fn, items))
