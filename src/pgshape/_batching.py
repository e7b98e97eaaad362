from __future__ import annotations

import os
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypeVar
from warnings import warn

import numpy as np
import psutil

T = TypeVar("T")
R = TypeVar("R")


class SubjectBatcher:
    """Map a per-subject function over the population, batch by batch.

    Each batch is processed by a thread pool (or serially) and the results
    are collected in subject order once the whole batch has finished, so that
    callers can reduce them single-threaded. The per-subject function must
    only mutate the subject it receives and read shared model state.

    Example:
        batcher = SubjectBatcher(n_jobs=4, batch_size=16)
        results = batcher.map(fit_one, subjects)
    """

    def __init__(self, n_jobs: int = 1, batch_size: int | None = None):
        if not isinstance(n_jobs, int) or n_jobs < -1:
            raise ValueError(f"n_jobs must be an integer >= -1. Got {n_jobs}.")
        if batch_size is not None and batch_size < 1:
            raise ValueError(f"batch_size must be positive. Got {batch_size}.")
        self.n_jobs = n_jobs
        self.batch_size = batch_size

    @property
    def n_workers(self) -> int:
        if self.n_jobs == -1:
            return os.cpu_count() or 1
        return max(self.n_jobs, 1)

    def batches(self, n: int) -> Iterator[slice]:
        """Slices of consecutive subjects, one per batch."""
        step = n if self.batch_size is None else self.batch_size
        step = max(step, 1)
        for start in range(0, n, step):
            yield slice(start, min(start + step, n))

    def map(self, func: Callable[[T], R], items: Sequence[T]) -> list[R]:
        results: list[R] = []
        if self.n_workers == 1:
            for batch in self.batches(len(items)):
                results.extend(func(item) for item in items[batch])
            return results
        with ThreadPoolExecutor(max_workers=self.n_workers) as pool:
            for batch in self.batches(len(items)):
                results.extend(pool.map(func, items[batch]))
        return results

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(n_jobs: {self.n_jobs}, "
            f"batch_size: {self.batch_size})"
        )


def choose_batch_size(
        *,
        N: int,
        lattice: tuple[int, int, int],
        n_channels: int,
        n_modes: int,
        dtype: Any = np.float64,
        memory_fraction: float = 0.25,      # use up to 25% of available memory
        memory_cap: float = 1.5 * 1024**3,  # 1.5 GB absolute ceiling
        ) -> int:
    """
    Choose how many subjects are processed concurrently.

    Parameters
    ----------
    N : int
        Number of subjects.
    lattice : tuple of int
        Template lattice.
    n_channels : int
        Number of image channels.
    n_modes : int
        Number of principal modes.
    dtype : np.dtype, optional
        Data type of the arrays, by default np.float64.
    memory_cap : float, optional
        Maximum memory (in bytes) to be used for processing, by default
        ``1.5 * 1024**3`` (1.5 GB).

    Notes
    -----
    The batch size is determined by the per-subject working set, which scales
    with the number of voxels:
    - Three (C, D, H, W) images: observed image, warped template, residual
    - 3 * C + 8 vector fields of shape (3, D, H, W): warped template
      gradients, velocity, exp(v), psi, gradient and Hessian w.r.t. psi and
      v, search direction
    - Two (K, 3, D, H, W) subspace derivative contributions
    """
    dtype_size = np.dtype(dtype).itemsize
    n_voxels = int(np.prod(lattice))
    bytes_per_subject = (
        3 * n_channels
        + 3 * (3 * n_channels + 8)
        + 2 * 3 * n_modes
    ) * n_voxels * dtype_size
    # Plus small headroom for intermediates
    bytes_per_subject = int(bytes_per_subject * 1.2)

    # Pick memory budget
    try:
        hard_cap = 4 * 1024**3  # 4 GiB (avoid runaway memory use)
        avail_mem = psutil.virtual_memory().available
        mem_cap = min(avail_mem * memory_fraction, hard_cap)
    except Exception:
        mem_cap = memory_cap  # fallback to user-specified cap

    max_batch_size = int(mem_cap // bytes_per_subject)
    if max_batch_size < 1:
        warn(
            f"A single subject needs {bytes_per_subject / 1024**3:.2f} GiB, more "
            f"than the memory cap of {mem_cap / 1024**3:.2f} GiB. Processing "
            f"subjects one at a time."
        )
        return 1
    return int(min(N, max_batch_size))
