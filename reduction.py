#!/usr/bin/env python3
"""
Data-parallel reduction helpers and result-buffer allocation.

Pixel work is split into contiguous bands (or square tiles). Each worker
either fills its own local bins, merged afterwards with an associative
combine, or writes into a slice of the output that no other worker touches.
Integer bins merged by addition are exact in any order, so results do not
depend on scheduling.
"""

import functools
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

import numpy as np

from errors import ResourceUnavailable

logger = logging.getLogger(__name__)


MAX_WORKERS = 32  # Memory bandwidth bound beyond this
MIN_BAND_SIZE = 16  # Smaller bands cost more in dispatch than they save
MAX_BUFFER_CELLS = 64 * 1024 * 1024  # Per-buffer allocation ceiling


def default_workers() -> int:
    n = os.cpu_count() or 4
    return max(1, min(MAX_WORKERS, n))


def split_bands(length: int, workers: int, min_size: int = MIN_BAND_SIZE) -> list[tuple[int, int]]:
    """Split [0, length) into at most `workers` contiguous (start, stop) bands."""
    if length <= 0:
        return []
    count = max(1, min(workers, length // max(1, min_size)))
    edges = np.linspace(0, length, count + 1).astype(int)
    return [(int(a), int(b)) for a, b in zip(edges[:-1], edges[1:]) if b > a]


def iter_tiles(h: int, w: int, tile: int):
    """Yield (y0, y1, x0, x1) tiles covering an HxW grid."""
    for y0 in range(0, h, tile):
        y1 = min(y0 + tile, h)
        for x0 in range(0, w, tile):
            yield y0, y1, x0, min(x0 + tile, w)


def run_bands(band_fn: Callable, bands: list, workers: Optional[int] = None) -> list:
    """
    Call band_fn(*band) for every band, in parallel.

    All calls have finished when this returns; worker exceptions propagate.
    Results are returned in band order.
    """
    workers = int(workers or default_workers())
    if len(bands) <= 1 or workers == 1:
        return [band_fn(*band) for band in bands]

    with ThreadPoolExecutor(max_workers=min(workers, len(bands))) as ex:
        futures = [ex.submit(band_fn, *band) for band in bands]
        return [f.result() for f in futures]


def parallel_reduce(band_fn: Callable[[int, int], np.ndarray], length: int,
                    workers: Optional[int] = None) -> np.ndarray:
    """
    Run band_fn over bands of [0, length) and sum the partial bins.

    Args:
        band_fn: callable(start, stop) returning that band's local bins. Every
            call must return an array of the same shape.
        length: size of the partitioned axis
        workers: thread count (default: CPU count, capped)

    Returns:
        Element-wise sum of all partial bins
    """
    workers = int(workers or default_workers())
    partials = run_bands(band_fn, split_bands(length, workers), workers)
    return functools.reduce(np.add, partials)


def combine_min_max(a: tuple, b: tuple) -> tuple:
    """Associative (min, max) merge."""
    return (min(a[0], b[0]), max(a[1], b[1]))


def tile_min_max(values: np.ndarray, tile: int, workers: Optional[int] = None) -> np.ndarray:
    """
    Per-tile (min, max) of a 2D array.

    Returns:
        Array of shape (tiles_y, tiles_x, 2); [..., 0] is the min, [..., 1] the max.
    """
    h, w = values.shape
    tiles_y = -(-h // tile)
    tiles_x = -(-w // tile)
    out = np.empty((tiles_y, tiles_x, 2), dtype=np.float64)

    def _worker(y0, y1, x0, x1):
        # Each tile writes only its own slot
        block = values[y0:y1, x0:x1]
        out[y0 // tile, x0 // tile] = (block.min(), block.max())

    run_bands(_worker, list(iter_tiles(h, w, tile)), workers)
    return out


def fold_min_max(tiles: np.ndarray) -> tuple[float, float]:
    """Fold per-tile (min, max) pairs into the global pair."""
    pairs = [(float(lo), float(hi)) for lo, hi in tiles.reshape(-1, 2)]
    return functools.reduce(combine_min_max, pairs)


def allocate_buffer(shape: tuple, dtype, max_cells: int = MAX_BUFFER_CELLS) -> np.ndarray:
    """
    Allocate a zeroed result buffer.

    Raises:
        ResourceUnavailable: If the buffer exceeds max_cells or memory runs out
    """
    cells = int(np.prod(shape))
    if cells > max_cells:
        raise ResourceUnavailable(
            f"Buffer of {cells:,} cells {shape} exceeds limit of {max_cells:,}"
        )
    try:
        buf = np.zeros(shape, dtype=dtype)
    except MemoryError as e:
        raise ResourceUnavailable(f"Could not allocate buffer {shape}: {e}")
    logger.debug("Allocated %s buffer %s", np.dtype(dtype).name, shape)
    return buf
