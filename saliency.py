#!/usr/bin/env python3
"""
Center-surround saliency map.

Each pixel scores the LAB distance between itself and the mean of its
(2 * radius + 1)^2 neighborhood. Flat regions score 0; edges and isolated
details score high. Scores are raw; `normalize` rescales them to [0, 1]
using the global (min, max) found by a tiled reduction.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.ndimage import uniform_filter

from color_space import rgb_to_lab
from reduction import (
    MAX_BUFFER_CELLS, allocate_buffer, default_workers, fold_min_max, run_bands,
    split_bands, tile_min_max,
)
from source import SourceImage

logger = logging.getLogger(__name__)


DEFAULT_RADIUS = 5  # Surround box is 11x11
DEFAULT_TILE_SIZE = 16
SCORE_FLOOR = 1e-9  # Distances below this are filter rounding noise


@dataclass(frozen=True)
class SaliencyConfig:
    normalize: bool = True
    radius: int = DEFAULT_RADIUS
    tile_size: int = DEFAULT_TILE_SIZE


@dataclass(frozen=True)
class MinMaxStats:
    """Per-tile (min, max) pairs and their global fold."""
    tiles: np.ndarray  # (tiles_y, tiles_x, 2)
    minimum: float
    maximum: float
    tile_size: int

    @property
    def is_flat(self) -> bool:
        return self.minimum == self.maximum


@dataclass(frozen=True)
class SaliencyMap:
    scores: np.ndarray  # (height, width) float64
    stats: MinMaxStats
    normalized: bool  # False when normalization was off or skipped (flat map)


def normalize(scores: np.ndarray, stats: MinMaxStats) -> np.ndarray:
    """
    Map scores to [0, 1] with (v - min) / (max - min).

    A flat map (min == max) cannot be rescaled; a copy of the raw scores is
    returned instead.
    """
    if stats.is_flat:
        return scores.copy()
    span = stats.maximum - stats.minimum
    return np.clip((scores - stats.minimum) / span, 0.0, 1.0)


class SaliencyMapGenerator:
    """Computes per-pixel local-contrast scores into an owned buffer."""

    def __init__(self, radius: int = DEFAULT_RADIUS, tile_size: int = DEFAULT_TILE_SIZE,
                 workers: Optional[int] = None, max_cells: int = MAX_BUFFER_CELLS):
        self.radius = radius
        self.tile_size = tile_size
        self.workers = workers
        self.max_cells = max_cells
        self.scores = None

    @property
    def size_key(self) -> Optional[tuple]:
        return None if self.scores is None else self.scores.shape

    def allocate(self, width: int, height: int) -> None:
        self.release()
        self.scores = allocate_buffer((height, width), np.float64, self.max_cells)

    def release(self) -> None:
        self.scores = None

    def resize(self, width: int, height: int) -> None:
        if self.size_key == (height, width):
            return
        logger.debug("Saliency buffer resized to %dx%d", width, height)
        self.allocate(width, height)

    def compute_saliency(self, image: SourceImage) -> np.ndarray:
        """Fill the score buffer for `image` and return a copy of it."""
        if self.scores is None or self.scores.shape != (image.height, image.width):
            self.resize(image.width, image.height)

        lab = rgb_to_lab(image.rgb())
        size = 2 * self.radius + 1
        surround = np.empty_like(lab)
        for c in range(3):
            surround[:, :, c] = uniform_filter(lab[:, :, c], size=size, mode='nearest')

        scores = self.scores

        def _band(y0, y1):
            diff = lab[y0:y1] - surround[y0:y1]
            band = np.sqrt(np.sum(diff ** 2, axis=2))
            band[band < SCORE_FLOOR] = 0.0
            scores[y0:y1] = band

        workers = self.workers or default_workers()
        run_bands(_band, split_bands(image.height, workers), workers)
        return scores.copy()

    def reduce_min_max(self, scores: np.ndarray) -> MinMaxStats:
        """Tile the map, take per-tile (min, max), then fold to the global pair."""
        tiles = tile_min_max(scores, self.tile_size, self.workers)
        lo, hi = fold_min_max(tiles)
        return MinMaxStats(tiles=tiles, minimum=lo, maximum=hi, tile_size=self.tile_size)

    def generate(self, image: SourceImage, normalize_scores: bool = True) -> SaliencyMap:
        scores = self.compute_saliency(image)
        stats = self.reduce_min_max(scores)

        if not normalize_scores:
            return SaliencyMap(scores=scores, stats=stats, normalized=False)
        if stats.is_flat:
            logger.debug("Saliency map is flat (%.3g); returning raw scores", stats.minimum)
            return SaliencyMap(scores=scores, stats=stats, normalized=False)
        return SaliencyMap(scores=normalize(scores, stats), stats=stats, normalized=True)
