#!/usr/bin/env python3
"""
Histogram, vectorscope and waveform accumulators.

Each accumulator owns one counter buffer and runs in two phases: `clear()`
zeroes the buffer, then `gather(image)` adds one count per pixel. Workers
count into their own bins and the partial bins are summed, so no update is
lost. `result()` returns a copy; callers never hold the live buffer.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from reduction import (
    MAX_BUFFER_CELLS, allocate_buffer, default_workers, parallel_reduce, run_bands,
    split_bands,
)
from source import SourceImage

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

HISTOGRAM_BINS = 256
HISTOGRAM_CHANNELS = ('red', 'green', 'blue', 'luma')
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])  # Rec. 601

# Guards values like 0.2 * 255 landing one bin low after float rounding
QUANT_EPS = 1e-6

# BT.601 RGB -> (U, V). U spans +-0.436, V spans +-0.615.
RGB_TO_UV = np.array([
    [-0.14713, -0.28886, 0.436],
    [0.615, -0.51499, -0.10001],
])
CHROMA_OFFSET = 0.5  # Chroma 0 maps to the grid center

MIN_GRID_SIZE = 16
MAX_GRID_SIZE = 1024

WAVEFORM_CHANNELS = ('red', 'green', 'blue')


def quantize(values: np.ndarray, levels: int = HISTOGRAM_BINS) -> np.ndarray:
    """Map values in [0, 1] to integer bins 0..levels-1 via floor(v * (levels - 1))."""
    bins = np.floor(values * (levels - 1) + QUANT_EPS)
    return np.clip(bins, 0, levels - 1).astype(np.intp)


def _require(buffer: Optional[np.ndarray], name: str) -> np.ndarray:
    if buffer is None:
        raise RuntimeError(f"{name} buffer is not allocated")
    return buffer


# =============================================================================
# Histogram
# =============================================================================

@dataclass(frozen=True)
class HistogramConfig:
    """Display options. All four channels are always accumulated."""
    show_red: bool = True
    show_green: bool = True
    show_blue: bool = True
    show_luma: bool = True
    log_scale: bool = False
    amplification: float = 1.0

    @property
    def visible(self) -> tuple:
        flags = (self.show_red, self.show_green, self.show_blue, self.show_luma)
        return tuple(name for name, shown in zip(HISTOGRAM_CHANNELS, flags) if shown)


@dataclass(frozen=True)
class HistogramResult:
    """256 counts per channel."""
    red: np.ndarray
    green: np.ndarray
    blue: np.ndarray
    luma: np.ndarray

    def channel(self, name: str) -> np.ndarray:
        return getattr(self, name)

    def total(self, name: str) -> int:
        return int(self.channel(name).sum())

    def display_levels(self, config: HistogramConfig) -> dict:
        """
        Bar heights in [0, 1] for the visible channels.

        Counts are optionally log-compressed (log1p), normalized by the
        tallest visible bar, multiplied by the amplification and clipped.
        """
        levels = {}
        for name in config.visible:
            values = self.channel(name).astype(np.float64)
            if config.log_scale:
                values = np.log1p(values)
            levels[name] = values
        if not levels:
            return levels

        peak = max(float(v.max()) for v in levels.values())
        for name, values in levels.items():
            scaled = values / peak * config.amplification if peak > 0 else values
            levels[name] = np.clip(scaled, 0.0, 1.0)
        return levels


class HistogramAccumulator:
    """Per-channel (R, G, B, luma) 256-bin counts."""

    def __init__(self, workers: Optional[int] = None, max_cells: int = MAX_BUFFER_CELLS):
        self.workers = workers
        self.max_cells = max_cells
        self.counts = None

    @property
    def size_key(self) -> tuple:
        return (len(HISTOGRAM_CHANNELS), HISTOGRAM_BINS)

    def allocate(self) -> None:
        self.release()
        self.counts = allocate_buffer(self.size_key, np.uint64, self.max_cells)

    def release(self) -> None:
        self.counts = None

    def clear(self) -> None:
        _require(self.counts, "Histogram").fill(0)

    def gather(self, image: SourceImage) -> None:
        counts = _require(self.counts, "Histogram")
        rgb = image.rgb()

        def _band(y0, y1):
            block = rgb[y0:y1].reshape(-1, 3).astype(np.float64)
            local = np.empty(self.size_key, dtype=np.uint64)
            for c in range(3):
                local[c] = np.bincount(quantize(block[:, c]), minlength=HISTOGRAM_BINS)
            local[3] = np.bincount(quantize(block @ LUMA_WEIGHTS), minlength=HISTOGRAM_BINS)
            return local

        counts += parallel_reduce(_band, image.height, self.workers)

    def result(self) -> HistogramResult:
        counts = _require(self.counts, "Histogram").copy()
        return HistogramResult(red=counts[0], green=counts[1], blue=counts[2], luma=counts[3])


# =============================================================================
# Vectorscope
# =============================================================================

class ChromaPolicy(Enum):
    """What happens to chroma samples outside the grid."""
    CLAMP = "clamp"  # Counted in the nearest edge bucket
    DROP = "drop"  # Not counted


@dataclass(frozen=True)
class VectorscopeConfig:
    grid_size: int = 256
    policy: ChromaPolicy = ChromaPolicy.CLAMP


@dataclass(frozen=True)
class VectorscopeResult:
    """N x N bucket counts, indexed [v_row, u_column]."""
    counts: np.ndarray
    grid_size: int
    policy: ChromaPolicy
    dropped: int  # Samples outside the grid under DROP

    @property
    def total(self) -> int:
        return int(self.counts.sum())


def chroma_coordinates(rgb: np.ndarray) -> np.ndarray:
    """(..., 3) RGB -> (..., 2) BT.601 (U, V)."""
    return rgb @ RGB_TO_UV.T


class VectorscopeAccumulator:
    """2D chroma occupancy grid."""

    def __init__(self, grid_size: int = 256, policy: ChromaPolicy = ChromaPolicy.CLAMP,
                 workers: Optional[int] = None, max_cells: int = MAX_BUFFER_CELLS):
        self.grid_size = grid_size
        self.policy = policy
        self.workers = workers
        self.max_cells = max_cells
        self.counts = None
        self.dropped = 0

    @property
    def size_key(self) -> tuple:
        return (self.grid_size, self.grid_size)

    def allocate(self) -> None:
        self.release()
        self.counts = allocate_buffer(self.size_key, np.uint64, self.max_cells)

    def release(self) -> None:
        self.counts = None

    def resize(self, grid_size: int) -> None:
        """Reallocate the grid if its size changed."""
        if grid_size == self.grid_size and self.counts is not None:
            return
        logger.debug("Vectorscope grid %d -> %d", self.grid_size, grid_size)
        self.grid_size = grid_size
        self.allocate()

    def clear(self) -> None:
        _require(self.counts, "Vectorscope").fill(0)
        self.dropped = 0

    def gather(self, image: SourceImage) -> None:
        counts = _require(self.counts, "Vectorscope")
        n = self.grid_size
        rgb = image.rgb()

        def _band(y0, y1):
            uv = chroma_coordinates(rgb[y0:y1].reshape(-1, 3).astype(np.float64))
            cells = np.floor((uv + CHROMA_OFFSET) * n + QUANT_EPS).astype(np.intp)
            if self.policy is ChromaPolicy.CLAMP:
                cells = np.clip(cells, 0, n - 1)
            else:
                cells = cells[np.all((cells >= 0) & (cells < n), axis=1)]
            flat = cells[:, 1] * n + cells[:, 0]
            return np.bincount(flat, minlength=n * n).astype(np.uint64)

        gathered = parallel_reduce(_band, image.height, self.workers).reshape(n, n)
        counts += gathered
        self.dropped += image.total_pixels - int(gathered.sum())

    def result(self) -> VectorscopeResult:
        counts = _require(self.counts, "Vectorscope").copy()
        return VectorscopeResult(counts=counts, grid_size=self.grid_size,
                                 policy=self.policy, dropped=self.dropped)


# =============================================================================
# Waveform
# =============================================================================

@dataclass(frozen=True)
class WaveformConfig:
    red: bool = True
    green: bool = True
    blue: bool = True

    @property
    def enabled(self) -> tuple:
        return (self.red, self.green, self.blue)


@dataclass(frozen=True)
class WaveformResult:
    """
    Counts of shape (height, width, 3), indexed [intensity_row, column, channel].

    Row 0 holds intensity 0 and row height-1 holds intensity 1. Channels that
    were disabled at gather time are all zero.
    """
    counts: np.ndarray
    enabled: tuple

    def column(self, x: int, channel: int) -> np.ndarray:
        return self.counts[:, x, channel]


class WaveformAccumulator:
    """Per-column intensity distribution for each enabled channel."""

    def __init__(self, enabled: tuple = (True, True, True),
                 workers: Optional[int] = None, max_cells: int = MAX_BUFFER_CELLS):
        self.enabled = tuple(enabled)
        self.workers = workers
        self.max_cells = max_cells
        self.counts = None

    @property
    def size_key(self) -> Optional[tuple]:
        return None if self.counts is None else self.counts.shape[:2]

    def allocate(self, width: int, height: int) -> None:
        self.release()
        self.counts = allocate_buffer((height, width, 3), np.uint32, self.max_cells)

    def release(self) -> None:
        self.counts = None

    def resize(self, width: int, height: int) -> None:
        """Reallocate when the image resolution changed."""
        if self.size_key == (height, width):
            return
        logger.debug("Waveform buffer resized to %dx%d", width, height)
        self.allocate(width, height)

    def clear(self) -> None:
        _require(self.counts, "Waveform").fill(0)

    def gather(self, image: SourceImage) -> None:
        counts = _require(self.counts, "Waveform")
        if counts.shape[:2] != (image.height, image.width):
            raise RuntimeError(
                f"Waveform buffer {counts.shape[1]}x{counts.shape[0]} does not match "
                f"image {image.width}x{image.height}"
            )
        h = image.height
        rgb = image.rgb()
        channels = [c for c, on in enumerate(self.enabled) if on]

        # Column bands: every worker owns a disjoint slice of the output
        def _band(x0, x1):
            span = x1 - x0
            local_x = np.broadcast_to(np.arange(span), (h, span)).ravel()
            for c in channels:
                rows = quantize(rgb[:, x0:x1, c].astype(np.float64), levels=h).ravel()
                binned = np.bincount(rows * span + local_x, minlength=h * span)
                counts[:, x0:x1, c] += binned.reshape(h, span).astype(np.uint32)

        workers = self.workers or default_workers()
        run_bands(_band, split_bands(image.width, workers), workers)

    def result(self) -> WaveformResult:
        return WaveformResult(counts=_require(self.counts, "Waveform").copy(),
                              enabled=self.enabled)
