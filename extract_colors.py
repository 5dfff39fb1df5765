#!/usr/bin/env python3
"""
Extract a small palette of dominant, perceptually distinct colors.

Two strategies produce the same DominantColors result:

- K-means (primary): downsample, stride-sample up to MAX_SAMPLES pixels,
  convert to LAB, seed centroids with K-means++ and refine with Lloyd
  iterations. Centroids closer than the diversity threshold are merged.
- Vote: every pixel votes for a quantized RGB slot; slots are ranked by
  votes x importance and picked greedily so that no two picks are closer
  than a diversity threshold, which is relaxed step by step when too few
  colors qualify.

Both are deterministic for a given image, configuration and seed.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
from sklearn.cluster import kmeans_plusplus
from sklearn.metrics import pairwise_distances_argmin

from color_space import generate_color_name, lab_to_rgb, rgb_to_hex, rgb_to_lab
from errors import InvalidInput
from reduction import MAX_BUFFER_CELLS, allocate_buffer, parallel_reduce
from source import SourceImage

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_PALETTE_SIZE = 5
PALETTE_SIZE_RANGE = (4, 8)
DEFAULT_SEED = 0

# Sampling
DOWNSAMPLE_FACTOR = 15  # Keep every 15th pixel per axis
MIN_DOWNSAMPLED_SIDE = 8  # Small images are not downsampled below this
MAX_SAMPLES = 1000

# Clustering
MAX_ITERATIONS = 20
CONVERGENCE_SHIFT = 1.0  # LAB units

# Diversity schedule (RGB distance, channels in 0-1)
DIVERSITY_START = 0.15
DIVERSITY_STEP = 0.03
DIVERSITY_FLOOR = 0.05

# Vote buffer: 8 levels per channel -> 512 slots
VOTE_LEVELS = 8
VOTE_SLOTS = VOTE_LEVELS ** 3
VOTE_FIELDS = 5  # votes, red sum, green sum, blue sum, importance sum
IMPORTANCE_SCALE = 1000  # Fixed-point scale so vote sums stay integer
CHROMA_IMPORTANCE = 2.0  # Weight of (max - min) channel spread

GRID_SAMPLES = 3  # Fallback samples a GRID_SAMPLES x GRID_SAMPLES grid


# =============================================================================
# Types
# =============================================================================

class PaletteStrategy(Enum):
    KMEANS = "kmeans"
    VOTE = "vote"


class PaletteSource(Enum):
    """Which path produced the palette."""
    SAMPLES = "samples"  # Few enough distinct samples to return them all
    KMEANS = "kmeans"
    VOTE = "vote"
    GRID_FALLBACK = "grid_fallback"


@dataclass(frozen=True)
class PaletteConfig:
    size: int = DEFAULT_PALETTE_SIZE
    strategy: PaletteStrategy = PaletteStrategy.KMEANS
    seed: int = DEFAULT_SEED
    diversity_start: float = DIVERSITY_START
    diversity_step: float = DIVERSITY_STEP
    diversity_floor: float = DIVERSITY_FLOOR
    min_candidate_share: float = 0.0  # Minimum fraction of votes for a vote slot

    def validate(self) -> None:
        lo, hi = PALETTE_SIZE_RANGE
        if not lo <= self.size <= hi:
            raise InvalidInput(f"Palette size {self.size} outside {lo}-{hi}")
        if not 0 < self.diversity_floor <= self.diversity_start:
            raise InvalidInput(
                f"Diversity floor {self.diversity_floor} must be in (0, {self.diversity_start}]"
            )
        if self.diversity_step <= 0:
            raise InvalidInput(f"Diversity step must be positive, got {self.diversity_step}")
        if self.min_candidate_share < 0:
            raise InvalidInput(f"Candidate share must be >= 0, got {self.min_candidate_share}")

    def thresholds(self) -> list[float]:
        """Diversity thresholds from start down to the floor, floor included."""
        values = []
        t = self.diversity_start
        while t > self.diversity_floor:
            values.append(round(t, 6))
            t -= self.diversity_step
        values.append(self.diversity_floor)
        return values


@dataclass(frozen=True)
class ColorCluster:
    """One palette entry."""
    rgb: tuple  # (r, g, b) in 0-1
    lab: tuple  # (L, a, b)
    votes: int  # Samples or pixels represented
    importance: float

    @property
    def hex(self) -> str:
        return rgb_to_hex(self.rgb)

    @property
    def name(self) -> str:
        return generate_color_name(np.array(self.lab))


@dataclass(frozen=True)
class DominantColors:
    """Ordered palette of at most K clusters, most dominant first."""
    clusters: tuple
    source: PaletteSource
    threshold: Optional[float] = None  # Final diversity threshold (None for samples or grid)
    backfilled: int = 0  # Trailing clusters added without the distance check (vote path)
    iterations: int = 0  # Lloyd iterations run (K-means path)

    def __len__(self) -> int:
        return len(self.clusters)

    def colors(self) -> np.ndarray:
        """(n, 3) RGB array."""
        return np.array([c.rgb for c in self.clusters], dtype=np.float64).reshape(-1, 3)


def _cluster(rgb, lab, votes: int, importance: float) -> ColorCluster:
    return ColorCluster(
        rgb=tuple(float(v) for v in rgb),
        lab=tuple(float(v) for v in lab),
        votes=int(votes),
        importance=float(importance),
    )


# =============================================================================
# Sampling
# =============================================================================

def downsample(rgb: np.ndarray, factor: int = DOWNSAMPLE_FACTOR,
               min_side: int = MIN_DOWNSAMPLED_SIDE) -> np.ndarray:
    """
    Nearest-neighbor downsample by keeping every `factor`-th pixel per axis.

    The stride shrinks for small images so neither side drops below
    `min_side` pixels. Pixel values are kept exactly (no blending).
    """
    h, w = rgb.shape[:2]
    step_y = max(1, min(factor, h // min_side))
    step_x = max(1, min(factor, w // min_side))
    return rgb[::step_y, ::step_x]


def stride_sample(pixels: np.ndarray, max_samples: int = MAX_SAMPLES) -> np.ndarray:
    """Uniformly stride through (n, 3) pixels, keeping at most max_samples."""
    n = len(pixels)
    stride = max(1, -(-n // max_samples))
    return pixels[::stride][:max_samples]


def grid_sample(rgb: np.ndarray, count: int, grid: int = GRID_SAMPLES) -> np.ndarray:
    """Sample cell centers of a grid x grid layout, row-major, first `count` kept."""
    h, w = rgb.shape[:2]
    ys = [((2 * i + 1) * h) // (2 * grid) for i in range(grid)]
    xs = [((2 * i + 1) * w) // (2 * grid) for i in range(grid)]
    samples = np.array([rgb[y, x] for y in ys for x in xs], dtype=np.float64)
    return samples[:count]


# =============================================================================
# K-means
# =============================================================================

def kmeans(samples: np.ndarray, k: int, seed: int = DEFAULT_SEED,
           max_iterations: int = MAX_ITERATIONS,
           tolerance: float = CONVERGENCE_SHIFT) -> tuple[np.ndarray, np.ndarray, int]:
    """
    Cluster samples with K-means++ seeding and Lloyd refinement.

    Seeding picks the first centroid uniformly at random and each further
    one with probability proportional to its squared distance to the
    nearest chosen centroid. Empty clusters keep their previous centroid.
    Iteration stops early once every centroid moves less than `tolerance`.

    Args:
        samples: (n, d) points, n >= k
        k: number of clusters
        seed: RNG seed for the seeding step

    Returns:
        Tuple of (centroids (k, d), labels (n,), iterations run)
    """
    samples = np.asarray(samples, dtype=np.float64)
    centroids, _ = kmeans_plusplus(samples, n_clusters=k, random_state=seed,
                                   n_local_trials=1)

    iterations = 0
    for iterations in range(1, max_iterations + 1):
        labels = pairwise_distances_argmin(samples, centroids)
        updated = centroids.copy()
        for j in range(k):
            members = samples[labels == j]
            if len(members):
                updated[j] = members.mean(axis=0)

        shift = np.linalg.norm(updated - centroids, axis=1)
        centroids = updated
        if np.all(shift < tolerance):
            break

    labels = pairwise_distances_argmin(samples, centroids)
    return centroids, labels, iterations


# =============================================================================
# Diversity filter
# =============================================================================

def _greedy_pick(colors: np.ndarray, k: int, threshold: float) -> list[int]:
    chosen = []
    for i, color in enumerate(colors):
        if all(np.linalg.norm(color - colors[j]) >= threshold for j in chosen):
            chosen.append(i)
            if len(chosen) == k:
                break
    return chosen


def select_diverse(colors: np.ndarray, k: int, thresholds: list[float],
                   backfill: bool = True) -> tuple[list[int], float, int]:
    """
    Greedily pick up to k ranked colors that are mutually far apart.

    The pick is recomputed with each successively lower threshold until k
    colors qualify or the schedule runs out; then, with `backfill`, the
    highest-ranked remaining colors fill the gap regardless of distance.

    Args:
        colors: (n, 3) RGB candidates, best-ranked first
        k: palette size
        thresholds: decreasing diversity thresholds
        backfill: fill up to k after the last threshold

    Returns:
        Tuple of (indices into colors, final threshold, number backfilled)
    """
    chosen = []
    threshold = thresholds[0]
    for threshold in thresholds:
        chosen = _greedy_pick(colors, k, threshold)
        if len(chosen) >= k:
            break
        logger.debug("Diversity %.2f kept %d/%d colors", threshold, len(chosen), k)

    backfilled = 0
    if backfill and len(chosen) < k:
        taken = set(chosen)
        for i in range(len(colors)):
            if len(chosen) == k:
                break
            if i not in taken:
                chosen.append(i)
                backfilled += 1
        if backfilled:
            logger.debug("Backfilled %d colors below diversity %.2f", backfilled, threshold)

    return chosen, threshold, backfilled


# =============================================================================
# Extractor
# =============================================================================

def vote_slots(rgb: np.ndarray) -> np.ndarray:
    """Quantized RGB slot index for each (n, 3) pixel."""
    q = np.clip(np.floor(rgb * VOTE_LEVELS), 0, VOTE_LEVELS - 1).astype(np.intp)
    return (q[:, 0] * VOTE_LEVELS + q[:, 1]) * VOTE_LEVELS + q[:, 2]


def pixel_importance(rgb: np.ndarray) -> np.ndarray:
    """1 for neutral pixels, up to 1 + CHROMA_IMPORTANCE for fully saturated ones."""
    return 1.0 + CHROMA_IMPORTANCE * (rgb.max(axis=1) - rgb.min(axis=1))


class DominantColorExtractor:
    """
    Palette extraction with owned working buffers.

    `votes` holds one row per vote slot (votes, channel sums, importance sum)
    in fixed-point integers; `centroids` holds the K-means working set.
    """

    def __init__(self, config: Optional[PaletteConfig] = None, workers: Optional[int] = None,
                 max_cells: int = MAX_BUFFER_CELLS):
        self.config = config or PaletteConfig()
        self.config.validate()
        self.workers = workers
        self.max_cells = max_cells
        self.votes = None
        self.centroids = None

    @property
    def size_key(self) -> tuple:
        return (VOTE_SLOTS, self.config.size)

    def allocate(self) -> None:
        self.release()
        self.votes = allocate_buffer((VOTE_SLOTS, VOTE_FIELDS), np.int64, self.max_cells)
        self.centroids = allocate_buffer((self.config.size, 3), np.float64, self.max_cells)

    def release(self) -> None:
        self.votes = None
        self.centroids = None

    def reconfigure(self, config: PaletteConfig) -> None:
        """Apply a new configuration, reallocating if the palette size changed."""
        config.validate()
        resized = config.size != self.config.size
        self.config = config
        if resized and self.centroids is not None:
            logger.debug("Palette size changed to %d", config.size)
            self.allocate()

    def extract(self, image: SourceImage) -> DominantColors:
        if self.votes is None:
            self.allocate()
        if self.config.strategy is PaletteStrategy.VOTE:
            return self.extract_votes(image)
        return self.extract_kmeans(image)

    # ---------------------------------------------------------------------
    # K-means path
    # ---------------------------------------------------------------------

    def extract_kmeans(self, image: SourceImage) -> DominantColors:
        k = self.config.size
        rgb = np.asarray(image.rgb(), dtype=np.float64)
        samples = stride_sample(downsample(rgb).reshape(-1, 3))

        distinct, counts = np.unique(samples, axis=0, return_counts=True)
        if len(distinct) <= k:
            # Every sample is its own cluster, no quantization error
            order = np.argsort(-counts, kind='stable')
            lab = rgb_to_lab(distinct)
            clusters = tuple(
                _cluster(distinct[i], lab[i], counts[i], counts[i] / len(samples))
                for i in order
            )
            return DominantColors(clusters=clusters, source=PaletteSource.SAMPLES)

        lab = rgb_to_lab(samples)
        centroids, labels, iterations = kmeans(lab, k, seed=self.config.seed)
        if self.centroids is not None:
            self.centroids[:] = centroids

        logger.debug("K-means converged after %d iterations", iterations)
        votes = np.bincount(labels, minlength=k)
        order = np.array([j for j in np.argsort(-votes, kind='stable') if votes[j] > 0])
        ranked_lab = centroids[order]
        ranked_rgb = lab_to_rgb(ranked_lab)
        ranked_votes = votes[order]

        # Near-duplicate centroids are merged into the closest kept color
        picks, threshold, _ = select_diverse(ranked_rgb, k, self.config.thresholds(),
                                             backfill=False)
        kept = ranked_rgb[picks]
        merged = np.zeros(len(picks), dtype=np.int64)
        for i in range(len(ranked_rgb)):
            merged[np.argmin(np.linalg.norm(kept - ranked_rgb[i], axis=1))] += ranked_votes[i]
        if len(picks) < len(order):
            logger.debug("Merged %d near-duplicate centroids at diversity %.2f",
                         len(order) - len(picks), threshold)

        clusters = sorted(
            (_cluster(ranked_rgb[i], ranked_lab[i], merged[j], merged[j] / len(samples))
             for j, i in enumerate(picks)),
            key=lambda c: -c.votes,
        )
        return DominantColors(clusters=tuple(clusters), source=PaletteSource.KMEANS,
                              threshold=threshold, iterations=iterations)

    # ---------------------------------------------------------------------
    # Vote path
    # ---------------------------------------------------------------------

    def gather_votes(self, image: SourceImage) -> np.ndarray:
        """Clear the vote buffer, then accumulate every pixel's vote into it."""
        votes = self.votes
        votes.fill(0)
        rgb = image.rgb()

        def _band(y0, y1):
            block = rgb[y0:y1].reshape(-1, 3).astype(np.float64)
            slots = vote_slots(block)
            local = np.empty((VOTE_SLOTS, VOTE_FIELDS), dtype=np.int64)
            local[:, 0] = np.bincount(slots, minlength=VOTE_SLOTS)
            channels = np.round(block * 255).astype(np.int64)
            for c in range(3):
                local[:, 1 + c] = np.bincount(slots, weights=channels[:, c],
                                              minlength=VOTE_SLOTS).astype(np.int64)
            importance = np.round(pixel_importance(block) * IMPORTANCE_SCALE).astype(np.int64)
            local[:, 4] = np.bincount(slots, weights=importance,
                                      minlength=VOTE_SLOTS).astype(np.int64)
            return local

        votes += parallel_reduce(_band, image.height, self.workers)
        return votes

    def extract_votes(self, image: SourceImage) -> DominantColors:
        k = self.config.size
        votes = self.gather_votes(image)
        counts = votes[:, 0]
        total = int(counts.sum())

        qualified = np.nonzero((counts > 0) & (counts >= self.config.min_candidate_share * total))[0]
        if len(qualified) == 0:
            logger.debug("No vote candidates; sampling a %dx%d grid", GRID_SAMPLES, GRID_SAMPLES)
            return self.grid_fallback(image)

        n = counts[qualified].astype(np.float64)
        colors = votes[qualified, 1:4] / (255.0 * n[:, None])
        importance = votes[qualified, 4] / (IMPORTANCE_SCALE * n)
        order = np.argsort(-(n * importance), kind='stable')
        colors, n, importance = colors[order], n[order], importance[order]

        picks, threshold, backfilled = select_diverse(colors, k, self.config.thresholds())
        lab = rgb_to_lab(colors[picks])
        clusters = tuple(
            _cluster(colors[i], lab[j], n[i], importance[i]) for j, i in enumerate(picks)
        )
        return DominantColors(clusters=clusters, source=PaletteSource.VOTE,
                              threshold=threshold, backfilled=backfilled)

    def grid_fallback(self, image: SourceImage) -> DominantColors:
        samples = grid_sample(np.asarray(image.rgb(), dtype=np.float64), self.config.size)
        lab = rgb_to_lab(samples)
        clusters = tuple(_cluster(samples[i], lab[i], 1, 0.0) for i in range(len(samples)))
        return DominantColors(clusters=clusters, source=PaletteSource.GRID_FALLBACK)
