#!/usr/bin/env python3
"""
Image-quality analysis engine.

Turns a captured frame into one numeric result per call, for the selected
mode: histogram, vectorscope, waveform, saliency map or dominant colors.
The engine owns every result buffer; buffers are allocated on first use of
a mode, reallocated when a size-affecting setting changes, and released on
teardown. Switching modes leaves the other modes' buffers alone.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

import numpy as np

from color_space import compute_chroma, rgb_to_tuple
from errors import ErrorKind, InvalidInput, ResourceUnavailable
from extract_colors import (
    DominantColorExtractor, DominantColors, PaletteConfig, PaletteStrategy,
)
from reduction import MAX_BUFFER_CELLS
from saliency import SaliencyConfig, SaliencyMap, SaliencyMapGenerator
from scopes import (
    HISTOGRAM_CHANNELS, MAX_GRID_SIZE, MIN_GRID_SIZE, WAVEFORM_CHANNELS, ChromaPolicy,
    HistogramAccumulator, HistogramConfig, HistogramResult, VectorscopeAccumulator,
    VectorscopeConfig, VectorscopeResult, WaveformAccumulator, WaveformConfig,
    WaveformResult,
)
from source import SourceImage

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

class AnalysisMode(Enum):
    HISTOGRAM = "histogram"
    VECTORSCOPE = "vectorscope"
    WAVEFORM = "waveform"
    SALIENCY = "saliency"
    PALETTE = "palette"


@dataclass(frozen=True)
class AnalysisConfig:
    """Selected mode plus the settings of every mode."""
    mode: AnalysisMode = AnalysisMode.HISTOGRAM
    histogram: HistogramConfig = field(default_factory=HistogramConfig)
    vectorscope: VectorscopeConfig = field(default_factory=VectorscopeConfig)
    waveform: WaveformConfig = field(default_factory=WaveformConfig)
    saliency: SaliencyConfig = field(default_factory=SaliencyConfig)
    palette: PaletteConfig = field(default_factory=PaletteConfig)

    def validate(self) -> None:
        """Raise InvalidInput on out-of-range settings."""
        if not isinstance(self.mode, AnalysisMode):
            raise InvalidInput(f"Unknown analysis mode: {self.mode!r}")
        if self.histogram.amplification <= 0:
            raise InvalidInput(f"Amplification must be positive, got {self.histogram.amplification}")
        size = self.vectorscope.grid_size
        if not MIN_GRID_SIZE <= size <= MAX_GRID_SIZE:
            raise InvalidInput(f"Vectorscope grid size {size} outside {MIN_GRID_SIZE}-{MAX_GRID_SIZE}")
        if not isinstance(self.vectorscope.policy, ChromaPolicy):
            raise InvalidInput(f"Unknown chroma policy: {self.vectorscope.policy!r}")
        if self.saliency.radius < 1:
            raise InvalidInput(f"Saliency radius must be >= 1, got {self.saliency.radius}")
        if self.saliency.tile_size < 1:
            raise InvalidInput(f"Saliency tile size must be >= 1, got {self.saliency.tile_size}")
        self.palette.validate()

    def replace(self, **changes) -> "AnalysisConfig":
        return replace(self, **changes)


# =============================================================================
# Reports
# =============================================================================

@dataclass(frozen=True)
class AnalysisError:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class AnalysisReport:
    """Outcome of one analysis call: a result or a recoverable error."""
    mode: AnalysisMode
    result: object = None
    error: Optional[AnalysisError] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


# =============================================================================
# Engine
# =============================================================================

class AnalysisEngine:
    """
    Owns the per-mode buffers and dispatches analysis calls.

    Calls are serialized: a new analysis starts only after the previous one
    has returned.
    """

    def __init__(self, config: Optional[AnalysisConfig] = None, workers: Optional[int] = None,
                 max_buffer_cells: int = MAX_BUFFER_CELLS):
        config = config or AnalysisConfig()
        config.validate()
        self._config = config
        self.workers = workers
        self.max_buffer_cells = max_buffer_cells
        self._buffers = {}  # AnalysisMode -> accumulator / generator / extractor
        self._results = {}  # AnalysisMode -> last published result
        self._lock = threading.Lock()

    # ---------------------------------------------------------------------
    # Configuration and lifecycle
    # ---------------------------------------------------------------------

    @property
    def config(self) -> AnalysisConfig:
        return self._config

    @property
    def mode(self) -> AnalysisMode:
        return self._config.mode

    def set_mode(self, mode: AnalysisMode) -> None:
        self.resize(self._config.replace(mode=mode))

    def allocated_modes(self) -> set:
        return {mode for mode, buf in self._buffers.items() if self._is_allocated(mode, buf)}

    def resize(self, config: AnalysisConfig) -> None:
        """
        Apply a new configuration.

        Buffers whose size depends on a changed setting are released and
        reallocated; everything else is updated in place. Applying the same
        configuration twice changes nothing.
        """
        config.validate()
        with self._lock:
            self._config = config
            for mode, component in list(self._buffers.items()):
                try:
                    self._configure(mode, component)
                except ResourceUnavailable as e:
                    # Left released; the next analysis of this mode reports it
                    logger.warning("Could not resize %s buffer: %s", mode.value, e)

    def release(self) -> None:
        """Free every buffer. Published results are kept."""
        with self._lock:
            for mode, component in self._buffers.items():
                component.release()
                logger.debug("Released %s buffers", mode.value)
            self._buffers.clear()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()
        return False

    def last_result(self, mode: AnalysisMode):
        """Most recent successful result for a mode, or None."""
        return self._results.get(mode)

    # ---------------------------------------------------------------------
    # Analysis
    # ---------------------------------------------------------------------

    def analyze(self, image: SourceImage, mode: Optional[AnalysisMode] = None) -> AnalysisReport:
        """
        Run one mode (default: the selected mode) on a captured image.

        InvalidInput and ResourceUnavailable are reported on the returned
        AnalysisReport; they leave other modes' buffers and results intact.
        """
        mode = mode or self._config.mode
        start = time.perf_counter()
        with self._lock:
            try:
                if image is None:
                    raise InvalidInput("No source image")
                image.validate()
                result = self._run(mode, image)
            except (InvalidInput, ResourceUnavailable) as e:
                logger.warning("%s analysis failed: %s", mode.value, e)
                return AnalysisReport(mode=mode, error=AnalysisError(kind=e.kind, message=str(e)),
                                      elapsed=time.perf_counter() - start)

            self._results[mode] = result
            return AnalysisReport(mode=mode, result=result, elapsed=time.perf_counter() - start)

    def analyze_all(self, image: SourceImage) -> dict:
        """Run every mode on the same capture."""
        return {mode: self.analyze(image, mode) for mode in AnalysisMode}

    def _run(self, mode: AnalysisMode, image: SourceImage):
        component = self._component(mode)

        if mode is AnalysisMode.HISTOGRAM:
            component.clear()
            component.gather(image)
            return component.result()

        if mode is AnalysisMode.VECTORSCOPE:
            component.clear()
            component.gather(image)
            return component.result()

        if mode is AnalysisMode.WAVEFORM:
            component.resize(image.width, image.height)
            component.clear()
            component.gather(image)
            return component.result()

        if mode is AnalysisMode.SALIENCY:
            component.resize(image.width, image.height)
            return component.generate(image, self._config.saliency.normalize)

        return component.extract(image)

    def _component(self, mode: AnalysisMode):
        """Return the mode's component, creating and allocating it on first use."""
        component = self._buffers.get(mode)
        if component is None:
            component = self._create(mode)
            self._buffers[mode] = component
        if not self._is_allocated(mode, component) and mode in (
                AnalysisMode.HISTOGRAM, AnalysisMode.VECTORSCOPE, AnalysisMode.PALETTE):
            component.allocate()
        return component

    def _create(self, mode: AnalysisMode):
        cfg = self._config
        kwargs = dict(workers=self.workers, max_cells=self.max_buffer_cells)
        logger.debug("Creating %s buffers", mode.value)

        if mode is AnalysisMode.HISTOGRAM:
            return HistogramAccumulator(**kwargs)
        if mode is AnalysisMode.VECTORSCOPE:
            return VectorscopeAccumulator(cfg.vectorscope.grid_size, cfg.vectorscope.policy, **kwargs)
        if mode is AnalysisMode.WAVEFORM:
            return WaveformAccumulator(cfg.waveform.enabled, **kwargs)
        if mode is AnalysisMode.SALIENCY:
            return SaliencyMapGenerator(cfg.saliency.radius, cfg.saliency.tile_size, **kwargs)
        return DominantColorExtractor(cfg.palette, **kwargs)

    def _configure(self, mode: AnalysisMode, component) -> None:
        """Bring an existing component in line with the current configuration."""
        cfg = self._config

        if mode is AnalysisMode.VECTORSCOPE:
            component.policy = cfg.vectorscope.policy
            if component.grid_size != cfg.vectorscope.grid_size:
                component.resize(cfg.vectorscope.grid_size)
        elif mode is AnalysisMode.WAVEFORM:
            # Disabled channels are not accumulated; takes effect on the next gather
            component.enabled = cfg.waveform.enabled
        elif mode is AnalysisMode.SALIENCY:
            component.radius = cfg.saliency.radius
            component.tile_size = cfg.saliency.tile_size
        elif mode is AnalysisMode.PALETTE:
            component.reconfigure(cfg.palette)

    @staticmethod
    def _is_allocated(mode: AnalysisMode, component) -> bool:
        if mode is AnalysisMode.SALIENCY:
            return component.scores is not None
        if mode is AnalysisMode.PALETTE:
            return component.votes is not None
        return component.counts is not None


# =============================================================================
# Render
# =============================================================================

def _render_histogram(result: HistogramResult) -> list[str]:
    lines = []
    levels = np.arange(256)
    for name in HISTOGRAM_CHANNELS:
        counts = result.channel(name).astype(np.float64)
        total = counts.sum()
        occupied = np.nonzero(counts)[0]
        mean = float((counts * levels).sum() / total)
        lines.append(f"  {name:<5}: mean {mean:6.1f} | range {occupied[0]}-{occupied[-1]} | "
                     f"clipped shadows {counts[0] / total * 100:.1f}% / "
                     f"highlights {counts[-1] / total * 100:.1f}%")
    return lines


def _render_vectorscope(result: VectorscopeResult) -> list[str]:
    counts = result.counts
    n = result.grid_size
    peak = np.unravel_index(np.argmax(counts), counts.shape)
    ys, xs = np.indices(counts.shape)
    radius = np.hypot(xs + 0.5 - n / 2, ys + 0.5 - n / 2) / (n / 2)
    total = result.total
    spread = float((radius * counts).sum() / total) if total else 0.0
    lines = [
        f"  Occupied buckets: {int(np.count_nonzero(counts)):,} of {n * n:,}",
        f"  Peak bucket: row {peak[0]}, column {peak[1]} ({int(counts[peak]):,} pixels)",
        f"  Mean saturation radius: {spread:.3f}",
    ]
    if result.policy is ChromaPolicy.DROP:
        lines.append(f"  Dropped out-of-range samples: {result.dropped:,}")
    return lines


def _render_waveform(result: WaveformResult) -> list[str]:
    h = result.counts.shape[0]
    lines = []
    for c, name in enumerate(WAVEFORM_CHANNELS):
        if not result.enabled[c]:
            lines.append(f"  {name:<5}: disabled")
            continue
        rows = np.nonzero(result.counts[:, :, c].sum(axis=1))[0]
        scale = max(1, h - 1)
        lines.append(f"  {name:<5}: intensity {rows[0] / scale:.2f}-{rows[-1] / scale:.2f}")
    return lines


def _render_saliency(result: SaliencyMap) -> list[str]:
    scores = result.scores
    lines = [
        f"  Raw score range: {result.stats.minimum:.3f}-{result.stats.maximum:.3f} "
        f"({result.stats.tiles.shape[0] * result.stats.tiles.shape[1]} tiles)",
        f"  Normalized: {'yes' if result.normalized else 'no'}",
    ]
    if result.normalized:
        lines.append(f"  Salient area (>0.5): {(scores > 0.5).mean() * 100:.1f}%")
    return lines


def _render_palette(result: DominantColors) -> list[str]:
    lines = [f"  Source: {result.source.value}"]
    if result.threshold is not None:
        lines[0] += f" | diversity {result.threshold:.2f}"
        if result.backfilled:
            lines[0] += f" ({result.backfilled} backfilled)"
    total = sum(c.votes for c in result.clusters) or 1
    for i, cluster in enumerate(result.clusters, 1):
        lab = cluster.lab
        lines.append(f"  [{i}] {cluster.name}")
        lines.append(f"      Hex: {cluster.hex} | RGB: {rgb_to_tuple(cluster.rgb)} | "
                     f"LAB: ({lab[0]:.0f}, {lab[1]:.0f}, {lab[2]:.0f})")
        lines.append(f"      Share: {cluster.votes / total * 100:.1f}% | "
                     f"Chroma: {compute_chroma(lab):.0f}")
    return lines


RENDERERS = {
    AnalysisMode.HISTOGRAM: _render_histogram,
    AnalysisMode.VECTORSCOPE: _render_vectorscope,
    AnalysisMode.WAVEFORM: _render_waveform,
    AnalysisMode.SALIENCY: _render_saliency,
    AnalysisMode.PALETTE: _render_palette,
}


def render_summary(report: AnalysisReport) -> str:
    """Render a report as short prose."""
    header = f"{report.mode.value.upper()}"
    if not report.ok:
        return f"{header}: error ({report.error.kind.value}): {report.error.message}"
    lines = [f"{header} ({report.elapsed * 1000:.0f} ms)"]
    lines.extend(RENDERERS[report.mode](report.result))
    return "\n".join(lines)


def build_config(args) -> AnalysisConfig:
    """AnalysisConfig from parsed CLI arguments."""
    return AnalysisConfig(
        vectorscope=VectorscopeConfig(grid_size=args.grid_size),
        saliency=SaliencyConfig(normalize=not args.no_normalize),
        palette=PaletteConfig(size=args.palette_size, strategy=PaletteStrategy(args.strategy),
                              seed=args.seed),
    )


def add_analysis_arguments(parser) -> None:
    """Options shared by the analysis CLIs."""
    parser.add_argument(
        '--mode', '-m',
        default='all',
        choices=['all'] + [m.value for m in AnalysisMode],
        help='Analysis to run (default: all)'
    )
    parser.add_argument('--palette-size', '-k', type=int, default=5, help='Dominant colors to extract')
    parser.add_argument('--strategy', default='kmeans', choices=[s.value for s in PaletteStrategy],
                        help='Dominant color strategy')
    parser.add_argument('--seed', type=int, default=0, help='Clustering seed')
    parser.add_argument('--grid-size', type=int, default=256, help='Vectorscope grid size')
    parser.add_argument('--no-normalize', action='store_true', help='Keep raw saliency scores')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')


def run_analysis(engine: AnalysisEngine, image: SourceImage, mode: str) -> list:
    if mode == 'all':
        return list(engine.analyze_all(image).values())
    return [engine.analyze(image, AnalysisMode(mode))]


# =============================================================================
# CLI
# =============================================================================

if __name__ == '__main__':
    import argparse
    import sys

    parser = argparse.ArgumentParser(
        description='Analyze a captured frame: histogram, scopes, saliency and dominant colors.'
    )
    parser.add_argument(
        '--input', '-i',
        required=True,
        help='Path to the image file'
    )
    add_analysis_arguments(parser)
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    try:
        config = build_config(args)
        config.validate()
    except InvalidInput as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        image = SourceImage.from_file(args.input)
    except (FileNotFoundError, InvalidInput) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Image: {image.width}x{image.height} ({image.total_pixels:,} pixels)")
    print()

    with AnalysisEngine(config) as engine:
        reports = run_analysis(engine, image, args.mode)

    for report in reports:
        print(render_summary(report))
        print()

    if not all(r.ok for r in reports):
        sys.exit(1)
