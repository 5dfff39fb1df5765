"""Tests for the AnalysisEngine: dispatch, buffer lifecycle and error boundary."""
import numpy as np
import pytest

from analyze import (
    AnalysisConfig, AnalysisEngine, AnalysisMode, render_summary,
)
from errors import ErrorKind, InvalidInput
from extract_colors import PaletteConfig, PaletteSource, PaletteStrategy
from saliency import SaliencyConfig
from scopes import ChromaPolicy, VectorscopeConfig, WaveformConfig
from source import SourceImage


def test_default_mode_is_histogram(random_image):
    engine = AnalysisEngine()

    report = engine.analyze(random_image)

    assert report.ok
    assert report.mode is AnalysisMode.HISTOGRAM
    assert report.result.total('luma') == random_image.total_pixels


def test_analyze_all_modes(photo_like_image):
    with AnalysisEngine() as engine:
        reports = engine.analyze_all(photo_like_image)

    assert set(reports) == set(AnalysisMode)
    assert all(r.ok for r in reports.values())
    assert reports[AnalysisMode.VECTORSCOPE].result.total == photo_like_image.total_pixels
    assert len(reports[AnalysisMode.PALETTE].result) <= 5


def test_all_black_scenario(black_image):
    engine = AnalysisEngine()

    hist = engine.analyze(black_image, AnalysisMode.HISTOGRAM).result
    scope = engine.analyze(black_image, AnalysisMode.VECTORSCOPE).result

    for name in ('red', 'green', 'blue', 'luma'):
        assert hist.channel(name)[0] == black_image.total_pixels
    assert np.count_nonzero(scope.counts) == 1
    assert scope.counts.max() == black_image.total_pixels


def test_uniform_gray_scenario(gray_image):
    engine = AnalysisEngine()

    saliency = engine.analyze(gray_image, AnalysisMode.SALIENCY).result
    palette = engine.analyze(gray_image, AnalysisMode.PALETTE).result

    assert np.all(saliency.scores == 0.0)
    assert len(palette) == 1
    assert palette.clusters[0].rgb == pytest.approx((0.5, 0.5, 0.5), abs=1e-6)


def test_invalid_source_reported_and_results_kept(random_image):
    """A bad capture fails with InvalidInput; earlier results stay published."""
    engine = AnalysisEngine()
    good = engine.analyze(random_image, AnalysisMode.HISTOGRAM)

    bad = engine.analyze(SourceImage(width=0, height=0, pixels=None), AnalysisMode.HISTOGRAM)

    assert not bad.ok
    assert bad.error.kind is ErrorKind.INVALID_INPUT
    assert bad.result is None
    assert engine.last_result(AnalysisMode.HISTOGRAM) is good.result


def _with_nan():
    """8x8 gray capture with one NaN red value."""
    arr = np.full((8, 8, 3), 0.5, dtype=np.float32)
    arr[3, 4, 0] = np.nan
    return SourceImage.from_array(arr)


@pytest.mark.parametrize("image", [
    None,
    SourceImage(width=4, height=4, pixels=None),
    SourceImage(width=-2, height=3, pixels=np.zeros((3, 2, 4), dtype=np.float32)),
    SourceImage(width=5, height=5, pixels=np.zeros((4, 4, 4), dtype=np.float32)),
    _with_nan(),
    SourceImage(width=2, height=2, pixels=np.full((2, 2, 4), np.inf, dtype=np.float32)),
])
def test_invalid_sources(image):
    report = AnalysisEngine().analyze(image, AnalysisMode.PALETTE)

    assert report.error.kind is ErrorKind.INVALID_INPUT


def test_non_finite_pixels_rejected_before_gather():
    """NaN pixels fail validation instead of reaching the histogram bins."""
    engine = AnalysisEngine()

    report = engine.analyze(_with_nan(), AnalysisMode.HISTOGRAM)

    assert report.error.kind is ErrorKind.INVALID_INPUT
    assert "NaN" in report.error.message
    assert engine.last_result(AnalysisMode.HISTOGRAM) is None


def test_resource_failure_scoped_to_mode():
    """A buffer over the cell limit fails only its own mode."""
    image = SourceImage.from_array(np.random.default_rng(2).random((40, 40, 3)))
    config = AnalysisConfig(vectorscope=VectorscopeConfig(grid_size=16))
    engine = AnalysisEngine(config, max_buffer_cells=3000)

    hist = engine.analyze(image, AnalysisMode.HISTOGRAM)
    wave = engine.analyze(image, AnalysisMode.WAVEFORM)  # 40 * 40 * 3 cells
    scope = engine.analyze(image, AnalysisMode.VECTORSCOPE)

    assert hist.ok and scope.ok
    assert wave.error.kind is ErrorKind.RESOURCE_UNAVAILABLE
    assert AnalysisMode.WAVEFORM not in engine.allocated_modes()
    assert engine.last_result(AnalysisMode.HISTOGRAM) is hist.result

    # Smaller capture fits; the failed mode recovers
    small = SourceImage.from_array(np.zeros((10, 10, 3), dtype=np.float32))
    assert engine.analyze(small, AnalysisMode.WAVEFORM).ok


def test_mode_switch_keeps_other_buffers(random_image):
    engine = AnalysisEngine()
    engine.analyze(random_image)

    engine.set_mode(AnalysisMode.VECTORSCOPE)
    report = engine.analyze(random_image)

    assert report.mode is AnalysisMode.VECTORSCOPE
    assert engine.allocated_modes() == {AnalysisMode.HISTOGRAM, AnalysisMode.VECTORSCOPE}


def test_buffers_allocated_lazily(random_image):
    engine = AnalysisEngine()
    assert engine.allocated_modes() == set()

    engine.analyze(random_image, AnalysisMode.SALIENCY)

    assert engine.allocated_modes() == {AnalysisMode.SALIENCY}


def test_resize_is_idempotent(random_image):
    config = AnalysisConfig(vectorscope=VectorscopeConfig(grid_size=64))
    engine = AnalysisEngine(config)
    engine.analyze(random_image, AnalysisMode.VECTORSCOPE)
    buffer = engine._buffers[AnalysisMode.VECTORSCOPE].counts

    engine.resize(config)
    engine.resize(config)

    assert engine._buffers[AnalysisMode.VECTORSCOPE].counts is buffer


def test_resize_grid_size(random_image):
    engine = AnalysisEngine(AnalysisConfig(vectorscope=VectorscopeConfig(grid_size=64)))
    engine.analyze(random_image, AnalysisMode.VECTORSCOPE)

    engine.resize(engine.config.replace(vectorscope=VectorscopeConfig(grid_size=128)))
    result = engine.analyze(random_image, AnalysisMode.VECTORSCOPE).result

    assert result.counts.shape == (128, 128)
    assert result.total == random_image.total_pixels


def test_resize_policy_in_place():
    red = SourceImage.from_array(np.tile(np.array([1.0, 0.0, 0.0]), (8, 8, 1)))
    engine = AnalysisEngine(AnalysisConfig(vectorscope=VectorscopeConfig(grid_size=32)))
    assert engine.analyze(red, AnalysisMode.VECTORSCOPE).result.total == 64

    engine.resize(engine.config.replace(
        vectorscope=VectorscopeConfig(grid_size=32, policy=ChromaPolicy.DROP)))
    result = engine.analyze(red, AnalysisMode.VECTORSCOPE).result

    assert result.total == 0
    assert result.dropped == 64


def test_waveform_toggle_through_config(random_image):
    engine = AnalysisEngine()
    engine.analyze(random_image, AnalysisMode.WAVEFORM)

    engine.resize(engine.config.replace(waveform=WaveformConfig(green=False)))
    result = engine.analyze(random_image, AnalysisMode.WAVEFORM).result

    assert result.counts[:, :, 1].sum() == 0
    assert result.counts[:, :, 2].sum() == random_image.total_pixels


def test_waveform_follows_resolution(gray_image, random_image):
    engine = AnalysisEngine()

    first = engine.analyze(gray_image, AnalysisMode.WAVEFORM).result
    second = engine.analyze(random_image, AnalysisMode.WAVEFORM).result

    assert first.counts.shape == (gray_image.height, gray_image.width, 3)
    assert second.counts.shape == (random_image.height, random_image.width, 3)


def test_saliency_normalize_flag(random_image):
    engine = AnalysisEngine(AnalysisConfig(saliency=SaliencyConfig(normalize=False)))

    result = engine.analyze(random_image, AnalysisMode.SALIENCY).result

    assert not result.normalized
    assert result.scores.max() > 1.0


def test_palette_strategy_switch(photo_like_image):
    engine = AnalysisEngine()
    kmeans = engine.analyze(photo_like_image, AnalysisMode.PALETTE).result

    engine.resize(engine.config.replace(palette=PaletteConfig(strategy=PaletteStrategy.VOTE)))
    votes = engine.analyze(photo_like_image, AnalysisMode.PALETTE).result

    assert kmeans.source is PaletteSource.KMEANS
    assert votes.source is PaletteSource.VOTE


def test_palette_deterministic_across_engines(photo_like_image):
    config = AnalysisConfig(palette=PaletteConfig(seed=42))

    a = AnalysisEngine(config).analyze(photo_like_image, AnalysisMode.PALETTE).result
    b = AnalysisEngine(config, workers=1).analyze(photo_like_image, AnalysisMode.PALETTE).result

    assert a == b


def test_release_frees_buffers_keeps_results(random_image):
    engine = AnalysisEngine()
    report = engine.analyze(random_image)

    engine.release()

    assert engine.allocated_modes() == set()
    assert engine.last_result(AnalysisMode.HISTOGRAM) is report.result
    assert engine.analyze(random_image).ok


@pytest.mark.parametrize("config", [
    AnalysisConfig(vectorscope=VectorscopeConfig(grid_size=8)),
    AnalysisConfig(saliency=SaliencyConfig(radius=0)),
    AnalysisConfig(palette=PaletteConfig(size=2)),
])
def test_invalid_config_rejected(config):
    with pytest.raises(InvalidInput):
        AnalysisEngine(config)


def test_render_summary(photo_like_image):
    engine = AnalysisEngine()
    reports = engine.analyze_all(photo_like_image)

    text = "\n".join(render_summary(r) for r in reports.values())

    for mode in AnalysisMode:
        assert mode.value.upper() in text
    assert "Hex: #" in text


def test_render_summary_error():
    report = AnalysisEngine().analyze(None)

    assert render_summary(report).startswith("HISTOGRAM: error (invalid_input)")
