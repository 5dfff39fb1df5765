"""Tests for the center-surround saliency map and its min/max reduction."""
import numpy as np
import pytest

from saliency import MinMaxStats, SaliencyMapGenerator, normalize
from source import SourceImage


def test_uniform_image_scores_zero(gray_image):
    """No local contrast anywhere: every score is exactly 0."""
    gen = SaliencyMapGenerator()

    scores = gen.compute_saliency(gray_image)

    assert scores.shape == (gray_image.height, gray_image.width)
    assert np.all(scores == 0.0)


def test_flat_map_skips_normalization(gray_image):
    """min == max returns the raw scores unclamped, without error."""
    result = SaliencyMapGenerator().generate(gray_image, normalize_scores=True)

    assert result.stats.is_flat
    assert not result.normalized
    assert np.all(result.scores == 0.0)


def test_normalized_scores_in_unit_range(random_image):
    result = SaliencyMapGenerator(radius=3).generate(random_image, normalize_scores=True)

    assert result.normalized
    assert result.scores.min() == pytest.approx(0.0)
    assert result.scores.max() == pytest.approx(1.0)
    assert np.all((result.scores >= 0.0) & (result.scores <= 1.0))


def test_raw_scores_when_normalization_off(random_image):
    gen = SaliencyMapGenerator(radius=3)

    result = gen.generate(random_image, normalize_scores=False)

    assert not result.normalized
    assert result.scores.max() > 1.0  # LAB distances, not rescaled


def test_isolated_detail_is_most_salient():
    """A single bright pixel on a dark field outscores the field."""
    arr = np.full((31, 31, 3), 0.1, dtype=np.float32)
    arr[15, 15] = (1.0, 1.0, 0.2)

    scores = SaliencyMapGenerator(radius=4).compute_saliency(SourceImage.from_array(arr))

    assert np.unravel_index(np.argmax(scores), scores.shape) == (15, 15)
    assert scores[0, 0] == 0.0


def test_deterministic(random_image):
    a = SaliencyMapGenerator(workers=1).compute_saliency(random_image)
    b = SaliencyMapGenerator(workers=8).compute_saliency(random_image)

    assert np.array_equal(a, b)


def test_tiled_min_max_matches_global(random_image):
    gen = SaliencyMapGenerator(tile_size=16)
    scores = gen.compute_saliency(random_image)

    stats = gen.reduce_min_max(scores)

    assert stats.tiles.shape == (6, 4, 2)  # 96 x 64 in 16-pixel tiles
    assert stats.minimum == scores.min()
    assert stats.maximum == scores.max()


def test_partial_edge_tiles():
    """Tile size that does not divide the map still covers every pixel."""
    scores = np.arange(35, dtype=np.float64).reshape(5, 7)
    gen = SaliencyMapGenerator(tile_size=3)

    stats = gen.reduce_min_max(scores)

    assert stats.tiles.shape == (2, 3, 2)
    assert (stats.minimum, stats.maximum) == (0.0, 34.0)
    assert stats.tiles[1, 2, 1] == 34.0


def test_normalize_function_flat_returns_raw():
    scores = np.full((3, 3), 7.5)
    stats = MinMaxStats(tiles=np.array([[[7.5, 7.5]]]), minimum=7.5, maximum=7.5, tile_size=16)

    out = normalize(scores, stats)

    assert np.all(out == 7.5)
    assert out is not scores


def test_normalize_clamps_outside_range():
    scores = np.array([[-1.0, 0.0, 5.0, 10.0, 12.0]])
    stats = MinMaxStats(tiles=np.zeros((1, 1, 2)), minimum=0.0, maximum=10.0, tile_size=16)

    assert list(normalize(scores, stats)[0]) == [0.0, 0.0, 0.5, 1.0, 1.0]


def test_buffer_reallocated_on_resolution_change(gray_image, random_image):
    gen = SaliencyMapGenerator()
    gen.compute_saliency(gray_image)
    assert gen.size_key == (gray_image.height, gray_image.width)

    gen.compute_saliency(random_image)
    assert gen.size_key == (random_image.height, random_image.width)
