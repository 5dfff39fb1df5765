"""Shared synthetic images for the analysis tests."""
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from source import SourceImage


def solid(width, height, rgb):
    """Uniform float image."""
    arr = np.empty((height, width, 3), dtype=np.float32)
    arr[:, :] = rgb
    return SourceImage.from_array(arr)


@pytest.fixture
def rgbw_image():
    """2x2 image: red, green / blue, white."""
    arr = np.array([
        [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]],
        [[0.0, 0.0, 1.0], [1.0, 1.0, 1.0]],
    ], dtype=np.float32)
    return SourceImage.from_array(arr)


@pytest.fixture
def gray_image():
    return solid(24, 18, (0.5, 0.5, 0.5))


@pytest.fixture
def black_image():
    return solid(20, 12, (0.0, 0.0, 0.0))


@pytest.fixture
def random_image():
    """Deterministic noise, tall enough to be split across several workers."""
    rng = np.random.default_rng(1234)
    return SourceImage.from_array(rng.integers(0, 256, size=(96, 64, 3), dtype=np.uint8))


@pytest.fixture
def photo_like_image():
    """Four flat quadrants plus a smooth gradient band."""
    arr = np.zeros((120, 160, 3), dtype=np.float32)
    arr[:60, :80] = (0.85, 0.2, 0.15)
    arr[:60, 80:] = (0.1, 0.35, 0.8)
    arr[60:100, :80] = (0.2, 0.7, 0.25)
    arr[60:100, 80:] = (0.95, 0.9, 0.2)
    arr[100:, :, :] = np.linspace(0, 1, 160)[None, :, None]
    return SourceImage.from_array(arr)
