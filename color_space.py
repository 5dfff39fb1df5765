#!/usr/bin/env python3
"""
sRGB <-> CIE LAB conversion (D65) and small color utilities.

All RGB values are floats in [0, 1]. Arrays may have any leading shape as
long as the last axis holds the three channels.
"""

import math

import numpy as np


# =============================================================================
# Constants
# =============================================================================

# sRGB transfer function
SRGB_LINEAR_THRESHOLD = 0.04045  # Encoded value below which the curve is linear
SRGB_ENCODE_THRESHOLD = 0.0031308  # Same breakpoint on the linear side

# D65 reference white
D65_WHITE = np.array([0.95047, 1.0, 1.08883])

# Linear sRGB -> XYZ
RGB_TO_XYZ = np.array([
    [0.4124564, 0.3575761, 0.1804375],
    [0.2126729, 0.7151522, 0.0721750],
    [0.0193339, 0.1191920, 0.9503041],
])
XYZ_TO_RGB = np.linalg.inv(RGB_TO_XYZ)

# CIE constants: epsilon ~= 0.008856, kappa ~= 903.3
LAB_EPSILON = 216 / 24389
LAB_KAPPA = 24389 / 27

# LAB hue angles of the sRGB primaries: red ~40, yellow ~103, green ~136,
# cyan ~197, blue ~306, magenta ~328. Bands are (upper bound, name).
HUE_BANDS = [(50, "Red"), (80, "Orange"), (120, "Yellow"), (165, "Green"),
             (250, "Cyan"), (318, "Blue"), (345, "Magenta"), (360, "Red")]
NEUTRAL_BANDS = [(15, "Black"), (35, "Charcoal"), (65, "Gray"), (85, "Silver"), (101, "White")]
LIGHTNESS_PREFIXES = [(25, "Deep"), (45, "Dark"), (65, ""), (82, "Light"), (101, "Pale")]
NEUTRAL_CHROMA = 8  # Below this a color is named as a gray
MUTED_CHROMA = 25
VIVID_CHROMA = 60


# =============================================================================
# Conversion
# =============================================================================

def srgb_to_linear(rgb: np.ndarray) -> np.ndarray:
    """Undo sRGB gamma encoding."""
    rgb = np.asarray(rgb, dtype=np.float64)
    return np.where(rgb > SRGB_LINEAR_THRESHOLD,
                    ((rgb + 0.055) / 1.055) ** 2.4,
                    rgb / 12.92)


def linear_to_srgb(linear: np.ndarray) -> np.ndarray:
    """Apply sRGB gamma encoding."""
    linear = np.asarray(linear, dtype=np.float64)
    return np.where(linear > SRGB_ENCODE_THRESHOLD,
                    1.055 * np.power(np.clip(linear, 0, None), 1 / 2.4) - 0.055,
                    12.92 * linear)


def rgb_to_lab(rgb: np.ndarray) -> np.ndarray:
    """Convert RGB array (0-1) to LAB color space."""
    rgb_linear = srgb_to_linear(rgb)

    # Normalize XYZ by the reference white
    xyz = rgb_linear @ RGB_TO_XYZ.T / D65_WHITE

    f = np.where(xyz > LAB_EPSILON, np.cbrt(xyz), (LAB_KAPPA * xyz + 16) / 116)
    fx, fy, fz = f[..., 0], f[..., 1], f[..., 2]

    L = 116 * fy - 16
    a = 500 * (fx - fy)
    b = 200 * (fy - fz)

    return np.stack([L, a, b], axis=-1)


def lab_to_rgb(lab: np.ndarray) -> np.ndarray:
    """Convert LAB array to RGB (0-1), clamped to the displayable range."""
    lab = np.asarray(lab, dtype=np.float64)
    L, a, b = lab[..., 0], lab[..., 1], lab[..., 2]

    fy = (L + 16) / 116
    fx = a / 500 + fy
    fz = fy - b / 200
    f = np.stack([fx, fy, fz], axis=-1)

    xyz = np.where(f ** 3 > LAB_EPSILON, f ** 3, (116 * f - 16) / LAB_KAPPA)
    xyz = xyz * D65_WHITE

    rgb_linear = xyz @ XYZ_TO_RGB.T
    return np.clip(linear_to_srgb(rgb_linear), 0.0, 1.0)


# =============================================================================
# Color Utilities
# =============================================================================

def compute_chroma(lab: np.ndarray) -> float:
    """Compute chroma (saturation) from LAB coordinates."""
    return math.sqrt(lab[1]**2 + lab[2]**2)


def compute_hue(lab: np.ndarray) -> float:
    """Compute hue angle (0-360 degrees) from LAB coordinates."""
    return math.degrees(math.atan2(lab[2], lab[1])) % 360


def rgb_to_hex(rgb) -> str:
    """Convert an RGB triple (0-1) to a hex string."""
    r, g, b = (int(round(float(c) * 255)) for c in np.clip(rgb, 0, 1))
    return f"#{r:02x}{g:02x}{b:02x}"


def rgb_to_tuple(rgb) -> tuple:
    """Convert an RGB triple (0-1) to an 8-bit tuple."""
    return tuple(int(round(float(c) * 255)) for c in np.clip(rgb, 0, 1))


def _band(value: float, bands: list) -> str:
    for upper, name in bands:
        if value < upper:
            return name
    return bands[-1][1]


def generate_color_name(lab: np.ndarray) -> str:
    """Short name for a palette entry, e.g. 'Dark Muted Green' or 'Charcoal'."""
    L = float(np.clip(lab[0], 0, 100))
    chroma = compute_chroma(lab)
    if chroma < NEUTRAL_CHROMA:
        return _band(L, NEUTRAL_BANDS)

    words = [_band(L, LIGHTNESS_PREFIXES)]
    if chroma < MUTED_CHROMA:
        words.append("Muted")
    elif chroma >= VIVID_CHROMA:
        words.append("Vivid")
    words.append(_band(compute_hue(lab), HUE_BANDS))
    return " ".join(w for w in words if w)
