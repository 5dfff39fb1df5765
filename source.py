#!/usr/bin/env python3
"""
Captured source image.

A SourceImage is an immutable RGBA float buffer in [0, 1], created once per
capture. Analysis code reads pixels through `rgb()` / `pixel()` and never
mutates them.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from PIL import Image

from errors import InvalidInput


# Image size limits (security: prevent decompression bombs)
MAX_IMAGE_PIXELS = 50_000_000  # 50 megapixels
MAX_IMAGE_DIMENSION = 10_000  # 10k pixels per side


@dataclass(frozen=True)
class SourceImage:
    """RGBA pixel buffer of shape (height, width, 4)."""
    width: int
    height: int
    pixels: Optional[np.ndarray]

    @classmethod
    def from_array(cls, array) -> "SourceImage":
        """Build a SourceImage from a gray, RGB or RGBA array.

        uint8 input is scaled by 1/255; float input is clipped to [0, 1].
        A missing alpha channel is filled with 1.0.
        """
        arr = np.asarray(array)
        if arr.ndim == 2:
            arr = np.repeat(arr[:, :, None], 3, axis=2)
        if arr.ndim != 3 or arr.shape[2] not in (3, 4):
            raise InvalidInput(f"Expected (H, W), (H, W, 3) or (H, W, 4) array, got {arr.shape}")

        if arr.dtype == np.uint8:
            arr = arr.astype(np.float32) / 255.0
        else:
            arr = np.clip(arr.astype(np.float32), 0.0, 1.0)

        if arr.shape[2] == 3:
            alpha = np.ones(arr.shape[:2] + (1,), dtype=np.float32)
            arr = np.concatenate([arr, alpha], axis=2)

        arr = np.ascontiguousarray(arr)
        arr.setflags(write=False)
        h, w = arr.shape[:2]
        return cls(width=w, height=h, pixels=arr)

    @classmethod
    def from_file(cls, image_path: str) -> "SourceImage":
        """
        Load a captured frame from disk.

        Raises:
            FileNotFoundError: If image file doesn't exist
            InvalidInput: If file is not a valid image or exceeds size limits
        """
        try:
            img = Image.open(image_path)
        except FileNotFoundError:
            raise FileNotFoundError(f"Image not found: {image_path}")
        except Exception as e:
            raise InvalidInput(f"Could not open image: {e}")

        width, height = img.size
        if width > MAX_IMAGE_DIMENSION or height > MAX_IMAGE_DIMENSION:
            raise InvalidInput(
                f"Image dimensions {width}x{height} exceed maximum "
                f"{MAX_IMAGE_DIMENSION}x{MAX_IMAGE_DIMENSION}"
            )
        if width * height > MAX_IMAGE_PIXELS:
            raise InvalidInput(
                f"Image has {width * height:,} pixels, exceeding maximum {MAX_IMAGE_PIXELS:,}"
            )

        return cls.from_array(np.array(img.convert('RGBA')))

    def validate(self) -> None:
        """Raise InvalidInput unless the image can be analyzed."""
        if self.pixels is None:
            raise InvalidInput("Source image has no pixel data")
        if self.width <= 0 or self.height <= 0:
            raise InvalidInput(f"Invalid source dimensions {self.width}x{self.height}")
        if self.pixels.shape[:2] != (self.height, self.width) or self.pixels.shape[-1] != 4:
            raise InvalidInput(
                f"Pixel buffer shape {self.pixels.shape} does not match "
                f"{self.width}x{self.height} RGBA"
            )
        if not np.isfinite(self.pixels).all():
            raise InvalidInput("Pixel buffer contains NaN or infinite values")

    @property
    def total_pixels(self) -> int:
        return self.width * self.height

    def pixel(self, x: int, y: int) -> tuple:
        """RGBA value at column x, row y."""
        r, g, b, a = self.pixels[y, x]
        return (float(r), float(g), float(b), float(a))

    def rgb(self) -> np.ndarray:
        """Read-only (height, width, 3) view of the color channels."""
        return self.pixels[:, :, :3]
