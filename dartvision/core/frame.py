"""
Frame container for raw camera pixels.

The capture layer hands us one frame at a time as an interleaved 8-bit RGBA
buffer. Everything downstream (board detection, dart detection) works on the
numpy view held here.
"""
import cv2
import numpy as np
from dataclasses import dataclass
from typing import Tuple

# ITU-R BT.601 luma weights (same as cv2.COLOR_RGB2GRAY)
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)


@dataclass(frozen=True)
class RgbaFrame:
    """One captured frame: H x W x 4 uint8 array, RGBA order."""
    pixels: np.ndarray

    def __post_init__(self):
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 4:
            raise ValueError(f"Expected HxWx4 RGBA pixels, got shape {self.pixels.shape}")
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixels, got {self.pixels.dtype}")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def shape(self) -> Tuple[int, int]:
        """(height, width)"""
        return self.height, self.width

    @classmethod
    def from_buffer(cls, buffer: bytes, width: int, height: int) -> "RgbaFrame":
        """Wrap a raw interleaved RGBA buffer (width * height * 4 bytes)."""
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid frame size {width}x{height}")
        expected = width * height * 4
        if len(buffer) != expected:
            raise ValueError(f"RGBA buffer has {len(buffer)} bytes, expected {expected} for {width}x{height}")
        pixels = np.frombuffer(buffer, dtype=np.uint8).reshape(height, width, 4)
        return cls(pixels=pixels)

    @classmethod
    def from_bgr(cls, image: np.ndarray) -> "RgbaFrame":
        """Convert an OpenCV BGR (or grayscale) image into an RGBA frame."""
        if image.ndim == 2:
            rgba = cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
        elif image.shape[2] == 4:
            rgba = cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)
        else:
            rgba = cv2.cvtColor(image, cv2.COLOR_BGR2RGBA)
        return cls(pixels=np.ascontiguousarray(rgba))

    def to_bgr(self) -> np.ndarray:
        """BGR copy for OpenCV drawing/encoding."""
        return cv2.cvtColor(self.pixels, cv2.COLOR_RGBA2BGR)

    def luminance(self) -> np.ndarray:
        """Float32 luminance (0-255) per pixel, alpha ignored."""
        return self.pixels[:, :, :3].astype(np.float32) @ LUMA_WEIGHTS

    def hsv(self) -> np.ndarray:
        """
        Float32 HSV per pixel.

        Hue is in degrees [0, 360), saturation and value in [0, 1].
        """
        rgb = self.pixels[:, :, :3].astype(np.float32) / 255.0
        return cv2.cvtColor(rgb, cv2.COLOR_RGB2HSV)


def rgb_to_hsv(r: int, g: int, b: int) -> Tuple[float, float, float]:
    """Single-pixel RGB (0-255) -> (h degrees, s, v), same conversion as RgbaFrame.hsv."""
    pixel = np.array([[[r, g, b]]], dtype=np.float32) / 255.0
    h, s, v = cv2.cvtColor(pixel, cv2.COLOR_RGB2HSV)[0, 0]
    return float(h), float(s), float(v)
