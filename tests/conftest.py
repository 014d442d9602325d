"""
Shared fixtures: synthetic dartboard and dart frames drawn with OpenCV.

The synthetic board is drawn 1px per mm with the bull at (200, 200), so the
true board -> image homography is a plain translation.
"""
import sys
import os

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import cv2
import numpy as np
import pytest

from dartvision.core.calibration import CalibrationSession, ring_radii_from_homography
from dartvision.core.frame import RgbaFrame

BOARD_CENTER = (200, 200)
FRAME_SIZE = 400

BACKGROUND = (90, 90, 90)
DARK = (20, 20, 20)
CREAM = (225, 215, 190)
GREEN = (40, 140, 60)
DART_RED = (220, 30, 30)
BOARD_RED = (190, 40, 40)

# Outer edge of the dark number ring around the doubles
NUMBER_RING_MM = 225

# (radius px, RGB fill), drawn outermost first
BOARD_DISCS = [
    (170, DARK),
    (162, CREAM),
    (107, GREEN),
    (99, CREAM),
    (16, GREEN),
    (6, DARK),
]

TRUE_HOMOGRAPHY = np.array([
    [1.0, 0.0, BOARD_CENTER[0]],
    [0.0, 1.0, BOARD_CENTER[1]],
    [0.0, 0.0, 1.0],
])


def to_frame(rgb: np.ndarray) -> RgbaFrame:
    alpha = np.full(rgb.shape[:2] + (1,), 255, dtype=np.uint8)
    return RgbaFrame(pixels=np.ascontiguousarray(np.concatenate([rgb, alpha], axis=2)))


def draw_board(size: int = FRAME_SIZE, center=BOARD_CENTER, scale: float = 1.0) -> np.ndarray:
    """RGB image of a flat-on board, `scale` px per mm."""
    rgb = np.full((size, size, 3), BACKGROUND, dtype=np.uint8)
    for radius, color in BOARD_DISCS:
        cv2.circle(rgb, center, int(round(radius * scale)), color, -1)
    return rgb


def draw_sector_board(width: int = FRAME_SIZE, height: int = FRAME_SIZE, center=BOARD_CENTER,
                      scale: float = 1.0) -> np.ndarray:
    """
    RGB image of a flat-on board with coloured sectors, `scale` px per mm.

    Singles alternate dark/cream, doubles and trebles red/green, inside a dark
    number ring. Sector 20 is at the top.
    """
    rgb = np.full((height, width, 3), BACKGROUND, dtype=np.uint8)

    def r(mm):
        return int(round(mm * scale))

    cv2.circle(rgb, center, r(NUMBER_RING_MM), DARK, -1)
    layers = [(170, BOARD_RED, GREEN), (162, DARK, CREAM), (107, BOARD_RED, GREEN), (99, DARK, CREAM)]
    for radius_mm, even_color, odd_color in layers:
        for k in range(20):
            start = -99 + 18 * k
            color = even_color if k % 2 == 0 else odd_color
            cv2.ellipse(rgb, center, (r(radius_mm), r(radius_mm)), 0, start, start + 18, color, -1)
    cv2.circle(rgb, center, r(16), GREEN, -1)
    cv2.circle(rgb, center, r(6.35), BOARD_RED, -1)
    return rgb


def draw_darts(rgb: np.ndarray, points, radius: int = 13, color=DART_RED) -> np.ndarray:
    out = rgb.copy()
    for x, y in points:
        cv2.circle(out, (int(x), int(y)), radius, color, -1)
    return out


def board_frame(darts=(), **kwargs) -> RgbaFrame:
    """Board frame with red dart tips at the given image points."""
    return to_frame(draw_darts(draw_board(**kwargs), darts))


def board_mm_to_px(x_mm: float, y_mm: float):
    return BOARD_CENTER[0] + x_mm, BOARD_CENTER[1] + y_mm


def make_session(homography=TRUE_HOMOGRAPHY, confidence: float = 99.0, error: float = 0.2, **kwargs):
    return CalibrationSession(
        homography=homography,
        source_points=[(0.0, -170.0), (170.0, 0.0), (0.0, 170.0), (-170.0, 0.0)],
        dest_points=[(200.0, 30.0), (370.0, 200.0), (200.0, 370.0), (30.0, 200.0)],
        rms_error_px=error,
        confidence=confidence,
        ring_radii_px=ring_radii_from_homography(homography),
        **kwargs
    )


@pytest.fixture
def true_homography():
    return TRUE_HOMOGRAPHY.copy()


@pytest.fixture
def empty_board():
    return board_frame()


@pytest.fixture
def session():
    return make_session()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
