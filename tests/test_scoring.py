"""
Tests for ring/sector scoring.
"""
import math

import numpy as np
import pytest

from conftest import make_session
from dartvision.core.detection import DetectedDart
from dartvision.core.geometry import (
    BOARD_RADII_MM,
    DARTBOARD_SEGMENTS,
    DOUBLE_OUTER_RADIUS_MM,
    BoardPoint,
    apply_homography,
)
from dartvision.core.scoring import (
    RING_BANDS,
    RING_MULTIPLIERS,
    Ring,
    classify_ring,
    is_point_on_board,
    score_at_board_point,
    score_dart,
    score_darts,
    sector_at_angle,
)


def _polar(radius, sector):
    """Board point at the centre line of a sector."""
    idx = DARTBOARD_SEGMENTS.index(sector)
    angle = math.radians(idx * 18.0) - math.pi / 2
    return BoardPoint(radius * math.cos(angle), radius * math.sin(angle))


@pytest.mark.parametrize("radius,ring", [
    (0.0, Ring.INNER_BULL),
    (6.8, Ring.INNER_BULL),
    (6.86, Ring.BULL),
    (16.6, Ring.BULL),
    (16.66, Ring.SINGLE_INNER),
    (98.2499, Ring.SINGLE_INNER),
    (98.25, Ring.TRIPLE),
    (107.75, Ring.TRIPLE),
    (107.76, Ring.SINGLE_OUTER),
    (161.2499, Ring.SINGLE_OUTER),
    (161.25, Ring.DOUBLE),
    (170.5, Ring.DOUBLE),
    (170.51, Ring.MISS),
    (400.0, Ring.MISS),
])
def test_ring_boundaries(radius, ring):
    assert classify_ring(radius) is ring


def test_band_limits_exact():
    assert [b.limit_mm for b in RING_BANDS] == pytest.approx([6.85, 16.65, 98.25, 107.75, 161.25, 170.5])
    for band, following in zip(RING_BANDS, list(RING_BANDS[1:]) + [None]):
        after = following.ring if following is not None else Ring.MISS
        assert classify_ring(float(np.nextafter(band.limit_mm, 0))) is band.ring
        assert classify_ring(band.limit_mm) is (band.ring if band.inclusive else after)
        assert classify_ring(float(np.nextafter(band.limit_mm, 1000))) is after


def test_multiplier_table_is_complete():
    assert set(RING_MULTIPLIERS) == set(Ring)
    assert [RING_MULTIPLIERS[r] for r in (Ring.MISS, Ring.SINGLE_INNER, Ring.DOUBLE, Ring.TRIPLE)] == [0, 1, 2, 3]
    assert [b.ring for b in RING_BANDS][-1] is Ring.DOUBLE


def test_sector_order_clockwise_from_top():
    assert score_at_board_point(BoardPoint(0, -130)).sector == 20
    assert score_at_board_point(BoardPoint(130, 0)).sector == 6
    assert score_at_board_point(BoardPoint(0, 130)).sector == 3
    assert score_at_board_point(BoardPoint(-130, 0)).sector == 11


def test_every_sector_centre():
    for sector in DARTBOARD_SEGMENTS:
        assert score_at_board_point(_polar(130, sector)).sector == sector


def test_sector_boundary_at_nine_degrees():
    # 20 spans -9..+9 degrees from the top; 1 starts at +9
    assert sector_at_angle(math.radians(-90 + 8.99)) == 20
    assert sector_at_angle(math.radians(-90 + 9.01)) == 1
    assert sector_at_angle(math.radians(-90 - 9.01)) == 5


def test_scores():
    assert score_at_board_point(BoardPoint(0, -103)).base == 60
    assert score_at_board_point(BoardPoint(0, -166)).base == 40
    assert score_at_board_point(_polar(130, 19)).base == 19
    assert score_at_board_point(_polar(50, 7)).base == 7

    inner = score_at_board_point(BoardPoint(1.0, 1.0))
    assert (inner.base, inner.ring, inner.multiplier, inner.sector) == (50, Ring.INNER_BULL, 2, 25)
    outer = score_at_board_point(BoardPoint(0.0, 12.0))
    assert (outer.base, outer.ring, outer.multiplier, outer.sector) == (25, Ring.BULL, 1, 25)
    miss = score_at_board_point(BoardPoint(0.0, 200.0))
    assert (miss.base, miss.ring, miss.multiplier, miss.sector) == (0, Ring.MISS, 0, None)


def test_rotation_offset_shifts_sectors():
    p = BoardPoint(0, -130)
    assert score_at_board_point(p, rotation_offset_rad=math.radians(18)).sector == 1
    assert score_at_board_point(p, rotation_offset_rad=math.radians(-18)).sector == 5
    assert score_at_board_point(p, rotation_offset_rad=float("nan")).sector == 20


def test_rotating_point_and_board_together_keeps_score():
    # Rotating the point by k sectors and the board back by k sectors is a no-op
    p = _polar(120, 13)
    for k in range(20):
        a = math.radians(18 * k)
        q = BoardPoint(p.x * math.cos(a) - p.y * math.sin(a), p.x * math.sin(a) + p.y * math.cos(a))
        assert score_at_board_point(q, rotation_offset_rad=-a).sector == 13


def test_point_on_board():
    assert is_point_on_board(BoardPoint(0, 170))
    assert not is_point_on_board(BoardPoint(0, 170.3))
    assert is_point_on_board(BoardPoint(0, 170.3), strict=False)
    assert not is_point_on_board(BoardPoint(0, 171), strict=False)


def test_score_dart_through_session(session):
    dart = DetectedDart(x=200, y=97, radius_px=13, confidence=0.8)
    scored = score_dart(dart, session)
    assert scored is dart
    assert dart.board_point == pytest.approx((0.0, -103.0))
    assert (dart.score, dart.ring, dart.sector, dart.multiplier) == (60, Ring.TRIPLE, 20, 3)


def test_score_dart_applies_session_rotation():
    rotated = make_session(rotation_offset_rad=math.radians(18))
    dart = DetectedDart(x=200, y=97, radius_px=13, confidence=0.8)
    assert score_dart(dart, rotated).score == 3  # treble 1


def test_score_darts_skips_unmappable():
    # Horizon line y = 500 in the image maps to infinity on the board
    H = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.002, 1.0]])
    session = make_session(homography=H)
    inv = session.inverse
    x, y = apply_homography(H, (10.0, 10.0))
    good = DetectedDart(x=x, y=y, radius_px=5, confidence=0.9)
    w = inv[2, 0] * 0 + inv[2, 1] * 500 + inv[2, 2]
    assert abs(w) < 1e-9
    bad = DetectedDart(x=0, y=500, radius_px=5, confidence=0.9)

    scored = score_darts([good, bad], session)
    assert scored == [good]
    assert good.board_point == pytest.approx((10.0, 10.0))
    assert bad.score is None


@pytest.mark.parametrize("point,expected", [
    (BoardPoint(0.0, 0.0), (50, Ring.INNER_BULL, 2)),
    (BoardPoint(10.0, 0.0), (25, Ring.BULL, 1)),
    (BoardPoint(0.0, -10.0), (25, Ring.BULL, 1)),
    (BoardPoint(0.0, -(BOARD_RADII_MM["treble_inner"] + BOARD_RADII_MM["treble_outer"]) / 2), (60, Ring.TRIPLE, 3)),
    (BoardPoint(0.0, -(DOUBLE_OUTER_RADIUS_MM + 1.0)), (0, Ring.MISS, 0)),
    (BoardPoint(DOUBLE_OUTER_RADIUS_MM + 1.0, 0.0), (0, Ring.MISS, 0)),
])
def test_boundary_literals(point, expected):
    score = score_at_board_point(point)
    assert (score.base, score.ring, score.multiplier) == expected


@pytest.mark.parametrize("radius", [50.0, 97.0, 100.0, 106.0, 110.0, 140.0, 160.0, 163.0, 169.0])
@pytest.mark.parametrize("offset_deg", [-8.5, -4.0, 0.0, 3.3, 8.5])
def test_rotating_18_degrees_advances_sector(radius, offset_deg):
    def at(angle_deg):
        a = math.radians(angle_deg)
        return score_at_board_point(BoardPoint(radius * math.cos(a), radius * math.sin(a)))

    # Sector 20's centre line is straight up (-90 degrees)
    start = at(-90.0 + offset_deg)
    first = DARTBOARD_SEGMENTS.index(start.sector)
    for k in range(1, 21):
        score = at(-90.0 + offset_deg + 18.0 * k)
        assert score.ring is start.ring
        assert DARTBOARD_SEGMENTS.index(score.sector) == (first + k) % 20
