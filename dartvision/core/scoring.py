"""
Scoring module for dart detection.

Converts board-space positions (mm) into ring / sector / points. This is the
only place a ring is turned into a multiplier or a score.
"""
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from dartvision.core.detection import DetectedDart
from dartvision.core.geometry import (
    BULL_RADIUS_MM,
    DARTBOARD_SEGMENTS,
    DEGREES_PER_SEGMENT,
    DOUBLE_INNER_RADIUS_MM,
    DOUBLE_OUTER_RADIUS_MM,
    OUTER_BULL_RADIUS_MM,
    TRIPLE_INNER_RADIUS_MM,
    TRIPLE_OUTER_RADIUS_MM,
    BoardPoint,
    GeometryError,
    image_to_board,
)

if TYPE_CHECKING:
    from dartvision.core.calibration import CalibrationSession

logger = logging.getLogger(__name__)

BULL_VALUE = 25


class Ring(str, Enum):
    INNER_BULL = "INNER_BULL"
    BULL = "BULL"
    SINGLE_INNER = "SINGLE_INNER"
    TRIPLE = "TRIPLE"
    SINGLE_OUTER = "SINGLE_OUTER"
    DOUBLE = "DOUBLE"
    MISS = "MISS"


RING_MULTIPLIERS: Dict[Ring, int] = {
    Ring.INNER_BULL: 2,
    Ring.BULL: 1,
    Ring.SINGLE_INNER: 1,
    Ring.TRIPLE: 3,
    Ring.SINGLE_OUTER: 1,
    Ring.DOUBLE: 2,
    Ring.MISS: 0,
}


@dataclass(frozen=True)
class RingBand:
    """Ring covering radii up to limit_mm (inclusive or exclusive)."""
    ring: Ring
    limit_mm: float
    inclusive: bool


# Wire tolerance: about half a wire width either side of a ring boundary
WIRE_TOLERANCE_MM = 0.75
# Bull and board-edge boundaries get a tighter allowance
EDGE_TOLERANCE_MM = 0.5

# Innermost first. Anything past the last band is a MISS.
RING_BANDS: Tuple[RingBand, ...] = (
    RingBand(Ring.INNER_BULL, BULL_RADIUS_MM + EDGE_TOLERANCE_MM, inclusive=True),
    RingBand(Ring.BULL, OUTER_BULL_RADIUS_MM + WIRE_TOLERANCE_MM, inclusive=True),
    RingBand(Ring.SINGLE_INNER, TRIPLE_INNER_RADIUS_MM - WIRE_TOLERANCE_MM, inclusive=False),
    RingBand(Ring.TRIPLE, TRIPLE_OUTER_RADIUS_MM + WIRE_TOLERANCE_MM, inclusive=True),
    RingBand(Ring.SINGLE_OUTER, DOUBLE_INNER_RADIUS_MM - WIRE_TOLERANCE_MM, inclusive=False),
    RingBand(Ring.DOUBLE, DOUBLE_OUTER_RADIUS_MM + EDGE_TOLERANCE_MM, inclusive=True),
)


@dataclass(frozen=True)
class BoardScore:
    """Score for one board position. `base` is the points value (T20 = 60)."""
    base: int
    ring: Ring
    multiplier: int
    sector: Optional[int]  # 1-20, 25 for either bull, None for a miss


def classify_ring(radius_mm: float) -> Ring:
    for band in RING_BANDS:
        if radius_mm < band.limit_mm or (band.inclusive and radius_mm == band.limit_mm):
            return band.ring
    return Ring.MISS


def sector_at_angle(angle_rad: float) -> int:
    """
    Sector number for a board-space angle (atan2 convention, +y down).

    0 degrees is at the top of the board and increases clockwise; each
    sector spans +/- 9 degrees around its centre line.
    """
    deg = (math.degrees(angle_rad) + 90.0) % 360.0
    index = int(((deg + DEGREES_PER_SEGMENT / 2) % 360.0) // DEGREES_PER_SEGMENT)
    return DARTBOARD_SEGMENTS[index % len(DARTBOARD_SEGMENTS)]


def score_at_board_point(p: BoardPoint, rotation_offset_rad: float = 0.0) -> BoardScore:
    """
    Score a board-space point.

    Args:
        p: board point in mm
        rotation_offset_rad: extra board rotation added to the angle before
            the sector lookup (from the calibration session)
    """
    x, y = float(p[0]), float(p[1])
    radius = math.hypot(x, y)
    ring = classify_ring(radius)
    multiplier = RING_MULTIPLIERS[ring]

    if ring is Ring.MISS:
        return BoardScore(base=0, ring=ring, multiplier=multiplier, sector=None)
    if ring in (Ring.INNER_BULL, Ring.BULL):
        return BoardScore(base=BULL_VALUE * multiplier, ring=ring, multiplier=multiplier, sector=BULL_VALUE)

    offset = rotation_offset_rad if math.isfinite(rotation_offset_rad) else 0.0
    sector = sector_at_angle(math.atan2(y, x) + offset)
    return BoardScore(base=sector * multiplier, ring=ring, multiplier=multiplier, sector=sector)


def is_point_on_board(p: BoardPoint, strict: bool = True) -> bool:
    """
    Inside the playable area.

    Strict mode allows nothing past the double ring's outer edge; otherwise
    the edge tolerance of the scoring bands applies.
    """
    limit = DOUBLE_OUTER_RADIUS_MM if strict else RING_BANDS[-1].limit_mm
    return math.hypot(float(p[0]), float(p[1])) <= limit


def score_dart(dart: DetectedDart, session: "CalibrationSession") -> DetectedDart:
    """
    Map a detected dart through the session's inverse homography and score it.

    Fills in board_point / score / ring / sector / multiplier in place.

    Raises:
        GeometryError: the point cannot be mapped with this calibration
    """
    board = image_to_board(session.homography, dart.image_point, H_inv=session.inverse)
    result = score_at_board_point(board, session.rotation_offset_rad)
    dart.board_point = board
    dart.score = result.base
    dart.ring = result.ring
    dart.sector = result.sector
    dart.multiplier = result.multiplier
    return dart


def score_darts(darts: List[DetectedDart], session: "CalibrationSession") -> List[DetectedDart]:
    """
    Score every dart of one frame.

    A dart that cannot be mapped is dropped for this frame only; the session
    stays active until it is explicitly replaced.
    """
    scored = []
    for dart in darts:
        try:
            scored.append(score_dart(dart, session))
        except GeometryError as e:
            logger.debug(f"[SCORE] Skipping dart at ({dart.x:.1f}, {dart.y:.1f}): {e}")
    return scored
