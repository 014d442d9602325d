"""
Dart Tip Detection Module

Finds dart tips by colour and shape: HSV window filter, 4-connected blobs,
a density hill-climb to centre each blob and a circularity score from the
spread of pixel distances to that centre.

Tuned for red tips (hue 340-20 degrees). Other tip colours only need a
different DartDetectorConfig.
"""
import logging
import math
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Tuple

import cv2
import numpy as np

from dartvision.core.config import DartDetectorConfig
from dartvision.core.frame import RgbaFrame, rgb_to_hsv
from dartvision.core.geometry import BoardPoint, ImagePoint

if TYPE_CHECKING:
    from dartvision.core.scoring import Ring

logger = logging.getLogger(__name__)

# Sub-score weights for the combined confidence
SHAPE_WEIGHT = 0.5
SIZE_WEIGHT = 0.3
COLOR_WEIGHT = 0.2

# 8-neighbourhood for the centre hill-climb
_NEIGHBOURS = [(dx, dy) for dy in (-1, 0, 1) for dx in (-1, 0, 1) if dx or dy]


@dataclass
class ColorSample:
    """Pixel colour at the refined tip centre."""
    r: int
    g: int
    b: int
    h: float
    s: float
    v: float


@dataclass
class DetectedDart:
    """
    A candidate dart tip.

    Created per frame by the detector. Scoring fills in the board fields,
    the stability registry updates frames_seen and the timestamps.
    """
    x: float  # image px
    y: float
    radius_px: float
    confidence: float  # 0-1
    area: int = 0
    shape_confidence: float = 0.0
    color: Optional[ColorSample] = None
    board_point: Optional[BoardPoint] = None
    score: Optional[int] = None
    ring: Optional["Ring"] = None
    sector: Optional[int] = None
    multiplier: Optional[int] = None
    frames_seen: int = 1
    first_seen_at: float = field(default_factory=time.monotonic)
    last_seen_at: float = field(default_factory=time.monotonic)

    @property
    def image_point(self) -> ImagePoint:
        return ImagePoint(self.x, self.y)


@dataclass
class DartDetectionResult:
    darts: List[DetectedDart]
    confidence: float  # mean confidence of returned darts, 0 if none
    frame_quality: float  # 0-1
    low_quality: bool = False
    message: str = ""
    timestamp: float = field(default_factory=time.time)


def color_mask(hsv: np.ndarray, config: DartDetectorConfig) -> np.ndarray:
    """Boolean mask of pixels inside the hue window and above the S/V floors."""
    hue = hsv[:, :, 0]
    if config.hue_min <= config.hue_max:
        in_hue = (hue >= config.hue_min) & (hue <= config.hue_max)
    else:
        # Window wraps through 0 degrees
        in_hue = (hue >= config.hue_min) | (hue <= config.hue_max)
    return in_hue & (hsv[:, :, 1] >= config.sat_min) & (hsv[:, :, 2] >= config.val_min)


def _density(xs: np.ndarray, ys: np.ndarray, cx: float, cy: float, radius: float) -> int:
    return int(np.count_nonzero(np.hypot(xs - cx, ys - cy) <= radius))


def refine_center(xs: np.ndarray, ys: np.ndarray, radius: float, max_steps: int) -> Tuple[float, float]:
    """
    Hill-climb from the centroid to the point whose disc of the given radius
    holds the most blob pixels.
    """
    cx, cy = float(xs.mean()), float(ys.mean())
    best = _density(xs, ys, cx, cy, radius)
    for _ in range(max_steps):
        moved = False
        for dx, dy in _NEIGHBOURS:
            score = _density(xs, ys, cx + dx, cy + dy, radius)
            if score > best:
                best, best_step, moved = score, (dx, dy), True
        if not moved:
            break
        cx, cy = cx + best_step[0], cy + best_step[1]
    return cx, cy


def circularity(xs: np.ndarray, ys: np.ndarray, cx: float, cy: float) -> float:
    """1 - coefficient of variation of pixel distances to the centre, floored at 0."""
    distances = np.hypot(xs - cx, ys - cy)
    mean = float(distances.mean())
    if mean <= 0:
        return 0.0
    return max(0.0, 1.0 - float(distances.std()) / mean)


class DartDetector:
    """
    Colour/shape dart tip detector.

    Stateless apart from its configuration; one instance can serve any number
    of frames.
    """

    def __init__(self, config: Optional[DartDetectorConfig] = None):
        self.config = config or DartDetectorConfig()

    def detect(self, frame: RgbaFrame) -> DartDetectionResult:
        cfg = self.config
        hsv = frame.hsv()
        mask = color_mask(hsv, cfg)
        matched = int(np.count_nonzero(mask))

        expected = frame.width * frame.height * cfg.expected_density
        frame_quality = min(1.0, matched / expected) if expected > 0 else 0.0
        logger.debug(f"[DARTS] Frame quality {frame_quality:.2f} ({matched} matching pixels)")

        if frame_quality < cfg.min_frame_quality:
            return DartDetectionResult(
                darts=[],
                confidence=0.0,
                frame_quality=frame_quality,
                low_quality=True,
                message="Too few tip-coloured pixels in frame",
            )

        count, labels, stats, _ = cv2.connectedComponentsWithStats(mask.astype(np.uint8), connectivity=4)

        candidates: List[DetectedDart] = []
        for label in range(1, count):
            area = int(stats[label, cv2.CC_STAT_AREA])
            if area < cfg.min_blob_area:
                continue
            candidate = self._blob_to_dart(frame, hsv, labels, label, stats[label], area)
            if candidate is not None:
                candidates.append(candidate)

        candidates.sort(key=lambda d: d.confidence, reverse=True)
        darts = candidates[:cfg.max_darts]
        confidence = sum(d.confidence for d in darts) / len(darts) if darts else 0.0

        logger.debug(f"[DARTS] {count - 1} blobs, {len(candidates)} candidates, kept {len(darts)}")
        return DartDetectionResult(
            darts=darts,
            confidence=confidence,
            frame_quality=frame_quality,
            message=f"{len(darts)} dart(s) detected" if darts else "No darts detected",
        )

    def _blob_to_dart(
        self,
        frame: RgbaFrame,
        hsv: np.ndarray,
        labels: np.ndarray,
        label: int,
        stat: np.ndarray,
        area: int
    ) -> Optional[DetectedDart]:
        cfg = self.config
        radius = math.sqrt(area / math.pi)
        if radius < cfg.min_radius_px or radius > cfg.max_radius_px:
            return None

        # Work inside the blob's bounding box
        x0, y0 = int(stat[cv2.CC_STAT_LEFT]), int(stat[cv2.CC_STAT_TOP])
        bw, bh = int(stat[cv2.CC_STAT_WIDTH]), int(stat[cv2.CC_STAT_HEIGHT])
        local = labels[y0:y0 + bh, x0:x0 + bw] == label
        ly, lx = np.nonzero(local)
        xs = (lx + x0).astype(np.float64)
        ys = (ly + y0).astype(np.float64)

        cx, cy = refine_center(xs, ys, radius, cfg.hill_climb_steps)
        shape = circularity(xs, ys, cx, cy)
        if shape < cfg.min_shape_confidence:
            return None

        size = min(1.0, area / cfg.expected_blob_area)
        saturation = float(hsv[y0:y0 + bh, x0:x0 + bw, 1][local].mean())
        color_score = min(1.0, saturation * 2)
        confidence = SHAPE_WEIGHT * shape + SIZE_WEIGHT * size + COLOR_WEIGHT * color_score

        px = int(min(max(round(cx), 0), frame.width - 1))
        py = int(min(max(round(cy), 0), frame.height - 1))
        r, g, b = (int(c) for c in frame.pixels[py, px, :3])
        h, s, v = rgb_to_hsv(r, g, b)

        return DetectedDart(
            x=cx,
            y=cy,
            radius_px=radius,
            confidence=confidence,
            area=area,
            shape_confidence=shape,
            color=ColorSample(r=r, g=g, b=b, h=h, s=s, v=v),
        )


def detect_darts(frame: RgbaFrame, config: Optional[DartDetectorConfig] = None) -> DartDetectionResult:
    """One-shot convenience wrapper around DartDetector."""
    return DartDetector(config).detect(frame)
