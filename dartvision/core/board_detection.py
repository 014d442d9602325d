"""
Dartboard Auto-Detection

Finds the board in a single frame without any user clicks:

1. Sobel gradients on luminance, weak edges discarded. Only the gradient
   component along the radius from a candidate centre counts as ring
   evidence; the sector wires run along the radius and drop out.
2. Coarse search on downsampled gradient products: a ring template (the four
   outer ring circles at the true board ratios) is correlated with them for
   a range of radius guesses; only centres in the middle of the frame count.
3. Full-resolution refinement of centre and outer double radius by
   maximising radial edge energy summed over all six ring circles.
4. Remaining ring radii derived from board geometry ratios.
5. Board/image correspondences synthesised on the outer double ring plus the
   bull, handed to the homography estimator.
6. Ring evidence and reprojection error blended into one 0-100 confidence,
   then discounted if the inner rings are missing or sit off the board
   geometry ratios.

The result is a tagged union. Callers branch on the type and never read ring
radii from a failed detection.
"""
import logging
import math
from dataclasses import dataclass, field, replace
from typing import ClassVar, Dict, List, Optional, Tuple, Union

import cv2
import numpy as np

from dartvision.core.config import BoardDetectorConfig, RansacConfig
from dartvision.core.frame import RgbaFrame
from dartvision.core.geometry import (
    BOARD_RADII_MM,
    DOUBLE_OUTER_RADIUS_MM,
    BoardPoint,
    GeometryError,
    ImagePoint,
    is_valid_homography,
)
from dartvision.core.homography import estimate_homography

logger = logging.getLogger(__name__)

# Ring names from the bull outwards
RING_NAMES: Tuple[str, ...] = (
    "bull_inner", "bull_outer", "treble_inner", "treble_outer", "double_inner", "double_outer",
)
RING_RATIOS: Dict[str, float] = {
    name: BOARD_RADII_MM[name] / DOUBLE_OUTER_RADIUS_MM for name in RING_NAMES
}

# Rings used for the coarse template and ring evidence; the bull rings vanish
# when downsampled and are crowded by sector wires
COARSE_RINGS = ("treble_inner", "treble_outer", "double_inner", "double_outer")

# Rings whose ratio to the outer double is checked; bull rings are too small
# to measure to a useful relative precision
RATIO_CHECK_RINGS = ("treble_inner", "treble_outer", "double_inner")

# Half-width of the per-ring radius search used by the ratio check. Must stay
# below half the gap between double inner and double outer (~4.7%).
RATIO_SEARCH_FRACTION = 0.025

# Radial band (px) around a ring in which an edge counts as coverage
COVERAGE_BAND_PX = 2

# An edge counts toward a ring only if its gradient is within 45 degrees of
# the radius
RADIAL_ALIGNMENT = math.cos(math.radians(45.0))

# Radii (fraction of outer double) inside the single bands, where a correctly
# placed board shows no radial edges
GAP_RATIOS = (0.35, 0.79)

# A ring is present when its radial energy is at least this multiple of the
# gap energy
RING_PROMINENCE = 2.0


@dataclass(frozen=True)
class RingRadiiPx:
    """Ring radii in image pixels."""
    bull_inner: float
    bull_outer: float
    treble_inner: float
    treble_outer: float
    double_inner: float
    double_outer: float

    @classmethod
    def from_double_outer(cls, radius_px: float) -> "RingRadiiPx":
        return cls(**{name: radius_px * RING_RATIOS[name] for name in RING_NAMES})

    def as_dict(self) -> Dict[str, float]:
        return {name: float(getattr(self, name)) for name in RING_NAMES}


@dataclass(frozen=True, eq=False)
class BoardDetection:
    """Everything a successful auto-detection produced."""
    center: ImagePoint
    ring_radii: RingRadiiPx
    homography: np.ndarray
    error_px: float
    confidence: float
    ring_evidence: float
    board_points: List[BoardPoint] = field(default_factory=list)
    image_points: List[ImagePoint] = field(default_factory=list)
    inliers: List[bool] = field(default_factory=list)
    ratio_deviation: Optional[float] = None
    message: str = ""


@dataclass(frozen=True, eq=False)
class BoardDetected:
    detection: BoardDetection
    success: ClassVar[bool] = True


@dataclass(frozen=True)
class BoardNotFound:
    reason: str
    success: ClassVar[bool] = False


@dataclass(frozen=True)
class BoardDegenerate:
    """Rings were found but the resulting calibration is numerically unusable."""
    error: str
    success: ClassVar[bool] = False


BoardDetectionOutcome = Union[BoardDetected, BoardNotFound, BoardDegenerate]


def error_confidence(error_px: Optional[float]) -> float:
    """
    Map reprojection error (px) to a 0-100 confidence.

    Sub-pixel errors land in the high 90s, 5px maps to 90 and the curve drops
    steeply beyond 8px.
    """
    err = 10.0 if error_px is None else float(error_px)
    if err <= 0.25:
        conf = 99.5 + (0.25 - err) * 2
    elif err <= 1:
        conf = 98 + (1 - err) * 2
    elif err <= 2:
        conf = 95 + (2 - err) * 3
    elif err <= 5:
        conf = 90 + (5 - err) * 1.66
    elif err <= 8:
        conf = 85 + (8 - err) * 1.66
    else:
        conf = max(0.0, 85 - (err - 8) * 5)
    return min(100.0, conf)


@dataclass(frozen=True, eq=False)
class GradientField:
    """
    Luminance gradients of one frame.

    gx/gy are Sobel responses with weak edges zeroed. jxx/jxy/jyy are the
    blurred products (structure tensor), from which the gradient energy
    along any direction (cos, sin) is jxx*cos^2 + 2*jxy*cos*sin + jyy*sin^2.
    """
    gx: np.ndarray
    gy: np.ndarray
    jxx: np.ndarray
    jxy: np.ndarray
    jyy: np.ndarray


def compute_gradient_field(frame: RgbaFrame, threshold: float) -> GradientField:
    lum = frame.luminance()
    gx = cv2.Sobel(lum, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(lum, cv2.CV_32F, 0, 1, ksize=3)
    weak = cv2.magnitude(gx, gy) < threshold
    gx[weak] = 0.0
    gy[weak] = 0.0
    return GradientField(
        gx=gx,
        gy=gy,
        jxx=cv2.GaussianBlur(gx * gx, (5, 5), 0),
        jxy=cv2.GaussianBlur(gx * gy, (5, 5), 0),
        jyy=cv2.GaussianBlur(gy * gy, (5, 5), 0),
    )


def _sample(image: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    """Nearest-pixel lookup; samples outside the image read as 0."""
    h, w = image.shape[:2]
    ix = np.rint(xs).astype(np.int64)
    iy = np.rint(ys).astype(np.int64)
    inside = (ix >= 0) & (ix < w) & (iy >= 0) & (iy < h)
    values = image[np.clip(iy, 0, h - 1), np.clip(ix, 0, w - 1)]
    return np.where(inside, values, 0.0)


def _angles(count: int) -> Tuple[np.ndarray, np.ndarray]:
    theta = np.linspace(0.0, 2 * math.pi, count, endpoint=False)
    return np.cos(theta), np.sin(theta)


def _radial_energy(
    grad: GradientField,
    cx: float,
    cy: float,
    radii: np.ndarray,
    cos_t: np.ndarray,
    sin_t: np.ndarray,
    tangential: bool = False
) -> np.ndarray:
    """
    Gradient strength along the radius from (cx, cy), sampled on circles.

    `radii` may have any shape; a trailing angle axis is added. Sector wires
    run along the radius, so their gradient is tangential and reads as ~0.
    With tangential=True the perpendicular component is returned instead.
    """
    r = np.asarray(radii, dtype=np.float64)[..., None]
    xs = cx + r * cos_t
    ys = cy + r * sin_t
    c, s = (-sin_t, cos_t) if tangential else (cos_t, sin_t)
    energy = (
        _sample(grad.jxx, xs, ys) * (c * c)
        + 2.0 * _sample(grad.jxy, xs, ys) * (c * s)
        + _sample(grad.jyy, xs, ys) * (s * s)
    )
    return np.sqrt(np.maximum(energy, 0.0))


def _ring_kernels(radius: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Ring template split into the cos^2, 2cos*sin and sin^2 tensor weights."""
    half = radius + 2
    ring = np.zeros((2 * half + 1, 2 * half + 1), dtype=np.float32)
    for name in COARSE_RINGS:
        r = int(round(radius * RING_RATIOS[name]))
        if r > 0:
            cv2.circle(ring, (half, half), r, 1.0, thickness=1)
    total = float(ring.sum())
    if total > 0:
        ring /= total
    v, u = np.mgrid[-half:half + 1, -half:half + 1].astype(np.float32)
    rho = np.hypot(u, v)
    rho[half, half] = 1.0
    c, s = u / rho, v / rho
    return ring * c * c, ring * 2.0 * c * s, ring * s * s


def _coarse_search(
    grad: GradientField,
    config: BoardDetectorConfig
) -> Optional[Tuple[float, float, float, float]]:
    """Best (cx, cy, r, score) in full-resolution pixels, or None."""
    h, w = grad.gx.shape
    scale = min(1.0, config.coarse_width / float(w))
    products = (grad.gx * grad.gx, grad.gx * grad.gy, grad.gy * grad.gy)
    if scale < 1.0:
        sw = max(1, int(round(w * scale)))
        sh = max(1, int(round(h * scale)))
        products = tuple(cv2.resize(p, (sw, sh), interpolation=cv2.INTER_AREA) for p in products)
    else:
        sh, sw = h, w
    # Tolerate half-pixel radius rounding in the template
    sxx, sxy, syy = (cv2.GaussianBlur(p, (3, 3), 0) for p in products)

    side = min(sw, sh)
    r_lo = max(3, int(config.min_radius_fraction * side))
    r_hi = max(r_lo, int(config.max_radius_fraction * side))

    margin = (1.0 - config.center_search_fraction) / 2.0
    x0, x1 = int(sw * margin), max(int(sw * margin) + 1, int(math.ceil(sw * (1.0 - margin))))
    y0, y1 = int(sh * margin), max(int(sh * margin) + 1, int(math.ceil(sh * (1.0 - margin))))

    best: Optional[Tuple[float, float, float, float]] = None
    for r in range(r_lo, r_hi + 1):
        kxx, kxy, kyy = _ring_kernels(r)
        response = (
            cv2.filter2D(sxx, cv2.CV_32F, kxx, borderType=cv2.BORDER_CONSTANT)
            + cv2.filter2D(sxy, cv2.CV_32F, kxy, borderType=cv2.BORDER_CONSTANT)
            + cv2.filter2D(syy, cv2.CV_32F, kyy, borderType=cv2.BORDER_CONSTANT)
        )
        window = response[y0:y1, x0:x1]
        iy, ix = np.unravel_index(int(np.argmax(window)), window.shape)
        score = float(window[iy, ix])
        if score > 0 and (best is None or score > best[3]):
            best = (float(ix + x0), float(iy + y0), float(r), score)

    if best is None:
        return None
    bx, by, br, score = best
    return (bx + 0.5) / scale - 0.5, (by + 0.5) / scale - 0.5, br / scale, score


def _refine_center_radius(
    grad: GradientField,
    cx0: float,
    cy0: float,
    r0: float,
    reach: int,
    config: BoardDetectorConfig
) -> Tuple[float, float, float]:
    """Maximise radial edge energy over all six rings around the coarse estimate."""
    cos_t, sin_t = _angles(config.angle_samples)
    ratios = np.array([RING_RATIOS[name] for name in RING_NAMES])

    radii = np.arange(
        r0 * (1.0 - config.refine_radius_fraction),
        r0 * (1.0 + config.refine_radius_fraction) + config.refine_radius_step_px / 2,
        config.refine_radius_step_px,
    )
    rr = radii[:, None] * ratios[None, :]

    best_energy = -1.0
    best = (cx0, cy0, r0)
    center = (cx0, cy0)
    step = max(1, reach // 2)
    while True:
        cx_c, cy_c = center
        offsets = range(-reach, reach + 1, step)
        for oy in offsets:
            for ox in offsets:
                cx, cy = cx_c + ox, cy_c + oy
                energy = _radial_energy(grad, cx, cy, rr, cos_t, sin_t).mean(axis=(1, 2))
                i = int(np.argmax(energy))
                if energy[i] > best_energy:
                    best_energy = float(energy[i])
                    best = (cx, cy, float(radii[i]))
        if step == 1:
            break
        center = best[:2]
        reach = step
        step = max(1, step // 2)

    return best


def _ring_coverage(grad: GradientField, cx: float, cy: float, radius_px: float, samples: int) -> float:
    """Fraction of angles with a radially oriented edge within a small band of the ring."""
    cos_t, sin_t = _angles(samples)
    band = np.arange(-COVERAGE_BAND_PX, COVERAGE_BAND_PX + 1, dtype=np.float64)
    rr = np.maximum(radius_px + band, 0.0)[:, None]
    xs = cx + rr * cos_t[None, :]
    ys = cy + rr * sin_t[None, :]
    gx = _sample(grad.gx, xs, ys)
    gy = _sample(grad.gy, xs, ys)
    magnitude = np.hypot(gx, gy)
    radial = np.abs(gx * cos_t[None, :] + gy * sin_t[None, :])
    hits = (magnitude > 0) & (radial >= RADIAL_ALIGNMENT * magnitude)
    return float(hits.any(axis=0).mean())


def _measure_ring(
    grad: GradientField,
    cx: float,
    cy: float,
    expected_px: float,
    samples: int
) -> Tuple[float, float, float]:
    """
    Strongest circle near expected_px.

    Returns (radius, mean radial energy, mean tangential energy) at that
    radius.
    """
    cos_t, sin_t = _angles(samples)
    span = max(1.0, expected_px * RATIO_SEARCH_FRACTION)
    radii = np.arange(expected_px - span, expected_px + span + 0.125, 0.25)
    energy = _radial_energy(grad, cx, cy, radii, cos_t, sin_t).mean(axis=1)
    i = int(np.argmax(energy))
    across = _radial_energy(grad, cx, cy, radii[i:i + 1], cos_t, sin_t, tangential=True).mean()
    return float(radii[i]), float(energy[i]), float(across)


def _ratio_deviation(
    grad: GradientField,
    center: ImagePoint,
    radii: RingRadiiPx,
    config: BoardDetectorConfig
) -> float:
    """
    Mean relative deviation of the inner ring ratios from board geometry.

    A ring counts as fully off (1.0) when its edge does not stand out from
    the flat bands between rings, or when edges across the radius (sector
    wires) outweigh it. A detection locked onto the wrong circle therefore
    scores close to 1 instead of looking merely imprecise.
    """
    samples = config.angle_samples
    cos_t, sin_t = _angles(samples)
    gaps = _radial_energy(grad, center.x, center.y, radii.double_outer * np.array(GAP_RATIOS), cos_t, sin_t)
    floor = max(RING_PROMINENCE * float(gaps.mean()), config.edge_threshold / 2.0)

    def present(energy: float, across: float) -> bool:
        return energy >= floor and energy >= across

    outer, outer_energy, outer_across = _measure_ring(grad, center.x, center.y, radii.double_outer, samples)
    if outer <= 0 or not present(outer_energy, outer_across):
        return 1.0
    deviations = []
    for name in RATIO_CHECK_RINGS:
        measured, energy, across = _measure_ring(grad, center.x, center.y, getattr(radii, name), samples)
        if not present(energy, across):
            deviations.append(1.0)
            continue
        expected = RING_RATIOS[name]
        deviations.append(abs(measured / outer - expected) / expected)
    return float(np.mean(deviations))


def _apply_ratio_check(
    grad: GradientField,
    detection: BoardDetection,
    config: BoardDetectorConfig
) -> BoardDetection:
    deviation = _ratio_deviation(grad, detection.center, detection.ring_radii, config)
    confidence = detection.confidence
    message = detection.message
    if deviation > config.ratio_tolerance:
        penalty = (deviation - config.ratio_tolerance) * config.ratio_penalty
        confidence = max(0.0, confidence - penalty)
        message = f"{message}; ring ratios off by {deviation * 100:.1f}%"
        logger.info(f"[BOARD] Ring ratio deviation {deviation:.3f}, confidence -{penalty:.1f}")
    return replace(detection, confidence=confidence, ratio_deviation=deviation, message=message)


def _accept(detection: BoardDetection, config: BoardDetectorConfig) -> BoardDetectionOutcome:
    if detection.confidence < config.min_confidence:
        return BoardNotFound(
            f"Board candidate rejected (confidence {detection.confidence:.0f}): {detection.message}"
        )
    return BoardDetected(detection)


def refine_ring_detection(
    frame: RgbaFrame,
    outcome: BoardDetectionOutcome,
    config: Optional[BoardDetectorConfig] = None
) -> BoardDetectionOutcome:
    """
    Check measured ring-radius ratios against board geometry.

    A detection whose inner rings do not sit where the geometry says they
    should (a false-positive ring match) loses confidence, and is turned into
    BoardNotFound once it falls below the acceptance floor. Failed outcomes
    are returned unchanged.
    """
    if not isinstance(outcome, BoardDetected):
        return outcome
    config = config or BoardDetectorConfig()
    grad = compute_gradient_field(frame, config.edge_threshold)
    return _accept(_apply_ratio_check(grad, outcome.detection, config), config)


def _correspondences(center: ImagePoint, radius_px: float) -> Tuple[List[BoardPoint], List[ImagePoint]]:
    """Top/right/bottom/left of the outer double ring, plus the bull."""
    r_mm = DOUBLE_OUTER_RADIUS_MM
    board = [
        BoardPoint(0.0, -r_mm),
        BoardPoint(r_mm, 0.0),
        BoardPoint(0.0, r_mm),
        BoardPoint(-r_mm, 0.0),
        BoardPoint(0.0, 0.0),
    ]
    image = [
        ImagePoint(center.x, center.y - radius_px),
        ImagePoint(center.x + radius_px, center.y),
        ImagePoint(center.x, center.y + radius_px),
        ImagePoint(center.x - radius_px, center.y),
        ImagePoint(center.x, center.y),
    ]
    return board, image


def detect_board(
    frame: RgbaFrame,
    config: Optional[BoardDetectorConfig] = None,
    ransac_config: Optional[RansacConfig] = None,
    rng: Union[None, int, np.random.Generator] = None
) -> BoardDetectionOutcome:
    """
    Locate the dartboard in one frame.

    Never raises for "no board"; that is a BoardNotFound value. Numerical
    failure while building the calibration is a BoardDegenerate value.
    """
    config = config or BoardDetectorConfig()

    if min(frame.width, frame.height) < 32:
        return BoardNotFound(f"Frame too small ({frame.width}x{frame.height})")

    grad = compute_gradient_field(frame, config.edge_threshold)
    if not np.any(grad.gx) and not np.any(grad.gy):
        logger.info("[BOARD] No edges above threshold")
        return BoardNotFound("No edges found. Check lighting and contrast between rings and background.")

    coarse = _coarse_search(grad, config)
    if coarse is None:
        return BoardNotFound("No ring structure found near the centre of the frame.")
    cx0, cy0, r0, coarse_score = coarse
    logger.debug(f"[BOARD] Coarse centre ({cx0:.1f}, {cy0:.1f}) r={r0:.1f} score={coarse_score:.2f}")

    scale = min(1.0, config.coarse_width / float(frame.width))
    reach = int(math.ceil(1.5 / scale))
    cx, cy, radius = _refine_center_radius(grad, cx0, cy0, r0, reach, config)
    center = ImagePoint(cx, cy)
    radii = RingRadiiPx.from_double_outer(radius)

    coverage = {
        name: _ring_coverage(grad, cx, cy, getattr(radii, name), config.angle_samples)
        for name in RING_NAMES
    }
    evidence = float(np.mean([coverage[name] for name in COARSE_RINGS]))
    logger.debug(f"[BOARD] Ring coverage {', '.join(f'{k}={v:.2f}' for k, v in coverage.items())}")

    if evidence < config.min_ring_evidence:
        logger.info(f"[BOARD] Ring evidence too weak ({evidence:.2f})")
        return BoardNotFound(
            f"No dartboard detected (ring evidence {evidence:.2f}). "
            "Ensure the whole board is visible with good contrast."
        )

    board_points, image_points = _correspondences(center, radius)
    try:
        fit = estimate_homography(board_points, image_points, config=ransac_config, rng=rng)
    except GeometryError as e:
        logger.warning(f"[BOARD] Homography failed: {e}")
        return BoardDegenerate(str(e))

    if not fit.success or not is_valid_homography(fit.homography):
        return BoardDegenerate("Detected rings did not produce a valid homography")

    weight = config.ring_evidence_weight
    confidence = weight * evidence * 100.0 + (1.0 - weight) * error_confidence(fit.error_px)
    confidence = max(0.0, min(100.0, confidence))

    quality = "Excellent detection" if confidence > 85 else "Board detected - may need angle adjustment"
    detection = BoardDetection(
        center=center,
        ring_radii=radii,
        homography=fit.homography,
        error_px=float(fit.error_px),
        confidence=confidence,
        ring_evidence=evidence,
        board_points=board_points,
        image_points=image_points,
        inliers=fit.inliers,
        message=f"{quality} (evidence {evidence:.2f}, r: {radius:.0f}px)",
    )
    detection = _apply_ratio_check(grad, detection, config)

    outcome = _accept(detection, config)
    if outcome.success:
        logger.info(
            f"[BOARD] Found board at ({cx:.1f}, {cy:.1f}) r={radius:.1f}px "
            f"confidence={detection.confidence:.1f} error={detection.error_px:.3f}px"
        )
    else:
        logger.info(f"[BOARD] {outcome.reason}")
    return outcome


def refine_point_sobel(frame: RgbaFrame, point: ImagePoint, radius: int = 6) -> ImagePoint:
    """
    Snap a clicked point to the strongest luminance edge in a small window.

    Used to tidy up manual calibration clicks on ring wires.
    """
    h, w = frame.height, frame.width
    cx = int(min(max(round(point[0]), 1), w - 2))
    cy = int(min(max(round(point[1]), 1), h - 2))
    x0, x1 = max(1, cx - radius), min(w - 2, cx + radius)
    y0, y1 = max(1, cy - radius), min(h - 2, cy + radius)
    if x1 < x0 or y1 < y0:
        return ImagePoint(float(cx), float(cy))

    lum = frame.luminance()
    gx = cv2.Sobel(lum, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(lum, cv2.CV_32F, 0, 1, ksize=3)
    window = cv2.magnitude(gx, gy)[y0:y1 + 1, x0:x1 + 1]
    if not np.any(window > 0):
        return ImagePoint(float(cx), float(cy))
    iy, ix = np.unravel_index(int(np.argmax(window)), window.shape)
    return ImagePoint(float(x0 + ix), float(y0 + iy))
