"""
Dartboard Geometry and Homography Primitives

Standard dartboard dimensions in millimeters plus the projective math used to
map between board space and image space.

Coordinate spaces (never mix them):
- Board space: millimeters, origin at the bull, +x to the right, +y towards
  the bottom of the board (so sector 20 sits on the -y axis).
- Image space: pixels, origin at the top-left of the frame.

A homography H maps board space -> image space.
"""
import math
from typing import List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np

# Segment order clockwise from top (20 at 12 o'clock)
DARTBOARD_SEGMENTS: List[int] = [
    20, 1, 18, 4, 13, 6, 10, 15, 2, 17,
    3, 19, 7, 16, 8, 11, 14, 9, 12, 5
]

# Radii in millimeters (standard dartboard)
BULL_RADIUS_MM = 6.35           # Inner bull (50 points)
OUTER_BULL_RADIUS_MM = 15.9     # Outer bull (25 points)
TRIPLE_INNER_RADIUS_MM = 99.0   # Inner edge of triple ring
TRIPLE_OUTER_RADIUS_MM = 107.0  # Outer edge of triple ring
DOUBLE_INNER_RADIUS_MM = 162.0  # Inner edge of double ring
DOUBLE_OUTER_RADIUS_MM = 170.0  # Outer edge of double ring (board edge)

# Ring radii keyed the way calibration sessions store them
BOARD_RADII_MM = {
    "bull_inner": BULL_RADIUS_MM,
    "bull_outer": OUTER_BULL_RADIUS_MM,
    "treble_inner": TRIPLE_INNER_RADIUS_MM,
    "treble_outer": TRIPLE_OUTER_RADIUS_MM,
    "double_inner": DOUBLE_INNER_RADIUS_MM,
    "double_outer": DOUBLE_OUTER_RADIUS_MM,
}

# Degrees per segment
DEGREES_PER_SEGMENT = 18.0  # 360 / 20

# Below these magnitudes the math is treated as degenerate
SINGULAR_DET_EPS = 1e-12
DIVISION_EPS = 1e-12


class GeometryError(Exception):
    """Arithmetic cannot proceed; the calibration is unusable."""


class SingularMatrixError(GeometryError):
    """A matrix (homography or linear system) is not invertible."""


class DegenerateDivisionError(GeometryError):
    """The homogeneous denominator of a projective transform is ~0."""


class BoardPoint(NamedTuple):
    """Point in board space (mm from the bull)."""
    x: float
    y: float


class ImagePoint(NamedTuple):
    """Point in image space (pixels from the top-left corner)."""
    x: float
    y: float


PointLike = Union[BoardPoint, ImagePoint, Tuple[float, float]]
HomographyLike = Union[np.ndarray, Sequence[float]]


def as_homography(H: HomographyLike) -> np.ndarray:
    """Coerce 9 row-major floats or a 3x3 array into a float64 3x3 matrix."""
    arr = np.asarray(H, dtype=np.float64)
    if arr.size != 9:
        raise ValueError(f"Homography needs 9 values, got {arr.size}")
    return arr.reshape(3, 3)


def homography_to_list(H: HomographyLike) -> List[float]:
    """Row-major list of 9 floats (persistence / JSON format)."""
    return [float(v) for v in as_homography(H).ravel()]


def is_valid_homography(H: Optional[HomographyLike]) -> bool:
    """True if H has 9 finite entries and a non-zero determinant."""
    if H is None:
        return False
    try:
        M = as_homography(H)
    except (TypeError, ValueError):
        return False
    if not np.all(np.isfinite(M)):
        return False
    return abs(float(np.linalg.det(M))) >= SINGULAR_DET_EPS


def apply_homography(H: HomographyLike, p: PointLike) -> Tuple[float, float]:
    """
    Projective transform of a single point.

    Raises:
        DegenerateDivisionError: the homogeneous denominator is ~0
    """
    M = as_homography(H)
    x, y = float(p[0]), float(p[1])
    w = M[2, 0] * x + M[2, 1] * y + M[2, 2]
    if abs(w) < DIVISION_EPS or not math.isfinite(w):
        raise DegenerateDivisionError(f"Homogeneous denominator {w!r} at ({x:.3f}, {y:.3f})")
    nx = (M[0, 0] * x + M[0, 1] * y + M[0, 2]) / w
    ny = (M[1, 0] * x + M[1, 1] * y + M[1, 2]) / w
    return float(nx), float(ny)


def apply_homography_points(H: HomographyLike, points: np.ndarray) -> np.ndarray:
    """Vectorised apply_homography over an (N, 2) array."""
    M = as_homography(H)
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    homog = np.hstack([pts, np.ones((len(pts), 1))]) @ M.T
    w = homog[:, 2]
    if np.any(np.abs(w) < DIVISION_EPS) or not np.all(np.isfinite(w)):
        raise DegenerateDivisionError("Homogeneous denominator ~0 for at least one point")
    return homog[:, :2] / w[:, None]


def invert_homography(H: HomographyLike) -> np.ndarray:
    """
    Closed-form 3x3 inverse (adjugate / determinant).

    Raises:
        SingularMatrixError: |det(H)| < 1e-12
    """
    (a, b, c), (d, e, f), (g, h, i) = as_homography(H)

    A = e * i - f * h
    B = c * h - b * i
    C = b * f - c * e
    D = f * g - d * i
    E = a * i - c * g
    F = c * d - a * f
    G = d * h - e * g
    Hh = b * g - a * h
    I = a * e - b * d

    det = a * A + b * D + c * G
    if abs(det) < SINGULAR_DET_EPS or not math.isfinite(det):
        raise SingularMatrixError(f"Singular homography (det={det:.3e})")

    return np.array([[A, B, C], [D, E, F], [G, Hh, I]], dtype=np.float64) / det


def board_to_image(H: HomographyLike, p: BoardPoint) -> ImagePoint:
    """Map a board-space point (mm) into the image (px)."""
    return ImagePoint(*apply_homography(H, p))


def image_to_board(H: HomographyLike, p: ImagePoint, H_inv: Optional[np.ndarray] = None) -> BoardPoint:
    """
    Map an image point back to board space using the inverse of H.

    Pass a precomputed H_inv to skip the inversion.

    Raises:
        SingularMatrixError / DegenerateDivisionError
    """
    inv = H_inv if H_inv is not None else invert_homography(H)
    x, y = apply_homography(inv, p)
    if not (math.isfinite(x) and math.isfinite(y)):
        raise DegenerateDivisionError(f"Non-finite board point for image point {tuple(p)}")
    return BoardPoint(x, y)


def _normalization_transform(points: np.ndarray) -> np.ndarray:
    """Similarity moving the centroid to the origin with mean distance sqrt(2)."""
    centroid = points.mean(axis=0)
    mean_dist = np.sqrt(((points - centroid) ** 2).sum(axis=1)).mean()
    if mean_dist < DIVISION_EPS:
        raise SingularMatrixError("All correspondence points coincide")
    s = math.sqrt(2.0) / mean_dist
    return np.array([
        [s, 0.0, -s * centroid[0]],
        [0.0, s, -s * centroid[1]],
        [0.0, 0.0, 1.0],
    ])


def _gaussian_solve(M: np.ndarray, v: np.ndarray) -> np.ndarray:
    """Solve M x = v by Gaussian elimination with partial pivoting."""
    n = len(v)
    A = np.hstack([M.astype(np.float64), v.reshape(-1, 1).astype(np.float64)])

    for i in range(n):
        pivot = i + int(np.argmax(np.abs(A[i:, i])))
        if abs(A[pivot, i]) < SINGULAR_DET_EPS:
            raise SingularMatrixError("Singular linear system (degenerate correspondences)")
        if pivot != i:
            A[[i, pivot]] = A[[pivot, i]]
        factors = A[i + 1:, i] / A[i, i]
        A[i + 1:, i:] -= factors[:, None] * A[i, i:]

    x = np.zeros(n)
    for i in range(n - 1, -1, -1):
        x[i] = (A[i, n] - A[i, i + 1:n] @ x[i + 1:]) / A[i, i]
    return x


def compute_homography_dlt(
    src: Sequence[PointLike],
    dst: Sequence[PointLike]
) -> np.ndarray:
    """
    Homography mapping src -> dst by the Direct Linear Transform.

    Builds the 2N x 8 system with h33 fixed to 1 and solves it through the
    normal equations. Exact for N == 4, least-squares for N > 4. Points are
    Hartley-normalised first so the normal equations stay well conditioned.

    Raises:
        ValueError: fewer than 4 or mismatched correspondences
        SingularMatrixError: degenerate configuration (e.g. collinear points)
    """
    if len(src) != len(dst):
        raise ValueError(f"Correspondences must have equal length ({len(src)} vs {len(dst)})")
    if len(src) < 4:
        raise ValueError(f"Need at least 4 correspondences, got {len(src)}")

    src_pts = np.asarray([(float(p[0]), float(p[1])) for p in src], dtype=np.float64)
    dst_pts = np.asarray([(float(p[0]), float(p[1])) for p in dst], dtype=np.float64)
    if not (np.all(np.isfinite(src_pts)) and np.all(np.isfinite(dst_pts))):
        raise ValueError("Correspondences contain non-finite coordinates")

    T_src = _normalization_transform(src_pts)
    T_dst = _normalization_transform(dst_pts)
    s = apply_homography_points(T_src, src_pts)
    d = apply_homography_points(T_dst, dst_pts)

    n = len(s)
    X, Y = s[:, 0], s[:, 1]
    x, y = d[:, 0], d[:, 1]
    zeros = np.zeros(n)
    ones = np.ones(n)

    # x * (h31 X + h32 Y + 1) = h11 X + h12 Y + h13
    # y * (h31 X + h32 Y + 1) = h21 X + h22 Y + h23
    A = np.empty((2 * n, 8))
    A[0::2] = np.column_stack([X, Y, ones, zeros, zeros, zeros, -x * X, -x * Y])
    A[1::2] = np.column_stack([zeros, zeros, zeros, X, Y, ones, -y * X, -y * Y])
    b = np.empty(2 * n)
    b[0::2] = x
    b[1::2] = y

    h = _gaussian_solve(A.T @ A, A.T @ b)
    Hn = np.append(h, 1.0).reshape(3, 3)

    H = invert_homography(T_dst) @ Hn @ T_src
    if abs(H[2, 2]) < DIVISION_EPS:
        raise SingularMatrixError("Homography normalisation failed (h33 ~ 0)")
    H = H / H[2, 2]

    if not is_valid_homography(H):
        raise SingularMatrixError("DLT produced a degenerate homography")
    return H


def reprojection_errors(H: HomographyLike, src: Sequence[PointLike], dst: Sequence[PointLike]) -> np.ndarray:
    """Per-correspondence Euclidean distance between H(src) and dst."""
    src_pts = np.asarray([(float(p[0]), float(p[1])) for p in src], dtype=np.float64)
    dst_pts = np.asarray([(float(p[0]), float(p[1])) for p in dst], dtype=np.float64)
    projected = apply_homography_points(H, src_pts)
    return np.hypot(projected[:, 0] - dst_pts[:, 0], projected[:, 1] - dst_pts[:, 1])


def rms_error(H: HomographyLike, src: Sequence[PointLike], dst: Sequence[PointLike]) -> float:
    """Root-mean-square reprojection error in destination units."""
    if len(src) == 0:
        return 0.0
    errors = reprojection_errors(H, src, dst)
    return float(np.sqrt(np.mean(errors ** 2)))


def canonical_rim_targets() -> List[BoardPoint]:
    """
    Board-space targets for manual calibration.

    Middle of the double ring (166mm) on sectors 20, 6, 3 and 11 (top, right,
    bottom, left), followed by the bull.
    """
    radius = (DOUBLE_INNER_RADIUS_MM + DOUBLE_OUTER_RADIUS_MM) / 2
    targets = []
    for sector in (20, 6, 3, 11):
        idx = DARTBOARD_SEGMENTS.index(sector)
        angle = math.radians(idx * DEGREES_PER_SEGMENT) - math.pi / 2
        x = radius * math.cos(angle)
        y = radius * math.sin(angle)
        targets.append(BoardPoint(0.0 if abs(x) < 1e-9 else x, 0.0 if abs(y) < 1e-9 else y))
    targets.append(BoardPoint(0.0, 0.0))
    return targets


def sample_ring(H: HomographyLike, radius_mm: float, steps: int = 256) -> np.ndarray:
    """Image-space polyline (steps x 2) of a board circle, for overlays."""
    theta = np.linspace(0.0, 2 * math.pi, steps, endpoint=False)
    board = np.column_stack([radius_mm * np.cos(theta), radius_mm * np.sin(theta)])
    return apply_homography_points(H, board)
