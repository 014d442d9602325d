"""
Robust homography estimation.

RANSAC over minimal 4-point subsets, each fitted with the DLT from
geometry.py. Used both for manual calibration (where one misclicked point
must not ruin the fit) and by the board auto-detector.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

import numpy as np

from dartvision.core.config import RansacConfig
from dartvision.core.geometry import (
    GeometryError,
    PointLike,
    apply_homography_points,
    compute_homography_dlt,
    rms_error,
)

logger = logging.getLogger(__name__)

MINIMAL_SAMPLE = 4


@dataclass
class RansacResult:
    """Best model found, with the evidence a caller needs to judge it."""
    homography: Optional[np.ndarray]
    inliers: List[bool] = field(default_factory=list)
    error_px: Optional[float] = None
    iterations: int = 0

    @property
    def success(self) -> bool:
        return self.homography is not None

    @property
    def inlier_count(self) -> int:
        return sum(self.inliers)

    @property
    def inlier_ratio(self) -> float:
        return self.inlier_count / len(self.inliers) if self.inliers else 0.0


def _as_rng(rng: Union[None, int, np.random.Generator]) -> np.random.Generator:
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)


def _inlier_mask(H: np.ndarray, src: np.ndarray, dst: np.ndarray, threshold: float) -> np.ndarray:
    try:
        projected = apply_homography_points(H, src)
    except GeometryError:
        return np.zeros(len(src), dtype=bool)
    dist = np.hypot(projected[:, 0] - dst[:, 0], projected[:, 1] - dst[:, 1])
    return dist <= threshold


def ransac_homography(
    src: Sequence[PointLike],
    dst: Sequence[PointLike],
    config: Optional[RansacConfig] = None,
    rng: Union[None, int, np.random.Generator] = None
) -> RansacResult:
    """
    Estimate src -> dst robustly.

    Args:
        src: source points (board space for calibration)
        dst: destination points (image space)
        config: threshold / iteration limit / refit policy
        rng: numpy Generator or seed; inject one for reproducible runs

    Returns:
        RansacResult. homography is None when no model reached
        config.min_inliers.

    Raises:
        ValueError: fewer than 4 or mismatched correspondences
    """
    config = config or RansacConfig()
    if len(src) != len(dst):
        raise ValueError(f"Correspondences must have equal length ({len(src)} vs {len(dst)})")
    n = len(src)
    if n < MINIMAL_SAMPLE:
        raise ValueError(f"Need at least {MINIMAL_SAMPLE} correspondences, got {n}")

    src_pts = np.asarray([(float(p[0]), float(p[1])) for p in src], dtype=np.float64)
    dst_pts = np.asarray([(float(p[0]), float(p[1])) for p in dst], dtype=np.float64)
    generator = _as_rng(rng)
    min_inliers = max(MINIMAL_SAMPLE, config.min_inliers)

    best_H: Optional[np.ndarray] = None
    best_mask = np.zeros(n, dtype=bool)
    best_count = 0
    best_error = float("inf")
    iterations = 0

    for iterations in range(1, config.max_iterations + 1):
        sample = generator.choice(n, size=MINIMAL_SAMPLE, replace=False)
        try:
            H_try = compute_homography_dlt(src_pts[sample], dst_pts[sample])
        except GeometryError:
            continue  # degenerate sample (collinear / coincident points)

        mask = _inlier_mask(H_try, src_pts, dst_pts, config.threshold_px)
        count = int(mask.sum())
        if count < min_inliers:
            continue

        err = rms_error(H_try, src_pts[mask], dst_pts[mask])
        if count > best_count or (count == best_count and err < best_error):
            best_H, best_mask, best_count, best_error = H_try, mask, count, err
            if best_count == n and best_error <= 1e-9:
                break

    if best_H is None:
        logger.info(f"[RANSAC] No model with >= {min_inliers} inliers after {iterations} iterations")
        return RansacResult(homography=None, inliers=[False] * n, error_px=None, iterations=iterations)

    if config.refit and best_count > MINIMAL_SAMPLE:
        try:
            refined = compute_homography_dlt(src_pts[best_mask], dst_pts[best_mask])
            refined_mask = _inlier_mask(refined, src_pts, dst_pts, config.threshold_px)
            if refined_mask.sum() >= best_count:
                best_H, best_mask = refined, refined_mask
        except GeometryError as e:
            logger.debug(f"[RANSAC] Refit on {best_count} inliers failed, keeping minimal model: {e}")

    final_error = rms_error(best_H, src_pts[best_mask], dst_pts[best_mask])
    logger.debug(f"[RANSAC] {int(best_mask.sum())}/{n} inliers, rms={final_error:.3f}px, iterations={iterations}")

    return RansacResult(
        homography=best_H,
        inliers=[bool(v) for v in best_mask],
        error_px=final_error,
        iterations=iterations,
    )


def estimate_homography(
    src: Sequence[PointLike],
    dst: Sequence[PointLike],
    config: Optional[RansacConfig] = None,
    rng: Union[None, int, np.random.Generator] = None
) -> RansacResult:
    """
    Exact DLT for exactly four correspondences, RANSAC above that.

    Raises:
        ValueError: fewer than 4 or mismatched correspondences
        GeometryError: the four-point fit is degenerate
    """
    if len(src) == MINIMAL_SAMPLE and len(dst) == MINIMAL_SAMPLE:
        H = compute_homography_dlt(src, dst)
        return RansacResult(
            homography=H,
            inliers=[True] * MINIMAL_SAMPLE,
            error_px=rms_error(H, src, dst),
            iterations=0,
        )
    return ransac_homography(src, dst, config=config, rng=rng)
