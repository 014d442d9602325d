"""
Dartboard Calibration Module

Holds the board -> image mapping used for scoring:

- CalibrationSession: the immutable, locked calibration. Exactly one is
  active per play surface; recalibrating swaps it out as a whole.
- CalibrationResult: the flat record reported after every calibration
  attempt, successful or not.
- CalibrationManager: the single writer. Builds sessions from automatic
  board detection or from manual correspondences, persists and restores them.

Readers take `manager.active` once and use that reference for the whole
frame, so they see either the old session or the new one, never a mix.
"""
import base64
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence, Union

import cv2
import numpy as np

from dartvision.core.board_detection import (
    RING_NAMES,
    BoardDegenerate,
    BoardDetected,
    BoardDetectionOutcome,
    detect_board,
    error_confidence,
    refine_point_sobel,
)
from dartvision.core.config import BoardDetectorConfig, RansacConfig
from dartvision.core.frame import RgbaFrame
from dartvision.core.geometry import (
    BOARD_RADII_MM,
    BoardPoint,
    GeometryError,
    ImagePoint,
    PointLike,
    apply_homography,
    as_homography,
    homography_to_list,
    invert_homography,
    sample_ring,
)
from dartvision.core.homography import estimate_homography

logger = logging.getLogger(__name__)

# Below this share of agreeing clicks a manual fit is not trusted at face value
MIN_MANUAL_INLIER_RATIO = 0.5


def decode_image(image_base64: str) -> np.ndarray:
    """Decode base64 image to OpenCV format."""
    if ',' in image_base64:
        image_base64 = image_base64.split(',')[1]

    try:
        image_data = base64.b64decode(image_base64)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid base64 image data: {e}")
    nparr = np.frombuffer(image_data, np.uint8)
    image = cv2.imdecode(nparr, cv2.IMREAD_COLOR) if nparr.size else None

    if image is None:
        raise ValueError("Failed to decode image")

    return image


def encode_image(image: np.ndarray, format: str = "png") -> str:
    """Encode OpenCV image to base64."""
    success, buffer = cv2.imencode(f'.{format}', image)
    if not success:
        raise ValueError("Failed to encode image")

    return base64.b64encode(buffer).decode('utf-8')


def frame_from_base64(image_base64: str, width: Optional[int] = None, height: Optional[int] = None) -> RgbaFrame:
    """
    Build a frame from request data.

    With width and height the payload is a raw RGBA buffer straight from the
    capture layer; without them it is an encoded PNG/JPEG.
    """
    if width is not None or height is not None:
        if width is None or height is None:
            raise ValueError("Raw RGBA frames need both width and height")
        try:
            raw = base64.b64decode(image_base64)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid base64 frame data: {e}")
        return RgbaFrame.from_buffer(raw, width, height)
    return RgbaFrame.from_bgr(decode_image(image_base64))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ring_radii_from_homography(H: np.ndarray) -> Dict[str, float]:
    """Mean image radius (px) of each board ring under H."""
    center = np.array(apply_homography(H, (0.0, 0.0)))
    radii = {}
    for name in RING_NAMES:
        pts = sample_ring(H, BOARD_RADII_MM[name], steps=64)
        radii[name] = float(np.mean(np.hypot(pts[:, 0] - center[0], pts[:, 1] - center[1])))
    return radii


@dataclass(frozen=True, eq=False)
class CalibrationSession:
    """
    Locked calibration for one play surface.

    The inverse homography is computed once on construction; a session that
    cannot be inverted is never created.

    Raises:
        SingularMatrixError: homography is not invertible
    """
    homography: np.ndarray
    source_points: List[BoardPoint]
    dest_points: List[ImagePoint]
    rms_error_px: float
    confidence: float
    ring_radii_px: Dict[str, float]
    locked_at: datetime = field(default_factory=_utcnow)
    rotation_offset_rad: float = 0.0
    method: str = "auto"
    inverse: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        H = as_homography(self.homography).copy()
        H.setflags(write=False)
        inverse = invert_homography(H)
        inverse.setflags(write=False)
        object.__setattr__(self, "homography", H)
        object.__setattr__(self, "inverse", inverse)
        object.__setattr__(self, "source_points", [BoardPoint(float(p[0]), float(p[1])) for p in self.source_points])
        object.__setattr__(self, "dest_points", [ImagePoint(float(p[0]), float(p[1])) for p in self.dest_points])

    # Validator duck-typing: a locked session is a successful calibration
    @property
    def success(self) -> bool:
        return True

    @property
    def error_px(self) -> float:
        return self.rms_error_px

    def to_record(self) -> Dict[str, Any]:
        """Flat, JSON-safe record for persistence."""
        return {
            "homography": homography_to_list(self.homography),
            "source_points": [[p.x, p.y] for p in self.source_points],
            "dest_points": [[p.x, p.y] for p in self.dest_points],
            "rms_error_px": float(self.rms_error_px),
            "confidence": float(self.confidence),
            "ring_radii_px": {k: float(v) for k, v in self.ring_radii_px.items()},
            "locked_at": self.locked_at.isoformat(),
            "rotation_offset_rad": float(self.rotation_offset_rad),
            "method": self.method,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "CalibrationSession":
        """
        Rebuild a session from to_record() output.

        Raises:
            ValueError: record is missing fields or malformed
            SingularMatrixError: stored homography is not invertible
        """
        try:
            locked_at = record.get("locked_at")
            return cls(
                homography=as_homography(record["homography"]),
                source_points=[tuple(p) for p in record.get("source_points", [])],
                dest_points=[tuple(p) for p in record.get("dest_points", [])],
                rms_error_px=float(record["rms_error_px"]),
                confidence=float(record["confidence"]),
                ring_radii_px=dict(record.get("ring_radii_px") or {}),
                locked_at=datetime.fromisoformat(locked_at) if locked_at else _utcnow(),
                rotation_offset_rad=float(record.get("rotation_offset_rad", 0.0)),
                method=str(record.get("method", "auto")),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed calibration record: {e}")


@dataclass
class CalibrationResult:
    """What every calibration attempt reports to the caller."""
    success: bool
    confidence: float = 0.0
    error_px: Optional[float] = None
    homography: Optional[List[float]] = None
    ring_radii_px: Optional[Dict[str, float]] = None
    center: Optional[ImagePoint] = None
    calibration_points: List[ImagePoint] = field(default_factory=list)
    inliers: List[bool] = field(default_factory=list)
    locked_at: Optional[datetime] = None
    method: str = "auto"
    message: str = ""
    overlay_image: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: BoardDetectionOutcome) -> "CalibrationResult":
        if isinstance(outcome, BoardDetected):
            d = outcome.detection
            return cls(
                success=True,
                confidence=d.confidence,
                error_px=d.error_px,
                homography=homography_to_list(d.homography),
                ring_radii_px=d.ring_radii.as_dict(),
                center=d.center,
                calibration_points=list(d.image_points),
                inliers=list(d.inliers),
                message=d.message,
            )
        if isinstance(outcome, BoardDegenerate):
            return cls(success=False, message=f"Calibration unusable, please retry: {outcome.error}")
        return cls(success=False, message=outcome.reason)

    @classmethod
    def from_session(cls, session: CalibrationSession, message: str = "") -> "CalibrationResult":
        center = ImagePoint(*apply_homography(session.homography, (0.0, 0.0)))
        return cls(
            success=True,
            confidence=session.confidence,
            error_px=session.rms_error_px,
            homography=homography_to_list(session.homography),
            ring_radii_px=dict(session.ring_radii_px),
            center=center,
            calibration_points=list(session.dest_points),
            locked_at=session.locked_at,
            method=session.method,
            message=message,
        )


def render_overlay(image: np.ndarray, session: CalibrationSession) -> np.ndarray:
    """Draw the calibrated rings, sector wires and correspondences onto a BGR image."""
    overlay = image.copy()
    H = session.homography

    ring_colors = {
        "double_outer": (0, 0, 255),
        "double_inner": (0, 0, 200),
        "treble_outer": (0, 255, 0),
        "treble_inner": (0, 200, 0),
        "bull_outer": (255, 0, 0),
        "bull_inner": (255, 0, 255),
    }
    for name, color in ring_colors.items():
        pts = sample_ring(H, BOARD_RADII_MM[name], steps=180)
        cv2.polylines(overlay, [np.round(pts).astype(np.int32)], True, color, 2)

    # Sector wires sit 9 degrees either side of each sector's centre line
    inner_mm = BOARD_RADII_MM["bull_outer"]
    outer_mm = BOARD_RADII_MM["double_outer"]
    for i in range(20):
        angle = math.radians(i * 18.0 + 9.0) - math.pi / 2 - session.rotation_offset_rad
        c, s = math.cos(angle), math.sin(angle)
        p0 = apply_homography(H, (inner_mm * c, inner_mm * s))
        p1 = apply_homography(H, (outer_mm * c, outer_mm * s))
        cv2.line(overlay, (int(round(p0[0])), int(round(p0[1]))), (int(round(p1[0])), int(round(p1[1]))),
                 (255, 255, 255), 1)

    for p in session.dest_points:
        cv2.circle(overlay, (int(round(p.x)), int(round(p.y))), 5, (0, 255, 255), -1)

    cx, cy = apply_homography(H, (0.0, 0.0))
    cv2.drawMarker(overlay, (int(round(cx)), int(round(cy))), (0, 255, 255), cv2.MARKER_CROSS, 20, 2)
    return overlay


class CalibrationManager:
    """
    Single writer for the active calibration session.

    Writers serialise on a lock and replace the session reference in one
    assignment. Readers never lock.
    """

    def __init__(
        self,
        board_config: Optional[BoardDetectorConfig] = None,
        ransac_config: Optional[RansacConfig] = None,
        rng: Union[None, int, np.random.Generator] = None
    ):
        self.board_config = board_config or BoardDetectorConfig()
        self.ransac_config = ransac_config or RansacConfig()
        self._rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
        self._write_lock = Lock()
        self._active: Optional[CalibrationSession] = None
        self._version = 0

    @property
    def active(self) -> Optional[CalibrationSession]:
        """Current session snapshot (None until calibrated)."""
        return self._active

    @property
    def version(self) -> int:
        """Increments on every replacement."""
        return self._version

    def activate(self, session: CalibrationSession) -> None:
        with self._write_lock:
            self._active = session
            self._version += 1
        logger.info(
            f"[CALIBRATE] Session v{self._version} active ({session.method}, "
            f"confidence={session.confidence:.1f}, error={session.rms_error_px:.3f}px)"
        )

    def clear(self) -> None:
        with self._write_lock:
            self._active = None
            self._version += 1

    def calibrate_from_frame(
        self,
        frame: RgbaFrame,
        rotation_offset_rad: float = 0.0,
        render: bool = False
    ) -> CalibrationResult:
        """
        Auto-detect the board and, on success, make it the active session.

        Never raises for a missing board or a degenerate fit; those come back
        as an unsuccessful CalibrationResult.
        """
        with self._write_lock:
            outcome = detect_board(frame, self.board_config, self.ransac_config, rng=self._rng)
        result = CalibrationResult.from_outcome(outcome)
        if not isinstance(outcome, BoardDetected):
            logger.info(f"[CALIBRATE] Auto calibration failed: {result.message}")
            return result

        d = outcome.detection
        try:
            session = CalibrationSession(
                homography=d.homography,
                source_points=d.board_points,
                dest_points=d.image_points,
                rms_error_px=d.error_px,
                confidence=d.confidence,
                ring_radii_px=d.ring_radii.as_dict(),
                rotation_offset_rad=rotation_offset_rad,
                method="auto",
            )
        except GeometryError as e:
            logger.warning(f"[CALIBRATE] Detected board produced an unusable homography: {e}")
            return CalibrationResult(success=False, message=f"Calibration unusable, please retry: {e}")

        self.activate(session)
        result.locked_at = session.locked_at
        if render:
            result.overlay_image = encode_image(render_overlay(frame.to_bgr(), session))
        return result

    def calibrate_manual(
        self,
        board_points: Sequence[PointLike],
        image_points: Sequence[PointLike],
        frame: Optional[RgbaFrame] = None,
        refine: bool = False,
        rotation_offset_rad: float = 0.0,
        render: bool = False
    ) -> CalibrationResult:
        """
        Calibrate from user-supplied correspondences.

        Exactly four points are fitted exactly; more go through RANSAC so a
        single misclick is rejected as an outlier. With refine=True and a
        frame, each image point first snaps to the nearest strong edge.

        Raises:
            ValueError: fewer than 4 or mismatched correspondences
        """
        if len(board_points) != len(image_points):
            raise ValueError(f"Correspondences must have equal length ({len(board_points)} vs {len(image_points)})")
        if len(board_points) < 4:
            raise ValueError(f"Need at least 4 correspondences, got {len(board_points)}")

        dst = [ImagePoint(float(p[0]), float(p[1])) for p in image_points]
        if refine and frame is not None:
            dst = [refine_point_sobel(frame, p) for p in dst]
        src = [BoardPoint(float(p[0]), float(p[1])) for p in board_points]

        try:
            with self._write_lock:
                fit = estimate_homography(src, dst, config=self.ransac_config, rng=self._rng)
            if not fit.success:
                return CalibrationResult(
                    success=False,
                    method="manual",
                    message="Not enough consistent points; check the clicked positions and retry",
                )
            confidence = error_confidence(fit.error_px)
            if fit.inlier_ratio < MIN_MANUAL_INLIER_RATIO:
                confidence *= fit.inlier_ratio
            session = CalibrationSession(
                homography=fit.homography,
                source_points=src,
                dest_points=dst,
                rms_error_px=float(fit.error_px),
                confidence=confidence,
                ring_radii_px=ring_radii_from_homography(fit.homography),
                rotation_offset_rad=rotation_offset_rad,
                method="manual",
            )
        except GeometryError as e:
            logger.warning(f"[CALIBRATE] Manual calibration degenerate: {e}")
            return CalibrationResult(success=False, method="manual", message=f"Calibration unusable, please retry: {e}")

        self.activate(session)
        outliers = fit.inliers.count(False)
        message = "Manual calibration locked"
        if outliers:
            message += f" ({outliers} point(s) ignored as outliers)"
        result = CalibrationResult.from_session(session, message=message)
        result.inliers = list(fit.inliers)
        if render and frame is not None:
            result.overlay_image = encode_image(render_overlay(frame.to_bgr(), session))
        return result

    def save(self, store, key: str) -> Dict[str, Any]:
        """
        Persist the active session under key.

        Raises:
            LookupError: no active session
            StorageError: store failure
        """
        session = self._active
        if session is None:
            raise LookupError("No active calibration to save")
        record = session.to_record()
        store.set(key, record)
        logger.info(f"[CALIBRATE] Saved session as '{key}'")
        return record

    def restore(self, store, key: str) -> CalibrationSession:
        """
        Load the session stored under key and make it active.

        Raises:
            LookupError: nothing stored under key
            ValueError / GeometryError: stored record is unusable
            StorageError: store failure
        """
        record = store.get(key)
        if record is None:
            raise LookupError(f"No calibration stored under '{key}'")
        session = CalibrationSession.from_record(record)
        self.activate(session)
        return session
