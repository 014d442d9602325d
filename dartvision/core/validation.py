"""
Scoring accuracy validation.

Every dart goes through the same gate before its score is surfaced:

1. The calibration is usable (board found, confidence and reprojection
   error inside limits, homography non-degenerate).
2. The detection itself is confident enough.
3. The dart lands on the playable area of the board.

The validator also keeps the per-session accuracy counters. It is owned by
one scoring session and never shared between sessions.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from dartvision.core.config import ValidatorConfig
from dartvision.core.detection import DetectedDart
from dartvision.core.geometry import is_valid_homography
from dartvision.core.scoring import Ring, is_point_on_board

logger = logging.getLogger(__name__)

# Highest points a single dart can score (treble 20)
MAX_DART_SCORE = 60


@dataclass
class AccuracyMetrics:
    total_detections: int = 0
    accepted_count: int = 0
    rejected_count: int = 0
    calibration_issues: int = 0
    detection_issues: int = 0
    boundary_issues: int = 0
    average_confidence: float = 0.0
    success_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CalibrationCheck:
    valid: bool
    confidence: float
    error_px: Optional[float]
    warnings: List[str] = field(default_factory=list)


@dataclass
class DetectionCheck:
    valid: bool
    confidence: float
    on_board: bool
    warnings: List[str] = field(default_factory=list)


@dataclass
class ValidationOutcome:
    """Result of one validation attempt. Rejected when errors is non-empty."""
    valid: bool
    score: int
    ring: Ring
    confidence: float
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    calibration_valid: bool = False
    detection_valid: bool = False
    board_valid: bool = False

    @property
    def reason(self) -> str:
        return "; ".join(self.errors)


class ScoringAccuracyValidator:
    """
    Acceptance gate plus rolling accuracy metrics for one play session.

    Calibration objects are duck-typed: anything with success, confidence,
    error_px and homography attributes (CalibrationResult, CalibrationSession).
    """

    def __init__(self, config: Optional[ValidatorConfig] = None):
        self.config = config or ValidatorConfig()
        self._metrics = AccuracyMetrics()
        self._consecutive_fails = 0

    def validate_calibration(self, calibration: Any) -> CalibrationCheck:
        """Check a calibration against the gate. Does not touch the metrics."""
        cfg = self.config
        if calibration is None or not getattr(calibration, "success", False):
            return CalibrationCheck(False, 0.0, None, ["Calibration failed to detect board"])

        confidence = float(calibration.confidence or 0.0)
        error_px = calibration.error_px
        warnings = []

        if confidence < cfg.min_calibration_confidence:
            warnings.append(
                f"Low calibration confidence: {confidence:.1f}% (min: {cfg.min_calibration_confidence:.0f}%)"
            )
        if error_px is None:
            warnings.append("Calibration reprojection error unknown")
        elif error_px > cfg.max_calibration_error:
            warnings.append(
                f"High calibration error: {error_px:.2f}px (max: {cfg.max_calibration_error}px)"
            )
        if not is_valid_homography(calibration.homography):
            warnings.append("Invalid homography matrix")

        return CalibrationCheck(not warnings, confidence, error_px, warnings)

    def validate_detection(self, dart: DetectedDart) -> DetectionCheck:
        """Confidence floor and board boundary. Does not touch the metrics."""
        cfg = self.config
        warnings = []
        confidence = float(dart.confidence or 0.0)

        if confidence < cfg.min_detection_confidence:
            warnings.append(
                f"Low detection confidence: {confidence:.2f} (min: {cfg.min_detection_confidence})"
            )

        on_board = True
        if dart.board_point is None:
            on_board = False
            warnings.append("Dart position not mapped to the board")
        elif not is_point_on_board(dart.board_point, strict=cfg.strict_board_boundary_check):
            on_board = False
            bx, by = dart.board_point
            warnings.append(f"Dart position off board: ({bx:.1f}, {by:.1f})")

        return DetectionCheck(not warnings, confidence, on_board, warnings)

    def validate_scoring(
        self,
        dart: DetectedDart,
        calibration: Any,
        expected: Optional[Tuple[int, Ring]] = None
    ) -> ValidationOutcome:
        """
        Full gate for one dart. Counts as one attempt in the metrics.

        Args:
            dart: detected (and normally already scored) dart
            calibration: calibration the dart was scored with
            expected: optional (points, ring) to cross-check against
        """
        errors: List[str] = []
        warnings: List[str] = []

        cal_check = self.validate_calibration(calibration)
        if not cal_check.valid:
            errors.extend(cal_check.warnings)

        det_check = self.validate_detection(dart)
        if not det_check.valid:
            errors.extend(det_check.warnings)

        score = dart.score if dart.score is not None else 0
        ring = dart.ring if dart.ring is not None else Ring.MISS
        if score < 0 or score > MAX_DART_SCORE:
            errors.append(f"Invalid score: {score} (must be 0-{MAX_DART_SCORE})")

        if expected is not None and (expected[0] != score or expected[1] != ring):
            warnings.append(
                f"Score mismatch: expected {expected[0]} {expected[1].value}, got {score} {ring.value}"
            )

        valid = not errors
        if self.config.track_metrics:
            self._record(valid, det_check.confidence, cal_check, det_check)

        if valid:
            self._consecutive_fails = 0
        else:
            self._consecutive_fails += 1
            logger.info(f"[VALIDATE] Rejected dart at ({dart.x:.1f}, {dart.y:.1f}): {'; '.join(errors)}")
            if self._consecutive_fails == self.config.max_consecutive_fails:
                logger.warning(
                    f"[VALIDATE] {self._consecutive_fails} consecutive rejections, recalibration recommended"
                )

        return ValidationOutcome(
            valid=valid,
            score=score,
            ring=ring,
            confidence=det_check.confidence,
            warnings=warnings,
            errors=errors,
            calibration_valid=cal_check.valid,
            detection_valid=det_check.valid,
            board_valid=det_check.on_board,
        )

    def _record(self, valid: bool, confidence: float, cal_check: CalibrationCheck, det_check: DetectionCheck):
        m = self._metrics
        m.total_detections += 1
        m.average_confidence += (confidence - m.average_confidence) / m.total_detections
        if valid:
            m.accepted_count += 1
        else:
            m.rejected_count += 1
        if not cal_check.valid:
            m.calibration_issues += 1
        if not det_check.valid:
            m.detection_issues += 1
        if not det_check.on_board:
            m.boundary_issues += 1
        # Recomputed from the counters, never accumulated
        m.success_rate = m.accepted_count / m.total_detections

    @property
    def consecutive_fails(self) -> int:
        return self._consecutive_fails

    @property
    def recalibration_recommended(self) -> bool:
        return self._consecutive_fails >= self.config.max_consecutive_fails

    def get_metrics(self) -> AccuracyMetrics:
        """Snapshot copy; later validations do not change it."""
        return AccuracyMetrics(**asdict(self._metrics))

    def reset_metrics(self) -> None:
        self._metrics = AccuracyMetrics()
        self._consecutive_fails = 0

    def get_report(self) -> str:
        m = self._metrics
        accepted_pct = (m.accepted_count / m.total_detections * 100) if m.total_detections else 0.0
        rule = "=" * 44
        return "\n".join([
            rule,
            "SCORING ACCURACY REPORT",
            rule,
            f"Total Detections (attempts): {m.total_detections}",
            f"Accepted:                    {m.accepted_count} ({accepted_pct:.1f}% of attempts)",
            f"Rejected:                    {m.rejected_count}",
            f"Success Rate:                {m.success_rate * 100:.1f}%",
            f"Average Confidence:          {m.average_confidence * 100:.1f}%",
            f"Consecutive Failures:        {self._consecutive_fails}"
            + (" (recalibration recommended)" if self.recalibration_recommended else ""),
            "",
            "Issues Detected:",
            f"  Calibration Issues:      {m.calibration_issues}",
            f"  Detection Issues:        {m.detection_issues}",
            f"  Board Boundary Issues:   {m.boundary_issues}",
            rule,
        ])
