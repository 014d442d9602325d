"""
Per-frame scoring pipeline.

ScoringSession runs one frame to completion: detect -> score -> validate ->
stabilise. FramePipeline moves that work onto a background thread fed by a
capacity-1 channel: when processing falls behind capture, the waiting frame
is replaced by the newest one instead of queueing.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from dartvision.core.calibration import CalibrationManager
from dartvision.core.config import DartVisionConfig
from dartvision.core.dart_tracker import StabilityRegistry
from dartvision.core.detection import DartDetector, DetectedDart
from dartvision.core.frame import RgbaFrame
from dartvision.core.geometry import BoardPoint, ImagePoint
from dartvision.core.scoring import Ring, score_darts
from dartvision.core.validation import AccuracyMetrics, ScoringAccuracyValidator

logger = logging.getLogger(__name__)


@dataclass
class ScoredDart:
    """A dart that passed validation and the stability window."""
    image_point: ImagePoint
    board_point: BoardPoint
    score: int
    ring: Ring
    sector: Optional[int]
    multiplier: int
    confidence: float
    frames_seen: int
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_dart(cls, dart: DetectedDart) -> "ScoredDart":
        return cls(
            image_point=dart.image_point,
            board_point=dart.board_point,
            score=dart.score,
            ring=dart.ring,
            sector=dart.sector,
            multiplier=dart.multiplier,
            confidence=dart.confidence,
            frames_seen=dart.frames_seen,
        )


@dataclass
class FrameReport:
    """Everything one processed frame produced."""
    calibrated: bool
    refused: bool = False
    candidates: List[DetectedDart] = field(default_factory=list)
    accepted: List[DetectedDart] = field(default_factory=list)
    scored: List[ScoredDart] = field(default_factory=list)
    rejections: List[str] = field(default_factory=list)
    frame_quality: float = 0.0
    low_quality: bool = False
    recalibration_recommended: bool = False
    message: str = ""


class ScoringSession:
    """
    One play session: detector, validator, stability registry.

    The calibration manager may be shared with whoever recalibrates; the
    validator metrics and the registry belong to this session alone.
    """

    def __init__(self, calibration: CalibrationManager, config: Optional[DartVisionConfig] = None):
        self.config = config or DartVisionConfig()
        self.calibration = calibration
        self.detector = DartDetector(self.config.detector)
        self.validator = ScoringAccuracyValidator(self.config.validator)
        self.registry = StabilityRegistry(self.config.validator)

    def process_frame(self, frame: RgbaFrame, now: Optional[float] = None) -> FrameReport:
        """
        Detect, score, validate and stabilise one frame.

        Returns a FrameReport whose `scored` list holds only darts that
        became stable in this frame.
        """
        # One snapshot for the whole frame
        session = self.calibration.active
        detection = self.detector.detect(frame)
        report = FrameReport(
            calibrated=session is not None,
            candidates=detection.darts,
            frame_quality=detection.frame_quality,
            low_quality=detection.low_quality,
        )

        cal_check = self.validator.validate_calibration(session)
        if not cal_check.valid:
            # Scoring is refused outright; each candidate still counts as a rejected attempt
            report.refused = True
            for dart in detection.darts:
                outcome = self.validator.validate_scoring(dart, session)
                report.rejections.append(outcome.reason)
            report.message = "Scoring refused: " + "; ".join(cal_check.warnings)
            report.recalibration_recommended = True
            logger.debug(f"[PIPELINE] {report.message}")
            return report

        if detection.low_quality:
            report.message = detection.message
            report.recalibration_recommended = self.validator.recalibration_recommended
            return report

        accepted = []
        for dart in score_darts(detection.darts, session):
            outcome = self.validator.validate_scoring(dart, session)
            if outcome.valid:
                accepted.append(dart)
            else:
                report.rejections.append(outcome.reason)
        report.accepted = accepted

        stable = self.registry.observe(accepted, now=now)
        report.scored = [ScoredDart.from_dart(d) for d in stable]
        report.recalibration_recommended = self.validator.recalibration_recommended

        for dart in report.scored:
            logger.info(
                f"[PIPELINE] Dart scored: {dart.ring.value} {dart.sector} = {dart.score} "
                f"(confidence {dart.confidence:.2f}, frames {dart.frames_seen})"
            )
        report.message = (
            f"{len(detection.darts)} candidate(s), {len(accepted)} accepted, {len(report.scored)} scored"
        )
        return report

    def get_metrics(self) -> AccuracyMetrics:
        return self.validator.get_metrics()

    def reset(self) -> None:
        """New leg / board cleared: forget tracked darts and counters."""
        self.registry.reset()
        self.validator.reset_metrics()


class ChannelClosed(Exception):
    """The channel was closed while waiting for a frame."""


class LatestFrameChannel:
    """
    Bounded hand-off between capture and processing, capacity 1.

    put() never blocks: a frame still waiting is replaced by the new one.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._frame: Optional[RgbaFrame] = None
        self._closed = False
        self.dropped = 0

    def put(self, frame: RgbaFrame) -> bool:
        """Offer a frame. Returns True if it replaced an unprocessed one."""
        with self._cond:
            if self._closed:
                raise ChannelClosed("Channel is closed")
            replaced = self._frame is not None
            if replaced:
                self.dropped += 1
            self._frame = frame
            self._cond.notify()
            return replaced

    def get(self, timeout: Optional[float] = None) -> Optional[RgbaFrame]:
        """
        Take the waiting frame, blocking until one arrives.

        Returns None on timeout.

        Raises:
            ChannelClosed: closed and empty
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._frame is not None or self._closed, timeout=timeout):
                return None
            if self._frame is None:
                raise ChannelClosed("Channel is closed")
            frame, self._frame = self._frame, None
            return frame

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed


class FramePipeline:
    """
    Background worker draining a LatestFrameChannel into a ScoringSession.

    Stopping means no new frames are accepted; the frame in progress always
    finishes.
    """

    def __init__(
        self,
        session: ScoringSession,
        on_report: Optional[Callable[[FrameReport], None]] = None
    ):
        self.session = session
        self.on_report = on_report
        self.channel = LatestFrameChannel()
        self.processed = 0
        self.last_report: Optional[FrameReport] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def submit(self, frame: RgbaFrame) -> bool:
        """Hand a frame to the worker. Returns True if an older frame was dropped."""
        return self.channel.put(frame)

    def _worker_loop(self):
        logger.info("[PIPELINE] Worker started")
        while True:
            try:
                frame = self.channel.get()
            except ChannelClosed:
                break
            if frame is None:
                continue

            try:
                report = self.session.process_frame(frame)
            except Exception as e:
                logger.error(f"[PIPELINE] Error processing frame: {e}", exc_info=True)
                continue

            self.processed += 1
            self.last_report = report
            if self.on_report is not None:
                try:
                    self.on_report(report)
                except Exception as e:
                    logger.error(f"[PIPELINE] Report callback failed: {e}", exc_info=True)
        logger.info("[PIPELINE] Worker stopped")

    def start(self):
        if self._running:
            logger.warning("[PIPELINE] Already running")
            return
        if self.channel.closed:
            self.channel = LatestFrameChannel()
        self._running = True
        self._thread = threading.Thread(target=self._worker_loop, name="frame-pipeline", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._running = False
        self.channel.close()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._running

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "processed": self.processed,
            "dropped": self.channel.dropped,
            "calibration_version": self.session.calibration.version,
        }
