"""
DartVision API Routes

Thin adapter over the vision core. Everything stateful (config, calibration
manager, scoring session, calibration store) lives on `request.app.state`,
so each application instance is independent.
"""
import math
import time
import uuid
import logging
from fastapi import APIRouter, HTTPException, Depends, Header, Request
from typing import Optional

from dartvision.core.calibration import CalibrationResult, frame_from_base64
from dartvision.core.geometry import GeometryError
from dartvision.core.pipeline import ScoredDart
from dartvision.core.storage import StorageError
from dartvision.models.schemas import (
    CalibrateRequest,
    CalibrationRecord,
    CalibrationResponse,
    CalibrationStatus,
    DartCandidate,
    DetectRequest,
    DetectResponse,
    FrameImage,
    HealthResponse,
    ManualCalibrateRequest,
    MetricsResponse,
    Point,
    ReportResponse,
    SaveResponse,
    ScoredDartModel,
)

logger = logging.getLogger(__name__)

router = APIRouter()

API_VERSION = "1.0.0"


# === Authentication ===

async def verify_api_key(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """Verify API key from Authorization header."""
    service = request.app.state.config.service
    if not service.require_auth:
        return "local"

    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid Authorization format")

    if parts[1] not in service.api_keys:
        raise HTTPException(status_code=401, detail="Invalid API key")

    return parts[1]


# === Helpers ===

def _decode_frame(image: FrameImage):
    try:
        return frame_from_base64(image.image, image.width, image.height)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _calibration_response(result: CalibrationResult) -> CalibrationResponse:
    return CalibrationResponse(
        success=result.success,
        confidence=result.confidence,
        error_px=result.error_px,
        homography=result.homography,
        ring_radii_px=result.ring_radii_px,
        center=Point(x=result.center.x, y=result.center.y) if result.center is not None else None,
        calibration_points=[Point(x=p.x, y=p.y) for p in result.calibration_points],
        inliers=result.inliers,
        locked_at=result.locked_at,
        method=result.method,
        message=result.message,
        overlay_image=result.overlay_image,
    )


def _scored_model(dart: ScoredDart) -> ScoredDartModel:
    return ScoredDartModel(
        x=dart.image_point.x,
        y=dart.image_point.y,
        x_mm=dart.board_point.x,
        y_mm=dart.board_point.y,
        score=dart.score,
        ring=dart.ring.value,
        sector=dart.sector,
        multiplier=dart.multiplier,
        confidence=dart.confidence,
        frames_seen=dart.frames_seen,
    )


# === Health ===

@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=API_VERSION,
        calibrated=request.app.state.calibration.active is not None
    )


# === Calibration ===
# Frame and storage handlers are plain def; FastAPI runs them in its threadpool

@router.post("/v1/calibrate", response_model=CalibrationResponse)
def calibrate(
    body: CalibrateRequest,
    request: Request,
    api_key: str = Depends(verify_api_key)
):
    """
    Auto-calibrate from an image of the board.

    On success the new calibration becomes active immediately; darts
    already in flight finish against the previous one.
    """
    logger.info(f"[CALIBRATE] Auto calibration requested: image_len={len(body.image)}")
    frame = _decode_frame(body)
    result = request.app.state.calibration.calibrate_from_frame(
        frame,
        rotation_offset_rad=math.radians(body.rotation_offset_degrees),
        render=body.include_overlay,
    )
    if result.success:
        # Darts tracked against the old mapping are no longer comparable
        request.app.state.scoring.registry.reset()
    logger.info(f"[CALIBRATE] success={result.success}, confidence={result.confidence:.1f}")
    return _calibration_response(result)


@router.post("/v1/calibrate/manual", response_model=CalibrationResponse)
def calibrate_manual(
    body: ManualCalibrateRequest,
    request: Request,
    api_key: str = Depends(verify_api_key)
):
    """Calibrate from clicked board/image correspondences."""
    frame = _decode_frame(body.frame) if body.frame is not None else None
    try:
        result = request.app.state.calibration.calibrate_manual(
            board_points=[(p.x, p.y) for p in body.board_points],
            image_points=[(p.x, p.y) for p in body.image_points],
            frame=frame,
            refine=body.refine,
            rotation_offset_rad=math.radians(body.rotation_offset_degrees),
            render=frame is not None,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if result.success:
        request.app.state.scoring.registry.reset()
    return _calibration_response(result)


@router.get("/v1/calibration", response_model=CalibrationStatus)
async def get_calibration(request: Request, api_key: str = Depends(verify_api_key)):
    """Active calibration record."""
    manager = request.app.state.calibration
    session = manager.active
    if session is None:
        raise HTTPException(status_code=404, detail="Not calibrated")
    return CalibrationStatus(version=manager.version, calibration=CalibrationRecord(**session.to_record()))


@router.post("/v1/calibrations/{key}/save", response_model=SaveResponse)
def save_calibration(key: str, request: Request, api_key: str = Depends(verify_api_key)):
    """Persist the active calibration under key."""
    try:
        request.app.state.calibration.save(request.app.state.store, key)
    except LookupError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StorageError as e:
        logger.error(f"[STORE] {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return SaveResponse(key=key)


@router.post("/v1/calibrations/{key}/restore", response_model=CalibrationResponse)
def restore_calibration(key: str, request: Request, api_key: str = Depends(verify_api_key)):
    """Load a stored calibration and make it active."""
    try:
        session = request.app.state.calibration.restore(request.app.state.store, key)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (ValueError, GeometryError) as e:
        raise HTTPException(status_code=422, detail=f"Stored calibration unusable: {e}")
    except StorageError as e:
        logger.error(f"[STORE] {e}")
        raise HTTPException(status_code=502, detail=str(e))
    request.app.state.scoring.registry.reset()
    return _calibration_response(CalibrationResult.from_session(session, message=f"Restored '{key}'"))


# === Detection ===

@router.post("/v1/detect", response_model=DetectResponse)
def detect(
    body: DetectRequest,
    request: Request,
    api_key: str = Depends(verify_api_key)
):
    """
    Detect and score darts in one frame.

    Only darts that passed validation and stayed put for the configured
    number of frames are returned in `scored`, each exactly once.
    """
    start_time = time.time()
    request_id = str(uuid.uuid4())[:12]
    manager = request.app.state.calibration
    if manager.active is None:
        raise HTTPException(status_code=409, detail="Not calibrated")

    frame = _decode_frame(body)
    report = request.app.state.scoring.process_frame(frame)

    processing_ms = int((time.time() - start_time) * 1000)
    logger.debug(f"[PIPELINE] {request_id}: {report.message} ({processing_ms}ms)")

    return DetectResponse(
        request_id=request_id,
        processing_ms=processing_ms,
        calibration_version=manager.version,
        scored=[_scored_model(d) for d in report.scored],
        candidates=[
            DartCandidate(
                x=d.x,
                y=d.y,
                radius_px=d.radius_px,
                confidence=d.confidence,
                score=d.score,
                ring=d.ring.value if d.ring is not None else None,
                sector=d.sector,
            )
            for d in report.candidates
        ],
        rejections=report.rejections,
        frame_quality=report.frame_quality,
        low_quality=report.low_quality,
        refused=report.refused,
        recalibration_recommended=report.recalibration_recommended,
        message=report.message,
    )


# === Metrics ===

@router.get("/v1/metrics", response_model=MetricsResponse)
async def get_metrics(request: Request, api_key: str = Depends(verify_api_key)):
    scoring = request.app.state.scoring
    return MetricsResponse(
        **scoring.get_metrics().to_dict(),
        consecutive_fails=scoring.validator.consecutive_fails,
        recalibration_recommended=scoring.validator.recalibration_recommended,
    )


@router.get("/v1/metrics/report", response_model=ReportResponse)
async def get_report(request: Request, api_key: str = Depends(verify_api_key)):
    return ReportResponse(report=request.app.state.scoring.validator.get_report())


@router.post("/v1/metrics/reset")
async def reset_metrics(request: Request, api_key: str = Depends(verify_api_key)):
    """Start a new session: clear counters and tracked darts."""
    request.app.state.scoring.reset()
    logger.info("[VALIDATE] Metrics reset")
    return {"message": "Metrics reset"}
