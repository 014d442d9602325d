"""
Pydantic schemas for API request/response models
"""
from pydantic import BaseModel, Field
from typing import List, Optional, Dict
from datetime import datetime


# === Shared ===

class Point(BaseModel):
    x: float
    y: float


class FrameImage(BaseModel):
    """One camera frame"""
    image: str = Field(..., description="Base64 PNG/JPEG, or raw RGBA bytes when width/height are given")
    width: Optional[int] = Field(None, description="Raw RGBA frame width in px")
    height: Optional[int] = Field(None, description="Raw RGBA frame height in px")


# === Calibration ===

class CalibrateRequest(FrameImage):
    """Auto-calibrate from an image of the empty board"""
    rotation_offset_degrees: float = Field(0.0, description="Board rotation offset (20 segment angle)")
    include_overlay: bool = Field(True, description="Return the image with calibrated rings drawn on it")


class ManualCalibrateRequest(BaseModel):
    """Calibrate from clicked correspondences"""
    board_points: List[Point] = Field(..., description="Board coordinates in mm, +y down")
    image_points: List[Point] = Field(..., description="Matching image coordinates in px")
    frame: Optional[FrameImage] = Field(None, description="Frame for edge refinement and overlay")
    refine: bool = Field(False, description="Snap clicked points to the nearest strong edge")
    rotation_offset_degrees: float = 0.0


class CalibrationResponse(BaseModel):
    """Result of a calibration attempt"""
    success: bool
    confidence: float = Field(0.0, description="Calibration confidence 0-100")
    error_px: Optional[float] = Field(None, description="RMS reprojection error in px")
    homography: Optional[List[float]] = Field(None, description="Row-major 3x3 board mm -> image px")
    ring_radii_px: Optional[Dict[str, float]] = None
    center: Optional[Point] = None
    calibration_points: List[Point] = Field(default_factory=list)
    inliers: List[bool] = Field(default_factory=list)
    locked_at: Optional[datetime] = None
    method: str = "auto"
    message: str = ""
    overlay_image: Optional[str] = Field(None, description="Base64 PNG with scoring zones overlay")


class CalibrationRecord(BaseModel):
    """Persisted calibration session"""
    homography: List[float]
    source_points: List[List[float]]
    dest_points: List[List[float]]
    rms_error_px: float
    confidence: float
    ring_radii_px: Dict[str, float]
    locked_at: datetime
    rotation_offset_rad: float = 0.0
    method: str = "auto"


class CalibrationStatus(BaseModel):
    version: int
    calibration: CalibrationRecord


class SaveResponse(BaseModel):
    key: str
    saved: bool = True


# === Detection ===

class DetectRequest(FrameImage):
    """Score one frame against the active calibration"""
    pass


class DartCandidate(BaseModel):
    """Raw detection, before validation"""
    x: float
    y: float
    radius_px: float
    confidence: float = Field(..., description="Detection confidence 0-1")
    score: Optional[int] = None
    ring: Optional[str] = None
    sector: Optional[int] = None


class ScoredDartModel(BaseModel):
    """A dart accepted and stable across frames"""
    x: float
    y: float
    x_mm: float = Field(..., description="X position in mm from center")
    y_mm: float = Field(..., description="Y position in mm from center")
    score: int = Field(..., description="Points (sector * multiplier, or 25/50)")
    ring: str
    sector: Optional[int] = Field(None, description="1-20, 25 for bull, null for a miss")
    multiplier: int = Field(..., description="0=miss, 1=single, 2=double, 3=triple")
    confidence: float
    frames_seen: int


class DetectResponse(BaseModel):
    request_id: str
    processing_ms: int
    calibration_version: int
    scored: List[ScoredDartModel] = Field(default_factory=list)
    candidates: List[DartCandidate] = Field(default_factory=list)
    rejections: List[str] = Field(default_factory=list)
    frame_quality: float
    low_quality: bool = False
    refused: bool = False
    recalibration_recommended: bool = False
    message: str = ""


# === Metrics ===

class MetricsResponse(BaseModel):
    total_detections: int
    accepted_count: int
    rejected_count: int
    calibration_issues: int
    detection_issues: int
    boundary_issues: int
    average_confidence: float
    success_rate: float
    consecutive_fails: int
    recalibration_recommended: bool


class ReportResponse(BaseModel):
    report: str


class HealthResponse(BaseModel):
    status: str
    version: str
    calibrated: bool
