"""
Configuration for the vision core and the host service.

Defaults match the tuned values used in production. A TOML file can override
any of them:

    [detector]
    hue_min = 340.0
    max_darts = 3

    [validator]
    min_detection_confidence = 0.75

Service settings also honour the same environment variables the DartGame
stack already uses (REQUIRE_AUTH, API_KEYS, DARTGAME_API_URL, LOG_LEVEL).
"""
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import toml

CONFIG_ENV_VAR = "DARTVISION_CONFIG"


@dataclass
class DartDetectorConfig:
    """Colour filter and blob limits for dart-tip detection."""
    # Hue window in degrees; hue_min > hue_max wraps through 0 (red)
    hue_min: float = 340.0
    hue_max: float = 20.0
    sat_min: float = 0.5
    val_min: float = 0.35
    max_darts: int = 3
    min_blob_area: int = 60
    # Blob area (px) that earns a full size score
    expected_blob_area: float = 500.0
    min_radius_px: float = 3.0
    max_radius_px: float = 40.0
    min_shape_confidence: float = 0.55
    # Fraction of the frame expected to match the colour filter
    expected_density: float = 0.001
    # Below this the frame is reported as unusable rather than "no darts"
    min_frame_quality: float = 0.02
    hill_climb_steps: int = 10


@dataclass
class BoardDetectorConfig:
    """Edge/ring search parameters for board auto-detection."""
    # Sobel magnitude below this is discarded from the edge map
    edge_threshold: float = 60.0
    # Width of the downsampled map used for the coarse centre search
    coarse_width: int = 160
    # Centre candidates are restricted to this central fraction of the frame
    center_search_fraction: float = 0.4
    # Outer double radius guesses, as fractions of min(width, height)
    min_radius_fraction: float = 0.1
    max_radius_fraction: float = 0.5
    # Radius refinement window around the coarse estimate
    refine_radius_fraction: float = 0.15
    refine_radius_step_px: float = 0.5
    angle_samples: int = 180
    # Ring evidence (0-1) below this means "no board"
    min_ring_evidence: float = 0.4
    # Weight of ring evidence vs reprojection error in the final confidence
    ring_evidence_weight: float = 0.4
    # Results below this confidence are reported as "no board"
    min_confidence: float = 50.0
    # Mean relative deviation of measured ring ratios tolerated before discounting
    ratio_tolerance: float = 0.02
    # Confidence points lost per unit of deviation beyond the tolerance
    ratio_penalty: float = 400.0


@dataclass
class RansacConfig:
    threshold_px: float = 8.0
    max_iterations: int = 200
    min_inliers: int = 4
    refit: bool = True


@dataclass
class ValidatorConfig:
    """Acceptance gate and stability registry settings."""
    min_calibration_confidence: float = 90.0
    max_calibration_error: float = 5.0
    min_detection_confidence: float = 0.70
    strict_board_boundary_check: bool = True
    track_metrics: bool = True
    # Frames a dart must be seen in before it is reported
    stable_frames: int = 2
    # Max image distance (px) between observations of the same dart
    match_tolerance_px: float = 10.0
    # Registry entries with no re-match for this long are purged
    inactivity_seconds: float = 1.0
    registry_capacity: int = 16
    # Board-coordinate grid (mm) used to key registry entries
    registry_key_mm: float = 2.0
    max_consecutive_fails: int = 3


@dataclass
class ServiceConfig:
    require_auth: bool = False
    api_keys: List[str] = field(default_factory=list)
    storage_url: Optional[str] = None
    storage_timeout_s: float = 10.0
    log_level: str = "INFO"


@dataclass
class DartVisionConfig:
    detector: DartDetectorConfig = field(default_factory=DartDetectorConfig)
    board: BoardDetectorConfig = field(default_factory=BoardDetectorConfig)
    ransac: RansacConfig = field(default_factory=RansacConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)


_SECTIONS = {
    "detector": DartDetectorConfig,
    "board": BoardDetectorConfig,
    "ransac": RansacConfig,
    "validator": ValidatorConfig,
    "service": ServiceConfig,
}


def _build_section(cls, values: Dict[str, Any], section: str):
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown key(s) in [{section}]: {', '.join(sorted(unknown))}")
    return cls(**values)


def config_from_dict(data: Dict[str, Any]) -> DartVisionConfig:
    """Build a config from a parsed TOML/JSON mapping."""
    unknown = set(data) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown config section(s): {', '.join(sorted(unknown))}")
    kwargs = {
        name: _build_section(cls, data.get(name, {}), name)
        for name, cls in _SECTIONS.items()
    }
    return DartVisionConfig(**kwargs)


def apply_env_overrides(config: DartVisionConfig, environ: Optional[Dict[str, str]] = None) -> DartVisionConfig:
    """Service settings from the environment win over the file."""
    env = os.environ if environ is None else environ
    service = config.service

    if "REQUIRE_AUTH" in env:
        service.require_auth = env["REQUIRE_AUTH"].lower() == "true"
    if env.get("API_KEYS"):
        service.api_keys = [k.strip() for k in env["API_KEYS"].split(",") if k.strip()]
    if env.get("DARTGAME_API_URL"):
        service.storage_url = env["DARTGAME_API_URL"]
    if env.get("LOG_LEVEL"):
        service.log_level = env["LOG_LEVEL"].upper()
    return config


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> DartVisionConfig:
    """
    Load configuration.

    Args:
        path: TOML file; defaults to $DARTVISION_CONFIG, or built-in defaults
        environ: environment mapping (defaults to os.environ)
    """
    env = os.environ if environ is None else environ
    path = path or env.get(CONFIG_ENV_VAR)
    data = toml.load(path) if path else {}
    return apply_env_overrides(config_from_dict(data), env)
