"""
DartVision API - Dartboard calibration and dart scoring service

Accepts camera frames, keeps the locked board calibration and returns
validated, stable dart scores.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dartvision.api.routes import router, API_VERSION
from dartvision.core.calibration import CalibrationManager
from dartvision.core.config import DartVisionConfig, load_config
from dartvision.core.pipeline import ScoringSession
from dartvision.core.storage import HttpCalibrationStore, InMemoryCalibrationStore

logger = logging.getLogger(__name__)

# Configuration
API_TITLE = "DartVision API"
API_DESCRIPTION = """
Dartboard calibration and dart scoring.

## Flow
1. `POST /v1/calibrate` with an image of the empty board (or
   `POST /v1/calibrate/manual` with clicked points). The calibration is
   locked and used for every following frame.
2. `POST /v1/detect` for each camera frame. Darts are reported once they
   pass validation and stay put for consecutive frames.
3. `GET /v1/metrics` / `GET /v1/metrics/report` for accuracy counters.

## Endpoints

### Calibration
- `POST /v1/calibrate` - Auto-calibrate from a board image
- `POST /v1/calibrate/manual` - Calibrate from correspondences
- `GET /v1/calibration` - Active calibration record
- `POST /v1/calibrations/{key}/save` - Persist active calibration
- `POST /v1/calibrations/{key}/restore` - Load a stored calibration

### Detection
- `POST /v1/detect` - Detect and score darts in a frame

### Health
- `GET /health` - Service health check
"""


def create_app(config: Optional[DartVisionConfig] = None) -> FastAPI:
    """Build an application with its own calibration, session and store."""
    config = config or load_config()

    logging.basicConfig(
        level=getattr(logging, config.service.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info(f"DartVision API starting (auth={'on' if config.service.require_auth else 'off'})")
        yield
        logger.info("DartVision API shutting down")

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.state.config = config
    app.state.calibration = CalibrationManager(config.board, config.ransac)
    app.state.scoring = ScoringSession(app.state.calibration, config)
    if config.service.storage_url:
        app.state.store = HttpCalibrationStore(config.service.storage_url, timeout=config.service.storage_timeout_s)
        logger.info(f"[STORE] Calibrations stored at {config.service.storage_url}")
    else:
        app.state.store = InMemoryCalibrationStore()

    # CORS - allow all for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/")
    async def root():
        """API info and links."""
        return {
            "name": API_TITLE,
            "version": API_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()
