"""
API tests through FastAPI's TestClient.
"""
import base64
import threading

import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

from conftest import draw_board, draw_darts
from dartvision.core.calibration import encode_image
from dartvision.core.config import DartVisionConfig
from dartvision.core.geometry import canonical_rim_targets
from dartvision.main import create_app


def _png(rgb):
    return encode_image(cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR))


BOARD_PNG = _png(draw_board())
DART_PNG = _png(draw_darts(draw_board(), [(200, 97)]))


@pytest.fixture
def client():
    with TestClient(create_app(DartVisionConfig())) as c:
        yield c


@pytest.fixture
def calibrated(client):
    response = client.post("/v1/calibrate", json={"image": BOARD_PNG})
    assert response.status_code == 200
    assert response.json()["success"]
    return client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["calibrated"] is False


def test_calibrate(client):
    response = client.post("/v1/calibrate", json={"image": BOARD_PNG})
    data = response.json()
    assert data["success"]
    assert data["confidence"] >= 90
    assert len(data["homography"]) == 9
    assert data["center"]["x"] == pytest.approx(200, abs=1.0)
    assert data["overlay_image"]
    assert client.get("/health").json()["calibrated"] is True


def test_calibrate_raw_rgba(client):
    rgb = draw_board()
    rgba = cv2.cvtColor(rgb, cv2.COLOR_RGB2RGBA)
    payload = {
        "image": base64.b64encode(rgba.tobytes()).decode(),
        "width": 400,
        "height": 400,
        "include_overlay": False,
    }
    data = client.post("/v1/calibrate", json=payload).json()
    assert data["success"]
    assert data["overlay_image"] is None


def test_calibrate_bad_image(client):
    response = client.post("/v1/calibrate", json={"image": base64.b64encode(b"nope").decode()})
    assert response.status_code == 400


def test_calibrate_no_board(client):
    blank = _png(np.full((400, 400, 3), 90, dtype=np.uint8))
    data = client.post("/v1/calibrate", json={"image": blank}).json()
    assert data["success"] is False
    assert data["message"]
    assert client.get("/v1/calibration").status_code == 404


def test_manual_calibration(client):
    board = canonical_rim_targets()
    image = [{"x": 200 + p.x, "y": 200 + p.y} for p in board]
    response = client.post("/v1/calibrate/manual", json={
        "board_points": [{"x": p.x, "y": p.y} for p in board],
        "image_points": image,
    })
    data = response.json()
    assert data["success"]
    assert data["method"] == "manual"
    assert data["error_px"] < 1e-6


def test_manual_calibration_too_few_points(client):
    response = client.post("/v1/calibrate/manual", json={
        "board_points": [{"x": 0, "y": 0}] * 3,
        "image_points": [{"x": 0, "y": 0}] * 3,
    })
    assert response.status_code == 400


def test_get_calibration(calibrated):
    data = calibrated.get("/v1/calibration").json()
    assert data["version"] == 1
    assert len(data["calibration"]["homography"]) == 9
    assert data["calibration"]["method"] == "auto"


def test_detect_requires_calibration(client):
    response = client.post("/v1/detect", json={"image": DART_PNG})
    assert response.status_code == 409


def test_detect_scores_stable_dart(calibrated):
    first = calibrated.post("/v1/detect", json={"image": DART_PNG}).json()
    assert first["scored"] == []
    assert len(first["candidates"]) == 1

    second = calibrated.post("/v1/detect", json={"image": DART_PNG}).json()
    assert len(second["scored"]) == 1
    dart = second["scored"][0]
    assert dart["score"] == 60
    assert dart["ring"] == "TRIPLE"
    assert dart["sector"] == 20
    assert dart["multiplier"] == 3

    metrics = calibrated.get("/v1/metrics").json()
    assert metrics["total_detections"] == 2
    assert metrics["accepted_count"] == 2
    assert metrics["success_rate"] == 1.0

    report = calibrated.get("/v1/metrics/report").json()["report"]
    assert "Total Detections (attempts): 2" in report

    assert calibrated.post("/v1/metrics/reset").status_code == 200
    assert calibrated.get("/v1/metrics").json()["total_detections"] == 0


def test_save_restore(calibrated):
    assert calibrated.post("/v1/calibrations/cam1/save").json() == {"key": "cam1", "saved": True}
    restored = calibrated.post("/v1/calibrations/cam1/restore").json()
    assert restored["success"]
    assert "Restored" in restored["message"]
    assert calibrated.post("/v1/calibrations/nope/restore").status_code == 404


def test_save_without_calibration(client):
    assert client.post("/v1/calibrations/cam1/save").status_code == 409


def test_auth_required():
    config = DartVisionConfig()
    config.service.require_auth = True
    config.service.api_keys = ["secret"]
    with TestClient(create_app(config)) as c:
        assert c.get("/v1/metrics").status_code == 401
        assert c.get("/v1/metrics", headers={"Authorization": "Token secret"}).status_code == 401
        assert c.get("/v1/metrics", headers={"Authorization": "Bearer wrong"}).status_code == 401
        assert c.get("/v1/metrics", headers={"Authorization": "Bearer secret"}).status_code == 200
        assert c.get("/health").status_code == 200


def test_apps_are_independent():
    a = TestClient(create_app(DartVisionConfig()))
    b = TestClient(create_app(DartVisionConfig()))
    a.post("/v1/calibrate", json={"image": BOARD_PNG})
    assert a.get("/health").json()["calibrated"] is True
    assert b.get("/health").json()["calibrated"] is False


def test_slow_frame_does_not_block_health(calibrated):
    scoring = calibrated.app.state.scoring
    process_frame = scoring.process_frame
    started, release = threading.Event(), threading.Event()
    waited_out = []

    def slow_process_frame(frame, now=None):
        started.set()
        if not release.wait(timeout=5):
            waited_out.append(True)
        return process_frame(frame, now=now)

    scoring.process_frame = slow_process_frame
    responses = []
    worker = threading.Thread(
        target=lambda: responses.append(calibrated.post("/v1/detect", json={"image": DART_PNG}))
    )
    worker.start()
    try:
        assert started.wait(timeout=5)
        assert calibrated.get("/health").status_code == 200
        assert calibrated.get("/v1/metrics").status_code == 200
    finally:
        release.set()
        worker.join(timeout=10)

    assert waited_out == []
    assert responses[0].status_code == 200
