"""
Tests for calibration sessions and the calibration manager.
"""
import base64
import math

import cv2
import numpy as np
import pytest

from conftest import BACKGROUND, board_frame, make_session, to_frame
from dartvision.core.calibration import (
    CalibrationManager,
    CalibrationSession,
    decode_image,
    encode_image,
    frame_from_base64,
    ring_radii_from_homography,
)
from dartvision.core.geometry import (
    BoardPoint,
    SingularMatrixError,
    apply_homography,
    canonical_rim_targets,
    is_valid_homography,
)
from dartvision.core.storage import InMemoryCalibrationStore


def test_session_is_immutable(session):
    with pytest.raises(AttributeError):
        session.confidence = 10.0
    with pytest.raises(ValueError):
        session.homography[0, 0] = 5.0
    assert np.allclose(session.inverse @ session.homography, np.eye(3))


def test_session_rejects_singular_homography():
    with pytest.raises(SingularMatrixError):
        CalibrationSession(
            homography=np.zeros((3, 3)),
            source_points=[],
            dest_points=[],
            rms_error_px=0.0,
            confidence=100.0,
            ring_radii_px={},
        )


def test_record_round_trip():
    original = make_session(rotation_offset_rad=0.1)
    restored = CalibrationSession.from_record(original.to_record())
    assert np.allclose(restored.homography, original.homography)
    assert restored.rms_error_px == original.rms_error_px
    assert restored.rotation_offset_rad == 0.1
    assert restored.locked_at == original.locked_at
    assert restored.source_points == original.source_points


def test_from_record_rejects_malformed():
    with pytest.raises(ValueError):
        CalibrationSession.from_record({"homography": [1, 0, 0, 0, 1, 0, 0, 0, 1]})


def test_ring_radii_from_homography(true_homography):
    radii = ring_radii_from_homography(true_homography)
    assert radii["double_outer"] == pytest.approx(170.0)
    assert radii["bull_inner"] == pytest.approx(6.35)


def test_auto_calibration_activates_session(empty_board):
    manager = CalibrationManager(rng=0)
    assert manager.active is None
    result = manager.calibrate_from_frame(empty_board, render=True)

    assert result.success
    assert result.confidence >= 90
    assert result.error_px < 0.5
    assert result.locked_at is not None
    assert result.overlay_image
    assert manager.version == 1

    session = manager.active
    assert session.method == "auto"
    assert apply_homography(session.homography, (0, 0)) == pytest.approx((200, 200), abs=1.0)


def test_failed_auto_calibration_keeps_previous_session(empty_board):
    manager = CalibrationManager(rng=0)
    manager.calibrate_from_frame(empty_board)
    before = manager.active

    blank = to_frame(np.full((300, 300, 3), BACKGROUND, dtype=np.uint8))
    result = manager.calibrate_from_frame(blank)
    assert not result.success
    assert result.message
    assert result.homography is None
    assert manager.active is before


def test_recalibration_swaps_whole_session(empty_board):
    manager = CalibrationManager(rng=0)
    manager.calibrate_from_frame(empty_board)
    first = manager.active
    manager.calibrate_from_frame(board_frame(scale=0.8))
    second = manager.active
    assert second is not first
    assert manager.version == 2
    # The old snapshot is untouched
    assert apply_homography(first.homography, (0, -170)) == pytest.approx((200, 29.5), abs=2.0)


def test_manual_calibration_exact_four(true_homography):
    manager = CalibrationManager(rng=0)
    board = canonical_rim_targets()[:4]
    image = [apply_homography(true_homography, p) for p in board]
    result = manager.calibrate_manual(board, image, rotation_offset_rad=math.radians(3))

    assert result.success
    assert result.method == "manual"
    assert result.error_px < 1e-6
    assert result.confidence == pytest.approx(100.0)
    assert manager.active.rotation_offset_rad == pytest.approx(math.radians(3))
    assert np.allclose(manager.active.homography, true_homography, atol=1e-6)


def test_manual_calibration_ignores_misclick(true_homography):
    manager = CalibrationManager(rng=1)
    board = canonical_rim_targets() + [BoardPoint(60.0, 80.0), BoardPoint(-90.0, -40.0)]
    image = [apply_homography(true_homography, p) for p in board]
    image[2] = (image[2][0] + 35.0, image[2][1] - 20.0)

    result = manager.calibrate_manual(board, image)
    assert result.success
    assert result.inliers == [True, True, False, True, True, True, True]
    assert "1 point(s) ignored" in result.message
    assert result.confidence > 99


def test_manual_calibration_input_errors():
    manager = CalibrationManager()
    with pytest.raises(ValueError):
        manager.calibrate_manual([(0, 0)] * 3, [(0, 0)] * 3)
    with pytest.raises(ValueError):
        manager.calibrate_manual([(0, 0)] * 4, [(0, 0)] * 5)


def test_manual_calibration_degenerate_is_a_result():
    manager = CalibrationManager()
    result = manager.calibrate_manual([(0, 0), (1, 0), (2, 0), (3, 0)], [(0, 0), (2, 0), (4, 0), (6, 0)])
    assert not result.success
    assert manager.active is None


def test_manual_refine_snaps_to_edges(empty_board):
    manager = CalibrationManager(rng=0)
    board = [BoardPoint(0, -170), BoardPoint(170, 0), BoardPoint(0, 170), BoardPoint(-170, 0)]
    # Clicks a few pixels off the outer edge
    clicks = [(200, 25), (375, 200), (200, 375), (25, 200)]
    result = manager.calibrate_manual(board, clicks, frame=empty_board, refine=True, render=True)
    assert result.success
    assert result.overlay_image
    for p, target in zip(result.calibration_points, [(200, 29.5), (370.5, 200), (200, 370.5), (29.5, 200)]):
        assert math.hypot(p.x - target[0], p.y - target[1]) <= 6.5


def test_save_and_restore(empty_board):
    store = InMemoryCalibrationStore()
    manager = CalibrationManager(rng=0)
    with pytest.raises(LookupError):
        manager.save(store, "cam1")

    manager.calibrate_from_frame(empty_board)
    saved = manager.save(store, "cam1")
    assert store.get("cam1") == saved

    other = CalibrationManager()
    session = other.restore(store, "cam1")
    assert other.active is session
    assert np.allclose(session.homography, manager.active.homography)

    with pytest.raises(LookupError):
        other.restore(store, "missing")


def test_image_codec_round_trip():
    rgb = np.zeros((20, 30, 3), dtype=np.uint8)
    rgb[5:10, 5:10] = (255, 0, 0)
    encoded = encode_image(cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR))
    decoded = decode_image("data:image/png;base64," + encoded)
    assert decoded.shape == (20, 30, 3)

    frame = frame_from_base64(encoded)
    assert frame.shape == (20, 30)
    assert frame.pixels[7, 7].tolist() == [255, 0, 0, 255]


def test_frame_from_raw_rgba():
    raw = bytes([10, 20, 30, 255]) * 6
    frame = frame_from_base64(base64.b64encode(raw).decode(), width=3, height=2)
    assert frame.shape == (2, 3)
    with pytest.raises(ValueError):
        frame_from_base64(base64.b64encode(raw).decode(), width=3)
    with pytest.raises(ValueError):
        frame_from_base64(base64.b64encode(raw).decode(), width=4, height=2)


def test_decode_garbage():
    with pytest.raises(ValueError):
        decode_image(base64.b64encode(b"not an image").decode())


def test_overlay_draws_on_copy(empty_board, session):
    from dartvision.core.calibration import render_overlay
    bgr = empty_board.to_bgr()
    overlay = render_overlay(bgr, session)
    assert overlay.shape == bgr.shape
    assert not np.array_equal(overlay, bgr)
    assert is_valid_homography(session.homography)
