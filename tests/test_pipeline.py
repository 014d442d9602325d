"""
Tests for the per-frame scoring session and the background frame pipeline.
"""
import threading

import pytest

from conftest import board_frame, make_session
from dartvision.core.calibration import CalibrationManager
from dartvision.core.config import DartVisionConfig
from dartvision.core.pipeline import (
    ChannelClosed,
    FramePipeline,
    LatestFrameChannel,
    ScoringSession,
)
from dartvision.core.scoring import Ring


def _calibrated_manager(**kwargs):
    manager = CalibrationManager()
    manager.activate(make_session(**kwargs))
    return manager


def test_dart_scored_after_two_frames():
    scoring = ScoringSession(_calibrated_manager())
    frame = board_frame(darts=[(200, 97)])

    first = scoring.process_frame(frame, now=0.0)
    assert first.calibrated and not first.refused
    assert len(first.accepted) == 1
    assert first.scored == []

    second = scoring.process_frame(frame, now=0.1)
    assert len(second.scored) == 1
    dart = second.scored[0]
    assert (dart.score, dart.ring, dart.sector, dart.multiplier) == (60, Ring.TRIPLE, 20, 3)
    assert dart.board_point.y == pytest.approx(-103, abs=1.0)
    assert dart.image_point.x == pytest.approx(200, abs=1.0)
    assert dart.frames_seen == 2

    third = scoring.process_frame(frame, now=0.2)
    assert third.scored == []


def test_three_darts_each_reported_once():
    scoring = ScoringSession(_calibrated_manager())
    # T20, single 6, outer bull
    frame = board_frame(darts=[(200, 97), (330, 200), (200, 212)])
    scoring.process_frame(frame, now=0.0)
    report = scoring.process_frame(frame, now=0.1)
    assert sorted(d.score for d in report.scored) == [6, 25, 60]


def test_refuses_without_calibration():
    scoring = ScoringSession(CalibrationManager())
    report = scoring.process_frame(board_frame(darts=[(200, 97)]), now=0.0)
    assert not report.calibrated
    assert report.refused
    assert report.scored == [] and report.accepted == []
    assert len(report.candidates) == 1
    assert report.candidates[0].score is None
    assert len(report.rejections) == 1

    m = scoring.get_metrics()
    assert m.total_detections == 1 and m.rejected_count == 1 and m.calibration_issues == 1


def test_refuses_with_low_confidence_calibration():
    scoring = ScoringSession(_calibrated_manager(confidence=60.0))
    frame = board_frame(darts=[(200, 97)])
    for t in (0.0, 0.1, 0.2):
        report = scoring.process_frame(frame, now=t)
        assert report.refused
        assert report.scored == []
    assert report.recalibration_recommended
    assert "Low calibration confidence" in report.message


def test_off_board_dart_rejected():
    scoring = ScoringSession(_calibrated_manager())
    frame = board_frame(darts=[(385, 385)])  # ~262mm from the bull
    report = scoring.process_frame(frame, now=0.0)
    assert report.accepted == []
    assert report.rejections and "off board" in report.rejections[0]
    assert scoring.get_metrics().boundary_issues == 1


def test_empty_board_is_low_quality():
    scoring = ScoringSession(_calibrated_manager())
    report = scoring.process_frame(board_frame(), now=0.0)
    assert report.low_quality
    assert report.candidates == []
    assert scoring.get_metrics().total_detections == 0


def test_recalibration_between_frames_uses_new_session():
    manager = _calibrated_manager()
    scoring = ScoringSession(manager)
    frame = board_frame(darts=[(200, 97)])
    scoring.process_frame(frame, now=0.0)
    manager.activate(make_session(confidence=10.0))
    report = scoring.process_frame(frame, now=0.1)
    assert report.refused


def test_reset_clears_session_state():
    scoring = ScoringSession(_calibrated_manager())
    frame = board_frame(darts=[(200, 97)])
    scoring.process_frame(frame, now=0.0)
    scoring.reset()
    assert scoring.get_metrics().total_detections == 0
    assert scoring.process_frame(frame, now=0.1).scored == []


def test_sessions_do_not_share_state():
    manager = _calibrated_manager()
    a = ScoringSession(manager)
    b = ScoringSession(manager, DartVisionConfig())
    frame = board_frame(darts=[(200, 97)])
    a.process_frame(frame, now=0.0)
    assert b.get_metrics().total_detections == 0
    assert len(b.registry) == 0


def test_channel_latest_wins():
    channel = LatestFrameChannel()
    f1, f2, f3 = board_frame(), board_frame(), board_frame()
    assert channel.put(f1) is False
    assert channel.put(f2) is True
    assert channel.put(f3) is True
    assert channel.dropped == 2
    assert channel.get(timeout=0) is f3
    assert channel.get(timeout=0.01) is None


def test_channel_close():
    channel = LatestFrameChannel()
    channel.put(board_frame())
    channel.close()
    assert channel.get(timeout=0) is not None
    with pytest.raises(ChannelClosed):
        channel.get(timeout=0)
    with pytest.raises(ChannelClosed):
        channel.put(board_frame())


def test_frame_pipeline_processes_in_background():
    scoring = ScoringSession(_calibrated_manager())
    reports = []
    done = threading.Event()

    def on_report(report):
        reports.append(report)
        if report.scored:
            done.set()

    pipeline = FramePipeline(scoring, on_report=on_report)
    pipeline.start()
    try:
        frame = board_frame(darts=[(200, 97)])
        for _ in range(20):
            pipeline.submit(frame)
            if done.wait(timeout=0.25):
                break
    finally:
        pipeline.stop()

    assert done.is_set()
    assert not pipeline.running
    status = pipeline.get_status()
    assert status["processed"] == len(reports)
    assert status["processed"] >= 2
    assert sum(len(r.scored) for r in reports) == 1


def test_frame_pipeline_survives_processing_errors():
    class Exploding:
        calibration = CalibrationManager()

        def process_frame(self, frame):
            raise RuntimeError("boom")

    pipeline = FramePipeline(Exploding())
    pipeline.start()
    pipeline.submit(board_frame())
    pipeline.stop()
    assert pipeline.processed == 0
