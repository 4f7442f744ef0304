import numpy as np
import pytest

from conftest import (
    SequenceRuntime,
    StaticRuntime,
    RaisingRuntime,
    geometry_only_occlusion,
    jittered_embeddings,
    make_detection,
    uniform_frame,
    unit_vector,
)
from staffclock.enrollment.capture import (
    CaptureConfig,
    CaptureFlowState,
    CaptureQualityGate,
    EnrollmentCaptureSession,
    SignalLevel,
    build_capture_diagnostics,
    capture_enrollment_photo,
    descriptor_difference_percent,
    resolve_blur_threshold,
)
from staffclock.quality.occlusion import OcclusionResult


def _sharp(frame, box):
    return 3000.0


def build_gate(runtime, sharpness_fn=_sharp, **config) -> CaptureQualityGate:
    return CaptureQualityGate(
        runtime,
        config=CaptureConfig(**config),
        occlusion_fn=geometry_only_occlusion,
        sharpness_fn=sharpness_fn,
    )


def test_light_and_distance_levels():
    diag = build_capture_diagnostics(None, None)
    assert diag.light_level == SignalLevel.WARN
    assert diag.distance_level == SignalLevel.CRITICAL
    assert build_capture_diagnostics(30.0, 0.5).light_level == SignalLevel.CRITICAL
    assert build_capture_diagnostics(60.0, 0.5).light_level == SignalLevel.WARN
    assert build_capture_diagnostics(60.0, 0.5).distance_level == SignalLevel.WARN
    good = build_capture_diagnostics(120.0, 0.9)
    assert good.light_level == SignalLevel.GOOD
    assert good.distance_level == SignalLevel.GOOD


def test_blur_threshold_scales_with_light():
    assert resolve_blur_threshold(SignalLevel.GOOD) == pytest.approx(2200.0)
    assert resolve_blur_threshold(SignalLevel.WARN) == pytest.approx(1760.0)
    assert resolve_blur_threshold(SignalLevel.CRITICAL) == pytest.approx(1320.0)


def test_difference_percent_is_clamped():
    assert descriptor_difference_percent(0.2) == pytest.approx(20.0)
    assert descriptor_difference_percent(1.7) == 100.0
    assert descriptor_difference_percent(-1.0) == 0.0


def test_enrollment_photo_is_downscaled_jpeg():
    data = capture_enrollment_photo(uniform_frame(size=(480, 960)))
    assert data[:2] == b"\xff\xd8"


def test_session_prompts_and_progress():
    session = EnrollmentCaptureSession(target=4)
    assert session.current_prompt == "Face Forward"
    session.add(unit_vector(0), b"jpg")
    assert session.current_prompt == "Turn Left"
    assert session.progress_percent == 25
    np.testing.assert_allclose(session.anchor, unit_vector(0))
    session.reset()
    assert session.anchor is None


def test_twenty_jittered_samples_complete():
    runtime = SequenceRuntime(make_detection(e) for e in jittered_embeddings(20))
    gate = build_gate(runtime)
    frame = uniform_frame()
    states = [gate.tick(frame).state for _ in range(20)]
    assert states[:-1] == [CaptureFlowState.CAPTURED] * 19
    assert states[-1] == CaptureFlowState.COMPLETED
    assert gate.session.is_complete
    assert len(gate.session.photos) == 20


def test_low_jitter_stalls_on_diversity():
    runtime = SequenceRuntime(make_detection(e) for e in jittered_embeddings(20, jitter=0.05))
    gate = build_gate(runtime)
    frame = uniform_frame()
    for _ in range(20):
        gate.tick(frame)
    assert len(gate.session) == 1
    assert gate.state == CaptureFlowState.TOO_SIMILAR
    assert gate.last_min_diff_percent == pytest.approx(7.07, abs=0.05)


def test_identical_embeddings_never_both_accepted():
    vec = unit_vector(0)
    gate = build_gate(SequenceRuntime([make_detection(vec), make_detection(vec.copy())]))
    assert gate.tick(uniform_frame()).accepted
    second = gate.tick(uniform_frame())
    assert not second.accepted
    assert second.state == CaptureFlowState.TOO_SIMILAR
    assert second.min_diff_percent == 0.0


def test_anchor_ceiling_rejects_other_identity():
    first, _ = jittered_embeddings(2)
    stranger = unit_vector(10)
    gate = build_gate(SequenceRuntime([make_detection(first), make_detection(stranger)]))
    gate.tick(uniform_frame())
    transition = gate.tick(uniform_frame())
    assert transition.reason == "mixed_identity"
    assert transition.anchor_distance > 0.58
    assert len(gate.session) == 1


def test_accepted_samples_stay_within_anchor_ceiling():
    gate = build_gate(SequenceRuntime(make_detection(e) for e in jittered_embeddings(20)))
    for _ in range(20):
        transition = gate.tick(uniform_frame())
        if transition.anchor_distance is not None:
            assert transition.anchor_distance <= 0.58


def test_no_face_and_low_confidence():
    gate = build_gate(SequenceRuntime([None, make_detection(unit_vector(0), score=0.4)]))
    no_face = gate.tick(uniform_frame())
    assert no_face.reason == "no_face"
    assert no_face.state == CaptureFlowState.LOW_CONFIDENCE
    assert gate.diagnostics.distance_level == SignalLevel.CRITICAL
    low = gate.tick(uniform_frame())
    assert low.reason == "low_confidence"
    assert len(gate.session) == 0


def test_missing_frame_reports_camera():
    runtime = StaticRuntime(make_detection(unit_vector(0)))
    gate = build_gate(runtime)
    transition = gate.tick(None)
    assert transition.reason == "camera_not_ready"
    assert runtime.calls == 0


def test_detector_failure_is_reported_not_raised():
    gate = build_gate(RaisingRuntime(RuntimeError("model crashed")))
    transition = gate.tick(uniform_frame())
    assert transition.reason == "detect_failed"
    assert "model crashed" in gate.hint


def test_occlusion_rejection_uses_hint():
    def blocked(frame, box, landmarks, score):
        return OcclusionResult(blocked=True, reason="mouth", checks=["mouth"])

    gate = CaptureQualityGate(
        StaticRuntime(make_detection(unit_vector(0))),
        occlusion_fn=blocked,
        sharpness_fn=_sharp,
    )
    transition = gate.tick(uniform_frame())
    assert transition.reason == "occluded"
    assert "Lower face covered" in transition.hint


def test_blur_streak_extends_hint():
    gate = build_gate(StaticRuntime(make_detection(unit_vector(0))), sharpness_fn=lambda f, b: 100.0)
    hints = [gate.tick(uniform_frame()).hint for _ in range(3)]
    assert gate.state == CaptureFlowState.BLURRY
    assert "Clean the lens" not in hints[1]
    assert "Clean the lens" in hints[2]
    assert gate.blur_streak == 3


def test_rolling_average_damps_single_frame():
    scores = iter([1500.0, 3000.0])
    detections = [make_detection(e) for e in jittered_embeddings(2)]
    gate = build_gate(SequenceRuntime(detections), sharpness_fn=lambda f, b: next(scores))
    assert gate.tick(uniform_frame()).state == CaptureFlowState.BLURRY
    second = gate.tick(uniform_frame())
    assert second.accepted
    assert second.sharpness == pytest.approx(2250.0)
    assert gate.blur_streak == 0


def test_completed_session_tick_is_noop():
    runtime = SequenceRuntime(make_detection(e) for e in jittered_embeddings(3))
    gate = build_gate(runtime, target=2)
    gate.tick(uniform_frame())
    gate.tick(uniform_frame())
    transition = gate.tick(uniform_frame())
    assert transition.state == CaptureFlowState.COMPLETED
    assert not transition.accepted
    assert runtime.calls == 2


def test_reset_clears_session():
    gate = build_gate(SequenceRuntime(make_detection(e) for e in jittered_embeddings(2)))
    gate.tick(uniform_frame())
    gate.reset()
    assert len(gate.session) == 0
    assert gate.state == CaptureFlowState.SCANNING
