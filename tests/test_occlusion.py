import numpy as np
import pytest

from conftest import FACE_BOX, make_landmarks
from staffclock.quality.occlusion import (
    evaluate_eye_occlusion,
    evaluate_lower_face_occlusion,
    occlusion_check,
    occlusion_hint,
    polygon_area,
)


def test_polygon_area_of_unit_square():
    square = np.array([[0, 0], [1, 0], [1, 1], [0, 1]], dtype=np.float32)
    assert polygon_area(square) == pytest.approx(1.0)
    assert polygon_area(square[:2]) == 0.0


def test_frontal_geometry_is_not_blocked(landmarks):
    result = occlusion_check(None, FACE_BOX, landmarks)
    assert not result.blocked
    assert result.checks == []


def test_missing_landmarks_block():
    result = occlusion_check(None, FACE_BOX, make_landmarks()[:30])
    assert result.blocked
    assert result.reason == "insufficient_landmarks"


def test_collapsed_mouth_blocks(landmarks):
    points = landmarks.copy()
    center = points[48:60].mean(axis=0)
    points[48:60] = center + (points[48:60] - center) * 0.1
    result = occlusion_check(None, FACE_BOX, points)
    assert result.blocked
    assert "mouth" in result.reason
    assert "mask" in occlusion_hint(result.reason).lower()


def test_single_collapsed_eye_blocks(landmarks):
    points = landmarks.copy()
    center = points[36:42].mean(axis=0)
    points[36:42] = center + (points[36:42] - center) * 0.2
    result = occlusion_check(None, FACE_BOX, points)
    assert result.blocked
    assert "eyes" in result.checks


def test_textured_frame_passes_image_checks(noise_frame, landmarks):
    assert not evaluate_eye_occlusion(noise_frame, landmarks).blocked
    assert evaluate_lower_face_occlusion(noise_frame, FACE_BOX) is None
    assert not occlusion_check(noise_frame, FACE_BOX, landmarks).blocked


def test_flat_patch_over_one_eye_is_occlusion(noise_frame, landmarks):
    frame = noise_frame.copy()
    x1, y1, x2, y2 = FACE_BOX
    width, height = x2 - x1, y2 - y1
    frame[int(y1 + 0.25 * height) : int(y1 + 0.5 * height), int(x1 + 0.05 * width) : int(x1 + 0.5 * width)] = 128
    result = occlusion_check(frame, FACE_BOX, landmarks)
    assert result.blocked
    assert result.reason.startswith("eye_occlusion(")
    assert "Eyes covered" in occlusion_hint(result.reason)


def test_lower_face_mask_detected(landmarks):
    frame = np.zeros((240, 240, 3), dtype=np.uint8)
    frame[:, :] = (120, 150, 200)  # skin tone everywhere
    x1, y1, x2, y2 = (int(v) for v in FACE_BOX)
    frame[y1 + 90 : y2, x1:x2] = (200, 200, 200)  # light-gray mask over nose and mouth
    reason = evaluate_lower_face_occlusion(frame, FACE_BOX)
    assert reason is not None and reason.startswith("mask(")


def test_small_faces_skip_skin_check():
    frame = np.zeros((100, 100, 3), dtype=np.uint8)
    assert evaluate_lower_face_occlusion(frame, (10.0, 10.0, 40.0, 40.0)) is None


def test_hint_defaults():
    assert occlusion_hint(None) == "Keep your whole face visible."
    assert "landmarks" in occlusion_hint("insufficient_landmarks")
