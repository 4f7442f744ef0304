"""Watermarked evidence snapshots encoded under a byte budget."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np
from PIL import Image, ImageDraw, ImageFont

from staffclock.config import EVIDENCE_MIN_WIDTH, EvidencePolicy, clamp_evidence_policy
from staffclock.errors import EvidenceCaptureError

LOGGER = logging.getLogger("staffclock.attendance.evidence")

MIN_CANVAS_SIZE = (160, 120)
MAX_WIDTH_ATTEMPTS = 4
WIDTH_SHRINK = 0.85
QUALITY_STEP = 0.1
LABEL_PADDING = 8
LABEL_MARGIN = 8
LABEL_FILL = (15, 23, 42, 184)
LABEL_TEXT = (248, 250, 252, 245)


@dataclass
class EvidenceMeta:
    client_ts: str
    office_name: str
    device_id: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    accuracy_m: Optional[float] = None


@dataclass
class EvidenceResult:
    data: bytes
    bytes: int
    quality: float
    width: int
    height: int
    attempts: int

    @property
    def content_type(self) -> str:
        return "image/jpeg"


def build_watermark_lines(meta: EvidenceMeta) -> List[str]:
    if meta.lat is not None and meta.lng is not None:
        gps = f"GPS {meta.lat:.5f},{meta.lng:.5f} +/-{round(meta.accuracy_m or 0)}m"
    else:
        gps = "GPS unavailable"
    return [
        f"TS {meta.client_ts}",
        gps,
        f"Office {meta.office_name}",
        f"Device {meta.device_id}",
    ]


def _render_canvas(frame: np.ndarray, max_width: int) -> Image.Image:
    height, width = frame.shape[:2]
    scale = min(1.0, max_width / float(width)) if max_width > 0 else 1.0
    target = (
        max(MIN_CANVAS_SIZE[0], int(round(width * scale))),
        max(MIN_CANVAS_SIZE[1], int(round(height * scale))),
    )
    rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB) if frame.ndim == 3 else cv2.cvtColor(frame, cv2.COLOR_GRAY2RGB)
    return Image.fromarray(rgb).resize(target, Image.LANCZOS)


def _draw_watermark(canvas: Image.Image, lines: List[str]) -> Image.Image:
    font_px = max(10, int(round(canvas.width / 52)))
    line_height = int(round(font_px * 1.3))
    font = ImageFont.load_default(size=font_px)

    overlay = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    text_width = max(draw.textlength(line, font=font) for line in lines)
    box_w = int(np.ceil(text_width + LABEL_PADDING * 2))
    box_h = int(np.ceil(len(lines) * line_height + LABEL_PADDING * 2))
    x = max(LABEL_MARGIN, canvas.width - box_w - LABEL_MARGIN)
    y = LABEL_MARGIN
    draw.rectangle([x, y, x + box_w, y + box_h], fill=LABEL_FILL)
    for index, line in enumerate(lines):
        draw.text((x + LABEL_PADDING, y + LABEL_PADDING + line_height * index), line, font=font, fill=LABEL_TEXT)
    return Image.alpha_composite(canvas.convert("RGBA"), overlay).convert("RGB")


def _encode(image: Image.Image, quality: float) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=int(round(quality * 100)), optimize=True)
    return buffer.getvalue()


def _encode_with_budget(image: Image.Image, policy: EvidencePolicy) -> Tuple[bytes, float]:
    quality = policy.jpeg_quality
    floor = policy.min_jpeg_quality
    data = _encode(image, quality)
    while len(data) > policy.max_bytes and quality > floor:
        quality = max(floor, round(quality - QUALITY_STEP, 2))
        data = _encode(image, quality)
    return data, quality


def capture_evidence(
    frame: Optional[np.ndarray],
    meta: EvidenceMeta,
    policy: Optional[EvidencePolicy] = None,
) -> EvidenceResult:
    """Render the watermarked snapshot, shrinking quality then width until it fits ``max_bytes``.

    The smallest encoding produced is returned even if it never fits.
    """
    if frame is None or frame.size == 0 or frame.ndim not in (2, 3):
        raise EvidenceCaptureError("Camera frame is not ready for evidence capture")
    policy = clamp_evidence_policy(policy or EvidencePolicy())
    lines = build_watermark_lines(meta)

    best: Optional[EvidenceResult] = None
    width_target = policy.max_width
    for attempt in range(1, MAX_WIDTH_ATTEMPTS + 1):
        try:
            canvas = _draw_watermark(_render_canvas(frame, width_target), lines)
            data, quality = _encode_with_budget(canvas, policy)
        except (OSError, ValueError, cv2.error) as exc:
            raise EvidenceCaptureError(f"Failed to encode evidence image: {exc}") from exc
        if best is None or len(data) < best.bytes:
            best = EvidenceResult(
                data=data,
                bytes=len(data),
                quality=quality,
                width=canvas.width,
                height=canvas.height,
                attempts=attempt,
            )
        else:
            best.attempts = attempt
        if len(data) <= policy.max_bytes or width_target <= EVIDENCE_MIN_WIDTH:
            break
        width_target = max(EVIDENCE_MIN_WIDTH, int(round(width_target * WIDTH_SHRINK)))

    assert best is not None
    LOGGER.debug(
        "Evidence encoded bytes=%d quality=%.2f size=%dx%d attempts=%d",
        best.bytes,
        best.quality,
        best.width,
        best.height,
        best.attempts,
    )
    return best
