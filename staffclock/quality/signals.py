"""Frame signal primitives: brightness, Laplacian sharpness, skin and texture statistics."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from staffclock.types import BBox

LOGGER = logging.getLogger("staffclock.quality.signals")

BRIGHTNESS_SAMPLE_WIDTH = 64
# ITU-R BT.709 luma weights (R, G, B)
BT709_WEIGHTS = np.array([0.2126, 0.7152, 0.0722], dtype=np.float64)
# 8-neighbour Laplacian: neighbours - 8 * center
LAPLACIAN_KERNEL = np.array([[1, 1, 1], [1, -8, 1], [1, 1, 1]], dtype=np.float64)
SHARPNESS_ROI_MARGIN = 0.225

SKIN_MIN_LUMA = 35
SKIN_CB_RANGE = (77, 127)
SKIN_CR_RANGE = (133, 173)


@dataclass(frozen=True)
class Region:
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height


def _frame_size(frame: Optional[np.ndarray]) -> tuple:
    if frame is None or frame.ndim < 2 or frame.size == 0:
        return 0, 0
    return int(frame.shape[1]), int(frame.shape[0])


def _to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image.astype(np.float64)
    if image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY).astype(np.float64)


def estimate_brightness(frame: Optional[np.ndarray]) -> Optional[float]:
    """Mean BT.709 luma of the frame downsampled to 64px width."""
    width, height = _frame_size(frame)
    if not width or not height:
        return None
    sample_height = max(1, int(round(height / width * BRIGHTNESS_SAMPLE_WIDTH)))
    small = cv2.resize(frame, (BRIGHTNESS_SAMPLE_WIDTH, sample_height), interpolation=cv2.INTER_AREA)
    if small.ndim == 2:
        return float(small.mean())
    bgr = small[:, :, :3].astype(np.float64)
    luma = bgr[:, :, 2] * BT709_WEIGHTS[0] + bgr[:, :, 1] * BT709_WEIGHTS[1] + bgr[:, :, 0] * BT709_WEIGHTS[2]
    return float(luma.mean())


def sharpness(region: np.ndarray, denoise: bool = True) -> float:
    """Variance of the Laplacian over the centred 55% ROI. Higher is sharper.

    The region is converted to grayscale and, when ``denoise`` is set, passed
    through a 3x3 box blur so sensor noise spikes do not read as detail.
    The raw variance is returned without normalisation.
    """
    if region is None or region.ndim < 2:
        return 0.0
    height, width = region.shape[:2]
    if width < 3 or height < 3:
        return 0.0
    gray = _to_gray(region)
    if denoise:
        gray = cv2.blur(gray, (3, 3), borderType=cv2.BORDER_REPLICATE)
    response = cv2.filter2D(gray, cv2.CV_64F, LAPLACIAN_KERNEL, borderType=cv2.BORDER_REPLICATE)

    x0 = max(1, int(np.floor(width * SHARPNESS_ROI_MARGIN)))
    x1 = min(width - 1, int(np.ceil(width * (1.0 - SHARPNESS_ROI_MARGIN))))
    y0 = max(1, int(np.floor(height * SHARPNESS_ROI_MARGIN)))
    y1 = min(height - 1, int(np.ceil(height * (1.0 - SHARPNESS_ROI_MARGIN))))
    roi = response[y0:y1, x0:x1]
    if roi.size == 0:
        return 0.0
    return float(max(0.0, roi.var()))


def crop_face(
    frame: np.ndarray,
    box: BBox,
    padding_ratio: float = 0.14,
    max_edge: int = 160,
) -> Optional[np.ndarray]:
    """Padded face crop, downscaled so its longest edge is at most ``max_edge``."""
    width, height = _frame_size(frame)
    if not width or not height:
        return None
    x1, y1, x2, y2 = box
    pad_x = (x2 - x1) * padding_ratio
    pad_y = (y2 - y1) * padding_ratio
    left = int(np.clip(x1 - pad_x, 0, width))
    top = int(np.clip(y1 - pad_y, 0, height))
    right = int(np.clip(x2 + pad_x, 0, width))
    bottom = int(np.clip(y2 + pad_y, 0, height))
    if right - left < 1 or bottom - top < 1:
        return None
    crop = frame[top:bottom, left:right]
    crop_h, crop_w = crop.shape[:2]
    scale = min(1.0, max_edge / float(max(crop_w, crop_h)))
    if scale < 1.0:
        target = (max(1, int(round(crop_w * scale))), max(1, int(round(crop_h * scale))))
        crop = cv2.resize(crop, target, interpolation=cv2.INTER_AREA)
    return crop


def face_sharpness(frame: Optional[np.ndarray], box: BBox) -> Optional[float]:
    """Sharpness of the padded face crop; None when the crop is empty."""
    if frame is None:
        return None
    crop = crop_face(frame, box)
    if crop is None:
        return None
    return sharpness(crop)


def clamp_region(x: float, y: float, width: float, height: float, frame_w: int, frame_h: int) -> Region:
    left = int(np.clip(round(x), 0, max(0, frame_w - 1)))
    top = int(np.clip(round(y), 0, max(0, frame_h - 1)))
    right = int(np.clip(round(x + width), left + 1, frame_w))
    bottom = int(np.clip(round(y + height), top + 1, frame_h))
    return Region(left, top, right - left, bottom - top)


def _slice(frame: np.ndarray, region: Region) -> np.ndarray:
    return frame[region.y : region.bottom, region.x : region.right]


def skin_mask(patch: np.ndarray) -> np.ndarray:
    """Boolean YCbCr skin classifier over a BGR patch."""
    ycrcb = cv2.cvtColor(patch[:, :, :3], cv2.COLOR_BGR2YCrCb).astype(np.int32)
    luma, cr, cb = ycrcb[:, :, 0], ycrcb[:, :, 1], ycrcb[:, :, 2]
    return (
        (luma > SKIN_MIN_LUMA)
        & (cb >= SKIN_CB_RANGE[0])
        & (cb <= SKIN_CB_RANGE[1])
        & (cr >= SKIN_CR_RANGE[0])
        & (cr <= SKIN_CR_RANGE[1])
    )


def skin_ratio(frame: np.ndarray, region: Region) -> Optional[float]:
    """Fraction of skin-classified pixels in the region; None below 8x8."""
    if region.width < 8 or region.height < 8 or frame.ndim != 3:
        return None
    patch = _slice(frame, region)
    if patch.size == 0:
        return None
    return float(skin_mask(patch).mean())


def luminance_std(frame: np.ndarray, region: Region) -> Optional[float]:
    """Standard deviation of luma in the region; None below 6x6."""
    if region.width < 6 or region.height < 6:
        return None
    patch = _slice(frame, region)
    if patch.size == 0:
        return None
    return float(_to_gray(patch).std())
