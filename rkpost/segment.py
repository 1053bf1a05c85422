"""Segmentation mask construction shared by the segmentation models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

from .common import (
    PROTO_CHANNEL,
    PROTO_HEIGHT,
    PROTO_WIDTH,
    DetectionResult,
    Letterbox,
    StrideData,
)


@dataclass
class SegMask:
    """Combined segmentation mask; each pixel holds an object number or 0."""

    mask: np.ndarray


@dataclass
class SegmentData:
    """Data kept from detection for building segment masks afterwards."""

    filter_boxes_by_nms: list[tuple[int, int, int, int]]
    data: StrideData
    boxes_num: int


@dataclass
class SegmentationResult(DetectionResult):
    """Detection result that carries segmentation data."""

    segment_data: SegmentData | None = None

    def detect_results(self):
        """Return the object detection results containing bounding boxes."""
        return super().detect_results()


def matmul_mask(data: StrideData, boxes_num: int) -> np.ndarray:
    """Multiply mask coefficients with the prototypes into per-box binary masks.

    Returns an array of shape (boxes_num, PROTO_HEIGHT, PROTO_WIDTH) holding
    4 where the object is and 0 for background.
    """
    coeffs = np.asarray(data.filter_segments_by_nms, dtype=np.float32)
    coeffs = coeffs[: boxes_num * PROTO_CHANNEL].reshape(boxes_num, PROTO_CHANNEL)
    proto = np.asarray(data.proto, dtype=np.float32).reshape(
        PROTO_CHANNEL, PROTO_HEIGHT * PROTO_WIDTH
    )
    product = coeffs @ proto
    mask = np.where(product > 0, 4, 0).astype(np.uint8)
    return mask.reshape(boxes_num, PROTO_HEIGHT, PROTO_WIDTH)


def _axis_map(src_len: int, dst_len: int):
    pos = (np.arange(dst_len, dtype=np.float64) + 0.5) * (src_len / dst_len) - 0.5
    i0 = np.floor(pos).astype(np.int64)
    frac = pos - i0
    low = i0 < 0
    i0[low] = 0
    frac[low] = 0.0
    high = i0 >= src_len - 1
    i0[high] = src_len - 1
    frac[high] = 0.0
    i1 = np.minimum(i0 + 1, src_len - 1)
    return i0, i1, frac


def resize_bilinear(image, target_width: int, target_height: int) -> np.ndarray:
    """Resize a single channel uint8 image with bilinear interpolation."""
    src = np.asarray(image, dtype=np.float64)
    if src.ndim != 2 or src.size == 0:
        raise ValueError("expected a non-empty two dimensional image")
    if target_width <= 0 or target_height <= 0:
        raise ValueError("target size must be positive")
    h, w = src.shape
    x0, x1, fx = _axis_map(w, target_width)
    y0, y1, fy = _axis_map(h, target_height)
    top = src[y0][:, x0] * (1 - fx) + src[y0][:, x1] * fx
    bottom = src[y1][:, x0] * (1 - fx) + src[y1][:, x1] * fx
    out = top * (1 - fy)[:, None] + bottom * fy[:, None]
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)


def crop_mask_with_id(
    seg_mask,
    boxes: Sequence[Sequence[int]],
    height: int,
    width: int,
    strip_objs: Iterable[int] = (),
) -> np.ndarray:
    """Combine per-object masks into one, labelling each object by index + 1.

    Each object only claims pixels inside its box that no earlier object has
    claimed; objects listed in strip_objs are left out.
    """
    masks = np.asarray(seg_mask).reshape(-1, height, width)
    strip = set(strip_objs)
    combined = np.zeros((height, width), dtype=np.uint8)
    for b, (x1, y1, x2, y2) in enumerate(boxes):
        if b in strip:
            continue
        ys = slice(max(y1, 0), max(y2, 0))
        xs = slice(max(x1, 0), max(x2, 0))
        region = combined[ys, xs]
        claim = (region == 0) & (masks[b, ys, xs] > 0)
        region[claim] = (b + 1) % 256
    return combined


def seg_reverse(
    seg_mask,
    model_height: int,
    model_width: int,
    cropped_height: int,
    cropped_width: int,
    ori_height: int,
    ori_width: int,
    y_pad: int,
    x_pad: int,
) -> np.ndarray:
    """Remove letterbox padding from a mask and scale it to the original image."""
    mask = np.asarray(seg_mask, dtype=np.uint8).reshape(model_height, model_width)
    if (
        y_pad == 0
        and x_pad == 0
        and ori_height == model_height
        and ori_width == model_width
    ):
        return mask.copy()

    if cropped_height <= 0 or cropped_width <= 0:
        return np.zeros((ori_height, ori_width), dtype=np.uint8)

    region = mask[y_pad : model_height - y_pad, x_pad : model_width - x_pad].ravel()
    size = cropped_height * cropped_width
    cropped = np.zeros(size, dtype=np.uint8)
    taken = region[:size]
    cropped[: taken.size] = taken
    return resize_bilinear(
        cropped.reshape(cropped_height, cropped_width), ori_width, ori_height
    )


def _build_mask(result, resizer: Letterbox, strip_objs: Iterable[int]) -> SegMask:
    if not isinstance(result, SegmentationResult) or result.segment_data is None:
        raise TypeError("result does not carry segmentation data")
    seg = result.segment_data
    data = seg.data
    height, width = data.height, data.width

    proto_masks = matmul_mask(data, seg.boxes_num)
    resized = np.zeros((seg.boxes_num, height, width), dtype=np.uint8)
    for b, proto_mask in enumerate(proto_masks):
        resized[b] = resize_bilinear(proto_mask, width, height)

    combined = crop_mask_with_id(
        resized, seg.filter_boxes_by_nms, height, width, strip_objs
    )
    real = seg_reverse(
        combined,
        height,
        width,
        height - resizer.y_pad * 2,
        width - resizer.x_pad * 2,
        resizer.src_height,
        resizer.src_width,
        resizer.y_pad,
        resizer.x_pad,
    )
    return SegMask(real)


def segment_mask(result: SegmentationResult, resizer: Letterbox) -> SegMask:
    """Build the segmentation mask for all detected objects."""
    return _build_mask(result, resizer, ())


def track_mask(
    result: SegmentationResult, tracked_ids: Iterable[int], resizer: Letterbox
) -> SegMask:
    """Build the segmentation mask holding only objects whose detection id is tracked."""
    keep = set(tracked_ids)
    strip = [
        i for i, det in enumerate(result.detect_results()) if det.id not in keep
    ]
    return _build_mask(result, resizer, strip)