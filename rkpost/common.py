"""Shared types and numeric helpers for model output post processing."""

from __future__ import annotations

import itertools
import math
import threading
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Sequence

import numpy as np

PROTO_CHANNEL = 32
PROTO_HEIGHT = 160
PROTO_WIDTH = 160
PROTO_SIZE = PROTO_CHANNEL * PROTO_HEIGHT * PROTO_WIDTH


class BoxRectMode(IntEnum):
    """How the coordinates of a BoxRect were set."""

    LTRB = 0
    XYWH = 1


@dataclass
class BoxRect:
    """Bounding box of a detected object, in LTRB or XYWH form."""

    left: int = 0
    right: int = 0
    top: int = 0
    bottom: int = 0
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0
    angle: float = 0.0
    mode: BoxRectMode = BoxRectMode.LTRB


@dataclass
class DetectResult:
    """A single detected object."""

    class_id: int = 0
    box: BoxRect = field(default_factory=BoxRect)
    probability: float = 0.0
    id: int = 0


@dataclass
class KeyPoint:
    """A point used in pose or landmark estimation."""

    x: int = 0
    y: int = 0
    score: float = 0.0


@dataclass
class DetectionResult:
    """Base result of an object detection run."""

    detections: list[DetectResult] = field(default_factory=list)

    def detect_results(self) -> list[DetectResult]:
        """Return the detected objects."""
        return self.detections


@dataclass
class OutputTensor:
    """One output tensor of a model, in quantized and float form."""

    buf_int: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int8))
    buf_float: np.ndarray = field(
        default_factory=lambda: np.zeros(0, dtype=np.float32)
    )

    def __post_init__(self) -> None:
        self.buf_int = np.asarray(self.buf_int, dtype=np.int8).ravel()
        self.buf_float = np.asarray(self.buf_float, dtype=np.float32).ravel()


@dataclass
class OutputAttributes:
    """Quantization and shape attributes of the model outputs."""

    scales: list[float] = field(default_factory=list)
    zps: list[int] = field(default_factory=list)
    dim_heights: list[int] = field(default_factory=list)
    dim_widths: list[int] = field(default_factory=list)
    dim_for_dfl: int = 0
    io_number: int = 0


@dataclass
class ModelOutputs:
    """All outputs of one inference run plus the model input size."""

    outputs: list[OutputTensor]
    attributes: OutputAttributes
    input_width: int
    input_height: int


@dataclass
class Letterbox:
    """Describes how a source image was scaled and padded to the model input."""

    src_width: int
    src_height: int
    x_pad: int = 0
    y_pad: int = 0
    scale_factor: float = 1.0


class IDGenerator:
    """Thread safe generator of incrementing identifiers starting at 1."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            return next(self._counter)


@dataclass
class StrideData:
    """Accumulated candidate detections gathered across output strides."""

    height: int
    width: int
    out_scales: list[float] = field(default_factory=list)
    out_zps: list[int] = field(default_factory=list)
    filter_boxes: list[float] = field(default_factory=list)
    obj_probs: list[float] = field(default_factory=list)
    class_ids: list[int] = field(default_factory=list)
    filter_segments: list[float] = field(default_factory=list)
    filter_segments_by_nms: list[float] = field(default_factory=list)
    proto: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float32))

    @classmethod
    def from_outputs(cls, outputs: ModelOutputs, with_proto: bool = False) -> "StrideData":
        """Create empty stride data sized for the given model outputs."""
        proto = np.zeros(PROTO_SIZE if with_proto else 0, dtype=np.float32)
        return cls(
            height=outputs.input_height,
            width=outputs.input_width,
            out_scales=list(outputs.attributes.scales),
            out_zps=list(outputs.attributes.zps),
            proto=proto,
        )


def dequantize(qnt, zp, scale):
    """Convert an int8 quantized value (or array) back to float."""
    if isinstance(qnt, np.ndarray):
        return (qnt.astype(np.float32) - np.float32(zp)) * np.float32(scale)
    return (float(qnt) - zp) * scale


def quantize(value: float, zp: int, scale: float) -> int:
    """Convert a float to an int8 value using zero point and scale."""
    return clip(value / scale + zp, -128, 127)


def sigmoid(x: float) -> float:
    try:
        return 1.0 / (1.0 + math.exp(-x))
    except OverflowError:
        return 0.0


def unsigmoid(x: float) -> float:
    """Inverse of the sigmoid function."""
    if x == 0:
        return -math.inf
    t = 1.0 / x - 1.0
    if t == 0:
        return math.inf
    if t < 0:
        return math.nan
    return -math.log(t)


def softmax(values: Sequence[float]) -> np.ndarray:
    """Return the softmax of the values as a new array."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        raise ValueError("softmax of an empty sequence")
    exp = np.exp(arr - arr.max())
    return exp / exp.sum()


def clip(val: float, lo: float, hi: float) -> int:
    """Restrict val to [lo, hi] and truncate to int."""
    if val <= lo:
        return int(lo)
    if val >= hi:
        return int(hi)
    return int(val)


def clamp(val: float, lo: int, hi: int) -> float:
    """Restrict val to [lo, hi] as a float."""
    if val > lo:
        if val < hi:
            return float(val)
        return float(hi)
    return float(lo)


def quick_sort_indices_desc(
    values: Sequence[float], indices: Sequence[int]
) -> tuple[list[float], list[int]]:
    """Sort values in descending order, carrying the indices along.

    The partitioning scheme fixes the order of equal values.
    """
    vals = list(values)
    idx = list(indices)
    if len(vals) != len(idx):
        raise ValueError("values and indices must have the same length")

    stack = [(0, len(vals) - 1)]
    while stack:
        left, right = stack.pop()
        if left >= right:
            continue
        key, key_index = vals[left], idx[left]
        low, high = left, right
        while low < high:
            while low < high and vals[high] <= key:
                high -= 1
            vals[low], idx[low] = vals[high], idx[high]
            while low < high and vals[low] >= key:
                low += 1
            vals[high], idx[high] = vals[low], idx[low]
        vals[low], idx[low] = key, key_index
        stack.append((low + 1, right))
        stack.append((left, low - 1))

    return vals, idx


def nms(
    valid_count: int,
    locations: Sequence[float],
    class_ids: Sequence[int],
    order: Sequence[int],
    filter_id: int,
    threshold: float,
    stride: int,
) -> list[int]:
    """Non-maximum suppression; returns the order with suppressed entries set to -1."""
    order = list(order)
    for i in range(valid_count):
        if order[i] == -1 or class_ids[i] != filter_id:
            continue
        n = order[i]
        xmin0 = locations[n * stride]
        ymin0 = locations[n * stride + 1]
        xmax0 = xmin0 + locations[n * stride + 2]
        ymax0 = ymin0 + locations[n * stride + 3]
        for j in range(i + 1, valid_count):
            m = order[j]
            if m == -1 or class_ids[i] != filter_id:
                continue
            xmin1 = locations[m * stride]
            ymin1 = locations[m * stride + 1]
            xmax1 = xmin1 + locations[m * stride + 2]
            ymax1 = ymin1 + locations[m * stride + 3]
            iou = calculate_overlap(
                xmin0, ymin0, xmax0, ymax0, xmin1, ymin1, xmax1, ymax1
            )
            if iou > threshold:
                order[j] = -1
    return order


def calculate_overlap(xmin0, ymin0, xmax0, ymax0, xmin1, ymin1, xmax1, ymax1) -> float:
    """Intersection over union of two boxes, with inclusive pixel edges."""
    w = max(0.0, min(xmax0, xmax1) - max(xmin0, xmin1) + 1.0)
    h = max(0.0, min(ymax0, ymax1) - max(ymin0, ymin1) + 1.0)
    intersection = w * h
    area0 = (xmax0 - xmin0 + 1) * (ymax0 - ymin0 + 1)
    area1 = (xmax1 - xmin1 + 1) * (ymax1 - ymin1 + 1)
    union = area0 + area1 - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def compute_dfl(tensor: Sequence[float], dfl_len: int) -> list[float]:
    """Distribution focal loss decoding of four box distances."""
    arr = np.asarray(tensor, dtype=np.float64)[: 4 * dfl_len].reshape(4, dfl_len)
    exp = np.exp(arr)
    probs = exp / exp.sum(axis=1, keepdims=True)
    return [float(v) for v in probs @ np.arange(dfl_len, dtype=np.float64)]


def box_reverse(pos: int, pad: int, scale: float) -> int:
    """Map a model input coordinate back to the original image."""
    return int((pos - pad) / scale)