"""Post processing for anchor free YOLOv8 detection models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

import numpy as np

from .common import (
    DetectionResult,
    IDGenerator,
    Letterbox,
    ModelOutputs,
    StrideData,
    compute_dfl,
    dequantize,
    quantize,
)
from .yolov5 import _collate, _suppress


@dataclass
class YOLOv8Params:
    """Configuration for YOLOv8 post processing."""

    box_threshold: float = 0.25
    nms_threshold: float = 0.45
    object_class_num: int = 80
    max_object_number: int = 64


def yolov8_coco_params() -> YOLOv8Params:
    """Parameters for a YOLOv8 model trained on the COCO dataset."""
    return YOLOv8Params(
        box_threshold=0.25,
        nms_threshold=0.45,
        object_class_num=80,
        max_object_number=64,
    )


@dataclass
class YOLOv8Result(DetectionResult):
    """Object detection results of a YOLOv8 model."""


@dataclass
class _Branch:
    """The tensors and quantization of one output branch."""

    box: np.ndarray
    box_zp: int
    box_scale: float
    score: np.ndarray
    score_zp: int
    score_scale: float
    score_sum: np.ndarray
    sum_zp: int
    sum_scale: float
    grid_h: int
    grid_w: int


def _wrap_int8(value: int) -> int:
    """Convert an integer to int8 with two's complement wrap around."""
    return ((int(value) + 128) % 256) - 128


def _as_int32(tensor) -> np.ndarray:
    return np.asarray(tensor, dtype=np.int8).astype(np.int32)


def _branches(outputs: ModelOutputs) -> Iterator[_Branch]:
    """Yield the three detection branches of a DFL style model output."""
    attrs = outputs.attributes
    per_branch = attrs.io_number // 3
    for i in range(3):
        box_idx = i * per_branch
        score_idx = box_idx + 1
        if per_branch == 3:
            sum_idx = box_idx + 2
            score_sum = _as_int32(outputs.outputs[sum_idx].buf_int)
            sum_zp, sum_scale = attrs.zps[sum_idx], attrs.scales[sum_idx]
        else:
            score_sum = np.zeros(0, dtype=np.int32)
            sum_zp, sum_scale = 0, 1.0
        yield _Branch(
            box=_as_int32(outputs.outputs[box_idx].buf_int),
            box_zp=attrs.zps[box_idx],
            box_scale=attrs.scales[box_idx],
            score=_as_int32(outputs.outputs[score_idx].buf_int),
            score_zp=attrs.zps[score_idx],
            score_scale=attrs.scales[score_idx],
            score_sum=score_sum,
            sum_zp=sum_zp,
            sum_scale=sum_scale,
            grid_h=int(attrs.dim_heights[box_idx]),
            grid_w=int(attrs.dim_widths[box_idx]),
        )


def _append_box(
    data: StrideData,
    box: list[float],
    i: int,
    j: int,
    stride: int,
    prob: float,
    class_id: int,
) -> None:
    x1 = (-box[0] + j + 0.5) * stride
    y1 = (-box[1] + i + 0.5) * stride
    x2 = (box[2] + j + 0.5) * stride
    y2 = (box[3] + i + 0.5) * stride
    data.filter_boxes.extend((x1, y1, x2 - x1, y2 - y1))
    data.obj_probs.append(prob)
    data.class_ids.append(class_id)


class YOLOv8:
    """Decodes quantized YOLOv8 outputs into object detections."""

    def __init__(self, params: YOLOv8Params | None = None) -> None:
        self.params = params if params is not None else yolov8_coco_params()
        self._ids = IDGenerator()

    def detect_objects(
        self, outputs: ModelOutputs, resizer: Letterbox
    ) -> YOLOv8Result | None:
        """Run detection on the model outputs; None when nothing is found."""
        data = StrideData.from_outputs(outputs)
        dfl_len = outputs.attributes.dim_for_dfl // 4
        valid_count = sum(
            self._process_branch(br, data.height // br.grid_h, dfl_len, data)
            for br in _branches(outputs)
        )
        if valid_count <= 0:
            return None

        order = _suppress(data, valid_count, self.params.nms_threshold)
        return YOLOv8Result(
            _collate(data, order, self.params.max_object_number, resizer, self._ids)
        )

    def _process_branch(
        self, br: _Branch, stride: int, dfl_len: int, data: StrideData
    ) -> int:
        grid_len = br.grid_h * br.grid_w
        thres = quantize(self.params.box_threshold, br.score_zp, br.score_scale)
        sum_thres = quantize(self.params.box_threshold, br.sum_zp, br.sum_scale)
        initial = _wrap_int8(-br.score_zp)
        classes = self.params.object_class_num

        if classes > 0:
            scores = br.score[: classes * grid_len].reshape(classes, grid_len)
            masked = np.where(scores > thres, scores, np.iinfo(np.int32).min)
            best = masked.max(axis=0)
            best_cls = masked.argmax(axis=0)
            improved = best > initial
            max_scores = np.where(improved, best, initial)
            class_ids = np.where(improved, best_cls, -1)
        else:
            max_scores = np.full(grid_len, initial)
            class_ids = np.full(grid_len, -1)

        keep = max_scores > thres
        if br.score_sum.size:
            keep &= br.score_sum[:grid_len] >= sum_thres

        found = 0
        for pos in np.flatnonzero(keep):
            pos = int(pos)
            i, j = divmod(pos, br.grid_w)
            raw = br.box[pos : pos + 4 * dfl_len * grid_len : grid_len]
            box = compute_dfl(dequantize(raw, br.box_zp, br.box_scale), dfl_len)
            prob = dequantize(int(max_scores[pos]), br.score_zp, br.score_scale)
            _append_box(data, box, i, j, stride, prob, int(class_ids[pos]))
            found += 1
        return found