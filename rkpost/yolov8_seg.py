"""Post processing for YOLOv8 instance segmentation models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import numpy as np

from .common import (
    PROTO_CHANNEL,
    DetectionResult,
    IDGenerator,
    Letterbox,
    ModelOutputs,
    StrideData,
    compute_dfl,
    dequantize,
    quantize,
)
from .segment import SegMask, SegmentationResult
from .segment import segment_mask as _segment_mask
from .segment import track_mask as _track_mask
from .yolov5 import _suppress
from .yolov5_seg import _as_int32, _collate_segments, _load_proto, _require_segmentation
from .yolov8 import _append_box, _wrap_int8

_OUTPUT_COUNT = 13
_PROTO_OUTPUT = 12
_OUTPUTS_PER_BRANCH = 4


@dataclass
class YOLOv8SegParams:
    """Configuration for YOLOv8 segmentation post processing."""

    box_threshold: float = 0.25
    nms_threshold: float = 0.45
    object_class_num: int = 80
    max_object_number: int = 64


def yolov8_seg_coco_params() -> YOLOv8SegParams:
    """Parameters for a YOLOv8 segmentation model trained on the COCO dataset."""
    return YOLOv8SegParams(
        box_threshold=0.25,
        nms_threshold=0.45,
        object_class_num=80,
        max_object_number=64,
    )


class YOLOv8Seg:
    """Decodes quantized YOLOv8 segmentation outputs into detections and masks."""

    def __init__(self, params: YOLOv8SegParams | None = None) -> None:
        self.params = params if params is not None else yolov8_seg_coco_params()
        self._ids = IDGenerator()

    def detect_objects(
        self, outputs: ModelOutputs, resizer: Letterbox
    ) -> SegmentationResult | None:
        """Run detection on the model outputs; None when nothing is found."""
        data = StrideData.from_outputs(outputs, with_proto=True)
        dfl_len = outputs.attributes.dim_for_dfl // 4
        valid_count = sum(
            self._process_output(outputs, input_id, data, dfl_len)
            for input_id in range(_OUTPUT_COUNT)
        )
        if valid_count <= 0:
            return None

        order = _suppress(data, valid_count, self.params.nms_threshold)
        return _collate_segments(
            data, order, self.params.max_object_number, resizer, self._ids
        )

    def segment_mask(self, result: DetectionResult, resizer: Letterbox) -> SegMask:
        """Combined segmentation mask of all detected objects."""
        return _segment_mask(_require_segmentation(result), resizer)

    def track_mask(
        self, result: DetectionResult, tracked_ids: Iterable[int], resizer: Letterbox
    ) -> SegMask:
        """Combined segmentation mask of only the tracked detections."""
        return _track_mask(_require_segmentation(result), list(tracked_ids), resizer)

    def _process_output(
        self, outputs: ModelOutputs, input_id: int, data: StrideData, dfl_len: int
    ) -> int:
        if input_id % _OUTPUTS_PER_BRANCH != 0:
            return 0
        if input_id == _PROTO_OUTPUT:
            _load_proto(
                data,
                outputs.outputs[input_id].buf_int,
                data.out_zps[input_id],
                data.out_scales[input_id],
            )
            return 0

        attrs = outputs.attributes
        grid_h = int(attrs.dim_heights[input_id])
        grid_w = int(attrs.dim_widths[input_id])
        stride = data.height // grid_h
        grid_len = grid_h * grid_w

        box = _as_int32(outputs.outputs[input_id].buf_int)
        box_zp, box_scale = data.out_zps[input_id], data.out_scales[input_id]
        score = _as_int32(outputs.outputs[input_id + 1].buf_int)
        score_zp, score_scale = data.out_zps[input_id + 1], data.out_scales[input_id + 1]
        score_sum = _as_int32(outputs.outputs[input_id + 2].buf_int)
        sum_zp, sum_scale = data.out_zps[input_id + 2], data.out_scales[input_id + 2]
        seg = _as_int32(outputs.outputs[input_id + 3].buf_int)
        seg_zp, seg_scale = data.out_zps[input_id + 3], data.out_scales[input_id + 3]

        thres = quantize(self.params.box_threshold, score_zp, score_scale)
        sum_thres = quantize(self.params.box_threshold, sum_zp, sum_scale)
        initial = _wrap_int8(-score_zp)
        classes = self.params.object_class_num

        if classes > 0:
            scores = score[: classes * grid_len].reshape(classes, grid_len)
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
        if score_sum.size:
            keep &= score_sum[:grid_len] >= sum_thres

        found = 0
        for pos in np.flatnonzero(keep):
            pos = int(pos)
            i, j = divmod(pos, grid_w)
            raw_seg = seg[pos : pos + PROTO_CHANNEL * grid_len : grid_len]
            data.filter_segments.extend(
                float(v) for v in dequantize(raw_seg, seg_zp, seg_scale)
            )
            raw = box[pos : pos + 4 * dfl_len * grid_len : grid_len]
            decoded = compute_dfl(dequantize(raw, box_zp, box_scale), dfl_len)
            prob = dequantize(int(max_scores[pos]), score_zp, score_scale)
            _append_box(data, decoded, i, j, stride, prob, int(class_ids[pos]))
            found += 1
        return found