"""Post processing for NMS free YOLOv10 detection models."""

from __future__ import annotations

from dataclasses import dataclass

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
    quick_sort_indices_desc,
)
from .yolov5 import _collate
from .yolov8 import _append_box, _Branch, _branches


@dataclass
class YOLOv10Params:
    """Configuration for YOLOv10 post processing."""

    box_threshold: float = 0.25
    nms_threshold: float = 0.45
    object_class_num: int = 80
    prob_box_size: int = 85
    max_object_number: int = 64


def yolov10_coco_params() -> YOLOv10Params:
    """Parameters for a YOLOv10 model trained on the COCO dataset."""
    return YOLOv10Params(
        box_threshold=0.25,
        nms_threshold=0.45,
        object_class_num=80,
        prob_box_size=85,
        max_object_number=64,
    )


@dataclass
class YOLOv10Result(DetectionResult):
    """Object detection results of a YOLOv10 model."""


class YOLOv10:
    """Decodes quantized YOLOv10 outputs into object detections."""

    def __init__(self, params: YOLOv10Params | None = None) -> None:
        self.params = params if params is not None else yolov10_coco_params()
        self._ids = IDGenerator()

    def detect_objects(
        self, outputs: ModelOutputs, resizer: Letterbox
    ) -> YOLOv10Result | None:
        """Run detection on the model outputs; None when nothing is found."""
        data = StrideData.from_outputs(outputs)
        dfl_len = outputs.attributes.dim_for_dfl // 4
        valid_count = sum(
            self._process_branch(br, data.height // br.grid_h, dfl_len, data)
            for br in _branches(outputs)
        )
        if valid_count <= 0:
            return None

        probs, order = quick_sort_indices_desc(
            data.obj_probs[:valid_count], range(valid_count)
        )
        data.obj_probs[:valid_count] = probs
        return YOLOv10Result(
            _collate(data, order, self.params.max_object_number, resizer, self._ids)
        )

    def _process_branch(
        self, br: _Branch, stride: int, dfl_len: int, data: StrideData
    ) -> int:
        thres = quantize(self.params.box_threshold, br.score_zp, br.score_scale)
        sum_thres = quantize(self.params.box_threshold, br.sum_zp, br.sum_scale)
        return sum(
            self._process_row(br, i, stride, dfl_len, thres, sum_thres, data)
            for i in range(br.grid_h)
        )

    def _process_row(
        self,
        br: _Branch,
        i: int,
        stride: int,
        dfl_len: int,
        thres: int,
        sum_thres: int,
        data: StrideData,
    ) -> int:
        """Decode one grid row; every class above threshold yields a candidate.

        The box read offset carries over between classes of the same cell, and
        a read past the end of the box tensor abandons the rest of the row.
        """
        grid_len = br.grid_h * br.grid_w
        classes = self.params.object_class_num
        span = 4 * dfl_len
        found = 0
        for j in range(br.grid_w):
            pos = i * br.grid_w + j
            if br.score_sum.size and br.score_sum[pos] < sum_thres:
                continue
            offset = pos
            column = br.score[pos : pos + classes * grid_len : grid_len]
            for c in np.flatnonzero(column > thres):
                if offset + (span - 1) * grid_len >= br.box.size:
                    return found
                raw = br.box[offset : offset + span * grid_len : grid_len]
                offset += span * grid_len
                box = compute_dfl(dequantize(raw, br.box_zp, br.box_scale), dfl_len)
                prob = dequantize(int(column[c]), br.score_zp, br.score_scale)
                _append_box(data, box, i, j, stride, prob, int(c))
                found += 1
        return found