"""Post processing for YOLOv11 detection models."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .common import (
    IDGenerator,
    Letterbox,
    ModelOutputs,
    StrideData,
    compute_dfl,
    dequantize,
    quantize,
)
from .yolov5 import _collate, _suppress
from .yolov8 import _append_box, _Branch, _branches, _wrap_int8
from .yolov10 import YOLOv10Result


@dataclass
class YOLOv11Params:
    """Configuration for YOLOv11 post processing."""

    box_threshold: float = 0.25
    nms_threshold: float = 0.45
    object_class_num: int = 80
    prob_box_size: int = 85
    max_object_number: int = 64


def yolov11_coco_params() -> YOLOv11Params:
    """Parameters for a YOLOv11 model trained on the COCO dataset."""
    return YOLOv11Params(
        box_threshold=0.25,
        nms_threshold=0.45,
        object_class_num=80,
        prob_box_size=85,
        max_object_number=64,
    )


class YOLOv11:
    """Decodes quantized YOLOv11 outputs into object detections."""

    def __init__(self, params: YOLOv11Params | None = None) -> None:
        self.params = params if params is not None else yolov11_coco_params()
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

        order = _suppress(data, valid_count, self.params.nms_threshold)
        return YOLOv10Result(
            _collate(data, order, self.params.max_object_number, resizer, self._ids)
        )

    def _process_branch(
        self, br: _Branch, stride: int, dfl_len: int, data: StrideData
    ) -> int:
        """Decode one branch, keeping the best class of each grid cell.

        A box read that would run past the end of the box tensor abandons
        the rest of that grid row.
        """
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

        span = 4 * dfl_len
        abandoned_row = -1
        found = 0
        for pos in np.flatnonzero(keep):
            pos = int(pos)
            i, j = divmod(pos, br.grid_w)
            if i == abandoned_row:
                continue
            if span > 0 and pos + (span - 1) * grid_len >= br.box.size:
                abandoned_row = i
                continue
            raw = br.box[pos : pos + span * grid_len : grid_len]
            box = compute_dfl(dequantize(raw, br.box_zp, br.box_scale), dfl_len)
            prob = dequantize(int(max_scores[pos]), br.score_zp, br.score_scale)
            _append_box(data, box, i, j, stride, prob, int(class_ids[pos]))
            found += 1
        return found