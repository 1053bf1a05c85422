"""Post processing for anchor free YOLOX detection models."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

from .common import (
    DetectionResult,
    IDGenerator,
    Letterbox,
    ModelOutputs,
    StrideData,
    dequantize,
    quantize,
)
from .yolov5 import YOLOStride, _collate, _suppress


def _coco_strides() -> list[YOLOStride]:
    return [YOLOStride(8), YOLOStride(16), YOLOStride(32)]


@dataclass
class YOLOXParams:
    """Configuration for YOLOX post processing."""

    strides: list[YOLOStride] = field(default_factory=_coco_strides)
    box_threshold: float = 0.25
    nms_threshold: float = 0.45
    object_class_num: int = 80
    prob_box_size: int = 85
    max_object_number: int = 64


def yolox_coco_params() -> YOLOXParams:
    """Parameters for a YOLOX model trained on the COCO dataset."""
    return YOLOXParams(
        strides=_coco_strides(),
        box_threshold=0.25,
        nms_threshold=0.45,
        object_class_num=80,
        prob_box_size=85,
        max_object_number=64,
    )


@dataclass
class YOLOXResult(DetectionResult):
    """Object detection results of a YOLOX model."""


class YOLOX:
    """Decodes quantized YOLOX outputs into object detections."""

    def __init__(self, params: YOLOXParams | None = None) -> None:
        self.params = params if params is not None else yolox_coco_params()
        self._ids = IDGenerator()

    def detect_objects(
        self, outputs: ModelOutputs, resizer: Letterbox
    ) -> YOLOXResult | None:
        """Run detection on the model outputs; None when nothing is found."""
        data = StrideData.from_outputs(outputs)
        valid_count = sum(
            self._process_stride(
                outputs.outputs[i].buf_int,
                stride,
                data,
                data.out_zps[i],
                data.out_scales[i],
            )
            for i, stride in enumerate(self.params.strides)
        )
        if valid_count <= 0:
            return None

        order = _suppress(data, valid_count, self.params.nms_threshold)
        return YOLOXResult(
            _collate(data, order, self.params.max_object_number, resizer, self._ids)
        )

    def _process_stride(
        self,
        tensor: np.ndarray,
        stride: YOLOStride,
        data: StrideData,
        zp: int,
        scale: float,
    ) -> int:
        grid_h = data.height // stride.size
        grid_w = data.width // stride.size
        grid_len = grid_h * grid_w
        thres = quantize(self.params.box_threshold, zp, scale)
        classes = max(self.params.object_class_num, 1)
        values = np.asarray(tensor, dtype=np.int8).astype(np.int32)

        found = 0
        confidences = values[4 * grid_len : 5 * grid_len]
        for pos in np.flatnonzero(confidences >= thres):
            pos = int(pos)
            i, j = divmod(pos, grid_w)
            box_conf = int(confidences[pos])

            class_probs = values[
                pos + 5 * grid_len : pos + (5 + classes) * grid_len : grid_len
            ]
            class_id = int(np.argmax(class_probs))
            max_prob = int(class_probs[class_id])
            if max_prob <= thres:
                continue

            box_x = dequantize(values[pos], zp, scale)
            box_y = dequantize(values[pos + grid_len], zp, scale)
            box_w = dequantize(values[pos + 2 * grid_len], zp, scale)
            box_h = dequantize(values[pos + 3 * grid_len], zp, scale)

            box_x = (box_x + j) * stride.size
            box_y = (box_y + i) * stride.size
            box_w = math.exp(box_w) * stride.size
            box_h = math.exp(box_h) * stride.size
            box_x -= box_w / 2.0
            box_y -= box_h / 2.0

            data.obj_probs.append(
                dequantize(max_prob, zp, scale) * dequantize(box_conf, zp, scale)
            )
            data.class_ids.append(class_id)
            data.filter_boxes.extend((box_x, box_y, box_w, box_h))
            found += 1
        return found