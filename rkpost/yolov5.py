"""Post processing for anchor based YOLOv5 detection models."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .common import (
    BoxRect,
    DetectionResult,
    DetectResult,
    IDGenerator,
    Letterbox,
    ModelOutputs,
    StrideData,
    clamp,
    dequantize,
    nms,
    quantize,
    quick_sort_indices_desc,
)


@dataclass
class YOLOStride:
    """Grid stride size in pixels and its anchor box presets."""

    size: int
    anchor: list[int] = field(default_factory=list)


def _coco_anchor_strides() -> list[YOLOStride]:
    return [
        YOLOStride(8, [10, 13, 16, 30, 33, 23]),
        YOLOStride(16, [30, 61, 62, 45, 59, 119]),
        YOLOStride(32, [116, 90, 156, 198, 373, 326]),
    ]


@dataclass
class YOLOv5Params:
    """Configuration for YOLOv5 post processing."""

    strides: list[YOLOStride] = field(default_factory=_coco_anchor_strides)
    box_threshold: float = 0.25
    nms_threshold: float = 0.45
    object_class_num: int = 80
    prob_box_size: int = 85
    max_object_number: int = 64


def yolov5_coco_params() -> YOLOv5Params:
    """Parameters for a YOLOv5 model trained on the COCO dataset."""
    return YOLOv5Params(
        strides=_coco_anchor_strides(),
        box_threshold=0.25,
        nms_threshold=0.45,
        object_class_num=80,
        prob_box_size=85,
        max_object_number=64,
    )


@dataclass
class YOLOv5Result(DetectionResult):
    """Object detection results of a YOLOv5 model."""


def _suppress(data: StrideData, valid_count: int, threshold: float) -> list[int]:
    """Sort candidates by probability and run per-class NMS; returns the order."""
    probs, order = quick_sort_indices_desc(
        data.obj_probs[:valid_count], range(valid_count)
    )
    data.obj_probs[:valid_count] = probs
    for class_id in sorted(set(data.class_ids)):
        order = nms(
            valid_count, data.filter_boxes, data.class_ids, order, class_id, threshold, 4
        )
    return order


def _collate(
    data: StrideData,
    order: list[int],
    max_objects: int,
    resizer: Letterbox,
    id_gen: IDGenerator,
) -> list[DetectResult]:
    """Turn surviving candidates into detections in original image coordinates."""
    group: list[DetectResult] = []
    for i, n in enumerate(order):
        if n == -1 or len(group) >= max_objects:
            continue
        x1 = data.filter_boxes[n * 4] - resizer.x_pad
        y1 = data.filter_boxes[n * 4 + 1] - resizer.y_pad
        x2 = x1 + data.filter_boxes[n * 4 + 2]
        y2 = y1 + data.filter_boxes[n * 4 + 3]
        scale = resizer.scale_factor
        group.append(
            DetectResult(
                class_id=data.class_ids[n],
                box=BoxRect(
                    left=int(clamp(x1, 0, data.width) / scale),
                    top=int(clamp(y1, 0, data.height) / scale),
                    right=int(clamp(x2, 0, data.width) / scale),
                    bottom=int(clamp(y2, 0, data.height) / scale),
                ),
                probability=data.obj_probs[i],
                id=id_gen.next_id(),
            )
        )
    return group


class YOLOv5:
    """Decodes quantized YOLOv5 outputs into object detections."""

    def __init__(self, params: YOLOv5Params | None = None) -> None:
        self.params = params if params is not None else yolov5_coco_params()
        self._ids = IDGenerator()

    def detect_objects(
        self, outputs: ModelOutputs, resizer: Letterbox
    ) -> YOLOv5Result | None:
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
        return YOLOv5Result(
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
        box_size = self.params.prob_box_size
        classes = max(self.params.object_class_num, 1)
        values = np.asarray(tensor, dtype=np.int8).astype(np.int32)

        found = 0
        for a in range(3):
            base = box_size * a * grid_len
            confidences = values[base + 4 * grid_len : base + 5 * grid_len]
            for pos in np.flatnonzero(confidences >= thres):
                pos = int(pos)
                i, j = divmod(pos, grid_w)
                ptr = base + pos
                box_conf = int(confidences[pos])

                box_x = dequantize(values[ptr], zp, scale) * 2.0 - 0.5
                box_y = dequantize(values[ptr + grid_len], zp, scale) * 2.0 - 0.5
                box_w = dequantize(values[ptr + 2 * grid_len], zp, scale) * 2.0
                box_h = dequantize(values[ptr + 3 * grid_len], zp, scale) * 2.0

                box_x = (box_x + j) * stride.size
                box_y = (box_y + i) * stride.size
                box_w = box_w * box_w * stride.anchor[a * 2]
                box_h = box_h * box_h * stride.anchor[a * 2 + 1]
                box_x -= box_w / 2.0
                box_y -= box_h / 2.0

                class_probs = values[
                    ptr + 5 * grid_len : ptr + (5 + classes) * grid_len : grid_len
                ]
                class_id = int(np.argmax(class_probs))
                max_prob = int(class_probs[class_id])

                score = dequantize(max_prob, zp, scale) * dequantize(box_conf, zp, scale)
                if score >= self.params.box_threshold:
                    data.obj_probs.append(score)
                    data.class_ids.append(class_id)
                    data.filter_boxes.extend((box_x, box_y, box_w, box_h))
                    found += 1
        return found