"""Post processing for YOLOv5 instance segmentation models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

import numpy as np

from .common import (
    PROTO_CHANNEL,
    PROTO_SIZE,
    BoxRect,
    DetectionResult,
    DetectResult,
    IDGenerator,
    Letterbox,
    ModelOutputs,
    StrideData,
    box_reverse,
    clamp,
    dequantize,
    quantize,
)
from .segment import SegMask, SegmentationResult, SegmentData
from .segment import segment_mask as _segment_mask
from .segment import track_mask as _track_mask
from .yolov5 import YOLOStride, _coco_anchor_strides, _suppress

_OUTPUT_COUNT = 7
_PROTO_OUTPUT = 6


@dataclass
class YOLOv5SegParams:
    """Configuration for YOLOv5 segmentation post processing."""

    strides: list[YOLOStride] = field(default_factory=_coco_anchor_strides)
    box_threshold: float = 0.25
    nms_threshold: float = 0.45
    object_class_num: int = 80
    prob_box_size: int = 85
    max_object_number: int = 64


def yolov5_seg_coco_params() -> YOLOv5SegParams:
    """Parameters for a YOLOv5 segmentation model trained on the COCO dataset."""
    return YOLOv5SegParams(
        strides=_coco_anchor_strides(),
        box_threshold=0.25,
        nms_threshold=0.45,
        object_class_num=80,
        prob_box_size=85,
        max_object_number=64,
    )


def _as_int32(tensor) -> np.ndarray:
    return np.asarray(tensor, dtype=np.int8).astype(np.int32)


def _load_proto(data: StrideData, tensor, zp: int, scale: float) -> None:
    """Dequantize the prototype mask tensor into the stride data."""
    values = np.asarray(tensor, dtype=np.int8)
    if values.size < PROTO_SIZE:
        raise ValueError(
            f"proto output holds {values.size} values, expected {PROTO_SIZE}"
        )
    data.proto = dequantize(values[:PROTO_SIZE], zp, scale).astype(np.float32)


def _collate_segments(
    data: StrideData,
    order: Iterable[int],
    max_objects: int,
    resizer: Letterbox,
    id_gen: IDGenerator,
) -> SegmentationResult:
    """Build detections and the segment data needed to draw their masks.

    Boxes are kept in model input coordinates for mask cropping, while the
    returned detections are mapped back onto the original image.
    """
    group: list[DetectResult] = []
    for i, n in enumerate(order):
        if n == -1 or len(group) >= max_objects:
            continue
        x1 = data.filter_boxes[n * 4]
        y1 = data.filter_boxes[n * 4 + 1]
        x2 = x1 + data.filter_boxes[n * 4 + 2]
        y2 = y1 + data.filter_boxes[n * 4 + 3]
        data.filter_segments_by_nms.extend(
            data.filter_segments[n * PROTO_CHANNEL : (n + 1) * PROTO_CHANNEL]
        )
        group.append(
            DetectResult(
                class_id=data.class_ids[n],
                box=BoxRect(
                    left=int(clamp(x1, 0, data.width)),
                    top=int(clamp(y1, 0, data.height)),
                    right=int(clamp(x2, 0, data.width)),
                    bottom=int(clamp(y2, 0, data.height)),
                ),
                probability=data.obj_probs[i],
                id=id_gen.next_id(),
            )
        )

    model_boxes = [
        coord
        for det in group
        for coord in (det.box.left, det.box.top, det.box.right, det.box.bottom)
    ]
    seg_data = SegmentData(model_boxes, data, len(group))

    scale = resizer.scale_factor
    for det in group:
        det.box.left = box_reverse(det.box.left, resizer.x_pad, scale)
        det.box.top = box_reverse(det.box.top, resizer.y_pad, scale)
        det.box.right = box_reverse(det.box.right, resizer.x_pad, scale)
        det.box.bottom = box_reverse(det.box.bottom, resizer.y_pad, scale)

    return SegmentationResult(group, seg_data)


def _require_segmentation(result: DetectionResult) -> SegmentationResult:
    if not isinstance(result, SegmentationResult):
        raise TypeError("result is not a segmentation result")
    return result


class YOLOv5Seg:
    """Decodes quantized YOLOv5 segmentation outputs into detections and masks."""

    def __init__(self, params: YOLOv5SegParams | None = None) -> None:
        self.params = params if params is not None else yolov5_seg_coco_params()
        self._ids = IDGenerator()

    def detect_objects(
        self, outputs: ModelOutputs, resizer: Letterbox
    ) -> SegmentationResult | None:
        """Run detection on the model outputs; None when nothing is found."""
        data = StrideData.from_outputs(outputs, with_proto=True)
        valid_count = sum(
            self._process_output(outputs, input_id, data)
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
        self, outputs: ModelOutputs, input_id: int, data: StrideData
    ) -> int:
        attrs = outputs.attributes
        grid_h = int(attrs.dim_heights[input_id])
        grid_w = int(attrs.dim_widths[input_id])
        stride = data.height // grid_h
        grid_len = grid_h * grid_w

        if input_id % 2 == 1:
            return 0
        if input_id == _PROTO_OUTPUT:
            _load_proto(
                data,
                outputs.outputs[input_id].buf_int,
                data.out_zps[input_id],
                data.out_scales[input_id],
            )
            return 0

        values = _as_int32(outputs.outputs[input_id].buf_int)
        segs = _as_int32(outputs.outputs[input_id + 1].buf_int)
        zp = data.out_zps[input_id]
        scale = data.out_scales[input_id]
        zp_seg = data.out_zps[input_id + 1]
        scale_seg = data.out_scales[input_id + 1]
        anchor = self.params.strides[input_id // 2].anchor

        thres = quantize(self.params.box_threshold, zp, scale)
        box_size = self.params.prob_box_size
        classes = max(self.params.object_class_num, 1)

        found = 0
        for a in range(3):
            base = box_size * a * grid_len
            seg_base = PROTO_CHANNEL * a * grid_len
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

                box_x = (box_x + j) * stride
                box_y = (box_y + i) * stride
                box_w = box_w * box_w * anchor[a * 2]
                box_h = box_h * box_h * anchor[a * 2 + 1]
                box_x -= box_w / 2.0
                box_y -= box_h / 2.0

                class_probs = values[
                    ptr + 5 * grid_len : ptr + (5 + classes) * grid_len : grid_len
                ]
                class_id = int(np.argmax(class_probs))
                max_prob = int(class_probs[class_id])

                score = dequantize(box_conf, zp, scale) * dequantize(
                    max_prob, zp, scale
                )
                if score <= self.params.box_threshold:
                    continue

                start = seg_base + pos
                raw_seg = segs[start : start + PROTO_CHANNEL * grid_len : grid_len]
                data.filter_segments.extend(
                    float(v) for v in dequantize(raw_seg, zp_seg, scale_seg)
                )
                data.obj_probs.append(
                    dequantize(max_prob, zp, scale) * dequantize(box_conf, zp, scale)
                )
                data.class_ids.append(class_id)
                data.filter_boxes.extend((box_x, box_y, box_w, box_h))
                found += 1
        return found