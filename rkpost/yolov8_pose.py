"""Post processing for YOLOv8 pose estimation models."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .common import (
    BoxRect,
    DetectionResult,
    DetectResult,
    IDGenerator,
    KeyPoint,
    Letterbox,
    ModelOutputs,
    StrideData,
    clamp,
    dequantize,
    nms,
    quantize,
    quick_sort_indices_desc,
    sigmoid,
    softmax,
    unsigmoid,
)

_LOC_LEN = 64
_DFL_BINS = 16
_KEYPOINT_ANCHORS = 8400
_BOX_FIELDS = 5


@dataclass
class YOLOv8PoseParams:
    """Configuration for YOLOv8 pose post processing."""

    box_threshold: float = 0.5
    nms_threshold: float = 0.4
    object_class_num: int = 1
    max_object_number: int = 64
    key_points_number: int = 17


def yolov8_pose_coco_params() -> YOLOv8PoseParams:
    """Parameters for a YOLOv8 pose model trained on the COCO dataset."""
    return YOLOv8PoseParams(
        box_threshold=0.5,
        nms_threshold=0.4,
        object_class_num=1,
        max_object_number=64,
        key_points_number=17,
    )


@dataclass
class YOLOv8PoseResult(DetectionResult):
    """Detections with the body keypoints of each detected object."""

    keypoints: list[list[KeyPoint]] = field(default_factory=list)


class YOLOv8Pose:
    """Decodes quantized YOLOv8 pose outputs into detections and keypoints."""

    def __init__(self, params: YOLOv8PoseParams | None = None) -> None:
        self.params = params if params is not None else yolov8_pose_coco_params()
        self._ids = IDGenerator()

    def detect_objects(
        self, outputs: ModelOutputs, resizer: Letterbox
    ) -> YOLOv8PoseResult | None:
        """Run pose detection on the model outputs; None when nothing is found."""
        data = StrideData.from_outputs(outputs)
        attrs = outputs.attributes

        valid_count = 0
        index = 0
        for i in range(3):
            grid_h = int(attrs.dim_heights[i])
            grid_w = int(attrs.dim_widths[i])
            valid_count += self._process_stride(
                outputs.outputs[i].buf_int,
                attrs.zps[i],
                attrs.scales[i],
                grid_h,
                grid_w,
                data.height // grid_h,
                data,
                index,
            )
            index += grid_h * grid_w

        if valid_count <= 0:
            return None

        probs, order = quick_sort_indices_desc(
            data.obj_probs[:valid_count], range(valid_count)
        )
        data.obj_probs[:valid_count] = probs
        for class_id in sorted(set(data.class_ids)):
            order = nms(
                valid_count,
                data.filter_boxes,
                data.class_ids,
                order,
                class_id,
                self.params.nms_threshold,
                _BOX_FIELDS,
            )

        kp_buf = outputs.outputs[3].buf_float
        scale = resizer.scale_factor
        detections: list[DetectResult] = []
        keypoints: list[list[KeyPoint]] = []
        for i, n in enumerate(order):
            if n == -1 or len(detections) >= self.params.max_object_number:
                continue
            base = n * _BOX_FIELDS
            x1 = data.filter_boxes[base] - resizer.x_pad
            y1 = data.filter_boxes[base + 1] - resizer.y_pad
            x2 = x1 + data.filter_boxes[base + 2]
            y2 = y1 + data.filter_boxes[base + 3]
            kp_index = int(data.filter_boxes[base + 4])

            points = []
            for j in range(self.params.key_points_number):
                offset = j * 3 * _KEYPOINT_ANCHORS + kp_index
                kp_x = float(kp_buf[offset])
                kp_y = float(kp_buf[offset + _KEYPOINT_ANCHORS])
                kp_score = float(kp_buf[offset + 2 * _KEYPOINT_ANCHORS])
                points.append(
                    KeyPoint(
                        x=int((int(kp_x) - resizer.x_pad) / scale),
                        y=int((int(kp_y) - resizer.y_pad) / scale),
                        score=kp_score,
                    )
                )
            keypoints.append(points)

            detections.append(
                DetectResult(
                    class_id=data.class_ids[n],
                    box=BoxRect(
                        left=int(clamp(x1, 0, data.width) / scale),
                        top=int(clamp(y1, 0, data.height) / scale),
                        right=int(clamp(x2, 0, data.width) / scale),
                        bottom=int(clamp(y2, 0, data.height) / scale),
                    ),
                    probability=data.obj_probs[i],
                    id=self._ids.next_id(),
                )
            )

        return YOLOv8PoseResult(detections, keypoints)

    def pose_estimation(self, result: DetectionResult) -> list[list[KeyPoint]]:
        """Return the keypoints of each detected object."""
        if not isinstance(result, YOLOv8PoseResult):
            raise TypeError("result is not a pose estimation result")
        return result.keypoints

    def _process_stride(
        self,
        tensor: np.ndarray,
        zp: int,
        scale: float,
        grid_h: int,
        grid_w: int,
        stride: int,
        data: StrideData,
        index: int,
    ) -> int:
        grid_len = grid_h * grid_w
        thres = quantize(unsigmoid(self.params.box_threshold), zp, scale)
        classes = self.params.object_class_num
        values = np.asarray(tensor, dtype=np.int8).astype(np.int32)
        if classes <= 0:
            return 0

        conf = values[_LOC_LEN * grid_len : (_LOC_LEN + classes) * grid_len]
        conf = conf.reshape(classes, grid_len)
        bins = np.arange(_DFL_BINS, dtype=np.float64)

        found = 0
        for pos, a in np.argwhere(conf.T >= thres):
            pos, a = int(pos), int(a)
            h, w = divmod(pos, grid_w)
            box_conf = sigmoid(dequantize(int(conf[a, pos]), zp, scale))

            raw = values[pos : pos + _LOC_LEN * grid_len : grid_len]
            loc = dequantize(raw, zp, scale).reshape(_LOC_LEN // _DFL_BINS, _DFL_BINS)
            d = [float(softmax(row) @ bins) for row in loc]

            left = (w + 0.5) - d[0]
            top = (h + 0.5) - d[1]
            right = (w + 0.5) + d[2]
            bottom = (h + 0.5) + d[3]

            cx = (left + right) / 2 * stride
            cy = (top + bottom) / 2 * stride
            bw = (right - left) * stride
            bh = (bottom - top) * stride

            data.filter_boxes.extend(
                (cx - bw / 2, cy - bh / 2, bw, bh, float(index + pos))
            )
            data.obj_probs.append(box_conf)
            data.class_ids.append(a)
            found += 1
        return found