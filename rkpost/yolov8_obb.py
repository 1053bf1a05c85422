"""Post processing for YOLOv8 oriented bounding box (OBB) models."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .common import (
    BoxRect,
    BoxRectMode,
    DetectionResult,
    DetectResult,
    IDGenerator,
    Letterbox,
    ModelOutputs,
    StrideData,
    clamp,
    dequantize,
    quantize,
    quick_sort_indices_desc,
    sigmoid,
    softmax,
    unsigmoid,
)

_LOC_LEN = 64
_DFL_BINS = 16
_BOX_FIELDS = 5
_PI_F32 = 3.1415927410125732


@dataclass
class YOLOv8obbParams:
    """Configuration for YOLOv8 OBB post processing."""

    box_threshold: float = 0.5
    nms_threshold: float = 0.4
    object_class_num: int = 15
    max_object_number: int = 64


def yolov8obb_dotav1_params() -> YOLOv8obbParams:
    """Parameters for a YOLOv8 OBB model trained on the DOTAv1 dataset."""
    return YOLOv8obbParams(
        box_threshold=0.5,
        nms_threshold=0.4,
        object_class_num=15,
        max_object_number=64,
    )


@dataclass
class YOLOv8obbResult(DetectionResult):
    """Rotated box detection results of a YOLOv8 OBB model."""


def rbbox_to_corners(rbbox: Sequence[float]) -> list[float]:
    """Corner coordinates (x0, y0, ..., x3, y3) of a rotated box (x, y, w, h, angle)."""
    x, y, w, h, angle = (float(v) for v in rbbox[:5])
    cx = x + w / 2
    cy = y + h / 2
    a_cos = math.cos(angle)
    a_sin = math.sin(angle)
    offsets = ((-w / 2, -h / 2), (-w / 2, h / 2), (w / 2, h / 2), (w / 2, -h / 2))
    corners: list[float] = []
    for ox, oy in offsets:
        corners.append(a_cos * ox - a_sin * oy + cx)
        corners.append(a_sin * ox + a_cos * oy + cy)
    return corners


def point_in_quadrilateral(pt_x: float, pt_y: float, corners: Sequence[float]) -> bool:
    """Whether a point lies inside (or on the edge of) a rectangle given by its corners."""
    ab0 = corners[2] - corners[0]
    ab1 = corners[3] - corners[1]
    ad0 = corners[6] - corners[0]
    ad1 = corners[7] - corners[1]
    ap0 = pt_x - corners[0]
    ap1 = pt_y - corners[1]

    abab = ab0 * ab0 + ab1 * ab1
    abap = ab0 * ap0 + ab1 * ap1
    adad = ad0 * ad0 + ad1 * ad1
    adap = ad0 * ap0 + ad1 * ap1
    return abab >= abap >= 0 and adad >= adap >= 0


def line_segment_intersection(
    pts1: Sequence[float], pts2: Sequence[float], i: int, j: int
) -> tuple[float, float] | None:
    """Intersection of edge i of the first box with edge j of the second, or None."""
    a = (pts1[2 * i], pts1[2 * i + 1])
    b = (pts1[2 * ((i + 1) % 4)], pts1[2 * ((i + 1) % 4) + 1])
    c = (pts2[2 * j], pts2[2 * j + 1])
    d = (pts2[2 * ((j + 1) % 4)], pts2[2 * ((j + 1) % 4) + 1])

    ba0 = b[0] - a[0]
    ba1 = b[1] - a[1]
    da0 = d[0] - a[0]
    ca0 = c[0] - a[0]
    da1 = d[1] - a[1]
    ca1 = c[1] - a[1]

    acd = da1 * ca0 > ca1 * da0
    bcd = (d[1] - b[1]) * (c[0] - b[0]) > (c[1] - b[1]) * (d[0] - b[0])
    if acd == bcd:
        return None

    abc = ca1 * ba0 > ba1 * ca0
    abd = da1 * ba0 > ba1 * da0
    if abc == abd:
        return None

    dc0 = d[0] - c[0]
    dc1 = d[1] - c[1]
    abba = a[0] * b[1] - b[0] * a[1]
    cddc = c[0] * d[1] - d[0] * c[1]
    dh = ba1 * dc0 - ba0 * dc1
    if dh == 0:
        return None
    dx = abba * dc0 - ba0 * cddc
    dy = abba * dc1 - ba1 * cddc
    return dx / dh, dy / dh


def _sort_convex(points: list[tuple[float, float]]) -> list[tuple[float, float]]:
    """Order the vertices of a convex polygon by angle around their centre."""
    if not points:
        return points
    cx = sum(p[0] for p in points) / len(points)
    cy = sum(p[1] for p in points) / len(points)

    def key(pt: tuple[float, float]) -> float:
        vx = pt[0] - cx
        vy = pt[1] - cy
        dist = math.hypot(vx, vy)
        if dist == 0:
            return 0.0
        vx /= dist
        vy /= dist
        return -2 - vx if vy < 0 else vx

    return sorted(points, key=key)


def polygon_area(points: Sequence[Sequence[float]]) -> float:
    """Area of a convex polygon with ordered vertices, by fan triangulation."""
    area = 0.0
    for k in range(1, len(points) - 1):
        a, b, c = points[0], points[k], points[k + 1]
        area += abs((a[0] - c[0]) * (b[1] - c[1]) - (a[1] - c[1]) * (b[0] - c[0])) / 2.0
    return area


def rotated_iou(box1: Sequence[float], box2: Sequence[float]) -> float:
    """Intersection over union of two rotated boxes (x, y, w, h, angle)."""
    corners1 = rbbox_to_corners(box1)
    corners2 = rbbox_to_corners(box2)

    pts: list[tuple[float, float]] = []
    for k in range(4):
        px, py = corners1[2 * k], corners1[2 * k + 1]
        if point_in_quadrilateral(px, py, corners2):
            pts.append((px, py))
    for k in range(4):
        px, py = corners2[2 * k], corners2[2 * k + 1]
        if point_in_quadrilateral(px, py, corners1):
            pts.append((px, py))
    for i in range(4):
        for j in range(4):
            hit = line_segment_intersection(corners1, corners2, i, j)
            if hit is not None:
                pts.append(hit)

    area = polygon_area(_sort_convex(pts))
    union = box1[2] * box1[3] + box2[2] * box2[3] - area
    if union == 0:
        return math.nan if area == 0 else math.copysign(math.inf, area)
    return area / union


def _rotated_nms(
    valid_count: int,
    boxes: Sequence[float],
    class_ids: Sequence[int],
    order: Sequence[int],
    filter_id: int,
    threshold: float,
) -> list[int]:
    order = list(order)
    for i in range(valid_count):
        if order[i] == -1 or class_ids[i] != filter_id:
            continue
        n = order[i]
        box_n = boxes[n * _BOX_FIELDS : (n + 1) * _BOX_FIELDS]
        for j in range(i + 1, valid_count):
            m = order[j]
            if m == -1:
                continue
            box_m = boxes[m * _BOX_FIELDS : (m + 1) * _BOX_FIELDS]
            if rotated_iou(box_n, box_m) > threshold:
                order[j] = -1
    return order


class YOLOv8obb:
    """Decodes quantized YOLOv8 OBB outputs into rotated box detections."""

    def __init__(self, params: YOLOv8obbParams | None = None) -> None:
        self.params = params if params is not None else yolov8obb_dotav1_params()
        self._ids = IDGenerator()

    def detect_objects(
        self, outputs: ModelOutputs, resizer: Letterbox
    ) -> YOLOv8obbResult | None:
        """Run detection on the model outputs; None when nothing is found."""
        data = StrideData.from_outputs(outputs)
        attrs = outputs.attributes
        angles = np.asarray(outputs.outputs[3].buf_int, dtype=np.int8).astype(np.int32)

        valid_count = 0
        index = 0
        for i in range(3):
            grid_h = int(attrs.dim_heights[i])
            grid_w = int(attrs.dim_widths[i])
            valid_count += self._process_stride(
                outputs.outputs[i].buf_int,
                angles,
                grid_h,
                grid_w,
                data.height // grid_h,
                data,
                attrs.zps[i],
                attrs.scales[i],
                attrs.zps[3],
                attrs.scales[3],
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
            order = _rotated_nms(
                valid_count,
                data.filter_boxes,
                data.class_ids,
                order,
                class_id,
                self.params.nms_threshold,
            )

        scale = resizer.scale_factor
        group: list[DetectResult] = []
        for i, n in enumerate(order):
            if n == -1 or len(group) >= self.params.max_object_number:
                continue
            base = n * _BOX_FIELDS
            x1 = data.filter_boxes[base] - resizer.x_pad
            y1 = data.filter_boxes[base + 1] - resizer.y_pad
            w = data.filter_boxes[base + 2]
            h = data.filter_boxes[base + 3]
            angle = data.filter_boxes[base + 4]
            group.append(
                DetectResult(
                    class_id=data.class_ids[n],
                    box=BoxRect(
                        x=int(clamp(x1, 0, data.width) / scale),
                        y=int(clamp(y1, 0, data.height) / scale),
                        width=int(clamp(w, 0, data.width) / scale),
                        height=int(clamp(h, 0, data.height) / scale),
                        angle=angle,
                        mode=BoxRectMode.XYWH,
                    ),
                    probability=data.obj_probs[i],
                    id=self._ids.next_id(),
                )
            )
        return YOLOv8obbResult(group)

    def _process_stride(
        self,
        tensor: np.ndarray,
        angles: np.ndarray,
        grid_h: int,
        grid_w: int,
        stride: int,
        data: StrideData,
        zp: int,
        scale: float,
        angle_zp: int,
        angle_scale: float,
        index: int,
    ) -> int:
        classes = self.params.object_class_num
        if classes <= 0:
            return 0
        grid_len = grid_h * grid_w
        thres = quantize(unsigmoid(self.params.box_threshold), zp, scale)
        values = np.asarray(tensor, dtype=np.int8).astype(np.int32)

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

            add_x = d[0] + d[2]
            add_y = d[1] + d[3]
            sub_x = (d[2] - d[0]) / 2
            sub_y = (d[3] - d[1]) / 2

            angle = dequantize(int(angles[index + pos]), angle_zp, angle_scale)
            angle = (angle - 0.25) * _PI_F32
            a_cos = math.cos(angle)
            a_sin = math.sin(angle)

            cx = ((sub_x * a_cos - sub_y * a_sin) + w + 0.5) * stride
            cy = ((sub_x * a_sin + sub_y * a_cos) + h + 0.5) * stride
            bw = add_x * stride
            bh = add_y * stride

            data.filter_boxes.extend((cx - bw / 2, cy - bh / 2, bw, bh, angle))
            data.obj_probs.append(box_conf)
            data.class_ids.append(a)
            found += 1
        return found