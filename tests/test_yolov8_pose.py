import numpy as np
import pytest

from rkpost.common import (
    DetectionResult,
    Letterbox,
    ModelOutputs,
    OutputAttributes,
    OutputTensor,
    sigmoid,
)
from rkpost.yolov8_pose import (
    YOLOv8Pose,
    YOLOv8PoseParams,
    YOLOv8PoseResult,
    yolov8_pose_coco_params,
)

GRIDS = [(4, 4), (2, 2), (1, 1)]
SCALE = 0.1
ANCHORS = 8400


def make_outputs(scores=None, keypoints=None, classes=1):
    scores = scores or {}
    keypoints = keypoints or {}
    tensors = []
    for b, (gh, gw) in enumerate(GRIDS):
        gl = gh * gw
        box = np.zeros((64 + classes) * gl, dtype=np.int8)
        box[64 * gl :] = -100
        for (bb, pos, c), v in scores.items():
            if bb == b:
                box[(64 + c) * gl + pos] = v
        tensors.append(OutputTensor(buf_int=box))
    kp = np.zeros(17 * 3 * ANCHORS, dtype=np.float32)
    for anchor, (x, y, score) in keypoints.items():
        for j in range(17):
            kp[j * 3 * ANCHORS + anchor] = x + j
            kp[j * 3 * ANCHORS + ANCHORS + anchor] = y + j
            kp[j * 3 * ANCHORS + 2 * ANCHORS + anchor] = score
    tensors.append(OutputTensor(buf_float=kp))
    attrs = OutputAttributes(
        scales=[SCALE] * 4,
        zps=[0] * 4,
        dim_heights=[gh for gh, _ in GRIDS] + [1],
        dim_widths=[gw for _, gw in GRIDS] + [1],
    )
    return ModelOutputs(tensors, attrs, 32, 32)


def test_no_detection_returns_none():
    assert YOLOv8Pose().detect_objects(make_outputs(), Letterbox(32, 32)) is None


def test_single_detection_with_keypoints():
    outputs = make_outputs({(0, 6, 0): 20}, {6: (10, 20, 0.5)})
    result = YOLOv8Pose().detect_objects(outputs, Letterbox(32, 32))
    assert isinstance(result, YOLOv8PoseResult)
    dets = result.detect_results()
    assert len(dets) == 1
    assert dets[0].class_id == 0
    assert dets[0].probability == pytest.approx(sigmoid(2.0))
    box = dets[0].box
    assert (box.left, box.top, box.right, box.bottom) == (0, 0, 32, 32)
    points = result.keypoints[0]
    assert len(points) == 17
    assert [p.x for p in points] == [10 + j for j in range(17)]
    assert [p.y for p in points] == [20 + j for j in range(17)]
    assert all(p.score == pytest.approx(0.5) for p in points)


def test_keypoint_index_accumulates_across_branches():
    outputs = make_outputs({(1, 1, 0): 20}, {17: (3, 4, 0.25)})
    result = YOLOv8Pose().detect_objects(outputs, Letterbox(32, 32))
    assert result.keypoints[0][0].x == 3
    assert result.keypoints[0][0].y == 4


def test_keypoints_mapped_through_letterbox():
    outputs = make_outputs({(0, 6, 0): 20}, {6: (12.7, 22.0, 0.5)})
    result = YOLOv8Pose().detect_objects(
        outputs, Letterbox(16, 16, x_pad=2, y_pad=2, scale_factor=2.0)
    )
    assert result.keypoints[0][0].x == 5


def test_nms_keeps_highest_and_its_keypoints():
    outputs = make_outputs(
        {(0, 5, 0): 30, (0, 6, 0): 20}, {5: (1, 1, 0.9), 6: (7, 7, 0.1)}
    )
    result = YOLOv8Pose().detect_objects(outputs, Letterbox(32, 32))
    dets = result.detect_results()
    assert len(dets) == 1
    assert dets[0].probability == pytest.approx(sigmoid(3.0))
    assert result.keypoints[0][0].x == 1


def test_max_object_number_limits_results():
    outputs = make_outputs({(0, 5, 0): 30, (0, 6, 1): 20}, classes=2)
    params = YOLOv8PoseParams(object_class_num=2, max_object_number=1)
    result = YOLOv8Pose(params).detect_objects(outputs, Letterbox(32, 32))
    assert len(result.detect_results()) == 1
    assert len(result.keypoints) == 1


def test_different_classes_both_kept():
    outputs = make_outputs({(0, 5, 0): 30, (0, 6, 1): 20}, classes=2)
    params = YOLOv8PoseParams(object_class_num=2)
    result = YOLOv8Pose(params).detect_objects(outputs, Letterbox(32, 32))
    assert sorted(d.class_id for d in result.detect_results()) == [0, 1]
    assert len(result.keypoints) == len(result.detect_results())


def test_pose_estimation_returns_keypoints():
    pose = YOLOv8Pose()
    outputs = make_outputs({(0, 6, 0): 20}, {6: (10, 20, 0.5)})
    result = pose.detect_objects(outputs, Letterbox(32, 32))
    assert pose.pose_estimation(result) is result.keypoints


def test_pose_estimation_rejects_other_results():
    with pytest.raises(TypeError):
        YOLOv8Pose().pose_estimation(DetectionResult())


def test_default_params_are_coco():
    assert YOLOv8Pose().params == yolov8_pose_coco_params()