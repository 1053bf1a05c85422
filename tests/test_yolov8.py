import numpy as np
import pytest

from rkpost.common import (
    BoxRect,
    Letterbox,
    ModelOutputs,
    OutputAttributes,
    OutputTensor,
)
from rkpost.yolov8 import YOLOv8, YOLOv8Params, YOLOv8Result, yolov8_coco_params

GRIDS = (4, 2, 1)
DFL_LEN = 4
SCALE = 0.01


def make_outputs(cells=(), classes=2, score_sum=None):
    tensors, heights, widths = [], [], []
    for branch, g in enumerate(GRIDS):
        grid_len = g * g
        box = np.zeros(4 * DFL_LEN * grid_len, dtype=np.int8)
        score = np.full(classes * grid_len, -128, dtype=np.int8)
        for b, i, j, c, q in cells:
            if b == branch:
                score[c * grid_len + i * g + j] = q
        branch_tensors = [box, score]
        if score_sum is not None:
            branch_tensors.append(np.full(grid_len, score_sum, dtype=np.int8))
        for t in branch_tensors:
            tensors.append(OutputTensor(buf_int=t))
            heights.append(g)
            widths.append(g)
    n = len(tensors)
    attrs = OutputAttributes(
        scales=[SCALE] * n,
        zps=[0] * n,
        dim_heights=heights,
        dim_widths=widths,
        dim_for_dfl=4 * DFL_LEN,
        io_number=n,
    )
    return ModelOutputs(tensors, attrs, 32, 32)


def plain():
    return Letterbox(src_width=32, src_height=32)


def model(**kwargs):
    return YOLOv8(YOLOv8Params(object_class_num=2, **kwargs))


def test_no_detection_returns_none():
    assert model().detect_objects(make_outputs(), plain()) is None


def test_single_detection():
    result = model().detect_objects(make_outputs([(0, 2, 2, 1, 80)]), plain())
    assert isinstance(result, YOLOv8Result)
    dets = result.detect_results()
    assert len(dets) == 1
    assert dets[0].class_id == 1
    assert dets[0].probability == pytest.approx(0.8)
    assert dets[0].box == BoxRect(left=8, top=8, right=32, bottom=32)


def test_score_at_threshold_is_rejected():
    assert model().detect_objects(make_outputs([(0, 1, 1, 0, 25)]), plain()) is None


def test_overlapping_same_class_suppressed():
    outputs = make_outputs([(0, 2, 2, 1, 80), (0, 2, 1, 1, 60)])
    dets = model().detect_objects(outputs, plain()).detect_results()
    assert len(dets) == 1
    assert dets[0].probability == pytest.approx(0.8)


def test_distant_boxes_kept_in_probability_order():
    outputs = make_outputs([(0, 0, 0, 0, 50), (0, 3, 3, 1, 90)])
    dets = model().detect_objects(outputs, plain()).detect_results()
    assert [d.class_id for d in dets] == [1, 0]
    assert dets[0].probability > dets[1].probability


def test_max_object_number_limits_results():
    outputs = make_outputs([(0, 0, 0, 0, 50), (0, 3, 3, 1, 90)])
    dets = model(max_object_number=1).detect_objects(outputs, plain()).detect_results()
    assert len(dets) == 1
    assert dets[0].probability == pytest.approx(0.9)


def test_score_sum_filters_cells():
    cells = [(0, 2, 2, 1, 80)]
    yolo = model()
    assert yolo.detect_objects(make_outputs(cells, score_sum=-128), plain()) is None
    result = yolo.detect_objects(make_outputs(cells, score_sum=100), plain())
    assert len(result.detect_results()) == 1


def test_padding_and_scale_applied():
    outputs = make_outputs([(0, 2, 2, 1, 80)])
    base = model().detect_objects(outputs, plain()).detect_results()[0].box
    padded = model().detect_objects(
        outputs, Letterbox(src_width=32, src_height=32, x_pad=4)
    ).detect_results()[0].box
    assert padded.left == base.left - 4
    assert padded.top == base.top
    scaled = model().detect_objects(
        outputs, Letterbox(src_width=64, src_height=64, scale_factor=0.5)
    ).detect_results()[0].box
    assert scaled.left == base.left * 2
    assert scaled.bottom == base.bottom * 2


def test_ids_increment_across_calls():
    yolo = model()
    outputs = make_outputs([(0, 2, 2, 1, 80)])
    first = yolo.detect_objects(outputs, plain()).detect_results()[0].id
    second = yolo.detect_objects(outputs, plain()).detect_results()[0].id
    assert (first, second) == (1, 2)


def test_coco_params_match_defaults():
    params = yolov8_coco_params()
    assert params == YOLOv8Params(
        box_threshold=0.25, nms_threshold=0.45, object_class_num=80, max_object_number=64
    )