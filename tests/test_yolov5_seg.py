import numpy as np
import pytest

from rkpost.common import (
    PROTO_SIZE,
    DetectionResult,
    Letterbox,
    ModelOutputs,
    OutputAttributes,
    OutputTensor,
    box_reverse,
)
from rkpost.yolov5_seg import YOLOv5Seg, YOLOv5SegParams, yolov5_seg_coco_params

SCALE = 1.0 / 64
SIZE = 32
GRIDS = [4, 2, 1]
BOX_SIZE = 85


def _make_outputs(cells, proto_value=0, seg_value=0):
    """cells: list of (anchor, pos, class_id) placed on the first stride."""
    tensors = []
    for grid in GRIDS:
        grid_len = grid * grid
        tensors.append(np.zeros(3 * BOX_SIZE * grid_len, dtype=np.int8))
        tensors.append(np.zeros(3 * 32 * grid_len, dtype=np.int8))
    grid_len = GRIDS[0] * GRIDS[0]
    box, seg = tensors[0], tensors[1]
    for a, pos, class_id in cells:
        base = BOX_SIZE * a * grid_len + pos
        box[base] = 32
        box[base + grid_len] = 32
        box[base + 2 * grid_len] = 32
        box[base + 3 * grid_len] = 32
        box[base + 4 * grid_len] = 64
        box[base + (5 + class_id) * grid_len] = 64
        seg_base = 32 * a * grid_len + pos
        seg[seg_base : seg_base + 32 * grid_len : grid_len] = seg_value
    tensors.append(np.full(PROTO_SIZE, proto_value, dtype=np.int8))

    dims = [g for g in GRIDS for _ in range(2)] + [160]
    attrs = OutputAttributes(
        scales=[SCALE] * 7,
        zps=[0] * 7,
        dim_heights=dims,
        dim_widths=dims,
    )
    return ModelOutputs(
        outputs=[OutputTensor(buf_int=t) for t in tensors],
        attributes=attrs,
        input_width=SIZE,
        input_height=SIZE,
    )


def _plain_letterbox():
    return Letterbox(src_width=SIZE, src_height=SIZE)


def test_default_params_match_coco():
    assert YOLOv5Seg().params == yolov5_seg_coco_params()


def test_no_detection_returns_none():
    outputs = _make_outputs([])
    assert YOLOv5Seg().detect_objects(outputs, _plain_letterbox()) is None


def test_single_detection_class_and_probability():
    outputs = _make_outputs([(0, 6, 3)])
    result = YOLOv5Seg().detect_objects(outputs, _plain_letterbox())
    dets = result.detect_results()
    assert len(dets) == 1
    assert dets[0].class_id == 3
    assert dets[0].probability == pytest.approx(1.0)
    box = dets[0].box
    assert 0 <= box.left < box.right <= SIZE
    assert 0 <= box.top < box.bottom <= SIZE


def test_letterbox_maps_boxes_back_to_source():
    base = YOLOv5Seg().detect_objects(_make_outputs([(0, 6, 3)]), _plain_letterbox())
    letterbox = Letterbox(src_width=64, src_height=64, x_pad=4, y_pad=2, scale_factor=2.0)
    scaled = YOLOv5Seg().detect_objects(_make_outputs([(0, 6, 3)]), letterbox)
    b0 = base.detect_results()[0].box
    b1 = scaled.detect_results()[0].box
    assert b1.left == box_reverse(b0.left, 4, 2.0)
    assert b1.top == box_reverse(b0.top, 2, 2.0)
    assert b1.right == box_reverse(b0.right, 4, 2.0)
    assert b1.bottom == box_reverse(b0.bottom, 2, 2.0)


def test_max_object_number_limits_results():
    cells = [(0, 6, 3), (0, 0, 7)]
    full = YOLOv5Seg().detect_objects(_make_outputs(cells), _plain_letterbox())
    assert len(full.detect_results()) == 2
    params = YOLOv5SegParams(max_object_number=1)
    limited = YOLOv5Seg(params).detect_objects(_make_outputs(cells), _plain_letterbox())
    assert len(limited.detect_results()) == 1


def test_ids_increase_between_calls():
    model = YOLOv5Seg()
    first = model.detect_objects(_make_outputs([(0, 6, 3)]), _plain_letterbox())
    second = model.detect_objects(_make_outputs([(0, 6, 3)]), _plain_letterbox())
    assert second.detect_results()[0].id > first.detect_results()[0].id


def test_segment_mask_covers_box_only():
    model = YOLOv5Seg()
    outputs = _make_outputs([(0, 6, 3)], proto_value=64, seg_value=64)
    result = model.detect_objects(outputs, _plain_letterbox())
    mask = np.asarray(model.segment_mask(result, _plain_letterbox()).mask).ravel()
    assert mask.size == SIZE * SIZE
    grid = mask.reshape(SIZE, SIZE)
    box = result.detect_results()[0].box
    assert set(np.unique(grid).tolist()) <= {0, 1}
    assert int(np.count_nonzero(grid)) == (box.right - box.left) * (box.bottom - box.top)
    assert np.all(grid[box.top : box.bottom, box.left : box.right] == 1)


def test_segment_mask_empty_for_zero_proto():
    model = YOLOv5Seg()
    outputs = _make_outputs([(0, 6, 3)], proto_value=0, seg_value=64)
    result = model.detect_objects(outputs, _plain_letterbox())
    mask = np.asarray(model.segment_mask(result, _plain_letterbox()).mask)
    assert int(np.count_nonzero(mask)) == 0


def test_track_mask_strips_untracked_objects():
    model = YOLOv5Seg()
    outputs = _make_outputs([(0, 6, 3)], proto_value=64, seg_value=64)
    result = model.detect_objects(outputs, _plain_letterbox())
    det_id = result.detect_results()[0].id
    tracked = np.asarray(model.track_mask(result, [det_id], _plain_letterbox()).mask)
    full = np.asarray(model.segment_mask(result, _plain_letterbox()).mask)
    assert np.array_equal(tracked, full)
    stripped = np.asarray(model.track_mask(result, [det_id + 100], _plain_letterbox()).mask)
    assert int(np.count_nonzero(stripped)) == 0


def test_segment_mask_rejects_plain_result():
    with pytest.raises(TypeError):
        YOLOv5Seg().segment_mask(DetectionResult(), _plain_letterbox())