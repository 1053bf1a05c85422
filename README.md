# rkpost

Post-processing for the raw outputs of quantized vision models. It turns int8 or
float output tensors into bounding boxes, class ids, confidence scores,
keypoints, segmentation masks and recognised text. It depends only on numpy.

## Installation

```
pip install .
```

Install with the test extra to run the test suite:

```
pip install ".[test]"
pytest
```

## What it covers

| Task | Module | Processor | Default parameters |
| --- | --- | --- | --- |
| Detection | `rkpost.yolov5` | `YOLOv5` | `yolov5_coco_params()` |
| Detection | `rkpost.yolox` | `YOLOX` | `yolox_coco_params()` |
| Detection | `rkpost.yolov8` | `YOLOv8` | `yolov8_coco_params()` |
| Detection | `rkpost.yolov10` | `YOLOv10` | `yolov10_coco_params()` |
| Detection | `rkpost.yolov11` | `YOLOv11` | `yolov11_coco_params()` |
| Oriented boxes | `rkpost.yolov8_obb` | `YOLOv8obb` | `yolov8obb_dotav1_params()` |
| Pose estimation | `rkpost.yolov8_pose` | `YOLOv8Pose` | `yolov8_pose_coco_params()` |
| Instance segmentation | `rkpost.yolov5_seg` | `YOLOv5Seg` | `yolov5_seg_coco_params()` |
| Instance segmentation | `rkpost.yolov8_seg` | `YOLOv8Seg` | `yolov8_seg_coco_params()` |
| Text recognition | `rkpost.ppocr_recognise` | `PPOCRRecognise` | (none) |
| Licence plate reading | `rkpost.lprnet` | `LPRNet` | (none) |

Each processor takes a parameter dataclass (for example `YOLOv8Params`). The
detection processors use their default parameters when none are given.

## Inputs

Model outputs are described with the types in `rkpost.common`:

- `OutputTensor` holds one output as `buf_int` (int8) and `buf_float`
  (float32). Both are flattened to one dimension.
- `OutputAttributes` holds the `scales`, `zps` (zero points), `dim_heights`,
  `dim_widths`, `dim_for_dfl` and `io_number` of the outputs.
- `ModelOutputs` bundles the list of tensors, the attributes and the model's
  `input_width` and `input_height`.
- `Letterbox` describes how the source image was fitted to the model input:
  `src_width`, `src_height`, `x_pad`, `y_pad` and `scale_factor`. Boxes are
  mapped back onto the source image with it.

## Detection

```python
from rkpost.yolov8 import YOLOv8, yolov8_coco_params

detector = YOLOv8(yolov8_coco_params())
result = detector.detect_objects(outputs, resizer)
if result is not None:
    for det in result.detect_results():
        print(det.id, det.class_id, det.probability, det.box)
```

`detect_objects` returns `None` when no candidate passes the box threshold.
Candidates are sorted by probability and suppressed per class with
non-maximum suppression (YOLOv10 skips suppression), and at most
`max_object_number` detections are returned. Each detection is a
`DetectResult` with a `BoxRect` box in left/top/right/bottom form and an `id`
taken from the processor's `IDGenerator`, which counts up from 1 for the
lifetime of the processor.

`YOLOv8obb` returns boxes in `BoxRectMode.XYWH` form, with `x`, `y`, `width`,
`height` and a rotation `angle` in radians.

## Pose estimation

`YOLOv8Pose.detect_objects` returns a `YOLOv8PoseResult` whose `keypoints`
hold one list of `KeyPoint` values (`x`, `y`, `score`) per detection.
`YOLOv8Pose.pose_estimation(result)` returns the same lists and raises
`TypeError` for any other kind of result.

## Segmentation

```python
from rkpost.yolov8_seg import YOLOv8Seg, yolov8_seg_coco_params

seg = YOLOv8Seg(yolov8_seg_coco_params())
result = seg.detect_objects(outputs, resizer)
if result is not None:
    mask = seg.segment_mask(result, resizer).mask
```

The result is a `SegmentationResult`, carrying a `SegmentData` with the
prototype masks and the boxes in model input coordinates. `segment_mask`
returns a `SegMask` whose `mask` is a uint8 array the size of the source
image, in which each pixel holds 0 for background or the 1-based index of the
detection it belongs to. `track_mask(result, tracked_ids, resizer)` builds the
same mask but leaves out detections whose `id` is not in `tracked_ids`. Both
raise `TypeError` when given a result without segmentation data.

The building blocks are in `rkpost.segment`: `matmul_mask`,
`resize_bilinear`, `crop_mask_with_id`, `seg_reverse`, `segment_mask` and
`track_mask`.

## Text and plate recognition

```python
from rkpost.lprnet import LPRNet, LPRNetParams

chars = ["0", "1", "2", "3", "4", "5", "6", "7", "8", "9", "-"]
reader = LPRNet(LPRNetParams(plate_positions=18, plate_chars=chars))
plates = reader.read_plates(outputs)
```

`LPRNet` treats the last character as the blank label, drops repeats and
blanks, and returns one string per output. `PPOCRRecognise.recognise` decodes
each output the same greedy way into a `PPOCRRecogniseResult` with `text` and
a mean `score`; when the output points past the character list the result is
the text `"ERROR ModelChars"` with score 0. Both raise `ValueError` when an
output holds fewer values than the parameters call for.

## Building blocks

`rkpost.common` provides `dequantize`, `quantize`, `sigmoid`, `unsigmoid`,
`softmax`, `clip`, `clamp`, `compute_dfl`, `calculate_overlap`, `nms`,
`quick_sort_indices_desc` and `box_reverse`. `rkpost.yolov8_obb` provides the
rotated-box geometry: `rbbox_to_corners`, `point_in_quadrilateral`,
`line_segment_intersection`, `polygon_area` and `rotated_iou`.

## What it does not do

- It does not load or run models; it only decodes outputs that were
  produced elsewhere.
- It does not resize or pad input images; a `Letterbox` describing that step
  must be supplied by the caller.
- It does not track objects across frames; `track_mask` only takes the ids
  of detections that a tracker kept.
- It does not find text regions in an image; `PPOCRRecognise` only reads
  text from recognition outputs.