"""
Decode raw detector outputs into normalized, labeled boxes.

Two output layouts are understood:

* split: a scores tensor ``[batch, N, num_classes]`` and a boxes tensor
  ``[batch, N, 4]`` (class 0 is background and never reported);
* fused: records ``[image_id, class_id, score, xmin, ymin, xmax, ymax]``.

Only the first image of a batch is decoded.
"""

from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .backend import FUSED_RECORD_SIZE, OutputLayout, Tensor
from .errors import InferenceError

COCO_LABELS: Tuple[str, ...] = (
    "background", "person", "bicycle", "car", "motorcycle", "airplane", "bus",
    "train", "truck", "boat", "traffic light", "fire hydrant", "stop sign",
    "parking meter", "bench", "bird", "cat", "dog", "horse", "sheep", "cow",
    "elephant", "bear", "zebra", "giraffe", "backpack", "umbrella", "handbag",
    "tie", "suitcase", "frisbee", "skis", "snowboard", "sports ball", "kite",
    "baseball bat", "baseball glove", "skateboard", "surfboard", "tennis racket",
    "bottle", "wine glass", "cup", "fork", "knife", "spoon", "bowl", "banana",
    "apple", "sandwich", "orange", "broccoli", "carrot", "hot dog", "pizza",
    "donut", "cake", "chair", "couch", "potted plant", "bed", "dining table",
    "toilet", "tv", "laptop", "mouse", "remote", "keyboard", "cell phone",
    "microwave", "oven", "toaster", "sink", "refrigerator", "book", "clock",
    "vase", "scissors", "teddy bear", "hair drier", "toothbrush",
)

BoxMapper = Callable[[float, float], Tuple[float, float]]


@dataclass(frozen=True)
class Detection:
    label: str
    score: float
    xmin: float
    ymin: float
    xmax: float
    ymax: float

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def label_for(class_id: int, labels: Sequence[str]) -> str:
    if 0 <= class_id < len(labels):
        return labels[class_id]
    return str(class_id)


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


def make_detection(
    label: str,
    score: float,
    box: Sequence[float],
    mapper: Optional[BoxMapper] = None,
) -> Detection:
    x1, y1, x2, y2 = (float(v) for v in box[:4])
    if mapper is not None:
        x1, y1 = mapper(x1, y1)
        x2, y2 = mapper(x2, y2)
    x1, x2 = sorted((_clamp(x1), _clamp(x2)))
    y1, y2 = sorted((_clamp(y1), _clamp(y2)))
    return Detection(label=label, score=_clamp(score), xmin=x1, ymin=y1, xmax=x2, ymax=y2)


def decode_split(
    scores: Tensor,
    boxes: Tensor,
    threshold: float,
    labels: Sequence[str] = COCO_LABELS,
    mapper: Optional[BoxMapper] = None,
) -> List[Detection]:
    if len(scores.dims) != 3:
        raise InferenceError(f"scores tensor must be [batch, N, classes], got {list(scores.dims)}")
    _, num_detections, num_classes = scores.dims
    if num_classes < 2 or num_detections == 0:
        return []
    score_rows = scores.as_array()[0]
    box_rows = np.asarray(boxes.data, dtype=np.float32).reshape(-1, 4)
    if box_rows.shape[0] < num_detections:
        raise InferenceError(
            f"boxes tensor holds {box_rows.shape[0]} boxes for {num_detections} detections"
        )

    detections: List[Detection] = []
    for index in range(num_detections):
        candidates = score_rows[index, 1:]
        best = int(np.argmax(candidates))
        score = float(candidates[best])
        if score < threshold:
            continue
        class_id = best + 1
        detections.append(make_detection(label_for(class_id, labels), score, box_rows[index], mapper))
    return detections


def decode_fused(
    records: Tensor,
    threshold: float,
    labels: Sequence[str] = COCO_LABELS,
    mapper: Optional[BoxMapper] = None,
) -> List[Detection]:
    if not records.dims or records.dims[-1] != FUSED_RECORD_SIZE:
        raise InferenceError(f"fused tensor must end in {FUSED_RECORD_SIZE} values, got {list(records.dims)}")
    rows = np.asarray(records.data, dtype=np.float32).reshape(-1, FUSED_RECORD_SIZE)
    detections: List[Detection] = []
    for image_id, class_id, score, xmin, ymin, xmax, ymax in rows:
        if image_id < 0:
            # padding rows
            continue
        if score < threshold:
            continue
        detections.append(
            make_detection(label_for(int(class_id), labels), float(score), (xmin, ymin, xmax, ymax), mapper)
        )
    return detections


def infer_layout(outputs: Dict[str, Tensor]) -> Tuple[OutputLayout, List[str]]:
    names = list(outputs)
    if "scores" in outputs and "boxes" in outputs:
        return OutputLayout.SPLIT, ["scores", "boxes"]
    for name in names:
        if outputs[name].dims and outputs[name].dims[-1] == FUSED_RECORD_SIZE:
            return OutputLayout.FUSED, [name]
    if len(names) >= 2:
        return OutputLayout.SPLIT, names[:2]
    raise InferenceError(f"Unrecognized detector outputs: {names}")


def decode_outputs(
    outputs: Dict[str, Tensor],
    layout: OutputLayout,
    output_names: Sequence[str],
    threshold: float,
    labels: Sequence[str] = COCO_LABELS,
    mapper: Optional[BoxMapper] = None,
) -> List[Detection]:
    if layout is OutputLayout.AUTO or any(name not in outputs for name in output_names):
        layout, output_names = infer_layout(outputs)
    if layout is OutputLayout.SPLIT:
        scores, boxes = (outputs[name] for name in output_names[:2])
        if scores.dims[-1:] == (4,) and boxes.dims[-1:] != (4,):
            scores, boxes = boxes, scores
        return decode_split(scores, boxes, threshold, labels, mapper)
    return decode_fused(outputs[output_names[0]], threshold, labels, mapper)
