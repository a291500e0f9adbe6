import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .backend import InferenceBackend, ModelInfo, OutputLayout, Tensor
from .errors import InferenceError, ModelLoadError
from .frame_queue import Frame
from .postprocessing import COCO_LABELS, Detection, decode_outputs
from .preprocessing import preprocess


LOGGER = logging.getLogger("peer_detect.detector")


@dataclass
class ModelConfig:
    # MobileNet-SSD defaults: [batch, channels, height, width]
    input_shape: Tuple[int, int, int, int] = (1, 3, 300, 300)
    mean_values: Tuple[float, float, float] = (127.5, 127.5, 127.5)
    standard_scale: float = 127.5
    channel_order: str = "RGB"
    letterbox: bool = False
    score_threshold: float = 0.5
    input_name: str = "data"
    output_layout: OutputLayout = OutputLayout.SPLIT
    output_names: List[str] = field(default_factory=lambda: ["scores", "boxes"])
    class_labels: Sequence[str] = COCO_LABELS

    @classmethod
    def from_runtime_config(cls, runtime_config: Dict[str, Any]) -> "ModelConfig":
        return cls(
            input_shape=(1, 3, int(runtime_config["input_height"]), int(runtime_config["input_width"])),
            mean_values=tuple(float(v) for v in runtime_config["mean_values"]),
            standard_scale=float(runtime_config["standard_scale"]),
            channel_order=str(runtime_config["channel_order"]),
            letterbox=bool(runtime_config["letterbox"]),
            score_threshold=float(runtime_config["score_threshold"]),
        )


@dataclass(frozen=True)
class DetectionResult:
    frame_id: int
    capture_timestamp: float
    inference_timestamp: float
    inference_duration: float
    detections: Tuple[Detection, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        """Wire form sent to browser peers; times are in milliseconds."""

        return {
            "frame_id": self.frame_id,
            "capture_ts": int(round(self.capture_timestamp * 1000)),
            "inference_ts": int(round(self.inference_timestamp * 1000)),
            "inference_time": round(self.inference_duration * 1000, 3),
            "detections": [detection.to_dict() for detection in self.detections],
        }


def static_input_shape(info: ModelInfo) -> Optional[Tuple[int, int, int, int]]:
    shape = info.input_shape
    if len(shape) == 4 and all(isinstance(dim, int) and dim > 0 for dim in shape[1:]):
        return (1, int(shape[1]), int(shape[2]), int(shape[3]))
    return None


class ObjectDetector:
    def __init__(self, backend: InferenceBackend, config: Optional[ModelConfig] = None):
        self.backend = backend
        self.config = config or ModelConfig()
        self.model_info: Optional[ModelInfo] = None

    @property
    def loaded(self) -> bool:
        return self.model_info is not None

    def reconfigure(self, config: ModelConfig) -> ModelConfig:
        """Swap preprocessing settings, keeping what the loaded model fixed."""

        if self.model_info is not None:
            config.input_name = self.config.input_name
            config.output_layout = self.config.output_layout
            config.output_names = list(self.config.output_names)
            if static_input_shape(self.model_info) is not None:
                config.input_shape = self.config.input_shape
        config.class_labels = self.config.class_labels
        self.config = config
        return config

    def load_model(self, path: Union[str, Path]) -> ModelInfo:
        try:
            info = self.backend.load_model(path)
        except ModelLoadError:
            raise
        except Exception as exc:
            raise ModelLoadError(f"Failed to load object detection model: {exc}") from exc

        if info.input_names:
            self.config.input_name = info.input_names[0]
        shape = static_input_shape(info)
        if shape is not None:
            self.config.input_shape = shape
        layout, names = info.output_layout()
        self.config.output_layout = layout
        if names:
            self.config.output_names = names
        self.model_info = info
        LOGGER.info(
            "Detector ready: input=%s shape=%s layout=%s outputs=%s",
            self.config.input_name,
            self.config.input_shape,
            layout.value,
            self.config.output_names,
        )
        return info

    def detect(self, frame: Frame) -> DetectionResult:
        if not self.loaded:
            raise ModelLoadError("Model not loaded")

        started = time.time()
        config = self.config
        try:
            prepared = preprocess(
                frame.image,
                config.input_shape,
                config.mean_values,
                config.standard_scale,
                channel_order=config.channel_order,
                letterbox=config.letterbox,
            )
        except ValueError as exc:
            raise InferenceError(f"Preprocessing failed: {exc}") from exc

        feeds = {config.input_name: Tensor(data_type="float32", data=prepared.data, dims=prepared.shape)}
        try:
            outputs = self.backend.run(feeds)
        except InferenceError:
            raise
        except Exception as exc:
            raise InferenceError(f"Inference failed: {exc}") from exc

        mapper = prepared.to_frame_coords if config.letterbox else None
        detections = decode_outputs(
            outputs,
            config.output_layout,
            config.output_names,
            config.score_threshold,
            labels=config.class_labels,
            mapper=mapper,
        )
        finished = time.time()
        return DetectionResult(
            frame_id=frame.frame_id,
            capture_timestamp=frame.captured_at,
            inference_timestamp=finished,
            inference_duration=finished - started,
            detections=tuple(detections),
        )
