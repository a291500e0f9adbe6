"""
Inference backend interface and the onnxruntime implementation.

The detector only talks to a backend through ``load_model`` and ``run``, with
tensors passed as flat buffers plus their dimensions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from .errors import InferenceError, ModelLoadError


LOGGER = logging.getLogger("peer_detect.backend")

FUSED_RECORD_SIZE = 7


class OutputLayout(str, Enum):
    SPLIT = "split"
    FUSED = "fused"
    AUTO = "auto"


@dataclass(frozen=True)
class Tensor:
    data_type: str
    data: np.ndarray
    dims: Tuple[int, ...]

    @classmethod
    def from_array(cls, array: np.ndarray) -> "Tensor":
        array = np.asarray(array)
        return cls(data_type=str(array.dtype), data=array.reshape(-1), dims=tuple(int(d) for d in array.shape))

    def as_array(self) -> np.ndarray:
        return np.asarray(self.data).reshape(self.dims)


@dataclass
class ModelInfo:
    input_names: List[str]
    output_names: List[str]
    input_shape: List[Optional[int]] = field(default_factory=list)
    output_shapes: Dict[str, List[Optional[int]]] = field(default_factory=dict)

    def output_layout(self) -> Tuple[OutputLayout, List[str]]:
        """
        Decide how raw outputs should be decoded, returning the layout and the
        output names it reads (scores/boxes for split, records for fused).
        """

        names = list(self.output_names)
        if len(names) >= 2:
            lowered = {name.lower(): name for name in names}
            if "scores" in lowered and "boxes" in lowered:
                return OutputLayout.SPLIT, [lowered["scores"], lowered["boxes"]]
            return OutputLayout.SPLIT, names[:2]
        if len(names) == 1:
            shape = self.output_shapes.get(names[0]) or []
            if shape and shape[-1] == FUSED_RECORD_SIZE:
                return OutputLayout.FUSED, names
        return OutputLayout.AUTO, names


class InferenceBackend(Protocol):
    def load_model(self, path: Union[str, Path]) -> ModelInfo:
        ...

    def run(self, feeds: Dict[str, Tensor]) -> Dict[str, Tensor]:
        ...


def _static_dims(shape: Sequence[Any]) -> List[Optional[int]]:
    return [dim if isinstance(dim, int) else None for dim in shape]


class OnnxRuntimeBackend:
    """Runs ONNX models through an onnxruntime ``InferenceSession``."""

    def __init__(self, providers: Optional[Sequence[str]] = None):
        self.providers = list(providers) if providers else ["CPUExecutionProvider"]
        self.session = None
        self.info: Optional[ModelInfo] = None

    def load_model(self, path: Union[str, Path]) -> ModelInfo:
        import onnxruntime as ort

        model_path = Path(path)
        if not model_path.exists():
            raise ModelLoadError(f"Model not found: {model_path}")
        try:
            session = ort.InferenceSession(str(model_path), providers=self.providers)
        except Exception as exc:
            raise ModelLoadError(f"Failed to load model {model_path}: {exc}") from exc

        inputs = session.get_inputs()
        outputs = session.get_outputs()
        info = ModelInfo(
            input_names=[node.name for node in inputs],
            output_names=[node.name for node in outputs],
            input_shape=_static_dims(inputs[0].shape) if inputs else [],
            output_shapes={node.name: _static_dims(node.shape) for node in outputs},
        )
        self.session = session
        self.info = info
        LOGGER.info(
            "Model loaded from %s using %s (inputs=%s outputs=%s)",
            model_path,
            session.get_providers()[0],
            info.input_names,
            info.output_names,
        )
        return info

    def run(self, feeds: Dict[str, Tensor]) -> Dict[str, Tensor]:
        if self.session is None:
            raise InferenceError("Model not loaded")
        arrays = {name: tensor.as_array() for name, tensor in feeds.items()}
        try:
            results = self.session.run(None, arrays)
        except Exception as exc:
            raise InferenceError(f"Inference failed: {exc}") from exc
        names = self.info.output_names if self.info else [str(i) for i in range(len(results))]
        return {name: Tensor.from_array(value) for name, value in zip(names, results)}
