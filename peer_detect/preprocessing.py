"""
Frame preprocessing: resize into the model's input size and normalize into a
flat channel-first float buffer.
"""

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
from PIL import Image

CHANNEL_ORDERS = ("RGB", "BGR")


@dataclass(frozen=True)
class PreparedInput:
    """
    Model input plus where the frame landed inside it.

    Offsets and extents are fractions of the input size, so detections in
    input coordinates can be mapped back to the source frame.
    """

    data: np.ndarray
    shape: Tuple[int, int, int, int]
    offset_x: float = 0.0
    offset_y: float = 0.0
    extent_x: float = 1.0
    extent_y: float = 1.0

    def to_frame_coords(self, x: float, y: float) -> Tuple[float, float]:
        return (x - self.offset_x) / self.extent_x, (y - self.offset_y) / self.extent_y


def _resize(image: np.ndarray, width: int, height: int, letterbox: bool, fill: Sequence[float]):
    src_h, src_w = image.shape[:2]
    pil_image = Image.fromarray(image)
    if not letterbox or (src_w, src_h) == (width, height):
        resized = pil_image.resize((width, height), Image.BILINEAR)
        return np.asarray(resized), (0.0, 0.0, 1.0, 1.0)

    scale = min(width / src_w, height / src_h)
    new_w = max(1, int(round(src_w * scale)))
    new_h = max(1, int(round(src_h * scale)))
    resized = pil_image.resize((new_w, new_h), Image.BILINEAR)
    color = tuple(int(round(c)) for c in fill[:3])
    canvas = Image.new("RGB", (width, height), color=color)
    left = (width - new_w) // 2
    top = (height - new_h) // 2
    canvas.paste(resized, (left, top))
    placement = (left / width, top / height, new_w / width, new_h / height)
    return np.asarray(canvas), placement


def preprocess(
    image: np.ndarray,
    input_shape: Sequence[int],
    mean_values: Sequence[float],
    standard_scale: float,
    channel_order: str = "RGB",
    letterbox: bool = False,
) -> PreparedInput:
    batch, channels, height, width = (int(d) for d in input_shape)
    if channels != 3:
        raise ValueError(f"Only 3-channel inputs are supported, got {channels}")
    if len(mean_values) < channels:
        raise ValueError("mean_values must provide one value per channel")
    order = channel_order.upper()
    if order not in CHANNEL_ORDERS:
        raise ValueError(f"channel_order must be one of {CHANNEL_ORDERS}")

    pixels = image[:, :, :3]
    if pixels.dtype != np.uint8:
        pixels = np.clip(pixels, 0, 255).astype(np.uint8)
    if order == "BGR":
        pixels = pixels[:, :, ::-1]
    pixels = np.ascontiguousarray(pixels)

    # pad with the mean color so padding normalizes to zero
    resized, (offset_x, offset_y, extent_x, extent_y) = _resize(pixels, width, height, letterbox, mean_values)

    mean = np.asarray(mean_values[:channels], dtype=np.float32).reshape(channels, 1, 1)
    chw = resized.astype(np.float32).transpose(2, 0, 1)
    normalized = (chw - mean) / np.float32(standard_scale)

    data = np.zeros(batch * channels * height * width, dtype=np.float32)
    data[: channels * height * width] = normalized.reshape(-1)
    return PreparedInput(
        data=data,
        shape=(batch, channels, height, width),
        offset_x=offset_x,
        offset_y=offset_y,
        extent_x=extent_x,
        extent_y=extent_y,
    )
