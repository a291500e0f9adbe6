import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional, Union

import numpy as np


LOGGER = logging.getLogger("peer_detect.frame_queue")

DEFAULT_MAX_QUEUE_SIZE = 3

_FRAME_IDS = itertools.count(1)


@dataclass(frozen=True)
class Frame:
    image: np.ndarray
    frame_id: int = field(default_factory=lambda: next(_FRAME_IDS))
    captured_at: float = field(default_factory=time.time)

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])


def normalize_image(image: np.ndarray) -> np.ndarray:
    if not isinstance(image, np.ndarray):
        raise TypeError("frame must be a numpy array")
    if image.ndim != 3 or image.shape[2] not in (3, 4):
        raise ValueError("frame must be HxWxC RGB/RGBA")
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    return image[:, :, :3]


def as_frame(frame: Union[Frame, np.ndarray]) -> Frame:
    if isinstance(frame, Frame):
        return frame
    return Frame(image=normalize_image(frame))


class FrameQueue:
    """
    Bounded FIFO of frames waiting for inference.

    Producers never block: ``try_put`` rejects the frame when the queue is at
    capacity and leaves the queue untouched.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_QUEUE_SIZE):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._frames: Deque[Frame] = deque()
        self._accepted = 0
        self._dropped = 0

    def try_put(self, frame: Union[Frame, np.ndarray]) -> bool:
        frame = as_frame(frame)
        if len(self._frames) >= self.max_size:
            self._dropped += 1
            LOGGER.debug(
                "FrameQueue full; dropped frame (depth=%s, total_dropped=%s)",
                len(self._frames),
                self._dropped,
            )
            return False
        self._frames.append(frame)
        self._accepted += 1
        return True

    def try_get_nowait(self) -> Optional[Frame]:
        if not self._frames:
            return None
        return self._frames.popleft()

    def clear(self) -> int:
        count = len(self._frames)
        self._frames.clear()
        return count

    def depth(self) -> int:
        return len(self._frames)

    def __len__(self) -> int:
        return len(self._frames)

    def stats(self) -> Dict[str, int]:
        return {
            "depth": len(self._frames),
            "max_size": self.max_size,
            "accepted": self._accepted,
            "dropped": self._dropped,
        }
