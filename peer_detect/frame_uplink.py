import base64
import io
import logging
import time
from dataclasses import dataclass
from typing import Optional

import numpy as np
import requests
from PIL import Image


LOGGER = logging.getLogger("peer_detect.frame_uplink")


def encode_frame_b64(frame: np.ndarray, image_format: str = "JPEG", quality: int = 85) -> str:
    buffer = io.BytesIO()
    image = Image.fromarray(frame[:, :, :3].astype(np.uint8))
    if image_format.upper() == "JPEG":
        image.save(buffer, format="JPEG", quality=quality)
    else:
        image.save(buffer, format=image_format)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


@dataclass
class UplinkStats:
    sent: int = 0
    accepted: int = 0
    rejected: int = 0
    failed: int = 0


class FrameUplink:
    """
    Pushes captured frames to the relay server's ``/frames`` endpoint.

    The server answers ``accepted: false`` when its queue is full; that frame
    is dropped on the phone side rather than retried.
    """

    def __init__(
        self,
        server_url: str,
        image_format: str = "JPEG",
        timeout: float = 2.0,
        session: Optional[requests.Session] = None,
    ):
        self.frames_url = server_url.rstrip("/") + "/frames"
        self.image_format = image_format
        self.timeout = timeout
        self.session = session or requests.Session()
        self.stats = UplinkStats()

    def push(self, frame: np.ndarray, capture_ts: Optional[float] = None) -> bool:
        captured = time.time() if capture_ts is None else capture_ts
        payload = {
            "frame_b64": encode_frame_b64(frame, self.image_format),
            "capture_ts": captured * 1000.0,
        }
        self.stats.sent += 1
        try:
            response = self.session.post(self.frames_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            accepted = bool(response.json().get("accepted"))
        except Exception as exc:
            self.stats.failed += 1
            LOGGER.warning("Failed to push frame to %s: %s", self.frames_url, exc)
            return False
        if accepted:
            self.stats.accepted += 1
        else:
            self.stats.rejected += 1
            LOGGER.debug("Server queue full; frame dropped")
        return accepted
