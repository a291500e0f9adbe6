"""
Phone-to-laptop object detection over WebRTC.

The package holds the signaling relay that pairs a phone (camera) with a
laptop (viewer), the bounded detection pipeline the viewer feeds received
frames into, and the playback supervisor that keeps the received stream
running.
"""

from .errors import (  # noqa: F401
    InferenceError,
    LoadTimeoutError,
    ModelLoadError,
    PlaybackPermissionError,
    PlaybackTransientError,
)
from .pipeline import DetectionPipeline  # noqa: F401
from .playback import PlaybackPhase, PlaybackSupervisor  # noqa: F401
from .signaling import Role, SignalingHub  # noqa: F401
