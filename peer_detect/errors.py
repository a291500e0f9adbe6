"""
Error taxonomy shared by the detection pipeline and the playback supervisor.

A full frame queue is not an error: ``DetectionPipeline.enqueue_frame``
signals it with a ``False`` return value.
"""


class PeerDetectError(Exception):
    """Base class for all peer-detect errors."""


class ModelLoadError(PeerDetectError):
    """The model could not be loaded; the pipeline is unusable until retried."""


class InferenceError(PeerDetectError):
    """A single inference pass failed; only the in-flight frame is lost."""


class PlaybackError(PeerDetectError):
    """Base class for media playback failures."""


class PlaybackPermissionError(PlaybackError):
    """Playback was blocked by an autoplay policy; a user gesture is required."""


class PlaybackTransientError(PlaybackError):
    """Playback failed for a reason that may clear up on retry."""


class LoadTimeoutError(PlaybackError):
    """The stream produced no data within the load timeout."""


__all__ = [
    "PeerDetectError",
    "ModelLoadError",
    "InferenceError",
    "PlaybackError",
    "PlaybackPermissionError",
    "PlaybackTransientError",
    "LoadTimeoutError",
]
