import asyncio
import sys
import threading
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest
from pyee.base import EventEmitter

# Ensure project root is in sys.path
ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from peer_detect.backend import ModelInfo, Tensor
from peer_detect.detector import ModelConfig, ObjectDetector
from peer_detect.playback import HAVE_ENOUGH_DATA, TrackSettings


def split_outputs(scores, boxes):
    """Wrap plain nested lists as a single-image split-layout output."""

    scores = np.asarray(scores, dtype=np.float32)[np.newaxis]
    boxes = np.asarray(boxes, dtype=np.float32)[np.newaxis]
    return {"scores": Tensor.from_array(scores), "boxes": Tensor.from_array(boxes)}


class FakeBackend:
    """
    Stands in for onnxruntime. ``run`` can be held on ``release`` to keep a
    frame in flight while the test pokes at the pipeline.
    """

    def __init__(self, outputs=None, info=None, error=None, blocking=False):
        self.info = info or ModelInfo(
            input_names=["data"],
            output_names=["scores", "boxes"],
            input_shape=[1, 3, 32, 32],
            output_shapes={"scores": [1, None, 3], "boxes": [1, None, 4]},
        )
        self.outputs = outputs if outputs is not None else split_outputs(
            [[0.1, 0.2, 0.9], [0.1, 0.4, 0.3]],
            [[0.1, 0.1, 0.5, 0.5], [0.2, 0.2, 0.3, 0.3]],
        )
        self.error = error
        self.calls = []
        self.loaded_paths = []
        self.started = threading.Event()
        self.release = threading.Event()
        if not blocking:
            self.release.set()

    def load_model(self, path):
        self.loaded_paths.append(str(path))
        return self.info

    def run(self, feeds):
        self.calls.append(feeds)
        self.started.set()
        self.release.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.outputs


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def detector(fake_backend):
    instance = ObjectDetector(fake_backend, ModelConfig(input_shape=(1, 3, 32, 32)))
    instance.load_model("models/test.onnx")
    return instance


@pytest.fixture
def image():
    frame = np.zeros((24, 32, 3), dtype=np.uint8)
    frame[:, :16] = [255, 0, 0]
    return frame


class FakeTrack:
    kind = "video"

    def __init__(self):
        self.stopped = False

    def stop(self):
        self.stopped = True

    def get_settings(self):
        return TrackSettings(width=640, height=480, frame_rate=30.0)


class FakeStream(EventEmitter):
    """
    In-memory media stream. ``play`` unpauses and emits ``playing`` unless
    ``play_error`` is set, ``resumes`` is False, or ``gate`` holds it.
    """

    def __init__(self, ready_state=HAVE_ENOUGH_DATA, active=True):
        super().__init__()
        self.ready_state = ready_state
        self.active = active
        self.paused = True
        self.play_error = None
        self.resumes = True
        self.gate = None
        self.play_calls = 0
        self.tracks = [FakeTrack()]

    async def play(self):
        self.play_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.play_error is not None:
            raise self.play_error
        if self.resumes:
            self.paused = False
            self.emit("playing")

    def stall(self):
        self.paused = True
        self.emit("pause")

    def get_tracks(self):
        return list(self.tracks)


@pytest.fixture
def fake_stream():
    return FakeStream()


@pytest.fixture
def observer():
    return MagicMock()


@pytest.fixture
def runtime_config_path(tmp_path, monkeypatch):
    path = tmp_path / "peer_detect_config.json"
    monkeypatch.setenv("PEER_DETECT_CONFIG_PATH", str(path))
    return path


def _mock_peer_connection():
    pc_instance = MagicMock()

    # Async methods need AsyncMock
    pc_instance.createOffer = AsyncMock(return_value=MagicMock(type="offer", sdp="v=0 offer"))
    pc_instance.createAnswer = AsyncMock(return_value=MagicMock(type="answer", sdp="v=0 answer"))
    pc_instance.localDescription = None

    async def set_local(description):
        pc_instance.localDescription = description

    pc_instance.setLocalDescription = AsyncMock(side_effect=set_local)
    pc_instance.setRemoteDescription = AsyncMock()
    pc_instance.addIceCandidate = AsyncMock()
    pc_instance.close = AsyncMock()
    pc_instance.addTrack = MagicMock()
    pc_instance.getSenders = MagicMock(return_value=[])
    pc_instance.connectionState = "new"
    pc_instance.signalingState = "stable"

    handlers = {}

    def on(event, handler=None):
        def decorator(func):
            handlers[event] = func
            return func
        if handler:
            handlers[event] = handler
            return handler
        return decorator

    pc_instance.on = on
    pc_instance.handlers = handlers
    return pc_instance


@pytest.fixture
def mock_pc(monkeypatch):
    """
    Mocks aiortc.RTCPeerConnection in the peer modules. Each construction
    returns a fresh instance; all of them are kept on ``created``.
    """

    created = []

    def factory(*args, **kwargs):
        instance = _mock_peer_connection()
        created.append(instance)
        return instance

    pc_class = MagicMock(side_effect=factory)
    pc_class.created = created
    monkeypatch.setattr("peer_detect.viewer.RTCPeerConnection", pc_class)
    monkeypatch.setattr("peer_detect.phone.RTCPeerConnection", pc_class)
    return pc_class


def drain_outbox(queue: asyncio.Queue):
    messages = []
    while not queue.empty():
        messages.append(queue.get_nowait())
    return messages
