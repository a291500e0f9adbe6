import asyncio
import logging
import time
from typing import Callable, List, Optional

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from pyee.asyncio import AsyncIOEventEmitter

from .errors import PlaybackTransientError
from .playback import HAVE_ENOUGH_DATA, HAVE_NOTHING, TrackSettings


LOGGER = logging.getLogger("peer_detect.media")

FrameSink = Callable[[np.ndarray], bool]


class ReceivedTrack:
    """A remote aiortc track plus the settings observed from its frames."""

    def __init__(self, track: MediaStreamTrack):
        self.track = track
        self.kind = track.kind
        self.width = 0
        self.height = 0
        self.frame_rate = 0.0
        self.frames_received = 0
        self._last_arrival = 0.0

    @property
    def live(self) -> bool:
        return self.track.readyState == "live"

    def observe(self, width: int, height: int, arrived_at: float) -> None:
        self.width = width
        self.height = height
        if self._last_arrival:
            interval = arrived_at - self._last_arrival
            if interval > 0:
                instant = 1.0 / interval
                self.frame_rate = instant if not self.frame_rate else 0.9 * self.frame_rate + 0.1 * instant
        self._last_arrival = arrived_at
        self.frames_received += 1

    def get_settings(self) -> TrackSettings:
        return TrackSettings(width=self.width, height=self.height, frame_rate=self.frame_rate)

    def stop(self) -> None:
        self.track.stop()


class TrackMediaStream(AsyncIOEventEmitter):
    """
    Media stream over remote aiortc tracks, shaped like an HTML video element.

    A reader task pulls frames from the video track as soon as the stream is
    opened, so readiness is known before playback starts. While playing, each
    frame is converted to an RGB array and offered to ``sink``; frames the
    sink rejects (queue full) are simply dropped. Emits ``loadeddata``,
    ``playing``, ``pause`` and ``ended``.
    """

    def __init__(self, sink: Optional[FrameSink] = None):
        super().__init__()
        self.sink = sink
        self.ready_state = HAVE_NOTHING
        self.paused = True
        self.frames_delivered = 0
        self.frames_dropped = 0
        self._tracks: List[ReceivedTrack] = []
        self._reader: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return any(track.live for track in self._tracks)

    def get_tracks(self) -> List[ReceivedTrack]:
        return list(self._tracks)

    def add_track(self, track: MediaStreamTrack) -> ReceivedTrack:
        received = ReceivedTrack(track)
        self._tracks.append(received)
        if track.kind == "video" and self._reader is None:
            self._reader = asyncio.get_running_loop().create_task(self._read_video(received))
        return received

    async def play(self) -> None:
        if not self.active:
            raise PlaybackTransientError("Video stream inactive")
        was_paused = self.paused
        self.paused = False
        if was_paused:
            self.emit("play")
        if self.ready_state >= HAVE_ENOUGH_DATA:
            self.emit("playing")

    def pause(self) -> None:
        if self.paused:
            return
        self.paused = True
        self.emit("pause")

    async def _read_video(self, received: ReceivedTrack) -> None:
        try:
            while True:
                frame = await received.track.recv()
                received.observe(frame.width, frame.height, time.time())
                if self.ready_state < HAVE_ENOUGH_DATA:
                    self.ready_state = HAVE_ENOUGH_DATA
                    LOGGER.info("Remote video ready %sx%s", frame.width, frame.height)
                    self.emit("loadeddata")
                    if not self.paused:
                        self.emit("playing")
                if self.paused or self.sink is None:
                    continue
                image = frame.to_ndarray(format="rgb24")
                if self.sink(image):
                    self.frames_delivered += 1
                else:
                    self.frames_dropped += 1
        except MediaStreamError:
            LOGGER.info("Remote video track ended")
        except asyncio.CancelledError:
            LOGGER.debug("Video reader cancelled")
            raise
        except Exception as exc:  # pragma: no cover - decoder/network failures
            LOGGER.warning("Video reader stopped: %s", exc)
        self.pause()
        self.emit("ended")

    def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        for received in self._tracks:
            received.stop()
        self.pause()

    def stats(self) -> dict:
        video = next((t for t in self._tracks if t.kind == "video"), None)
        return {
            "ready_state": self.ready_state,
            "paused": self.paused,
            "active": self.active,
            "frames_delivered": self.frames_delivered,
            "frames_dropped": self.frames_dropped,
            "settings": video.get_settings().describe() if video else "",
        }
