import asyncio

import numpy as np
import pytest
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import VideoFrame

from peer_detect.errors import PlaybackTransientError
from peer_detect.media import TrackMediaStream
from peer_detect.playback import HAVE_ENOUGH_DATA, PlaybackPhase, PlaybackSupervisor


class QueuedVideoTrack(MediaStreamTrack):
    """Remote video track fed by the test; ``None`` ends the track."""

    kind = "video"

    def __init__(self):
        super().__init__()
        self.frames = asyncio.Queue()

    def push(self, value=0):
        image = np.full((48, 64, 3), value, dtype=np.uint8)
        self.frames.put_nowait(VideoFrame.from_ndarray(image, format="rgb24"))

    def end(self):
        self.frames.put_nowait(None)

    async def recv(self):
        frame = await self.frames.get()
        if frame is None:
            self.stop()
            raise MediaStreamError
        return frame


def _waiter(stream, event):
    fired = asyncio.Event()
    stream.on(event, lambda *args: fired.set())
    return fired


@pytest.mark.asyncio
async def test_frames_reach_sink_only_while_playing():
    received = []
    stream = TrackMediaStream(sink=lambda image: received.append(image) or True)
    track = QueuedVideoTrack()
    loaded = _waiter(stream, "loadeddata")
    ended = _waiter(stream, "ended")

    stream.add_track(track)
    track.push()
    await asyncio.wait_for(loaded.wait(), 1)

    assert stream.ready_state == HAVE_ENOUGH_DATA
    assert received == []

    await stream.play()
    track.push(10)
    track.push(20)
    track.end()
    await asyncio.wait_for(ended.wait(), 1)

    assert [int(image[0, 0, 0]) for image in received] == [10, 20]
    assert received[0].shape == (48, 64, 3)
    assert stream.frames_delivered == 2
    assert stream.paused is True
    assert stream.active is False


@pytest.mark.asyncio
async def test_rejected_frames_are_counted():
    stream = TrackMediaStream(sink=lambda image: False)
    track = QueuedVideoTrack()
    ended = _waiter(stream, "ended")
    stream.add_track(track)
    await stream.play()

    track.push()
    track.push()
    track.end()
    await asyncio.wait_for(ended.wait(), 1)

    assert stream.frames_dropped == 2
    assert stream.frames_delivered == 0


@pytest.mark.asyncio
async def test_play_without_live_track():
    stream = TrackMediaStream()
    with pytest.raises(PlaybackTransientError):
        await stream.play()


@pytest.mark.asyncio
async def test_track_settings_follow_frames():
    stream = TrackMediaStream()
    track = QueuedVideoTrack()
    loaded = _waiter(stream, "loadeddata")
    received = stream.add_track(track)
    track.push()
    await asyncio.wait_for(loaded.wait(), 1)

    settings = received.get_settings()
    assert (settings.width, settings.height) == (64, 48)
    assert stream.stats()["settings"].startswith("64x48")
    stream.close()
    assert track.readyState == "ended"


@pytest.mark.asyncio
async def test_supervisor_plays_received_track(observer):
    stream = TrackMediaStream(sink=lambda image: True)
    track = QueuedVideoTrack()
    stream.add_track(track)
    supervisor = PlaybackSupervisor(stream, observer=observer, monitor_interval=60)

    task = asyncio.ensure_future(supervisor.start())
    await asyncio.sleep(0)
    track.push()

    assert await asyncio.wait_for(task, 1) is True
    assert supervisor.phase is PlaybackPhase.PLAYING
    observer.on_stats.assert_called_with("64x48@0fps")

    supervisor.stop()
    assert track.readyState == "ended"
    stream.close()
