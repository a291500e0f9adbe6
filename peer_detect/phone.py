"""
Phone-side peer: announces itself on the relay, offers a video track to the
laptop and collects the detection results the laptop sends back.
"""

import asyncio
import logging
import uuid
from fractions import Fraction
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import av
import numpy as np
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription, VideoStreamTrack
from av import VideoFrame

from .signaling import (
    ANSWER,
    DETECTION_RESULTS,
    DEVICE_TYPE,
    LAPTOP_READY,
    OFFER,
    PHONE_STOPPED,
    REQUEST_TRACK,
    TRACK_READY,
    Role,
    decode_message,
    encode_message,
)


LOGGER = logging.getLogger("peer_detect.phone")

ResultsCallback = Callable[[Dict[str, Any]], None]


class VideoFileTrack(VideoStreamTrack):
    """Loops a video file, or sends black frames when no file is given."""

    def __init__(self, video_path: Optional[str], frame_rate: float = 30.0, width: int = 640, height: int = 480):
        super().__init__()
        self.video_path = video_path
        self.frame_rate = frame_rate
        self._pts = 0
        self._dummy_frame = np.zeros((height, width, 3), dtype=np.uint8)
        self.container = None
        self.stream = None
        self._frame_iter = None
        if video_path:
            self.container = av.open(video_path)
            self.stream = self.container.streams.video[0]
            self.stream.thread_type = "AUTO"
            if self.stream.average_rate:
                self.frame_rate = float(self.stream.average_rate)
            self._frame_iter = self.container.decode(self.stream)
        self._frame_interval = 1.0 / self.frame_rate
        self._time_base = Fraction(1, int(round(self.frame_rate)))

    def next_image(self) -> np.ndarray:
        if self.container is None:
            return self._dummy_frame
        try:
            decoded = next(self._frame_iter)
        except StopIteration:
            self.container.seek(0)
            self._frame_iter = self.container.decode(self.stream)
            decoded = next(self._frame_iter)
        return decoded.to_ndarray(format="rgb24")

    async def recv(self) -> VideoFrame:
        await asyncio.sleep(self._frame_interval)
        frame = VideoFrame.from_ndarray(self.next_image(), format="rgb24")
        frame = frame.reformat(format="yuv420p")
        frame.pts = self._pts
        frame.time_base = self._time_base
        self._pts += 1
        return frame

    def stop(self) -> None:
        super().stop()
        if self.container is not None:
            self.container.close()
            self.container = None


class PhoneClient:
    def __init__(
        self,
        signaling_url: str,
        track_factory: Callable[[], VideoStreamTrack],
        ice_servers: Optional[List[str]] = None,
        on_results: Optional[ResultsCallback] = None,
    ):
        self.signaling_url = signaling_url
        self.track_factory = track_factory
        self.ice_servers = ice_servers or ["stun:stun.l.google.com:19302"]
        self.on_results = on_results
        self.pc: Optional[RTCPeerConnection] = None
        # Tags the current offer; answers echoing another id belong to a replaced connection.
        self.session_id: Optional[str] = None
        self.results_received = 0
        self._outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self._handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            LAPTOP_READY: self._on_laptop_ready,
            REQUEST_TRACK: self._on_request_track,
            ANSWER: self._on_answer,
            DETECTION_RESULTS: self._on_detection_results,
        }

    def send(self, event: str, payload: Any = None) -> None:
        self._outbox.put_nowait({"event": event, "data": payload})

    async def run(self) -> None:
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(self.signaling_url) as ws:
                LOGGER.info("Phone connected to relay %s", self.signaling_url)
                writer = asyncio.create_task(self._pump(ws))
                self.send(DEVICE_TYPE, Role.PHONE.value)
                try:
                    async for message in ws:
                        if message.type == aiohttp.WSMsgType.TEXT:
                            decoded = decode_message(message.data)
                            if decoded is not None:
                                await self.handle(*decoded)
                        elif message.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                            break
                finally:
                    await self.stop_camera()
                    await asyncio.sleep(0)
                    writer.cancel()

    async def _pump(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while True:
            message = await self._outbox.get()
            await ws.send_str(encode_message(message["event"], message["data"]))

    async def handle(self, event: str, payload: Any = None) -> None:
        handler = self._handlers.get(event)
        if handler is not None:
            await handler(payload)

    async def _on_laptop_ready(self, _payload: Any) -> None:
        await self.send_offer()

    async def _on_request_track(self, _payload: Any) -> None:
        await self.send_offer()
        self.send(TRACK_READY)

    async def send_offer(self) -> None:
        await self._close_pc()
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=[url]) for url in self.ice_servers])
        pc = RTCPeerConnection(configuration=config)
        self.pc = pc
        session_id = uuid.uuid4().hex
        self.session_id = session_id
        pc.addTrack(self.track_factory())

        @pc.on("connectionstatechange")
        async def _on_connection_state_change():
            LOGGER.info("Phone connection state -> %s", pc.connectionState)

        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        self.send(OFFER, {"type": pc.localDescription.type, "sdp": pc.localDescription.sdp, "session_id": session_id})
        LOGGER.info("Sent offer to laptop (session %s)", session_id)

    async def _on_answer(self, payload: Any) -> None:
        if self.pc is None or not isinstance(payload, dict) or not payload.get("sdp"):
            return
        answered = payload.get("session_id")
        if answered is not None and answered != self.session_id:
            LOGGER.debug("Ignoring answer for replaced session %s", answered)
            return
        if self.pc.signalingState != "have-local-offer":
            LOGGER.debug("Ignoring answer in signaling state %s", self.pc.signalingState)
            return
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=payload["sdp"], type="answer"))
        LOGGER.info("Phone session established")

    async def _on_detection_results(self, payload: Any) -> None:
        self.results_received += 1
        if self.on_results is not None and isinstance(payload, dict):
            self.on_results(payload)

    async def stop_camera(self) -> None:
        """Stop sending video while staying connected to the relay."""

        if self.pc is not None:
            await self._close_pc()
            self.send(PHONE_STOPPED)

    async def _close_pc(self) -> None:
        if self.pc is None:
            return
        pc = self.pc
        self.pc = None
        self.session_id = None
        for sender in pc.getSenders():
            if sender.track is not None:
                sender.track.stop()
        await pc.close()
