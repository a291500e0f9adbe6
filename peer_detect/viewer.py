"""
Laptop-side peer: answers the phone's WebRTC offer, supervises the received
video and feeds it through the detection pipeline, sending results back to
the phone over the signaling relay.
"""

import argparse
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import aiohttp
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from .backend import OnnxRuntimeBackend
from .config_store import load_environment, load_runtime_config
from .detector import DetectionResult, ModelConfig, ObjectDetector
from .media import TrackMediaStream
from .pipeline import DetectionPipeline
from .playback import PlaybackObserver, PlaybackPhase, PlaybackSupervisor
from .signaling import (
    ANSWER,
    DETECTION_RESULTS,
    DEVICE_TYPE,
    ICE_CANDIDATE,
    OFFER,
    PHONE_CONNECTED,
    PHONE_DISCONNECTED,
    REQUEST_TRACK,
    TRACK_READY,
    Role,
    decode_message,
    encode_message,
)


LOGGER = logging.getLogger("peer_detect.viewer")

DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]


@dataclass
class ViewerConfig:
    signaling_url: str
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    publish_results: bool = True


class LoggingPlaybackObserver(PlaybackObserver):
    def on_phase_change(self, phase: PlaybackPhase) -> None:
        LOGGER.debug("Playback phase -> %s", phase.value)

    def on_error(self, message: str) -> None:
        LOGGER.warning("%s", message)

    def on_user_gesture_required(self) -> None:
        LOGGER.warning("Playback needs a manual resume")

    def on_stats(self, description: str) -> None:
        LOGGER.debug("Remote video %s", description)


class LaptopViewer:
    def __init__(
        self,
        config: ViewerConfig,
        pipeline: DetectionPipeline,
        supervisor: Optional[PlaybackSupervisor] = None,
    ):
        self.config = config
        self.pipeline = pipeline
        self.pipeline.on_result = self._on_detection
        self.supervisor = supervisor or PlaybackSupervisor(observer=LoggingPlaybackObserver())
        self.pc: Optional[RTCPeerConnection] = None
        self.stream: Optional[TrackMediaStream] = None
        self._outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()
        self._handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            PHONE_CONNECTED: self._on_phone_connected,
            PHONE_DISCONNECTED: self._on_phone_disconnected,
            OFFER: self._on_offer,
            ICE_CANDIDATE: self._on_ice_candidate,
            TRACK_READY: self._on_track_ready,
        }

    def send(self, event: str, payload: Any = None) -> None:
        self._outbox.put_nowait({"event": event, "data": payload})

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self) -> None:
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(self.config.signaling_url) as ws:
                LOGGER.info("Connected to signaling relay %s", self.config.signaling_url)
                writer = asyncio.create_task(self._pump(ws))
                self.send(DEVICE_TYPE, Role.LAPTOP.value)
                try:
                    async for message in ws:
                        if message.type == aiohttp.WSMsgType.TEXT:
                            decoded = decode_message(message.data)
                            if decoded is not None:
                                await self.handle(*decoded)
                        elif message.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                            break
                finally:
                    writer.cancel()
                    await self.close_peer()
        LOGGER.info("Signaling connection closed")

    async def _pump(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while True:
            message = await self._outbox.get()
            await ws.send_str(encode_message(message["event"], message["data"]))

    async def handle(self, event: str, payload: Any = None) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            LOGGER.debug("Ignoring %s", event)
            return
        await handler(payload)

    async def _on_phone_connected(self, _payload: Any) -> None:
        LOGGER.info("Phone connected; requesting its track")
        await self.close_peer()
        self.send(REQUEST_TRACK)

    async def _on_phone_disconnected(self, _payload: Any) -> None:
        LOGGER.info("Phone disconnected")
        await self.close_peer()
        self.pipeline.reset()

    async def _on_track_ready(self, _payload: Any) -> None:
        LOGGER.info("Phone reports its track is ready")

    async def _on_offer(self, payload: Any) -> None:
        if not isinstance(payload, dict) or not payload.get("sdp"):
            LOGGER.debug("Ignoring malformed offer")
            return
        await self.close_peer()

        config = RTCConfiguration(iceServers=[RTCIceServer(urls=[url]) for url in self.config.ice_servers])
        pc = RTCPeerConnection(configuration=config)
        self.pc = pc
        stream = TrackMediaStream(sink=self.pipeline.submit)
        self.stream = stream

        @pc.on("track")
        def _on_track(track):
            LOGGER.info("Viewer received track kind=%s", track.kind)
            stream.add_track(track)
            if track.kind == "video":
                self.supervisor.attach(stream)
                self._spawn(self.supervisor.start())

        @pc.on("connectionstatechange")
        async def _on_connection_state_change():
            state = pc.connectionState or "unknown"
            LOGGER.info("Viewer connection state -> %s", state)
            if state in {"failed", "closed"} and self.pc is pc:
                self.supervisor.stop()

        await pc.setRemoteDescription(RTCSessionDescription(sdp=payload["sdp"], type=payload.get("type", "offer")))
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        reply = {"type": pc.localDescription.type, "sdp": pc.localDescription.sdp}
        if payload.get("session_id"):
            reply["session_id"] = payload["session_id"]
        self.send(ANSWER, reply)
        LOGGER.info("Sent answer to phone (session %s)", reply.get("session_id", "-"))

    async def _on_ice_candidate(self, payload: Any) -> None:
        if self.pc is None or not isinstance(payload, dict):
            return
        raw = payload.get("candidate") or ""
        if not raw:
            return
        if raw.startswith("candidate:"):
            raw = raw.split(":", 1)[1]
        try:
            candidate = candidate_from_sdp(raw)
        except (ValueError, IndexError) as exc:
            LOGGER.debug("Ignoring malformed ICE candidate: %s", exc)
            return
        candidate.sdpMid = payload.get("sdpMid")
        candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
        await self.pc.addIceCandidate(candidate)

    def _on_detection(self, result: DetectionResult) -> None:
        if self.config.publish_results:
            self.send(DETECTION_RESULTS, result.to_payload())

    async def close_peer(self) -> None:
        self.supervisor.stop()
        if self.stream is not None:
            self.stream.close()
            self.stream = None
        if self.pc is not None:
            pc = self.pc
            self.pc = None
            await pc.close()


def build_pipeline(runtime_config: Dict[str, Any], model_path: str = "") -> DetectionPipeline:
    detector = ObjectDetector(OnnxRuntimeBackend(), ModelConfig.from_runtime_config(runtime_config))
    detector.load_model(model_path or runtime_config["model_path"])
    return DetectionPipeline(detector, max_queue_size=int(runtime_config["max_queue_size"]))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Laptop viewer: receive the phone camera and run detection")
    parser.add_argument("--signaling-url", default="ws://127.0.0.1:3000/ws")
    parser.add_argument("--model", default="")
    parser.add_argument("--log-level", default="info")
    return parser.parse_args()


def main() -> None:  # pragma: no cover - manual entrypoint
    args = parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(message)s")
    load_environment()
    runtime_config = load_runtime_config()

    async def _run() -> None:
        pipeline = build_pipeline(runtime_config, args.model)
        supervisor = PlaybackSupervisor(
            observer=LoggingPlaybackObserver(),
            max_retries=int(runtime_config["max_retries"]),
            monitor_interval=float(runtime_config["monitor_interval"]),
            load_timeout=float(runtime_config["load_timeout"]),
        )
        viewer = LaptopViewer(ViewerConfig(signaling_url=args.signaling_url), pipeline, supervisor)
        await viewer.run()

    asyncio.run(_run())


if __name__ == "__main__":  # pragma: no cover
    main()
