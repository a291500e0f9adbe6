import argparse
import asyncio
import logging
import time
from typing import Optional

import av
import numpy as np

from peer_detect.config_store import load_environment
from peer_detect.frame_uplink import FrameUplink
from peer_detect.phone import PhoneClient, VideoFileTrack

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
LOGGER = logging.getLogger("stream_frames")


def iter_video_frames(video_path: Optional[str], loop: bool, width: int = 640, height: int = 480):
    if not video_path:
        blank = np.zeros((height, width, 3), dtype=np.uint8)
        while True:
            yield blank
    while True:
        with av.open(video_path) as container:
            stream = container.streams.video[0]
            stream.thread_type = "AUTO"
            for frame in container.decode(stream):
                yield frame.to_ndarray(format="rgb24")
        if not loop:
            return


def upload_frames(server_url: str, video_path: Optional[str], frame_rate: float, duration: float, loop: bool) -> None:
    uplink = FrameUplink(server_url)
    interval = 1.0 / frame_rate
    deadline = time.time() + duration
    for image in iter_video_frames(video_path, loop):
        if time.time() >= deadline:
            break
        started = time.time()
        uplink.push(image, capture_ts=started)
        if uplink.stats.sent % 30 == 0:
            LOGGER.info(
                "Uploaded %s frames (accepted=%s rejected=%s failed=%s)",
                uplink.stats.sent,
                uplink.stats.accepted,
                uplink.stats.rejected,
                uplink.stats.failed,
            )
        time.sleep(max(0.0, interval - (time.time() - started)))
    LOGGER.info("Upload finished: %s", uplink.stats)


async def stream_track(signaling_url: str, video_path: Optional[str], frame_rate: float, duration: float) -> None:
    def _log_results(payload):
        LOGGER.info(
            "Frame %s: %s detections (%.1f ms)",
            payload.get("frame_id"),
            len(payload.get("detections") or []),
            payload.get("inference_time", 0.0),
        )

    client = PhoneClient(
        signaling_url,
        track_factory=lambda: VideoFileTrack(video_path, frame_rate=frame_rate),
        on_results=_log_results,
    )
    try:
        await asyncio.wait_for(client.run(), timeout=duration)
    except asyncio.TimeoutError:
        LOGGER.info("Streaming duration reached")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Act as the phone: send camera frames to the relay.")
    parser.add_argument("--mode", choices=("upload", "webrtc"), default="upload")
    parser.add_argument("--server-url", default="http://127.0.0.1:3000", help="Relay HTTP base URL (upload mode)")
    parser.add_argument("--signaling-url", default="ws://127.0.0.1:3000/ws", help="Relay WebSocket URL (webrtc mode)")
    parser.add_argument("--video-file", required=False)
    parser.add_argument("--frame-rate", type=float, default=10.0)
    parser.add_argument("--duration", type=float, default=60.0, help="Seconds to stream")
    parser.add_argument("--loop", action="store_true", help="Loop the video file until the duration ends")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    load_environment()
    try:
        if args.mode == "upload":
            upload_frames(args.server_url, args.video_file, args.frame_rate, args.duration, args.loop)
        else:
            asyncio.run(stream_track(args.signaling_url, args.video_file, args.frame_rate, args.duration))
    except KeyboardInterrupt:
        LOGGER.info("Stream interrupted by user")


if __name__ == "__main__":
    main()
