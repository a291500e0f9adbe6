import argparse
import asyncio
import base64
import binascii
import io
import logging
import os
import uuid
from typing import Any, Dict, List, Optional

import numpy as np
from fastapi import APIRouter, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from starlette.responses import JSONResponse

from .backend import OnnxRuntimeBackend
from .config_store import load_environment, load_runtime_config, normalize_runtime_config, save_runtime_config
from .detector import DetectionResult, ModelConfig, ObjectDetector
from .errors import ModelLoadError
from .frame_queue import Frame
from .pipeline import DetectionPipeline
from .signaling import DETECTION_RESULTS, SignalingHub, decode_message, encode_message


LOGGER = logging.getLogger("peer_detect.api")

SECURITY_HEADERS = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-XSS-Protection": "1; mode=block",
}

runtime_config = load_runtime_config()
hub = SignalingHub()
pipeline: Optional[DetectionPipeline] = None

router = APIRouter()


class WebSocketPeer:
    """Relay connection; outbound messages are drained in order by one writer task."""

    def __init__(self, websocket: WebSocket, peer_id: Optional[str] = None):
        self.websocket = websocket
        self.peer_id = peer_id or uuid.uuid4().hex
        self.outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self.closed = False

    def send(self, event: str, payload: Any = None) -> None:
        if self.closed:
            return
        self.outbox.put_nowait({"event": event, "data": payload})

    async def pump(self) -> None:
        while True:
            message = await self.outbox.get()
            try:
                await self.websocket.send_text(encode_message(message["event"], message["data"]))
            except Exception as exc:
                LOGGER.debug("Send to %s failed: %s", self.peer_id, exc)
                self.closed = True
                return


class FramePayload(BaseModel):
    frame_b64: str
    frame_id: Optional[int] = None
    capture_ts: Optional[float] = None


class RuntimeConfigPayload(BaseModel):
    max_queue_size: Optional[int] = None
    score_threshold: Optional[float] = None
    input_width: Optional[int] = None
    input_height: Optional[int] = None
    channel_order: Optional[str] = None
    mean_values: Optional[List[float]] = None
    standard_scale: Optional[float] = None
    letterbox: Optional[bool] = None
    model_path: Optional[str] = None
    max_retries: Optional[int] = None
    monitor_interval: Optional[float] = None
    load_timeout: Optional[float] = None


def _publish_result(result: DetectionResult) -> None:
    hub.publish(DETECTION_RESULTS, result.to_payload())


def _pipeline_status() -> Dict[str, Any]:
    if pipeline is None:
        return {"available": False}
    return {"available": True, **pipeline.status()}


@router.get("/healthz")
async def healthz():
    return {
        "ok": True,
        "connections": len(hub),
        "pipeline_ready": pipeline is not None,
        "queue_depth": pipeline.queue.depth() if pipeline else 0,
    }


@router.get("/status")
async def get_status():
    return {"relay": hub.snapshot(), "pipeline": _pipeline_status()}


@router.post("/frames")
async def push_frame(payload: FramePayload):
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Detection pipeline unavailable")
    try:
        image = decode_frame(payload.frame_b64)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    kwargs: Dict[str, Any] = {}
    if payload.frame_id is not None:
        kwargs["frame_id"] = payload.frame_id
    if payload.capture_ts is not None:
        kwargs["captured_at"] = payload.capture_ts / 1000.0
    accepted = pipeline.submit(Frame(image=image, **kwargs))
    LOGGER.debug("HTTP /frames accepted=%s (depth=%s)", accepted, pipeline.queue.depth())
    return JSONResponse({"accepted": accepted, "queue_depth": pipeline.queue.depth()})


@router.get("/config")
async def get_runtime_config():
    return dict(runtime_config)


@router.post("/config")
async def update_runtime_config(payload: RuntimeConfigPayload):
    normalized = normalize_config_payload(payload)
    runtime_config.update(normalized)
    save_runtime_config(runtime_config)
    _apply_runtime_config_to_pipeline()
    return dict(runtime_config)


def _apply_runtime_config_to_pipeline() -> None:
    if pipeline is None:
        return
    pipeline.queue.max_size = int(runtime_config["max_queue_size"])
    config = pipeline.detector.reconfigure(ModelConfig.from_runtime_config(runtime_config))
    LOGGER.info(
        "Applied runtime config: max_queue_size=%s shape=%s order=%s threshold=%.2f",
        pipeline.queue.max_size,
        config.input_shape,
        config.channel_order,
        config.score_threshold,
    )


@router.websocket("/ws")
async def signaling_socket(websocket: WebSocket):
    await websocket.accept()
    peer = WebSocketPeer(websocket)
    hub.connect(peer)
    writer = asyncio.create_task(peer.pump())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            decoded = decode_message(message.get("text") or "")
            if decoded is None:
                LOGGER.debug("Ignoring malformed message from %s", peer.peer_id)
                continue
            event, data = decoded
            hub.handle(peer.peer_id, event, data)
    except WebSocketDisconnect:
        pass
    finally:
        peer.closed = True
        hub.disconnect(peer.peer_id)
        writer.cancel()


def decode_frame(blob_b64: str) -> np.ndarray:
    from PIL import Image, UnidentifiedImageError

    try:
        decoded = base64.b64decode(blob_b64, validate=True)
        image = Image.open(io.BytesIO(decoded)).convert("RGB")
    except (binascii.Error, UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Invalid frame payload: {exc}") from exc
    return np.array(image)


def normalize_config_payload(payload: RuntimeConfigPayload) -> Dict[str, Any]:
    def _norm(value, minimum, maximum):
        return max(minimum, min(value, maximum))

    values = normalize_runtime_config(payload.model_dump(exclude_none=True))
    limits = {
        "max_queue_size": (1, 64),
        "score_threshold": (0.0, 1.0),
        "input_width": (32, 4096),
        "input_height": (32, 4096),
        "max_retries": (0, 100),
        "monitor_interval": (0.05, 60.0),
        "load_timeout": (0.1, 120.0),
    }
    for key, (minimum, maximum) in limits.items():
        if key in values:
            values[key] = _norm(values[key], minimum, maximum)
    if values.get("standard_scale", 1.0) <= 0:
        raise HTTPException(status_code=400, detail="standard_scale must be positive")
    return values


def init_pipeline(model_path: str = "") -> DetectionPipeline:
    config = ModelConfig.from_runtime_config(runtime_config)
    detector = ObjectDetector(OnnxRuntimeBackend(), config)
    detector.load_model(model_path or runtime_config["model_path"])
    return DetectionPipeline(
        detector,
        max_queue_size=int(runtime_config["max_queue_size"]),
        on_result=_publish_result,
    )


def bootstrap_pipeline(model_path: str = "") -> None:
    global pipeline
    try:
        pipeline = init_pipeline(model_path)
    except ModelLoadError as exc:
        LOGGER.error("Detection pipeline disabled: %s", exc)
        pipeline = None


def create_app(tls: bool = False) -> FastAPI:
    from fastapi.middleware.cors import CORSMiddleware

    app = FastAPI(title="peer-detect relay")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    if tls:
        @app.middleware("http")
        async def add_security_headers(request, call_next):
            response = await call_next(request)
            for name, value in SECURITY_HEADERS.items():
                response.headers[name] = value
            return response

    app.include_router(router)
    return app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Phone/laptop signaling relay with detection pipeline")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "3000")))
    parser.add_argument("--ssl-certfile", default="")
    parser.add_argument("--ssl-keyfile", default="")
    parser.add_argument("--model", default="", help="ONNX model for the server-side pipeline")
    parser.add_argument("--no-pipeline", action="store_true", help="Run the relay without a detection pipeline")
    parser.add_argument("--log-level", default="info")
    return parser.parse_args()


def main():  # pragma: no cover - manual entrypoint
    import uvicorn

    load_environment()
    args = parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(message)s")

    if not args.no_pipeline:
        bootstrap_pipeline(args.model)

    tls = bool(args.ssl_certfile and args.ssl_keyfile)
    if not tls:
        LOGGER.warning("Serving without TLS; browsers may block camera access")
    app = create_app(tls=tls)
    scheme = "https" if tls else "http"
    LOGGER.info("Laptop view: %s://localhost:%s", scheme, args.port)
    LOGGER.info("Signaling endpoint: %s://localhost:%s/ws", "wss" if tls else "ws", args.port)

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        ssl_certfile=args.ssl_certfile or None,
        ssl_keyfile=args.ssl_keyfile or None,
    )


if __name__ == "__main__":
    main()
