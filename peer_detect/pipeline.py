import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional, Set, Union

import numpy as np

from .detector import DetectionResult, ObjectDetector
from .errors import PeerDetectError
from .frame_queue import DEFAULT_MAX_QUEUE_SIZE, Frame, FrameQueue


LOGGER = logging.getLogger("peer_detect.pipeline")

ResultCallback = Callable[[DetectionResult], None]
ErrorCallback = Callable[[Exception], None]


@dataclass
class PipelineStats:
    frames_processed: int = 0
    frames_failed: int = 0
    last_latency_ms: float = 0.0
    total_latency_ms: float = 0.0
    window_seconds: float = 5.0
    completions: Deque[float] = field(default_factory=deque)

    def record_success(self, latency_s: float, now: float) -> None:
        self.frames_processed += 1
        self.last_latency_ms = latency_s * 1000.0
        self.total_latency_ms += self.last_latency_ms
        self.completions.append(now)
        self._trim(now)

    def _trim(self, now: float) -> None:
        while self.completions and now - self.completions[0] > self.window_seconds:
            self.completions.popleft()

    def throughput(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        self._trim(now)
        if len(self.completions) < 2:
            return 0.0
        span = self.completions[-1] - self.completions[0]
        if span <= 0:
            return 0.0
        return (len(self.completions) - 1) / span

    def mean_latency_ms(self) -> float:
        if not self.frames_processed:
            return 0.0
        return self.total_latency_ms / self.frames_processed


class DetectionPipeline:
    """
    Bounded, backpressured inference loop.

    Frames are accepted only while the queue has room and are processed one
    at a time in FIFO order. When a run finishes and frames remain, the next
    run is submitted as a fresh task, so a busy producer never grows the call
    stack.
    """

    def __init__(
        self,
        detector: ObjectDetector,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        on_result: Optional[ResultCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ):
        self.detector = detector
        self.queue = FrameQueue(max_size=max_queue_size)
        self.on_result = on_result
        self.on_error = on_error
        self.stats = PipelineStats()
        self.last_result: Optional[DetectionResult] = None
        self._processing = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def processing(self) -> bool:
        return self._processing

    def enqueue_frame(self, frame: Union[Frame, np.ndarray]) -> bool:
        return self.queue.try_put(frame)

    def submit(self, frame: Union[Frame, np.ndarray]) -> bool:
        accepted = self.enqueue_frame(frame)
        if accepted:
            self.schedule()
        return accepted

    def schedule(self) -> None:
        if self._processing or not len(self.queue):
            return
        task = asyncio.get_running_loop().create_task(self._run_scheduled())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def run_once(self) -> Optional[DetectionResult]:
        if self._processing or not len(self.queue):
            return None

        self._processing = True
        frame = self.queue.try_get_nowait()
        try:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, self.detector.detect, frame)
        except Exception:
            self.stats.frames_failed += 1
            raise
        finally:
            self._processing = False
            if len(self.queue):
                self.schedule()

        self.stats.record_success(result.inference_duration, time.time())
        self.last_result = result
        if self.on_result is not None:
            try:
                self.on_result(result)
            except Exception as exc:  # pragma: no cover - observer bug
                LOGGER.error("Detection result observer failed: %s", exc)
        return result

    async def _run_scheduled(self) -> None:
        try:
            await self.run_once()
        except PeerDetectError as exc:
            LOGGER.warning("Dropped frame after inference failure: %s", exc)
            self._report_error(exc)
        except Exception as exc:
            LOGGER.error("Unexpected pipeline failure: %s", exc, exc_info=True)
            self._report_error(exc)

    def _report_error(self, exc: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(exc)
        except Exception as observer_exc:  # pragma: no cover - observer bug
            LOGGER.error("Pipeline error observer failed: %s", observer_exc)

    async def drain(self) -> None:
        """Wait until the queue is empty and no run is in flight."""

        while self._tasks or self._processing or len(self.queue):
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            elif len(self.queue) and not self._processing:
                self.schedule()
            else:
                await asyncio.sleep(0.01)

    def reset(self) -> int:
        dropped = self.queue.clear()
        if dropped:
            LOGGER.info("Pipeline reset; discarded %s queued frames", dropped)
        return dropped

    def status(self) -> Dict[str, object]:
        return {
            "processing": self._processing,
            "model_loaded": self.detector.loaded,
            "queue": self.queue.stats(),
            "frames_processed": self.stats.frames_processed,
            "frames_failed": self.stats.frames_failed,
            "last_latency_ms": round(self.stats.last_latency_ms, 3),
            "mean_latency_ms": round(self.stats.mean_latency_ms(), 3),
            "throughput_fps": round(self.stats.throughput(), 3),
        }
