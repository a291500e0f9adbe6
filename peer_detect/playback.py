"""
Playback supervisor for a received media stream.

The supervisor owns a small state machine::

    IDLE -> LOADING -> PLAYING <-> STALLED -> RECOVERING -> PLAYING
                                                        \\-> AWAITING_USER_GESTURE

``STOPPED`` is entered from any phase through ``stop()``. Stalls are retried
automatically up to ``max_retries`` times; after that, or when playback is
refused by an autoplay policy, only ``resume()`` (a user gesture) restarts it.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol

from .errors import (
    LoadTimeoutError,
    PlaybackError,
    PlaybackPermissionError,
    PlaybackTransientError,
)


LOGGER = logging.getLogger("peer_detect.playback")

# HTMLMediaElement readiness levels
HAVE_NOTHING = 0
HAVE_CURRENT_DATA = 2
HAVE_ENOUGH_DATA = 4

PERMISSION_ERROR_NAMES = ("NotAllowedError",)


class PlaybackPhase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    STALLED = "stalled"
    RECOVERING = "recovering"
    AWAITING_USER_GESTURE = "awaiting_user_gesture"
    STOPPED = "stopped"


@dataclass
class PlaybackState:
    phase: PlaybackPhase = PlaybackPhase.IDLE
    is_playing: bool = False
    retry_count: int = 0
    max_retries: int = 3
    waiting_for_user_gesture: bool = False


@dataclass(frozen=True)
class TrackSettings:
    width: int = 0
    height: int = 0
    frame_rate: float = 0.0

    def describe(self) -> str:
        return f"{self.width}x{self.height}@{round(self.frame_rate, 1):g}fps"


class MediaTrack(Protocol):
    kind: str

    def stop(self) -> None:
        ...

    def get_settings(self) -> TrackSettings:
        ...


class MediaStream(Protocol):
    """What the supervisor needs from a stream; event API matches pyee."""

    ready_state: int
    paused: bool
    active: bool

    async def play(self) -> None:
        ...

    def get_tracks(self) -> List[MediaTrack]:
        ...

    def on(self, event: str, f: Callable[..., Any]) -> Any:
        ...

    def once(self, event: str, f: Callable[..., Any]) -> Any:
        ...

    def remove_listener(self, event: str, f: Callable[..., Any]) -> None:
        ...


class PlaybackObserver:
    """Hooks for the UI layer. All methods are optional no-ops."""

    def on_phase_change(self, phase: PlaybackPhase) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass

    def on_user_gesture_required(self) -> None:
        pass

    def on_stats(self, description: str) -> None:
        pass


def classify_play_error(exc: BaseException) -> PlaybackError:
    if isinstance(exc, PlaybackError):
        return exc
    name = getattr(exc, "name", "") or type(exc).__name__
    if name in PERMISSION_ERROR_NAMES or isinstance(exc, PermissionError):
        return PlaybackPermissionError(str(exc) or name)
    return PlaybackTransientError(str(exc) or name)


class PlaybackSupervisor:
    def __init__(
        self,
        stream: Optional[MediaStream] = None,
        observer: Optional[PlaybackObserver] = None,
        max_retries: int = 3,
        monitor_interval: float = 1.0,
        load_timeout: float = 5.0,
    ):
        self.observer = observer or PlaybackObserver()
        self.monitor_interval = monitor_interval
        self.load_timeout = load_timeout
        self.state = PlaybackState(max_retries=max_retries)
        self.stream: Optional[MediaStream] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._play_in_flight = False
        self._generation = 0
        if stream is not None:
            self.attach(stream)

    @property
    def phase(self) -> PlaybackPhase:
        return self.state.phase

    def _set_phase(self, phase: PlaybackPhase) -> None:
        if self.state.phase is phase:
            return
        LOGGER.info("Playback phase %s -> %s", self.state.phase.value, phase.value)
        self.state.phase = phase
        self.observer.on_phase_change(phase)

    # ------------------------------------------------------------------
    # Stream wiring
    # ------------------------------------------------------------------
    def attach(self, stream: MediaStream) -> None:
        if self.stream is stream:
            return
        if self.stream is not None:
            self._detach_listeners(self.stream)
        self.stream = stream
        stream.on("playing", self._on_playing)
        stream.on("pause", self._on_pause)
        if self.phase is PlaybackPhase.STOPPED:
            self._set_phase(PlaybackPhase.IDLE)

    def _detach_listeners(self, stream: MediaStream) -> None:
        for event, handler in (("playing", self._on_playing), ("pause", self._on_pause)):
            try:
                stream.remove_listener(event, handler)
            except KeyError:
                pass

    def _on_playing(self, *_args: Any) -> None:
        self.state.is_playing = True
        self.state.retry_count = 0
        self.state.waiting_for_user_gesture = False
        self._set_phase(PlaybackPhase.PLAYING)

    def _on_pause(self, *_args: Any) -> None:
        self.state.is_playing = False
        if self.phase is PlaybackPhase.PLAYING:
            self._set_phase(PlaybackPhase.STALLED)

    # ------------------------------------------------------------------
    # Playback control
    # ------------------------------------------------------------------
    async def start(self) -> bool:
        stream = self.stream
        if stream is None:
            LOGGER.error("No video source available")
            self.observer.on_error("No video source available")
            return False

        generation = self._generation
        self.state.waiting_for_user_gesture = False
        if self.phase is not PlaybackPhase.PLAYING:
            self._set_phase(PlaybackPhase.LOADING)
        try:
            if stream.ready_state < HAVE_CURRENT_DATA:
                await self._wait_for_data(stream)
            if generation != self._generation:
                return False
            played = await self._attempt_play(stream, generation)
        except PlaybackError as exc:
            if generation == self._generation:
                LOGGER.error("Playback failed: %s", exc)
                self._handle_playback_error(exc)
            return False

        if not played:
            return False
        LOGGER.info("Playback started successfully")
        self.state.is_playing = True
        self._set_phase(PlaybackPhase.PLAYING)
        self._start_monitor()
        self._report_stats()
        return True

    async def resume(self) -> bool:
        """Manual resume, driven by a user gesture."""

        LOGGER.info("Manual playback resume requested")
        self.state.waiting_for_user_gesture = False
        return await self.start()

    async def _wait_for_data(self, stream: MediaStream) -> None:
        loop = asyncio.get_running_loop()
        ready = loop.create_future()
        fired = False

        def _on_loaded(*_args: Any) -> None:
            nonlocal fired
            fired = True
            if not ready.done():
                ready.set_result(True)

        stream.once("loadeddata", _on_loaded)
        try:
            if stream.ready_state >= HAVE_CURRENT_DATA:
                return
            await asyncio.wait_for(ready, self.load_timeout)
        except asyncio.TimeoutError as exc:
            raise LoadTimeoutError("Video load timeout") from exc
        finally:
            if not fired:
                stream.remove_listener("loadeddata", _on_loaded)

    async def _attempt_play(self, stream: MediaStream, generation: int) -> bool:
        if self._play_in_flight:
            LOGGER.debug("Play attempt already in flight; skipping")
            return False
        self._play_in_flight = True
        try:
            await stream.play()
        except PlaybackError:
            raise
        except Exception as exc:
            raise classify_play_error(exc) from exc
        finally:
            if generation == self._generation:
                self._play_in_flight = False
        return generation == self._generation

    def _handle_playback_error(self, exc: PlaybackError) -> None:
        if isinstance(exc, PlaybackPermissionError):
            self._require_user_gesture()
            return
        LOGGER.error("Playback error: %s", exc)
        self.state.is_playing = False
        self._set_phase(PlaybackPhase.STALLED)
        self.observer.on_error("Video playback error. Click to retry.")

    def _require_user_gesture(self) -> None:
        self.state.waiting_for_user_gesture = True
        self._set_phase(PlaybackPhase.AWAITING_USER_GESTURE)
        self.observer.on_user_gesture_required()

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------
    def _start_monitor(self) -> None:
        self._cancel_monitor()
        loop = asyncio.get_running_loop()
        self._monitor_task = loop.create_task(self._monitor(self._generation))

    def _cancel_monitor(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _monitor(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self.monitor_interval)
            if generation != self._generation:
                break
            try:
                await self.check_playback()
                self._report_stats()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.error("Playback monitor tick failed: %s", exc, exc_info=True)

    async def check_playback(self) -> None:
        stream = self.stream
        if stream is None or not stream.active:
            LOGGER.warning("Video stream inactive")
            return
        if not stream.paused or self.state.waiting_for_user_gesture:
            return
        if self._play_in_flight:
            LOGGER.debug("Resume already in flight; skipping tick")
            return

        generation = self._generation
        self.state.is_playing = False
        if self.phase is PlaybackPhase.PLAYING:
            self._set_phase(PlaybackPhase.STALLED)
        self.state.retry_count += 1
        if self.state.retry_count > self.state.max_retries:
            LOGGER.warning("Max retry attempts reached")
            self._require_user_gesture()
            return

        LOGGER.info(
            "Attempting to resume playback (attempt %s/%s)",
            self.state.retry_count,
            self.state.max_retries,
        )
        self._set_phase(PlaybackPhase.RECOVERING)
        try:
            played = await self._attempt_play(stream, generation)
        except PlaybackError as exc:
            if generation == self._generation:
                self._handle_playback_error(exc)
            return
        if played and not stream.paused and self.phase is PlaybackPhase.RECOVERING:
            self.state.is_playing = True
            self._set_phase(PlaybackPhase.PLAYING)

    def _report_stats(self) -> None:
        stream = self.stream
        if stream is None:
            return
        for track in stream.get_tracks():
            if track.kind == "video":
                self.observer.on_stats(track.get_settings().describe())
                return

    def stop(self) -> None:
        self._generation += 1
        self._cancel_monitor()
        stream = self.stream
        self.stream = None
        if stream is not None:
            self._detach_listeners(stream)
            for track in stream.get_tracks():
                try:
                    track.stop()
                except Exception as exc:  # pragma: no cover - best effort
                    LOGGER.debug("Failed to stop track: %s", exc)
        self._play_in_flight = False
        self.state = PlaybackState(phase=self.state.phase, max_retries=self.state.max_retries)
        self._set_phase(PlaybackPhase.STOPPED)
