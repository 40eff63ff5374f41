"""
Space watcher.
Polls a space's status until it can be captured, then captures it.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .capture import CaptureProgress, CaptureStatus, StreamCapture
from .errors import (
    AuthenticationError,
    CaptureCancelledError,
    NotFoundError,
    SpaceUnavailableError,
    TransientNetworkError,
)
from .events import EventEmitter
from .logger import get_space_logger
from .space_api import SpaceAPI, SpaceState, SpaceStatus


class WatcherState(Enum):
    """Watcher lifecycle states."""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    LIVE = "live"
    CAPTURING = "capturing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (WatcherState.COMPLETED, WatcherState.FAILED, WatcherState.CANCELLED)


@dataclass
class WatcherOptions:
    """Polling policy. Every value can be overridden per watcher."""
    scheduled_interval: float = 30.0
    live_interval: float = 5.0
    not_found_limit: int = 3
    max_transient_errors: int = 10
    backoff_factor: float = 2.0
    max_backoff: float = 300.0
    skip_download: bool = False


CaptureFactory = Callable[..., StreamCapture]


class SpaceWatcher(EventEmitter):
    """
    Watches one space through its lifecycle.

    Events:
    - scheduled()
    - live()
    - capturing(manifest_url)
    - progress(CaptureProgress)
    - complete(output_path)
    - error(exception)
    - cancelled()
    """

    def __init__(
        self,
        space_id: str,
        api: SpaceAPI,
        output_path: str,
        options: Optional[WatcherOptions] = None,
        capture_options: Optional[Dict[str, Any]] = None,
        capture_factory: CaptureFactory = StreamCapture
    ):
        """
        Initialize a watcher. Call ``start()`` to begin polling.

        Args:
            space_id: Space ID.
            api: Status client.
            output_path: Output file for the capture.
            options: Polling policy.
            capture_options: Extra keyword arguments for StreamCapture.
            capture_factory: Builds the StreamCapture.
        """
        super().__init__()
        self.space_id = space_id
        self.api = api
        self.output_path = Path(output_path)
        self.options = options or WatcherOptions()
        self.capture_options = capture_options or {}

        self.state = WatcherState.PENDING
        self.last_status: Optional[SpaceStatus] = None
        self.error: Optional[BaseException] = None
        self.result_path: Optional[str] = None
        self.not_found_count = 0
        self.transient_error_count = 0

        self._capture_factory = capture_factory
        self._capture: Optional[StreamCapture] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._done = asyncio.Event()
        self._logger = get_space_logger(space_id, 'watcher')

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def capture(self) -> Optional[StreamCapture]:
        return self._capture

    def start(self) -> asyncio.Task:
        """Start the polling task. Must be called from the event loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"watch-{self.space_id}")
        return self._task

    async def wait(self) -> WatcherState:
        """Wait for a terminal state and return it."""
        await self._done.wait()
        return self.state

    async def cancel(self) -> None:
        """Stop polling and any running capture. Returns once stopped."""
        if self.is_terminal:
            return

        self._stop_event.set()
        if self._capture:
            self._capture.cancel()

        if self._task and not self._task.done():
            self._task.cancel()
            await asyncio.wait([self._task])

        # A task cancelled before its first step never reaches its own handler
        if not self.is_terminal:
            await self._finish(WatcherState.CANCELLED)

    # State machine

    async def _transition(self, state: WatcherState, *args: Any) -> None:
        if state == self.state:
            return
        self._logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state
        event = {
            WatcherState.SCHEDULED: 'scheduled',
            WatcherState.LIVE: 'live',
            WatcherState.CAPTURING: 'capturing',
        }.get(state)
        if event:
            await self.emit(event, *args)

    async def _finish(self, state: WatcherState, payload: Any = None) -> None:
        if self.is_terminal:
            return
        self.state = state
        self._stop_event.set()

        if state == WatcherState.COMPLETED:
            self.result_path = payload
            await self.emit('complete', payload)
        elif state == WatcherState.FAILED:
            self.error = payload
            await self.emit('error', payload)
        else:
            await self.emit('cancelled')
        self._done.set()

    def _next_delay(self) -> float:
        interval = (
            self.options.live_interval
            if self.state == WatcherState.LIVE
            else self.options.scheduled_interval
        )
        if self.transient_error_count:
            backoff = interval * self.options.backoff_factor ** self.transient_error_count
            interval = max(interval, min(backoff, self.options.max_backoff))
        return interval

    async def _sleep(self, seconds: float) -> None:
        """Wait between polls; returns early on cancellation."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _poll_once(self) -> Optional[SpaceStatus]:
        """
        Poll the status endpoint and apply the result.

        Returns:
            The status when the space is ready to capture, otherwise None.
        """
        try:
            status = await self.api.fetch_status(self.space_id)
        except TransientNetworkError as e:
            self.transient_error_count += 1
            self._logger.warning(
                f"Status check failed ({self.transient_error_count}/"
                f"{self.options.max_transient_errors}): {e}"
            )
            if self.transient_error_count > self.options.max_transient_errors:
                await self._finish(WatcherState.FAILED, e)
            return None

        self.transient_error_count = 0
        self.last_status = status

        if status.state == SpaceState.NOT_FOUND:
            self.not_found_count += 1
            self._logger.info(f"Space not found ({self.not_found_count}/{self.options.not_found_limit})")
            if self.not_found_count >= self.options.not_found_limit:
                await self._finish(WatcherState.FAILED, NotFoundError(f"Space {self.space_id} not found"))
            return None

        self.not_found_count = 0

        if status.state == SpaceState.SCHEDULED:
            if self.state != WatcherState.SCHEDULED:
                self._logger.info(f"📅 Space scheduled: {status.title or self.space_id}")
            await self._transition(WatcherState.SCHEDULED)
            return None

        if status.state == SpaceState.LIVE_NO_MANIFEST:
            if self.state != WatcherState.LIVE:
                self._logger.info("🔴 Space is live, waiting for playlist")
            await self._transition(WatcherState.LIVE)
            return None

        if status.state == SpaceState.ENDED and not status.manifest_url:
            await self._finish(
                WatcherState.FAILED,
                SpaceUnavailableError(f"Space {self.space_id} ended without an available recording")
            )
            return None

        return status

    async def _run_capture(self, status: SpaceStatus) -> None:
        if self.state != WatcherState.LIVE and status.state == SpaceState.LIVE_CAPTURABLE:
            await self._transition(WatcherState.LIVE)

        await self._transition(WatcherState.CAPTURING, status.manifest_url)

        if self.options.skip_download:
            self._logger.info("Download skipped by configuration")
            await self._finish(WatcherState.COMPLETED, None)
            return

        self._logger.info(f"🎙️ Capturing: {status.title or self.space_id}")
        self._capture = self._capture_factory(
            status.manifest_url,
            str(self.output_path),
            space_id=self.space_id,
            **self.capture_options
        )
        self._capture.on('progress', self._relay_progress)

        try:
            await self._capture.run()
        except CaptureCancelledError:
            await self._finish(WatcherState.CANCELLED)
            return
        except Exception as e:
            await self._finish(WatcherState.FAILED, e)
            return

        await self._finish(WatcherState.COMPLETED, str(self.output_path))

    async def _relay_progress(self, progress: CaptureProgress) -> None:
        await self.emit('progress', progress)

    async def _run(self) -> None:
        self._logger.info("👀 Watching space")
        try:
            while not self.is_terminal and not self._stop_event.is_set():
                status = await self._poll_once()
                if self.is_terminal:
                    break
                if status is not None:
                    await self._run_capture(status)
                    break
                await self._sleep(self._next_delay())

            if not self.is_terminal:
                await self._finish(WatcherState.CANCELLED)

        except asyncio.CancelledError:
            if self._capture and self._capture.status == CaptureStatus.RUNNING:
                self._capture.cancel()
            await self._finish(WatcherState.CANCELLED)

        except AuthenticationError as e:
            self._logger.error(f"🔒 Credentials rejected: {e}")
            await self._finish(WatcherState.FAILED, e)

        except Exception as e:
            self._logger.error(f"Watcher error: {e}")
            await self._finish(WatcherState.FAILED, e)
