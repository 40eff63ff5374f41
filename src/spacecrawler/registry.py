"""
Watcher registry.
Keeps at most one active watcher per space ID.
"""

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .events import EventEmitter
from .logger import get_logger
from .space_api import SpaceAPI
from .watcher import SpaceWatcher, WatcherOptions, WatcherState


TERMINAL_EVENTS = ('complete', 'error', 'cancelled')


class WatcherRegistry(EventEmitter):
    """
    Tracks one SpaceWatcher per space ID.

    Features:
    - Idempotent registration (same watcher returned while it is active)
    - Terminal events relayed as ``event(space_id, payload)``
    - Completed and cancelled watchers removed after a grace period;
      failed watchers stay until ``unregister``
    """

    def __init__(
        self,
        api: SpaceAPI,
        output_dir: str = "./download",
        extension: str = "aac",
        options: Optional[WatcherOptions] = None,
        capture_options: Optional[Dict[str, Any]] = None,
        removal_grace: float = 60.0,
        watcher_factory: Callable[..., SpaceWatcher] = SpaceWatcher
    ):
        """
        Initialize the registry.

        Args:
            api: Status client shared by all watchers.
            output_dir: Default directory for captures.
            extension: Output file extension.
            options: Default polling policy for new watchers.
            capture_options: Default StreamCapture keyword arguments.
            removal_grace: Seconds a completed/cancelled watcher stays registered.
            watcher_factory: Builds watchers.
        """
        super().__init__()
        self.api = api
        self.output_dir = Path(output_dir)
        self.extension = extension.lstrip('.')
        self.options = options or WatcherOptions()
        self.capture_options = capture_options or {}
        self.removal_grace = removal_grace

        self._watcher_factory = watcher_factory
        self._watchers: Dict[str, SpaceWatcher] = {}
        self._removal_handles: Dict[str, asyncio.TimerHandle] = {}
        self._relays: Dict[str, List[Tuple[str, Callable[..., Any]]]] = {}
        self._logger = get_logger('registry')

    def __contains__(self, space_id: str) -> bool:
        return space_id in self._watchers

    def __len__(self) -> int:
        return len(self._watchers)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._watchers))

    def get(self, space_id: str) -> Optional[SpaceWatcher]:
        return self._watchers.get(space_id)

    def output_path_for(self, space_id: str, filename: Optional[str] = None, sub_dir: str = "") -> Path:
        directory = self.output_dir / sub_dir if sub_dir else self.output_dir
        return directory / f"{filename or f'Space_{space_id}'}.{self.extension}"

    def register(
        self,
        space_id: str,
        filename: Optional[str] = None,
        sub_dir: str = "",
        options: Optional[WatcherOptions] = None
    ) -> SpaceWatcher:
        """
        Return the active watcher for a space, creating and starting one if needed.

        A watcher left in a terminal state is replaced by a new one.
        Must be called from the event loop.
        """
        existing = self._watchers.get(space_id)
        if existing and not existing.is_terminal:
            self._logger.debug(f"Already watching {space_id}")
            return existing
        if existing:
            self._drop(space_id)

        watcher = self._watcher_factory(
            space_id,
            self.api,
            str(self.output_path_for(space_id, filename, sub_dir)),
            options=options or self.options,
            capture_options=self.capture_options,
        )
        self._relays[space_id] = [
            (event, watcher.on(event, self._make_relay(space_id, watcher, event)))
            for event in TERMINAL_EVENTS
        ]

        self._watchers[space_id] = watcher
        watcher.start()
        self._logger.info(f"Registered watcher for space {space_id} ({len(self._watchers)} active)")
        return watcher

    async def unregister(self, space_id: str) -> bool:
        """
        Cancel and remove a watcher.

        Returns:
            True if a watcher was registered.
        """
        watcher = self._watchers.get(space_id)
        if watcher is None:
            return False
        await watcher.cancel()
        if self._watchers.get(space_id) is watcher:
            self._drop(space_id)
        self._logger.info(f"Unregistered watcher for space {space_id}")
        return True

    async def close(self) -> None:
        """Cancel every watcher and clear the registry."""
        watchers = list(self._watchers.values())
        await asyncio.gather(*(w.cancel() for w in watchers), return_exceptions=True)
        for space_id in list(self._watchers):
            self._drop(space_id)

    def _drop(self, space_id: str) -> None:
        handle = self._removal_handles.pop(space_id, None)
        if handle:
            handle.cancel()
        watcher = self._watchers.pop(space_id, None)
        for event, relay in self._relays.pop(space_id, []):
            if watcher:
                watcher.off(event, relay)

    def _make_relay(self, space_id: str, watcher: SpaceWatcher, event: str):
        async def relay(*args: Any) -> None:
            if watcher.state != WatcherState.FAILED:
                self._schedule_removal(space_id, watcher)
            await self.emit(event, space_id, *args)
        return relay

    def _schedule_removal(self, space_id: str, watcher: SpaceWatcher) -> None:
        def remove() -> None:
            self._removal_handles.pop(space_id, None)
            if self._watchers.get(space_id) is watcher:
                self._drop(space_id)
                self._logger.debug(f"Removed finished watcher for space {space_id}")

        old = self._removal_handles.pop(space_id, None)
        if old:
            old.cancel()
        self._removal_handles[space_id] = asyncio.get_running_loop().call_later(self.removal_grace, remove)
