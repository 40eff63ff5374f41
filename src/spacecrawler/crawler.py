"""
Library API for spacecrawler.

Programmatic interface to watch and download Twitter Spaces without the
command line.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .capture import capture_from_manifest
from .config import Config
from .credentials import CredentialStore, credential_store
from .errors import CrawlerError
from .logger import get_logger, log_operation
from .registry import WatcherRegistry
from .space_api import SpaceAPI, get_space_id
from .watcher import SpaceWatcher, WatcherOptions


@dataclass
class DownloadResult:
    """Outcome of a download request."""
    success: bool
    filename: Optional[str] = None
    file_path: Optional[str] = None
    error: Optional[str] = None
    watcher: Optional[SpaceWatcher] = None


class SpaceCrawler:
    """
    Main entry point for programmatic usage.

    Call ``init()`` once, then start downloads from inside an event loop.
    """

    def __init__(self, credentials: Optional[CredentialStore] = None):
        self.credentials = credentials or credential_store
        self.config = Config()
        self.api: Optional[SpaceAPI] = None
        self.registry: Optional[WatcherRegistry] = None
        self._initialized = False
        self._logger = get_logger('crawler')

    def init(
        self,
        config: Optional[Config] = None,
        auth_token: Optional[str] = None,
        csrf_token: Optional[str] = None,
        tokens_path: Optional[str] = None,
        skip_download: Optional[bool] = None
    ) -> None:
        """
        Initialize credentials and shared clients.

        Explicit arguments take precedence over the configuration.
        """
        self.config = config or Config()
        creds = self.config.credentials

        self.credentials.init(
            auth_token=auth_token or creds.auth_token or None,
            csrf_token=csrf_token or creds.csrf_token or None,
            tokens_path=tokens_path or creds.tokens_path or None,
        )

        if skip_download is not None:
            self.config.capture.skip_download = skip_download

        self.api = SpaceAPI(
            credentials=self.credentials,
            bearer_token=creds.bearer_token,
            graphql_url=self.config.api.graphql_url,
            status_url=self.config.api.status_url,
            request_timeout=self.config.api.request_timeout,
        )

        w = self.config.watcher
        self.registry = WatcherRegistry(
            api=self.api,
            output_dir=self.config.capture.output_dir,
            extension=self.config.capture.extension,
            options=WatcherOptions(
                scheduled_interval=w.scheduled_interval,
                live_interval=w.live_interval,
                not_found_limit=w.not_found_limit,
                max_transient_errors=w.max_transient_errors,
                backoff_factor=w.backoff_factor,
                max_backoff=w.max_backoff,
                skip_download=self.config.capture.skip_download,
            ),
            capture_options=self._capture_options(),
            removal_grace=w.removal_grace,
        )

        self._initialized = True
        self._logger.info("SpaceCrawler initialized")

    def _capture_options(self) -> Dict[str, Any]:
        c = self.config.capture
        return {
            'concurrency': c.concurrency,
            'chunk_retries': c.chunk_retries,
            'retry_base_delay': c.retry_base_delay,
            'retry_max_delay': c.retry_max_delay,
            'request_timeout': c.request_timeout,
            'follow_live': c.follow_live,
            'live_idle_limit': c.live_idle_limit,
        }

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise CrawlerError("SpaceCrawler not initialized. Call init() first.")
        self.credentials.start_watching()

    def set_credentials(self, auth_token: Optional[str] = None, csrf_token: Optional[str] = None) -> None:
        """Replace both credentials. Active watchers use them from their next request."""
        self.credentials.set(auth_token, csrf_token)
        self._logger.info("Authentication tokens updated")

    def get_auth_status(self) -> Dict[str, bool]:
        return self.credentials.get_auth_status()

    async def download_by_url(
        self,
        space_url: str,
        filename: Optional[str] = None,
        sub_dir: str = "",
        on_complete: Optional[Callable[[str], Any]] = None
    ) -> DownloadResult:
        """Watch and download a space given its URL."""
        space_id = get_space_id(space_url)
        if not space_id:
            return DownloadResult(success=False, error=f"Invalid Space URL: {space_url}")
        return await self.download_by_space_id(space_id, filename, sub_dir, on_complete)

    async def download_by_space_id(
        self,
        space_id: str,
        filename: Optional[str] = None,
        sub_dir: str = "",
        on_complete: Optional[Callable[[str], Any]] = None
    ) -> DownloadResult:
        """
        Start watching a space. The download runs in the background.

        Returns:
            DownloadResult carrying the watcher for event listening.
        """
        try:
            self._ensure_initialized()
            watcher = self.registry.register(space_id, filename=filename, sub_dir=sub_dir)
        except CrawlerError as e:
            self._logger.error(f"download_by_space_id error: {e}")
            return DownloadResult(success=False, error=str(e))

        if on_complete:
            watcher.on('complete', lambda _path: on_complete(space_id))

        self._logger.info(f"Started Space watcher for ID: {space_id}")
        return DownloadResult(
            success=True,
            filename=watcher.output_path.stem,
            file_path=str(watcher.output_path),
            watcher=watcher,
        )

    @log_operation("playlist download")
    async def download_by_playlist_url(
        self,
        playlist_url: str,
        filename: Optional[str] = None,
        sub_dir: str = ""
    ) -> DownloadResult:
        """Download directly from a playlist URL and wait for the result."""
        try:
            self._ensure_initialized()
        except CrawlerError as e:
            return DownloadResult(success=False, error=str(e))

        filename = filename or f"Space_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        output_path = self.config.capture.media_dir(sub_dir) / f"{filename}.{self.config.capture.extension}"

        result = await capture_from_manifest(playlist_url, str(output_path), **self._capture_options())
        if not result.success:
            self._logger.error(f"Playlist download failed: {result.error}")
            return DownloadResult(success=False, filename=filename, error=result.error)

        return DownloadResult(success=True, filename=filename, file_path=result.output_path)

    async def close(self) -> None:
        """Stop all watchers, the tokens file watch and the HTTP session."""
        if self.registry:
            await self.registry.close()
        if self.api:
            await self.api.close()
        await self.credentials.stop_watching()


space_crawler = SpaceCrawler()
