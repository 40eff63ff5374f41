"""Watch Twitter Spaces and capture their audio streams."""

from .capture import (
    CaptureJob,
    CaptureProgress,
    CaptureResult,
    ChunkReference,
    StreamCapture,
    capture_from_manifest,
    parse_manifest,
)
from .credentials import CredentialStore, Credentials, credential_store
from .crawler import DownloadResult, SpaceCrawler, space_crawler
from .errors import (
    AuthenticationError,
    CaptureCancelledError,
    ChunkFetchError,
    CrawlerError,
    ManifestError,
    NotFoundError,
    SpaceUnavailableError,
    TransientNetworkError,
)
from .registry import WatcherRegistry
from .space_api import SpaceAPI, SpaceState, SpaceStatus, get_space_id
from .watcher import SpaceWatcher, WatcherOptions, WatcherState

__version__ = "0.1.0"
