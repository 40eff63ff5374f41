"""
Stream capture for Spaces audio playlists.

Resolves an HLS playlist into ordered chunk references, downloads the chunks
with a small worker pool and appends them to a single output file strictly
in sequence order.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

import aiofiles
import aiohttp
import m3u8

from .errors import (
    AuthenticationError,
    CaptureCancelledError,
    ChunkFetchError,
    CrawlerError,
    ManifestError,
    TransientNetworkError,
)
from .events import EventEmitter
from .logger import format_progress, format_size, get_space_logger


@dataclass(frozen=True)
class ChunkReference:
    """One chunk of the stream, in capture order."""
    index: int
    url: str
    duration: float = 0.0
    byte_range: Optional[Tuple[int, int]] = None  # (offset, length)
    media_sequence: Optional[int] = None

    def range_header(self) -> Optional[str]:
        if not self.byte_range:
            return None
        offset, length = self.byte_range
        return f"bytes={offset}-{offset + length - 1}"


@dataclass
class CaptureProgress:
    """Progress snapshot emitted after each flush."""
    bytes_written: int
    total_chunks: int
    chunks_written: int


class CaptureStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class CaptureJob:
    """Unit of work turning a playlist into one output file."""
    space_id: str
    output_path: Path
    chunks: List[ChunkReference] = field(default_factory=list)
    bytes_written: int = 0
    chunks_written: int = 0

    @property
    def temp_path(self) -> Path:
        return self.output_path.with_name(self.output_path.name + '.part')


@dataclass
class CaptureResult:
    """Result of a capture run."""
    success: bool
    output_path: str
    status: CaptureStatus
    bytes_written: int = 0
    total_chunks: int = 0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if not self.started_at or not self.ended_at:
            return 0.0
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def file_size_formatted(self) -> str:
        return format_size(self.bytes_written)


def load_playlist(text: str, url: str) -> m3u8.M3U8:
    """
    Parse playlist text.

    Raises:
        ManifestError: If the text is not an M3U8 playlist.
    """
    if not text or not text.lstrip('\ufeff').lstrip().startswith('#EXTM3U'):
        raise ManifestError(f"Not an M3U8 playlist: {url}")
    try:
        return m3u8.loads(text, uri=url)
    except Exception as e:
        raise ManifestError(f"Unparseable playlist {url}: {e}") from e


def _parse_byterange(value: str, previous_end: int) -> Tuple[int, int]:
    length, _, offset = value.partition('@')
    start = int(offset) if offset else previous_end
    return start, int(length)


def playlist_chunks(
    playlist: m3u8.M3U8,
    start_index: int = 0,
    seen: Optional[Set[int]] = None
) -> List[ChunkReference]:
    """
    Build chunk references for a media playlist.

    Args:
        playlist: Parsed media playlist.
        start_index: Capture index assigned to the first new chunk.
        seen: Media sequence numbers already queued; updated in place.

    Returns:
        New chunks in playlist order.
    """
    chunks = []
    first_sequence = playlist.media_sequence or 0
    range_ends: Dict[str, int] = {}
    index = start_index

    for i, segment in enumerate(playlist.segments):
        sequence = first_sequence + i
        try:
            url = segment.absolute_uri
        except ValueError as e:
            raise ManifestError(f"Chunk {i} has no resolvable URL: {e}") from e

        byte_range = None
        if segment.byterange:
            try:
                byte_range = _parse_byterange(segment.byterange, range_ends.get(url, 0))
            except ValueError as e:
                raise ManifestError(f"Bad byte range '{segment.byterange}'") from e
            range_ends[url] = byte_range[0] + byte_range[1]

        if seen is not None:
            if sequence in seen:
                continue
            seen.add(sequence)

        chunks.append(ChunkReference(
            index=index,
            url=url,
            duration=segment.duration or 0.0,
            byte_range=byte_range,
            media_sequence=sequence,
        ))
        index += 1

    return chunks


def parse_manifest(text: str, url: str) -> List[ChunkReference]:
    """
    Parse a media playlist into ordered chunk references.

    Raises:
        ManifestError: If the playlist is unparseable, a master playlist,
            or lists no chunks.
    """
    playlist = load_playlist(text, url)
    if playlist.is_variant:
        raise ManifestError(f"Master playlist given where a media playlist is required: {url}")
    chunks = playlist_chunks(playlist)
    if not chunks:
        raise ManifestError(f"Playlist lists no chunks: {url}")
    return chunks


class OrderedWriter:
    """
    Reorder buffer in front of the output file.

    Chunks may arrive in any order; bytes reach the file strictly by
    ascending index. Only this class writes to the file.

    With a ``window``, only indices below ``next_index + window`` are
    admitted, so at most ``window - 1`` chunks wait in the buffer.
    """

    def __init__(self, file, window: Optional[int] = None):
        self._file = file
        self._buffer: Dict[int, bytes] = {}
        self._advanced = asyncio.Condition()
        self.window = window
        self.next_index = 0
        self.bytes_written = 0

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def _admits(self, index: int) -> bool:
        return self.window is None or index < self.next_index + self.window

    async def reserve(self, index: int) -> None:
        """Wait until ``index`` falls inside the window."""
        async with self._advanced:
            await self._advanced.wait_for(lambda: self._admits(index))

    async def submit(self, index: int, data: bytes) -> int:
        """
        Buffer a chunk and flush the contiguous prefix.

        Returns:
            Number of chunks written to the file by this call.
        """
        async with self._advanced:
            if index < self.next_index or index in self._buffer:
                return 0
            self._buffer[index] = data

            flushed = 0
            while self.next_index in self._buffer:
                chunk = self._buffer.pop(self.next_index)
                await self._file.write(chunk)
                self.bytes_written += len(chunk)
                self.next_index += 1
                flushed += 1
            if flushed:
                self._advanced.notify_all()
            return flushed

    def discard(self) -> None:
        self._buffer.clear()


class StreamCapture(EventEmitter):
    """
    Captures one playlist into one output file.

    Events:
    - progress(CaptureProgress)
    - complete(output_path)
    - error(exception)
    - cancelled()
    """

    def __init__(
        self,
        manifest_url: str,
        output_path: str,
        space_id: str = "",
        session: Optional[aiohttp.ClientSession] = None,
        headers_provider: Optional[Callable[[], Dict[str, str]]] = None,
        concurrency: int = 4,
        chunk_retries: int = 5,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 10.0,
        request_timeout: float = 30.0,
        follow_live: bool = True,
        live_idle_limit: int = 6,
        live_refresh_interval: Optional[float] = None
    ):
        """
        Initialize a capture.

        Args:
            manifest_url: Master or media playlist URL.
            output_path: Final output file.
            space_id: Space ID, for logging.
            session: Optional shared aiohttp session (not closed here).
            headers_provider: Called per request for extra headers.
            concurrency: Parallel chunk downloads.
            chunk_retries: Attempts per chunk before the job fails.
            retry_base_delay: First backoff delay, doubled per attempt.
            retry_max_delay: Backoff cap.
            request_timeout: Total timeout per request.
            follow_live: Keep refreshing playlists without ENDLIST.
            live_idle_limit: Refreshes without new chunks before stopping.
            live_refresh_interval: Override the playlist target duration.
        """
        super().__init__()
        self.manifest_url = manifest_url
        self.job = CaptureJob(space_id=space_id, output_path=Path(output_path))
        self.status = CaptureStatus.PENDING
        self.concurrency = max(1, concurrency)
        self.chunk_retries = max(1, chunk_retries)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.request_timeout = request_timeout
        self.follow_live = follow_live
        self.live_idle_limit = max(1, live_idle_limit)
        self.live_refresh_interval = live_refresh_interval

        self._session = session
        self._headers_provider = headers_provider
        self._cancel_requested = False
        self._task: Optional[asyncio.Task] = None
        self._writer: Optional[OrderedWriter] = None
        self._seen_sequences: Set[int] = set()
        self._logger = get_space_logger(space_id or Path(output_path).stem, 'capture')

    @property
    def output_path(self) -> Path:
        return self.job.output_path

    def cancel(self) -> None:
        """Request cooperative cancellation. ``run()`` cleans up and raises."""
        self._cancel_requested = True
        if self._task and not self._task.done():
            self._task.cancel()

    def _headers(self, chunk: Optional[ChunkReference] = None) -> Dict[str, str]:
        headers = dict(self._headers_provider()) if self._headers_provider else {}
        if chunk is not None and chunk.byte_range:
            headers['Range'] = chunk.range_header()
        return headers

    async def _backoff(self, attempt: int) -> None:
        await asyncio.sleep(min(self.retry_base_delay * (2 ** (attempt - 1)), self.retry_max_delay))

    async def _fetch_text(self, session: aiohttp.ClientSession, url: str) -> str:
        try:
            async with session.get(
                url,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            ) as resp:
                if resp.status in (401, 403):
                    raise AuthenticationError(f"Playlist rejected with HTTP {resp.status}", status=resp.status)
                if resp.status == 404:
                    raise ManifestError(f"Playlist not found: {url}")
                if resp.status != 200:
                    raise TransientNetworkError(f"HTTP {resp.status} for playlist", status=resp.status)
                return await resp.text()
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Timeout fetching playlist {url}") from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Playlist request failed: {e}") from e

    async def _fetch_playlist(self, session: aiohttp.ClientSession, url: str) -> m3u8.M3U8:
        """Fetch and parse a playlist, retrying transient failures."""
        attempt = 0
        while True:
            attempt += 1
            try:
                text = await self._fetch_text(session, url)
                return load_playlist(text, url)
            except TransientNetworkError as e:
                if attempt >= self.chunk_retries:
                    raise
                self._logger.warning(f"Playlist fetch failed ({attempt}/{self.chunk_retries}): {e}")
                await self._backoff(attempt)

    async def _resolve_playlist(self, session: aiohttp.ClientSession) -> Tuple[m3u8.M3U8, str]:
        """Fetch the manifest, following a master playlist to its first variant."""
        url = self.manifest_url
        playlist = await self._fetch_playlist(session, url)
        if playlist.is_variant:
            if not playlist.playlists:
                raise ManifestError(f"Master playlist lists no variants: {url}")
            url = playlist.playlists[0].absolute_uri
            self._logger.debug(f"Master playlist -> {url}")
            playlist = await self._fetch_playlist(session, url)
            if playlist.is_variant:
                raise ManifestError(f"Nested master playlist: {url}")
        return playlist, url

    def _take_new_chunks(self, playlist: m3u8.M3U8) -> List[ChunkReference]:
        chunks = playlist_chunks(playlist, len(self.job.chunks), self._seen_sequences)
        self.job.chunks.extend(chunks)
        return chunks

    async def _fetch_chunk(self, session: aiohttp.ClientSession, chunk: ChunkReference) -> bytes:
        """Download one chunk with exponential backoff."""
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.chunk_retries + 1):
            try:
                async with session.get(
                    chunk.url,
                    headers=self._headers(chunk),
                    timeout=aiohttp.ClientTimeout(total=self.request_timeout)
                ) as resp:
                    if resp.status in (200, 206):
                        return await resp.read()
                    if 400 <= resp.status < 500 and resp.status not in (408, 429):
                        cause = CrawlerError(f"HTTP {resp.status}")
                        raise ChunkFetchError(chunk.index, chunk.url, cause) from cause
                    last_error = TransientNetworkError(f"HTTP {resp.status}", status=resp.status)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e

            if attempt < self.chunk_retries:
                self._logger.debug(f"Chunk {chunk.index} attempt {attempt} failed: {last_error}")
                await self._backoff(attempt)

        raise ChunkFetchError(chunk.index, chunk.url, last_error) from last_error

    async def _worker(
        self,
        session: aiohttp.ClientSession,
        queue: asyncio.Queue,
        writer: OrderedWriter
    ) -> None:
        while True:
            chunk = await queue.get()
            if chunk is None:
                return
            await writer.reserve(chunk.index)
            data = await self._fetch_chunk(session, chunk)
            if await writer.submit(chunk.index, data):
                self.job.bytes_written = writer.bytes_written
                self.job.chunks_written = writer.next_index
                self._logger.debug(format_progress(writer.next_index, len(self.job.chunks), writer.bytes_written))
                await self.emit('progress', CaptureProgress(
                    bytes_written=writer.bytes_written,
                    total_chunks=len(self.job.chunks),
                    chunks_written=writer.next_index,
                ))

    async def _follow_live(
        self,
        session: aiohttp.ClientSession,
        playlist: m3u8.M3U8,
        url: str,
        queue: asyncio.Queue
    ) -> None:
        """Refresh a live playlist and queue new chunks until it ends."""
        interval = self.live_refresh_interval or max(1.0, float(playlist.target_duration or 2))
        idle = 0

        while True:
            await asyncio.sleep(interval)
            try:
                playlist = await self._fetch_playlist(session, url)
            except (ManifestError, TransientNetworkError) as e:
                idle += 1
                self._logger.warning(f"Live playlist refresh failed: {e}")
            else:
                chunks = self._take_new_chunks(playlist)
                for chunk in chunks:
                    queue.put_nowait(chunk)
                idle = 0 if chunks else idle + 1
                if playlist.is_endlist:
                    self._logger.info("Live playlist ended")
                    return
            if idle >= self.live_idle_limit:
                self._logger.info(f"No new chunks after {idle} refreshes, treating stream as ended")
                return

    async def _pump(
        self,
        session: aiohttp.ClientSession,
        playlist: m3u8.M3U8,
        url: str,
        writer: OrderedWriter
    ) -> None:
        queue: asyncio.Queue = asyncio.Queue()
        for chunk in self.job.chunks:
            queue.put_nowait(chunk)

        workers = [
            asyncio.create_task(self._worker(session, queue, writer))
            for _ in range(self.concurrency)
        ]
        tasks = list(workers)

        try:
            if self.follow_live and not playlist.is_endlist:
                self._logger.info("🔴 Live playlist, following until it ends")
                producer = asyncio.create_task(self._follow_live(session, playlist, url, queue))
                tasks.append(producer)

                # Workers only return on the sentinel, so wait for the producer
                # while surfacing any worker failure as soon as it happens
                pending = set(tasks)
                while not producer.done():
                    done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                    for task in done:
                        if task.exception():
                            raise task.exception()

            for _ in workers:
                queue.put_nowait(None)

            done, _ = await asyncio.wait(workers, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if task.exception():
                    raise task.exception()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    def _remove_partial(self) -> None:
        try:
            self.job.temp_path.unlink(missing_ok=True)
        except OSError as e:
            self._logger.warning(f"Failed to delete partial file {self.job.temp_path}: {e}")

    async def _execute(self, session: aiohttp.ClientSession) -> None:
        playlist, url = await self._resolve_playlist(session)
        if not self._take_new_chunks(playlist):
            raise ManifestError(f"Playlist lists no chunks: {url}")

        self.job.output_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.job.temp_path, 'wb') as f:
            self._writer = OrderedWriter(f, window=2 * self.concurrency)
            await self._pump(session, playlist, url, self._writer)

        unwritten = len(self.job.chunks) - self._writer.next_index
        if unwritten:
            raise CrawlerError(f"Capture ended with {unwritten} chunks unwritten")

        self.job.temp_path.replace(self.job.output_path)

    async def run(self) -> CaptureResult:
        """
        Run the capture to completion.

        Returns:
            CaptureResult for a completed capture.

        Raises:
            ManifestError, ChunkFetchError, AuthenticationError,
            TransientNetworkError: Unrecoverable failure; no output is left.
            CaptureCancelledError: ``cancel()`` was called.
        """
        if self.status != CaptureStatus.PENDING:
            raise RuntimeError("StreamCapture can only run once")

        self.status = CaptureStatus.RUNNING
        started_at = datetime.now()
        session = self._session or aiohttp.ClientSession()

        self._logger.info(f"Starting capture: {self.output_path.name}")

        try:
            self._task = asyncio.create_task(self._execute(session))
            if self._cancel_requested:
                self._task.cancel()
            await self._task

        except asyncio.CancelledError:
            # Let the inner task finish its own cleanup before removing files
            if not self._task.done():
                self._task.cancel()
                await asyncio.wait([self._task])
            if self._writer:
                self._writer.discard()
            self._remove_partial()
            self.status = CaptureStatus.CANCELLED
            self._logger.info("Capture cancelled")
            await self.emit('cancelled')
            if self._cancel_requested:
                raise CaptureCancelledError(f"Capture of {self.output_path.name} cancelled")
            raise

        except Exception as e:
            if self._writer:
                self._writer.discard()
            self._remove_partial()
            self.status = CaptureStatus.FAILED
            self._logger.error(f"Capture failed: {e}")
            await self.emit('error', e)
            raise

        finally:
            if self._session is None:
                await session.close()

        self.status = CaptureStatus.COMPLETED
        result = CaptureResult(
            success=True,
            output_path=str(self.output_path),
            status=self.status,
            bytes_written=self.job.bytes_written,
            total_chunks=len(self.job.chunks),
            started_at=started_at,
            ended_at=datetime.now(),
        )
        self._logger.info(
            f"✅ Capture complete: {self.output_path.name} "
            f"({result.total_chunks} chunks, {result.file_size_formatted})"
        )
        await self.emit('complete', str(self.output_path))
        return result


async def capture_from_manifest(
    manifest_url: str,
    output_path: str,
    **options
) -> CaptureResult:
    """
    Capture a playlist straight to a file.

    Never raises for capture failures; the returned result carries the error.

    Args:
        manifest_url: Master or media playlist URL.
        output_path: Output file.
        **options: Passed to StreamCapture.
    """
    capture = StreamCapture(manifest_url, output_path, **options)
    started_at = datetime.now()
    try:
        return await capture.run()
    except (CrawlerError, aiohttp.ClientError, OSError) as e:
        return CaptureResult(
            success=False,
            output_path=str(output_path),
            status=capture.status,
            bytes_written=0,
            total_chunks=len(capture.job.chunks),
            started_at=started_at,
            ended_at=datetime.now(),
            error=str(e),
        )
