"""Shared test helpers: local HTTP servers, playlist builders and fakes."""

import asyncio
from contextlib import asynccontextmanager
from typing import Iterable, List, Optional

from aiohttp import web
from aiohttp.test_utils import TestServer

from spacecrawler.capture import CaptureProgress, CaptureStatus
from spacecrawler.errors import CaptureCancelledError


@asynccontextmanager
async def serve(routes: Iterable[web.RouteDef]):
    """Run an aiohttp app on a free local port for the duration of the block."""
    app = web.Application()
    app.add_routes(list(routes))
    server = TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


def media_playlist(
    names: List[str],
    endlist: bool = True,
    media_sequence: int = 0,
    target_duration: int = 2,
    byteranges: Optional[List[str]] = None
) -> str:
    lines = [
        '#EXTM3U',
        '#EXT-X-VERSION:4',
        f'#EXT-X-TARGETDURATION:{target_duration}',
        f'#EXT-X-MEDIA-SEQUENCE:{media_sequence}',
    ]
    for i, name in enumerate(names):
        lines.append('#EXTINF:2.0,')
        if byteranges:
            lines.append(f'#EXT-X-BYTERANGE:{byteranges[i]}')
        lines.append(name)
    if endlist:
        lines.append('#EXT-X-ENDLIST')
    return '\n'.join(lines) + '\n'


def master_playlist(variant: str) -> str:
    return '\n'.join([
        '#EXTM3U',
        '#EXT-X-STREAM-INF:BANDWIDTH=128000,CODECS="mp4a.40.2"',
        variant,
    ]) + '\n'


def chunk_payload(index: int, size: int = 100) -> bytes:
    return bytes([index % 256]) * size


def text_route(path: str, text: str = "", status: int = 200) -> web.RouteDef:
    async def handler(request):
        return web.Response(text=text, status=status)
    return web.get(path, handler)


class ScriptedAPI:
    """Returns (or raises) scripted results; repeats the last one."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = 0

    async def fetch_status(self, space_id):
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(item, BaseException):
            raise item
        return item


class FakeCapture:
    """Stand-in for StreamCapture driven by the test."""

    instances = []

    def __init__(self, manifest_url, output_path, space_id="", outcome=None, hold=False, **options):
        self.manifest_url = manifest_url
        self.output_path = output_path
        self.space_id = space_id
        self.options = options
        self.outcome = outcome
        self.hold = hold
        self.status = CaptureStatus.PENDING
        self.listeners = {}
        self.cancelled = asyncio.Event()
        FakeCapture.instances.append(self)

    def on(self, event, listener):
        self.listeners.setdefault(event, []).append(listener)

    def cancel(self):
        self.cancelled.set()

    async def run(self):
        self.status = CaptureStatus.RUNNING
        for listener in self.listeners.get('progress', []):
            await listener(CaptureProgress(bytes_written=10, total_chunks=1, chunks_written=1))
        if self.hold:
            await self.cancelled.wait()
            self.status = CaptureStatus.CANCELLED
            raise CaptureCancelledError("cancelled")
        if self.outcome is not None:
            self.status = CaptureStatus.FAILED
            raise self.outcome
        self.status = CaptureStatus.COMPLETED
        return None
