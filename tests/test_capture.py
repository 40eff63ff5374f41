"""Tests for playlist parsing, ordered writing and stream capture."""

import asyncio

import pytest
from aiohttp import web

from helpers import chunk_payload, master_playlist, media_playlist, serve, text_route
from spacecrawler.capture import (
    CaptureStatus,
    OrderedWriter,
    StreamCapture,
    capture_from_manifest,
    parse_manifest,
)
from spacecrawler.errors import CaptureCancelledError, ChunkFetchError, ManifestError


class MemoryFile:
    """Stand-in for an aiofiles handle."""

    def __init__(self):
        self.writes = []

    async def write(self, data: bytes) -> int:
        self.writes.append(data)
        return len(data)

    @property
    def data(self) -> bytes:
        return b''.join(self.writes)


def chunk_routes(payloads, delays=None, completion_order=None, failures=None):
    """Routes serving /chunk/{n}; ``failures`` maps index -> statuses returned first."""
    delays = delays or {}
    failures = {k: list(v) for k, v in (failures or {}).items()}

    async def chunk(request):
        index = int(request.match_info['n'])
        await asyncio.sleep(delays.get(index, 0))
        if failures.get(index):
            return web.Response(status=failures[index].pop(0))
        if completion_order is not None:
            completion_order.append(index)
        return web.Response(body=payloads[index])

    return [web.get('/chunk/{n}', chunk)]


class TestParseManifest:
    """Playlist text to chunk references."""

    def test_relative_uris_resolved_in_order(self):
        text = media_playlist(['chunk/0', 'chunk/1', 'chunk/2'], media_sequence=7)
        chunks = parse_manifest(text, 'http://cdn.example/space/playlist.m3u8')

        assert [c.index for c in chunks] == [0, 1, 2]
        assert [c.url for c in chunks] == [
            'http://cdn.example/space/chunk/0',
            'http://cdn.example/space/chunk/1',
            'http://cdn.example/space/chunk/2',
        ]
        assert [c.media_sequence for c in chunks] == [7, 8, 9]
        assert chunks[0].duration == 2.0

    def test_byte_ranges(self):
        text = media_playlist(['audio.aac', 'audio.aac'], byteranges=['100@0', '50'])
        chunks = parse_manifest(text, 'http://cdn.example/playlist.m3u8')

        assert chunks[0].byte_range == (0, 100)
        assert chunks[1].byte_range == (100, 50)
        assert chunks[0].range_header() == 'bytes=0-99'
        assert chunks[1].range_header() == 'bytes=100-149'

    def test_empty_playlist_rejected(self):
        with pytest.raises(ManifestError):
            parse_manifest(media_playlist([]), 'http://cdn.example/playlist.m3u8')

    def test_garbage_rejected(self):
        with pytest.raises(ManifestError):
            parse_manifest('<html>not a playlist</html>', 'http://cdn.example/playlist.m3u8')

    def test_master_playlist_rejected(self):
        with pytest.raises(ManifestError):
            parse_manifest(master_playlist('media.m3u8'), 'http://cdn.example/master.m3u8')


class TestOrderedWriter:
    """Reorder buffer."""

    def test_out_of_order_submissions_written_in_order(self):
        async def scenario():
            f = MemoryFile()
            writer = OrderedWriter(f)
            flushed = []
            for index in [2, 0, 4, 1, 3]:
                flushed.append(await writer.submit(index, chunk_payload(index)))
            return f, writer, flushed

        f, writer, flushed = asyncio.run(scenario())

        assert flushed == [0, 1, 0, 2, 2]
        assert f.data == b''.join(chunk_payload(i) for i in range(5))
        assert writer.bytes_written == 500
        assert writer.pending == 0

    def test_duplicates_ignored(self):
        async def scenario():
            f = MemoryFile()
            writer = OrderedWriter(f)
            await writer.submit(0, b'a')
            await writer.submit(0, b'b')
            await writer.submit(2, b'c')
            await writer.submit(2, b'd')
            return f, writer

        f, writer = asyncio.run(scenario())
        assert f.data == b'a'
        assert writer.pending == 1

    def test_reserve_waits_for_window(self):
        async def scenario():
            writer = OrderedWriter(MemoryFile(), window=2)
            await asyncio.wait_for(writer.reserve(1), timeout=1)

            blocked = asyncio.create_task(writer.reserve(2))
            await asyncio.sleep(0.05)
            was_blocked = not blocked.done()

            await writer.submit(1, b'b')
            await asyncio.sleep(0.05)
            still_blocked = not blocked.done()

            await writer.submit(0, b'a')
            await asyncio.wait_for(blocked, timeout=1)
            return was_blocked, still_blocked, writer

        was_blocked, still_blocked, writer = asyncio.run(scenario())
        assert was_blocked
        assert still_blocked
        assert writer.next_index == 2


class TestStreamCapture:
    """End-to-end capture against a local server."""

    def test_out_of_order_completion_produces_ordered_file(self, tmp_path):
        payloads = {i: chunk_payload(i) for i in range(5)}
        completion_order = []
        progress = []
        output = tmp_path / 'space.aac'

        async def scenario():
            routes = chunk_routes(
                payloads,
                delays={2: 0.0, 0: 0.1, 4: 0.2, 1: 0.3, 3: 0.4},
                completion_order=completion_order,
            )
            playlist = media_playlist([f'chunk/{i}' for i in range(5)])
            routes.append(text_route('/playlist.m3u8', playlist))

            async with serve(routes) as server:
                capture = StreamCapture(
                    str(server.make_url('/playlist.m3u8')), str(output), concurrency=5
                )
                capture.on('progress', progress.append)
                return await capture.run()

        result = asyncio.run(scenario())

        assert completion_order == [2, 0, 4, 1, 3]
        assert result.success
        assert result.total_chunks == 5
        assert output.read_bytes() == b''.join(payloads[i] for i in range(5))
        assert output.stat().st_size == 500
        assert not (tmp_path / 'space.aac.part').exists()
        assert progress[-1].chunks_written == 5
        assert progress[-1].bytes_written == 500

    def test_master_playlist_followed(self, tmp_path):
        payloads = {i: chunk_payload(i, 10) for i in range(3)}
        output = tmp_path / 'out.aac'

        async def scenario():
            routes = chunk_routes(payloads)
            media = media_playlist([f'/chunk/{i}' for i in range(3)])
            routes.append(text_route('/master.m3u8', master_playlist('media.m3u8')))
            routes.append(text_route('/media.m3u8', media))
            async with serve(routes) as server:
                return await StreamCapture(str(server.make_url('/master.m3u8')), str(output)).run()

        result = asyncio.run(scenario())
        assert result.success
        assert output.read_bytes() == b''.join(payloads[i] for i in range(3))

    def test_transient_chunk_errors_are_retried(self, tmp_path):
        payloads = {i: chunk_payload(i, 10) for i in range(2)}
        output = tmp_path / 'out.aac'

        async def scenario():
            routes = chunk_routes(payloads, failures={1: [503, 500]})
            playlist = media_playlist(['chunk/0', 'chunk/1'])
            routes.append(text_route('/playlist.m3u8', playlist))
            async with serve(routes) as server:
                capture = StreamCapture(
                    str(server.make_url('/playlist.m3u8')), str(output),
                    chunk_retries=3, retry_base_delay=0.01
                )
                return await capture.run()

        result = asyncio.run(scenario())
        assert result.success
        assert output.read_bytes() == payloads[0] + payloads[1]

    def test_failed_chunk_removes_partial_output(self, tmp_path):
        payloads = {i: chunk_payload(i) for i in range(4)}
        output = tmp_path / 'out.aac'
        errors = []

        async def scenario():
            routes = chunk_routes(payloads, delays={3: 0.1}, failures={3: [500] * 10})
            playlist = media_playlist([f'chunk/{i}' for i in range(4)])
            routes.append(text_route('/playlist.m3u8', playlist))
            async with serve(routes) as server:
                capture = StreamCapture(
                    str(server.make_url('/playlist.m3u8')), str(output),
                    chunk_retries=3, retry_base_delay=0.01
                )
                capture.on('error', errors.append)
                with pytest.raises(ChunkFetchError) as exc_info:
                    await capture.run()
                return capture, exc_info.value

        capture, error = asyncio.run(scenario())

        assert error.index == 3
        assert capture.status == CaptureStatus.FAILED
        assert capture.job.bytes_written == 300
        assert errors == [error]
        assert not output.exists()
        assert not (tmp_path / 'out.aac.part').exists()

    def test_missing_chunk_is_not_retried(self, tmp_path):
        calls = []
        output = tmp_path / 'out.aac'

        async def missing(request):
            calls.append(request.match_info['n'])
            return web.Response(status=404)

        async def scenario():
            playlist = media_playlist(['chunk/0'])
            routes = [
                web.get('/chunk/{n}', missing),
                text_route('/playlist.m3u8', playlist),
            ]
            async with serve(routes) as server:
                capture = StreamCapture(
                    str(server.make_url('/playlist.m3u8')), str(output),
                    chunk_retries=5, retry_base_delay=0.01
                )
                with pytest.raises(ChunkFetchError):
                    await capture.run()

        asyncio.run(scenario())
        assert calls == ['0']
        assert not output.exists()

    def test_empty_playlist_fails_with_manifest_error(self, tmp_path):
        output = tmp_path / 'out.aac'

        async def scenario():
            routes = [text_route('/playlist.m3u8', media_playlist([]))]
            async with serve(routes) as server:
                with pytest.raises(ManifestError):
                    await StreamCapture(str(server.make_url('/playlist.m3u8')), str(output)).run()

        asyncio.run(scenario())
        assert not output.exists()

    def test_cancel_discards_partial_output(self, tmp_path):
        payloads = {i: chunk_payload(i) for i in range(4)}
        output = tmp_path / 'out.aac'
        cancelled = []

        async def scenario():
            release = asyncio.Event()
            first_flush = asyncio.Event()

            async def chunk(request):
                index = int(request.match_info['n'])
                if index > 0:
                    try:
                        await asyncio.wait_for(release.wait(), timeout=5)
                    except asyncio.TimeoutError:
                        pass
                return web.Response(body=payloads[index])

            playlist = media_playlist([f'chunk/{i}' for i in range(4)])
            routes = [
                web.get('/chunk/{n}', chunk),
                text_route('/playlist.m3u8', playlist),
            ]
            async with serve(routes) as server:
                capture = StreamCapture(str(server.make_url('/playlist.m3u8')), str(output), concurrency=4)
                capture.on('progress', lambda p: first_flush.set())
                capture.on('cancelled', lambda: cancelled.append(True))
                task = asyncio.create_task(capture.run())

                await asyncio.wait_for(first_flush.wait(), timeout=5)
                assert (tmp_path / 'out.aac.part').exists()

                capture.cancel()
                with pytest.raises(CaptureCancelledError):
                    await asyncio.wait_for(task, timeout=2)
                release.set()
                return capture

        capture = asyncio.run(scenario())

        assert capture.status == CaptureStatus.CANCELLED
        assert cancelled == [True]
        assert not output.exists()
        assert not (tmp_path / 'out.aac.part').exists()

    def test_live_playlist_followed_until_endlist(self, tmp_path):
        payloads = {i: chunk_payload(i, 20) for i in range(5)}
        output = tmp_path / 'live.aac'

        async def scenario():
            refreshes = []

            async def playlist(request):
                refreshes.append(True)
                if len(refreshes) == 1:
                    text = media_playlist(['chunk/0', 'chunk/1', 'chunk/2'], endlist=False)
                else:
                    text = media_playlist(['chunk/2', 'chunk/3', 'chunk/4'], media_sequence=2)
                return web.Response(text=text)

            routes = chunk_routes(payloads)
            routes.append(web.get('/playlist.m3u8', playlist))
            async with serve(routes) as server:
                capture = StreamCapture(
                    str(server.make_url('/playlist.m3u8')), str(output),
                    live_refresh_interval=0.05
                )
                return await asyncio.wait_for(capture.run(), timeout=10)

        result = asyncio.run(scenario())

        assert result.total_chunks == 5
        assert output.read_bytes() == b''.join(payloads[i] for i in range(5))

    def test_live_playlist_single_chunk_then_endlist(self, tmp_path):
        payloads = {i: chunk_payload(i, 20) for i in range(2)}
        output = tmp_path / 'short.aac'

        async def scenario():
            refreshes = []

            async def playlist(request):
                refreshes.append(True)
                if len(refreshes) == 1:
                    return web.Response(text=media_playlist(['chunk/0'], endlist=False))
                return web.Response(text=media_playlist(['chunk/0', 'chunk/1']))

            routes = chunk_routes(payloads)
            routes.append(web.get('/playlist.m3u8', playlist))
            async with serve(routes) as server:
                capture = StreamCapture(
                    str(server.make_url('/playlist.m3u8')), str(output),
                    concurrency=4, live_refresh_interval=0.02
                )
                return await asyncio.wait_for(capture.run(), timeout=10)

        result = asyncio.run(scenario())

        assert result.success
        assert result.total_chunks == 2
        assert output.read_bytes() == payloads[0] + payloads[1]

    def test_live_playlist_without_endlist_stops_when_idle(self, tmp_path):
        payloads = {i: chunk_payload(i, 20) for i in range(3)}
        output = tmp_path / 'idle.aac'
        refreshes = []

        async def scenario():
            async def playlist(request):
                refreshes.append(True)
                names = ['chunk/0', 'chunk/1'] if len(refreshes) == 1 else ['chunk/0', 'chunk/1', 'chunk/2']
                return web.Response(text=media_playlist(names, endlist=False))

            routes = chunk_routes(payloads)
            routes.append(web.get('/playlist.m3u8', playlist))
            async with serve(routes) as server:
                capture = StreamCapture(
                    str(server.make_url('/playlist.m3u8')), str(output),
                    live_refresh_interval=0.02, live_idle_limit=3
                )
                return await asyncio.wait_for(capture.run(), timeout=10)

        result = asyncio.run(scenario())

        assert result.success
        assert result.total_chunks == 3
        assert output.read_bytes() == b''.join(payloads[i] for i in range(3))
        # Initial fetch, one refresh with a new chunk, three idle refreshes
        assert len(refreshes) == 5

    def test_live_worker_failure_surfaces_while_following(self, tmp_path):
        payloads = {0: chunk_payload(0, 20)}
        output = tmp_path / 'broken.aac'

        async def scenario():
            routes = chunk_routes(payloads, failures={0: [404]})
            routes.append(text_route('/playlist.m3u8', media_playlist(['chunk/0'], endlist=False)))
            async with serve(routes) as server:
                capture = StreamCapture(
                    str(server.make_url('/playlist.m3u8')), str(output),
                    live_refresh_interval=0.05, live_idle_limit=1000
                )
                with pytest.raises(ChunkFetchError):
                    await asyncio.wait_for(capture.run(), timeout=10)
                return capture

        capture = asyncio.run(scenario())

        assert capture.status == CaptureStatus.FAILED
        assert not output.exists()
        assert not (tmp_path / 'broken.aac.part').exists()

    def test_reorder_buffer_bounded_by_window(self, tmp_path):
        total = 40
        concurrency = 4
        payloads = {i: chunk_payload(i, 10) for i in range(total)}
        requested = []
        requested_while_stalled = []
        peak = []

        async def scenario():
            async def chunk(request):
                index = int(request.match_info['n'])
                requested.append(index)
                if index == 0:
                    await asyncio.sleep(0.3)
                    requested_while_stalled.extend(requested)
                return web.Response(body=payloads[index])

            routes = [
                web.get('/chunk/{n}', chunk),
                text_route('/playlist.m3u8', media_playlist([f'chunk/{i}' for i in range(total)])),
            ]
            async with serve(routes) as server:
                capture = StreamCapture(
                    str(server.make_url('/playlist.m3u8')), str(tmp_path / 'big.aac'),
                    concurrency=concurrency
                )
                run = asyncio.create_task(capture.run())
                highest = 0
                while not run.done():
                    if capture._writer is not None:
                        highest = max(highest, capture._writer.pending)
                    await asyncio.sleep(0.005)
                peak.append(highest)
                return await asyncio.wait_for(run, timeout=10)

        result = asyncio.run(scenario())

        window = 2 * concurrency
        assert result.success
        assert max(requested_while_stalled) < window
        assert 1 <= peak[0] <= window - 1
        assert (tmp_path / 'big.aac').read_bytes() == b''.join(payloads[i] for i in range(total))

    def test_capture_from_manifest_reports_failure(self, tmp_path):
        output = tmp_path / 'out.aac'

        async def scenario():
            routes = [text_route('/playlist.m3u8', status=404)]
            async with serve(routes) as server:
                return await capture_from_manifest(str(server.make_url('/playlist.m3u8')), str(output))

        result = asyncio.run(scenario())

        assert not result.success
        assert result.status == CaptureStatus.FAILED
        assert 'not found' in result.error
        assert not output.exists()
