"""
spacecrawler - command line entry point.

Watches a space by ID or URL (or downloads a playlist directly) and waits
until the capture completes, fails or is interrupted.
"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from .capture import CaptureProgress
from .config import load_config
from .crawler import SpaceCrawler
from .logger import format_progress, get_logger, get_space_logger, setup_logging
from .watcher import WatcherState


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='spacecrawler', description="Watch and download Twitter Spaces")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('--id', dest='space_id', help="Space ID")
    target.add_argument('--url', dest='space_url', help="Space URL, e.g. https://x.com/i/spaces/<id>")
    target.add_argument('--playlist-url', help="Playlist URL to download directly")
    parser.add_argument('--config', default=None, help="Path to config.yaml")
    parser.add_argument('--filename', default=None, help="Output file name without extension")
    parser.add_argument('--sub-dir', default="", help="Sub directory under the output directory")
    parser.add_argument('--auth-token', default=None)
    parser.add_argument('--csrf-token', default=None)
    parser.add_argument('--tokens-path', default=None, help="JSON tokens file, reloaded on change")
    parser.add_argument('--skip-download', action='store_true', default=None)
    parser.add_argument('--log-level', default=None)
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config or "config.yaml", required=bool(args.config))
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 2
    except Exception as e:
        print(f"Configuration error: {e}")
        return 2

    setup_logging(
        level=args.log_level or config.logging.level,
        log_file=config.logging.file or None,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count
    )
    logger = get_logger('app')

    crawler = SpaceCrawler()
    crawler.init(
        config=config,
        auth_token=args.auth_token,
        csrf_token=args.csrf_token,
        tokens_path=args.tokens_path,
        skip_download=args.skip_download,
    )

    try:
        if args.playlist_url:
            result = await crawler.download_by_playlist_url(
                args.playlist_url, filename=args.filename, sub_dir=args.sub_dir
            )
            if result.success:
                logger.info(f"Saved: {result.file_path}")
                return 0
            logger.error(f"Download failed: {result.error}")
            return 1

        if args.space_url:
            result = await crawler.download_by_url(args.space_url, filename=args.filename, sub_dir=args.sub_dir)
        else:
            result = await crawler.download_by_space_id(args.space_id, filename=args.filename, sub_dir=args.sub_dir)

        if not result.success:
            logger.error(result.error)
            return 1

        watcher = result.watcher
        space_logger = get_space_logger(watcher.space_id, 'app')

        last_decile = -1

        def on_progress(progress: CaptureProgress) -> None:
            nonlocal last_decile
            decile = progress.chunks_written * 10 // max(1, progress.total_chunks)
            if decile > last_decile:
                last_decile = decile
                space_logger.info(format_progress(
                    progress.chunks_written, progress.total_chunks, progress.bytes_written
                ))

        watcher.on('progress', on_progress)
        watcher.on('error', lambda e: space_logger.error(f"❌ {e}"))

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: asyncio.ensure_future(watcher.cancel()))
            except NotImplementedError:
                pass

        state = await watcher.wait()
        if state == WatcherState.COMPLETED:
            title = watcher.last_status.title if watcher.last_status else ""
            space_logger.info(f"🎉 Download complete: {title or watcher.space_id} -> {watcher.result_path or '(skipped)'}")
            return 0
        return 130 if state == WatcherState.CANCELLED else 1

    finally:
        await crawler.close()


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    run()
