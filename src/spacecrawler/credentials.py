"""
Credential store for authenticated Twitter requests.

Holds the ``auth_token`` cookie (primary) and the ``ct0`` CSRF token
(secondary). Values can be replaced at runtime, either by explicit calls or
by editing a watched JSON tokens file, without restarting active watchers.
"""

import asyncio
import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional, Set, Tuple

import aiofiles

from .logger import get_logger


ENV_AUTH_TOKEN = 'TWITTER_AUTH_TOKEN'
ENV_CSRF_TOKEN = 'TWITTER_CSRF_TOKEN'

# Accepted key names in the tokens file, first match wins
AUTH_TOKEN_KEYS = ('authToken', 'primaryAuthValue')
CSRF_TOKEN_KEYS = ('csrfToken', 'secondaryVerificationValue')

MIN_DEBOUNCE = 0.2


@dataclass(frozen=True)
class Credentials:
    """Immutable credential pair. Swapped as a whole on every update."""
    auth_token: Optional[str] = None
    csrf_token: Optional[str] = None

    def cookie(self) -> str:
        parts = []
        if self.auth_token:
            parts.append(f"auth_token={self.auth_token}")
        if self.csrf_token:
            parts.append(f"ct0={self.csrf_token}")
        return '; '.join(parts)

    def headers(self) -> Dict[str, str]:
        headers = {}
        cookie = self.cookie()
        if cookie:
            headers['cookie'] = cookie
        if self.csrf_token:
            headers['x-csrf-token'] = self.csrf_token
        return headers


def parse_tokens(raw: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Parse the tokens file contents.

    Args:
        raw: File contents (JSON object).

    Returns:
        (auth_token, csrf_token); a field is None when absent or not a string.

    Raises:
        ValueError: If the contents are not a JSON object.
    """
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("tokens file must contain a JSON object")

    def pick(keys) -> Optional[str]:
        for key in keys:
            value = data.get(key)
            if isinstance(value, str):
                return value
        return None

    return pick(AUTH_TOKEN_KEYS), pick(CSRF_TOKEN_KEYS)


class CredentialStore:
    """
    Process-wide credential holder.

    Features:
    - Atomic swap of the credential pair (readers never see half an update)
    - Layered initialization: explicit values > tokens file > environment
    - Optional tokens file watching with debounced reload
    """

    def __init__(self, poll_interval: float = 0.5, debounce: float = 0.25):
        """
        Initialize an empty store.

        Args:
            poll_interval: Seconds between tokens file checks.
            debounce: Quiet period before a detected change is reloaded.
        """
        self.poll_interval = poll_interval
        self.debounce = max(MIN_DEBOUNCE, debounce)
        self.tokens_path: Optional[Path] = None
        self.reload_count = 0

        self._current = Credentials()
        self._logger = get_logger('credentials')
        self._watch_task: Optional[asyncio.Task] = None
        self._reload_handle: Optional[asyncio.TimerHandle] = None
        self._reload_tasks: Set[asyncio.Task] = set()

    def init(
        self,
        auth_token: Optional[str] = None,
        csrf_token: Optional[str] = None,
        tokens_path: Optional[str] = None
    ) -> None:
        """
        Initialize credentials from caller values, tokens file and environment.

        Each layer only fills fields left unset by a higher-precedence layer.
        """
        self.tokens_path = Path(tokens_path).resolve() if tokens_path else None

        file_auth, file_csrf = self._read_file_sync()

        self._current = Credentials(
            auth_token=auth_token or file_auth or os.environ.get(ENV_AUTH_TOKEN) or None,
            csrf_token=csrf_token or file_csrf or os.environ.get(ENV_CSRF_TOKEN) or None,
        )

        self._logger.debug(
            f"Credentials initialized (auth_token={'set' if self._current.auth_token else 'unset'}, "
            f"csrf_token={'set' if self._current.csrf_token else 'unset'})"
        )

    # Accessors

    def snapshot(self) -> Credentials:
        """Current credential pair. Take one snapshot per request."""
        return self._current

    def current_headers(self) -> Dict[str, str]:
        """Outbound auth headers built from the current snapshot."""
        return self._current.headers()

    def get_auth_token(self) -> Optional[str]:
        return self._current.auth_token

    def get_csrf_token(self) -> Optional[str]:
        return self._current.csrf_token

    def get_auth_status(self) -> Dict[str, bool]:
        creds = self._current
        return {
            'has_auth_token': bool(creds.auth_token),
            'has_csrf_token': bool(creds.csrf_token),
        }

    # Mutators

    def set_primary(self, value: Optional[str] = None) -> None:
        self._current = replace(self._current, auth_token=value)

    def set_secondary(self, value: Optional[str] = None) -> None:
        self._current = replace(self._current, csrf_token=value)

    def set(self, auth_token: Optional[str] = None, csrf_token: Optional[str] = None) -> None:
        """Replace both values in one swap."""
        self._current = Credentials(auth_token=auth_token, csrf_token=csrf_token)

    # Tokens file

    def _read_file_sync(self) -> Tuple[Optional[str], Optional[str]]:
        if not self.tokens_path:
            return None, None
        try:
            if not self.tokens_path.exists():
                return None, None
            raw = self.tokens_path.read_text(encoding='utf-8')
            if not raw.strip():
                return None, None
            return parse_tokens(raw)
        except (OSError, ValueError) as e:
            self._logger.debug(f"Ignoring tokens file {self.tokens_path}: {e}")
            return None, None

    async def reload(self) -> bool:
        """
        Re-read the tokens file and swap in the values it contains.

        Fields missing from the file keep their current values. Never raises.

        Returns:
            True if the file was read and applied.
        """
        if not self.tokens_path:
            return False

        try:
            async with aiofiles.open(self.tokens_path, 'r', encoding='utf-8') as f:
                raw = await f.read()
            if not raw.strip():
                return False
            auth_token, csrf_token = parse_tokens(raw)
        except (OSError, ValueError) as e:
            self._logger.debug(f"Tokens reload skipped: {e}")
            return False

        current = self._current
        self._current = Credentials(
            auth_token=auth_token if auth_token is not None else current.auth_token,
            csrf_token=csrf_token if csrf_token is not None else current.csrf_token,
        )
        self.reload_count += 1
        self._logger.info("🔑 Tokens reloaded from file")
        return True

    def notify_change(self) -> None:
        """
        Signal that the tokens file changed.

        Re-arms the debounce timer; the reload runs once no further change
        arrives within the debounce window. Must be called from the event loop.
        """
        loop = asyncio.get_running_loop()
        if self._reload_handle:
            self._reload_handle.cancel()
        self._reload_handle = loop.call_later(self.debounce, self._fire_reload)

    def _fire_reload(self) -> None:
        self._reload_handle = None
        task = asyncio.get_running_loop().create_task(self.reload())
        self._reload_tasks.add(task)
        task.add_done_callback(self._reload_tasks.discard)

    def _file_signature(self) -> Optional[Tuple[int, int]]:
        try:
            stat = self.tokens_path.stat()
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size

    async def _watch_loop(self) -> None:
        last = self._file_signature()
        while True:
            await asyncio.sleep(self.poll_interval)
            signature = self._file_signature()
            if signature != last:
                last = signature
                self._logger.debug("Tokens file changed")
                self.notify_change()

    def start_watching(self) -> bool:
        """
        Start watching the tokens file. Must be called from the event loop.

        Returns:
            True if a watch task is running.
        """
        if not self.tokens_path:
            return False
        if self._watch_task and not self._watch_task.done():
            return True
        self._watch_task = asyncio.get_running_loop().create_task(self._watch_loop())
        self._logger.debug(f"Watching tokens file: {self.tokens_path}")
        return True

    async def stop_watching(self) -> None:
        """Stop the file watch and any pending reload."""
        if self._reload_handle:
            self._reload_handle.cancel()
            self._reload_handle = None

        if self._watch_task:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None

        for task in list(self._reload_tasks):
            task.cancel()
        self._reload_tasks.clear()


credential_store = CredentialStore()
