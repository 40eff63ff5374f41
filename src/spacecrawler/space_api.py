"""
Twitter Spaces status client.
Looks up a space's lifecycle state and, once available, its playlist URL.
"""

import asyncio
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp

from .credentials import CredentialStore, credential_store
from .config import DEFAULT_GRAPHQL_URL, DEFAULT_STATUS_URL
from .errors import AuthenticationError, TransientNetworkError
from .logger import get_logger


SPACE_URL_PATTERN = re.compile(r'(?:twitter|x)\.com/i/spaces/(\w+)', re.IGNORECASE)

GRAPHQL_FEATURES = {
    'spaces_2022_h2_spaces_communities': True,
    'spaces_2022_h2_clipping': True,
    'creator_subscriptions_tweet_preview_api_enabled': True,
    'responsive_web_graphql_exclude_directive_enabled': True,
    'responsive_web_graphql_timeline_navigation_enabled': True,
}

SCHEDULED_STATES = {'NotStarted', 'PrePublished'}
RUNNING_STATES = {'Running'}
ENDED_STATES = {'Ended', 'TimedOut', 'Canceled'}


class SpaceState(Enum):
    """Remote lifecycle state of a space."""
    NOT_FOUND = "not_found"
    SCHEDULED = "scheduled"
    LIVE_NO_MANIFEST = "live_no_manifest"
    LIVE_CAPTURABLE = "live_capturable"
    ENDED = "ended"


@dataclass
class SpaceStatus:
    """Result of a single status lookup."""
    space_id: str
    state: SpaceState
    manifest_url: Optional[str] = None
    title: str = ""
    media_key: Optional[str] = None
    raw_state: Optional[str] = None

    @property
    def capturable(self) -> bool:
        return self.manifest_url is not None and self.state in (
            SpaceState.LIVE_CAPTURABLE, SpaceState.ENDED
        )


def get_space_id(url: str) -> Optional[str]:
    """Extract the space ID from a space URL, e.g. https://x.com/i/spaces/1OyKAjPPAPbGb."""
    match = SPACE_URL_PATTERN.search(url or '')
    return match.group(1) if match else None


class SpaceAPI:
    """
    Twitter Spaces API client.

    Every request reads the credential store at send time, so rotated
    credentials apply from the next request on.
    """

    def __init__(
        self,
        credentials: Optional[CredentialStore] = None,
        bearer_token: str = "",
        graphql_url: str = DEFAULT_GRAPHQL_URL,
        status_url: str = DEFAULT_STATUS_URL,
        request_timeout: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize the client.

        Args:
            credentials: Credential store (defaults to the process-wide store).
            bearer_token: Web app bearer token added as Authorization header.
            graphql_url: AudioSpaceById GraphQL endpoint.
            status_url: live_video_stream/status endpoint (media key is appended).
            request_timeout: Total timeout per request in seconds.
            session: Optional shared aiohttp session (not closed by this client).
        """
        self.credentials = credentials or credential_store
        self.bearer_token = bearer_token
        self.graphql_url = graphql_url
        self.status_url = status_url.rstrip('/')
        self.request_timeout = request_timeout

        self._session = session
        self._owns_session = session is None
        self._logger = get_logger('space_api')

    async def __aenter__(self) -> 'SpaceAPI':
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session if this client created it."""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.bearer_token:
            headers['authorization'] = f'Bearer {self.bearer_token}'
        headers.update(self.credentials.current_headers())
        return headers

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Optional[Any]:
        """
        GET a JSON document.

        Returns:
            Parsed JSON, or None on HTTP 404.

        Raises:
            AuthenticationError: On 401/403.
            TransientNetworkError: On timeouts, connection errors, other
                non-200 statuses and malformed bodies.
        """
        session = self._get_session()
        try:
            async with session.get(
                url,
                headers=self._headers(),
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            ) as resp:
                if resp.status in (401, 403):
                    raise AuthenticationError(
                        f"Request rejected with HTTP {resp.status}", status=resp.status
                    )
                if resp.status == 404:
                    return None
                if resp.status != 200:
                    raise TransientNetworkError(f"HTTP {resp.status} from {url}", status=resp.status)
                text = await resp.text()
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Timeout requesting {url}") from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Request failed: {e}") from e

        try:
            return json.loads(text)
        except ValueError as e:
            raise TransientNetworkError(f"Malformed JSON from {url}") from e

    async def get_space_metadata(self, space_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the AudioSpaceById metadata block.

        Returns:
            Metadata dict, or None if the space does not exist.
        """
        params = {
            'variables': json.dumps({
                'id': space_id,
                'isMetatagsQuery': False,
                'withReplays': True,
                'withListeners': True,
            }),
            'features': json.dumps(GRAPHQL_FEATURES),
        }
        data = await self._get_json(self.graphql_url, params)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise TransientNetworkError("Unexpected AudioSpaceById payload")

        audio_space = (data.get('data') or {}).get('audioSpace') or {}
        metadata = audio_space.get('metadata')
        if not metadata:
            return None
        if not isinstance(metadata, dict):
            raise TransientNetworkError("Unexpected AudioSpaceById metadata")
        return metadata

    async def get_playlist_url(self, media_key: str) -> Optional[str]:
        """
        Fetch the playlist URL for a media key.

        Returns:
            Playlist URL, or None if the stream has no source yet.
        """
        data = await self._get_json(f"{self.status_url}/{media_key}")
        if not isinstance(data, dict):
            return None
        source = data.get('source') or {}
        return source.get('noRedirectPlaybackUrl') or source.get('location') or None

    async def fetch_status(self, space_id: str) -> SpaceStatus:
        """
        Look up the current lifecycle state of a space.

        Args:
            space_id: Space ID.

        Returns:
            SpaceStatus; ``manifest_url`` is set when a capture can start.

        Raises:
            AuthenticationError: Credentials rejected.
            TransientNetworkError: Network-level failure, retry later.
        """
        metadata = await self.get_space_metadata(space_id)
        if metadata is None:
            return SpaceStatus(space_id=space_id, state=SpaceState.NOT_FOUND)

        raw_state = metadata.get('state')
        media_key = metadata.get('media_key')
        title = metadata.get('title') or ''

        status = SpaceStatus(
            space_id=space_id,
            state=SpaceState.SCHEDULED,
            title=title,
            media_key=media_key,
            raw_state=raw_state,
        )

        if raw_state in RUNNING_STATES:
            status.state = SpaceState.LIVE_NO_MANIFEST
            if media_key:
                status.manifest_url = await self.get_playlist_url(media_key)
            if status.manifest_url:
                status.state = SpaceState.LIVE_CAPTURABLE
        elif raw_state in ENDED_STATES:
            status.state = SpaceState.ENDED
            if media_key and metadata.get('is_space_available_for_replay'):
                status.manifest_url = await self.get_playlist_url(media_key)
        elif raw_state not in SCHEDULED_STATES:
            self._logger.debug(f"Unknown space state '{raw_state}' for {space_id}, treating as scheduled")

        return status
