"""
Configuration module for spacecrawler.
Loads settings from YAML file and provides typed configuration.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_GRAPHQL_URL = "https://x.com/i/api/graphql/Uv5R_-Chxbn1FEkyUkSW2w/AudioSpaceById"
DEFAULT_STATUS_URL = "https://x.com/i/api/1.1/live_video_stream/status"


@dataclass
class CredentialsConfig:
    """Twitter credentials."""
    auth_token: str = ""          # auth_token cookie
    csrf_token: str = ""          # ct0 cookie / x-csrf-token header
    tokens_path: str = ""         # JSON tokens file, watched for changes
    bearer_token: str = ""        # Web app bearer token for API requests


@dataclass
class ApiConfig:
    """Remote endpoints."""
    graphql_url: str = DEFAULT_GRAPHQL_URL
    status_url: str = DEFAULT_STATUS_URL
    request_timeout: float = 15.0  # seconds per request


@dataclass
class WatcherConfig:
    """Space lifecycle polling."""
    scheduled_interval: float = 30.0   # seconds between polls before the space starts
    live_interval: float = 5.0         # seconds between polls while waiting for a playlist
    not_found_limit: int = 3           # consecutive not-found results before giving up
    max_transient_errors: int = 10     # consecutive network errors before giving up
    backoff_factor: float = 2.0
    max_backoff: float = 300.0
    removal_grace: float = 60.0        # seconds a finished watcher stays in the registry


@dataclass
class CaptureConfig:
    """Chunk download and output settings."""
    output_dir: str = "./download"
    extension: str = "aac"
    concurrency: int = 4
    chunk_retries: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 10.0
    request_timeout: float = 30.0
    follow_live: bool = True           # keep refreshing live playlists until they end
    live_idle_limit: int = 6           # refreshes without new chunks before treating as ended
    skip_download: bool = False

    def media_dir(self, sub_dir: str = "") -> Path:
        """Output directory for a sub-category of captures. Created on demand."""
        path = Path(self.output_dir)
        if sub_dir:
            path = path / sub_dir
        path.mkdir(parents=True, exist_ok=True)
        return path


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = ""                     # empty = console only
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class Config:
    """Main configuration container."""
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def as_bool(value: Any, default: bool) -> bool:
    """Parse bool from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "y", "on"):
            return True
        if text in ("0", "false", "no", "n", "off"):
            return False
    return default


def as_float(value: Any, default: float) -> float:
    """Parse float from YAML value with safe fallbacks."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return default
    return default


def as_int(value: Any, default: int) -> int:
    """Parse int from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return int(float(text.replace(",", ".")))
        except ValueError:
            return default
    return default


def as_str(value: Any, default: str) -> str:
    if value is None:
        return default
    return str(value)


def load_config(config_path: Optional[str] = "config.yaml", required: bool = False) -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file.
        required: Raise if the file does not exist instead of using defaults.

    Returns:
        Config object with all settings.

    Raises:
        FileNotFoundError: If ``required`` and the config file doesn't exist.
        ValueError: If the file is not a YAML mapping.
    """
    if not config_path or not Path(config_path).exists():
        if required:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        return Config()

    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    if data is None:
        return Config()
    if not isinstance(data, dict):
        raise ValueError("Configuration file must contain a mapping")

    defaults = Config()

    creds_data = data.get('credentials') or {}
    credentials_config = CredentialsConfig(
        auth_token=as_str(creds_data.get('auth_token'), ''),
        csrf_token=as_str(creds_data.get('csrf_token'), ''),
        tokens_path=as_str(creds_data.get('tokens_path'), ''),
        bearer_token=as_str(creds_data.get('bearer_token'), ''),
    )

    api_data = data.get('api') or {}
    api_config = ApiConfig(
        graphql_url=as_str(api_data.get('graphql_url'), defaults.api.graphql_url),
        status_url=as_str(api_data.get('status_url'), defaults.api.status_url),
        request_timeout=as_float(api_data.get('request_timeout'), defaults.api.request_timeout),
    )

    w = defaults.watcher
    watcher_data = data.get('watcher') or {}
    watcher_config = WatcherConfig(
        scheduled_interval=max(0.1, as_float(watcher_data.get('scheduled_interval'), w.scheduled_interval)),
        live_interval=max(0.1, as_float(watcher_data.get('live_interval'), w.live_interval)),
        not_found_limit=max(1, as_int(watcher_data.get('not_found_limit'), w.not_found_limit)),
        max_transient_errors=max(0, as_int(watcher_data.get('max_transient_errors'), w.max_transient_errors)),
        backoff_factor=max(1.0, as_float(watcher_data.get('backoff_factor'), w.backoff_factor)),
        max_backoff=as_float(watcher_data.get('max_backoff'), w.max_backoff),
        removal_grace=max(0.0, as_float(watcher_data.get('removal_grace'), w.removal_grace)),
    )

    c = defaults.capture
    capture_data = data.get('capture') or {}
    capture_config = CaptureConfig(
        output_dir=as_str(capture_data.get('output_dir'), c.output_dir),
        extension=as_str(capture_data.get('extension'), c.extension).lstrip('.'),
        concurrency=min(8, max(1, as_int(capture_data.get('concurrency'), c.concurrency))),
        chunk_retries=max(1, as_int(capture_data.get('chunk_retries'), c.chunk_retries)),
        retry_base_delay=max(0.0, as_float(capture_data.get('retry_base_delay'), c.retry_base_delay)),
        retry_max_delay=max(0.0, as_float(capture_data.get('retry_max_delay'), c.retry_max_delay)),
        request_timeout=as_float(capture_data.get('request_timeout'), c.request_timeout),
        follow_live=as_bool(capture_data.get('follow_live'), c.follow_live),
        live_idle_limit=max(1, as_int(capture_data.get('live_idle_limit'), c.live_idle_limit)),
        skip_download=as_bool(capture_data.get('skip_download'), c.skip_download),
    )

    logging_data = data.get('logging') or {}
    logging_config = LoggingConfig(
        level=as_str(logging_data.get('level'), 'INFO'),
        file=as_str(logging_data.get('file'), ''),
        max_size_mb=as_int(logging_data.get('max_size_mb'), 10),
        backup_count=as_int(logging_data.get('backup_count'), 5),
    )

    return Config(
        credentials=credentials_config,
        api=api_config,
        watcher=watcher_config,
        capture=capture_config,
        logging=logging_config,
    )


def create_example_config(path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example = """# spacecrawler configuration

credentials:
  auth_token: ""        # auth_token cookie (or TWITTER_AUTH_TOKEN)
  csrf_token: ""        # ct0 cookie (or TWITTER_CSRF_TOKEN)
  tokens_path: ./tokens.json  # {"authToken": "...", "csrfToken": "..."}, reloaded on change
  bearer_token: ""      # web app bearer token

api:
  request_timeout: 15

watcher:
  scheduled_interval: 30  # seconds between checks before the space starts
  live_interval: 5        # seconds between checks while waiting for the playlist
  not_found_limit: 3
  max_transient_errors: 10
  backoff_factor: 2
  max_backoff: 300
  removal_grace: 60

capture:
  output_dir: ./download
  extension: aac
  concurrency: 4          # parallel chunk downloads (1..8)
  chunk_retries: 5
  retry_base_delay: 0.5
  retry_max_delay: 10
  follow_live: true
  skip_download: false

logging:
  level: INFO  # DEBUG, INFO, WARNING, ERROR
  file: ./logs/spacecrawler.log
  max_size_mb: 10
  backup_count: 5
"""
    with open(path, 'w', encoding='utf-8') as f:
        f.write(example)
