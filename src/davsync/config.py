"""Runtime configuration for the WebDAV sync engine.

Reads connection and sync settings from CLI args, environment variables,
.env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    WEBDAV_URL: WebDAV base URL (required)
    WEBDAV_USERNAME: Basic-auth username (optional, empty = anonymous)
    WEBDAV_PASSWORD: Basic-auth password (optional)
    WEBDAV_REMOTE_FOLDER: Subfolder below the base URL to sync (optional)
    WEBDAV_INSECURE: Skip SSL verification (optional, default: false)
    DAVSYNC_LOCAL_ROOT: Local directory to keep in sync (required)
    DAVSYNC_AUTO_SYNC: Enable timer-driven passes (optional, default: false)
    DAVSYNC_INTERVAL_MINUTES: Auto-sync interval (optional, default: 15)
    DAVSYNC_STATE_FILE: Location of the sync state file (optional)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 15
MAX_INTERVAL_MINUTES = 1440


def default_state_file() -> Path:
    """Application-data location of the sync state file.

    ``$XDG_DATA_HOME/davsync/webdav_sync_state.json``, falling back to
    ``~/.local/share/davsync/`` when XDG_DATA_HOME is unset.
    """
    data_home = os.getenv("XDG_DATA_HOME")
    base = (
        Path(data_home)
        if data_home
        else Path.home() / ".local" / "share"
    )
    return base / "davsync" / "webdav_sync_state.json"


@dataclass
class Config:
    webdav_url: str
    local_root: str
    username: str = ""
    password: str = ""
    remote_folder: str = ""
    auto_sync: bool = False
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    state_file: str | None = None
    insecure: bool = False
    debug: bool = False
    timeout: int = 300
    directory_settle_seconds: float = 0.5

    @property
    def state_path(self) -> Path:
        if self.state_file:
            return Path(self.state_file).expanduser()
        return default_state_file()

    @property
    def local_root_path(self) -> Path:
        return Path(self.local_root).expanduser()


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If URL format is invalid, the local root is empty,
            or the interval is out of range.
    """
    # Normalize URL: strip whitespace
    config.webdav_url = config.webdav_url.strip()

    if not config.webdav_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid WebDAV URL '{config.webdav_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.webdav_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid WebDAV URL '{config.webdav_url}': URL must include a hostname"
        )

    # Strip trailing slash after validation (safe now that scheme/host are verified)
    config.webdav_url = config.webdav_url.rstrip("/")

    config.remote_folder = config.remote_folder.strip().strip("/")

    if not config.local_root.strip():
        raise ValueError(
            "Local root cannot be empty. Set DAVSYNC_LOCAL_ROOT environment variable."
        )

    if not (1 <= config.interval_minutes <= MAX_INTERVAL_MINUTES):
        raise ValueError(
            f"Invalid sync interval {config.interval_minutes}: "
            f"must be between 1 and {MAX_INTERVAL_MINUTES} minutes"
        )

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def load_config(
    url: str | None = None,
    username: str | None = None,
    password: str | None = None,
    remote_folder: str | None = None,
    local_root: str | None = None,
    interval_minutes: int | None = None,
    auto_sync: bool = False,
    insecure: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        url: Override WebDAV base URL.
        username: Override basic-auth username.
        password: Override basic-auth password.
        remote_folder: Override remote subfolder.
        local_root: Override local sync root.
        interval_minutes: Override auto-sync interval.
        auto_sync: Force auto-sync on (CLI flag).
        insecure: Skip SSL verification (CLI flag).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flat dict of values from the YAML ``webdav`` and
            ``sync`` sections.  Used when CLI arg and env var are unset.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If the URL or local root is missing after checking
            all sources, or a value is malformed.
    """
    fb = yaml_fallbacks or {}

    # --- String fields: CLI > env > YAML > default ---

    webdav_url = url or os.getenv("WEBDAV_URL") or fb.get("url")
    if not webdav_url:
        raise ValueError(
            "WebDAV URL not found. Set WEBDAV_URL environment variable, "
            "pass --url CLI argument, or add 'webdav.url' to config.yml."
        )

    root = local_root or os.getenv("DAVSYNC_LOCAL_ROOT") or fb.get("local_root")
    if not root:
        raise ValueError(
            "Local root not found. Set DAVSYNC_LOCAL_ROOT environment variable, "
            "pass --local-root CLI argument, or add 'sync.local_root' to config.yml."
        )

    final_username = (
        username or os.getenv("WEBDAV_USERNAME") or fb.get("username") or ""
    )
    final_password = (
        password or os.getenv("WEBDAV_PASSWORD") or fb.get("password") or ""
    )
    final_folder = (
        remote_folder
        or os.getenv("WEBDAV_REMOTE_FOLDER")
        or fb.get("remote_folder")
        or ""
    )
    final_state_file = os.getenv("DAVSYNC_STATE_FILE") or fb.get("state_file")

    # --- Boolean fields: CLI > env > YAML > default ---

    def resolve_bool(flag: bool, env_key: str, fb_key: str) -> bool:
        if flag:
            return True
        env_val = _get_bool_env(env_key)
        if env_val is not None:
            return env_val
        return bool(fb.get(fb_key, False))

    final_insecure = resolve_bool(insecure, "WEBDAV_INSECURE", "insecure")
    final_debug = resolve_bool(debug, "DAVSYNC_DEBUG", "debug")
    final_auto_sync = resolve_bool(auto_sync, "DAVSYNC_AUTO_SYNC", "auto_sync")

    # --- Numeric fields: CLI > env > YAML > default ---

    interval_raw = os.getenv("DAVSYNC_INTERVAL_MINUTES")
    if interval_minutes is not None:
        final_interval = interval_minutes
    elif interval_raw is not None:
        try:
            final_interval = int(interval_raw)
        except ValueError:
            raise ValueError(
                f"Invalid DAVSYNC_INTERVAL_MINUTES '{interval_raw}': "
                f"must be a number between 1 and {MAX_INTERVAL_MINUTES}"
            ) from None
    elif "interval_minutes" in fb:
        final_interval = int(fb["interval_minutes"])
    else:
        final_interval = DEFAULT_INTERVAL_MINUTES

    config = Config(
        webdav_url=webdav_url,
        local_root=root.strip(),
        username=final_username.strip(),
        password=final_password,
        remote_folder=final_folder,
        auto_sync=final_auto_sync,
        interval_minutes=final_interval,
        state_file=final_state_file,
        insecure=final_insecure,
        debug=final_debug,
        timeout=int(fb.get("timeout", 300)),
        directory_settle_seconds=float(
            fb.get("directory_settle_seconds", 0.5)
        ),
    )

    validate_config(config)

    return config
