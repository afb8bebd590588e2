"""
Configuration for the launcher authentication core
Values come from the environment (and an optional .env file)
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

# Public client registered for the launcher (no secret, PKCE only)
DEFAULT_CONSUMER_CLIENT_ID = "6d6b484d-842d-47c9-abe1-e4f0c5f07c77"
DEFAULT_DEVELOPER_CLIENT_ID = "Ov23liYVqUaH4MPQ0mMH"

MIN_TIMEOUT_SECONDS = 1.0

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"


def clamp_timeout(value: Optional[float], minimum: float = MIN_TIMEOUT_SECONDS) -> float:
    """Clamp a caller supplied timeout so zero/negative values can't busy-loop"""
    if value is None:
        return minimum
    try:
        value = float(value)
    except (TypeError, ValueError):
        return minimum
    return max(value, minimum)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


def _env_scopes(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(s for s in raw.replace(",", " ").split() if s)


@dataclass
class Settings:
    """All tunables for the auth core; defaults point at production endpoints"""

    consumer_client_id: str = DEFAULT_CONSUMER_CLIENT_ID
    authority: str = "https://login.microsoftonline.com/consumers"
    consumer_scopes: Tuple[str, ...] = ("XboxLive.signin", "offline_access")
    redirect_port: int = 0

    data_dir: Path = field(default_factory=lambda: Path.home() / ".launcher_auth")
    token_cache_file: Optional[Path] = None
    preferences_file: Optional[Path] = None

    http_timeout: float = 30.0
    interactive_timeout: float = 300.0
    sign_in_attempts: int = 3
    retry_delay: float = 1.0
    background_retry_delay: float = 60.0

    # Token exchange chain
    regional_auth_url: str = "https://user.auth.xboxlive.com/user/authenticate"
    regional_site_name: str = "user.auth.xboxlive.com"
    regional_relying_party: str = "http://auth.xboxlive.com"
    platform_auth_url: str = "https://xsts.auth.xboxlive.com/xsts/authorize"
    platform_relying_party: str = "rp://api.minecraftservices.com/"
    sandbox_id: str = "RETAIL"
    session_auth_url: str = "https://api.minecraftservices.com/authentication/login_with_xbox"
    identity_scheme: str = "XBL3.0"
    profile_url: str = "https://api.minecraftservices.com/minecraft/profile"

    # Developer identity (device authorization grant)
    developer_client_id: str = DEFAULT_DEVELOPER_CLIENT_ID
    developer_scopes: Tuple[str, ...] = ("repo", "read:org", "gist", "read:user")
    device_code_url: str = "https://github.com/login/device/code"
    device_token_url: str = "https://github.com/login/oauth/access_token"
    developer_profile_url: str = "https://api.github.com/user"
    device_flow_timeout: float = 300.0

    user_agent: str = "LauncherAuth/1.0 (+https://github.com/launcher-auth)"
    log_level: str = "INFO"

    def __post_init__(self):
        self.data_dir = Path(self.data_dir).expanduser()
        if self.token_cache_file is None:
            self.token_cache_file = self.data_dir / "consumer_cache.json"
        if self.preferences_file is None:
            self.preferences_file = self.data_dir / "preferences.json"
        self.http_timeout = clamp_timeout(self.http_timeout)
        self.interactive_timeout = clamp_timeout(self.interactive_timeout)
        self.device_flow_timeout = clamp_timeout(self.device_flow_timeout)
        self.sign_in_attempts = max(1, int(self.sign_in_attempts))
        self.retry_delay = max(0.0, float(self.retry_delay))
        self.background_retry_delay = max(0.0, float(self.background_retry_delay))

    @property
    def authorize_url(self) -> str:
        return f"{self.authority.rstrip('/')}/oauth2/v2.0/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.authority.rstrip('/')}/oauth2/v2.0/token"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "Settings":
        """Build settings from the process environment and an optional .env file"""
        load_dotenv(dotenv_path)

        data_dir = os.getenv("LAUNCHER_AUTH_DATA_DIR")
        token_cache = os.getenv("LAUNCHER_AUTH_TOKEN_CACHE")
        prefs = os.getenv("LAUNCHER_AUTH_PREFS_FILE")

        defaults = cls()
        return cls(
            consumer_client_id=os.getenv("LAUNCHER_AUTH_CLIENT_ID", defaults.consumer_client_id),
            authority=os.getenv("LAUNCHER_AUTH_AUTHORITY", defaults.authority),
            consumer_scopes=_env_scopes("LAUNCHER_AUTH_SCOPES", defaults.consumer_scopes),
            redirect_port=_env_int("LAUNCHER_AUTH_REDIRECT_PORT", defaults.redirect_port),
            data_dir=Path(data_dir) if data_dir else defaults.data_dir,
            token_cache_file=Path(token_cache) if token_cache else None,
            preferences_file=Path(prefs) if prefs else None,
            http_timeout=_env_float("LAUNCHER_AUTH_HTTP_TIMEOUT", defaults.http_timeout),
            interactive_timeout=_env_float("LAUNCHER_AUTH_INTERACTIVE_TIMEOUT", defaults.interactive_timeout),
            sign_in_attempts=_env_int("LAUNCHER_AUTH_SIGNIN_ATTEMPTS", defaults.sign_in_attempts),
            retry_delay=_env_float("LAUNCHER_AUTH_RETRY_DELAY", defaults.retry_delay),
            background_retry_delay=_env_float(
                "LAUNCHER_AUTH_BACKGROUND_RETRY_DELAY", defaults.background_retry_delay
            ),
            developer_client_id=os.getenv("LAUNCHER_AUTH_DEV_CLIENT_ID", defaults.developer_client_id),
            developer_scopes=_env_scopes("LAUNCHER_AUTH_DEV_SCOPES", defaults.developer_scopes),
            device_flow_timeout=_env_float("LAUNCHER_AUTH_DEVICE_TIMEOUT", defaults.device_flow_timeout),
            log_level=os.getenv("LAUNCHER_AUTH_LOG_LEVEL", defaults.log_level),
        )


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single stream handler to the package logger"""
    log = logging.getLogger("launcher_auth")
    if not log.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log.addHandler(handler)
    log.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    return log
