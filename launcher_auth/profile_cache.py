"""
Lazily resolved game profile for the current session token
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from .config import Settings, clamp_timeout
from .exchanger import GameSessionToken

logger = logging.getLogger(__name__)

ProfileListener = Callable[[Optional["Profile"]], None]


@dataclass(frozen=True)
class Profile:
    user_id: str
    display_name: str
    avatar_url: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Profile":
        avatar = None
        skins = data.get("skins") or []
        active = [s for s in skins if isinstance(s, dict) and s.get("state") == "ACTIVE"]
        for skin in active or skins:
            if isinstance(skin, dict) and skin.get("url"):
                avatar = skin["url"]
                break
        return cls(user_id=str(data["id"]), display_name=str(data["name"]), avatar_url=avatar)


class ProfileCache:
    """Holds the session token and the last fetched profile for one session"""

    def __init__(self, session: aiohttp.ClientSession, settings: Optional[Settings] = None):
        self._session = session
        self.settings = settings or Settings()
        self._token: Optional[GameSessionToken] = None
        self._profile: Optional[Profile] = None
        self._listeners: List[ProfileListener] = []
        self._lock = asyncio.Lock()

    @property
    def token(self) -> Optional[GameSessionToken]:
        return self._token

    @property
    def is_signed_in(self) -> bool:
        return self._token is not None

    def add_listener(self, listener: ProfileListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ProfileListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, profile: Optional[Profile]) -> None:
        for listener in list(self._listeners):
            try:
                listener(profile)
            except Exception:
                logger.exception("Profile listener raised")

    async def init(self, token: GameSessionToken) -> Optional[Profile]:
        """Adopt a new session token and fetch its profile right away"""
        async with self._lock:
            self._token = token
            self._profile = None
            profile = await self._fetch_locked()
        if profile is not None:
            self._notify(profile)
        return profile

    def update_token(self, token: GameSessionToken) -> None:
        """Swap in a refreshed token for the same account, keeping the profile"""
        self._token = token

    async def get(self) -> Optional[Profile]:
        """Cached profile, or fetch it when empty and a token exists"""
        if self._profile is not None:
            return self._profile
        async with self._lock:
            if self._profile is not None:
                return self._profile
            if self._token is None:
                return None
            profile = await self._fetch_locked()
        if profile is not None:
            self._notify(profile)
        return profile

    def clear(self) -> None:
        had_state = self._token is not None or self._profile is not None
        self._token = None
        self._profile = None
        if had_state:
            self._notify(None)

    async def _fetch_locked(self) -> Optional[Profile]:
        token = self._token
        if token is None:
            return None
        headers = {
            "Authorization": token.authorization_header,
            "Accept": "application/json",
            "User-Agent": self.settings.user_agent,
        }
        try:
            async with self._session.get(
                self.settings.profile_url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=clamp_timeout(self.settings.http_timeout)),
            ) as response:
                status = response.status
                body = await response.text()
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            logger.error("Error fetching profile: %s", e)
            return None

        if status == 401:
            logger.warning("Profile request was not authorized; clearing session token")
            self._token = None
            self._profile = None
            self._notify(None)
            return None
        if status != 200:
            logger.error("Failed to fetch profile: HTTP %s", status)
            return None

        try:
            profile = Profile.from_api(json.loads(body))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("Failed to parse profile response: %s", e)
            return None
        self._profile = profile
        logger.info("Cached profile for %s", profile.display_name)
        return profile
