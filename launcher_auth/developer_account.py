"""
Developer account integration built on the device authorization grant

The developer access token is kept as a plain preference value. This is not a
hardened secret store.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import aiohttp

from .config import Settings, clamp_timeout
from .device_flow import DeviceCodeIdentityClient, DeviceFlowState, ShowUserCode
from .errors import OAuthDeviceError

logger = logging.getLogger(__name__)

TOKEN_KEY = "developer_access_token"


class PreferenceStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def put(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


@dataclass(frozen=True)
class DeveloperProfile:
    id: str
    login: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass
class DeveloperAccount:
    access_token: str = field(repr=False)
    profile: Optional[DeveloperProfile] = None


class DeveloperAccountService:
    """Connect, remember and disconnect the developer account"""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        device_client: DeviceCodeIdentityClient,
        preferences: PreferenceStore,
        settings: Optional[Settings] = None,
    ):
        self._session = session
        self.device_client = device_client
        self.preferences = preferences
        self.settings = settings or Settings()
        self._token: Optional[str] = None
        self._profile: Optional[DeveloperProfile] = None

    @classmethod
    async def create(
        cls,
        session: aiohttp.ClientSession,
        device_client: DeviceCodeIdentityClient,
        preferences: PreferenceStore,
        settings: Optional[Settings] = None,
    ) -> "DeveloperAccountService":
        """Build the service and pick up a token saved by an earlier run"""
        service = cls(session, device_client, preferences, settings)
        await service.restore()
        return service

    async def restore(self) -> bool:
        """Load the stored token off the event loop; True when one was found"""
        try:
            self._token = await asyncio.to_thread(self.preferences.get, TOKEN_KEY)
        except OSError as e:
            logger.warning("Could not read the stored developer token: %s", e)
        return self._token is not None

    def is_signed_in(self) -> bool:
        return bool(self._token)

    async def start_device_flow(
        self,
        show_user_code: ShowUserCode,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[DeveloperAccount]:
        """
        Run the device flow and connect the account.

        Returns None when the user cancelled (or the caller's timeout ran out).
        Raises OAuthDeviceError when the provider denied, expired or failed
        the request.
        """
        timeout = clamp_timeout(timeout if timeout is not None else self.settings.device_flow_timeout)
        outcome = await self.device_client.authorize(show_user_code, timeout, cancel_event)

        if outcome.state is DeviceFlowState.CANCELLED:
            logger.info("Developer sign-in cancelled")
            return None
        if not outcome.succeeded:
            raise outcome.error or OAuthDeviceError(outcome.state.value)

        token = outcome.token.access_token
        await self._store_token(token)
        try:
            self._profile = await self._fetch_profile(token)
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            logger.warning("Failed to fetch developer profile after sign-in: %s", e)
            self._profile = None
        return DeveloperAccount(access_token=token, profile=self._profile)

    async def get_profile(self) -> Optional[DeveloperProfile]:
        """Cached profile, fetched on first use"""
        if self._token is None:
            return None
        if self._profile is None:
            self._profile = await self._safe_fetch(self._token)
        return self._profile

    async def refresh_profile(self) -> Optional[DeveloperProfile]:
        if self._token is None:
            return None
        self._profile = await self._safe_fetch(self._token)
        return self._profile

    async def sign_out(self) -> None:
        """Best-effort; never raises"""
        try:
            await asyncio.to_thread(self.preferences.remove, TOKEN_KEY)
            logger.info("Developer sign out successful")
        except OSError as e:
            logger.warning("Could not remove the stored developer token: %s", e)
        self._token = None
        self._profile = None

    async def _store_token(self, token: str) -> None:
        try:
            await asyncio.to_thread(self.preferences.put, TOKEN_KEY, token)
        except OSError as e:
            logger.warning("Failed to persist developer token: %s", e)
        self._token = token

    async def _clear(self) -> None:
        try:
            await asyncio.to_thread(self.preferences.remove, TOKEN_KEY)
        except OSError as e:
            logger.warning("Could not remove the stored developer token: %s", e)
        self._token = None
        self._profile = None

    async def _safe_fetch(self, token: str) -> Optional[DeveloperProfile]:
        try:
            return await self._fetch_profile(token)
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            logger.error("Failed to fetch developer profile: %s", e)
            return None

    async def _fetch_profile(self, token: str) -> Optional[DeveloperProfile]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "User-Agent": self.settings.user_agent,
        }
        async with self._session.get(
            self.settings.developer_profile_url,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=clamp_timeout(self.settings.http_timeout)),
        ) as response:
            status = response.status
            body = await response.text()

        if status == 401:
            logger.warning("Could not fetch developer profile due to authorization error")
            await self._clear()
            return None
        if not 200 <= status < 300:
            logger.error("Developer profile request failed: HTTP %s", status)
            return None
        try:
            data: Dict[str, Any] = json.loads(body)
            return DeveloperProfile(
                id=str(data["id"]),
                login=data["login"],
                name=data.get("name"),
                avatar_url=data.get("avatar_url"),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Failed to parse developer profile: %s", e)
            return None
