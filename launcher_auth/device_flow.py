"""
OAuth2 Device Authorization Grant client for the developer identity provider

The polling loop is an explicit, forward-only state machine:

    REQUESTING -> AWAITING_USER -> POLLING -> SUCCEEDED | DENIED | EXPIRED | CANCELLED | FAILED

Time comes from an injectable clock so interval growth, timeout and
cancellation can be driven in tests without waiting on the wall clock.
"""

import asyncio
import enum
import json
import logging
import time
import webbrowser
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from .config import Settings, clamp_timeout
from .errors import OAuthDeviceError

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_INTERVAL_SECONDS = 5
SLOW_DOWN_INCREMENT_SECONDS = 5

ShowUserCode = Callable[[str, str, int], Any]


class DeviceFlowState(enum.Enum):
    REQUESTING = "requesting"
    AWAITING_USER = "awaiting_user"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return _RANK[self] == _TERMINAL_RANK


_TERMINAL_RANK = 3
_RANK = {
    DeviceFlowState.REQUESTING: 0,
    DeviceFlowState.AWAITING_USER: 1,
    DeviceFlowState.POLLING: 2,
    DeviceFlowState.SUCCEEDED: _TERMINAL_RANK,
    DeviceFlowState.DENIED: _TERMINAL_RANK,
    DeviceFlowState.EXPIRED: _TERMINAL_RANK,
    DeviceFlowState.CANCELLED: _TERMINAL_RANK,
    DeviceFlowState.FAILED: _TERMINAL_RANK,
}


class DeviceFlowStateError(RuntimeError):
    """Attempted a backwards transition or a transition out of a terminal state"""


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock:
    """Clock that advances only when slept on; records every sleep"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@dataclass
class DeviceAuthSession:
    device_code: str = field(repr=False)
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int = DEFAULT_INTERVAL_SECONDS


@dataclass
class DeviceTokenResult:
    access_token: str = field(repr=False)
    token_type: Optional[str] = None
    scope: Optional[str] = None


@dataclass
class DeviceFlowOutcome:
    state: DeviceFlowState
    token: Optional[DeviceTokenResult] = None
    error: Optional[OAuthDeviceError] = None
    polls: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state is DeviceFlowState.SUCCEEDED


class DeviceCodeIdentityClient:
    """Talks to the device-code and token endpoints; builds DeviceFlow runs"""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        client_id: str,
        scopes,
        device_code_url: str,
        token_url: str,
        open_url: Callable[[str], Any] = webbrowser.open,
        clock=None,
        http_timeout: float = 30.0,
        user_agent: Optional[str] = None,
    ):
        if not client_id:
            raise ValueError("client_id is required for the device flow")
        self._session = session
        self.client_id = client_id
        self.scopes = tuple(scopes)
        self.device_code_url = device_code_url
        self.token_url = token_url
        self.open_url = open_url
        self.clock = clock or SystemClock()
        self.http_timeout = clamp_timeout(http_timeout)
        self.user_agent = user_agent

    @classmethod
    def from_settings(cls, session, settings: Settings, open_url=None, clock=None) -> "DeviceCodeIdentityClient":
        return cls(
            session,
            client_id=settings.developer_client_id,
            scopes=settings.developer_scopes,
            device_code_url=settings.device_code_url,
            token_url=settings.device_token_url,
            open_url=open_url or webbrowser.open,
            clock=clock,
            http_timeout=settings.http_timeout,
            user_agent=settings.user_agent,
        )

    def start(self, show_user_code: ShowUserCode, timeout: Optional[float] = None) -> "DeviceFlow":
        return DeviceFlow(self, show_user_code, timeout)

    async def authorize(
        self,
        show_user_code: ShowUserCode,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DeviceFlowOutcome:
        """Run one complete device flow; never raises for protocol outcomes"""
        flow = self.start(show_user_code, timeout)
        if cancel_event is not None:
            flow.bind_cancel_event(cancel_event)
        return await flow.run()

    async def request_device_code(self) -> DeviceAuthSession:
        status, data = await self._post_form(self.device_code_url, {
            "client_id": self.client_id,
            "scope": " ".join(self.scopes),
        }, self.http_timeout)
        if status != 200 or "error" in data:
            raise OAuthDeviceError(
                data.get("error") or f"http_{status}",
                data.get("error_description") or "device code request failed",
            )
        try:
            interval = int(data.get("interval") or DEFAULT_INTERVAL_SECONDS)
            return DeviceAuthSession(
                device_code=data["device_code"],
                user_code=data["user_code"],
                verification_uri=data["verification_uri"],
                expires_in=int(data["expires_in"]),
                interval=max(1, interval),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise OAuthDeviceError("invalid_response", f"malformed device code response: {e}") from e

    async def poll_token(self, session: DeviceAuthSession, timeout: Optional[float] = None) -> Dict[str, Any]:
        status, data = await self._post_form(self.token_url, {
            "client_id": self.client_id,
            "device_code": session.device_code,
            "grant_type": DEVICE_CODE_GRANT,
        }, clamp_timeout(min(self.http_timeout, timeout) if timeout else self.http_timeout))
        if status != 200 and not data.get("error"):
            return {"error": f"http_{status}", "error_description": data.get("message") or "token poll failed"}
        return data

    async def _post_form(self, url: str, form: Dict[str, str], timeout: float) -> Tuple[int, Dict[str, Any]]:
        headers = {"Accept": "application/json"}
        if self.user_agent:
            headers["User-Agent"] = self.user_agent
        try:
            async with self._session.post(
                url,
                data=form,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                status = response.status
                body = await response.text()
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            raise OAuthDeviceError("network_error", str(e) or type(e).__name__) from e
        try:
            data = json.loads(body) if body else {}
        except ValueError:
            data = {}
        return status, data if isinstance(data, dict) else {}


class DeviceFlow:
    """A single run of the device authorization grant"""

    def __init__(self, client: DeviceCodeIdentityClient, show_user_code: ShowUserCode, timeout: Optional[float] = None):
        self._client = client
        self._clock = client.clock
        self._show_user_code = show_user_code
        self.timeout = clamp_timeout(timeout) if timeout is not None else None
        self.state = DeviceFlowState.REQUESTING
        self.history: List[DeviceFlowState] = [self.state]
        self.session: Optional[DeviceAuthSession] = None
        self.interval = DEFAULT_INTERVAL_SECONDS
        self.polls = 0
        self._cancel_event = asyncio.Event()
        self._started = False

    def cancel(self) -> None:
        """Stop polling as soon as possible; the outcome will be CANCELLED"""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def bind_cancel_event(self, event: asyncio.Event) -> None:
        self._cancel_event = event

    def _transition(self, new: DeviceFlowState) -> None:
        if self.state.terminal:
            raise DeviceFlowStateError(f"device flow already finished as {self.state.value}")
        if _RANK[new] <= _RANK[self.state]:
            raise DeviceFlowStateError(f"cannot move from {self.state.value} to {new.value}")
        logger.debug("Device flow %s -> %s", self.state.value, new.value)
        self.state = new
        self.history.append(new)

    def _finish(self, state: DeviceFlowState, token=None, error=None) -> DeviceFlowOutcome:
        self._transition(state)
        if state is DeviceFlowState.SUCCEEDED:
            logger.info("Device flow succeeded after %s polls", self.polls)
        else:
            logger.info("Device flow ended as %s after %s polls", state.value, self.polls)
        return DeviceFlowOutcome(state=state, token=token, error=error, polls=self.polls)

    async def run(self) -> DeviceFlowOutcome:
        if self._started:
            raise DeviceFlowStateError("device flow can only be run once")
        self._started = True
        try:
            return await self._run()
        except asyncio.CancelledError:
            if not self.state.terminal:
                self._transition(DeviceFlowState.CANCELLED)
            raise

    async def _run(self) -> DeviceFlowOutcome:
        if self.cancelled:
            return self._finish(DeviceFlowState.CANCELLED)

        try:
            finished, session = await self._until_cancelled(self._client.request_device_code())
        except OAuthDeviceError as e:
            logger.error("Device code request failed: %s", e)
            return self._finish(DeviceFlowState.FAILED, error=e)
        if not finished:
            return self._finish(DeviceFlowState.CANCELLED)

        self.session = session
        self.interval = session.interval
        self._transition(DeviceFlowState.AWAITING_USER)

        try:
            self._show_user_code(session.user_code, session.verification_uri, session.expires_in)
        except Exception as e:
            logger.exception("Could not show the device code to the user")
            return self._finish(DeviceFlowState.FAILED, error=OAuthDeviceError("ui_error", str(e)))
        self._open_browser(session.verification_uri)

        # The provider's expiry always caps the caller's timeout
        bound = float(session.expires_in)
        limit_state = DeviceFlowState.EXPIRED
        if self.timeout is not None and self.timeout < bound:
            bound = self.timeout
            limit_state = DeviceFlowState.CANCELLED
        deadline = self._clock.monotonic() + bound

        self._transition(DeviceFlowState.POLLING)
        while True:
            if self.cancelled:
                return self._finish(DeviceFlowState.CANCELLED)
            remaining = deadline - self._clock.monotonic()
            if remaining <= 0:
                logger.info("Device flow reached its time limit")
                return self._finish(limit_state)

            try:
                finished, response = await self._until_cancelled(
                    self._client.poll_token(session, timeout=remaining)
                )
            except OAuthDeviceError as e:
                logger.warning("Device token poll failed, will retry: %s", e)
                finished, response = True, None
            if not finished:
                return self._finish(DeviceFlowState.CANCELLED)

            if response is not None:
                self.polls += 1
                outcome = self._handle_poll_response(response)
                if outcome is not None:
                    return outcome

            wait = min(self.interval, deadline - self._clock.monotonic())
            if wait > 0:
                finished, _ = await self._until_cancelled(self._clock.sleep(wait))
                if not finished:
                    return self._finish(DeviceFlowState.CANCELLED)

    def _handle_poll_response(self, response: Dict[str, Any]) -> Optional[DeviceFlowOutcome]:
        access_token = response.get("access_token")
        if access_token:
            return self._finish(DeviceFlowState.SUCCEEDED, token=DeviceTokenResult(
                access_token=access_token,
                token_type=response.get("token_type"),
                scope=response.get("scope"),
            ))

        error = response.get("error")
        description = response.get("error_description")
        if error in (None, "authorization_pending"):
            return None
        if error == "slow_down":
            self.interval += SLOW_DOWN_INCREMENT_SECONDS
            logger.info("Provider asked to slow down; polling every %ss", self.interval)
            return None
        if error == "access_denied":
            return self._finish(DeviceFlowState.DENIED, error=OAuthDeviceError(error, description))
        if error == "expired_token":
            return self._finish(DeviceFlowState.EXPIRED, error=OAuthDeviceError(error, description))
        return self._finish(DeviceFlowState.FAILED, error=OAuthDeviceError(error, description))

    def _open_browser(self, url: str) -> None:
        try:
            if self._client.open_url(url) is False:
                logger.warning("Could not open the browser for device sign-in")
        except Exception as e:
            logger.warning("Could not open the browser for device sign-in: %s", e)

    async def _until_cancelled(self, awaitable) -> Tuple[bool, Any]:
        """Await unless cancel() fires first; returns (finished, result)"""
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return True, task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return False, None
