"""
Single entry point for game sign-in

Coordinates interactive sign-in, silent refresh, sign-out, the sign-in retry
policy and the background session restore. Exactly one sign-in or refresh
sequence runs at a time; concurrent callers of the same operation share the
in-flight result.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional

import aiohttp

from .config import Settings
from .consumer_identity import ConsumerAccount, InteractiveConsumerIdentityClient
from .errors import (
    AuthenticationException,
    AuthError,
    ExchangeError,
    InteractiveAuthError,
    NetworkTimeoutError,
    NotSignedInError,
    SilentRefreshError,
)
from .exchanger import GameServiceTokenExchanger, GameSessionToken
from .profile_cache import Profile, ProfileCache

logger = logging.getLogger(__name__)


class AuthState(enum.Enum):
    SIGNED_OUT = "signed_out"
    SIGNING_IN = "signing_in"
    SIGNED_IN = "signed_in"
    REFRESHING_SILENTLY = "refreshing_silently"
    ERROR = "error"


@dataclass(frozen=True)
class AuthStatus:
    state: AuthState
    attempt: int = 0
    cause: Optional[BaseException] = None


StateListener = Callable[[AuthStatus], None]


@dataclass
class AuthSession:
    """Current account and its session token/profile, owned by the orchestrator"""

    profiles: ProfileCache
    account: Optional[ConsumerAccount] = None

    @property
    def token(self) -> Optional[GameSessionToken]:
        return self.profiles.token

    def clear(self) -> None:
        self.account = None
        self.profiles.clear()


class AuthOrchestrator:
    def __init__(
        self,
        consumer: InteractiveConsumerIdentityClient,
        exchanger: GameServiceTokenExchanger,
        profiles: ProfileCache,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.consumer = consumer
        self.exchanger = exchanger
        self.settings = settings or Settings()
        self.session = AuthSession(profiles=profiles)
        self._sleep = sleep
        self._status = AuthStatus(AuthState.SIGNED_OUT)
        self._listeners: List[StateListener] = []
        self._lock = asyncio.Lock()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._background: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_session: aiohttp.ClientSession,
        open_url=None,
    ) -> "AuthOrchestrator":
        return cls(
            InteractiveConsumerIdentityClient.from_settings(settings, open_url=open_url),
            GameServiceTokenExchanger(http_session, settings),
            ProfileCache(http_session, settings),
            settings,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> AuthState:
        return self._status.state

    @property
    def status(self) -> AuthStatus:
        return self._status

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_status(self, state: AuthState, attempt: int = 0, cause: Optional[BaseException] = None) -> None:
        self._status = AuthStatus(state, attempt, cause)
        for listener in list(self._listeners):
            try:
                listener(self._status)
            except Exception:
                logger.exception("State listener raised")

    def is_signed_in(self) -> bool:
        """Account, session token and state all agree; a profile 401 drops the token"""
        return (
            self.session.account is not None
            and self.session.token is not None
            and self.state in (AuthState.SIGNED_IN, AuthState.REFRESHING_SILENTLY)
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def sign_in(self) -> Optional[Profile]:
        """Interactive sign-in through the full chain; raises AuthenticationException"""
        return await self._single_flight("sign_in", self._sign_in_locked)

    async def ensure_valid_token(self) -> GameSessionToken:
        """Silent refresh + full chain for the signed-in account"""
        return await self._single_flight("refresh", self._ensure_valid_token_locked)

    async def restore_session(self) -> Optional[Profile]:
        """One opportunistic sweep: restore the first cached account silently"""
        return await self._single_flight("restore", self._restore_locked)

    async def sign_out(self) -> None:
        """Best-effort removal of the account and cached tokens; never raises"""
        self._cancel_background()
        try:
            async with self._lock:
                await self._clear_session()
        except Exception:
            logger.exception("Sign out did not complete cleanly")
        self._set_status(AuthState.SIGNED_OUT)
        logger.info("User signed out.")

    def start_background_refresh(self) -> asyncio.Task:
        if self._background is None or self._background.done():
            self._background = asyncio.ensure_future(self._background_loop())
        return self._background

    async def aclose(self) -> None:
        """Stop the background loop along with any restore it already started"""
        tasks = [self._cancel_background(), self._inflight.get("restore")]
        tasks = [task for task in tasks if task is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self.state is AuthState.REFRESHING_SILENTLY:
            settled = AuthState.SIGNED_IN if self.session.account is not None else AuthState.SIGNED_OUT
            self._set_status(settled)

    # ------------------------------------------------------------------
    # Guarded sequences
    # ------------------------------------------------------------------

    async def _single_flight(self, key: str, factory):
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(self._exclusive(factory))
            self._inflight[key] = task
            task.add_done_callback(partial(self._forget, key))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # mark retrieved; every waiter already got it through the shield
            task.exception()

    async def _exclusive(self, factory):
        async with self._lock:
            return await factory()

    async def _sign_in_locked(self) -> Optional[Profile]:
        attempts = self.settings.sign_in_attempts
        last_error: Optional[AuthError] = None
        attempt = 0
        for attempt in range(1, attempts + 1):
            self._set_status(AuthState.SIGNING_IN, attempt=attempt)
            logger.info("Starting sign-in flow (attempt %s)...", attempt)
            try:
                account = await self.consumer.sign_in_interactive(self.settings.consumer_scopes)
                token = await self.exchanger.exchange(account.access_token)
            except InteractiveAuthError as e:
                last_error = e
                logger.error("Sign-in attempt %s failed: %s", attempt, e)
                if e.cancelled:
                    break
            except ExchangeError as e:
                last_error = e
                logger.error("Sign-in attempt %s failed at %s hop: %s", attempt, e.hop, e)
            except Exception as e:
                self._set_status(AuthState.ERROR, cause=e)
                raise
            else:
                self.session.account = account
                profile = await self.session.profiles.init(token)
                self._set_status(AuthState.SIGNED_IN)
                logger.info("Sign-in successful. Session token obtained.")
                return profile

            if attempt < attempts:
                await self._sleep(self.settings.retry_delay)

        await self._clear_session()
        self._set_status(AuthState.SIGNED_OUT, cause=last_error)
        raise AuthenticationException(f"Sign-in failed after {attempt} attempts", last_error) from last_error

    async def _ensure_valid_token_locked(self) -> GameSessionToken:
        account = self.session.account
        if account is None or self.state is not AuthState.SIGNED_IN:
            raise NotSignedInError("No signed-in account; sign in required.")
        token = await self._refresh_locked(account)
        self.session.profiles.update_token(token)
        self._set_status(AuthState.SIGNED_IN)
        return token

    async def _restore_locked(self) -> Optional[Profile]:
        if self.is_signed_in():
            return await self.session.profiles.get()
        accounts = await self.consumer.list_accounts()
        if not accounts:
            logger.info("No cached accounts available for auto sign-in")
            return None
        account = accounts[0]
        logger.info("Attempting silent sign-in for cached account")
        token = await self._refresh_locked(account)
        self.session.account = account
        profile = await self.session.profiles.init(token)
        self._set_status(AuthState.SIGNED_IN)
        logger.info("Auto sign-in succeeded for cached account")
        return profile

    async def _refresh_locked(self, account: ConsumerAccount) -> GameSessionToken:
        """Silent refresh then full chain; provider rejections force sign-out, never retried"""
        self._set_status(AuthState.REFRESHING_SILENTLY)
        try:
            consumer_token = await self.consumer.refresh_silently(account, self.settings.consumer_scopes)
            return await self.exchanger.exchange(consumer_token)
        except NetworkTimeoutError as e:
            logger.warning("Silent refresh could not reach %s; keeping account: %s", e.hop, e)
            fallback = AuthState.SIGNED_IN if self.session.account is not None else AuthState.SIGNED_OUT
            self._set_status(fallback, cause=e)
            raise
        except (SilentRefreshError, ExchangeError) as e:
            logger.error("Silent refresh failed, signing out: %s", e)
            await self._clear_session(account)
            self._set_status(AuthState.SIGNED_OUT, cause=e)
            raise
        except Exception as e:
            self._set_status(AuthState.ERROR, cause=e)
            raise

    async def _clear_session(self, account: Optional[ConsumerAccount] = None) -> None:
        account = account or self.session.account
        self.session.clear()
        try:
            await self.consumer.remove_account(account)
        except Exception as e:
            logger.warning("Could not remove cached account: %s", e)

    # ------------------------------------------------------------------
    # Background restore
    # ------------------------------------------------------------------

    async def _background_loop(self) -> None:
        delay = self.settings.background_retry_delay
        while True:
            try:
                await self.restore_session()
                return
            except AuthError as e:
                logger.warning("Background sign-in failed, retrying in %ss: %s", delay, e)
            except Exception:
                logger.exception("Background sign-in failed unexpectedly, retrying in %ss", delay)
            await self._sleep(delay)

    def _cancel_background(self) -> Optional[asyncio.Task]:
        task = self._background
        self._background = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return task
