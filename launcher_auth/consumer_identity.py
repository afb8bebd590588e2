"""
Interactive browser sign-in and silent refresh against the consumer identity tenant

The browser flow is an OAuth2 authorization code grant with PKCE. The redirect
is captured by a one-shot HTTP listener on localhost. All blocking work (the
listener, the token endpoint calls and the cache file) runs in a worker thread.
"""

import asyncio
import base64
import hashlib
import http.server
import json
import logging
import secrets
import socketserver
import time
import uuid
import webbrowser
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse

import requests

from .config import Settings, clamp_timeout
from .errors import InteractiveAuthError, NetworkTimeoutError, SilentRefreshError
from .token_cache import ConsumerTokenStore, TokenCache

logger = logging.getLogger(__name__)

# Scopes the provider always expects alongside the requested ones
RESERVED_SCOPES = ("openid", "profile")
# Cached consumer tokens closer than this to expiry are redeemed again
REFRESH_SKEW_SECONDS = 300


@dataclass
class ConsumerAccount:
    home_account_id: str
    username: Optional[str] = None
    access_token: str = field(default="", repr=False)
    expires_at: float = 0.0


def _merge_scopes(scopes: Iterable[str]) -> Tuple[str, ...]:
    merged: List[str] = []
    for scope in list(scopes) + list(RESERVED_SCOPES):
        if scope and scope not in merged:
            merged.append(scope)
    return tuple(merged)


def _pkce_pair() -> Tuple[str, str]:
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def _decode_claims(id_token: Optional[str]) -> Dict[str, Any]:
    """Best-effort, unverified decode of id_token claims (display only)"""
    if not id_token or id_token.count(".") < 2:
        return {}
    try:
        payload = id_token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")).decode("utf-8"))
        return claims if isinstance(claims, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


def _account_from_response(response: Dict[str, Any]) -> Dict[str, Any]:
    claims = _decode_claims(response.get("id_token"))
    home_id = claims.get("oid") or claims.get("sub") or uuid.uuid4().hex
    if claims.get("tid"):
        home_id = f"{home_id}.{claims['tid']}"
    return {
        "home_account_id": home_id,
        "username": claims.get("preferred_username") or claims.get("name"),
    }


class InteractiveConsumerIdentityClient:
    """Owns the single cached consumer account"""

    def __init__(
        self,
        client_id: str,
        token_cache: TokenCache,
        authorize_url: str,
        token_url: str,
        redirect_port: int = 0,
        open_url: Callable[[str], Any] = webbrowser.open,
        interactive_timeout: float = 300.0,
        http_timeout: float = 30.0,
        user_agent: Optional[str] = None,
    ):
        self.client_id = client_id
        self.token_cache = token_cache
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.redirect_port = redirect_port
        self.open_url = open_url
        self.interactive_timeout = clamp_timeout(interactive_timeout)
        self.http_timeout = clamp_timeout(http_timeout)
        self.user_agent = user_agent
        self._store = ConsumerTokenStore()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        token_cache: Optional[TokenCache] = None,
        open_url: Optional[Callable[[str], Any]] = None,
    ) -> "InteractiveConsumerIdentityClient":
        return cls(
            client_id=settings.consumer_client_id,
            token_cache=token_cache or TokenCache(settings.token_cache_file),
            authorize_url=settings.authorize_url,
            token_url=settings.token_url,
            redirect_port=settings.redirect_port,
            open_url=open_url or webbrowser.open,
            interactive_timeout=settings.interactive_timeout,
            http_timeout=settings.http_timeout,
            user_agent=settings.user_agent,
        )

    # ------------------------------------------------------------------
    # Public, non-blocking API
    # ------------------------------------------------------------------

    async def sign_in_interactive(self, scopes: Iterable[str]) -> ConsumerAccount:
        """Run the browser sign-in; raises InteractiveAuthError"""
        return await asyncio.to_thread(self._sign_in_blocking, tuple(scopes))

    async def refresh_silently(self, account: ConsumerAccount, scopes: Iterable[str]) -> str:
        """Return a consumer access token without user interaction; raises SilentRefreshError"""
        return await asyncio.to_thread(self._refresh_blocking, account, tuple(scopes))

    async def list_accounts(self) -> List[ConsumerAccount]:
        return await asyncio.to_thread(self._list_accounts_blocking)

    async def remove_account(self, account: Optional[ConsumerAccount] = None) -> None:
        await asyncio.to_thread(self._remove_account_blocking, account)

    # ------------------------------------------------------------------
    # Blocking implementation (worker thread)
    # ------------------------------------------------------------------

    def _sign_in_blocking(self, scopes: Tuple[str, ...]) -> ConsumerAccount:
        requested = _merge_scopes(scopes)
        verifier, challenge = _pkce_pair()
        state = secrets.token_urlsafe(16)

        def build_url(redirect_uri: str) -> str:
            params = {
                "client_id": self.client_id,
                "response_type": "code",
                "redirect_uri": redirect_uri,
                "response_mode": "query",
                "scope": " ".join(requested),
                "state": state,
                "code_challenge": challenge,
                "code_challenge_method": "S256",
                "prompt": "select_account",
            }
            return f"{self.authorize_url}?{urlencode(params)}"

        logger.info("Starting interactive consumer sign-in")
        redirect_uri, params = self._capture_redirect(build_url)

        if params.get("state") != state:
            raise InteractiveAuthError("Sign-in response did not match the request (state mismatch)")
        if "error" in params:
            error = params["error"]
            description = params.get("error_description") or error
            cancelled = error in ("access_denied", "user_cancelled")
            raise InteractiveAuthError(description, cancelled=cancelled, error_code=error)
        code = params.get("code")
        if not code:
            raise InteractiveAuthError("No authorization code was returned")

        status, payload = self._post_token({
            "client_id": self.client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": verifier,
            "scope": " ".join(requested),
        })
        if status != 200 or not payload.get("access_token"):
            error = payload.get("error") or f"HTTP {status}"
            raise InteractiveAuthError(
                payload.get("error_description") or f"Token request failed: {error}",
                error_code=error,
            )

        with self.token_cache.access(self._store) as store:
            account = _account_from_response(payload)
            store.store_tokens(account, payload, requested)
            result = ConsumerAccount(
                home_account_id=account["home_account_id"],
                username=account["username"],
                access_token=store.access_token or "",
                expires_at=store.expires_at,
            )
        logger.info("Consumer sign-in complete; token expires at %s", time.ctime(result.expires_at))
        return result

    def _refresh_blocking(self, account: ConsumerAccount, scopes: Tuple[str, ...]) -> str:
        requested = _merge_scopes(scopes)
        with self.token_cache.access(self._store) as store:
            cached = store.account
            if not cached or cached.get("home_account_id") != account.home_account_id:
                raise SilentRefreshError("Account is no longer in the token cache")

            if store.access_token_valid(REFRESH_SKEW_SECONDS) and set(requested) <= set(store.scopes):
                logger.debug("Using cached consumer access token")
                return store.access_token

            if not store.refresh_token:
                raise SilentRefreshError("No refresh token cached for account")

            logger.info("Refreshing consumer token silently")
            status, payload = self._post_token({
                "client_id": self.client_id,
                "grant_type": "refresh_token",
                "refresh_token": store.refresh_token,
                "scope": " ".join(requested),
            })
            if status >= 500:
                raise NetworkTimeoutError("consumer")
            if status != 200 or not payload.get("access_token"):
                error = payload.get("error") or f"HTTP {status}"
                raise SilentRefreshError(f"Silent token refresh failed: {error}")

            store.store_tokens(cached, payload, requested)
            logger.info("Consumer token refreshed; new expiry %s", time.ctime(store.expires_at))
            return payload["access_token"]

    def _list_accounts_blocking(self) -> List[ConsumerAccount]:
        with self.token_cache.access(self._store) as store:
            cached = store.account
            if not cached:
                return []
            return [ConsumerAccount(
                home_account_id=cached["home_account_id"],
                username=cached.get("username"),
                access_token=store.access_token or "",
                expires_at=store.expires_at,
            )]

    def _remove_account_blocking(self, account: Optional[ConsumerAccount]) -> None:
        with self.token_cache.access(self._store) as store:
            cached = store.account
            if cached is None:
                return
            if account is not None and cached.get("home_account_id") != account.home_account_id:
                return
            store.clear()
        logger.info("Removed cached consumer account")

    def _post_token(self, data: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
        """POST to the token endpoint; transport failures become NetworkTimeoutError"""
        headers = {"Accept": "application/json"}
        if self.user_agent:
            headers["User-Agent"] = self.user_agent
        try:
            r = self._http_post(self.token_url, data, headers)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise NetworkTimeoutError("consumer", cause=e) from e
        except requests.RequestException as e:
            raise InteractiveAuthError(f"Token request failed: {e}") from e
        try:
            payload = r.json()
        except ValueError:
            payload = {}
        logger.debug("Token endpoint response (status=%s, size=%s)", r.status_code, len(r.content or b""))
        return r.status_code, payload if isinstance(payload, dict) else {}

    def _http_post(self, url: str, data: Dict[str, str], headers: Dict[str, str]) -> requests.Response:
        return requests.post(url, data=data, headers=headers, timeout=self.http_timeout)

    def _capture_redirect(self, build_url: Callable[[str], str]) -> Tuple[str, Dict[str, str]]:
        """Open the browser and wait for the provider to redirect back to localhost"""
        captured: Dict[str, str] = {}

        class OAuthHandler(http.server.BaseHTTPRequestHandler):
            def do_GET(handler_self):
                query = parse_qs(urlparse(handler_self.path).query)
                if "code" in query or "error" in query:
                    captured.update({k: v[0] for k, v in query.items()})
                    handler_self.send_response(200)
                    handler_self.send_header("Content-Type", "text/plain; charset=utf-8")
                    handler_self.end_headers()
                    handler_self.wfile.write(b"OK. Close this window.")
                else:
                    handler_self.send_error(404)

            def log_message(self, format, *args):
                pass

        try:
            httpd = socketserver.TCPServer(("localhost", self.redirect_port), OAuthHandler)
        except OSError as e:
            raise InteractiveAuthError(f"Could not start the sign-in listener: {e}") from e

        with httpd:
            redirect_uri = f"http://localhost:{httpd.server_address[1]}"
            url = build_url(redirect_uri)
            try:
                opened = self.open_url(url)
            except Exception as e:
                raise InteractiveAuthError(f"Could not open the system browser: {e}") from e
            if opened is False:
                raise InteractiveAuthError("Could not open the system browser")

            deadline = time.monotonic() + self.interactive_timeout
            while not captured:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise InteractiveAuthError("Timed out waiting for the browser sign-in", cancelled=True)
                httpd.timeout = remaining
                httpd.handle_request()
        return redirect_uri, captured
