"""
Consumer token -> regional token -> platform token -> game-service session token

Three sequential HTTP calls. Each hop returns a stage result; the chain stops
at the first failed hop and names it in the ExchangeError.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

from .config import Settings, clamp_timeout
from .errors import ExchangeError, NetworkTimeoutError
from .result import Failure, HopResult, Ok, run_stages

logger = logging.getLogger(__name__)

HOP_REGIONAL = "regional"
HOP_PLATFORM = "platform"
HOP_SESSION = "session"

# XErr codes returned by the platform hop on 401
XERR_REASONS = {
    2148916227: "The account is banned from Xbox Live",
    2148916233: "The account doesn't have an Xbox profile",
    2148916235: "Xbox Live is not available in the account's region",
    2148916236: "The account needs adult verification",
    2148916237: "The account needs adult verification",
    2148916238: "The account is a child account and must be added to a family",
}


@dataclass(frozen=True)
class RegionalIdentityToken:
    token: str = field(repr=False)
    user_hash: str


@dataclass(frozen=True)
class PlatformAuthorizationToken:
    token: str = field(repr=False)
    user_hash: str


@dataclass
class GameSessionToken:
    """Bearer credential for the game backend; the token itself never appears in repr"""

    access_token: str = field(repr=False)
    token_type: str = "Bearer"
    expires_in: int = 0
    username: Optional[str] = None
    obtained_at: float = field(default_factory=time.time)

    @property
    def expires_at(self) -> float:
        return self.obtained_at + self.expires_in

    def is_expired(self, skew: float = 0.0) -> bool:
        return time.time() + skew >= self.expires_at

    @property
    def authorization_header(self) -> str:
        return f"Bearer {self.access_token}"


def _extract_user_hash(data: Dict[str, Any]) -> Optional[str]:
    try:
        uhs = data["DisplayClaims"]["xui"][0]["uhs"]
    except (KeyError, IndexError, TypeError):
        return None
    return uhs if isinstance(uhs, str) and uhs else None


def _xerr_reason(body: str) -> Optional[str]:
    try:
        code = json.loads(body).get("XErr")
    except (ValueError, AttributeError):
        return None
    if code is None:
        return None
    try:
        return XERR_REASONS.get(int(code), f"XErr {code}")
    except (TypeError, ValueError):
        return f"XErr {code}"


class GameServiceTokenExchanger:
    """Pure function of a consumer access token, implemented as three chained hops"""

    def __init__(self, session: aiohttp.ClientSession, settings: Optional[Settings] = None):
        self._session = session
        self.settings = settings or Settings()
        self.timeout = clamp_timeout(self.settings.http_timeout)

    async def exchange(self, consumer_token: str) -> GameSessionToken:
        """Run all three hops; raises ExchangeError naming the failed hop"""
        return (await self.exchange_result(consumer_token)).unwrap()

    async def exchange_result(self, consumer_token: str) -> "HopResult[GameSessionToken]":
        result = await run_stages(
            consumer_token,
            (self.regional_hop, self.platform_hop, self.session_hop),
        )
        if result.ok:
            logger.info("Token exchange complete, session token obtained")
        else:
            logger.error("Token exchange failed at %s hop: %s", result.error.hop, result.error)
        return result

    async def regional_hop(self, consumer_token: str) -> "HopResult[RegionalIdentityToken]":
        payload = {
            "Properties": {
                "AuthMethod": "RPS",
                "SiteName": self.settings.regional_site_name,
                "RpsTicket": f"d={consumer_token}",
            },
            "RelyingParty": self.settings.regional_relying_party,
            "TokenType": "JWT",
        }
        result = await self._post_json(HOP_REGIONAL, self.settings.regional_auth_url, payload, xbox=True)
        if not result.ok:
            return result
        data = result.value
        token, user_hash = data.get("Token"), _extract_user_hash(data)
        if not token or not user_hash:
            return Failure(ExchangeError(HOP_REGIONAL, "regional response is missing the token or user hash"))
        return Ok(RegionalIdentityToken(token=token, user_hash=user_hash))

    async def platform_hop(self, regional: RegionalIdentityToken) -> "HopResult[PlatformAuthorizationToken]":
        payload = {
            "Properties": {
                "SandboxId": self.settings.sandbox_id,
                "UserTokens": [regional.token],
            },
            "RelyingParty": self.settings.platform_relying_party,
            "TokenType": "JWT",
        }
        result = await self._post_json(HOP_PLATFORM, self.settings.platform_auth_url, payload, xbox=True)
        if not result.ok:
            return result
        data = result.value
        # The hash is taken from this response, not carried over from the regional hop
        token, user_hash = data.get("Token"), _extract_user_hash(data)
        if not token or not user_hash:
            return Failure(ExchangeError(HOP_PLATFORM, "platform response is missing the token or user hash"))
        return Ok(PlatformAuthorizationToken(token=token, user_hash=user_hash))

    async def session_hop(self, platform: PlatformAuthorizationToken) -> "HopResult[GameSessionToken]":
        identity = f"{self.settings.identity_scheme} x={platform.user_hash};{platform.token}"
        result = await self._post_json(HOP_SESSION, self.settings.session_auth_url, {"identityToken": identity})
        if not result.ok:
            return result
        data = result.value
        access_token = data.get("access_token")
        if not access_token:
            return Failure(ExchangeError(HOP_SESSION, "session response is missing access_token"))
        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            return Failure(ExchangeError(HOP_SESSION, "session response has an invalid expires_in"))
        return Ok(GameSessionToken(
            access_token=access_token,
            token_type=data.get("token_type") or "Bearer",
            expires_in=expires_in,
            username=data.get("username"),
        ))

    async def _post_json(self, hop: str, url: str, payload: Dict[str, Any], xbox: bool = False) -> "HopResult[Dict[str, Any]]":
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self.settings.user_agent,
        }
        if xbox:
            headers["x-xbl-contract-version"] = "1"

        try:
            async with self._session.post(
                url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                status = response.status
                body = await response.text()
        except asyncio.TimeoutError as e:
            return Failure(NetworkTimeoutError(hop, cause=e))
        except aiohttp.ClientConnectionError as e:
            return Failure(NetworkTimeoutError(hop, cause=e))
        except aiohttp.ClientError as e:
            return Failure(ExchangeError(hop, f"{hop} request failed: {e}", cause=e))

        logger.debug("%s hop response received (status=%s, size=%s)", hop, status, len(body))

        if status != 200:
            message = f"{hop} authentication failed with HTTP status {status}"
            reason = _xerr_reason(body) if hop == HOP_PLATFORM else None
            if reason:
                message = f"{message}: {reason}"
            return Failure(ExchangeError(hop, message, status=status))

        try:
            data = json.loads(body)
        except ValueError as e:
            return Failure(ExchangeError(hop, f"{hop} response could not be parsed", cause=e))
        if not isinstance(data, dict):
            return Failure(ExchangeError(hop, f"{hop} response was not a JSON object"))
        return Ok(data)
