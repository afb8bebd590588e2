"""
Error taxonomy for sign-in, silent refresh, token exchange and device flow
"""

from typing import Optional

SIGN_IN_AGAIN = "Your session has expired. Please sign in again."
TEMPORARY_FAILURE = "The sign-in service is temporarily unavailable. Retrying may help."
DECLINED = "You declined the sign-in request."


class AuthError(Exception):
    """Base class for everything this package raises"""

    @property
    def user_message(self) -> str:
        return str(self)


class InteractiveAuthError(AuthError):
    """Browser sign-in was cancelled, failed, or the provider returned an OAuth error"""

    def __init__(self, reason: str, cancelled: bool = False, error_code: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.cancelled = cancelled
        self.error_code = error_code

    @property
    def user_message(self) -> str:
        if self.cancelled:
            return DECLINED
        return f"Sign-in failed: {self.reason}"


class SilentRefreshError(AuthError):
    """Cached session can't be refreshed without the user; never retried"""

    @property
    def user_message(self) -> str:
        return SIGN_IN_AGAIN


class ExchangeError(AuthError):
    """One hop of the token exchange chain failed"""

    def __init__(
        self,
        hop: str,
        message: Optional[str] = None,
        cause: Optional[BaseException] = None,
        status: Optional[int] = None,
    ):
        self.hop = hop
        self.cause = cause
        self.status = status
        super().__init__(message or f"{hop} token exchange failed")

    @property
    def user_message(self) -> str:
        if self.hop in ("regional", "platform"):
            return f"Xbox Live rejected the sign-in ({self}). {TEMPORARY_FAILURE}"
        return f"The game service rejected the sign-in ({self}). {TEMPORARY_FAILURE}"


class NetworkTimeoutError(ExchangeError):
    """A hop timed out or the provider was unreachable"""

    def __init__(self, hop: str, cause: Optional[BaseException] = None):
        super().__init__(hop, f"{hop} request timed out or could not connect", cause=cause)

    @property
    def user_message(self) -> str:
        return TEMPORARY_FAILURE


class OAuthDeviceError(AuthError):
    """Terminal device authorization outcome (denied, expired or provider error)"""

    def __init__(self, code: str, description: Optional[str] = None):
        self.code = code
        self.description = description
        text = f"OAuth error: {code}"
        if description:
            text = f"{text}: {description}"
        super().__init__(text)

    @property
    def denied(self) -> bool:
        return self.code == "access_denied"

    @property
    def expired(self) -> bool:
        return self.code == "expired_token"

    @property
    def user_message(self) -> str:
        if self.denied:
            return DECLINED
        if self.expired:
            return "The sign-in code expired. Please start again."
        return f"Developer sign-in failed: {self}"


class AuthenticationException(AuthError):
    """Interactive sign-in gave up after all attempts"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def user_message(self) -> str:
        if isinstance(self.cause, AuthError):
            return self.cause.user_message
        return str(self)


class NotSignedInError(AuthError):
    """No signed-in account is available"""

    @property
    def user_message(self) -> str:
        return "You are not signed in."
