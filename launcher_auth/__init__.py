"""
Launcher authentication core
Consumer sign-in, token exchange chain, session orchestration and the
developer device flow
"""

from .config import Settings, configure_logging
from .consumer_identity import ConsumerAccount, InteractiveConsumerIdentityClient
from .developer_account import DeveloperAccount, DeveloperAccountService, DeveloperProfile
from .device_flow import DeviceCodeIdentityClient, DeviceFlowOutcome, DeviceFlowState
from .errors import (
    AuthenticationException,
    AuthError,
    ExchangeError,
    InteractiveAuthError,
    NetworkTimeoutError,
    NotSignedInError,
    OAuthDeviceError,
    SilentRefreshError,
)
from .exchanger import GameServiceTokenExchanger, GameSessionToken
from .orchestrator import AuthOrchestrator, AuthState, AuthStatus
from .profile_cache import Profile, ProfileCache
from .storage import JsonPreferenceStore
from .token_cache import TokenCache

__version__ = "1.0.0"

__all__ = [
    'AuthError',
    'AuthOrchestrator',
    'AuthState',
    'AuthStatus',
    'AuthenticationException',
    'ConsumerAccount',
    'DeveloperAccount',
    'DeveloperAccountService',
    'DeveloperProfile',
    'DeviceCodeIdentityClient',
    'DeviceFlowOutcome',
    'DeviceFlowState',
    'ExchangeError',
    'GameServiceTokenExchanger',
    'GameSessionToken',
    'InteractiveAuthError',
    'InteractiveConsumerIdentityClient',
    'JsonPreferenceStore',
    'NetworkTimeoutError',
    'NotSignedInError',
    'OAuthDeviceError',
    'Profile',
    'ProfileCache',
    'Settings',
    'SilentRefreshError',
    'TokenCache',
    'configure_logging',
]
