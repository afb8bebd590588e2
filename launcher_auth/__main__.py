"""
Command-line driver

    python -m launcher_auth signin    # browser sign-in through the full chain
    python -m launcher_auth token     # restore the cached account and mint a fresh session token
    python -m launcher_auth signout
    python -m launcher_auth device    # connect the developer account with a device code
"""

import argparse
import asyncio
import logging
import sys

import aiohttp

from .config import Settings, configure_logging
from .developer_account import DeveloperAccountService
from .device_flow import DeviceCodeIdentityClient
from .errors import AuthError
from .orchestrator import AuthOrchestrator
from .storage import JsonPreferenceStore

logger = logging.getLogger(__name__)


def _banner(title: str) -> None:
    print("=" * 60)
    print(title)
    print("=" * 60)
    print()


def _show_user_code(user_code: str, verification_uri: str, expires_in: int) -> None:
    print()
    print(f"Open {verification_uri} and enter the code:")
    print()
    print(f"    {user_code}")
    print()
    print(f"The code expires in {expires_in // 60} minutes.")
    print()


async def _signin(settings: Settings, http: aiohttp.ClientSession) -> int:
    _banner("Game Account Sign-In")
    orchestrator = AuthOrchestrator.from_settings(settings, http)
    profile = await orchestrator.sign_in()
    token = orchestrator.session.token
    print()
    print("Signed in.")
    if profile:
        print(f"   Player: {profile.display_name}")
    if token:
        print(f"   Session token valid for {token.expires_in // 60} minutes")
    return 0


async def _token(settings: Settings, http: aiohttp.ClientSession) -> int:
    orchestrator = AuthOrchestrator.from_settings(settings, http)
    await orchestrator.restore_session()
    token = orchestrator.session.token
    if not orchestrator.is_signed_in() or token is None:
        print("No cached account. Run 'python -m launcher_auth signin' first.")
        return 1
    print("Session token refreshed.")
    if token.username:
        print(f"   Username: {token.username}")
    print(f"   Expires in {token.expires_in // 60} minutes")
    return 0


async def _signout(settings: Settings, http: aiohttp.ClientSession) -> int:
    orchestrator = AuthOrchestrator.from_settings(settings, http)
    await orchestrator.sign_out()
    developer = await DeveloperAccountService.create(
        http,
        DeviceCodeIdentityClient.from_settings(http, settings),
        JsonPreferenceStore(settings.preferences_file),
        settings,
    )
    await developer.sign_out()
    print("Signed out. Cached tokens removed.")
    return 0


async def _device(settings: Settings, http: aiohttp.ClientSession) -> int:
    _banner("Developer Account Sign-In")
    service = await DeveloperAccountService.create(
        http,
        DeviceCodeIdentityClient.from_settings(http, settings),
        JsonPreferenceStore(settings.preferences_file),
        settings,
    )
    account = await service.start_device_flow(_show_user_code)
    if account is None:
        print("Sign-in cancelled.")
        return 1
    print("Developer account connected.")
    if account.profile:
        print(f"   Login: {account.profile.login}")
    return 0


COMMANDS = {
    "signin": _signin,
    "token": _token,
    "signout": _signout,
    "device": _device,
}


async def _run(command: str, settings: Settings) -> int:
    async with aiohttp.ClientSession() as http:
        return await COMMANDS[command](settings, http)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="launcher_auth", description="Launcher sign-in tools")
    parser.add_argument("command", choices=sorted(COMMANDS))
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    parser.add_argument("--log-level", default=None, help="Override LAUNCHER_AUTH_LOG_LEVEL")
    args = parser.parse_args(argv)

    settings = Settings.from_env(args.env_file)
    configure_logging(args.log_level or settings.log_level)

    try:
        return asyncio.run(_run(args.command, settings))
    except AuthError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"\n{e.user_message}")
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
