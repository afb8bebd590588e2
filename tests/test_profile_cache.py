import aiohttp
import pytest

from conftest import FakeResponse
from launcher_auth.exchanger import GameSessionToken
from launcher_auth.profile_cache import Profile, ProfileCache

PROFILE_BODY = {
    "id": "abc123",
    "name": "Steve",
    "skins": [
        {"state": "INACTIVE", "url": "https://textures/old"},
        {"state": "ACTIVE", "url": "https://textures/current"},
    ],
}


@pytest.fixture
def token():
    return GameSessionToken(access_token="session-token", expires_in=86400)


@pytest.fixture
def profiles(http, settings):
    return ProfileCache(http, settings)


def test_profile_prefers_active_skin():
    profile = Profile.from_api(PROFILE_BODY)
    assert profile == Profile("abc123", "Steve", "https://textures/current")
    assert Profile.from_api({"id": "x", "name": "Alex"}).avatar_url is None


@pytest.mark.asyncio
async def test_init_fetches_and_notifies(profiles, http, settings, token):
    http.queue("GET", settings.profile_url, FakeResponse(200, PROFILE_BODY))
    seen = []
    profiles.add_listener(seen.append)

    profile = await profiles.init(token)

    assert profile.display_name == "Steve"
    assert seen == [profile]
    headers = http.requests_to(settings.profile_url)[0]["headers"]
    assert headers["Authorization"] == "Bearer session-token"


@pytest.mark.asyncio
async def test_get_is_lazy_and_cached(profiles, http, settings, token):
    http.queue("GET", settings.profile_url, FakeResponse(503, ""), FakeResponse(200, PROFILE_BODY))

    assert await profiles.init(token) is None
    first = await profiles.get()
    second = await profiles.get()

    assert first is second
    assert first.user_id == "abc123"
    assert http.count(settings.profile_url) == 2


@pytest.mark.asyncio
async def test_get_without_token(profiles, http):
    assert await profiles.get() is None
    assert http.calls == []
    assert not profiles.is_signed_in


@pytest.mark.asyncio
async def test_unauthorized_clears_token_and_profile(profiles, http, settings, token):
    http.queue("GET", settings.profile_url, FakeResponse(401, ""))
    seen = []
    profiles.add_listener(seen.append)

    assert await profiles.init(token) is None

    assert profiles.token is None
    assert not profiles.is_signed_in
    assert seen == [None]
    assert await profiles.get() is None


@pytest.mark.asyncio
async def test_network_error_keeps_token(profiles, http, settings, token):
    http.queue("GET", settings.profile_url, aiohttp.ClientConnectionError("offline"))

    assert await profiles.init(token) is None
    assert profiles.token is token


@pytest.mark.asyncio
async def test_update_token_keeps_profile(profiles, http, settings, token):
    http.queue("GET", settings.profile_url, FakeResponse(200, PROFILE_BODY))
    profile = await profiles.init(token)
    fresh = GameSessionToken(access_token="session-token-2", expires_in=86400)

    profiles.update_token(fresh)

    assert profiles.token is fresh
    assert await profiles.get() is profile
    assert http.count(settings.profile_url) == 1


@pytest.mark.asyncio
async def test_listener_errors_are_contained(profiles, http, settings, token):
    http.queue("GET", settings.profile_url, FakeResponse(200, PROFILE_BODY))

    def broken(profile):
        raise ValueError("ui went away")

    seen = []
    profiles.add_listener(broken)
    profiles.add_listener(seen.append)
    await profiles.init(token)

    profiles.remove_listener(broken)
    profiles.clear()

    assert seen[-1] is None
    assert len(seen) == 2
