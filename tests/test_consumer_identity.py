import time
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from conftest import FakeRequestsResponse, make_id_token
from launcher_auth.consumer_identity import ConsumerAccount, InteractiveConsumerIdentityClient
from launcher_auth.errors import InteractiveAuthError, NetworkTimeoutError, SilentRefreshError
from launcher_auth.token_cache import TokenCache

SCOPES = ("XboxLive.signin", "offline_access")
REDIRECT = "http://localhost:53117"
ID_TOKEN = make_id_token({"oid": "oid-1", "tid": "tid-1", "preferred_username": "player@example.com"})


class FakeProvider:
    """Drives the browser redirect and token endpoint seams of the client"""

    def __init__(self, client, redirect_params=None):
        self.client = client
        self.redirect_params = redirect_params or {"code": "auth-code"}
        self.authorize_urls = []
        self.posts = []
        self.responses = []
        client._capture_redirect = self.capture_redirect
        client._http_post = self.http_post

    def capture_redirect(self, build_url):
        url = build_url(REDIRECT)
        self.authorize_urls.append(url)
        query = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        params = dict(self.redirect_params)
        params.setdefault("state", query["state"])
        return REDIRECT, params

    def http_post(self, url, data, headers):
        self.posts.append(data)
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def token_response(access="consumer-1", refresh="refresh-1", expires_in=3600):
    return FakeRequestsResponse(200, {
        "access_token": access,
        "refresh_token": refresh,
        "expires_in": expires_in,
        "id_token": ID_TOKEN,
        "token_type": "Bearer",
    })


@pytest.fixture
def cache_file(tmp_path):
    return tmp_path / "consumer_cache.json"


@pytest.fixture
def client(cache_file):
    return InteractiveConsumerIdentityClient(
        client_id="client-123",
        token_cache=TokenCache(cache_file),
        authorize_url="https://login.test/consumers/oauth2/v2.0/authorize",
        token_url="https://login.test/consumers/oauth2/v2.0/token",
    )


@pytest.fixture
def provider(client):
    return FakeProvider(client)


@pytest.mark.asyncio
async def test_interactive_sign_in(client, provider, cache_file):
    provider.responses.append(token_response())

    account = await client.sign_in_interactive(SCOPES)

    assert account.home_account_id == "oid-1.tid-1"
    assert account.username == "player@example.com"
    assert account.access_token == "consumer-1"
    assert account.expires_at > time.time()
    assert cache_file.exists()

    query = parse_qs(urlparse(provider.authorize_urls[0]).query)
    assert query["prompt"] == ["select_account"]
    assert query["code_challenge_method"] == ["S256"]
    assert query["redirect_uri"] == [REDIRECT]
    assert query["scope"][0].split() == ["XboxLive.signin", "offline_access", "openid", "profile"]

    form = provider.posts[0]
    assert form["grant_type"] == "authorization_code"
    assert form["code"] == "auth-code"
    assert form["redirect_uri"] == REDIRECT
    assert form["code_verifier"]


@pytest.mark.asyncio
async def test_state_mismatch_is_rejected(client, cache_file):
    FakeProvider(client, redirect_params={"code": "auth-code", "state": "forged"})

    with pytest.raises(InteractiveAuthError):
        await client.sign_in_interactive(SCOPES)
    assert not cache_file.exists()


@pytest.mark.asyncio
async def test_user_cancellation(client):
    FakeProvider(client, redirect_params={"error": "access_denied", "error_description": "The user declined"})

    with pytest.raises(InteractiveAuthError) as excinfo:
        await client.sign_in_interactive(SCOPES)

    assert excinfo.value.cancelled
    assert excinfo.value.error_code == "access_denied"


@pytest.mark.asyncio
async def test_token_endpoint_error_is_not_cached(client, provider, cache_file):
    provider.responses.append(FakeRequestsResponse(400, {"error": "invalid_grant", "error_description": "bad code"}))

    with pytest.raises(InteractiveAuthError) as excinfo:
        await client.sign_in_interactive(SCOPES)

    assert excinfo.value.error_code == "invalid_grant"
    assert not excinfo.value.cancelled
    assert not cache_file.exists()


@pytest.mark.asyncio
async def test_refresh_returns_cached_token_while_valid(client, provider):
    provider.responses.append(token_response())
    account = await client.sign_in_interactive(SCOPES)

    assert await client.refresh_silently(account, SCOPES) == "consumer-1"
    assert len(provider.posts) == 1


@pytest.mark.asyncio
async def test_refresh_redeems_refresh_token_near_expiry(client, provider, cache_file):
    provider.responses += [token_response(expires_in=60), token_response(access="consumer-2", refresh="refresh-2")]
    account = await client.sign_in_interactive(SCOPES)

    token = await client.refresh_silently(account, SCOPES)

    assert token == "consumer-2"
    form = provider.posts[1]
    assert form["grant_type"] == "refresh_token"
    assert form["refresh_token"] == "refresh-1"
    assert "refresh-2" in cache_file.read_text()


@pytest.mark.asyncio
async def test_refresh_rejection(client, provider, cache_file):
    provider.responses += [token_response(expires_in=60), FakeRequestsResponse(400, {"error": "invalid_grant"})]
    account = await client.sign_in_interactive(SCOPES)
    before = cache_file.read_text()

    with pytest.raises(SilentRefreshError):
        await client.refresh_silently(account, SCOPES)
    assert cache_file.read_text() == before


@pytest.mark.asyncio
@pytest.mark.parametrize("failure", [
    FakeRequestsResponse(503, {}),
    requests.ConnectionError("unreachable"),
    requests.Timeout("slow"),
])
async def test_refresh_transport_failure_is_network_timeout(client, provider, failure):
    provider.responses += [token_response(expires_in=60), failure]
    account = await client.sign_in_interactive(SCOPES)

    with pytest.raises(NetworkTimeoutError) as excinfo:
        await client.refresh_silently(account, SCOPES)
    assert excinfo.value.hop == "consumer"


@pytest.mark.asyncio
async def test_refresh_unknown_account(client, provider):
    provider.responses.append(token_response())
    await client.sign_in_interactive(SCOPES)

    with pytest.raises(SilentRefreshError):
        await client.refresh_silently(ConsumerAccount(home_account_id="someone-else"), SCOPES)


@pytest.mark.asyncio
async def test_list_and_remove_accounts(client, provider, cache_file):
    assert await client.list_accounts() == []
    provider.responses.append(token_response())
    account = await client.sign_in_interactive(SCOPES)

    accounts = await client.list_accounts()
    assert [a.home_account_id for a in accounts] == [account.home_account_id]

    await client.remove_account(account)
    assert await client.list_accounts() == []

    # the removal is persisted for the next process
    fresh = InteractiveConsumerIdentityClient("client-123", TokenCache(cache_file), "https://a", "https://t")
    assert await fresh.list_accounts() == []


@pytest.mark.asyncio
async def test_browser_open_failure(client):
    client.open_url = lambda url: False

    with pytest.raises(InteractiveAuthError):
        await client.sign_in_interactive(SCOPES)


@pytest.mark.asyncio
@pytest.mark.parametrize("contents", [
    b"\xff\xfe\x00garbage",
    b'{"version": 1, "account": "oops"}',
    b'{"version": 1, "account": {"home_account_id": "a"}, "expires_at": "soon"}',
])
async def test_damaged_cache_file_still_allows_sign_in(client, provider, cache_file, contents):
    cache_file.write_bytes(contents)

    assert await client.list_accounts() == []

    provider.responses.append(token_response())
    account = await client.sign_in_interactive(SCOPES)
    assert [a.home_account_id for a in await client.list_accounts()] == [account.home_account_id]
