import base64
import json
from collections import defaultdict

import pytest

from launcher_auth.config import Settings


class FakeResponse:
    """Just enough of aiohttp.ClientResponse for the code under test"""

    def __init__(self, status=200, body=None):
        self.status = status
        if body is None:
            self._text = ""
        elif isinstance(body, str):
            self._text = body
        else:
            self._text = json.dumps(body)

    async def text(self):
        return self._text


class _RequestContext:
    def __init__(self, item):
        self._item = item

    async def __aenter__(self):
        if isinstance(self._item, BaseException):
            raise self._item
        return self._item

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeHttpSession:
    """
    In-process stand-in for aiohttp.ClientSession

    Responses are queued per (method, url). The last queued item is repeated
    once the queue runs down to it. Exceptions are raised on enter.
    """

    def __init__(self):
        self.routes = defaultdict(list)
        self.calls = []

    def queue(self, method, url, *items):
        self.routes[(method.upper(), url)].extend(items)
        return self

    def post(self, url, **kwargs):
        return self._request("POST", url, kwargs)

    def get(self, url, **kwargs):
        return self._request("GET", url, kwargs)

    def count(self, url, method=None):
        return sum(1 for m, u, _ in self.calls if u == url and (method is None or m == method))

    def requests_to(self, url):
        return [kwargs for _, u, kwargs in self.calls if u == url]

    def _request(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        queue = self.routes.get((method, url))
        if not queue:
            raise AssertionError(f"unexpected {method} {url}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        return _RequestContext(item)


class FakeRequestsResponse:
    """Stand-in for requests.Response returned from the _http_post seam"""

    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.content = json.dumps(payload).encode() if payload is not None else b""

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def make_id_token(claims):
    def part(obj):
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode()
    return f"{part({'alg': 'none'})}.{part(claims)}.sig"


def xbox_response(token, uhs):
    return {"Token": token, "DisplayClaims": {"xui": [{"uhs": uhs}]}}


class MemoryPreferences:
    def __init__(self, initial=None):
        self.values = dict(initial or {})

    def get(self, key):
        return self.values.get(key)

    def put(self, key, value):
        self.values[key] = value

    def remove(self, key):
        self.values.pop(key, None)


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=tmp_path, http_timeout=5, retry_delay=1.0, background_retry_delay=60.0)


@pytest.fixture
def http():
    return FakeHttpSession()
