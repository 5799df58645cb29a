import json
import threading
from types import SimpleNamespace
from urllib.parse import urlsplit

import pytest
import requests

from console_runtime.config import RuntimeSettings

API_BASE = "http://api.test/api"


def _make_response(status, body=None, *, raw=None, url=f"{API_BASE}/"):
    response = requests.Response()
    response.status_code = status
    if raw is not None:
        response._content = raw
    elif body is not None:
        response._content = json.dumps(body).encode("utf-8")
    else:
        response._content = b""
    response._content_consumed = True
    response.url = url
    return response


class FakeHttp:
    """Stand-in for ``requests.Session`` answering from per-route queues.

    Each route replays its queued items in order and repeats the last one.
    Items are responses, exceptions to raise, or callables producing either.
    """

    def __init__(self) -> None:
        self.calls = []
        self._routes = {}
        self._lock = threading.Lock()

    def route(self, method, path, *items):
        self._routes.setdefault((method.upper(), path), []).extend(items)

    def calls_to(self, path):
        return [call for call in self.calls if urlsplit(call.url).path == path]

    def request(self, method, url, **kwargs):
        with self._lock:
            self.calls.append(SimpleNamespace(method=method, url=url, **kwargs))
            queue = self._routes.get((method.upper(), urlsplit(url).path))
            if not queue:
                return _make_response(404, {"error": "not found"}, url=url)
            item = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(item) and not isinstance(item, requests.Response):
            item = item(method, url, kwargs)
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture
def settings():
    return RuntimeSettings(
        api_base_url=API_BASE,
        ws_url="ws://api.test/ws",
        request_timeout_ms=2000,
        request_retry_attempts=2,
        request_retry_delay_ms=0,
        reconnect_delay_ms=0,
        max_reconnect_attempts=5,
        transport="dummy",
    )


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture
def respond():
    return _make_response
