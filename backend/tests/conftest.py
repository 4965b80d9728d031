from __future__ import annotations

from dataclasses import replace
from typing import Any

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from attendance_bridge.config import settings
from attendance_bridge.store import DeviceStore

BASE_URL = "http://portal.test"


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "", set_cookie: str | None = None) -> None:
        self.status_code = status_code
        self.text = text
        self.headers: CaseInsensitiveDict = CaseInsensitiveDict()
        if set_cookie is not None:
            self.headers["Set-Cookie"] = set_cookie


class FakeHttp:
    """Stands in for the ``requests`` module; replies are queued per HTTP method."""

    def __init__(self, get: list[Any] | None = None, post: list[Any] | None = None) -> None:
        self._replies = {"GET": list(get or []), "POST": list(post or [])}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def _next(self, method: str, url: str, kwargs: dict[str, Any]) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        queue = self._replies[method]
        if not queue:
            raise AssertionError(f"unexpected {method} {url}")
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("GET", url, kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("POST", url, kwargs)

    def methods(self) -> list[str]:
        return [method for method, _, _ in self.calls]


def portal(listing_html: str, login_status: int = 200, listing_status: int = 200) -> FakeHttp:
    return FakeHttp(
        get=[
            FakeResponse(set_cookie="ASPSESSIONID=abc; path=/"),
            FakeResponse(status_code=listing_status, text=listing_html),
        ],
        post=[FakeResponse(status_code=login_status, set_cookie="auth=ok; path=/")],
    )


@pytest.fixture
def config():
    return replace(
        settings,
        upstream_base_url=BASE_URL,
        upstream_login_path="/sc_pro.asp",
        upstream_listing_path="/view.asp",
        upstream_timeout_seconds=5,
        upstream_timezone="UTC",
        deduplicate_records=True,
    )


@pytest.fixture
def store(tmp_path):
    device_store = DeviceStore(str(tmp_path / "app.db"))
    device_store.init()
    return device_store


@pytest.fixture
def timeout_error():
    return requests.Timeout("read timed out")
