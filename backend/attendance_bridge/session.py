from __future__ import annotations

import logging
from typing import Any

import requests

from .errors import AuthError

logger = logging.getLogger(__name__)


def parse_set_cookie(header_value: str | None) -> str:
    """Collapse a (possibly comma-joined) Set-Cookie header into ``name=value; name=value``."""
    if not header_value:
        return ""

    pairs: list[str] = []
    for part in header_value.split(","):
        pair = part.split(";")[0].strip()
        # "Expires=Wed, 21 Oct ..." leaves a bare date fragment after the split
        if not pair or "=" not in pair:
            continue
        pairs.append(pair)
    return "; ".join(pairs)


def merge_cookies(existing: str, incoming: str) -> str:
    if not incoming:
        return existing
    if not existing:
        return incoming
    return f"{existing}; {incoming}"


def cookie_names(cookie: str) -> list[str]:
    return [pair.split("=", 1)[0].strip() for pair in cookie.split(";") if "=" in pair]


class SessionClient:
    """Two-step login against the legacy device portal.

    The anonymous GET hands out a session cookie which must accompany the
    credential POST. Cookies from both responses are accumulated into a
    single ``Cookie`` header value and returned to the caller.
    """

    def __init__(
        self,
        base_url: str,
        login_path: str,
        timeout: float,
        http: Any = requests,
    ) -> None:
        self.login_url = f"{base_url}{login_path}"
        self.timeout = timeout
        self._http = http

    def authenticate(self, serial_number: str, password: str) -> str:
        try:
            initial = self._http.get(self.login_url, timeout=self.timeout)
            cookie = parse_set_cookie(initial.headers.get("set-cookie"))
            logger.debug("Initial cookies for SN %s: %s", serial_number, cookie_names(cookie))

            response = self._http.post(
                self.login_url,
                data={"sn": serial_number, "pass": password},
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Cookie": cookie,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise AuthError(f"Login request failed: {exc}") from exc

        if response.status_code != 200:
            raise AuthError(f"Login failed with status: {response.status_code}")

        cookie = merge_cookies(cookie, parse_set_cookie(response.headers.get("set-cookie")))
        logger.info("Login successful for SN %s, cookies: %s", serial_number, cookie_names(cookie))
        return cookie
