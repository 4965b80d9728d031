from __future__ import annotations

import logging
from typing import Any

import requests

from .errors import FetchError

logger = logging.getLogger(__name__)


class PayloadFetcher:
    def __init__(
        self,
        base_url: str,
        listing_path: str,
        timeout: float,
        http: Any = requests,
    ) -> None:
        self.listing_url = f"{base_url}{listing_path}"
        self.timeout = timeout
        self._http = http

    def fetch_payload(self, cookie: str) -> str:
        """Return the raw listing page body; the markup is not assumed to be well formed."""
        try:
            response = self._http.get(
                self.listing_url,
                headers={"Cookie": cookie},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise FetchError(f"Data fetch request failed: {exc}") from exc

        if response.status_code != 200:
            raise FetchError(f"Data fetch failed with status: {response.status_code}")

        body = response.text
        logger.info("Data response length: %s", len(body))
        return body
