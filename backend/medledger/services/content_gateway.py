"""
HTTP client for a content-addressed (IPFS) gateway.
"""

import logging
from typing import Any, Dict, Optional

import requests

from medledger.services.errors import ContentIntegrityError, GatewayFetchError


class ContentGateway:
    """
    Fetches JSON documents by CID from `{base_url}/ipfs/{cid}`.

    One attempt per call; retries and caching belong to the hydration cache.
    """

    def __init__(
        self,
        base_url: str = "https://ipfs.io",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logging.getLogger("service.ContentGateway")

    def url_for(self, cid: str) -> str:
        return f"{self.base_url}/ipfs/{cid}"

    def fetch(self, cid: str) -> Dict[str, Any]:
        """
        Fetch and parse one document.

        Raises:
            GatewayFetchError: gateway unreachable, timed out or non-2xx status
            ContentIntegrityError: body is not JSON or not a JSON object
        """
        url = self.url_for(cid)
        try:
            response = self.session.get(
                url, timeout=self.timeout, headers={"Accept": "application/json"}
            )
        except requests.RequestException as e:
            raise GatewayFetchError(f"GET {url} failed: {e}") from e

        if response.status_code != 200:
            raise GatewayFetchError(f"GET {url} returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise ContentIntegrityError(f"Content {cid} is not valid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise ContentIntegrityError(
                f"Content {cid} is a JSON {type(payload).__name__}, expected an object"
            )
        return payload

    def close(self) -> None:
        self.session.close()
