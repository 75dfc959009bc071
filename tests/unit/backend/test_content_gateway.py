"""
Unit tests for ContentGateway.

The requests session is a MagicMock; no network access.
"""

from unittest.mock import MagicMock

import pytest
import requests

from medledger.services.content_gateway import ContentGateway
from medledger.services.errors import ContentIntegrityError, GatewayFetchError


def _response(status_code=200, payload=None, json_error=None):
    response = MagicMock()
    response.status_code = status_code
    if json_error is not None:
        response.json.side_effect = json_error
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def gateway(session):
    return ContentGateway("https://gateway.example/", timeout=7, session=session)


class TestFetch:
    """Tests for fetch() outcomes."""

    def test_returns_json_object(self, gateway, session):
        session.get.return_value = _response(payload={"title": "Lab Report"})

        assert gateway.fetch("bafyabc") == {"title": "Lab Report"}
        session.get.assert_called_once_with(
            "https://gateway.example/ipfs/bafyabc",
            timeout=7,
            headers={"Accept": "application/json"},
        )

    def test_transport_error_is_fetch_error(self, gateway, session):
        session.get.side_effect = requests.ConnectionError("refused")

        with pytest.raises(GatewayFetchError):
            gateway.fetch("bafyabc")

    def test_timeout_is_fetch_error(self, gateway, session):
        session.get.side_effect = requests.Timeout("slow")

        with pytest.raises(GatewayFetchError):
            gateway.fetch("bafyabc")

    def test_http_error_is_fetch_error(self, gateway, session):
        session.get.return_value = _response(status_code=504)

        with pytest.raises(GatewayFetchError, match="504"):
            gateway.fetch("bafyabc")

    def test_invalid_json_is_integrity_error(self, gateway, session):
        """Corrupt content is reported apart from an unreachable gateway."""
        session.get.return_value = _response(json_error=ValueError("Expecting value"))

        with pytest.raises(ContentIntegrityError):
            gateway.fetch("bafyabc")

    def test_non_object_is_integrity_error(self, gateway, session):
        session.get.return_value = _response(payload=["not", "an", "object"])

        with pytest.raises(ContentIntegrityError, match="list"):
            gateway.fetch("bafyabc")

    def test_close_closes_session(self, gateway, session):
        gateway.close()
        session.close.assert_called_once()
