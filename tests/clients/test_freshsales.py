# tests/clients/test_freshsales.py
"""Tests for Freshsales client."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sequencer.clients.freshsales import FreshsalesClient, contact_url, root_domain, search_url
from sequencer.core.config import CrmConfig


def configured_client():
    return FreshsalesClient(CrmConfig(domain="acme", api_key="test-key"))


def mock_async_client(mock_client_cls, response_json):
    mock_client = AsyncMock()
    mock_client_cls.return_value.__aenter__.return_value = mock_client
    mock_response = MagicMock()
    mock_response.json.return_value = response_json
    mock_response.raise_for_status = MagicMock()
    mock_client.post.return_value = mock_response
    return mock_client


def test_url_helpers():
    assert root_domain("https://www.Acme.com/about") == "acme.com"
    assert contact_url("acme", "42") == "https://acme.freshsales.io/contacts/42"
    assert search_url("acme", "Jane Doe") == "https://acme.freshsales.io/search?q=Jane%20Doe"


def test_is_available_requires_credentials():
    assert configured_client().is_available() is True
    assert FreshsalesClient(CrmConfig()).is_available() is False
    assert FreshsalesClient(CrmConfig(domain="acme", api_key="k", enabled=False)).is_available() is False


@pytest.mark.asyncio
async def test_find_account_returns_first_match():
    with patch("sequencer.clients.freshsales.httpx.AsyncClient") as mock_client_cls:
        mock_client = mock_async_client(mock_client_cls, {"sales_accounts": [{"id": 7}, {"id": 8}]})

        account = await configured_client().find_account("www.example.com")

        assert account == {"id": 7}
        url = mock_client.post.call_args.args[0]
        assert url == "https://acme.freshsales.io/api/filtered_search/sales_account"
        body = mock_client.post.call_args.kwargs["json"]
        assert body["filter_rule"][0]["value"] == "example.com"


@pytest.mark.asyncio
async def test_find_account_no_match():
    with patch("sequencer.clients.freshsales.httpx.AsyncClient") as mock_client_cls:
        mock_async_client(mock_client_cls, {"sales_accounts": []})

        assert await configured_client().find_account("example.com") is None


@pytest.mark.asyncio
async def test_create_activity():
    with patch("sequencer.clients.freshsales.httpx.AsyncClient") as mock_client_cls:
        mock_client = mock_async_client(mock_client_cls, {"sales_activity": {"id": 55}})

        result = await configured_client().create_activity("Outreach: email step completed", "Hi", 7)

        assert result == {"id": 55}
        payload = mock_client.post.call_args.kwargs["json"]["sales_activity"]
        assert payload["targetable_type"] == "SalesAccount"
        assert payload["targetable_id"] == 7
        headers = mock_client.post.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Token token=test-key"


@pytest.mark.asyncio
async def test_errors_return_none():
    with patch("sequencer.clients.freshsales.httpx.AsyncClient") as mock_client_cls:
        mock_client = AsyncMock()
        mock_client_cls.return_value.__aenter__.return_value = mock_client
        mock_client.post.side_effect = Exception("connection reset")

        client = configured_client()
        assert await client.find_account("example.com") is None
        assert await client.create_activity("t", "n", 7) is None


@pytest.mark.asyncio
async def test_unconfigured_client_makes_no_requests():
    with patch("sequencer.clients.freshsales.httpx.AsyncClient") as mock_client_cls:
        client = FreshsalesClient(CrmConfig())

        assert await client.find_account("example.com") is None
        mock_client_cls.assert_not_called()
