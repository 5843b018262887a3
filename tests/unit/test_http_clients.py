"""
Unit tests for the storage and credit API clients.

HTTP calls go through httpx.MockTransport.

Run: pytest tests/unit/test_http_clients.py -v
"""

import asyncio
import json
from datetime import date

import httpx
import pytest

from exceptions import ExternalServiceError
from integrations.credit_api import HttpCreditGateway, parse_account
from integrations.storage_client import HttpImageStorage


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHttpImageStorage:
    """Tests for HttpImageStorage.upload()"""

    def test_returns_remote_ref(self):
        """Should POST the bytes and return remoteRef."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = request.content
            seen["filename"] = request.headers["X-Filename"]
            seen["type"] = request.headers["Content-Type"]
            return httpx.Response(200, json={"remoteRef": "https://cdn.test/abc.jpg"})

        storage = HttpImageStorage(upload_url="https://store.test/upload", client=mock_client(handler))

        ref = asyncio.run(storage.upload(b"jpeg-bytes", "lamp.jpg", "image/jpeg"))

        assert ref == "https://cdn.test/abc.jpg"
        assert seen == {"body": b"jpeg-bytes", "filename": "lamp.jpg", "type": "image/jpeg"}

    def test_rejected_upload_raises(self):
        """Should raise ExternalServiceError with the status code."""
        storage = HttpImageStorage(
            upload_url="https://store.test/upload",
            client=mock_client(lambda request: httpx.Response(413)),
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            asyncio.run(storage.upload(b"x", "big.jpg", "image/jpeg"))

        assert exc_info.value.details["status_code"] == 413

    def test_missing_ref_raises(self):
        """Should treat an answer without remoteRef as a failure."""
        storage = HttpImageStorage(
            upload_url="https://store.test/upload",
            client=mock_client(lambda request: httpx.Response(200, json={"ok": True})),
        )

        with pytest.raises(ExternalServiceError):
            asyncio.run(storage.upload(b"x", "a.jpg", "image/jpeg"))

    def test_timeout_raises(self):
        """Should wrap timeouts."""
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        storage = HttpImageStorage(upload_url="https://store.test/upload", client=mock_client(handler))

        with pytest.raises(ExternalServiceError):
            asyncio.run(storage.upload(b"x", "a.jpg", "image/jpeg"))


class TestParseAccount:
    """Tests for parse_account()"""

    def test_reads_camel_case(self):
        """Should read balances and the reset date."""
        account = parse_account({
            "freeAllowanceRemaining": 2,
            "purchasedBalance": 7,
            "usageThisPeriod": 3,
            "resetDate": "2026-11-01T00:00:00Z",
        })

        assert account.total_available == 9
        assert account.reset_date == date(2026, 11, 1)

    def test_missing_values_are_zero(self):
        """Should default absent balances to zero."""
        account = parse_account({})

        assert account.total_available == 0
        assert account.reset_date is None


class TestHttpCreditGateway:
    """Tests for HttpCreditGateway"""

    def test_debit_forwards_idempotency_key(self):
        """Should POST amount and key to /{user}/debit."""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"amount": 3, "freeUsed": 1, "purchasedUsed": 2, "available": 4})

        gateway = HttpCreditGateway("user-1", base_url="https://credits.test/v1", client=mock_client(handler))

        result = asyncio.run(gateway.debit(3, "session-1:batch-1"))

        assert seen["path"] == "/v1/user-1/debit"
        assert seen["body"] == {"amount": 3, "idempotencyKey": "session-1:batch-1"}
        assert result.status == "granted"
        assert (result.free_used, result.purchased_used, result.available) == (1, 2, 4)

    def test_debit_402_is_insufficient(self):
        """Should map 402 to an insufficient result, not an error."""
        gateway = HttpCreditGateway(
            "user-1",
            base_url="https://credits.test/v1",
            client=mock_client(lambda request: httpx.Response(402, json={"available": 2})),
        )

        result = asyncio.run(gateway.debit(5, "k"))

        assert result.status == "insufficient"
        assert result.amount == 0
        assert result.available == 2

    def test_debit_server_error_raises(self):
        """Should raise ExternalServiceError for other statuses."""
        gateway = HttpCreditGateway(
            "user-1",
            base_url="https://credits.test/v1",
            client=mock_client(lambda request: httpx.Response(500)),
        )

        with pytest.raises(ExternalServiceError):
            asyncio.run(gateway.debit(1, "k"))

    def test_get_account(self):
        """Should GET /{user} and parse the account."""
        def handler(request):
            assert request.method == "GET"
            assert request.url.path == "/v1/user-1"
            return httpx.Response(200, json={"freeAllowanceRemaining": 3, "purchasedBalance": 0})

        gateway = HttpCreditGateway("user-1", base_url="https://credits.test/v1/", client=mock_client(handler))

        account = asyncio.run(gateway.get_account())

        assert account.free_allowance_remaining == 3

    def test_refund(self):
        """Should POST to /{user}/refund and return the account."""
        def handler(request):
            assert request.url.path == "/v1/user-1/refund"
            return httpx.Response(200, json={"freeAllowanceRemaining": 0, "purchasedBalance": 1})

        gateway = HttpCreditGateway("user-1", base_url="https://credits.test/v1", client=mock_client(handler))

        account = asyncio.run(gateway.refund(1, "k:refund:g1"))

        assert account.purchased_balance == 1

    def test_unreachable_raises(self):
        """Should wrap connection failures."""
        def handler(request):
            raise httpx.ConnectError("refused")

        gateway = HttpCreditGateway("user-1", base_url="https://credits.test/v1", client=mock_client(handler))

        with pytest.raises(ExternalServiceError):
            asyncio.run(gateway.get_account())
