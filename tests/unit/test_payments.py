"""
Unit tests for the payment handoff helpers.

Run: pytest tests/unit/test_payments.py -v
"""

import asyncio
from urllib.parse import parse_qs, urlsplit

from integrations.payments import DeferredRedirector, build_checkout_url, parse_payment_return


class TestBuildCheckoutUrl:
    """Tests for build_checkout_url()"""

    def test_carries_quantity_and_session(self):
        """Should put quantity, user reference and session in the query."""
        url = build_checkout_url(
            "session-1",
            3,
            user_ref="user-9",
            base_url="https://pay.test/checkout",
            return_url="https://app.test/post-ad",
        )

        parts = urlsplit(url)
        query = parse_qs(parts.query)
        assert parts.netloc == "pay.test"
        assert query["quantity"] == ["3"]
        assert query["client_reference_id"] == ["user-9"]
        assert query["session"] == ["session-1"]
        assert query["return_url"] == ["https://app.test/post-ad?session=session-1"]

    def test_keeps_existing_query(self):
        """Should merge into a base URL that already has parameters."""
        url = build_checkout_url("s1", 2, base_url="https://pay.test/checkout?plan=credits")

        query = parse_qs(urlsplit(url).query)
        assert query["plan"] == ["credits"]
        assert query["client_reference_id"] == ["s1"]

    def test_quantity_is_at_least_one(self):
        """Should never ask the processor for zero credits."""
        url = build_checkout_url("s1", 0, base_url="https://pay.test/checkout")

        assert parse_qs(urlsplit(url).query)["quantity"] == ["1"]


class TestParsePaymentReturn:
    """Tests for parse_payment_return()"""

    def test_success(self):
        """Should read a successful return."""
        signal = parse_payment_return({"payment": "success", "credits": "5", "session_id": "cs_1"})

        assert signal.success is True
        assert signal.credits == 5
        assert signal.checkout_session_id == "cs_1"

    def test_cancelled(self):
        """Should read a cancelled return as unsuccessful."""
        signal = parse_payment_return({"payment": "cancelled"})

        assert signal.success is False
        assert signal.credits == 0

    def test_no_payment_information(self):
        """Should return None when the query has no payment key."""
        assert parse_payment_return({"session": "s1"}) is None

    def test_bad_credit_count(self):
        """Should treat an unreadable credit count as zero."""
        signal = parse_payment_return({"payment": "SUCCESS", "credits": "five"})

        assert signal.success is True
        assert signal.credits == 0


class TestDeferredRedirector:
    """Tests for DeferredRedirector"""

    def test_records_url(self):
        """Should keep the last checkout URL for the caller."""
        redirector = DeferredRedirector()

        asyncio.run(redirector.redirect("https://pay.test/a"))
        asyncio.run(redirector.redirect("https://pay.test/b"))

        assert redirector.checkout_url == "https://pay.test/b"
        assert redirector.redirect_count == 2
