"""
External payment handoff.

The pipeline never navigates by itself: it builds a checkout URL and gives
it to a PaymentRedirector. The HTTP layer uses DeferredRedirector and
returns the URL so the client performs a top-level navigation.

The checkout sends the user back with `?payment=success&credits=N`.
"""

from typing import Mapping, Optional, Protocol
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

import structlog

from config import settings
from models.bulk_ingest import PaymentReturnSignal

logger = structlog.get_logger(__name__)


class PaymentRedirector(Protocol):
    """Port for handing control to the payment processor."""

    async def redirect(self, checkout_url: str) -> None:
        ...


class DeferredRedirector:
    """Records the checkout URL for the caller to navigate to."""

    def __init__(self):
        self.checkout_url: Optional[str] = None
        self.redirect_count = 0

    async def redirect(self, checkout_url: str) -> None:
        self.checkout_url = checkout_url
        self.redirect_count += 1
        logger.info("payment_redirect_prepared", redirect_count=self.redirect_count)


def _with_query(url: str, params: dict) -> str:
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query))
    query.update({k: v for k, v in params.items() if v is not None})
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def build_checkout_url(
    session_id: str,
    quantity: int,
    user_ref: Optional[str] = None,
    base_url: Optional[str] = None,
    return_url: Optional[str] = None
) -> str:
    """
    Build the checkout URL for a credit purchase.

    The return URL carries the session id so any navigation context can
    find the checkpoint again.
    """
    back = _with_query(return_url or settings.checkout_return_url, {"session": session_id})
    return _with_query(base_url or settings.checkout_base_url, {
        "quantity": max(1, quantity),
        "client_reference_id": user_ref or session_id,
        "session": session_id,
        "return_url": back,
    })


def parse_payment_return(params: Mapping[str, str]) -> Optional[PaymentReturnSignal]:
    """
    Read the payment return signal from query parameters.

    Returns None when the query carries no payment information at all.
    """
    status = (params.get("payment") or "").strip().lower()
    if not status:
        return None

    try:
        credits = max(0, int(params.get("credits") or 0))
    except ValueError:
        credits = 0

    return PaymentReturnSignal(
        success=status == "success",
        credits=credits,
        checkout_session_id=params.get("session_id"),
    )
