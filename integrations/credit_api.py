"""
Remote credit ledger integration.

    GET  {base}/{user_id}          -> { freeAllowanceRemaining, purchasedBalance, ... }
    POST {base}/{user_id}/debit    { amount, idempotencyKey } -> Granted (200) | Insufficient (402)
    POST {base}/{user_id}/refund   { amount, idempotencyKey } -> account

The server enforces idempotency on the key; this client only forwards it.
"""

from datetime import date
from typing import Optional

import httpx
import structlog

from config import settings
from exceptions import ExternalServiceError
from models.credit import CreditAccount, DebitResult

logger = structlog.get_logger(__name__)


def parse_account(data: dict) -> CreditAccount:
    """Build a CreditAccount from a credit query answer."""
    reset = data.get("resetDate") or data.get("reset_date")
    return CreditAccount(
        free_allowance_remaining=max(0, int(data.get("freeAllowanceRemaining", 0) or 0)),
        purchased_balance=max(0, int(data.get("purchasedBalance", 0) or 0)),
        usage_this_period=max(0, int(data.get("usageThisPeriod", 0) or 0)),
        reset_date=date.fromisoformat(str(reset)[:10]) if reset else None,
    )


class HttpCreditGateway:
    """Credit gateway backed by the marketplace credit API."""

    def __init__(
        self,
        user_id: str,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0
    ):
        self.user_id = user_id
        self.base_url = (base_url or settings.credit_api_url).rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> httpx.Response:
        url = f"{self.base_url}/{self.user_id}{path}"
        try:
            if self._client is not None:
                return await self._client.request(method, url, json=payload)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("credit_api_unreachable", path=path, error=str(e))
            raise ExternalServiceError("credit_api", f"Credit API call failed on {path or '/'}") from e

    async def get_account(self) -> CreditAccount:
        response = await self._request("GET", "")
        if response.status_code != 200:
            raise ExternalServiceError(
                "credit_api",
                "Credit query failed",
                details={"status_code": response.status_code}
            )
        return parse_account(response.json())

    async def debit(self, amount: int, idempotency_key: str) -> DebitResult:
        response = await self._request(
            "POST", "/debit", {"amount": amount, "idempotencyKey": idempotency_key}
        )
        data = response.json() if response.content else {}

        if response.status_code == 402:
            return DebitResult(
                status="insufficient",
                amount=0,
                available=max(0, int(data.get("available", 0) or 0)),
            )
        if response.status_code != 200:
            raise ExternalServiceError(
                "credit_api",
                "Credit debit failed",
                details={"status_code": response.status_code}
            )

        return DebitResult(
            status="granted",
            amount=int(data.get("amount", amount)),
            free_used=int(data.get("freeUsed", 0) or 0),
            purchased_used=int(data.get("purchasedUsed", 0) or 0),
            available=max(0, int(data.get("available", 0) or 0)),
            replayed=bool(data.get("replayed", False)),
        )

    async def refund(self, amount: int, idempotency_key: str) -> CreditAccount:
        response = await self._request(
            "POST", "/refund", {"amount": amount, "idempotencyKey": idempotency_key}
        )
        if response.status_code != 200:
            raise ExternalServiceError(
                "credit_api",
                "Credit refund failed",
                details={"status_code": response.status_code}
            )
        return parse_account(response.json())
