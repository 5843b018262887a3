"""
Credit ledger and admission controller.

One credit pays for one item-group description. Each user has a free
monthly allowance (reset on the first of every calendar month) and a
purchased balance; free units are always spent first.

Every debit carries an idempotency key. The admission controller derives
it from (session_id, batch_id), so a replayed reservation, for example a
second resume attempt, never charges twice.
"""

import asyncio
from datetime import date
from typing import Callable, Optional, Protocol

import structlog

from config import settings, get_supabase_client
from exceptions import DatabaseError
from models.credit import CreditAccount, DebitResult, Reservation

logger = structlog.get_logger(__name__)


class CreditGateway(Protocol):
    """Port for the credit ledger."""

    async def get_account(self) -> CreditAccount:
        ...

    async def debit(self, amount: int, idempotency_key: str) -> DebitResult:
        ...

    async def refund(self, amount: int, idempotency_key: str) -> CreditAccount:
        ...


def next_reset_date(today: date) -> date:
    """First day of the month after `today`."""
    if today.month == 12:
        return date(today.year + 1, 1, 1)
    return date(today.year, today.month + 1, 1)


# ===================
# IN-PROCESS LEDGER
# ===================

class InMemoryCreditLedger:
    """
    Single-process credit ledger.

    All mutations run under one asyncio lock, so concurrent debits from
    the same user (e.g. a duplicate resume) are serialized.
    """

    def __init__(
        self,
        purchased_balance: int = 0,
        free_allowance: Optional[int] = None,
        today: Callable[[], date] = date.today
    ):
        self.free_allowance = settings.free_monthly_allowance if free_allowance is None else free_allowance
        self._today = today
        self._lock = asyncio.Lock()

        self._free_remaining = self.free_allowance
        self._purchased = max(0, purchased_balance)
        self._usage = 0
        self._purchased_spent = 0
        self._reset_date = next_reset_date(today())

        self._debits: dict[str, DebitResult] = {}
        self._refunds: set[str] = set()
        self._purchases: set[str] = set()

    def _roll_period(self) -> None:
        today = self._today()
        if today >= self._reset_date:
            logger.info("free_allowance_reset", previous_usage=self._usage)
            self._free_remaining = self.free_allowance
            self._usage = 0
            self._purchased_spent = 0
            self._reset_date = next_reset_date(today)

    def _snapshot(self) -> CreditAccount:
        return CreditAccount(
            free_allowance_remaining=self._free_remaining,
            purchased_balance=self._purchased,
            usage_this_period=self._usage,
            reset_date=self._reset_date,
        )

    async def get_account(self) -> CreditAccount:
        async with self._lock:
            self._roll_period()
            return self._snapshot()

    async def debit(self, amount: int, idempotency_key: str) -> DebitResult:
        """
        Debit `amount` units, all or nothing.

        A key seen before returns the original result marked replayed;
        an insufficient answer is not remembered so it can be retried
        after a purchase.
        """
        if amount < 0:
            raise ValueError("debit amount must not be negative")

        async with self._lock:
            previous = self._debits.get(idempotency_key)
            if previous is not None:
                logger.info("credit_debit_replayed", idempotency_key=idempotency_key, amount=previous.amount)
                return previous.model_copy(update={"replayed": True})

            self._roll_period()
            available = self._free_remaining + self._purchased
            if amount > available:
                logger.info("credit_debit_insufficient", requested=amount, available=available)
                return DebitResult(status="insufficient", amount=0, available=available)

            free_used = min(amount, self._free_remaining)
            purchased_used = amount - free_used
            self._free_remaining -= free_used
            self._purchased -= purchased_used
            self._purchased_spent += purchased_used
            self._usage += amount

            result = DebitResult(
                status="granted",
                amount=amount,
                free_used=free_used,
                purchased_used=purchased_used,
                available=self._free_remaining + self._purchased,
            )
            self._debits[idempotency_key] = result

            logger.info(
                "credit_debited",
                idempotency_key=idempotency_key,
                amount=amount,
                free_used=free_used,
                purchased_used=purchased_used,
                available=result.available
            )
            return result

    async def refund(self, amount: int, idempotency_key: str) -> CreditAccount:
        """
        Give back units spent on a failed call.

        Units return to the purchased balance first, since those were the
        last ones spent, and the remainder to the free allowance.
        """
        async with self._lock:
            if idempotency_key in self._refunds or amount <= 0:
                return self._snapshot()

            to_purchased = min(amount, self._purchased_spent)
            to_free = min(amount - to_purchased, self.free_allowance - self._free_remaining)

            self._purchased += to_purchased
            self._purchased_spent -= to_purchased
            self._free_remaining += to_free
            self._usage = max(0, self._usage - (to_purchased + to_free))
            self._refunds.add(idempotency_key)

            logger.info("credit_refunded", idempotency_key=idempotency_key, amount=to_purchased + to_free)
            return self._snapshot()

    async def add_purchased(self, amount: int, idempotency_key: str) -> CreditAccount:
        """Credit a completed purchase once per checkout key."""
        async with self._lock:
            if idempotency_key not in self._purchases and amount > 0:
                self._purchased += amount
                self._purchases.add(idempotency_key)
                logger.info("credits_purchased", idempotency_key=idempotency_key, amount=amount)
            return self._snapshot()


# ===================
# SUPABASE LEDGER
# ===================

class SupabaseCreditLedger:
    """
    Server-side ledger on the credit_accounts table.

    Debits, refunds and purchases go through Postgres functions that
    record the idempotency key in the same transaction as the balance
    change, so atomicity is enforced by the database.
    """

    def __init__(self, user_id: str, client=None):
        self.user_id = user_id
        self.db = client or get_supabase_client()
        self.table = "credit_accounts"

    def _rpc(self, name: str, params: dict) -> dict:
        try:
            result = self.db.rpc(name, {"p_user_id": self.user_id, **params}).execute()
        except Exception as e:
            logger.error("credit_rpc_failed", rpc=name, user_id=self.user_id, error=str(e))
            raise DatabaseError("rpc", str(e))

        data = result.data
        if isinstance(data, list):
            data = data[0] if data else {}
        return data or {}

    @staticmethod
    def _account_from_row(row: dict) -> CreditAccount:
        reset = row.get("reset_date")
        return CreditAccount(
            free_allowance_remaining=row.get("free_allowance_remaining", 0) or 0,
            purchased_balance=row.get("purchased_balance", 0) or 0,
            usage_this_period=row.get("usage_this_period", 0) or 0,
            reset_date=date.fromisoformat(str(reset)[:10]) if reset else None,
        )

    async def get_account(self) -> CreditAccount:
        try:
            result = (
                self.db.table(self.table)
                .select("*")
                .eq("user_id", self.user_id)
                .execute()
            )
        except Exception as e:
            logger.error("get_credit_account_failed", user_id=self.user_id, error=str(e))
            raise DatabaseError("select", str(e))

        if not result.data:
            # No row yet: the user still has the full free allowance
            return CreditAccount(free_allowance_remaining=settings.free_monthly_allowance)
        return self._account_from_row(result.data[0])

    async def debit(self, amount: int, idempotency_key: str) -> DebitResult:
        data = self._rpc("debit_credits", {"p_amount": amount, "p_idempotency_key": idempotency_key})

        result = DebitResult(
            status="granted" if data.get("status") == "granted" else "insufficient",
            amount=data.get("amount", 0) or 0,
            free_used=data.get("free_used", 0) or 0,
            purchased_used=data.get("purchased_used", 0) or 0,
            available=data.get("available", 0) or 0,
            replayed=bool(data.get("replayed", False)),
        )
        logger.info(
            "credit_debit_recorded",
            user_id=self.user_id,
            idempotency_key=idempotency_key,
            status=result.status,
            amount=result.amount,
            replayed=result.replayed
        )
        return result

    async def refund(self, amount: int, idempotency_key: str) -> CreditAccount:
        data = self._rpc("refund_credits", {"p_amount": amount, "p_idempotency_key": idempotency_key})
        logger.info("credit_refund_recorded", user_id=self.user_id, idempotency_key=idempotency_key)
        return self._account_from_row(data)

    async def add_purchased(self, amount: int, idempotency_key: str) -> CreditAccount:
        data = self._rpc("add_purchased_credits", {"p_amount": amount, "p_idempotency_key": idempotency_key})
        logger.info("credit_purchase_recorded", user_id=self.user_id, amount=amount)
        return self._account_from_row(data)


# ===================
# ADMISSION CONTROL
# ===================

class AdmissionController:
    """
    Gates enrichment on the credit ledger.

    reserve() grants min(requested, available) and debits exactly that,
    once per (session_id, batch_id). A shortfall is reported, not raised.
    """

    def __init__(self, gateway: CreditGateway, session_id: str):
        self.gateway = gateway
        self.session_id = session_id
        self._reservations: dict[str, Reservation] = {}
        self._lock = asyncio.Lock()
        self.last_account: Optional[CreditAccount] = None

    def idempotency_key(self, batch_id: str) -> str:
        return f"{self.session_id}:{batch_id}"

    async def refresh(self) -> CreditAccount:
        """Re-read the balance from the ledger."""
        self.last_account = await self.gateway.get_account()
        return self.last_account

    async def reserve(self, requested: int, batch_id: str) -> Reservation:
        """
        Reserve credits for `requested` groups.

        Args:
            requested: Number of groups waiting for enrichment
            batch_id: Batch identifier; together with the session id it
                forms the debit idempotency key

        Returns:
            Reservation with granted + shortfall == requested
        """
        key = self.idempotency_key(batch_id)

        async with self._lock:
            cached = self._reservations.get(key)
            if cached is not None:
                logger.info("reservation_replayed", idempotency_key=key, granted=cached.granted)
                return cached.model_copy(update={"replayed": True})

            if requested <= 0:
                reservation = Reservation(status="granted", requested=0, granted=0, idempotency_key=key)
                self._reservations[key] = reservation
                return reservation

            account = await self.refresh()
            grantable = min(requested, account.total_available)
            granted = 0
            replayed = False

            if grantable > 0:
                result = await self.gateway.debit(grantable, key)
                if result.status == "granted":
                    granted = result.amount
                    replayed = result.replayed
                else:
                    # Balance moved between the read and the debit
                    logger.warning("reservation_debit_refused", idempotency_key=key, requested=grantable)

            shortfall = requested - granted
            reservation = Reservation(
                status="granted" if shortfall == 0 else "insufficient",
                requested=requested,
                granted=granted,
                shortfall=shortfall,
                idempotency_key=key,
                replayed=replayed,
            )
            self._reservations[key] = reservation

            logger.info(
                "credits_reserved",
                idempotency_key=key,
                requested=requested,
                granted=granted,
                shortfall=shortfall
            )
            return reservation

    async def release(
        self,
        reservation: Reservation,
        units: int,
        reason: str,
        unit_key: Optional[str] = None
    ) -> None:
        """
        Give back credits for calls that did not produce a result.

        Args:
            reservation: Reservation the units were granted from
            units: Number of units to give back
            reason: Logged reason (e.g. "enrichment_failed")
            unit_key: Suffix making the refund idempotent per unit
        """
        if units <= 0:
            return
        units = min(units, reservation.granted)
        key = f"{reservation.idempotency_key}:refund:{unit_key or reason}"

        await self.gateway.refund(units, key)
        logger.info("credits_released", idempotency_key=key, units=units, reason=reason)


def get_credit_gateway(user_id: str) -> CreditGateway:
    """Build the configured credit ledger for a user."""
    if settings.credit_backend == "supabase":
        return SupabaseCreditLedger(user_id)
    if settings.credit_backend == "http":
        from integrations.credit_api import HttpCreditGateway
        return HttpCreditGateway(user_id)
    return InMemoryCreditLedger()
