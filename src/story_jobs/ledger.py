"""
Coin ledger integration.

The ledger itself is owned by the wallet service; this module defines the
three atomic operations the JobManager consumes and an in-memory
implementation with an audit journal.

Every reservation taken in ``submit`` is resolved exactly once, either by
``commit`` (job completed, or failed after billable content was produced)
or by ``release`` (job failed, or submission never succeeded).
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ErrorContext, InsufficientFundsError, ReservationError
from .types import ReservationToken


class CoinLedger(ABC):
    """Abstract interface to the owner's spendable coin balance."""

    @abstractmethod
    async def reserve(self, owner_id: str, amount: int) -> ReservationToken:
        """Place a hold on ``amount`` coins.

        Raises:
            InsufficientFundsError: If the balance cannot cover the hold
        """
        ...

    @abstractmethod
    async def commit(self, token: ReservationToken) -> None:
        """Convert the hold into a spend."""
        ...

    @abstractmethod
    async def release(self, token: ReservationToken) -> None:
        """Return the held coins to the owner."""
        ...


class LedgerEntryType(str, Enum):
    RESERVE = "reserve"
    COMMIT = "commit"
    RELEASE = "release"


@dataclass
class LedgerEntry:
    """A journal line for one ledger operation."""
    type: LedgerEntryType
    token_id: str
    owner_id: str
    amount: int
    entry_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "type": self.type.value,
            "token_id": self.token_id,
            "owner_id": self.owner_id,
            "amount": self.amount,
            "timestamp": self.timestamp,
        }


class InMemoryCoinLedger(CoinLedger):
    """In-memory ledger for tests and single-process deployments.

    Balances exclude live holds: reserving moves coins out of the
    spendable balance, releasing moves them back, committing drops them.
    Resolving a token twice raises ReservationError.
    """

    def __init__(self, balances: dict[str, int] | None = None):
        self._balances: dict[str, int] = dict(balances or {})
        self._holds: dict[str, ReservationToken] = {}
        self._journal: list[LedgerEntry] = []
        self._lock = asyncio.Lock()

    def deposit(self, owner_id: str, amount: int) -> None:
        self._balances[owner_id] = self._balances.get(owner_id, 0) + amount

    def balance(self, owner_id: str) -> int:
        return self._balances.get(owner_id, 0)

    def held(self, owner_id: str) -> int:
        return sum(t.amount for t in self._holds.values() if t.owner_id == owner_id)

    @property
    def journal(self) -> list[LedgerEntry]:
        return list(self._journal)

    def entries_for(self, token_id: str) -> list[LedgerEntry]:
        return [e for e in self._journal if e.token_id == token_id]

    def count(self, entry_type: LedgerEntryType, token_id: str | None = None) -> int:
        return sum(
            1
            for e in self._journal
            if e.type == entry_type and (token_id is None or e.token_id == token_id)
        )

    async def reserve(self, owner_id: str, amount: int) -> ReservationToken:
        if amount < 0:
            raise ValueError("Reservation amount cannot be negative")
        async with self._lock:
            available = self._balances.get(owner_id, 0)
            if available < amount:
                raise InsufficientFundsError(
                    required=amount,
                    available=available,
                    context=ErrorContext(owner_id=owner_id, operation="reserve"),
                )
            token = ReservationToken(
                token_id=f"rsv_{uuid.uuid4().hex[:16]}",
                owner_id=owner_id,
                amount=amount,
            )
            self._balances[owner_id] = available - amount
            self._holds[token.token_id] = token
            self._journal.append(
                LedgerEntry(LedgerEntryType.RESERVE, token.token_id, owner_id, amount)
            )
            return token

    async def commit(self, token: ReservationToken) -> None:
        async with self._lock:
            self._take_hold(token, "commit")
            self._journal.append(
                LedgerEntry(LedgerEntryType.COMMIT, token.token_id, token.owner_id, token.amount)
            )

    async def release(self, token: ReservationToken) -> None:
        async with self._lock:
            self._take_hold(token, "release")
            self._balances[token.owner_id] = self._balances.get(token.owner_id, 0) + token.amount
            self._journal.append(
                LedgerEntry(LedgerEntryType.RELEASE, token.token_id, token.owner_id, token.amount)
            )

    def _take_hold(self, token: ReservationToken, operation: str) -> ReservationToken:
        hold = self._holds.pop(token.token_id, None)
        if hold is None:
            raise ReservationError(
                f"Reservation {token.token_id} is unknown or already resolved",
                context=ErrorContext(owner_id=token.owner_id, operation=operation),
            )
        return hold


__all__ = [
    "CoinLedger",
    "InMemoryCoinLedger",
    "LedgerEntry",
    "LedgerEntryType",
]
