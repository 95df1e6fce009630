"""
Credit Ledger contract and SQL-backed implementation.

The ledger owns per-user image credit balances. The credit gate calls it
inside its own transaction (session=...), so a debit and the duel's
charged-flag commit or roll back together.
"""

from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from arena.constants import CreditConstants
from arena.database.models import CreditAccount, CreditTransaction, CreditTransactionKind
from arena.services.base import BaseService
from arena.utils.exceptions import InvalidArgumentError
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


class CreditLedger(ABC):
    """External credit ledger used by the credit gate."""

    @abstractmethod
    async def has_balance(self, user_id: str, session: Optional[AsyncSession] = None) -> bool:
        """True if the user can afford one duel's illustrations"""

    @abstractmethod
    async def debit(self, user_id: str, duel_id: Optional[int] = None,
                    session: Optional[AsyncSession] = None) -> bool:
        """Take one credit; False on insufficient funds"""

    @abstractmethod
    async def is_premium(self, user_id: str, session: Optional[AsyncSession] = None) -> bool:
        """Premium/unlimited accounts bypass debits"""

    @abstractmethod
    async def record_premium_use(self, user_id: str, duel_id: Optional[int] = None,
                                 session: Optional[AsyncSession] = None) -> None:
        """Record a zero-amount charge for analytics"""


class SqlCreditLedger(BaseService, CreditLedger):
    """Ledger stored in the credit_accounts / credit_transactions tables."""

    async def _get_account(self, session: AsyncSession, user_id: str) -> Optional[CreditAccount]:
        result = await session.execute(
            select(CreditAccount).where(CreditAccount.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def has_balance(self, user_id: str, session: Optional[AsyncSession] = None) -> bool:
        async def _check(s: AsyncSession) -> bool:
            account = await self._get_account(s, user_id)
            if not account:
                return False
            return account.is_premium or account.credits >= CreditConstants.CREDITS_PER_DUEL

        if session:
            return await _check(session)
        async with self.get_session() as s:
            return await _check(s)

    async def is_premium(self, user_id: str, session: Optional[AsyncSession] = None) -> bool:
        async def _check(s: AsyncSession) -> bool:
            account = await self._get_account(s, user_id)
            return bool(account and account.is_premium)

        if session:
            return await _check(session)
        async with self.get_session() as s:
            return await _check(s)

    async def debit(self, user_id: str, duel_id: Optional[int] = None,
                    session: Optional[AsyncSession] = None) -> bool:
        async def _debit(s: AsyncSession) -> bool:
            # Conditional decrement: never drives a balance negative
            result = await s.execute(
                update(CreditAccount)
                .where(
                    CreditAccount.user_id == user_id,
                    CreditAccount.credits >= CreditConstants.CREDITS_PER_DUEL
                )
                .values(credits=CreditAccount.credits - CreditConstants.CREDITS_PER_DUEL)
            )
            if result.rowcount == 0:
                return False
            s.add(CreditTransaction(
                user_id=user_id,
                duel_id=duel_id,
                amount=-CreditConstants.CREDITS_PER_DUEL,
                kind=CreditTransactionKind.DEBIT
            ))
            logger.info(f"Debited {CreditConstants.CREDITS_PER_DUEL} credit from {user_id} for duel {duel_id}")
            return True

        if session:
            return await _debit(session)
        async with self.get_session() as s:
            return await _debit(s)

    async def record_premium_use(self, user_id: str, duel_id: Optional[int] = None,
                                 session: Optional[AsyncSession] = None) -> None:
        async def _record(s: AsyncSession):
            s.add(CreditTransaction(
                user_id=user_id,
                duel_id=duel_id,
                amount=0,
                kind=CreditTransactionKind.PREMIUM
            ))

        if session:
            await _record(session)
            return
        async with self.get_session() as s:
            await _record(s)

    # Administrative operations

    async def get_balance(self, user_id: str) -> int:
        async with self.get_session() as session:
            account = await self._get_account(session, user_id)
            return account.credits if account else 0

    async def grant_credits(self, user_id: str, amount: int) -> int:
        """Add credits, creating the account on first grant. Returns the new balance."""
        if amount <= 0:
            raise InvalidArgumentError(f"Credit grant must be positive, got {amount}")
        async with self.get_session() as session:
            account = await self._get_account(session, user_id)
            if not account:
                account = CreditAccount(user_id=user_id, credits=0, is_premium=False)
                session.add(account)
            account.credits += amount
            session.add(CreditTransaction(
                user_id=user_id,
                amount=amount,
                kind=CreditTransactionKind.GRANT
            ))
            await session.flush()
            logger.info(f"Granted {amount} credits to {user_id} (balance {account.credits})")
            return account.credits

    async def set_premium(self, user_id: str, is_premium: bool = True) -> None:
        async with self.get_session() as session:
            account = await self._get_account(session, user_id)
            if not account:
                account = CreditAccount(user_id=user_id, credits=0)
                session.add(account)
            account.is_premium = is_premium
            logger.info(f"Premium status for {user_id} set to {is_premium}")
