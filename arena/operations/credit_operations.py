"""
Credit Operations Module - Credit Gate

Charges at most one image credit per duel, no matter how many rounds are
illustrated or how many requests race for the charge.

The duel's credit_charged flag is flipped with a conditional UPDATE; only
the request whose UPDATE matched a row goes on to debit the ledger. The flag
and the debit share one transaction, so an insufficient balance rolls the
flag back and a later attempt may try again.
"""

from dataclasses import dataclass

from sqlalchemy import update

from arena.database.models import Duel, utc_now
from arena.utils.exceptions import InsufficientResourceError
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class ChargeResult:
    success: bool
    already_consumed: bool = False
    premium: bool = False


class CreditOperations:
    """Credit Gate in front of the external credit ledger."""

    def __init__(self, database, ledger, duel_ops):
        self.db = database
        self.ledger = ledger
        self.duel_ops = duel_ops
        self.logger = logger

    async def charge_once(self, duel_id: int, user_id: str) -> ChargeResult:
        """
        Charge user_id one credit for duel_id, at most once per duel.

        Returns:
            ChargeResult(success=True, already_consumed=True) when the duel was
            already charged; premium users are recorded but not debited.

        Raises:
            NotFoundError: Duel does not exist
            InsufficientResourceError: Non-premium user with no credits
        """
        async with self.db.transaction() as session:
            duel = await self.duel_ops.load_duel(session, duel_id)
            if duel.credit_charged:
                return ChargeResult(success=True, already_consumed=True)

            result = await session.execute(
                update(Duel)
                .where(Duel.id == duel_id, Duel.credit_charged.is_(False))
                .values(credit_charged=True, credit_charged_by=user_id, credit_charged_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self.logger.debug(f"Duel {duel_id} credit already claimed by a concurrent request")
                return ChargeResult(success=True, already_consumed=True)

            if await self.ledger.is_premium(user_id, session=session):
                await self.ledger.record_premium_use(user_id, duel_id=duel_id, session=session)
                self.logger.info(f"Duel {duel_id} illustrated for premium user {user_id}")
                return ChargeResult(success=True, premium=True)

            if not await self.ledger.debit(user_id, duel_id=duel_id, session=session):
                # Raising rolls back the charged flag with the failed debit
                raise InsufficientResourceError(user_id)

            self.logger.info(f"Charged {user_id} one credit for duel {duel_id}")
            return ChargeResult(success=True)

    async def is_charged(self, duel_id: int) -> bool:
        duel = await self.duel_ops.get_duel(duel_id)
        return duel.credit_charged
