"""
Wizard Operations Module - Wizard Directory

Read access to wizard records for the duel engine, plus the one write the
engine performs on them: incrementing win/loss counters when a duel ends.

Counters are maintained incrementally inside the transaction that completes
the duel, never recomputed by scanning duel history:
- multiplayer duels update wins/losses
- campaign battles update campaign_wins/campaign_losses only
- a draw (no losers) updates nothing
"""

from typing import Dict, List, Optional, Sequence
from contextlib import asynccontextmanager
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from arena.database.models import Wizard, Duel, DuelParticipant, DuelStatus, ParticipantOutcome
from arena.utils.exceptions import (
    NotFoundError, UnauthorizedError, InvalidArgumentError
)
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)

MAX_NAME_LENGTH = 100


class WizardOperations:
    """Wizard Directory: lookups, ownership checks and result counters."""

    def __init__(self, database):
        """Initialize with database instance"""
        self.db = database
        self.logger = logger

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise opens a transaction and manages its lifecycle.
        """
        if session:
            yield session
        else:
            async with self.db.transaction() as new_session:
                yield new_session

    async def create_wizard(
        self,
        owner_id: str,
        name: str,
        description: str = "",
        is_campaign_opponent: bool = False,
        session: Optional[AsyncSession] = None
    ) -> Wizard:
        if not owner_id:
            raise InvalidArgumentError("Wizard owner is required")
        cleaned_name = (name or "").strip()
        if not cleaned_name:
            raise InvalidArgumentError("Wizard name is required", "❌ Your wizard needs a name!")
        if len(cleaned_name) > MAX_NAME_LENGTH:
            raise InvalidArgumentError(f"Wizard name longer than {MAX_NAME_LENGTH} characters")

        async with self._get_session_context(session) as s:
            wizard = Wizard(
                owner_id=owner_id,
                name=cleaned_name,
                description=(description or "").strip(),
                is_campaign_opponent=is_campaign_opponent
            )
            s.add(wizard)
            await s.flush()
            self.logger.info(f"Created wizard {wizard.id} '{wizard.name}' for {owner_id}")
            return wizard

    async def get_wizard(self, wizard_id: int, session: Optional[AsyncSession] = None) -> Wizard:
        """Raises NotFoundError if the wizard does not exist"""
        async with self._get_session_context(session) as s:
            wizard = await s.get(Wizard, wizard_id)
            if not wizard:
                raise NotFoundError("Wizard", wizard_id)
            return wizard

    async def get_wizards(
        self, wizard_ids: Sequence[int], session: Optional[AsyncSession] = None
    ) -> Dict[int, Wizard]:
        """Bulk lookup; missing ids are simply absent from the result"""
        if not wizard_ids:
            return {}
        async with self._get_session_context(session) as s:
            result = await s.execute(select(Wizard).where(Wizard.id.in_(list(wizard_ids))))
            return {wizard.id: wizard for wizard in result.scalars().all()}

    async def get_owned_wizard(
        self, wizard_id: int, owner_id: str, session: Optional[AsyncSession] = None
    ) -> Wizard:
        """Lookup plus ownership check"""
        wizard = await self.get_wizard(wizard_id, session=session)
        if wizard.owner_id != owner_id:
            raise UnauthorizedError(f"User {owner_id} does not own wizard {wizard_id}")
        return wizard

    async def list_wizards_for_user(self, owner_id: str) -> List[Wizard]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Wizard)
                .where(Wizard.owner_id == owner_id)
                .order_by(Wizard.created_at, Wizard.id)
            )
            return list(result.scalars().all())

    async def update_wizard(
        self,
        wizard_id: int,
        owner_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None
    ) -> Wizard:
        async with self.db.transaction() as session:
            wizard = await self.get_owned_wizard(wizard_id, owner_id, session=session)
            if name is not None:
                cleaned = name.strip()
                if not cleaned:
                    raise InvalidArgumentError("Wizard name is required", "❌ Your wizard needs a name!")
                wizard.name = cleaned[:MAX_NAME_LENGTH]
            if description is not None:
                wizard.description = description.strip()
            return wizard

    async def delete_wizard(self, wizard_id: int, owner_id: str) -> None:
        """
        Delete a wizard record.

        Duels keep their loose reference; resolving a round that needs the
        deleted wizard raises DataIntegrityError.
        """
        async with self.db.transaction() as session:
            wizard = await self.get_owned_wizard(wizard_id, owner_id, session=session)
            await session.delete(wizard)
            self.logger.info(f"Deleted wizard {wizard_id} owned by {owner_id}")

    async def record_duel_result(
        self,
        winners: Sequence[int],
        losers: Sequence[int],
        campaign: bool,
        session: AsyncSession
    ) -> None:
        """Increment maintained win/loss counters inside the completing transaction"""
        if not losers:
            self.logger.info(f"Draw between wizards {list(winners)}; counters unchanged")
            return

        win_column = Wizard.campaign_wins if campaign else Wizard.wins
        loss_column = Wizard.campaign_losses if campaign else Wizard.losses

        if winners:
            await session.execute(
                update(Wizard)
                .where(Wizard.id.in_(list(winners)))
                .values({win_column: win_column + 1})
            )
        await session.execute(
            update(Wizard)
            .where(Wizard.id.in_(list(losers)))
            .values({loss_column: loss_column + 1})
        )

    async def get_player_duel_stats(self, user_id: str) -> Dict[str, int]:
        """
        Duel totals for a user.

        A completed duel with no losers is a draw. Otherwise it is a win if any
        of the user's wizards won.
        """
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Duel).where(
                    Duel.id.in_(
                        select(DuelParticipant.duel_id).where(DuelParticipant.user_id == user_id)
                    )
                )
            )
            duels = result.scalars().all()

        stats = {
            'total_duels': len(duels), 'wins': 0, 'losses': 0, 'draws': 0,
            'in_progress': 0, 'cancelled': 0
        }
        for duel in duels:
            if duel.status == DuelStatus.COMPLETED:
                if not duel.losers:
                    stats['draws'] += 1
                    continue
                mine = [p for p in duel.participants if p.user_id == user_id]
                if any(p.outcome == ParticipantOutcome.WON for p in mine):
                    stats['wins'] += 1
                else:
                    stats['losses'] += 1
            elif duel.status == DuelStatus.CANCELLED:
                stats['cancelled'] += 1
            else:
                stats['in_progress'] += 1
        return stats
