"""
Campaign Operations Module - Campaign Battle Adapter

Single-player progression through a fixed ladder of ten scripted opponents.

Progress rules:
- opponents must be defeated in order; current_opponent_index names the next one
- a recorded victory is permanent and cannot be recorded twice
- defeating opponent 10 sets the index to 11 and grants the completion relic
- a LOST battle may be retried; any other existing battle blocks a new one

Battle state machine (see CAMPAIGN_BATTLE_TRANSITIONS in models):
- IN_PROGRESS -> WON | LOST   complete_campaign_battle()
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence
from contextlib import asynccontextmanager
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from arena.config import Config
from arena.constants import CampaignConstants
from arena.database.models import (
    CampaignOpponent, CampaignProgress, CampaignBattle, CampaignBattleStatus,
    CampaignDifficulty, Duel, DuelStatus, ensure_transition, utc_now
)
from arena.operations.duel_operations import Seat
from arena.utils import campaign_roster
from arena.utils.exceptions import (
    NotFoundError, InvalidArgumentError, AlreadyDefeatedError, OutOfOrderError,
    DuplicateBattleError, AlreadyProcessedError, DuplicateActionError
)
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class CampaignCompletion:
    """Result of recording a battle outcome"""
    relic_awarded: bool = False
    campaign_completed: bool = False


@dataclass
class CampaignBattleResult:
    battle: CampaignBattle
    duel: Duel
    opponent: CampaignOpponent


class CampaignOperations:
    """Campaign Battle Adapter."""

    def __init__(self, database, wizard_ops, duel_ops, round_ops, season_id: Optional[str] = None):
        self.db = database
        self.wizard_ops = wizard_ops
        self.duel_ops = duel_ops
        self.round_ops = round_ops
        self.season_id = season_id or Config.CAMPAIGN_SEASON_ID
        self.logger = logger

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        if session:
            yield session
        else:
            async with self.db.transaction() as new_session:
                yield new_session

    # ============================================================================
    # Roster
    # ============================================================================

    async def seed_opponents(self) -> List[CampaignOpponent]:
        """Create any roster opponents that do not exist yet. Safe to call repeatedly."""
        async with self.db.transaction() as session:
            existing = set((await session.execute(select(CampaignOpponent.opponent_number))).scalars().all())
            created = []
            for profile in campaign_roster.CAMPAIGN_ROSTER:
                if profile.opponent_number in existing:
                    continue
                created.append(await self.register_opponent(
                    profile.opponent_number,
                    profile.name,
                    profile.description,
                    profile.spell_style,
                    profile.difficulty,
                    profile.personality_traits,
                    session=session
                ))
        if created:
            self.logger.info(f"Seeded {len(created)} campaign opponents")
        return created

    async def register_opponent(
        self,
        opponent_number: int,
        name: str,
        description: str,
        spell_style: str,
        difficulty: CampaignDifficulty,
        personality_traits: Optional[Sequence[str]] = None,
        session: Optional[AsyncSession] = None
    ) -> CampaignOpponent:
        """Create the opponent's wizard and roster row"""
        if not campaign_roster.is_valid_opponent_number(opponent_number):
            raise InvalidArgumentError(
                f"Opponent number must be between 1 and {CampaignConstants.ROSTER_SIZE}, got {opponent_number}"
            )

        async with self._get_session_context(session) as s:
            taken = await s.scalar(
                select(CampaignOpponent.id).where(CampaignOpponent.opponent_number == opponent_number)
            )
            if taken:
                raise InvalidArgumentError(f"Campaign opponent {opponent_number} already exists")

            wizard = await self.wizard_ops.create_wizard(
                CampaignConstants.SYSTEM_USER_ID,
                name,
                description,
                is_campaign_opponent=True,
                session=s
            )
            opponent = CampaignOpponent(
                opponent_number=opponent_number,
                wizard_id=wizard.id,
                difficulty=difficulty,
                luck_modifier=campaign_roster.DIFFICULTY_LUCK_MODIFIERS[difficulty],
                spell_style=spell_style,
                personality_traits=list(personality_traits or [])
            )
            opponent.wizard = wizard
            s.add(opponent)
            await s.flush()
            return opponent

    async def get_opponent(self, opponent_number: int, session: Optional[AsyncSession] = None) -> CampaignOpponent:
        async with self._get_session_context(session) as s:
            opponent = await s.scalar(
                select(CampaignOpponent).where(CampaignOpponent.opponent_number == opponent_number)
            )
            if not opponent:
                raise NotFoundError("Campaign opponent", opponent_number)
            return opponent

    async def list_opponents(self) -> List[CampaignOpponent]:
        async with self.db.get_session() as session:
            result = await session.execute(select(CampaignOpponent).order_by(CampaignOpponent.opponent_number))
            return list(result.scalars().unique().all())

    # ============================================================================
    # Progress
    # ============================================================================

    async def _find_progress(self, session: AsyncSession, wizard_id: int) -> Optional[CampaignProgress]:
        return await session.scalar(
            select(CampaignProgress).where(
                CampaignProgress.wizard_id == wizard_id,
                CampaignProgress.season_id == self.season_id
            )
        )

    async def initialize_progress(
        self, wizard_id: int, user_id: str, session: Optional[AsyncSession] = None
    ) -> CampaignProgress:
        """Start (or return) the wizard's progress for the current season"""
        async with self._get_session_context(session) as s:
            await self.wizard_ops.get_owned_wizard(wizard_id, user_id, session=s)
            progress = await self._find_progress(s, wizard_id)
            if progress:
                return progress
            progress = CampaignProgress(
                wizard_id=wizard_id,
                user_id=user_id,
                season_id=self.season_id,
                current_opponent_index=1,
                defeated_opponents=[],
                has_completion_relic=False
            )
            s.add(progress)
            await s.flush()
            self.logger.info(f"Campaign progress started for wizard {wizard_id} ({self.season_id})")
            return progress

    async def get_progress(self, wizard_id: int) -> CampaignProgress:
        async with self.db.get_session() as session:
            progress = await self._find_progress(session, wizard_id)
            if not progress:
                raise NotFoundError("Campaign progress", wizard_id)
            return progress

    def _check_next_opponent(self, progress: Optional[CampaignProgress], wizard_id: int, opponent_number: int):
        """Validation order: progress, range, already defeated, sequence"""
        if not progress:
            raise NotFoundError("Campaign progress", wizard_id)
        if not campaign_roster.is_valid_opponent_number(opponent_number):
            raise InvalidArgumentError(
                f"Opponent number must be between 1 and {CampaignConstants.ROSTER_SIZE}, got {opponent_number}"
            )
        if opponent_number in (progress.defeated_opponents or []):
            raise AlreadyDefeatedError(opponent_number)
        if opponent_number != progress.current_opponent_index:
            raise OutOfOrderError(opponent_number, progress.current_opponent_index)

    async def defeat_opponent(
        self, wizard_id: int, opponent_number: int, session: Optional[AsyncSession] = None
    ) -> CampaignCompletion:
        """
        Record a victory over opponent_number and advance the ladder.

        Raises:
            NotFoundError: No progress for this wizard
            InvalidArgumentError: Opponent number outside 1..10
            AlreadyDefeatedError: Victory already recorded
            OutOfOrderError: Not the wizard's current opponent
        """
        async with self._get_session_context(session) as s:
            progress = await self._find_progress(s, wizard_id)
            self._check_next_opponent(progress, wizard_id, opponent_number)

            completed = opponent_number == CampaignConstants.ROSTER_SIZE
            relic_awarded = completed and not progress.has_completion_relic
            result = await s.execute(
                update(CampaignProgress)
                .where(
                    CampaignProgress.id == progress.id,
                    CampaignProgress.current_opponent_index == opponent_number
                )
                .values(
                    current_opponent_index=opponent_number + 1,
                    defeated_opponents=list(progress.defeated_opponents or []) + [opponent_number],
                    has_completion_relic=progress.has_completion_relic or completed,
                    last_battle_at=utc_now()
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Another request advanced the ladder first
                raise AlreadyDefeatedError(opponent_number)
            await s.refresh(progress)

        self.logger.info(
            f"Wizard {wizard_id} defeated campaign opponent {opponent_number}"
            + (" and earned the completion relic" if relic_awarded else "")
        )
        return CampaignCompletion(relic_awarded=relic_awarded, campaign_completed=completed)

    # ============================================================================
    # Battles
    # ============================================================================

    async def create_campaign_battle(self, wizard_id: int, opponent_number: int, user_id: str) -> CampaignBattleResult:
        """
        Create a five-round duel against the wizard's current opponent.

        Raises:
            DuplicateBattleError: A battle for this pair exists and was not lost
            AlreadyDefeatedError / OutOfOrderError / InvalidArgumentError: Progress checks
            NotFoundError: Opponent not seeded
        """
        async with self.db.transaction() as session:
            progress = await self.initialize_progress(wizard_id, user_id, session=session)
            self._check_next_opponent(progress, wizard_id, opponent_number)

            blocking = await session.scalar(
                select(CampaignBattle.id).where(
                    CampaignBattle.wizard_id == wizard_id,
                    CampaignBattle.season_id == self.season_id,
                    CampaignBattle.opponent_number == opponent_number,
                    CampaignBattle.status != CampaignBattleStatus.LOST
                )
            )
            if blocking:
                raise DuplicateBattleError(wizard_id, opponent_number)

            opponent = await self.get_opponent(opponent_number, session=session)
            duel = await self.duel_ops.create_duel_with_seats(
                CampaignConstants.BATTLE_ROUND_BUDGET,
                [Seat(wizard_id, user_id), Seat(opponent.wizard_id, CampaignConstants.SYSTEM_USER_ID)],
                created_by=user_id,
                session=session,
                is_campaign_battle=True
            )
            battle = CampaignBattle(
                wizard_id=wizard_id,
                user_id=user_id,
                season_id=self.season_id,
                opponent_number=opponent_number,
                duel_id=duel.id,
                status=CampaignBattleStatus.IN_PROGRESS
            )
            session.add(battle)
            progress.last_battle_at = utc_now()
            await session.flush()

        self.logger.info(
            f"Campaign battle {battle.id}: wizard {wizard_id} vs opponent {opponent_number} in duel {duel.id}"
        )
        return CampaignBattleResult(battle=battle, duel=duel, opponent=opponent)

    async def start_campaign_battle(self, wizard_id: int, opponent_number: int, user_id: str) -> CampaignBattleResult:
        """Create the battle, narrate the introduction and open round 1"""
        result = await self.create_campaign_battle(wizard_id, opponent_number, user_id)
        result.duel = await self.round_ops.begin_duel(result.duel.id)
        return result

    async def complete_campaign_battle(self, battle_id: int, won: bool) -> CampaignCompletion:
        """
        Record a battle outcome once.

        Raises:
            NotFoundError: Battle missing
            AlreadyProcessedError: Battle already won or lost
        """
        target = CampaignBattleStatus.WON if won else CampaignBattleStatus.LOST
        async with self.db.transaction() as session:
            battle = await session.get(CampaignBattle, battle_id)
            if not battle:
                raise NotFoundError("Campaign battle", battle_id)
            if battle.status != CampaignBattleStatus.IN_PROGRESS:
                raise AlreadyProcessedError(f"Campaign battle {battle_id} already {battle.status.value}")
            ensure_transition(battle.status, target, "Campaign battle")

            result = await session.execute(
                update(CampaignBattle)
                .where(CampaignBattle.id == battle_id, CampaignBattle.status == CampaignBattleStatus.IN_PROGRESS)
                .values(status=target, completed_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise AlreadyProcessedError(f"Campaign battle {battle_id} was completed concurrently")

            completion = CampaignCompletion()
            if won:
                completion = await self.defeat_opponent(battle.wizard_id, battle.opponent_number, session=session)

        self.logger.info(f"Campaign battle {battle_id} {target.value}")
        return completion

    async def settle_battle_for_duel(self, duel_id: int) -> Optional[CampaignCompletion]:
        """
        Complete the battle behind a finished duel.

        The player wins only if their wizard is among the winners and the
        scripted opponent is not. Returns None for duels without an open battle.
        """
        async with self.db.get_session() as session:
            battle = await session.scalar(select(CampaignBattle).where(CampaignBattle.duel_id == duel_id))
            if not battle or battle.status != CampaignBattleStatus.IN_PROGRESS:
                return None
            duel = await self.duel_ops.load_duel(session, duel_id)
            if duel.status != DuelStatus.COMPLETED:
                return None
            winners = duel.winners
            opponent_ids = [p.wizard_id for p in duel.participants if p.user_id == CampaignConstants.SYSTEM_USER_ID]
            battle_id = battle.id
            won = battle.wizard_id in winners and not any(w in winners for w in opponent_ids)

        return await self.complete_campaign_battle(battle_id, won)

    async def list_battles_for_wizard(self, wizard_id: int) -> List[CampaignBattle]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(CampaignBattle)
                .where(CampaignBattle.wizard_id == wizard_id)
                .order_by(CampaignBattle.created_at, CampaignBattle.id)
            )
            return list(result.scalars().all())

    # ============================================================================
    # Luck and scripted opponents
    # ============================================================================

    async def effective_luck(self, wizard_id: int) -> int:
        """Base luck plus the relic bonus for wizards that finished the campaign"""
        async with self.db.get_session() as session:
            progress = await self._find_progress(session, wizard_id)
        return campaign_roster.effective_luck(bool(progress and progress.has_completion_relic))

    async def campaign_luck(self, opponent_number: int, base_luck: int = CampaignConstants.BASE_LUCK) -> int:
        """Base luck shifted by the opponent's difficulty modifier, within [1, 20]"""
        opponent = await self.get_opponent(opponent_number)
        return campaign_roster.campaign_luck(base_luck, opponent.luck_modifier)

    async def submit_opponent_actions(self, duel_id: int) -> List[int]:
        """
        Cast a scripted spell for every campaign opponent still owing an action.

        Returns the wizard ids that acted.
        """
        async with self.db.get_session() as session:
            duel = await self.duel_ops.load_duel(session, duel_id)
            if duel.status != DuelStatus.IN_PROGRESS:
                return []
            pending = [
                p.wizard_id for p in duel.participants
                if p.awaiting_action and p.user_id == CampaignConstants.SYSTEM_USER_ID
            ]
            if not pending:
                return []
            result = await session.execute(
                select(CampaignOpponent).where(CampaignOpponent.wizard_id.in_(pending))
            )
            opponents = {o.wizard_id: o for o in result.scalars().unique().all()}
            round_number = duel.current_round_number

        acted = []
        for wizard_id in pending:
            opponent = opponents.get(wizard_id)
            if not opponent:
                self.logger.warning(f"Duel {duel_id} seats wizard {wizard_id} for the campaign but it has no roster entry")
                continue
            spell = campaign_roster.scripted_spell(opponent.wizard.name, opponent.spell_style, round_number)
            try:
                await self.round_ops.submit_action(duel_id, wizard_id, spell, CampaignConstants.SYSTEM_USER_ID)
            except DuplicateActionError:
                self.logger.debug(f"Opponent {opponent.opponent_number} already acted in duel {duel_id}")
                continue
            acted.append(wizard_id)
        return acted
