"""
Duel Operations Module - Duel Lifecycle Manager

Owns duel creation, joining, cancellation and the
WAITING_FOR_PLAYERS -> IN_PROGRESS -> COMPLETED/CANCELLED transitions.

State machine (see DUEL_TRANSITIONS in models):
- WAITING_FOR_PLAYERS -> IN_PROGRESS   start_duel_after_introduction()
- IN_PROGRESS -> COMPLETED             round processor termination check
- WAITING_FOR_PLAYERS/IN_PROGRESS -> CANCELLED   cancel_duel()

Every status change is a conditional UPDATE on the expected status; the
rowcount decides whether this call won, and a re-query picks the error.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Union
from contextlib import asynccontextmanager
from sqlalchemy import select, update, exists, func
from sqlalchemy.ext.asyncio import AsyncSession

from arena.constants import DuelConstants, ShortcodeConstants
from arena.database.models import (
    Duel, DuelParticipant, DuelRound, DuelStatus, RoundKind, RoundStatus,
    ensure_transition, utc_now
)
from arena.utils.duel_rules import parse_round_budget
from arena.utils.exceptions import (
    NotFoundError, InvalidStateError, InvalidArgumentError, DuplicatePlayerError,
    UnauthorizedError, DataIntegrityError
)
from arena.utils.logger import setup_logger
from arena.utils.shortcode import generate_shortcode, normalize_shortcode

logger = setup_logger(__name__)


@dataclass(frozen=True)
class Seat:
    """A wizard and the user controlling it"""
    wizard_id: int
    user_id: str


class DuelOperations:
    """
    Duel Lifecycle Manager.

    All public methods accept an optional session so callers (lobby,
    campaign adapter) can fold them into their own transaction.
    """

    def __init__(self, database, wizard_ops):
        """Initialize with database instance and the wizard directory"""
        self.db = database
        self.wizard_ops = wizard_ops
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

    # ============================================================================
    # Creation
    # ============================================================================

    async def create_duel(
        self,
        round_budget: Union[int, str, None],
        wizard_ids: Sequence[int],
        user_id: str,
        session: Optional[AsyncSession] = None
    ) -> Duel:
        """
        Create a duel in WAITING_FOR_PLAYERS with the caller's wizards seated.

        Raises:
            InvalidArgumentError: No wizards, duplicate wizards, or a bad budget
            NotFoundError: A wizard does not exist
            UnauthorizedError: A wizard is not owned by user_id
        """
        if not wizard_ids:
            raise InvalidArgumentError(
                "A duel needs at least one wizard",
                "❌ Choose a wizard to start a duel!"
            )
        if len(set(wizard_ids)) != len(wizard_ids):
            raise InvalidArgumentError("The same wizard cannot be seated twice")
        budget = parse_round_budget(round_budget)

        async with self._get_session_context(session) as s:
            for wizard_id in wizard_ids:
                await self.wizard_ops.get_owned_wizard(wizard_id, user_id, session=s)
            return await self.create_duel_with_seats(
                budget,
                [Seat(wizard_id, user_id) for wizard_id in wizard_ids],
                created_by=user_id,
                session=s
            )

    async def create_duel_with_seats(
        self,
        round_budget: Optional[int],
        seats: Sequence[Seat],
        created_by: str,
        session: AsyncSession,
        is_campaign_battle: bool = False,
        lobby_pair_key: Optional[str] = None
    ) -> Duel:
        """
        Insert a duel with pre-validated seats (lobby and campaign entry point).

        Every wizard starts with 0 points, full vitality and a pending action.
        """
        if not seats:
            raise InvalidArgumentError("A duel needs at least one wizard")

        shortcode = await self._allocate_shortcode(session)
        duel = Duel(
            shortcode=shortcode,
            round_budget=round_budget,
            status=DuelStatus.WAITING_FOR_PLAYERS,
            current_round_number=DuelConstants.FIRST_ROUND,
            created_by=created_by,
            is_campaign_battle=is_campaign_battle,
            lobby_pair_key=lobby_pair_key
        )
        duel.participants = [
            DuelParticipant(
                wizard_id=seat.wizard_id,
                user_id=seat.user_id,
                seat=index,
                score=0,
                vitality=DuelConstants.STARTING_VITALITY,
                awaiting_action=True
            )
            for index, seat in enumerate(seats, start=1)
        ]
        session.add(duel)
        await session.flush()

        self.logger.info(
            f"Created duel {duel.id} ({duel.shortcode}) with wizards {[s.wizard_id for s in seats]}, "
            f"budget={round_budget if round_budget is not None else DuelConstants.TO_THE_DEATH}"
        )
        return duel

    async def _allocate_shortcode(self, session: AsyncSession) -> str:
        """Draw shortcodes until one is unused"""
        for attempt in range(ShortcodeConstants.MAX_ATTEMPTS):
            candidate = generate_shortcode()
            taken = await session.scalar(select(exists().where(Duel.shortcode == candidate)))
            if not taken:
                return candidate
            self.logger.debug(f"Shortcode collision on attempt {attempt + 1}: {candidate}")
        raise DataIntegrityError(
            f"Could not allocate a unique shortcode after {ShortcodeConstants.MAX_ATTEMPTS} attempts"
        )

    # ============================================================================
    # Joining and cancellation
    # ============================================================================

    async def join_duel(
        self,
        duel_id: int,
        wizard_ids: Sequence[int],
        user_id: str,
        session: Optional[AsyncSession] = None
    ) -> Duel:
        """
        Seat additional wizards for a new player.

        Does not start the duel; the scheduler begins duels once exactly two
        distinct players are present.
        """
        if not wizard_ids:
            raise InvalidArgumentError("Choose at least one wizard to join with")
        if len(set(wizard_ids)) != len(wizard_ids):
            raise InvalidArgumentError("The same wizard cannot be seated twice")

        async with self._get_session_context(session) as s:
            duel = await self.load_duel(s, duel_id, for_update=True)

            if duel.status != DuelStatus.WAITING_FOR_PLAYERS:
                raise InvalidStateError(
                    "Duel is not accepting new players",
                    "❌ This duel has already started!"
                )
            if user_id in duel.user_ids:
                raise DuplicatePlayerError()

            seated = set(duel.wizard_ids)
            for wizard_id in wizard_ids:
                if wizard_id in seated:
                    raise InvalidArgumentError(f"Wizard {wizard_id} is already in this duel")
                await self.wizard_ops.get_owned_wizard(wizard_id, user_id, session=s)

            next_seat = max((p.seat for p in duel.participants), default=0) + 1
            for offset, wizard_id in enumerate(wizard_ids):
                duel.participants.append(DuelParticipant(
                    wizard_id=wizard_id,
                    user_id=user_id,
                    seat=next_seat + offset,
                    score=0,
                    vitality=DuelConstants.STARTING_VITALITY,
                    awaiting_action=True
                ))
            await s.flush()

            self.logger.info(f"User {user_id} joined duel {duel_id} with wizards {list(wizard_ids)}")
            return duel

    async def cancel_duel(
        self,
        duel_id: int,
        user_id: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> Duel:
        """
        Cancel a duel that has not finished. Terminal; resolved rounds stay as they are.

        When user_id is given, only a participant may cancel.
        """
        async with self._get_session_context(session) as s:
            duel = await self.load_duel(s, duel_id)
            if user_id is not None and user_id not in duel.user_ids:
                raise UnauthorizedError(f"User {user_id} is not part of duel {duel_id}")

            # Atomic UPDATE with status check in WHERE clause
            result = await s.execute(
                update(Duel)
                .where(
                    Duel.id == duel_id,
                    Duel.status.in_([status for status in DuelStatus if not status.is_terminal])
                )
                .values(status=DuelStatus.CANCELLED, completed_at=utc_now())
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                # Re-query to pick the specific error
                duel = await self.load_duel(s, duel_id, refresh=True)
                if duel.status == DuelStatus.CANCELLED:
                    raise InvalidStateError("Duel is already cancelled")
                raise InvalidStateError(
                    "Cannot cancel a completed duel",
                    "❌ This duel is already over!"
                )

            duel = await self.load_duel(s, duel_id, refresh=True)
            self.logger.info(f"Duel {duel_id} cancelled" + (f" by {user_id}" if user_id else ""))
            return duel

    # ============================================================================
    # Start
    # ============================================================================

    async def start_duel_after_introduction(
        self, duel_id: int, session: Optional[AsyncSession] = None
    ) -> Duel:
        """
        Move a waiting duel to IN_PROGRESS and open round 1.

        Every participant wizard is put back on the pending-action list.
        """
        async with self._get_session_context(session) as s:
            duel = await self.load_duel(s, duel_id)
            ensure_transition(duel.status, DuelStatus.IN_PROGRESS, "Duel")
            if len(set(duel.wizard_ids)) < DuelConstants.MIN_DISTINCT_WIZARDS:
                raise InvalidStateError(
                    f"Duel {duel_id} needs at least two wizards to start",
                    "❌ Waiting for an opponent to join."
                )

            result = await s.execute(
                update(Duel)
                .where(Duel.id == duel_id, Duel.status == DuelStatus.WAITING_FOR_PLAYERS)
                .values(
                    status=DuelStatus.IN_PROGRESS,
                    current_round_number=DuelConstants.FIRST_ROUND,
                    started_at=utc_now()
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise InvalidStateError(f"Duel {duel_id} was started by another request")

            await s.execute(
                update(DuelParticipant)
                .where(DuelParticipant.duel_id == duel_id)
                .values(awaiting_action=True)
                .execution_options(synchronize_session=False)
            )

            first_round = await s.scalar(
                select(DuelRound).where(
                    DuelRound.duel_id == duel_id,
                    DuelRound.round_number == DuelConstants.FIRST_ROUND
                )
            )
            if not first_round:
                s.add(DuelRound(
                    duel_id=duel_id,
                    round_number=DuelConstants.FIRST_ROUND,
                    kind=RoundKind.SPELL_CASTING,
                    status=RoundStatus.WAITING_FOR_SPELLS
                ))
                await s.flush()

            self.logger.info(f"Duel {duel_id} started; round {DuelConstants.FIRST_ROUND} open for spells")
            return await self.load_duel(s, duel_id, refresh=True)

    # ============================================================================
    # Queries
    # ============================================================================

    async def load_duel(
        self,
        session: AsyncSession,
        duel_id: int,
        for_update: bool = False,
        refresh: bool = False
    ) -> Duel:
        query = select(Duel).where(Duel.id == duel_id)
        if for_update:
            # Note: SQLite ignores FOR UPDATE; BEGIN IMMEDIATE already holds the write lock
            query = query.with_for_update()
        if refresh:
            query = query.execution_options(populate_existing=True)
        duel = await session.scalar(query)
        if not duel:
            raise NotFoundError("Duel", duel_id)
        return duel

    async def get_duel(self, duel_id: int, session: Optional[AsyncSession] = None) -> Duel:
        async with self._get_session_context(session) as s:
            return await self.load_duel(s, duel_id)

    async def get_duel_by_shortcode(self, shortcode: str) -> Duel:
        """Case-insensitive lookup of a shareable code"""
        code = normalize_shortcode(shortcode)
        if not code:
            raise NotFoundError("Duel", shortcode)
        async with self.db.get_session() as session:
            duel = await session.scalar(select(Duel).where(Duel.shortcode == code))
            if not duel:
                raise NotFoundError("Duel", code)
            return duel

    async def list_player_duels(self, user_id: str) -> List[Duel]:
        """All duels a user is seated in, newest first"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Duel)
                .where(
                    Duel.id.in_(
                        select(DuelParticipant.duel_id).where(DuelParticipant.user_id == user_id)
                    )
                )
                .order_by(Duel.created_at.desc(), Duel.id.desc())
            )
            return list(result.scalars().all())

    async def list_active_duels(self, limit: int = 50) -> List[Duel]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Duel)
                .where(Duel.status.in_([DuelStatus.WAITING_FOR_PLAYERS, DuelStatus.IN_PROGRESS]))
                .order_by(Duel.created_at.desc(), Duel.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_ready_duels(self) -> List[int]:
        """Waiting duels with exactly two distinct players, oldest first"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Duel.id)
                .join(DuelParticipant, DuelParticipant.duel_id == Duel.id)
                .where(Duel.status == DuelStatus.WAITING_FOR_PLAYERS)
                .group_by(Duel.id)
                .having(func.count(func.distinct(DuelParticipant.user_id)) == DuelConstants.PLAYERS_TO_START)
                .order_by(Duel.id)
            )
            return [row[0] for row in result.all()]

