"""
Lobby Operations Module - Matchmaking Lobby

Pairs waiting users first-come-first-served by round budget and
materializes each pair into exactly one duel.

Lobby entry state machine (see LOBBY_TRANSITIONS in models):
- WAITING -> MATCHED   try_matchmaking(), both legs by compare-and-set
- MATCHED -> (deleted) create_matched_duel() consumes the pair

Idempotency of materialization rests on the duels.lobby_pair_key unique
constraint: a second create_matched_duel() for the same pair fails the
insert and surfaces as AlreadyProcessedError.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union
from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError

from arena.database.models import Duel, LobbyEntry, LobbyStatus, utc_now
from arena.operations.duel_operations import Seat
from arena.utils.duel_rules import parse_round_budget
from arena.utils.exceptions import (
    NotFoundError, InvalidStateError, AlreadyQueuedError, AlreadyProcessedError
)
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


def pair_key(entry_id1: int, entry_id2: int) -> str:
    """Order-independent key for a matched pair"""
    low, high = sorted((entry_id1, entry_id2))
    return f"{low}:{high}"


@dataclass
class LobbyJoinResult:
    entry: LobbyEntry
    matched_entry_id: Optional[int] = None
    duel_id: Optional[int] = None

    @property
    def matched(self) -> bool:
        return self.matched_entry_id is not None


@dataclass
class LobbyStats:
    total_waiting: int
    total_matched: int
    average_wait_seconds: float


class LobbyOperations:
    """Matchmaking Lobby."""

    def __init__(self, database, wizard_ops, duel_ops):
        self.db = database
        self.wizard_ops = wizard_ops
        self.duel_ops = duel_ops
        self.logger = logger

    async def join_lobby(
        self,
        user_id: str,
        wizard_id: int,
        round_budget: Union[int, str, None],
        match_immediately: bool = True
    ) -> LobbyJoinResult:
        """
        Queue a wizard for matchmaking.

        Raises:
            NotFoundError: Wizard does not exist
            UnauthorizedError: Wizard not owned by user_id
            AlreadyQueuedError: User already holds a lobby entry
            InvalidArgumentError: Bad round budget
        """
        budget = parse_round_budget(round_budget)

        try:
            async with self.db.transaction() as session:
                await self.wizard_ops.get_owned_wizard(wizard_id, user_id, session=session)

                existing = await session.scalar(
                    select(LobbyEntry).where(LobbyEntry.user_id == user_id)
                )
                if existing:
                    raise AlreadyQueuedError(user_id)

                entry = LobbyEntry(
                    user_id=user_id,
                    wizard_id=wizard_id,
                    round_budget=budget,
                    status=LobbyStatus.WAITING,
                    joined_at=utc_now()
                )
                session.add(entry)
                await session.flush()
        except IntegrityError:
            # Unique user_id caught a concurrent join
            raise AlreadyQueuedError(user_id)

        self.logger.info(f"User {user_id} joined the lobby with wizard {wizard_id} (entry {entry.id})")
        result = LobbyJoinResult(entry=entry)

        if match_immediately:
            partner_id = await self.try_matchmaking(entry.id)
            if partner_id is not None:
                result.matched_entry_id = partner_id
                # The older entry takes seat 1
                duel = await self.create_matched_duel(partner_id, entry.id)
                result.duel_id = duel.id
        return result

    async def leave_lobby(self, user_id: str) -> bool:
        """Withdraw a waiting entry. Matched entries stay until their duel exists."""
        async with self.db.transaction() as session:
            result = await session.execute(
                delete(LobbyEntry)
                .where(LobbyEntry.user_id == user_id, LobbyEntry.status == LobbyStatus.WAITING)
                .execution_options(synchronize_session=False)
            )
            removed = result.rowcount > 0
        if removed:
            self.logger.info(f"User {user_id} left the lobby")
        return removed

    async def get_lobby_status(self, user_id: str) -> Optional[LobbyEntry]:
        async with self.db.get_session() as session:
            return await session.scalar(select(LobbyEntry).where(LobbyEntry.user_id == user_id))

    async def try_matchmaking(self, entry_id: int) -> Optional[int]:
        """
        Pair a waiting entry with the oldest compatible waiting entry.

        Compatible means same round budget and a different user. Both legs
        are flipped WAITING -> MATCHED by compare-and-set; if either leg
        loses, the transaction rolls back and nothing is paired.

        Returns:
            The partner's entry id, or None
        """
        async with self.db.transaction() as session:
            entry = await session.get(LobbyEntry, entry_id)
            if not entry:
                raise NotFoundError("Lobby entry", entry_id)
            if entry.status != LobbyStatus.WAITING:
                return None

            if entry.round_budget is None:
                same_budget = LobbyEntry.round_budget.is_(None)
            else:
                same_budget = LobbyEntry.round_budget == entry.round_budget

            candidate = await session.scalar(
                select(LobbyEntry)
                .where(
                    LobbyEntry.id != entry.id,
                    LobbyEntry.user_id != entry.user_id,
                    LobbyEntry.status == LobbyStatus.WAITING,
                    same_budget
                )
                .order_by(LobbyEntry.joined_at, LobbyEntry.id)
                .limit(1)
            )
            if not candidate:
                return None

            matched_at = utc_now()
            for this_id, other_id in ((entry.id, candidate.id), (candidate.id, entry.id)):
                result = await session.execute(
                    update(LobbyEntry)
                    .where(LobbyEntry.id == this_id, LobbyEntry.status == LobbyStatus.WAITING)
                    .values(status=LobbyStatus.MATCHED, matched_with_entry_id=other_id, matched_at=matched_at)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await session.rollback()
                    self.logger.debug(f"Lobby entry {this_id} was claimed concurrently; pairing abandoned")
                    return None

            partner_id = candidate.id

        self.logger.info(f"Matched lobby entries {entry_id} and {partner_id}")
        return partner_id

    async def create_matched_duel(self, entry_id1: int, entry_id2: int) -> Duel:
        """
        Create the duel for a matched pair and consume both entries.

        Raises:
            AlreadyProcessedError: A duel already exists for this pair
            NotFoundError: An entry no longer exists
            InvalidStateError: The entries are not matched with each other
        """
        key = pair_key(entry_id1, entry_id2)
        try:
            async with self.db.transaction() as session:
                existing = await session.scalar(select(Duel.id).where(Duel.lobby_pair_key == key))
                if existing:
                    raise AlreadyProcessedError(f"Duel {existing} already created for lobby pair {key}")

                first = await session.get(LobbyEntry, entry_id1)
                second = await session.get(LobbyEntry, entry_id2)
                if not first:
                    raise NotFoundError("Lobby entry", entry_id1)
                if not second:
                    raise NotFoundError("Lobby entry", entry_id2)
                if (first.status != LobbyStatus.MATCHED or second.status != LobbyStatus.MATCHED
                        or first.matched_with_entry_id != second.id
                        or second.matched_with_entry_id != first.id):
                    raise InvalidStateError(f"Lobby entries {entry_id1} and {entry_id2} are not matched together")

                duel = await self.duel_ops.create_duel_with_seats(
                    first.round_budget,
                    [Seat(first.wizard_id, first.user_id), Seat(second.wizard_id, second.user_id)],
                    created_by=first.user_id,
                    session=session,
                    lobby_pair_key=key
                )
                await session.execute(
                    delete(LobbyEntry)
                    .where(LobbyEntry.id.in_([first.id, second.id]))
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError:
            raise AlreadyProcessedError(f"Duel already created for lobby pair {key}")

        self.logger.info(f"Created duel {duel.id} for lobby pair {key}")
        return duel

    async def list_matched_pairs(self) -> List[Tuple[int, int]]:
        """Matched pairs still waiting for their duel, oldest first, as (older, newer) ids"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(LobbyEntry)
                .where(LobbyEntry.status == LobbyStatus.MATCHED)
                .order_by(LobbyEntry.matched_at, LobbyEntry.id)
            )
            entries = result.scalars().all()

        by_id = {entry.id: entry for entry in entries}
        pairs = []
        seen = set()
        for entry in entries:
            partner = by_id.get(entry.matched_with_entry_id)
            if not partner or entry.id in seen:
                continue
            seen.update((entry.id, partner.id))
            older, newer = sorted((entry, partner), key=lambda e: (e.joined_at, e.id))
            pairs.append((older.id, newer.id))
        return pairs

    async def get_lobby_stats(self) -> LobbyStats:
        async with self.db.get_session() as session:
            counts = dict((await session.execute(
                select(LobbyEntry.status, func.count(LobbyEntry.id)).group_by(LobbyEntry.status)
            )).all())
            joined = (await session.execute(
                select(LobbyEntry.joined_at).where(LobbyEntry.status == LobbyStatus.WAITING)
            )).scalars().all()

        now = utc_now()
        waits = [(now - joined_at).total_seconds() for joined_at in joined]
        return LobbyStats(
            total_waiting=counts.get(LobbyStatus.WAITING, 0),
            total_matched=counts.get(LobbyStatus.MATCHED, 0),
            average_wait_seconds=sum(waits) / len(waits) if waits else 0.0
        )
