from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, LargeBinary, JSON,
    ForeignKey, Enum as SQLEnum, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict

from arena.constants import DuelConstants
from arena.utils.exceptions import InvalidStateError

Base = declarative_base()


def utc_now() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DuelStatus(Enum):
    WAITING_FOR_PLAYERS = "waiting_for_players"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not DUEL_TRANSITIONS[self]

    def can_transition_to(self, target: 'DuelStatus') -> bool:
        return target in DUEL_TRANSITIONS[self]

class RoundKind(Enum):
    SPELL_CASTING = "spell_casting"
    CONCLUSION = "conclusion"

class RoundStatus(Enum):
    WAITING_FOR_SPELLS = "waiting_for_spells"
    PROCESSING = "processing"
    COMPLETED = "completed"

    def can_transition_to(self, target: 'RoundStatus') -> bool:
        return target in ROUND_TRANSITIONS[self]

class ParticipantOutcome(Enum):
    WON = "won"
    LOST = "lost"

class LobbyStatus(Enum):
    WAITING = "waiting"
    MATCHED = "matched"

    def can_transition_to(self, target: 'LobbyStatus') -> bool:
        return target in LOBBY_TRANSITIONS[self]

class CampaignDifficulty(Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"

class CampaignBattleStatus(Enum):
    IN_PROGRESS = "in_progress"
    WON = "won"
    LOST = "lost"

    def can_transition_to(self, target: 'CampaignBattleStatus') -> bool:
        return target in CAMPAIGN_BATTLE_TRANSITIONS[self]

class CreditTransactionKind(Enum):
    DEBIT = "debit"
    PREMIUM = "premium"
    GRANT = "grant"


# Explicit transition tables. Terminal states map to an empty set.
DUEL_TRANSITIONS = {
    DuelStatus.WAITING_FOR_PLAYERS: {DuelStatus.IN_PROGRESS, DuelStatus.CANCELLED},
    DuelStatus.IN_PROGRESS: {DuelStatus.COMPLETED, DuelStatus.CANCELLED},
    DuelStatus.COMPLETED: set(),
    DuelStatus.CANCELLED: set(),
}

ROUND_TRANSITIONS = {
    RoundStatus.WAITING_FOR_SPELLS: {RoundStatus.PROCESSING},
    RoundStatus.PROCESSING: {RoundStatus.COMPLETED},
    RoundStatus.COMPLETED: set(),
}

LOBBY_TRANSITIONS = {
    LobbyStatus.WAITING: {LobbyStatus.MATCHED},
    LobbyStatus.MATCHED: set(),
}

CAMPAIGN_BATTLE_TRANSITIONS = {
    CampaignBattleStatus.IN_PROGRESS: {CampaignBattleStatus.WON, CampaignBattleStatus.LOST},
    CampaignBattleStatus.WON: set(),
    CampaignBattleStatus.LOST: set(),
}


def ensure_transition(current: Enum, target: Enum, entity: str = "Entity"):
    """Raise InvalidStateError unless the transition table allows current -> target"""
    if not current.can_transition_to(target):
        raise InvalidStateError(
            f"{entity} cannot move from {current.name} to {target.name}",
            f"❌ This {entity.lower()} can no longer be changed that way."
        )


class Wizard(Base):
    __tablename__ = 'wizards'

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")

    # Maintained counters, updated when a duel completes
    wins = Column(Integer, default=0, nullable=False)
    losses = Column(Integer, default=0, nullable=False)
    campaign_wins = Column(Integer, default=0, nullable=False)
    campaign_losses = Column(Integer, default=0, nullable=False)

    is_campaign_opponent = Column(Boolean, default=False, nullable=False)

    # Metadata
    created_at = Column(DateTime, default=utc_now)

    def __repr__(self):
        return f"<Wizard(id={self.id}, name='{self.name}', owner='{self.owner_id}')>"


class Duel(Base):
    """
    Aggregate root for a match between wizards.

    Participant wizards, scores, vitality and the pending-action set live on
    DuelParticipant rows; rounds live in duel_rounds keyed by duel_id.
    """
    __tablename__ = 'duels'

    id = Column(Integer, primary_key=True)
    shortcode = Column(String(6), unique=True, nullable=False, index=True)

    # NULL round budget means the duel is fought to incapacitation
    round_budget = Column(Integer, nullable=True)
    status = Column(SQLEnum(DuelStatus), nullable=False, default=DuelStatus.WAITING_FOR_PLAYERS, index=True)
    current_round_number = Column(Integer, nullable=False, default=DuelConstants.FIRST_ROUND)
    created_by = Column(String(100), nullable=False)

    is_campaign_battle = Column(Boolean, default=False, nullable=False)

    # Credit gate idempotency marker
    credit_charged = Column(Boolean, default=False, nullable=False)
    credit_charged_by = Column(String(100), nullable=True)
    credit_charged_at = Column(DateTime, nullable=True)

    # Illustration degradation
    text_only_mode = Column(Boolean, default=False, nullable=False)
    text_only_reason = Column(String(50), nullable=True)

    # "<entry_id>:<entry_id>" for duels materialised from a lobby pair
    lobby_pair_key = Column(String(50), unique=True, nullable=True)

    # Timing
    created_at = Column(DateTime, default=utc_now)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    participants = relationship(
        "DuelParticipant",
        back_populates="duel",
        cascade="all, delete-orphan",
        order_by="DuelParticipant.seat",
        lazy="selectin"
    )

    @property
    def is_active(self) -> bool:
        return self.status in (DuelStatus.WAITING_FOR_PLAYERS, DuelStatus.IN_PROGRESS)

    @property
    def fights_to_the_death(self) -> bool:
        return self.round_budget is None

    @property
    def wizard_ids(self) -> List[int]:
        return [p.wizard_id for p in self.participants]

    @property
    def user_ids(self) -> List[str]:
        """Distinct controlling users in seat order"""
        seen = []
        for participant in self.participants:
            if participant.user_id not in seen:
                seen.append(participant.user_id)
        return seen

    @property
    def scores(self) -> Dict[int, int]:
        return {p.wizard_id: p.score for p in self.participants}

    @property
    def vitality(self) -> Dict[int, int]:
        return {p.wizard_id: p.vitality for p in self.participants}

    @property
    def pending_action_wizard_ids(self) -> List[int]:
        return [p.wizard_id for p in self.participants if p.awaiting_action]

    @property
    def winners(self) -> Optional[List[int]]:
        if self.status != DuelStatus.COMPLETED:
            return None
        return [p.wizard_id for p in self.participants if p.outcome == ParticipantOutcome.WON]

    @property
    def losers(self) -> Optional[List[int]]:
        if self.status != DuelStatus.COMPLETED:
            return None
        return [p.wizard_id for p in self.participants if p.outcome == ParticipantOutcome.LOST]

    def get_participant(self, wizard_id: int) -> Optional['DuelParticipant']:
        for participant in self.participants:
            if participant.wizard_id == wizard_id:
                return participant
        return None

    def __repr__(self):
        return f"<Duel(id={self.id}, shortcode='{self.shortcode}', status={self.status.value}, round={self.current_round_number})>"


class DuelParticipant(Base):
    __tablename__ = 'duel_participants'

    id = Column(Integer, primary_key=True)
    duel_id = Column(Integer, ForeignKey('duels.id'), nullable=False, index=True)

    # Loose reference: wizards may be deleted while a duel still points at them
    wizard_id = Column(Integer, nullable=False, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    seat = Column(Integer, nullable=False)

    score = Column(Integer, nullable=False, default=0)
    vitality = Column(Integer, nullable=False, default=DuelConstants.STARTING_VITALITY)
    awaiting_action = Column(Boolean, nullable=False, default=True)
    outcome = Column(SQLEnum(ParticipantOutcome), nullable=True)

    duel = relationship("Duel", back_populates="participants")

    __table_args__ = (
        UniqueConstraint('duel_id', 'wizard_id', name='uq_duel_participant_wizard'),
        UniqueConstraint('duel_id', 'seat', name='uq_duel_participant_seat'),
    )

    @property
    def is_alive(self) -> bool:
        return self.vitality > DuelConstants.MIN_VITALITY

    def __repr__(self):
        return f"<DuelParticipant(duel_id={self.duel_id}, wizard_id={self.wizard_id}, score={self.score}, vitality={self.vitality})>"


class DuelRound(Base):
    __tablename__ = 'duel_rounds'

    id = Column(Integer, primary_key=True)
    duel_id = Column(Integer, ForeignKey('duels.id'), nullable=False, index=True)
    round_number = Column(Integer, nullable=False)
    kind = Column(SQLEnum(RoundKind), nullable=False, default=RoundKind.SPELL_CASTING)
    status = Column(SQLEnum(RoundStatus), nullable=False, default=RoundStatus.WAITING_FOR_SPELLS)

    # Outcome, populated once COMPLETED
    narrative = Column(Text, nullable=True)
    result_summary = Column(Text, nullable=True)
    illustration_prompt = Column(Text, nullable=True)
    illustration_id = Column(Integer, ForeignKey('illustrations.id'), nullable=True)
    used_fallback = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utc_now)
    completed_at = Column(DateTime, nullable=True)

    actions = relationship(
        "RoundAction",
        back_populates="round",
        cascade="all, delete-orphan",
        order_by="RoundAction.submitted_at",
        lazy="selectin"
    )
    wizard_outcomes = relationship(
        "RoundWizardOutcome",
        back_populates="round",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __table_args__ = (
        UniqueConstraint('duel_id', 'round_number', name='uq_duel_round_number'),
        Index('idx_duel_rounds_status_created', 'status', 'created_at'),
    )

    @property
    def points_awarded(self) -> Dict[int, int]:
        return {o.wizard_id: o.points_awarded for o in self.wizard_outcomes}

    @property
    def health_changes(self) -> Dict[int, int]:
        return {o.wizard_id: o.health_change for o in self.wizard_outcomes}

    @property
    def luck_rolls(self) -> Dict[int, Optional[int]]:
        return {o.wizard_id: o.luck_roll for o in self.wizard_outcomes}

    def get_action(self, wizard_id: int) -> Optional['RoundAction']:
        for action in self.actions:
            if action.wizard_id == wizard_id:
                return action
        return None

    def __repr__(self):
        return f"<DuelRound(duel_id={self.duel_id}, number={self.round_number}, kind={self.kind.value}, status={self.status.value})>"


class RoundAction(Base):
    __tablename__ = 'round_actions'

    id = Column(Integer, primary_key=True)
    round_id = Column(Integer, ForeignKey('duel_rounds.id'), nullable=False, index=True)
    wizard_id = Column(Integer, nullable=False)
    user_id = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    submitted_at = Column(DateTime, default=utc_now)

    round = relationship("DuelRound", back_populates="actions")

    # At most one action per wizard per round
    __table_args__ = (UniqueConstraint('round_id', 'wizard_id', name='uq_round_action_wizard'),)

    def __repr__(self):
        return f"<RoundAction(round_id={self.round_id}, wizard_id={self.wizard_id})>"


class RoundWizardOutcome(Base):
    __tablename__ = 'round_wizard_outcomes'

    id = Column(Integer, primary_key=True)
    round_id = Column(Integer, ForeignKey('duel_rounds.id'), nullable=False, index=True)
    wizard_id = Column(Integer, nullable=False)
    points_awarded = Column(Integer, nullable=False, default=0)
    # Effective delta after bounding vitality to [0, 100]
    health_change = Column(Integer, nullable=False, default=0)
    luck_roll = Column(Integer, nullable=True)

    round = relationship("DuelRound", back_populates="wizard_outcomes")

    __table_args__ = (UniqueConstraint('round_id', 'wizard_id', name='uq_round_outcome_wizard'),)

    def __repr__(self):
        return f"<RoundWizardOutcome(round_id={self.round_id}, wizard_id={self.wizard_id}, points={self.points_awarded}, health={self.health_change})>"


class Illustration(Base):
    __tablename__ = 'illustrations'

    id = Column(Integer, primary_key=True)
    round_id = Column(Integer, nullable=False, index=True)
    prompt = Column(Text, nullable=False)
    image_data = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, default=utc_now)

    def __repr__(self):
        return f"<Illustration(id={self.id}, round_id={self.round_id}, bytes={len(self.image_data or b'')})>"


class LobbyEntry(Base):
    __tablename__ = 'lobby_entries'

    id = Column(Integer, primary_key=True)
    # One entry per user at a time
    user_id = Column(String(100), nullable=False, unique=True)
    wizard_id = Column(Integer, nullable=False)
    round_budget = Column(Integer, nullable=True)
    status = Column(SQLEnum(LobbyStatus), nullable=False, default=LobbyStatus.WAITING)
    matched_with_entry_id = Column(Integer, nullable=True)

    joined_at = Column(DateTime, default=utc_now, nullable=False)
    matched_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_lobby_status_joined', 'status', 'joined_at'),
    )

    def __repr__(self):
        return f"<LobbyEntry(id={self.id}, user='{self.user_id}', status={self.status.value}, budget={self.round_budget})>"


class CampaignOpponent(Base):
    __tablename__ = 'campaign_opponents'

    id = Column(Integer, primary_key=True)
    opponent_number = Column(Integer, nullable=False, unique=True)
    wizard_id = Column(Integer, ForeignKey('wizards.id'), nullable=False)
    difficulty = Column(SQLEnum(CampaignDifficulty), nullable=False)
    luck_modifier = Column(Integer, nullable=False, default=0)
    spell_style = Column(String(200), nullable=False)
    personality_traits = Column(JSON, nullable=False, default=list)

    wizard = relationship("Wizard", lazy="joined")

    def __repr__(self):
        return f"<CampaignOpponent(number={self.opponent_number}, difficulty={self.difficulty.value}, luck={self.luck_modifier:+d})>"


class CampaignProgress(Base):
    __tablename__ = 'campaign_progress'

    id = Column(Integer, primary_key=True)
    wizard_id = Column(Integer, nullable=False, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    season_id = Column(String(50), nullable=False)

    current_opponent_index = Column(Integer, nullable=False, default=1)
    defeated_opponents = Column(JSON, nullable=False, default=list)
    has_completion_relic = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utc_now)
    last_battle_at = Column(DateTime, nullable=True)

    __table_args__ = (UniqueConstraint('wizard_id', 'season_id', name='uq_campaign_progress_wizard_season'),)

    def __repr__(self):
        return f"<CampaignProgress(wizard_id={self.wizard_id}, current={self.current_opponent_index}, relic={self.has_completion_relic})>"


class CampaignBattle(Base):
    __tablename__ = 'campaign_battles'

    id = Column(Integer, primary_key=True)
    wizard_id = Column(Integer, nullable=False, index=True)
    user_id = Column(String(100), nullable=False)
    season_id = Column(String(50), nullable=False)
    opponent_number = Column(Integer, nullable=False)
    duel_id = Column(Integer, ForeignKey('duels.id'), nullable=False, unique=True)
    status = Column(SQLEnum(CampaignBattleStatus), nullable=False, default=CampaignBattleStatus.IN_PROGRESS)

    created_at = Column(DateTime, default=utc_now)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<CampaignBattle(id={self.id}, wizard_id={self.wizard_id}, opponent={self.opponent_number}, status={self.status.value})>"


class CreditAccount(Base):
    __tablename__ = 'credit_accounts'

    id = Column(Integer, primary_key=True)
    user_id = Column(String(100), nullable=False, unique=True)
    credits = Column(Integer, nullable=False, default=0)
    is_premium = Column(Boolean, nullable=False, default=False)

    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<CreditAccount(user='{self.user_id}', credits={self.credits}, premium={self.is_premium})>"


class CreditTransaction(Base):
    """Audit trail for the credit ledger. Premium charges are recorded with amount 0."""
    __tablename__ = 'credit_transactions'

    id = Column(Integer, primary_key=True)
    user_id = Column(String(100), nullable=False, index=True)
    duel_id = Column(Integer, nullable=True, index=True)
    amount = Column(Integer, nullable=False)
    kind = Column(SQLEnum(CreditTransactionKind), nullable=False)
    created_at = Column(DateTime, default=utc_now)

    def __repr__(self):
        return f"<CreditTransaction(user='{self.user_id}', duel_id={self.duel_id}, amount={self.amount}, kind={self.kind.value})>"
