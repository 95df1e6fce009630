"""
Round Operations Module - Round Processor

Drives a round from "awaiting actions" to "resolved" and decides whether the
duel ends.

Round state machine (see ROUND_TRANSITIONS in models):
- WAITING_FOR_SPELLS -> PROCESSING   last submit_action(), or a forced resolve
- PROCESSING -> COMPLETED            resolve_round() applies the outcome

resolve_round() runs in three phases so a slow or failing generator never
holds the duel's write lock:
1. Snapshot (transaction): wizards, actions, prior rounds, luck rolls
2. Generate (no transaction): outcome generator, deterministic fallback on failure
3. Apply (transaction): CAS PROCESSING -> COMPLETED, sanitized scores and
   vitality, termination check, next round or completion

After a completing apply, the conclusion round is narrated and written,
campaign battles are settled, and illustrations are attempted. None of
these can undo the resolved round.
"""

import random
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.constants import CampaignConstants, CreditConstants, DuelConstants, OutcomeConstants
from arena.database.models import (
    Duel, DuelRound, RoundAction, RoundWizardOutcome, Illustration,
    CampaignOpponent, CampaignProgress,
    DuelStatus, RoundKind, RoundStatus, ParticipantOutcome, utc_now
)
from arena.services.illustrator import IllustrationError
from arena.services.outcome_generator import FallbackOutcomeGenerator, GenerationResult
from arena.utils.campaign_roster import clamp_luck
from arena.utils.duel_rules import DuelEnd, Standing, evaluate_duel_end
from arena.utils.exceptions import (
    NotFoundError, InvalidStateError, InvalidArgumentError, UnauthorizedError,
    DuplicateActionError, DataIntegrityError, InsufficientResourceError
)
from arena.utils.fallback import fallback_conclusion, fallback_introduction, fallback_round_outcome
from arena.utils.logger import setup_logger
from arena.utils.outcome_sanitizer import GeneratedOutcome, sanitize_outcome, validate_outcome_structure
from arena.utils.prompt_context import ConclusionContext, RoundContext, RoundSummary, WizardSnapshot

logger = setup_logger(__name__)

MAX_ACTION_LENGTH = 1000


@dataclass
class RoundResolution:
    """Result of resolving one spell-casting round"""
    duel_id: int
    round_id: int
    round_number: int
    used_fallback: bool
    duel_completed: bool
    winners: List[int] = field(default_factory=list)
    losers: List[int] = field(default_factory=list)
    next_round_number: Optional[int] = None
    conclusion_round_id: Optional[int] = None
    round: Optional[DuelRound] = None


@dataclass
class ActionSubmission:
    """Result of submit_action"""
    action: RoundAction
    round_ready: bool
    resolution: Optional[RoundResolution] = None


class RoundOperations:
    """
    Round Processor.

    The outcome generator defaults to the deterministic fallback, so an
    engine without AI credentials still completes every round.
    """

    def __init__(
        self,
        database,
        wizard_ops,
        duel_ops,
        generator=None,
        illustrator=None,
        credit_ops=None,
        rng: Optional[random.Random] = None
    ):
        self.db = database
        self.wizard_ops = wizard_ops
        self.duel_ops = duel_ops
        self.generator = generator or FallbackOutcomeGenerator()
        self.illustrator = illustrator
        self.credit_ops = credit_ops
        self.rng = rng or random.Random()
        self.campaign_ops = None
        self.logger = logger

    def attach_campaign(self, campaign_ops):
        """Register the campaign adapter for battle settlement and scripted actions"""
        self.campaign_ops = campaign_ops

    # ============================================================================
    # Action submission
    # ============================================================================

    async def submit_action(
        self,
        duel_id: int,
        wizard_id: int,
        description: str,
        user_id: str,
        auto_resolve: bool = True
    ) -> ActionSubmission:
        """
        Record a wizard's action for the active round.

        The submission that empties the pending-action set flips the round to
        PROCESSING and, with auto_resolve, resolves it after committing.

        Raises:
            InvalidStateError: Duel not in progress, or round not accepting spells
            UnauthorizedError: Wizard not in this duel or not controlled by user_id
            DuplicateActionError: Wizard already acted this round
            InvalidArgumentError: Blank or oversized description
        """
        text = " ".join((description or "").split())
        if not text:
            raise InvalidArgumentError("Spell description is required", "❌ Describe your spell!")
        if len(text) > MAX_ACTION_LENGTH:
            raise InvalidArgumentError(f"Spell description longer than {MAX_ACTION_LENGTH} characters")

        try:
            async with self.db.transaction() as session:
                duel = await self.duel_ops.load_duel(session, duel_id, for_update=True)
                if duel.status != DuelStatus.IN_PROGRESS:
                    raise InvalidStateError("Duel is not in progress", "❌ This duel is not in progress!")

                current = await self._load_round_by_number(
                    session, duel_id, duel.current_round_number, for_update=True
                )
                if current.status != RoundStatus.WAITING_FOR_SPELLS:
                    raise InvalidStateError(
                        "Round is not accepting spells",
                        "❌ This round is no longer accepting spells!"
                    )

                participant = duel.get_participant(wizard_id)
                if not participant:
                    raise UnauthorizedError(f"Wizard {wizard_id} is not part of duel {duel_id}")
                if participant.user_id != user_id:
                    raise UnauthorizedError(f"User {user_id} does not control wizard {wizard_id}")
                wizards = await self.wizard_ops.get_wizards([wizard_id], session=session)
                wizard = wizards.get(wizard_id)
                if wizard and wizard.owner_id != user_id:
                    raise UnauthorizedError(f"User {user_id} does not own wizard {wizard_id}")

                if current.get_action(wizard_id):
                    raise DuplicateActionError(wizard_id, current.round_number)

                action = RoundAction(
                    round_id=current.id,
                    wizard_id=wizard_id,
                    user_id=user_id,
                    description=text
                )
                session.add(action)
                participant.awaiting_action = False
                await session.flush()

                round_ready = False
                if not duel.pending_action_wizard_ids:
                    result = await session.execute(
                        update(DuelRound)
                        .where(
                            DuelRound.id == current.id,
                            DuelRound.status == RoundStatus.WAITING_FOR_SPELLS
                        )
                        .values(status=RoundStatus.PROCESSING)
                        .execution_options(synchronize_session=False)
                    )
                    round_ready = result.rowcount == 1
                round_id = current.id
        except IntegrityError:
            # Unique (round_id, wizard_id) caught a racing duplicate
            raise DuplicateActionError(wizard_id, duel.current_round_number)

        self.logger.info(
            f"Wizard {wizard_id} cast a spell in duel {duel_id} round {duel.current_round_number}"
            + (" (round ready)" if round_ready else "")
        )

        submission = ActionSubmission(action=action, round_ready=round_ready)
        if round_ready and auto_resolve:
            submission.resolution = await self.resolve_round(duel_id, round_id)
        return submission

    # ============================================================================
    # Resolution
    # ============================================================================

    async def resolve_round(self, duel_id: int, round_id: int) -> RoundResolution:
        """
        Resolve a spell-casting round with whatever actions exist.

        Accepts a round in PROCESSING (normal path) or WAITING_FOR_SPELLS
        (forced/timeout path). Generator failures are recovered with the
        deterministic fallback and never surface from here.

        Raises:
            NotFoundError: Duel or round missing
            InvalidStateError: Round already completed, or duel not in progress
            DataIntegrityError: Participant wizards missing or fewer than two
        """
        # Phase 1: snapshot
        async with self.db.transaction() as session:
            duel = await self.duel_ops.load_duel(session, duel_id, for_update=True)
            target = await session.get(DuelRound, round_id)
            if not target or target.duel_id != duel_id:
                raise NotFoundError("Round", round_id)
            if target.status == RoundStatus.COMPLETED:
                raise InvalidStateError(f"Round {target.round_number} of duel {duel_id} already completed")
            if duel.status != DuelStatus.IN_PROGRESS:
                raise InvalidStateError("Duel is not in progress", "❌ This duel is not in progress!")
            if target.kind != RoundKind.SPELL_CASTING or target.round_number != duel.current_round_number:
                raise InvalidStateError(f"Round {target.round_number} is not the active round of duel {duel_id}")

            if target.status == RoundStatus.WAITING_FOR_SPELLS:
                await session.execute(
                    update(DuelRound)
                    .where(DuelRound.id == round_id, DuelRound.status == RoundStatus.WAITING_FOR_SPELLS)
                    .values(status=RoundStatus.PROCESSING)
                    .execution_options(synchronize_session=False)
                )
                self.logger.info(
                    f"Force-resolving duel {duel_id} round {target.round_number} "
                    f"with {len(target.actions)} action(s)"
                )

            context = await self._build_round_context(session, duel, target)
            is_campaign = duel.is_campaign_battle

        # Phase 2: generate, outside any transaction
        outcome, used_fallback = await self._generate_round_outcome(context)

        # Phase 3: apply
        async with self.db.transaction() as session:
            duel = await self.duel_ops.load_duel(session, duel_id, for_update=True, refresh=True)
            if duel.status != DuelStatus.IN_PROGRESS:
                raise InvalidStateError(f"Duel {duel_id} is no longer in progress")

            sanitized = sanitize_outcome(outcome, duel.vitality)
            completed = await session.execute(
                update(DuelRound)
                .where(DuelRound.id == round_id, DuelRound.status == RoundStatus.PROCESSING)
                .values(
                    status=RoundStatus.COMPLETED,
                    narrative=sanitized.narrative,
                    result_summary=sanitized.result_summary,
                    illustration_prompt=sanitized.illustration_prompt or None,
                    used_fallback=used_fallback,
                    completed_at=utc_now()
                )
                .execution_options(synchronize_session=False)
            )
            if completed.rowcount == 0:
                raise InvalidStateError(f"Round {context.round_number} of duel {duel_id} already completed")

            for participant in duel.participants:
                wizard_outcome = sanitized.wizard_outcomes[participant.wizard_id]
                snapshot = context.wizard(participant.wizard_id)
                session.add(RoundWizardOutcome(
                    round_id=round_id,
                    wizard_id=participant.wizard_id,
                    points_awarded=wizard_outcome.points_awarded,
                    health_change=wizard_outcome.health_change,
                    luck_roll=snapshot.luck_roll if snapshot else None
                ))
                participant.score += wizard_outcome.points_awarded
                participant.vitality = wizard_outcome.new_vitality

            standings = [Standing(p.wizard_id, p.score, p.vitality) for p in duel.participants]
            duel_end = evaluate_duel_end(standings, duel.round_budget, context.round_number)

            if duel_end:
                await self._complete_duel(session, duel, duel_end)
                next_round_number = None
            else:
                next_round_number = await self._open_next_round(session, duel, context.round_number)

            final_snapshots = [
                replace(snapshot, score=duel.scores[snapshot.wizard_id],
                                    vitality=duel.vitality[snapshot.wizard_id])
                for snapshot in context.wizards
            ]

        self.logger.info(
            f"Resolved duel {duel_id} round {context.round_number}"
            + (" via fallback" if used_fallback else "")
            + (f"; duel completed, winners={duel_end.winners}" if duel_end else "")
        )

        resolution = RoundResolution(
            duel_id=duel_id,
            round_id=round_id,
            round_number=context.round_number,
            used_fallback=used_fallback,
            duel_completed=duel_end is not None,
            winners=list(duel_end.winners) if duel_end else [],
            losers=list(duel_end.losers) if duel_end else [],
            next_round_number=next_round_number
        )

        # Follow-up work; the resolved round is already committed.
        # Illustration goes last so a renderer problem cannot strand the duel.
        if duel_end:
            conclusion = await self._write_conclusion(
                duel_id, context.round_number + 1, final_snapshots, duel_end, context.previous_rounds
                + [RoundSummary(context.round_number, sanitized.result_summary)]
            )
            resolution.conclusion_round_id = conclusion.id
            if is_campaign and self.campaign_ops:
                await self.campaign_ops.settle_battle_for_duel(duel_id)
        elif is_campaign and self.campaign_ops:
            await self.campaign_ops.submit_opponent_actions(duel_id)
        await self._illustrate_round(duel_id, round_id, sanitized.illustration_prompt)

        resolution.round = await self.get_round(round_id)
        return resolution

    async def _generate_round_outcome(self, context: RoundContext) -> Tuple[GeneratedOutcome, bool]:
        """Ask the generator; fall back on any failure. Returns (outcome, used_fallback)."""
        try:
            result = await self.generator.generate(context)
        except Exception as e:
            self.logger.warning(
                f"Outcome generator raised for duel {context.duel_id} round {context.round_number}: {e}"
            )
            result = GenerationResult.failed(str(e))

        if result.success:
            problem = validate_outcome_structure(result.outcome, [w.wizard_id for w in context.wizards])
            if problem is None:
                return result.outcome, False
            self.logger.warning(
                f"Invalid generator output for duel {context.duel_id} round {context.round_number}: {problem}"
            )
        else:
            self.logger.warning(
                f"Outcome generation failed for duel {context.duel_id} round {context.round_number}: {result.error}"
            )
        return fallback_round_outcome(context), True

    async def _complete_duel(self, session: AsyncSession, duel: Duel, duel_end: DuelEnd):
        result = await session.execute(
            update(Duel)
            .where(Duel.id == duel.id, Duel.status == DuelStatus.IN_PROGRESS)
            .values(status=DuelStatus.COMPLETED, completed_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidStateError(f"Duel {duel.id} is no longer in progress")
        duel.status = DuelStatus.COMPLETED

        winners = set(duel_end.winners)
        losers = set(duel_end.losers)
        for participant in duel.participants:
            participant.awaiting_action = False
            if participant.wizard_id in winners:
                participant.outcome = ParticipantOutcome.WON
            elif participant.wizard_id in losers:
                participant.outcome = ParticipantOutcome.LOST

        await self.wizard_ops.record_duel_result(
            duel_end.winners, duel_end.losers, duel.is_campaign_battle, session
        )

    async def _open_next_round(self, session: AsyncSession, duel: Duel, round_number: int) -> int:
        next_number = round_number + 1
        duel.current_round_number = next_number
        session.add(DuelRound(
            duel_id=duel.id,
            round_number=next_number,
            kind=RoundKind.SPELL_CASTING,
            status=RoundStatus.WAITING_FOR_SPELLS
        ))
        for participant in duel.participants:
            participant.awaiting_action = participant.is_alive
        await session.flush()
        return next_number

    # ============================================================================
    # Context building
    # ============================================================================

    async def _load_participant_wizards(self, session: AsyncSession, duel: Duel) -> Dict[int, object]:
        """All participant wizards, or DataIntegrityError"""
        wizard_ids = duel.wizard_ids
        wizards = await self.wizard_ops.get_wizards(wizard_ids, session=session)
        missing = [w for w in wizard_ids if w not in wizards]
        if missing or len(set(wizard_ids)) < DuelConstants.MIN_DISTINCT_WIZARDS:
            self.logger.error(f"Duel {duel.id} has missing or insufficient wizards (missing={missing})")
            raise DataIntegrityError()
        return wizards

    async def _build_round_context(self, session: AsyncSession, duel: Duel, target: DuelRound) -> RoundContext:
        wizards = await self._load_participant_wizards(session, duel)
        luck = await self._roll_luck(session, duel)

        snapshots = [
            WizardSnapshot(
                wizard_id=p.wizard_id,
                name=wizards[p.wizard_id].name,
                description=wizards[p.wizard_id].description,
                seat=p.seat,
                score=p.score,
                vitality=p.vitality,
                luck_roll=luck[p.wizard_id]
            )
            for p in duel.participants
        ]
        return RoundContext(
            duel_id=duel.id,
            round_number=target.round_number,
            round_budget=duel.round_budget,
            wizards=snapshots,
            actions={a.wizard_id: a.description for a in target.actions},
            previous_rounds=await self._previous_round_summaries(session, duel.id, target.round_number)
        )

    async def _previous_round_summaries(
        self, session: AsyncSession, duel_id: int, before_round: int
    ) -> List[RoundSummary]:
        result = await session.execute(
            select(DuelRound)
            .where(
                DuelRound.duel_id == duel_id,
                DuelRound.kind == RoundKind.SPELL_CASTING,
                DuelRound.status == RoundStatus.COMPLETED,
                DuelRound.round_number >= DuelConstants.FIRST_ROUND,
                DuelRound.round_number < before_round
            )
            .order_by(DuelRound.round_number)
        )
        return [
            RoundSummary(
                round_number=r.round_number,
                result_summary=r.result_summary or "",
                points_awarded=r.points_awarded,
                health_changes=r.health_changes
            )
            for r in result.scalars().all()
        ]

    async def _roll_luck(self, session: AsyncSession, duel: Duel) -> Dict[int, int]:
        """
        d20 per wizard, adjusted and clamped to [1, 20].

        Completion-relic holders get +1; in campaign battles the scripted
        opponent adds its roster luck modifier.
        """
        wizard_ids = duel.wizard_ids
        relic_holders = set(
            (await session.execute(
                select(CampaignProgress.wizard_id).where(
                    CampaignProgress.wizard_id.in_(wizard_ids),
                    CampaignProgress.has_completion_relic.is_(True)
                )
            )).scalars().all()
        )
        modifiers = {}
        if duel.is_campaign_battle:
            result = await session.execute(
                select(CampaignOpponent.wizard_id, CampaignOpponent.luck_modifier)
                .where(CampaignOpponent.wizard_id.in_(wizard_ids))
            )
            modifiers = {wizard_id: modifier for wizard_id, modifier in result.all()}

        rolls = {}
        for wizard_id in wizard_ids:
            roll = self.rng.randint(OutcomeConstants.MIN_LUCK, OutcomeConstants.MAX_LUCK)
            if wizard_id in relic_holders:
                roll += CampaignConstants.RELIC_LUCK_BONUS
            rolls[wizard_id] = clamp_luck(roll + modifiers.get(wizard_id, 0))
        return rolls

    # ============================================================================
    # Introduction and conclusion
    # ============================================================================

    async def create_introduction_round(self, duel_id: int) -> DuelRound:
        """
        Write round 0, the narrative introduction, for a waiting duel.

        Idempotent: an existing introduction is returned unchanged.
        """
        async with self.db.transaction() as session:
            duel = await self.duel_ops.load_duel(session, duel_id)
            existing = await self._find_round(session, duel_id, DuelConstants.INTRODUCTION_ROUND)
            if existing:
                return existing
            if duel.status != DuelStatus.WAITING_FOR_PLAYERS:
                raise InvalidStateError(f"Duel {duel_id} is not waiting to start")
            wizards = await self._load_participant_wizards(session, duel)
            snapshots = [
                WizardSnapshot(p.wizard_id, wizards[p.wizard_id].name, wizards[p.wizard_id].description, p.seat)
                for p in duel.participants
            ]
            round_budget = duel.round_budget

        outcome, used_fallback = await self._generate_story(
            f"introduction for duel {duel_id}",
            lambda: self.generator.narrate_introduction(snapshots, round_budget),
            lambda: fallback_introduction(snapshots)
        )

        try:
            async with self.db.transaction() as session:
                introduction = DuelRound(
                    duel_id=duel_id,
                    round_number=DuelConstants.INTRODUCTION_ROUND,
                    kind=RoundKind.SPELL_CASTING,
                    status=RoundStatus.COMPLETED,
                    narrative=outcome.narrative.strip(),
                    result_summary=(outcome.result_summary or "").strip() or None,
                    illustration_prompt=(outcome.illustration_prompt or "").strip() or None,
                    used_fallback=used_fallback,
                    completed_at=utc_now()
                )
                session.add(introduction)
                await session.flush()
        except IntegrityError:
            self.logger.debug(f"Introduction for duel {duel_id} was written concurrently")
            async with self.db.get_session() as session:
                return await self._find_round(session, duel_id, DuelConstants.INTRODUCTION_ROUND)

        self.logger.info(f"Introduction written for duel {duel_id}")
        await self._illustrate_round(duel_id, introduction.id, introduction.illustration_prompt)
        return introduction

    async def begin_duel(self, duel_id: int) -> Duel:
        """Introduction, then IN_PROGRESS with round 1 open, then scripted opponents act"""
        await self.create_introduction_round(duel_id)
        duel = await self.duel_ops.start_duel_after_introduction(duel_id)
        if duel.is_campaign_battle and self.campaign_ops:
            await self.campaign_ops.submit_opponent_actions(duel_id)
        return duel

    async def _write_conclusion(
        self,
        duel_id: int,
        round_number: int,
        snapshots: List[WizardSnapshot],
        duel_end: DuelEnd,
        previous_rounds: List[RoundSummary]
    ) -> DuelRound:
        context = ConclusionContext(
            duel_id=duel_id,
            round_number=round_number,
            wizards=snapshots,
            winners=list(duel_end.winners),
            losers=list(duel_end.losers),
            end_reason=duel_end.reason,
            previous_rounds=previous_rounds
        )
        outcome, used_fallback = await self._generate_story(
            f"conclusion for duel {duel_id}",
            lambda: self.generator.narrate_conclusion(context),
            lambda: fallback_conclusion(context)
        )
        async with self.db.transaction() as session:
            conclusion = DuelRound(
                duel_id=duel_id,
                round_number=round_number,
                kind=RoundKind.CONCLUSION,
                status=RoundStatus.COMPLETED,
                narrative=outcome.narrative.strip(),
                result_summary=(outcome.result_summary or "").strip() or None,
                illustration_prompt=(outcome.illustration_prompt or "").strip() or None,
                used_fallback=used_fallback,
                completed_at=utc_now()
            )
            session.add(conclusion)
            await session.flush()
        self.logger.info(f"Conclusion written for duel {duel_id} at round {round_number}")
        return conclusion

    async def _generate_story(self, label: str, call, fallback) -> Tuple[GeneratedOutcome, bool]:
        """Introduction/conclusion narration; only the narrative must be usable"""
        try:
            result = await call()
        except Exception as e:
            self.logger.warning(f"Generator raised while writing {label}: {e}")
            result = GenerationResult.failed(str(e))

        if result.success and isinstance(result.outcome, GeneratedOutcome) \
                and isinstance(result.outcome.narrative, str) and result.outcome.narrative.strip():
            return result.outcome, False
        self.logger.warning(f"Using fallback {label}: {result.error or 'unusable narration'}")
        return fallback(), True

    # ============================================================================
    # Illustration
    # ============================================================================

    async def _illustrate_round(self, duel_id: int, round_id: int, prompt: Optional[str]) -> Optional[int]:
        """
        Attach an illustration if possible. Never raises.

        The round itself is already committed, so any failure here only
        leaves that round text-only.
        """
        if not self.illustrator or not prompt:
            return None
        try:
            return await self._attach_illustration(duel_id, round_id, prompt)
        except Exception as e:
            self.logger.warning(
                f"Illustration step failed for duel {duel_id} round {round_id}: {e!r}", exc_info=True
            )
            return None

    async def _attach_illustration(self, duel_id: int, round_id: int, prompt: str) -> Optional[int]:
        """
        The duel's single credit is charged before the first image; a denied
        charge switches the whole duel to text-only mode.
        """
        duel = await self.duel_ops.get_duel(duel_id)
        if duel.text_only_mode:
            return None

        if self.credit_ops:
            try:
                await self.credit_ops.charge_once(duel_id, duel.participants[0].user_id)
            except InsufficientResourceError as e:
                self.logger.info(f"Duel {duel_id} switched to text-only: {e}")
                await self._mark_text_only(duel_id, CreditConstants.TEXT_ONLY_INSUFFICIENT_CREDITS)
                return None

        try:
            image = await self.illustrator.render_image(prompt)
        except IllustrationError as e:
            self.logger.warning(f"Illustration failed for duel {duel_id} round {round_id}: {e}")
            return None

        async with self.db.transaction() as session:
            illustration = Illustration(round_id=round_id, prompt=prompt, image_data=image)
            session.add(illustration)
            await session.flush()
            await session.execute(
                update(DuelRound)
                .where(DuelRound.id == round_id)
                .values(illustration_id=illustration.id)
                .execution_options(synchronize_session=False)
            )
            return illustration.id

    async def _mark_text_only(self, duel_id: int, reason: str):
        async with self.db.transaction() as session:
            await session.execute(
                update(Duel)
                .where(Duel.id == duel_id)
                .values(text_only_mode=True, text_only_reason=reason)
                .execution_options(synchronize_session=False)
            )

    # ============================================================================
    # Queries
    # ============================================================================

    async def _find_round(self, session: AsyncSession, duel_id: int, round_number: int) -> Optional[DuelRound]:
        return await session.scalar(
            select(DuelRound).where(DuelRound.duel_id == duel_id, DuelRound.round_number == round_number)
        )

    async def _load_round_by_number(
        self, session: AsyncSession, duel_id: int, round_number: int, for_update: bool = False
    ) -> DuelRound:
        query = select(DuelRound).where(
            DuelRound.duel_id == duel_id, DuelRound.round_number == round_number
        )
        if for_update:
            query = query.with_for_update()
        current = await session.scalar(query)
        if not current:
            raise NotFoundError("Current round", f"{round_number} of duel {duel_id}")
        return current

    async def get_round(self, round_id: int) -> DuelRound:
        async with self.db.get_session() as session:
            found = await session.get(DuelRound, round_id)
            if not found:
                raise NotFoundError("Round", round_id)
            return found

    async def get_current_round(self, duel_id: int) -> DuelRound:
        async with self.db.get_session() as session:
            duel = await self.duel_ops.load_duel(session, duel_id)
            return await self._load_round_by_number(session, duel_id, duel.current_round_number)

    async def get_rounds(self, duel_id: int) -> List[DuelRound]:
        """All rounds of a duel, introduction first and conclusion last"""
        async with self.db.get_session() as session:
            await self.duel_ops.load_duel(session, duel_id)
            result = await session.execute(
                select(DuelRound)
                .where(DuelRound.duel_id == duel_id)
                .order_by(DuelRound.round_number)
            )
            return list(result.scalars().all())

    async def list_stalled_rounds(self, older_than: datetime) -> List[Tuple[int, int]]:
        """(duel_id, round_id) of active rounds that have been open since before older_than"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(DuelRound.duel_id, DuelRound.id)
                .join(Duel, Duel.id == DuelRound.duel_id)
                .where(
                    Duel.status == DuelStatus.IN_PROGRESS,
                    DuelRound.round_number == Duel.current_round_number,
                    DuelRound.kind == RoundKind.SPELL_CASTING,
                    DuelRound.status.in_([RoundStatus.WAITING_FOR_SPELLS, RoundStatus.PROCESSING]),
                    DuelRound.created_at < older_than
                )
                .order_by(DuelRound.created_at)
            )
            return [(duel_id, round_id) for duel_id, round_id in result.all()]
