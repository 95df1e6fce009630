"""
Outcome Generator contract and adapters.

The generator narrates rounds and proposes per-wizard points and health
changes. It is an untrusted, fallible external call:
- it runs outside any database transaction,
- it reports failure through GenerationResult (or by raising),
- every number it returns is clamped by the outcome sanitizer.

Adapters:
- OpenAIOutcomeGenerator: chat completions in JSON mode via AsyncOpenAI
- FallbackOutcomeGenerator: the deterministic templates, no network
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from arena.config import Config
from arena.utils.duel_rules import RoundBudget
from arena.utils.fallback import fallback_conclusion, fallback_introduction, fallback_round_outcome
from arena.utils.logger import setup_logger
from arena.utils.outcome_sanitizer import GeneratedOutcome
from arena.utils.prompt_context import (
    ConclusionContext, RoundContext, WizardSnapshot,
    build_conclusion_prompt, build_introduction_prompt, build_round_prompt
)

logger = setup_logger(__name__)

ROUND_SYSTEM_PROMPT = (
    "You are the referee and narrator of a turn-based magical duel. "
    "Judge each wizard's action fairly, narrate the round vividly in present tense, "
    "and award points and health changes. Wizards who took no action held back."
)

STORY_SYSTEM_PROMPT = (
    "You are the narrator of a turn-based magical duel. Write vivid, present-tense narration."
)


@dataclass
class GenerationResult:
    """Success payload or failure reason from a generator call"""
    success: bool
    outcome: Optional[GeneratedOutcome] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, outcome: GeneratedOutcome) -> 'GenerationResult':
        return cls(success=True, outcome=outcome)

    @classmethod
    def failed(cls, error: str) -> 'GenerationResult':
        return cls(success=False, error=error)


class OutcomeGenerator(ABC):
    """Produces narrative and numeric results for duel rounds."""

    @abstractmethod
    async def generate(self, context: RoundContext) -> GenerationResult:
        """Narrate and score a spell-casting round"""

    @abstractmethod
    async def narrate_introduction(
        self, wizards: List[WizardSnapshot], round_budget: RoundBudget
    ) -> GenerationResult:
        """Narrate round 0; numeric fields are ignored"""

    @abstractmethod
    async def narrate_conclusion(self, context: ConclusionContext) -> GenerationResult:
        """Narrate the duel's result; numeric fields are ignored"""


class FallbackOutcomeGenerator(OutcomeGenerator):
    """Generator that always answers with the deterministic templates."""

    async def generate(self, context: RoundContext) -> GenerationResult:
        return GenerationResult.ok(fallback_round_outcome(context))

    async def narrate_introduction(self, wizards, round_budget) -> GenerationResult:
        return GenerationResult.ok(fallback_introduction(wizards))

    async def narrate_conclusion(self, context: ConclusionContext) -> GenerationResult:
        return GenerationResult.ok(fallback_conclusion(context))


def parse_round_payload(payload: Dict[str, Any], wizards: List[WizardSnapshot]) -> GeneratedOutcome:
    """
    Map a generator JSON payload onto wizard ids.

    The payload addresses wizards by seat ("wizard1", "wizard2", ...).
    Numbers are passed through untouched; range checks belong to the
    sanitizer. Raises ValueError when the payload is structurally unusable.
    """
    if not isinstance(payload, dict):
        raise ValueError("Response is not a JSON object")
    narration = payload.get("narration")
    if not isinstance(narration, str) or not narration.strip():
        raise ValueError("Response is missing narration")

    points = {}
    health = {}
    for index, snapshot in enumerate(wizards, start=1):
        entry = payload.get(f"wizard{index}")
        if not isinstance(entry, dict):
            raise ValueError(f"Response is missing wizard{index}")
        points[snapshot.wizard_id] = entry.get("pointsEarned")
        health[snapshot.wizard_id] = entry.get("healthChange")

    return GeneratedOutcome(
        narrative=narration,
        result_summary=str(payload.get("result") or ""),
        illustration_prompt=str(payload.get("illustrationPrompt") or ""),
        points_awarded=points,
        health_change=health
    )


def parse_story_payload(payload: Dict[str, Any]) -> GeneratedOutcome:
    if not isinstance(payload, dict):
        raise ValueError("Response is not a JSON object")
    narration = payload.get("narration")
    if not isinstance(narration, str) or not narration.strip():
        raise ValueError("Response is missing narration")
    return GeneratedOutcome(
        narrative=narration,
        result_summary=str(payload.get("result") or ""),
        illustration_prompt=str(payload.get("illustrationPrompt") or "")
    )


class OpenAIOutcomeGenerator(OutcomeGenerator):
    """Outcome generator backed by OpenAI chat completions in JSON mode."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None
    ):
        self.model = model or Config.OPENAI_MODEL
        self.temperature = Config.GENERATION_TEMPERATURE if temperature is None else temperature
        self.client = client or AsyncOpenAI(
            api_key=api_key or Config.OPENAI_API_KEY,
            timeout=Config.OPENAI_TIMEOUT_SECONDS
        )

    async def _complete_json(self, system_prompt: str, prompt: str) -> Dict[str, Any]:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=self.temperature
        )
        content = response.choices[0].message.content or ""
        return json.loads(content)

    async def generate(self, context: RoundContext) -> GenerationResult:
        try:
            payload = await self._complete_json(ROUND_SYSTEM_PROMPT, build_round_prompt(context))
            return GenerationResult.ok(parse_round_payload(payload, context.wizards))
        except (openai.OpenAIError, json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Round generation failed for duel {context.duel_id} round {context.round_number}: {e}")
            return GenerationResult.failed(str(e))

    async def narrate_introduction(self, wizards, round_budget) -> GenerationResult:
        try:
            payload = await self._complete_json(
                STORY_SYSTEM_PROMPT, build_introduction_prompt(wizards, round_budget)
            )
            return GenerationResult.ok(parse_story_payload(payload))
        except (openai.OpenAIError, json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Introduction generation failed: {e}")
            return GenerationResult.failed(str(e))

    async def narrate_conclusion(self, context: ConclusionContext) -> GenerationResult:
        try:
            payload = await self._complete_json(STORY_SYSTEM_PROMPT, build_conclusion_prompt(context))
            return GenerationResult.ok(parse_story_payload(payload))
        except (openai.OpenAIError, json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Conclusion generation failed for duel {context.duel_id}: {e}")
            return GenerationResult.failed(str(e))
