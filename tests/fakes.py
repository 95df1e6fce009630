"""
Scripted stand-ins for the outcome generator and illustrator.
"""

from arena.services.illustrator import IllustrationError, Illustrator
from arena.services.outcome_generator import GenerationResult, OutcomeGenerator
from arena.utils.outcome_sanitizer import GeneratedOutcome

def scripted_round(points, health, narrative="The spells collide in a burst of light."):
    """Round result builder: points/health are listed in seat order"""
    def _build(context):
        return GenerationResult.ok(GeneratedOutcome(
            narrative=narrative,
            result_summary=f"Round {context.round_number} is decided.",
            illustration_prompt="Two wizards clash in a glowing arena",
            points_awarded={w.wizard_id: p for w, p in zip(context.wizards, points)},
            health_change={w.wizard_id: h for w, h in zip(context.wizards, health)}
        ))
    return _build


class ScriptedGenerator(OutcomeGenerator):
    """
    Outcome generator driven by a queue.

    Each queued item is a callable taking the round context, a
    GenerationResult, or an exception to raise. With an empty queue every
    wizard earns 10 points and loses 10 health.
    """

    def __init__(self):
        self.queue = []
        self.contexts = []
        self.conclusions = []

    def push(self, *items):
        self.queue.extend(items)

    async def generate(self, context):
        self.contexts.append(context)
        if self.queue:
            item = self.queue.pop(0)
            if isinstance(item, Exception):
                raise item
            if callable(item):
                return item(context)
            return item
        return scripted_round([10] * len(context.wizards), [-10] * len(context.wizards))(context)

    async def narrate_introduction(self, wizards, round_budget):
        names = " and ".join(w.name for w in wizards)
        return GenerationResult.ok(GeneratedOutcome(
            narrative=f"{names} step into the arena.",
            illustration_prompt="Two wizards bow before a duel"
        ))

    async def narrate_conclusion(self, context):
        self.conclusions.append(context)
        return GenerationResult.ok(GeneratedOutcome(narrative="The duel is over."))


class FakeIllustrator(Illustrator):
    """
    Records prompts. With fail set, or an error given, every render after the
    first working_renders raises (IllustrationError unless error is given).
    """

    def __init__(self, fail: bool = False, error: Exception = None, working_renders: int = 0):
        self.fail = fail
        self.error = error
        self.working_renders = working_renders
        self.prompts = []

    async def render_image(self, prompt):
        self.prompts.append(prompt)
        if (self.fail or self.error) and len(self.prompts) > self.working_renders:
            raise self.error or IllustrationError("renderer unavailable")
        return b"\x89PNG fake image"

