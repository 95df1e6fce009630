import asyncio
import logging
import traceback
from typing import Optional

from arena.config import Config
from arena.database.database import Database
from arena.operations.campaign_operations import CampaignOperations
from arena.operations.credit_operations import CreditOperations
from arena.operations.duel_operations import DuelOperations
from arena.operations.lobby_operations import LobbyOperations
from arena.operations.round_operations import RoundOperations
from arena.operations.wizard_operations import WizardOperations
from arena.services.credit_ledger import SqlCreditLedger
from arena.services.housekeeping import HousekeepingService
from arena.services.illustrator import OpenAIIllustrator
from arena.services.outcome_generator import FallbackOutcomeGenerator, OpenAIOutcomeGenerator
from arena.utils.logger import setup_logger


class ArenaEngine:
    """Wires the database, operations and external adapters together"""

    def __init__(
        self,
        database_url: Optional[str] = None,
        generator=None,
        illustrator=None,
        ledger=None,
        rng=None
    ):
        self.database_url = database_url
        self.generator = generator
        self.illustrator = illustrator
        self.ledger = ledger
        self.rng = rng
        self.db: Optional[Database] = None
        self.logger = setup_logger(__name__)

    async def initialize(self):
        self.logger.info("Setting up Arena Duel Engine...")

        self.db = Database(self.database_url)
        await self.db.initialize()

        if self.generator is None:
            if Config.OPENAI_API_KEY:
                self.generator = OpenAIOutcomeGenerator()
            else:
                self.logger.warning("OPENAI_API_KEY not set; rounds will use fallback narration")
                self.generator = FallbackOutcomeGenerator()
        if self.illustrator is None and Config.ENABLE_ILLUSTRATIONS:
            self.illustrator = OpenAIIllustrator()
        if self.ledger is None:
            self.ledger = SqlCreditLedger(self.db.session_factory)

        self.wizards = WizardOperations(self.db)
        self.duels = DuelOperations(self.db, self.wizards)
        self.credits = CreditOperations(self.db, self.ledger, self.duels)
        self.rounds = RoundOperations(
            self.db,
            self.wizards,
            self.duels,
            generator=self.generator,
            illustrator=self.illustrator,
            credit_ops=self.credits,
            rng=self.rng
        )
        self.lobby = LobbyOperations(self.db, self.wizards, self.duels)
        self.campaign = CampaignOperations(self.db, self.wizards, self.duels, self.rounds)
        self.rounds.attach_campaign(self.campaign)
        self.housekeeping = HousekeepingService(self.db, self.duels, self.rounds, self.lobby)

        await self.campaign.seed_opponents()
        self.logger.info("Arena Duel Engine setup complete!")

    async def close(self):
        self.logger.info("Shutting down Arena Duel Engine...")
        if getattr(self, 'housekeeping', None):
            await self.housekeeping.stop()
        if self.db:
            await self.db.close()


async def main():
    """Run the housekeeping scheduler until interrupted"""
    Config.validate()

    engine = ArenaEngine()
    try:
        await engine.initialize()
        engine.housekeeping.start()
        while True:
            await asyncio.sleep(3600)
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        traceback.print_exc()
    finally:
        await engine.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
