"""
Duel engine exceptions with user-friendly error messages.

Every failure the engine surfaces to a caller is a DuelEngineError subclass,
so callers can map them to user-facing messages without string matching.
"""

class DuelEngineError(Exception):
    """Base exception for duel engine errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message

class NotFoundError(DuelEngineError):
    """Raised when a duel, round, wizard, lobby entry or battle is absent."""
    def __init__(self, entity: str, identifier=None):
        message = f"{entity} not found" if identifier is None else f"{entity} {identifier} not found"
        super().__init__(message, f"❌ {entity} not found!")
        self.entity = entity
        self.identifier = identifier

class InvalidStateError(DuelEngineError):
    """Raised when an operation is illegal for the entity's current status."""
    pass

class UnauthorizedError(DuelEngineError):
    """Raised when the actor does not own the wizard or duel."""
    def __init__(self, message: str = "Not authorized to use this wizard"):
        super().__init__(message, "❌ You are not allowed to do that!")

class DuplicateActionError(DuelEngineError):
    """Raised when a wizard submits a second action in the same round."""
    def __init__(self, wizard_id: int, round_number: int):
        super().__init__(
            f"Wizard {wizard_id} has already cast a spell in round {round_number}",
            "❌ You have already cast a spell this round!"
        )

class DuplicatePlayerError(DuelEngineError):
    """Raised when a user tries to join a duel they are already in."""
    def __init__(self, message: str = "User is already in this duel"):
        super().__init__(message, "❌ You are already in this duel!")

class DuplicateBattleError(DuelEngineError):
    """Raised when a campaign battle already exists for a wizard/opponent pair."""
    def __init__(self, wizard_id: int, opponent_number: int):
        super().__init__(
            f"Battle already exists for wizard {wizard_id} against opponent {opponent_number}",
            "❌ You are already battling this opponent!"
        )

class AlreadyQueuedError(DuelEngineError):
    """Raised when a user joins the lobby while holding an entry."""
    def __init__(self, user_id: str):
        super().__init__(
            f"User {user_id} is already in the lobby",
            "❌ You are already in the lobby!"
        )

class AlreadyProcessedError(DuelEngineError):
    """Raised when a one-shot operation is invoked a second time."""
    pass

class AlreadyDefeatedError(DuelEngineError):
    """Raised when recording a campaign victory that is already recorded."""
    def __init__(self, opponent_number: int):
        super().__init__(
            f"Opponent {opponent_number} already defeated",
            "❌ You have already defeated this opponent!"
        )

class DataIntegrityError(DuelEngineError):
    """Raised when referenced records are missing or inconsistent."""
    def __init__(self, message: str = "Could not fetch all wizard data"):
        super().__init__(message, "❌ This duel's data is inconsistent. Please start a new duel.")

class InvalidArgumentError(DuelEngineError):
    """Raised for malformed input."""
    pass

class OutOfOrderError(InvalidArgumentError):
    """Raised when a campaign opponent is faced out of sequence."""
    def __init__(self, opponent_number: int, current_opponent: int):
        super().__init__(
            f"Cannot battle opponent {opponent_number}. Must battle opponent {current_opponent} first.",
            f"❌ You must defeat opponent {current_opponent} first!"
        )
        self.opponent_number = opponent_number
        self.current_opponent = current_opponent

class InsufficientResourceError(DuelEngineError):
    """Raised when the credit gate cannot debit the user."""
    def __init__(self, user_id: str):
        super().__init__(
            f"Insufficient credits for user {user_id}",
            "❌ You don't have enough image credits."
        )
        self.user_id = user_id
