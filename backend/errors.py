"""Error taxonomy for the game core.

Every error carries a short machine ``reason`` and the HTTP status the API
layer answers with. Checks always run before writes, so raising one of these
inside a mutation never leaves partial state behind.
"""

from __future__ import annotations


class QuizError(Exception):
    """Base class for errors surfaced to callers."""

    reason: str = "error"
    status_code: int = 400

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.reason)
        self.message = message or self.reason


class Unauthorized(QuizError):
    reason = "unauthorized"
    status_code = 403


class NotFound(QuizError):
    reason = "not_found"
    status_code = 404


class WrongPhase(QuizError):
    reason = "wrong_phase"
    status_code = 409


class ValidationError(QuizError):
    reason = "validation_error"
    status_code = 400


class AlreadyAnswered(QuizError):
    reason = "already_answered"
    status_code = 409


class NoPlayersAvailable(QuizError):
    reason = "no_players_available"
    status_code = 409


class AiGenerationFailed(QuizError):
    """Raised inside the trivia agent; converted to ``round.errored``."""

    reason = "ai_generation_failed"
    status_code = 502


class DuplicateKey(Exception):
    """A unique index in the entity store was violated."""


class InvalidOption(ValidationError):
    reason = "invalid_option"
