"""Round lifecycle: create, prompt, fill with AI options, error, complete.

These helpers only touch Round rows. The phase and deadline fields on the
session belong to the game controller, which calls these from inside its
own mutations.
"""

from __future__ import annotations

import random

from errors import NoPlayersAvailable, ValidationError, WrongPhase
from models import AnswerOption, QuizSession, Round, generate_id
from store import Transaction

PROMPT_MIN_CHARS = 5
PROMPT_MAX_CHARS = 500
OPTIONS_PER_ROUND = 4


def start_round(tx: Transaction, session: QuizSession, round_index: int, rng: random.Random) -> Round:
    """Insert round ``round_index`` with a prompter picked uniformly at random.

    Raises NoPlayersAvailable when nobody can prompt; nothing is written then.
    """
    candidates = tx.eligible_players(session.id)
    if not candidates:
        raise NoPlayersAvailable("No players available to write a prompt")
    prompter = rng.choice(candidates)
    return tx.insert(Round(
        id=generate_id(),
        session_id=session.id,
        round_index=round_index,
        prompter_player_id=prompter.id,
        created_at=tx.now,
    ))


def prompt_deadline(session: QuizSession, now: int) -> int:
    return now + session.config.secondsForPrompt * 1000


def answer_deadline(session: QuizSession, now: int) -> int:
    return now + session.config.secondsPerQuestion * 1000


def clean_prompt(text: str) -> str:
    text = (text or "").strip()
    if not PROMPT_MIN_CHARS <= len(text) <= PROMPT_MAX_CHARS:
        raise ValidationError(
            f"Prompt must be {PROMPT_MIN_CHARS}-{PROMPT_MAX_CHARS} characters"
        )
    return text


def record_prompt(tx: Transaction, round_: Round, text: str) -> str:
    if round_.prompt_text is not None:
        raise WrongPhase("Prompt already submitted for this round")
    text = clean_prompt(text)
    tx.patch(round_, prompt_text=text)
    return text


def record_answer_options(tx: Transaction, round_: Round, options: list[AnswerOption], question_text: str) -> Round:
    if len(options) != OPTIONS_PER_ROUND:
        raise ValidationError(f"Expected {OPTIONS_PER_ROUND} answer options, got {len(options)}")
    if sum(1 for o in options if o.isCorrect) != 1:
        raise ValidationError("Exactly one answer option must be correct")
    if len({o.id for o in options}) != len(options):
        raise ValidationError("Answer option ids must be unique")
    return tx.patch(
        round_,
        answer_options=list(options),
        question_text=question_text,
        errored=None,
        error_reason=None,
    )


def mark_errored(tx: Transaction, round_: Round, reason: str) -> Round:
    return tx.patch(round_, errored=True, error_reason=reason[:500])


def clear_error(tx: Transaction, round_: Round) -> Round:
    return tx.patch(round_, errored=None, error_reason=None)


def complete_round(tx: Transaction, round_: Round) -> Round:
    if round_.completed_at is not None:
        return round_
    return tx.patch(round_, completed_at=tx.now)
