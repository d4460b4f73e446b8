"""Answer ingestion: one PlayerAnswer per (player, round), scored on arrival."""

from __future__ import annotations

from errors import AlreadyAnswered, InvalidOption, WrongPhase
from models import NO_ANSWER, Player, PlayerAnswer, QuizSession, Round, generate_id
from scoring import compute_score
from store import Transaction, _Reader


def submit_answer(
    tx: Transaction,
    session: QuizSession,
    round_: Round,
    player: Player,
    selected_option_id: str,
) -> PlayerAnswer:
    """Validate, score and record a player's answer.

    The existence check and the insert run inside the caller's mutation, so
    two concurrent submissions for the same player cannot both land.
    """
    if session.phase != 'answering' or round_.round_index != session.current_round_index:
        raise WrongPhase("Answers are not being accepted right now")
    if round_.completed_at is not None:
        raise WrongPhase("Round already closed")

    option = next((o for o in round_.answer_options or [] if o.id == selected_option_id), None)
    if option is None:
        raise InvalidOption("Unknown answer option")

    if tx.answer_for(player.id, round_.id) is not None:
        raise AlreadyAnswered("You already answered this round")

    secs = session.config.secondsPerQuestion
    points = compute_score(option.isCorrect, session.answer_deadline_at, secs, tx.now)
    opened_at = session.answer_deadline_at - secs * 1000

    answer = tx.insert(PlayerAnswer(
        id=generate_id(),
        session_id=session.id,
        round_id=round_.id,
        player_id=player.id,
        selected_option_id=option.id,
        is_correct=option.isCorrect,
        submitted_at=tx.now,
        points=points,
        latency_ms=max(0, tx.now - opened_at),
    ))
    # Scores only ever grow
    tx.patch(player, score=player.score + points, last_seen_at=tx.now)
    return answer


def count_answers(reader: _Reader, session: QuizSession, round_: Round) -> tuple[int, int]:
    """(answers from eligible players, eligible player count)"""
    eligible = {p.id for p in reader.eligible_players(session.id)}
    answered = sum(1 for a in reader.answers_for_round(round_.id) if a.player_id in eligible)
    return answered, len(eligible)


def all_answered(reader: _Reader, session: QuizSession, round_: Round) -> bool:
    answered, eligible = count_answers(reader, session, round_)
    return eligible > 0 and answered >= eligible


def fill_missing_answers(tx: Transaction, session: QuizSession, round_: Round) -> int:
    """Insert a zero-point "no answer" row for every eligible player who skipped."""
    created = 0
    for player in tx.eligible_players(session.id):
        if tx.answer_for(player.id, round_.id) is not None:
            continue
        tx.insert(PlayerAnswer(
            id=generate_id(),
            session_id=session.id,
            round_id=round_.id,
            player_id=player.id,
            selected_option_id=NO_ANSWER,
            is_correct=False,
            submitted_at=tx.now,
            points=0,
        ))
        created += 1
    return created
