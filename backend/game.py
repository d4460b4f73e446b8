"""
Game controller
===============
Server-authoritative state machine for one quiz run:

    lobby -> prompting -> generating -> answering -> reveal -> scoreboard
          -> prompting (next round) | finished

Every entry point runs its checks and writes inside one store mutation and
only enqueues deferred work (AI generation, deadline timers, early lock)
after that mutation has committed. ``_transition`` is the single writer of
``phase``, ``current_round_index`` and the two deadline fields.

Host and timer transitions that find the session already past the phase
they expect return ``TransitionResult(skipped=True)`` instead of raising,
so duplicate clicks and at-least-once timer delivery are harmless.
"""

from __future__ import annotations

import random
from typing import Awaitable, Callable, Optional

import answers
import config
import rounds
from errors import NotFound, Unauthorized, ValidationError, WrongPhase
from logger import get_logger, log_game_event
from models import (
    REVEALED_PHASES, ROUND_PHASES,
    AnswerOption, GenerationJob, LeaderboardEntry, LiveSession, Player, QuizSession,
    SessionConfig, SessionView, TransitionResult,
    generate_id, generate_join_code, generate_join_slug,
)
from scheduler import TaskScheduler
from store import EntityStore, Transaction, _Reader, now_ms
from trivia_agent import TriviaAgent, build_answer_options

logger = get_logger("PromptQuiz.game")

NAME_MAX_CHARS = 20
SESSION_NAME_MAX_CHARS = 100

ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    'lobby': ('prompting', 'finished'),
    'prompting': ('generating', 'scoreboard', 'finished'),
    'generating': ('answering', 'scoreboard', 'finished'),
    'answering': ('reveal', 'finished'),
    'reveal': ('scoreboard', 'finished'),
    'scoreboard': ('prompting', 'finished'),
    'finished': (),
}

EventListener = Callable[[str, dict], Awaitable[None]]


def _skipped(session: QuizSession, reason: str) -> TransitionResult:
    logger.debug(f"↷ Skipped stale call on session {session.id}: {reason} (phase={session.phase})")
    return TransitionResult(skipped=True, phase=session.phase, reason=reason)


class GameController:
    def __init__(
        self,
        store: Optional[EntityStore] = None,
        scheduler: Optional[TaskScheduler] = None,
        agent: Optional[TriviaAgent] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
        max_players: int = config.QUIZ_MAX_PLAYERS,
    ):
        self.clock = clock
        self.store = store or EntityStore(clock)
        self.scheduler = scheduler or TaskScheduler(clock)
        self.agent = agent or TriviaAgent()
        self.rng = rng or random.SystemRandom()
        self.max_players = max_players
        self._listeners: list[EventListener] = []

    # ------------------------------------------------------------------
    # Events (delivered after commit)
    # ------------------------------------------------------------------

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    async def _publish(self, session_id: str, event_type: str, **data) -> None:
        event = {'type': event_type, 'sessionId': session_id, **data}
        for listener in self._listeners:
            try:
                await listener(session_id, event)
            except Exception as e:
                logger.error(f"❌ Event listener failed for {event_type}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def _require_session(reader: _Reader, session_id: str) -> QuizSession:
        session = reader.get_session(session_id)
        if session is None:
            raise NotFound("Session not found")
        return session

    @staticmethod
    def _require_owner(session: QuizSession, caller_id: Optional[str]) -> None:
        if not caller_id or caller_id != session.owner_id:
            raise Unauthorized("Only the quiz host can do that")

    @staticmethod
    def _require_player(reader: _Reader, session: QuizSession, device_fingerprint: str) -> Player:
        player = reader.player_by_fingerprint(session.id, device_fingerprint or "")
        if player is None or player.is_host:
            raise Unauthorized("Not a player in this quiz")
        return player

    def _transition(
        self,
        tx: Transaction,
        session: QuizSession,
        to_phase: str,
        *,
        answer_deadline: Optional[int] = None,
        prompt_deadline: Optional[int] = None,
        next_round_index: Optional[int] = None,
    ) -> str:
        """The only place ``phase`` is written. Returns the new phase.

        A deadline is kept only in its own phase, so leaving ``prompting`` or
        ``answering`` always clears it.
        """
        from_phase = session.phase
        if to_phase not in ALLOWED_TRANSITIONS[from_phase]:
            raise WrongPhase(f"Cannot move from {from_phase} to {to_phase}")
        if (to_phase == 'answering') != (answer_deadline is not None):
            raise ValueError("answer deadline is required exactly when answering")
        if (to_phase == 'prompting') != (prompt_deadline is not None):
            raise ValueError("prompt deadline is required exactly when prompting")

        changes = {
            'phase': to_phase,
            'answer_deadline_at': answer_deadline,
            'prompt_deadline_at': prompt_deadline,
        }
        if next_round_index is not None:
            if next_round_index != session.current_round_index + 1:
                raise ValueError("round index only advances by one")
            changes['current_round_index'] = next_round_index
        tx.patch(session, **changes)

        logger.info(f"🔀 Session {session.id}: {from_phase} -> {to_phase} (round {session.current_round_index})")
        log_game_event("phase_changed", session_id=session.id, data={
            "from": from_phase,
            "to": to_phase,
            "round_index": session.current_round_index,
        })
        return to_phase

    # ------------------------------------------------------------------
    # Session setup
    # ------------------------------------------------------------------

    async def create_session(
        self,
        caller_id: Optional[str],
        name: str,
        session_config: SessionConfig,
        host_name: str = "Host",
    ) -> dict:
        """Create a quiz owned by the caller, plus its host player row"""
        if not caller_id:
            raise Unauthorized("Must be signed in to create a quiz")
        name = (name or "").strip()
        if not 1 <= len(name) <= SESSION_NAME_MAX_CHARS:
            raise ValidationError(f"Quiz name must be 1-{SESSION_NAME_MAX_CHARS} characters")

        async with self.store.mutation() as tx:
            join_code = generate_join_code()
            while tx.session_by_join_code(join_code) is not None:
                join_code = generate_join_code()
            join_slug = generate_join_slug()
            while tx.session_by_join_slug(join_slug) is not None:
                join_slug = generate_join_slug()

            session = tx.insert(QuizSession(
                id=generate_id(),
                owner_id=caller_id,
                name=name,
                config=session_config,
                join_code=join_code,
                created_at=tx.now,
                updated_at=tx.now,
                join_link_slug=join_slug,
            ))
            tx.insert(Player(
                id=generate_id(),
                session_id=session.id,
                name=(host_name or "Host").strip()[:NAME_MAX_CHARS] or "Host",
                device_fingerprint=config.HOST_FINGERPRINT,
                is_host=True,
                connected_at=tx.now,
                last_seen_at=tx.now,
            ))

        logger.info(f"🆕 Session created: {session.id} code={join_code} rounds={session_config.totalRounds}")
        log_game_event("session_created", session_id=session.id, data={
            "join_code": join_code,
            "join_link_slug": join_slug,
            **session_config.model_dump(),
        })
        return {'sessionId': session.id, 'joinCode': join_code, 'joinLinkSlug': join_slug}

    def list_sessions_for_owner(self, caller_id: Optional[str]) -> list[SessionView]:
        if not caller_id:
            raise Unauthorized("Must be signed in to list quizzes")
        owned = self.store.read().sessions_by_owner(caller_id)
        return [s.to_view() for s in sorted(owned, key=lambda s: s.created_at, reverse=True)]

    async def update_session_config(
        self,
        caller_id: Optional[str],
        session_id: str,
        session_config: SessionConfig,
    ) -> SessionView:
        async with self.store.mutation() as tx:
            session = self._require_session(tx, session_id)
            self._require_owner(session, caller_id)
            if session.phase != 'lobby':
                raise WrongPhase("Configuration can only change in the lobby")
            tx.patch(session, config=session_config)
        await self._publish(session_id, 'config_updated', config=session_config.model_dump())
        return session.to_view()

    # ------------------------------------------------------------------
    # Players
    # ------------------------------------------------------------------

    async def join_session(self, join_code: str, name: str, device_fingerprint: str) -> dict:
        """Join in the lobby, or reconnect from a device already in the quiz"""
        device_fingerprint = (device_fingerprint or "").strip()
        if not device_fingerprint:
            raise ValidationError("Device fingerprint is required")
        if device_fingerprint == config.HOST_FINGERPRINT:
            raise ValidationError("That device fingerprint is reserved")

        async with self.store.mutation() as tx:
            session = tx.session_by_join_code((join_code or "").strip())
            if session is None:
                raise NotFound("Quiz not found")

            existing = tx.player_by_fingerprint(session.id, device_fingerprint)
            if existing is not None:
                tx.patch(existing, last_seen_at=tx.now)
                player, reconnected = existing, True
            else:
                if session.phase != 'lobby':
                    raise WrongPhase("Quiz already in progress")
                name = (name or "").strip()
                if not 1 <= len(name) <= NAME_MAX_CHARS:
                    raise ValidationError(f"Name must be 1-{NAME_MAX_CHARS} characters")
                active = tx.players_for_session(session.id)
                # Linear scans are fine at this capacity
                if any(p.name.lower() == name.lower() for p in active):
                    raise ValidationError("Name already taken")
                if sum(1 for p in active if not p.is_host) >= self.max_players:
                    raise ValidationError(f"Quiz is full ({self.max_players} players)")
                player = tx.insert(Player(
                    id=generate_id(),
                    session_id=session.id,
                    name=name,
                    device_fingerprint=device_fingerprint,
                    connected_at=tx.now,
                    last_seen_at=tx.now,
                ))
                reconnected = False

        if reconnected:
            logger.info(f"🔁 Player reconnected: {player.name} -> session {session.id}")
        else:
            logger.info(f"👤 Player joined: {player.name} -> session {session.id}")
            log_game_event("player_joined", session_id=session.id, player_id=player.id, data={"name": player.name})
            await self._publish(session.id, 'player_joined', player=player.to_view().model_dump())
        return {'playerId': player.id, 'sessionId': session.id, 'reconnected': reconnected}

    async def kick_player(self, caller_id: Optional[str], session_id: str, player_id: str) -> dict:
        lock_round_id = None
        async with self.store.mutation() as tx:
            session = self._require_session(tx, session_id)
            self._require_owner(session, caller_id)
            player = tx.get_player(player_id)
            if player is None or player.session_id != session.id:
                raise NotFound("Player not found")
            if player.is_host:
                raise ValidationError("The host cannot be kicked")
            if player.kicked_at is not None:
                return {'ok': True, 'alreadyKicked': True}
            tx.patch(player, kicked_at=tx.now)

            # One fewer eligible player may mean everyone left has answered
            if session.phase == 'answering':
                round_ = tx.active_round(session)
                if round_ is not None and answers.all_answered(tx, session, round_):
                    lock_round_id = round_.id

        logger.info(f"🚫 Player kicked: {player.name} from session {session_id}")
        log_game_event("player_kicked", session_id=session_id, player_id=player_id)
        await self._publish(session_id, 'player_kicked', playerId=player_id)
        if lock_round_id:
            self.scheduler.run_soon(self._lock_answers, session_id, lock_round_id, 'all_answered')
        return {'ok': True, 'alreadyKicked': False}

    # ------------------------------------------------------------------
    # Round flow
    # ------------------------------------------------------------------

    async def start_game(self, caller_id: Optional[str], session_id: str) -> TransitionResult:
        async with self.store.mutation() as tx:
            session = self._require_session(tx, session_id)
            self._require_owner(session, caller_id)
            if session.phase != 'lobby':
                return _skipped(session, "already_started")
            round_ = rounds.start_round(tx, session, 0, self.rng)
            phase = self._transition(tx, session, 'prompting', prompt_deadline=rounds.prompt_deadline(session, tx.now))

        log_game_event("game_started", session_id=session_id, round_id=round_.id, data={
            "prompter": round_.prompter_player_id,
        })
        await self._publish(session_id, 'round_started', roundIndex=0, prompterPlayerId=round_.prompter_player_id)
        return TransitionResult(phase=phase)

    async def submit_prompt(
        self,
        session_id: str,
        round_id: str,
        text: str,
        device_fingerprint: str,
    ) -> TransitionResult:
        """Record the prompter's topic and hand it to the trivia agent"""
        async with self.store.mutation() as tx:
            session = self._require_session(tx, session_id)
            player = self._require_player(tx, session, device_fingerprint)
            round_ = tx.active_round(session)
            if session.phase != 'prompting' or round_ is None or round_.id != round_id:
                return _skipped(session, "not_prompting")
            if player.id != round_.prompter_player_id:
                raise Unauthorized("Only this round's prompter can submit the prompt")
            prompt_text = rounds.record_prompt(tx, round_, text)
            tx.patch(player, last_seen_at=tx.now)
            phase = self._transition(tx, session, 'generating')

        log_game_event("prompt_submitted", session_id=session_id, player_id=player.id, round_id=round_id, data={
            "chars": len(prompt_text),
        })
        await self._publish(session_id, 'prompt_submitted', roundId=round_id, promptText=prompt_text)
        self.scheduler.run_soon(self._run_generation, GenerationJob(session_id, round_id, prompt_text))
        return TransitionResult(phase=phase)

    def _generation_pending(self, reader: _Reader, session_id: str, round_id: str) -> bool:
        session = reader.get_session(session_id)
        if session is None or session.phase != 'generating':
            return False
        round_ = reader.active_round(session)
        return (
            round_ is not None
            and round_.id == round_id
            and round_.answer_options is None
            and not round_.errored
        )

    async def _run_generation(self, job: GenerationJob) -> None:
        """Agent run outside any mutation; commits via re-validating mutations"""
        if not self._generation_pending(self.store.read(), job.session_id, job.round_id):
            logger.info(f"↷ Generation for round {job.round_id} no longer needed")
            return

        logger.info(f"🤖 Generating question for round {job.round_id}: '{job.prompt_text[:60]}'")
        try:
            question = await self.agent.ask(job.prompt_text)
            options = build_answer_options(question, self.rng)
        except Exception as e:
            logger.error(f"❌ Generation failed for round {job.round_id}: {e}")
            await self._record_generation_failure(job, f"{type(e).__name__}: {e}")
            return

        result = await self.complete_generation(job.session_id, job.round_id, options, question.question)
        if not result.skipped:
            correct = next(o.text for o in options if o.isCorrect)
            self.scheduler.run_soon(self._run_detail, job.round_id, question.question, correct)

    async def complete_generation(
        self,
        session_id: str,
        round_id: str,
        options: list[AnswerOption],
        question_text: str,
    ) -> TransitionResult:
        """generating -> answering once the round has its four options"""
        async with self.store.mutation() as tx:
            session = self._require_session(tx, session_id)
            if not self._generation_pending(tx, session_id, round_id):
                return _skipped(session, "not_generating")
            round_ = tx.active_round(session)
            rounds.record_answer_options(tx, round_, options, question_text)
            deadline = rounds.answer_deadline(session, tx.now)
            phase = self._transition(tx, session, 'answering', answer_deadline=deadline)

        log_game_event("question_ready", session_id=session_id, round_id=round_id, data={
            "deadline": deadline,
        })
        self.scheduler.schedule_at(deadline, self.handle_answer_deadline, session_id, round_id, deadline)
        await self._publish(session_id, 'question_started', roundId=round_id, answerDeadlineAt=deadline)
        return TransitionResult(phase=phase)

    async def _record_generation_failure(self, job: GenerationJob, reason: str) -> None:
        async with self.store.mutation() as tx:
            if not self._generation_pending(tx, job.session_id, job.round_id):
                return
            rounds.mark_errored(tx, tx.get_round(job.round_id), reason)
        # Stays in 'generating'; the host decides to retry or skip
        log_game_event("ai_generation_failed", session_id=job.session_id, round_id=job.round_id, data={
            "reason": reason,
        })
        await self._publish(job.session_id, 'generation_failed', roundId=job.round_id)

    async def _run_detail(self, round_id: str, question: str, correct_answer: str) -> None:
        """Best-effort fun fact shown at reveal"""
        try:
            detail = await self.agent.ask_detail(question, correct_answer)
        except Exception as e:
            logger.warning(f"⚠️  Detail generation failed for round {round_id}: {e}")
            return
        if not detail:
            return
        async with self.store.mutation() as tx:
            round_ = tx.get_round(round_id)
            if round_ is not None and round_.detail is None:
                tx.patch(round_, detail=detail)

    async def retry_generation(self, caller_id: Optional[str], session_id: str) -> TransitionResult:
        async with self.store.mutation() as tx:
            session = self._require_session(tx, session_id)
            self._require_owner(session, caller_id)
            round_ = tx.active_round(session)
            if session.phase != 'generating' or round_ is None:
                return _skipped(session, "not_generating")
            if not round_.errored:
                return _skipped(session, "generation_in_progress")
            rounds.clear_error(tx, round_)
            phase = session.phase
            job = GenerationJob(session_id, round_.id, round_.prompt_text)

        log_game_event("ai_generation_retry", session_id=session_id, round_id=job.round_id)
        self.scheduler.run_soon(self._run_generation, job)
        return TransitionResult(phase=phase)

    # ------------------------------------------------------------------
    # Answering
    # ------------------------------------------------------------------

    async def submit_answer(
        self,
        session_id: str,
        round_id: str,
        option_id: str,
        device_fingerprint: str,
    ) -> dict:
        everyone_answered = False
        async with self.store.mutation() as tx:
            session = self._require_session(tx, session_id)
            player = self._require_player(tx, session, device_fingerprint)
            round_ = tx.get_round(round_id)
            if round_ is None or round_.session_id != session.id:
                raise NotFound("Round not found")
            answer = answers.submit_answer(tx, session, round_, player, option_id)
            answered, eligible = answers.count_answers(tx, session, round_)
            everyone_answered = eligible > 0 and answered >= eligible

        log_game_event("answer_submitted", session_id=session_id, player_id=player.id, round_id=round_id, data={
            "correct": answer.is_correct,
            "points": answer.points,
            "latency_ms": answer.latency_ms,
        })
        await self._publish(session_id, 'answer_received', roundId=round_id, answerCount=answered, eligibleCount=eligible)
        if everyone_answered:
            logger.info(f"🚀 All {eligible} players answered round {round_id}, locking early")
            self.scheduler.run_soon(self._lock_answers, session_id, round_id, 'all_answered')
        return {'ok': True, 'answerId': answer.id, 'submittedAt': answer.submitted_at}

    async def _lock_answers(
        self,
        session_id: str,
        round_id: str,
        trigger: str,
        expected_deadline: Optional[int] = None,
    ) -> TransitionResult:
        """answering -> reveal; shared by the timer, all-answered and host paths.

        Safe to run any number of times: after the first commit the phase is
        no longer ``answering`` and later calls are no-ops.
        """
        async with self.store.mutation() as tx:
            session = self._require_session(tx, session_id)
            if session.phase != 'answering':
                return _skipped(session, "not_answering")
            if expected_deadline is not None and session.answer_deadline_at != expected_deadline:
                return _skipped(session, "stale_deadline")
            round_ = tx.active_round(session)
            if round_ is None or round_.id != round_id:
                return _skipped(session, "stale_round")
            filled = answers.fill_missing_answers(tx, session, round_)
            rounds.complete_round(tx, round_)
            phase = self._transition(tx, session, 'reveal')

        log_game_event("answers_locked", session_id=session_id, round_id=round_id, data={
            "trigger": trigger,
            "no_answer_count": filled,
        })
        await self._publish(session_id, 'answers_locked', roundId=round_id, trigger=trigger)
        return TransitionResult(phase=phase)

    async def handle_answer_deadline(self, session_id: str, round_id: str, expected_deadline: int) -> TransitionResult:
        """Timer callback; only acts if its deadline is still the active one"""
        try:
            return await self._lock_answers(session_id, round_id, 'deadline', expected_deadline)
        except NotFound:
            logger.debug(f"↷ Deadline fired for missing session {session_id}")
            return TransitionResult(skipped=True, phase='finished', reason="session_missing")

    async def lock_answers_early(self, caller_id: Optional[str], session_id: str, round_id: str) -> TransitionResult:
        session = self._require_session(self.store.read(), session_id)
        self._require_owner(session, caller_id)
        return await self._lock_answers(session_id, round_id, 'host')

    # ------------------------------------------------------------------
    # Host flow
    # ------------------------------------------------------------------

    async def skip_round(self, caller_id: Optional[str], session_id: str) -> TransitionResult:
        """Abandon the active round.

        While answering this is an early lock (players see the reveal). Before
        the question exists (prompting, or a stuck/errored generation) the
        round is closed and play goes straight to the scoreboard.
        """
        async with self.store.mutation() as tx:
            session = self._require_session(tx, session_id)
            self._require_owner(session, caller_id)
            round_ = tx.active_round(session)
            if session.phase == 'answering' and round_ is not None:
                round_id = round_.id
            elif session.phase in ('prompting', 'generating') and round_ is not None:
                rounds.complete_round(tx, round_)
                phase = self._transition(tx, session, 'scoreboard')
                round_id = None
            else:
                return _skipped(session, "nothing_to_skip")

        if round_id is not None:
            return await self._lock_answers(session_id, round_id, 'skip')

        log_game_event("round_skipped", session_id=session_id, round_id=round_.id)
        await self._publish(session_id, 'round_skipped', roundId=round_.id)
        return TransitionResult(phase=phase)

    async def advance_phase(self, caller_id: Optional[str], session_id: str) -> TransitionResult:
        """reveal -> scoreboard -> next round's prompting, or finished"""
        new_round = None
        async with self.store.mutation() as tx:
            session = self._require_session(tx, session_id)
            self._require_owner(session, caller_id)
            if session.phase == 'reveal':
                phase = self._transition(tx, session, 'scoreboard')
            elif session.phase == 'scoreboard':
                next_index = session.current_round_index + 1
                if next_index < session.config.totalRounds:
                    new_round = rounds.start_round(tx, session, next_index, self.rng)
                    phase = self._transition(
                        tx, session, 'prompting',
                        prompt_deadline=rounds.prompt_deadline(session, tx.now),
                        next_round_index=next_index,
                    )
                else:
                    phase = self._transition(tx, session, 'finished')
            else:
                return _skipped(session, "nothing_to_advance")

        if new_round is not None:
            await self._publish(
                session_id, 'round_started',
                roundIndex=new_round.round_index,
                prompterPlayerId=new_round.prompter_player_id,
            )
        else:
            await self._publish(session_id, 'phase_changed', phase=phase)
        return TransitionResult(phase=phase)

    async def end_quiz(self, caller_id: Optional[str], session_id: str) -> TransitionResult:
        async with self.store.mutation() as tx:
            session = self._require_session(tx, session_id)
            self._require_owner(session, caller_id)
            if session.phase == 'finished':
                return _skipped(session, "already_finished")
            if session.phase in ROUND_PHASES:
                round_ = tx.active_round(session)
                if round_ is not None:
                    rounds.complete_round(tx, round_)
            phase = self._transition(tx, session, 'finished')

        log_game_event("quiz_ended", session_id=session_id)
        await self._publish(session_id, 'phase_changed', phase='finished')
        return TransitionResult(phase=phase)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_live_session(self, join_code: str) -> LiveSession:
        reader = self.store.read()
        session = reader.session_by_join_code((join_code or "").strip())
        if session is None:
            raise NotFound("Quiz not found")

        active_round = None
        answer_count = 0
        if session.phase in ROUND_PHASES:
            round_ = reader.active_round(session)
            if round_ is not None:
                active_round = round_.to_view(include_answers=session.phase in REVEALED_PHASES)
                answer_count, _ = answers.count_answers(reader, session, round_)

        return LiveSession(
            session=session.to_view(),
            players=[p.to_view() for p in reader.players_for_session(session.id)],
            activeRound=active_round,
            answerCount=answer_count,
        )

    def resolve_join_link(self, slug: str) -> dict:
        """Map a shared /join/<slug> link to the quiz's join code"""
        session = self.store.read().session_by_join_slug((slug or "").strip())
        if session is None:
            raise NotFound("Join link not found")
        return {'sessionId': session.id, 'joinCode': session.join_code, 'name': session.name}

    def get_leaderboard(self, session_id: str) -> list[LeaderboardEntry]:
        reader = self.store.read()
        session = self._require_session(reader, session_id)
        players = sorted(reader.eligible_players(session.id), key=lambda p: (-p.score, p.name.lower(), p.name))
        return [
            LeaderboardEntry(id=p.id, name=p.name, score=p.score, position=i + 1)
            for i, p in enumerate(players)
        ]
