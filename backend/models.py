from pydantic import BaseModel, Field
from typing import Literal, Optional
from dataclasses import dataclass
import secrets


Phase = Literal['lobby', 'prompting', 'generating', 'answering', 'reveal', 'scoreboard', 'finished']

# Phases in which a round is active
ROUND_PHASES = ('prompting', 'generating', 'answering', 'reveal', 'scoreboard')

# Phases in which the correct option may be shown to clients
REVEALED_PHASES = ('reveal', 'scoreboard', 'finished')

NO_ANSWER = ""  # selected_option_id sentinel for a synthesized "no answer"


class SessionConfig(BaseModel):
    totalRounds: int = Field(default=5, ge=1, le=20)
    secondsPerQuestion: int = Field(default=30, ge=5, le=120)
    secondsForPrompt: int = Field(default=60, ge=10, le=300)


class AnswerOption(BaseModel):
    id: str
    text: str
    isCorrect: bool


class TriviaQuestion(BaseModel):
    """What the AI returns for one prompt"""
    question: str
    correct: str
    distractors: list[str] = Field(min_length=3, max_length=3)


class NextAction(BaseModel):
    action: Literal['search', 'generate']
    reasoning: Optional[str] = None
    searchQuery: Optional[str] = None


class SearchSnippet(BaseModel):
    title: str
    url: str
    snippet: str


# --- Client-facing views ---

class SessionView(BaseModel):
    id: str
    ownerId: str
    name: str
    config: SessionConfig
    phase: Phase
    currentRoundIndex: int
    joinCode: str
    joinLinkSlug: str = ""
    answerDeadlineAt: Optional[int] = None
    promptDeadlineAt: Optional[int] = None
    createdAt: int
    updatedAt: int
    version: int


class PlayerView(BaseModel):
    id: str
    sessionId: str
    name: str
    isHost: bool
    score: int
    connectedAt: int
    lastSeenAt: int
    kickedAt: Optional[int] = None


class RoundView(BaseModel):
    id: str
    sessionId: str
    roundIndex: int
    prompterPlayerId: str
    promptText: Optional[str] = None
    questionText: Optional[str] = None
    answerOptions: Optional[list[AnswerOption]] = None
    detail: Optional[str] = None
    errored: Optional[bool] = None
    completedAt: Optional[int] = None


class LiveSession(BaseModel):
    session: SessionView
    players: list[PlayerView]
    activeRound: Optional[RoundView] = None
    answerCount: int = 0


class LeaderboardEntry(BaseModel):
    id: str
    name: str
    score: int
    position: int


class TransitionResult(BaseModel):
    """Outcome of a phase transition; ``skipped`` marks a stale no-op"""
    ok: bool = True
    skipped: bool = False
    phase: Phase
    reason: Optional[str] = None


# --- Stored entities ---

@dataclass
class QuizSession:
    id: str
    owner_id: str
    name: str
    config: SessionConfig
    join_code: str
    created_at: int
    updated_at: int
    phase: str = 'lobby'
    current_round_index: int = 0  # only increases
    answer_deadline_at: Optional[int] = None  # set iff phase == 'answering'
    prompt_deadline_at: Optional[int] = None  # set iff phase == 'prompting'
    version: int = 0
    join_link_slug: str = ""  # shareable /join/<slug> alias of the join code

    def to_view(self) -> SessionView:
        return SessionView(
            id=self.id,
            ownerId=self.owner_id,
            name=self.name,
            config=self.config,
            phase=self.phase,
            currentRoundIndex=self.current_round_index,
            joinCode=self.join_code,
            joinLinkSlug=self.join_link_slug,
            answerDeadlineAt=self.answer_deadline_at,
            promptDeadlineAt=self.prompt_deadline_at,
            createdAt=self.created_at,
            updatedAt=self.updated_at,
            version=self.version,
        )


@dataclass
class Player:
    id: str
    session_id: str
    name: str
    device_fingerprint: str
    connected_at: int
    last_seen_at: int
    is_host: bool = False
    score: int = 0
    kicked_at: Optional[int] = None  # soft delete

    @property
    def is_active(self) -> bool:
        return self.kicked_at is None

    @property
    def is_eligible(self) -> bool:
        """Counts toward prompting and answering"""
        return self.kicked_at is None and not self.is_host

    def to_view(self) -> PlayerView:
        return PlayerView(
            id=self.id,
            sessionId=self.session_id,
            name=self.name,
            isHost=self.is_host,
            score=self.score,
            connectedAt=self.connected_at,
            lastSeenAt=self.last_seen_at,
            kickedAt=self.kicked_at,
        )


@dataclass
class Round:
    id: str
    session_id: str
    round_index: int
    prompter_player_id: str
    created_at: int
    prompt_text: Optional[str] = None
    question_text: Optional[str] = None
    answer_options: Optional[list[AnswerOption]] = None
    detail: Optional[str] = None
    errored: Optional[bool] = None
    error_reason: Optional[str] = None
    completed_at: Optional[int] = None

    def correct_option(self) -> Optional[AnswerOption]:
        for option in self.answer_options or []:
            if option.isCorrect:
                return option
        return None

    def to_view(self, include_answers: bool = True) -> RoundView:
        """Convert to client-facing view (without correct answer while answering)"""
        options = self.answer_options
        if options is not None and not include_answers:
            options = [AnswerOption(id=o.id, text=o.text, isCorrect=False) for o in options]
        return RoundView(
            id=self.id,
            sessionId=self.session_id,
            roundIndex=self.round_index,
            prompterPlayerId=self.prompter_player_id,
            promptText=self.prompt_text,
            questionText=self.question_text,
            answerOptions=options,
            detail=self.detail if include_answers else None,
            errored=self.errored,
            completedAt=self.completed_at,
        )


@dataclass
class PlayerAnswer:
    id: str
    session_id: str
    round_id: str
    player_id: str
    selected_option_id: str
    is_correct: bool
    submitted_at: int
    points: int = 0
    latency_ms: Optional[int] = None


@dataclass
class GenerationJob:
    """Snapshot handed from the prompt mutation to the background agent run"""
    session_id: str
    round_id: str
    prompt_text: str


def generate_join_code(length: int = 6) -> str:
    """Generate a random join code"""
    # No O/0/I/1 to keep codes readable
    chars = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
    return ''.join(secrets.choice(chars) for _ in range(length))


def generate_id() -> str:
    """Generate an entity ID"""
    return secrets.token_urlsafe(12)


SLUG_WORDS = ("quick", "smart", "fun", "cool", "bright", "happy", "fast", "clever")
SLUG_ANIMALS = ("fox", "owl", "cat", "dog", "bird", "bear", "deer", "seal")


def generate_join_slug() -> str:
    """Generate a readable join link slug such as ``quick-fox-12``"""
    return f"{secrets.choice(SLUG_WORDS)}-{secrets.choice(SLUG_ANIMALS)}-{secrets.randbelow(99) + 1}"
