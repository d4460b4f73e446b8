import os
import random
import sys
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

# Keep test logs out of the source tree
os.environ.setdefault("QUIZ_LOG_DIR", tempfile.mkdtemp(prefix="promptquiz-logs-"))

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from game import GameController
from models import NextAction, SearchSnippet, SessionConfig, TriviaQuestion
from scheduler import TaskScheduler
from store import EntityStore
from trivia_agent import TriviaAgent

START_MS = 1_700_000_000_000
OWNER = "user_host"


class FakeClock:
    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeAI:
    """Stand-ins for the model and search calls, with call recording"""

    def __init__(self):
        self.actions: list[NextAction] = []
        self.question = TriviaQuestion(
            question="Which planet is known as the Red Planet?",
            correct="Mars",
            distractors=["Venus", "Jupiter", "Saturn"],
        )
        self.generate_error: Exception | None = None
        self.search_error: Exception | None = None
        self.decide_calls: list[int] = []
        self.generate_calls: list[tuple[str, str]] = []
        self.search_calls: list[str] = []

    async def decide(self, step_count, max_steps, search_history, prompt_text):
        self.decide_calls.append(step_count)
        if self.actions:
            return self.actions.pop(0)
        return NextAction(action='generate')

    async def search(self, query):
        self.search_calls.append(query)
        if self.search_error:
            raise self.search_error
        return [SearchSnippet(title=f"About {query}", url="https://example.com", snippet="A relevant fact.")]

    async def generate(self, prompt_text, search_context=""):
        self.generate_calls.append((prompt_text, search_context))
        if self.generate_error:
            raise self.generate_error
        return self.question

    async def detail(self, question, correct_answer):
        return f"{correct_answer} looks red because of iron oxide."


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_ai():
    return FakeAI()


@pytest_asyncio.fixture
async def controller(clock, fake_ai):
    agent = TriviaAgent(
        decide=fake_ai.decide,
        search=fake_ai.search,
        generate=fake_ai.generate,
        detail=fake_ai.detail,
        max_steps=6,
    )
    game = GameController(
        store=EntityStore(clock),
        scheduler=TaskScheduler(clock, tick=0.01),
        agent=agent,
        rng=random.Random(42),
        clock=clock,
    )
    try:
        yield game
    finally:
        await game.scheduler.shutdown()


@pytest.fixture
def quiz_config():
    return SessionConfig(totalRounds=1, secondsPerQuestion=30, secondsForPrompt=30)


@pytest_asyncio.fixture
async def lobby(controller, quiz_config):
    """A session in the lobby with two players, alice and bob"""
    created = await controller.create_session(OWNER, "Friday Trivia", quiz_config)
    players = {}
    for name in ("alice", "bob"):
        joined = await controller.join_session(created["joinCode"], name, f"fp-{name}")
        players[name] = joined["playerId"]
    return {
        "session_id": created["sessionId"],
        "join_code": created["joinCode"],
        "players": players,
    }


def fingerprint_of(controller, player_id: str) -> str:
    return controller.store.read().get_player(player_id).device_fingerprint


async def play_to_answering(controller, lobby, prompt="test prompt would you rather"):
    """Start the game, submit the prompt and let generation finish"""
    session_id = lobby["session_id"]
    await controller.start_game(OWNER, session_id)
    reader = controller.store.read()
    round_ = reader.active_round(reader.get_session(session_id))
    await controller.submit_prompt(
        session_id, round_.id, prompt, fingerprint_of(controller, round_.prompter_player_id),
    )
    await controller.scheduler.drain()
    return controller.store.read().get_round(round_.id)
