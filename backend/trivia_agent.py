"""
Trivia generation agent
=======================
A bounded decide / search / generate loop. Each step asks the model whether
it needs fresh information; searches accumulate as context until the model
decides to generate. If the step budget runs out, or a search fails, one
last generation runs without any search context.

The loop does network I/O and never touches the entity store; the game
controller commits its result in a separate, re-validating mutation.
"""

from __future__ import annotations

import random
from typing import Awaitable, Callable, Optional

import config
import copilot_client
from errors import AiGenerationFailed
from logger import get_logger
from models import AnswerOption, NextAction, SearchSnippet, TriviaQuestion, generate_id
from web_search import SerperSearchClient

logger = get_logger("PromptQuiz.agent")

DecideFn = Callable[[int, int, list[dict], str], Awaitable[NextAction]]
SearchFn = Callable[[str], Awaitable[list[SearchSnippet]]]
GenerateFn = Callable[..., Awaitable[TriviaQuestion]]
DetailFn = Callable[[str, str], Awaitable[str]]


def build_search_context(search_history: list[dict]) -> str:
    lines = [
        f"{r['title']}: {r['snippet']}"
        for entry in search_history
        for r in entry["results"]
    ]
    if not lines:
        return ""
    return "\n\nAdditional context from web search:\n" + "\n".join(lines)


def build_answer_options(question: TriviaQuestion, rng: random.Random) -> list[AnswerOption]:
    """One correct option plus three distractors, uniformly shuffled."""
    texts = [question.correct.strip()] + [d.strip() for d in question.distractors]
    if any(not t for t in texts):
        raise AiGenerationFailed("Generated an empty answer option")
    if len({t.lower() for t in texts}) != len(texts):
        raise AiGenerationFailed("Generated duplicate answer options")

    options = [AnswerOption(id=generate_id(), text=texts[0], isCorrect=True)]
    options += [AnswerOption(id=generate_id(), text=t, isCorrect=False) for t in texts[1:]]
    # random.shuffle is Fisher-Yates
    rng.shuffle(options)
    return options


class TriviaAgent:
    def __init__(
        self,
        decide: DecideFn = copilot_client.decide_next_action,
        search: Optional[SearchFn] = None,
        generate: GenerateFn = copilot_client.generate_trivia_question,
        detail: Optional[DetailFn] = copilot_client.generate_trivia_detail,
        max_steps: int = config.QUIZ_AGENT_MAX_STEPS,
    ):
        self.decide = decide
        self.search = search or SerperSearchClient().search
        self.generate = generate
        self.detail = detail
        self.max_steps = max_steps

    async def ask(self, prompt_text: str) -> TriviaQuestion:
        """Produce one trivia question for ``prompt_text``.

        Search failures only end the loop early. Failures of the decide or
        generate calls propagate to the caller.
        """
        search_history: list[dict] = []
        step_count = 0

        while step_count < self.max_steps:
            step_count += 1
            decision = await self.decide(step_count, self.max_steps, search_history, prompt_text)

            if decision.action == 'search':
                if not decision.searchQuery:
                    raise AiGenerationFailed("Search action without a search query")
                try:
                    results = await self.search(decision.searchQuery)
                except Exception as e:
                    logger.warning(f"⚠️  Search failed at step {step_count}, generating without more context: {e}")
                    break
                search_history.append({
                    "query": decision.searchQuery,
                    "results": [r.model_dump() for r in results],
                })
                logger.info(f"Step {step_count}: searched '{decision.searchQuery}', {len(results)} results")
            else:
                question = await self.generate(prompt_text, build_search_context(search_history))
                logger.info(f"Step {step_count}: generated trivia question")
                return question

        logger.info("Agent loop ended without generating, falling back to plain generation")
        return await self.generate(prompt_text)

    async def ask_detail(self, question: str, correct_answer: str) -> Optional[str]:
        if self.detail is None:
            return None
        return await self.detail(question, correct_answer)
