import random
from collections import Counter

import pytest

from errors import AiGenerationFailed
from models import NextAction, TriviaQuestion
from trivia_agent import TriviaAgent, build_answer_options, build_search_context


def _agent(fake_ai, max_steps=6):
    return TriviaAgent(
        decide=fake_ai.decide,
        search=fake_ai.search,
        generate=fake_ai.generate,
        detail=fake_ai.detail,
        max_steps=max_steps,
    )


@pytest.mark.asyncio
async def test_generates_immediately_when_no_search_needed(fake_ai):
    question = await _agent(fake_ai).ask("capital cities of europe")
    assert question.correct == "Mars"
    assert fake_ai.decide_calls == [1]
    assert fake_ai.generate_calls == [("capital cities of europe", "")]


@pytest.mark.asyncio
async def test_search_results_become_generation_context(fake_ai):
    fake_ai.actions = [
        NextAction(action='search', searchQuery="2024 olympics 100m"),
        NextAction(action='generate'),
    ]
    await _agent(fake_ai).ask("2024 olympics sprint winners")

    assert fake_ai.search_calls == ["2024 olympics 100m"]
    prompt, context = fake_ai.generate_calls[0]
    assert "Additional context from web search" in context
    assert "About 2024 olympics 100m: A relevant fact." in context


@pytest.mark.asyncio
async def test_search_failure_falls_back_to_plain_generation(fake_ai):
    fake_ai.actions = [NextAction(action='search', searchQuery="latest phones")]
    fake_ai.search_error = RuntimeError("Serper API error: 500")

    question = await _agent(fake_ai).ask("latest phone releases")

    assert question.question.startswith("Which planet")
    assert fake_ai.decide_calls == [1]
    assert fake_ai.generate_calls == [("latest phone releases", "")]


@pytest.mark.asyncio
async def test_exhausted_steps_generate_without_context(fake_ai):
    fake_ai.actions = [NextAction(action='search', searchQuery=f"q{i}") for i in range(6)]

    await _agent(fake_ai, max_steps=6).ask("recent science news")

    assert fake_ai.decide_calls == [1, 2, 3, 4, 5, 6]
    assert len(fake_ai.search_calls) == 6
    assert fake_ai.generate_calls == [("recent science news", "")]


@pytest.mark.asyncio
async def test_search_without_query_is_a_generation_failure(fake_ai):
    fake_ai.actions = [NextAction(action='search')]
    with pytest.raises(AiGenerationFailed):
        await _agent(fake_ai).ask("anything at all")


@pytest.mark.asyncio
async def test_generation_errors_propagate(fake_ai):
    fake_ai.generate_error = RuntimeError("model unavailable")
    with pytest.raises(RuntimeError):
        await _agent(fake_ai).ask("anything at all")


def test_build_search_context_empty():
    assert build_search_context([]) == ""
    assert build_search_context([{"query": "q", "results": []}]) == ""


def test_answer_options_have_one_correct_and_four_entries():
    question = TriviaQuestion(question="Q?", correct="A", distractors=["B", "C", "D"])
    options = build_answer_options(question, random.Random(1))
    assert len(options) == 4
    assert [o.text for o in options if o.isCorrect] == ["A"]
    assert {o.text for o in options} == {"A", "B", "C", "D"}
    assert len({o.id for o in options}) == 4


def test_answer_option_order_is_reproducible_with_a_seed():
    question = TriviaQuestion(question="Q?", correct="A", distractors=["B", "C", "D"])
    first = [o.text for o in build_answer_options(question, random.Random(7))]
    second = [o.text for o in build_answer_options(question, random.Random(7))]
    assert first == second


def test_correct_answer_position_is_roughly_uniform():
    question = TriviaQuestion(question="Q?", correct="A", distractors=["B", "C", "D"])
    rng = random.Random(2024)
    positions = Counter(
        next(i for i, o in enumerate(build_answer_options(question, rng)) if o.isCorrect)
        for _ in range(4000)
    )
    assert set(positions) == {0, 1, 2, 3}
    assert all(850 < count < 1150 for count in positions.values())


def test_duplicate_options_are_rejected():
    question = TriviaQuestion(question="Q?", correct="Paris", distractors=["paris", "Rome", "Oslo"])
    with pytest.raises(AiGenerationFailed):
        build_answer_options(question, random.Random(0))
