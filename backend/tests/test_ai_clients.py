import json

import httpx
import pytest

import copilot_client
from web_search import SerperSearchClient


def test_extract_json_payload_from_fenced_block():
    content = 'Sure!\n```json\n{"action": "generate", "reasoning": "easy"}\n```\nGood luck'
    assert copilot_client.extract_json_payload(content) == {"action": "generate", "reasoning": "easy"}


def test_extract_json_payload_without_object():
    with pytest.raises(ValueError):
        copilot_client.extract_json_payload("no json here")


@pytest.mark.asyncio
async def test_unreadable_decision_falls_back_to_generate(monkeypatch):
    async def fake_copilot(prompt, system_message, caller):
        return "I think we should search, probably"

    monkeypatch.setattr(copilot_client, "generate_with_copilot", fake_copilot)
    action = await copilot_client.decide_next_action(1, 6, [], "movies from 2025")
    assert action.action == 'generate'


@pytest.mark.asyncio
async def test_question_parsing(monkeypatch):
    async def fake_copilot(prompt, system_message, caller):
        assert "Red things" in prompt
        return json.dumps({"question": "Q?", "correct": "A", "distractors": ["B", "C", "D"]})

    monkeypatch.setattr(copilot_client, "generate_with_copilot", fake_copilot)
    question = await copilot_client.generate_trivia_question("Red things")
    assert question.correct == "A"


@pytest.mark.asyncio
async def test_question_with_wrong_distractor_count_is_rejected(monkeypatch):
    async def fake_copilot(prompt, system_message, caller):
        return json.dumps({"question": "Q?", "correct": "A", "distractors": ["B"]})

    monkeypatch.setattr(copilot_client, "generate_with_copilot", fake_copilot)
    with pytest.raises(ValueError):
        await copilot_client.generate_trivia_question("anything")


@pytest.mark.asyncio
async def test_serper_search_maps_organic_results():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers["X-API-KEY"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"organic": [
            {"title": "Mars", "link": "https://example.com/mars", "snippet": "The red planet."},
            {"link": "https://example.com/blank"},
        ]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = SerperSearchClient(api_key="k", url="https://serper.test/search", num_results=3, http=http)
        results = await client.search("red planet")

    assert seen == {"key": "k", "body": {"q": "red planet", "num": 3}}
    assert [r.title for r in results] == ["Mars", "No title"]
    assert results[1].snippet == "No snippet available"


@pytest.mark.asyncio
async def test_serper_errors_become_runtime_errors():
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    async with httpx.AsyncClient(transport=transport) as http:
        client = SerperSearchClient(api_key="k", url="https://serper.test/search", http=http)
        with pytest.raises(RuntimeError):
            await client.search("anything")


@pytest.mark.asyncio
async def test_serper_without_key():
    with pytest.raises(RuntimeError):
        await SerperSearchClient(api_key="").search("anything")
