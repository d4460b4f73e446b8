import pytest

from errors import DuplicateKey, ValidationError
from models import Player, PlayerAnswer, QuizSession, Round, SessionConfig
from store import EntityStore


def _session(session_id="s1", code="ABC234"):
    return QuizSession(
        id=session_id, owner_id="owner", name="Quiz", config=SessionConfig(),
        join_code=code, created_at=1, updated_at=1,
    )


def _player(player_id, session_id="s1", fingerprint=None):
    return Player(
        id=player_id, session_id=session_id, name=player_id,
        device_fingerprint=fingerprint or f"fp-{player_id}", connected_at=1, last_seen_at=1,
    )


@pytest.mark.asyncio
async def test_failed_mutation_rolls_back_every_write():
    store = EntityStore(clock=lambda: 100)
    async with store.mutation() as tx:
        tx.insert(_session())

    with pytest.raises(ValidationError):
        async with store.mutation() as tx:
            session = tx.get_session("s1")
            tx.insert(_player("p1"))
            tx.patch(session, phase='prompting')
            raise ValidationError("boom")

    reader = store.read()
    session = reader.get_session("s1")
    assert session.phase == 'lobby'
    assert session.version == 0
    assert reader.players_for_session("s1") == []
    assert reader.player_by_fingerprint("s1", "fp-p1") is None


@pytest.mark.asyncio
async def test_session_patch_bumps_version_and_updated_at():
    store = EntityStore(clock=lambda: 500)
    async with store.mutation() as tx:
        session = tx.insert(_session())
        tx.patch(session, name="Renamed")
    assert session.version == 1
    assert session.updated_at == 500


@pytest.mark.asyncio
async def test_join_code_lookup_is_case_insensitive_and_unique():
    store = EntityStore()
    async with store.mutation() as tx:
        tx.insert(_session())
    assert store.read().session_by_join_code("abc234").id == "s1"

    with pytest.raises(DuplicateKey):
        async with store.mutation() as tx:
            tx.insert(_session("s2", "ABC234"))
    assert store.read().get_session("s2") is None


@pytest.mark.asyncio
async def test_answer_index_rejects_second_answer_for_same_round():
    store = EntityStore()
    async with store.mutation() as tx:
        tx.insert(PlayerAnswer(
            id="a1", session_id="s1", round_id="r1", player_id="p1",
            selected_option_id="o1", is_correct=True, submitted_at=1,
        ))
    with pytest.raises(DuplicateKey):
        async with store.mutation() as tx:
            tx.insert(PlayerAnswer(
                id="a2", session_id="s1", round_id="r1", player_id="p1",
                selected_option_id="o2", is_correct=False, submitted_at=2,
            ))
    assert [a.id for a in store.read().answers_for_round("r1")] == ["a1"]


@pytest.mark.asyncio
async def test_round_index_is_unique_per_session():
    store = EntityStore()
    async with store.mutation() as tx:
        tx.insert(Round(id="r1", session_id="s1", round_index=0, prompter_player_id="p1", created_at=1))
        tx.insert(Round(id="r2", session_id="s2", round_index=0, prompter_player_id="p2", created_at=1))
    with pytest.raises(DuplicateKey):
        async with store.mutation() as tx:
            tx.insert(Round(id="r3", session_id="s1", round_index=0, prompter_player_id="p1", created_at=1))
    assert store.read().round_by_index("s1", 0).id == "r1"


@pytest.mark.asyncio
async def test_kicked_players_drop_out_of_active_queries():
    store = EntityStore(clock=lambda: 9)
    async with store.mutation() as tx:
        tx.insert(_session())
        tx.insert(_player("p1"))
        kicked = tx.insert(_player("p2"))
        tx.patch(kicked, kicked_at=tx.now)

    reader = store.read()
    assert [p.id for p in reader.players_for_session("s1")] == ["p1"]
    assert len(reader.players_for_session("s1", include_kicked=True)) == 2
    assert reader.player_by_fingerprint("s1", "fp-p2") is None


@pytest.mark.asyncio
async def test_join_link_slug_is_unique_and_optional():
    store = EntityStore()
    first = _session("s1", "ABC234")
    first.join_link_slug = "quick-fox-12"
    async with store.mutation() as tx:
        tx.insert(first)
        tx.insert(_session("s2", "DEF567"))
        tx.insert(_session("s3", "GHJ892"))

    duplicate = _session("s4", "KLM345")
    duplicate.join_link_slug = "quick-fox-12"
    with pytest.raises(DuplicateKey):
        async with store.mutation() as tx:
            tx.insert(duplicate)

    reader = store.read()
    assert reader.session_by_join_slug("Quick-Fox-12").id == "s1"
    assert reader.get_session("s4") is None
    assert reader.session_by_join_code("KLM345") is None
