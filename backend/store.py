"""
In-memory entity store
======================
Four collections (sessions, players, rounds, player_answers) with the
secondary lookups the game queries by. Mutations are serialised with one
asyncio lock and keep an undo log, so a ``mutation()`` block either commits
every write or none of them.

All writes must go through ``Transaction.insert`` / ``Transaction.patch``;
entities handed out by reads are live objects and must not be mutated
directly.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

from errors import DuplicateKey
from models import Player, PlayerAnswer, QuizSession, Round


def now_ms() -> int:
    return int(time.time() * 1000)


class _Reader:
    """Point-in-time queries over the collections."""

    def __init__(self, store: "EntityStore"):
        self._s = store

    # ---- sessions -------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[QuizSession]:
        return self._s.sessions.get(session_id)

    def session_by_join_code(self, join_code: str) -> Optional[QuizSession]:
        session_id = self._s.session_by_code.get(join_code.upper())
        return self._s.sessions.get(session_id) if session_id else None

    def session_by_join_slug(self, slug: str) -> Optional[QuizSession]:
        session_id = self._s.session_by_slug.get(slug.lower())
        return self._s.sessions.get(session_id) if session_id else None

    def sessions_by_owner(self, owner_id: str) -> list[QuizSession]:
        ids = self._s.sessions_by_owner.get(owner_id, [])
        return [self._s.sessions[i] for i in ids]

    # ---- players --------------------------------------------------------

    def get_player(self, player_id: str) -> Optional[Player]:
        return self._s.players.get(player_id)

    def players_for_session(self, session_id: str, include_kicked: bool = False) -> list[Player]:
        players = [self._s.players[i] for i in self._s.players_by_session.get(session_id, [])]
        if include_kicked:
            return players
        return [p for p in players if p.is_active]

    def eligible_players(self, session_id: str) -> list[Player]:
        """Non-host, non-kicked players"""
        return [p for p in self.players_for_session(session_id) if p.is_eligible]

    def player_by_fingerprint(self, session_id: str, fingerprint: str) -> Optional[Player]:
        for player_id in self._s.players_by_fingerprint.get(fingerprint, []):
            player = self._s.players[player_id]
            if player.session_id == session_id and player.is_active:
                return player
        return None

    # ---- rounds ---------------------------------------------------------

    def get_round(self, round_id: str) -> Optional[Round]:
        return self._s.rounds.get(round_id)

    def round_by_index(self, session_id: str, round_index: int) -> Optional[Round]:
        round_id = self._s.round_by_key.get((session_id, round_index))
        return self._s.rounds.get(round_id) if round_id else None

    def active_round(self, session: QuizSession) -> Optional[Round]:
        return self.round_by_index(session.id, session.current_round_index)

    # ---- answers --------------------------------------------------------

    def answers_for_round(self, round_id: str) -> list[PlayerAnswer]:
        return [self._s.answers[i] for i in self._s.answers_by_round.get(round_id, [])]

    def answer_for(self, player_id: str, round_id: str) -> Optional[PlayerAnswer]:
        answer_id = self._s.answer_by_key.get((player_id, round_id))
        return self._s.answers.get(answer_id) if answer_id else None


class Transaction(_Reader):
    """Reader plus writes, with an undo log for rollback."""

    def __init__(self, store: "EntityStore", now: int):
        super().__init__(store)
        self.now = now
        self._undo: list[Callable[[], None]] = []

    def insert(self, entity: Any) -> Any:
        s = self._s
        if isinstance(entity, QuizSession):
            code = entity.join_code.upper()
            if code in s.session_by_code:
                raise DuplicateKey(f"join code {code} already in use")
            slug = entity.join_link_slug.lower()
            if slug and slug in s.session_by_slug:
                raise DuplicateKey(f"join link {slug} already in use")
            s.sessions[entity.id] = entity
            s.session_by_code[code] = entity.id
            if slug:
                s.session_by_slug[slug] = entity.id
            owned = s.sessions_by_owner.setdefault(entity.owner_id, [])
            owned.append(entity.id)

            def undo():
                del s.sessions[entity.id]
                del s.session_by_code[code]
                s.session_by_slug.pop(slug, None)
                owned.remove(entity.id)

        elif isinstance(entity, Player):
            s.players[entity.id] = entity
            in_session = s.players_by_session.setdefault(entity.session_id, [])
            in_session.append(entity.id)
            by_fp = s.players_by_fingerprint.setdefault(entity.device_fingerprint, [])
            by_fp.append(entity.id)

            def undo():
                del s.players[entity.id]
                in_session.remove(entity.id)
                by_fp.remove(entity.id)

        elif isinstance(entity, Round):
            key = (entity.session_id, entity.round_index)
            if key in s.round_by_key:
                raise DuplicateKey(f"round {entity.round_index} already exists")
            s.rounds[entity.id] = entity
            s.round_by_key[key] = entity.id

            def undo():
                del s.rounds[entity.id]
                del s.round_by_key[key]

        elif isinstance(entity, PlayerAnswer):
            key = (entity.player_id, entity.round_id)
            if key in s.answer_by_key:
                raise DuplicateKey("player already answered this round")
            s.answers[entity.id] = entity
            s.answer_by_key[key] = entity.id
            in_round = s.answers_by_round.setdefault(entity.round_id, [])
            in_round.append(entity.id)

            def undo():
                del s.answers[entity.id]
                del s.answer_by_key[key]
                in_round.remove(entity.id)

        else:
            raise TypeError(f"Unsupported entity: {type(entity).__name__}")

        self._undo.append(undo)
        return entity

    def patch(self, entity: Any, **changes: Any) -> Any:
        if isinstance(entity, QuizSession):
            changes.setdefault('updated_at', self.now)
            changes['version'] = entity.version + 1
        previous = {name: getattr(entity, name) for name in changes}
        for name, value in changes.items():
            setattr(entity, name, value)

        def undo():
            for name, value in previous.items():
                setattr(entity, name, value)

        self._undo.append(undo)
        return entity

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()


class EntityStore:
    def __init__(self, clock: Callable[[], int] = now_ms):
        self.clock = clock
        self.sessions: dict[str, QuizSession] = {}
        self.players: dict[str, Player] = {}
        self.rounds: dict[str, Round] = {}
        self.answers: dict[str, PlayerAnswer] = {}

        self.session_by_code: dict[str, str] = {}
        self.session_by_slug: dict[str, str] = {}
        self.sessions_by_owner: dict[str, list[str]] = {}
        self.players_by_session: dict[str, list[str]] = {}
        self.players_by_fingerprint: dict[str, list[str]] = {}
        self.round_by_key: dict[tuple[str, int], str] = {}
        self.answers_by_round: dict[str, list[str]] = {}
        self.answer_by_key: dict[tuple[str, str], str] = {}

        self._lock = asyncio.Lock()

    def read(self) -> _Reader:
        return _Reader(self)

    @asynccontextmanager
    async def mutation(self) -> AsyncIterator[Transaction]:
        """Run a block of reads and writes as one atomic unit."""
        async with self._lock:
            tx = Transaction(self, self.clock())
            try:
                yield tx
            except BaseException:
                tx.rollback()
                raise
