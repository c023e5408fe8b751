import asyncio
import json
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from blindtest.config import KEY_PREFIX
from blindtest.models.room import Track

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def default_game_name(at: datetime = None) -> str:
    at = at or datetime.now()
    return f"Game of {at.strftime('%d/%m/%Y %H:%M')}"


def _response_times(answers: List[dict]) -> Dict[str, Optional[float]]:
    elapsed = [a["elapsed_ms"] for a in answers if a.get("elapsed_ms") is not None]
    if not elapsed:
        return {"avgResponseTimeMs": None, "minResponseTimeMs": None, "maxResponseTimeMs": None}
    return {
        "avgResponseTimeMs": sum(elapsed) / len(elapsed),
        "minResponseTimeMs": min(elapsed),
        "maxResponseTimeMs": max(elapsed),
    }


class RedisStatsStore:
    """Durable history of games, rounds and answers, kept in Redis.

    Layout (all keys under ``KEY_PREFIX``):

    - ``seq:<kind>``: id counters
    - ``track:<id>`` / ``player:<id>`` / ``game:<id>`` / ``round:<id>``: hashes
    - ``track:by_ext:<external id>``, ``player:by_name:<name>``: lookups
    - ``tracks``, ``players``, ``games``, ``rounds``: creation-ordered id lists
    - ``game:<id>:rounds``: rounds of one game
    - ``round:<id>:answers``: JSON encoded answers of one round
    """

    def __init__(self, client=None, prefix: str = KEY_PREFIX, clock: Callable[[], int] = now_ms):
        if client is None:
            from blindtest.database import redis_client
            client = redis_client
        self.redis = client
        self.prefix = prefix
        self._now = clock

    def _key(self, *parts) -> str:
        return ":".join([self.prefix, *[str(p) for p in parts]])

    async def _next_id(self, kind: str) -> str:
        return str(await self.redis.incr(self._key("seq", kind)))

    async def ensure_track(self, track: Track) -> str:
        index = self._key("track", "by_ext", track.id)
        existing = await self.redis.get(index)
        if existing:
            return existing
        key = await self._next_id("track")
        await self.redis.hset(self._key("track", key), mapping={
            "ext_id": track.id,
            "title": track.title,
            "artist": track.artist,
            "album": track.album,
            "preview_url": track.preview,
            "cover_url": track.large_artwork or "",
        })
        await self.redis.set(index, key)
        await self.redis.rpush(self._key("tracks"), key)
        return key

    async def ensure_player(self, name: str) -> Optional[str]:
        clean = (name or "").strip()
        if not clean:
            return None
        index = self._key("player", "by_name", clean)
        existing = await self.redis.get(index)
        if existing:
            return existing
        key = await self._next_id("player")
        await self.redis.hset(self._key("player", key), mapping={"name": clean, "created_at": self._now()})
        await self.redis.set(index, key)
        await self.redis.rpush(self._key("players"), key)
        return key

    async def get_game(self, game_key: str) -> Optional[Dict[str, Any]]:
        data = await self.redis.hgetall(self._key("game", game_key))
        if not data:
            return None
        return {
            "id": game_key,
            "name": data.get("name"),
            "startedAt": int(data["started_at"]) if data.get("started_at") else None,
            "endedAt": int(data["ended_at"]) if data.get("ended_at") else None,
            "status": data.get("status"),
        }

    async def running_game(self) -> Optional[str]:
        """Most recent game still marked running, if any."""
        for key in reversed(await self.redis.lrange(self._key("games"), 0, -1)):
            if await self.redis.hget(self._key("game", key), "status") == "running":
                return key
        return None

    async def create_game(self, name: str) -> str:
        key = await self._next_id("game")
        await self.redis.hset(self._key("game", key), mapping={
            "name": name,
            "started_at": self._now(),
            "ended_at": "",
            "status": "running",
        })
        await self.redis.rpush(self._key("games"), key)
        return key

    async def finish_game(self, game_key: str) -> None:
        await self.redis.hset(self._key("game", game_key), mapping={"ended_at": self._now(), "status": "finished"})

    async def create_round(self, game_key: str, track_key: str, index: int) -> str:
        key = await self._next_id("round")
        await self.redis.hset(self._key("round", key), mapping={
            "game_id": game_key,
            "track_id": track_key,
            "round_index": index,
            "started_at": self._now(),
            "ended_at": "",
        })
        await self.redis.rpush(self._key("game", game_key, "rounds"), key)
        await self.redis.rpush(self._key("rounds"), key)
        return key

    async def finish_round(self, round_key: str) -> None:
        await self.redis.hset(self._key("round", round_key), "ended_at", self._now())

    async def record_answer(self, round_key: str, player_key: str, text: str, correct: bool, points: int, elapsed_ms: int) -> None:
        answer = {
            "player_id": player_key,
            "answer_text": text,
            "is_correct": bool(correct),
            "points": int(points),
            "elapsed_ms": int(elapsed_ms),
            "created_at": self._now(),
        }
        await self.redis.rpush(self._key("round", round_key, "answers"), json.dumps(answer))

    async def list_games(self) -> List[Dict[str, Any]]:
        games = []
        for key in await self.redis.lrange(self._key("games"), 0, -1):
            game = await self.get_game(key)
            if game:
                games.append(game)
        games.sort(key=lambda g: g["startedAt"] or 0, reverse=True)
        return games

    async def _answers(self, round_key: str) -> List[dict]:
        raw = await self.redis.lrange(self._key("round", round_key, "answers"), 0, -1)
        return [json.loads(item) for item in raw]

    async def query_stats(self, game_key: str = None) -> Dict[str, Any]:
        """Aggregates over every game, or over ``game_key`` only."""
        if game_key:
            round_keys = await self.redis.lrange(self._key("game", game_key, "rounds"), 0, -1)
        else:
            round_keys = await self.redis.lrange(self._key("rounds"), 0, -1)

        tracks: Dict[str, dict] = {}
        rounds = []
        by_player: Dict[str, List[dict]] = {}
        for key in round_keys:
            data = await self.redis.hgetall(self._key("round", key))
            answers = await self._answers(key)
            track_key = data.get("track_id")
            if track_key and track_key not in tracks:
                tracks[track_key] = await self.redis.hgetall(self._key("track", track_key))
            track = tracks.get(track_key) or {}
            rounds.append({
                "id": key,
                "roundIndex": int(data["round_index"]) if data.get("round_index") else None,
                "title": track.get("title"),
                "artist": track.get("artist"),
                "answersCount": len(answers),
                **_response_times(answers),
            })
            for answer in answers:
                by_player.setdefault(answer["player_id"], []).append(answer)

        if game_key:
            player_keys = list(by_player)
            total_players = len(player_keys)
            total_games = 1
        else:
            player_keys = await self.redis.lrange(self._key("players"), 0, -1)
            total_players = len(player_keys)
            total_games = await self.redis.llen(self._key("games"))

        players = []
        for key in player_keys:
            answers = by_player.get(key, [])
            players.append({
                "id": key,
                "name": await self.redis.hget(self._key("player", key), "name"),
                "score": sum(a["points"] for a in answers),
                "answersCount": len(answers),
                **_response_times(answers),
            })
        players.sort(key=lambda p: p["score"], reverse=True)

        all_answers = [a for answers in by_player.values() for a in answers]
        return {
            "global": {
                "totalPlayers": total_players,
                "totalGames": total_games,
                "totalRounds": len(rounds),
                "totalAnswers": len(all_answers),
                "totalPoints": sum(a["points"] for a in all_answers),
            },
            "players": players,
            "rounds": rounds,
        }


class Journal:
    """Ordered, fire-and-forget writes to the stats store.

    The room enqueues a step right after its in-memory change and moves on;
    a single worker task runs the steps in order so a game exists before its
    rounds and a round before its answers. A failing step is logged and the
    next one runs anyway. ``on_done`` callbacks receive the step result and
    are how a completion finds its way back into the room.
    """

    def __init__(self, store, game_name: Callable[[], str] = default_game_name):
        self.store = store
        self.game_key: Optional[str] = None
        self.round_key: Optional[str] = None
        self._game_name = game_name
        self._player_keys: Dict[str, str] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    def submit(self, label: str, func: Callable[..., Awaitable[Any]], *args, on_done: Callable[[Any], Awaitable[Any]] = None) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
        self._queue.put_nowait((label, func, args, on_done))

    async def _run(self):
        while True:
            label, func, args, on_done = await self._queue.get()
            try:
                result = await func(*args)
                if on_done is not None:
                    await on_done(result)
            except Exception as e:
                logger.error(f"Persistence step {label} failed: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every step submitted so far has run."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    # Steps

    def resume_game(self, on_done=None) -> None:
        self.submit("resume_game", self._current_game, on_done=on_done)

    def track_queued(self, track: Track) -> None:
        self.submit("ensure_track", self.store.ensure_track, track)

    def player_joined(self, name: str, on_done=None) -> None:
        self.submit("ensure_player", self._ensure_player, name, on_done=on_done)

    def round_started(self, track: Track, index: int) -> None:
        self.submit("create_round", self._open_round, track, index)

    def round_finished(self) -> None:
        self.submit("finish_round", self._close_round)

    def answer(self, name: str, text: str, correct: bool, points: int, elapsed_ms: int, player_key: str = None) -> None:
        self.submit("record_answer", self._record_answer, name, text, correct, points, elapsed_ms, player_key)

    def new_game(self, name: str, on_done=None) -> None:
        self.submit("create_game", self._open_game, name, on_done=on_done)

    async def _ensure_game(self) -> str:
        if self.game_key is None:
            self.game_key = await self.store.running_game()
        if self.game_key is None:
            self.game_key = await self.store.create_game(self._game_name())
        return self.game_key

    async def _current_game(self) -> Optional[Dict[str, Any]]:
        return await self.store.get_game(await self._ensure_game())

    async def _ensure_player(self, name: str) -> Optional[str]:
        key = self._player_keys.get(name)
        if key is None:
            key = await self.store.ensure_player(name)
            if key:
                self._player_keys[name] = key
        return key

    async def _open_game(self, name: str) -> Optional[Dict[str, Any]]:
        if self.game_key is None:
            self.game_key = await self.store.running_game()
        if self.game_key is not None:
            await self.store.finish_game(self.game_key)
        self.game_key = None
        self.round_key = None
        self.game_key = await self.store.create_game(name)
        return await self.store.get_game(self.game_key)

    async def _open_round(self, track: Track, index: int) -> None:
        self.round_key = None
        game_key = await self._ensure_game()
        track_key = await self.store.ensure_track(track)
        self.round_key = await self.store.create_round(game_key, track_key, index)

    async def _close_round(self) -> None:
        if self.round_key:
            await self.store.finish_round(self.round_key)

    async def _record_answer(self, name, text, correct, points, elapsed_ms, player_key=None) -> None:
        if self.round_key is None:
            return
        # Key attached to the room's player at join time, looked up by name otherwise
        player_key = player_key or await self._ensure_player(name)
        if player_key is None:
            return
        await self.store.record_answer(self.round_key, player_key, text, correct, points, elapsed_ms)
