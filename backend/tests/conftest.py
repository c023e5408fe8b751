import asyncio

import pytest
import pytest_asyncio

from blindtest.models.room import Settings, Track
from blindtest.services.persistence import Journal
from blindtest.services.room import Room, RoomSession
from blindtest.services.round import RoundStateMachine

START_MS = 1_700_000_000_000


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class RecordingEmitter:
    """Stands in for the Socket.IO server: keeps every (event, data, to)."""

    def __init__(self):
        self.events = []

    async def __call__(self, event, data=None, to=None):
        self.events.append((event, data, to))

    def named(self, event):
        return [e for e in self.events if e[0] == event]

    def last(self, event):
        found = self.named(event)
        return found[-1] if found else None

    def names(self):
        return [e[0] for e in self.events]

    def clear(self):
        self.events.clear()


class FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.callback()


class FakeScheduler:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, callback):
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def last(self):
        return self.timers[-1]


class FakeClock:
    def __init__(self, now=START_MS):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeSearch:
    def __init__(self, tracks=(), test=None):
        self.tracks = {t.id: t for t in tracks}
        self.test = test
        self.test_calls = 0

    async def search(self, query):
        q = (query or "").lower()
        if not q:
            return []
        return [t for t in self.tracks.values() if q in t.title.lower() or q in t.artist.lower()]

    async def fetch_by_id(self, track_id):
        return self.tracks.get(str(track_id))

    async def test_track(self):
        self.test_calls += 1
        return self.test


class MemoryStore:
    """In-memory stand-in for RedisStatsStore with the same coroutine API."""

    def __init__(self):
        self.tracks = {}
        self.players = {}
        self.games = {}
        self.rounds = {}
        self.answers = []
        self.calls = []
        self.fail = False

    def _check(self, name):
        self.calls.append(name)
        if self.fail:
            raise ConnectionError("store unavailable")

    async def ensure_track(self, track):
        self._check("ensure_track")
        return self.tracks.setdefault(track.id, str(len(self.tracks) + 1))

    async def ensure_player(self, name):
        self._check("ensure_player")
        return self.players.setdefault(name, str(len(self.players) + 1))

    async def get_game(self, game_key):
        game = self.games.get(game_key)
        return {"id": game_key, **game} if game else None

    async def running_game(self):
        self._check("running_game")
        running = [k for k, g in self.games.items() if g["status"] == "running"]
        return running[-1] if running else None

    async def create_game(self, name):
        self._check("create_game")
        key = str(len(self.games) + 1)
        self.games[key] = {"name": name, "status": "running"}
        return key

    async def finish_game(self, game_key):
        self._check("finish_game")
        self.games[game_key]["status"] = "finished"

    async def create_round(self, game_key, track_key, index):
        self._check("create_round")
        key = str(len(self.rounds) + 1)
        self.rounds[key] = {"game": game_key, "track": track_key, "index": index, "finished": False}
        return key

    async def finish_round(self, round_key):
        self._check("finish_round")
        self.rounds[round_key]["finished"] = True

    async def record_answer(self, round_key, player_key, text, correct, points, elapsed_ms):
        self._check("record_answer")
        self.answers.append({
            "round": round_key,
            "player": player_key,
            "text": text,
            "correct": correct,
            "points": points,
            "elapsed_ms": elapsed_ms,
        })


async def settle():
    """Let callbacks scheduled with ensure_future run."""
    for _ in range(5):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def make_track():
    def _make(track_id="1", title="Top 1", artist="Squeezie", preview=None, **extra):
        return Track(
            id=track_id,
            title=title,
            artist=artist,
            album=extra.pop("album", "Oyahhh"),
            cover=extra.pop("cover", f"https://img.test/{track_id}.jpg"),
            cover_medium=extra.pop("cover_medium", f"https://img.test/{track_id}-m.jpg"),
            cover_big=extra.pop("cover_big", f"https://img.test/{track_id}-b.jpg"),
            preview=preview or f"https://cdn.test/{track_id}.mp3",
        )
    return _make


@pytest.fixture()
def settings():
    return Settings(extract_duration_ms=15000, answer_window_ms=15000, base_points=1000, answer_cooldown_ms=800)


@pytest.fixture()
def emitter():
    return RecordingEmitter()


@pytest.fixture()
def scheduler():
    return FakeScheduler()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store():
    return MemoryStore()


@pytest_asyncio.fixture()
async def journal(store):
    journal = Journal(store, game_name=lambda: "Default game")
    yield journal
    await journal.close()


@pytest.fixture()
def search(make_track):
    return FakeSearch(
        tracks=[make_track("42", "Bohemian Rhapsody", "Queen")],
        test=make_track("999", "Top 1", "Squeezie"),
    )


@pytest.fixture()
def room(settings, scheduler):
    return Room(settings=settings, rounds=RoundStateMachine(scheduler=scheduler, grace_ms=100))


@pytest.fixture()
def session(room, emitter, search, journal, clock):
    return RoomSession(room, emitter, search=search, journal=journal, clock=clock)
