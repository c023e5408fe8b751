import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from blindtest.models.room import GameInfo, Phase, Player, Settings, Track
from blindtest.services.persistence import Journal, default_game_name, now_ms
from blindtest.services.roster import Roster
from blindtest.services.round import ACCEPTED, REJECTED, AnswerOutcome, RoundStateMachine

logger = logging.getLogger(__name__)

MAIN_ROOM = "main"
MODERATORS_ROOM = "moderators"

PLAYER = "player"
MODERATOR = "moderator"
OVERLAY = "overlay"
ROLES = (PLAYER, MODERATOR, OVERLAY)

# emit(event, data=None, to=None): ``to`` is a connection id or a room name,
# None means every connection in MAIN_ROOM
Emitter = Callable[..., Awaitable[None]]


@dataclass
class Room:
    settings: Settings = field(default_factory=Settings)
    roster: Roster = field(default_factory=Roster)
    playlist: List[Track] = field(default_factory=list)
    rounds: RoundStateMachine = field(default_factory=RoundStateMachine)
    game: Optional[GameInfo] = None

    @property
    def phase(self) -> Phase:
        return self.rounds.phase

    def snapshot(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "roundNumber": self.rounds.round_number,
            "settings": self.settings.wire(),
            "playlistLength": len(self.playlist),
            "players": self.roster.standings(),
            "game": self.game.wire() if self.game else None,
        }


class RoomSession:
    """Applies player and moderator commands to a Room, one at a time.

    Every command runs under a single lock, including the broadcasts it
    causes, so clients see events in the order commands were applied. Calls
    to the track search happen before the lock is taken, and persistence
    writes go to the journal after the in-memory change: neither can hold up
    other players' answers.
    """

    def __init__(self, room: Room, emit: Emitter, search=None, journal: Journal = None, clock: Callable[[], int] = now_ms):
        self.room = room
        self.search = search
        self.journal = journal
        self._emit = emit
        self._clock = clock
        self._lock = asyncio.Lock()
        self._timer_tasks = set()

    async def startup(self) -> None:
        if self.journal:
            self.journal.resume_game(on_done=self._game_opened)

    # Broadcast helpers

    async def _broadcast(self, event: str, data: Any = None) -> None:
        await self._emit(event, data)

    async def _send(self, to: str, event: str, data: Any = None) -> None:
        await self._emit(event, data, to=to)

    async def _players_changed(self) -> None:
        await self._broadcast("room:players", self.room.roster.serialize())

    def _playlist(self) -> List[dict]:
        return [t.wire() for t in self.room.playlist]

    async def _playlist_changed(self) -> None:
        # Queued titles are answers to come: moderators only
        await self._send(MODERATORS_ROOM, "room:playlist", self._playlist())

    # Player commands

    async def join(self, sid: str, name: str, role: str = PLAYER) -> Optional[Player]:
        name = str(name or "").strip() or "Player"
        async with self._lock:
            player = None
            if role == PLAYER:
                player, _ = self.room.roster.join(sid, name)
                if self.journal and player.player_key is None:
                    self.journal.player_joined(name, on_done=partial(self._attach_player_key, name))
            else:
                logger.info(f"{role.capitalize()} connection {sid} joined")

            await self._players_changed()
            await self._send(sid, "room:settings", self.room.settings.wire())
            if role == MODERATOR:
                await self._send(sid, "room:playlist", self._playlist())
            if self.room.game:
                await self._send(sid, "game:changed", self.room.game.wire())
            replay = self.room.rounds.replay()
            if replay:
                event, payload = replay
                await self._send(sid, event, payload.wire())
            return player

    async def _attach_player_key(self, name: str, key: Optional[str]) -> None:
        async with self._lock:
            player = self.room.roster.find_by_name(name)
            if player and key:
                player.player_key = key

    async def leave(self, sid: str) -> None:
        async with self._lock:
            if self.room.roster.mark_offline(sid):
                await self._players_changed()

    async def disconnect(self, sid: str) -> None:
        """Socket gone for good: also drop its answer cooldown."""
        async with self._lock:
            self.room.rounds.forget_connection(sid)
            if self.room.roster.mark_offline(sid):
                await self._players_changed()

    async def submit_answer(self, sid: str, text: str) -> AnswerOutcome:
        text = str(text or "")
        async with self._lock:
            rounds = self.room.rounds
            player = self.room.roster.get(sid)
            outcome = rounds.submit_answer(player, sid, text, self._clock())

            if self.journal and outcome.recordable:
                self.journal.answer(
                    player.name, text, outcome.correct, outcome.points, outcome.elapsed_ms,
                    player_key=player.player_key,
                )

            if outcome.status == REJECTED:
                await self._send(sid, "answer:rejected", {"reason": outcome.reason})
            elif outcome.status == ACCEPTED:
                logger.info(f"{player.name} found round {rounds.round_number} in {outcome.elapsed_ms}ms (+{outcome.points})")
                await self._send(sid, "answer:accepted", {"points": outcome.points})
                if not rounds.is_test:
                    await self._players_changed()
            return outcome

    # Moderator commands

    async def add_track(self, track: Track) -> None:
        async with self._lock:
            self.room.playlist.append(track)
            if self.journal:
                self.journal.track_queued(track)
            await self._playlist_changed()

    async def add_track_by_id(self, track_id) -> Optional[Track]:
        if self.search is None:
            return None
        track = await self.search.fetch_by_id(track_id)
        if track is None:
            logger.warning(f"Track {track_id} not found, nothing queued")
            return None
        await self.add_track(track)
        return track

    async def clear_playlist(self) -> None:
        async with self._lock:
            self.room.playlist.clear()
            await self._playlist_changed()

    async def start_round(self, index: Optional[int] = None) -> Optional[Track]:
        async with self._lock:
            playlist = self.room.playlist
            if self.room.phase == Phase.PLAYING:
                logger.debug("start_round ignored: a round is already playing")
                return None
            if not playlist:
                logger.warning("start_round ignored: playlist is empty")
                return None

            position = 0
            if isinstance(index, int) and not isinstance(index, bool) and 0 <= index < len(playlist):
                position = index
            track = playlist.pop(position)
            await self._playlist_changed()
            await self._start(track, is_test=False)
            return track

    async def start_test_round(self) -> Optional[Track]:
        if self.room.phase == Phase.PLAYING or self.search is None:
            return None
        track = await self.search.test_track()
        if track is None:
            return None
        async with self._lock:
            # Another command may have started a round while we were searching
            if self.room.phase == Phase.PLAYING:
                return None
            await self._start(track, is_test=True)
            return track

    async def _start(self, track: Track, is_test: bool) -> None:
        rounds = self.room.rounds
        payload = rounds.start(track, self.room.settings, self._clock(), is_test=is_test, on_deadline=self._on_deadline)
        if self.journal:
            self.journal.round_started(track, rounds.round_number)
        await self._broadcast("round:start", payload.wire())

    def _on_deadline(self, round_number: int) -> None:
        task = asyncio.ensure_future(self.expire(round_number))
        self._timer_tasks.add(task)
        task.add_done_callback(self._timer_tasks.discard)

    async def expire(self, round_number: int) -> None:
        async with self._lock:
            payload = self.room.rounds.expire(round_number)
            if payload:
                await self._revealed(payload)

    async def reveal(self) -> None:
        async with self._lock:
            payload = self.room.rounds.reveal()
            if payload:
                await self._revealed(payload)

    async def _revealed(self, payload) -> None:
        if self.journal:
            self.journal.round_finished()
        await self._broadcast("round:reveal", payload.wire())

    async def skip(self) -> None:
        async with self._lock:
            previous = self.room.rounds.skip()
            if self.journal and previous == Phase.PLAYING:
                self.journal.round_finished()
            await self._broadcast("round:skipped")

    async def update_settings(self, partial_settings: Dict[str, Any]) -> Optional[Settings]:
        async with self._lock:
            try:
                settings = self.room.settings.merged(partial_settings or {})
            except ValidationError as e:
                logger.warning(f"Settings update rejected: {e.error_count()} invalid value(s)")
                return None
            self.room.settings = settings
            await self._broadcast("room:settings", settings.wire())
            return settings

    async def kick(self, sid: str) -> bool:
        async with self._lock:
            if not self.room.roster.ban(sid):
                return False
            await self._players_changed()
            await self._send(sid, "room:kicked")
            return True

    async def new_game(self, name: Optional[str] = None) -> GameInfo:
        label = str(name or "").strip() or default_game_name()
        async with self._lock:
            self.room.roster.reset_scores()
            self.room.rounds.reset_counter()
            self.room.game = GameInfo(name=label)
            await self._players_changed()
            if self.journal:
                self.journal.new_game(label, on_done=self._game_opened)
            else:
                await self._broadcast("game:changed", self.room.game.wire())
            return self.room.game

    async def _game_opened(self, game: Optional[Dict[str, Any]]) -> None:
        if not game:
            return
        async with self._lock:
            self.room.game = GameInfo(id=game["id"], name=game["name"])
            await self._broadcast("game:changed", self.room.game.wire())
