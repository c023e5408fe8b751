import logging
from typing import Dict, List, Optional, Tuple

from blindtest.models.room import Player

logger = logging.getLogger(__name__)


class Roster:
    """Players of the room, keyed by connection id but joined by name.

    Records are never removed: a disconnect only marks the player offline so
    the scoreboard stays stable, and joining again with the same name takes
    the record back (score and ban included) under the new connection id.
    Two people picking the same name share one record; that is accepted.
    """

    def __init__(self):
        self._players: List[Player] = [] # Creation order, used to break score ties
        self._by_sid: Dict[str, Player] = {}

    def __len__(self) -> int:
        return len(self._players)

    def __contains__(self, sid: str) -> bool:
        return sid in self._by_sid

    def get(self, sid: str) -> Optional[Player]:
        return self._by_sid.get(sid)

    def find_by_name(self, name: str) -> Optional[Player]:
        return next((p for p in self._players if p.name == name), None)

    def players(self) -> List[Player]:
        return list(self._players)

    def join(self, sid: str, name: str) -> Tuple[Player, bool]:
        """Attach ``sid`` to the player called ``name``; returns (player, reconnected)."""
        previous = self._by_sid.get(sid)
        if previous and previous.name != name:
            # Same connection joining under another name leaves the old record behind
            previous.offline = True
            self._by_sid.pop(sid)
            logger.info(f"Connection {sid} switched from {previous.name} to {name}")

        existing = self.find_by_name(name)
        if existing:
            old_sid = existing.sid
            if self._by_sid.get(old_sid) is existing:
                self._by_sid.pop(old_sid)
            existing.sid = sid
            existing.offline = False
            self._by_sid[sid] = existing
            logger.info(f"Player {name} reconnected ({old_sid} -> {sid}), score={existing.score}")
            return existing, True

        player = Player(sid=sid, name=name)
        self._players.append(player)
        self._by_sid[sid] = player
        logger.info(f"Player {name} joined as {sid}")
        return player, False

    def mark_offline(self, sid: str) -> Optional[Player]:
        player = self._by_sid.get(sid)
        if player:
            player.offline = True
        return player

    def ban(self, sid: str) -> Optional[Player]:
        player = self._by_sid.get(sid)
        if player:
            player.banned = True
            logger.info(f"Player {player.name} ({sid}) banned")
        return player

    def reset_scores(self) -> None:
        for player in self._players:
            player.score = 0

    def serialize(self) -> List[dict]:
        return [p.public() for p in self._players]

    def standings(self) -> List[dict]:
        # sorted() is stable, so equal scores keep join order
        return sorted(self.serialize(), key=lambda p: p["score"], reverse=True)
