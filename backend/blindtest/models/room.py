from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from blindtest.config import (
    DEFAULT_ANSWER_COOLDOWN_MS,
    DEFAULT_ANSWER_WINDOW_MS,
    DEFAULT_BASE_POINTS,
    DEFAULT_EXTRACT_DURATION_MS,
)


class WireModel(BaseModel):
    """Base for everything sent to clients: camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Phase(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    REVEAL = "reveal"


class Track(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    title: str = Field(min_length=1)
    artist: str = ""
    album: str = ""
    cover: Optional[str] = None
    cover_medium: Optional[str] = None
    cover_big: Optional[str] = None
    preview: str # Playable audio extract URL

    @model_validator(mode="before")
    @classmethod
    def _flatten_nested(cls, data: Any) -> Any:
        # Search results come back as {artist: {name}, album: {title, cover...}}
        if not isinstance(data, dict):
            return data
        data = dict(data)
        artist = data.get("artist")
        if isinstance(artist, dict):
            data["artist"] = artist.get("name") or ""
        elif artist is None:
            data["artist"] = data.get("artistName") or ""
        album = data.get("album")
        if isinstance(album, dict):
            data["album"] = album.get("title") or ""
            for key in ("cover", "cover_medium", "cover_big"):
                if data.get(key) is None and data.get(to_camel(key)) is None:
                    data[key] = album.get(key)
        elif album is None:
            data["album"] = ""
        if data.get("id") is not None:
            data["id"] = str(data["id"])
        return data

    @field_validator("preview")
    @classmethod
    def _preview_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("track has no playable preview")
        return value

    @property
    def artwork(self) -> Optional[str]:
        return self.cover_medium or self.cover or None

    @property
    def large_artwork(self) -> Optional[str]:
        return self.cover_big or self.cover or None


class Settings(WireModel):
    extract_duration_ms: int = Field(default=DEFAULT_EXTRACT_DURATION_MS, gt=0)
    answer_window_ms: int = Field(default=DEFAULT_ANSWER_WINDOW_MS, gt=0)
    base_points: int = Field(default=DEFAULT_BASE_POINTS, gt=0)
    answer_cooldown_ms: int = Field(default=DEFAULT_ANSWER_COOLDOWN_MS, ge=0)

    def merged(self, partial: Dict[str, Any]) -> "Settings":
        """Return new settings with ``partial`` applied (snake_case or camelCase keys).

        Raises ``ValidationError`` when any merged value is invalid, leaving
        ``self`` untouched.
        """
        values = self.model_dump()
        for name, field in type(self).model_fields.items():
            if field.alias in partial:
                values[name] = partial[field.alias]
            elif name in partial:
                values[name] = partial[name]
        return Settings.model_validate(values)


class Player(BaseModel):
    sid: str
    name: str
    score: int = 0
    banned: bool = False
    offline: bool = False
    player_key: Optional[str] = None # Persistence key, never sent to clients

    def public(self) -> Dict[str, Any]:
        return {
            "id": self.sid,
            "name": self.name,
            "score": self.score,
            "banned": self.banned,
            "offline": self.offline,
        }


class AcceptedAnswer(WireModel):
    sid: str = Field(alias="socketId")
    name: str
    points: int
    elapsed_ms: int


class RoundStart(WireModel):
    preview: str
    cover: Optional[str] = None
    extract_duration_ms: int
    answer_window_ms: int
    started_at: int # Epoch ms, clients compute elapsed time locally
    is_test_round: bool = False
    round_number: int


class RoundReveal(WireModel):
    title: str
    artist: str
    cover: Optional[str] = None
    answers: List[AcceptedAnswer] = []
    is_test_round: bool = False


class GameInfo(WireModel):
    id: Optional[str] = None
    name: str
