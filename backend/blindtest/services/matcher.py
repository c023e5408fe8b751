import re
import unicodedata

from blindtest.models.room import Track

_NON_ALNUM = re.compile(r"[^a-z0-9 ]")
_SPACES = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lower-case, strip accents and punctuation, collapse whitespace."""
    text = unicodedata.normalize("NFD", (text or "").lower())
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = _NON_ALNUM.sub(" ", text)
    return _SPACES.sub(" ", text).strip()


def is_correct_answer(text: str, track: Track) -> bool:
    """An answer is correct when it contains the title, the artist, or both."""
    answer = normalize(text)
    if not answer or track is None:
        return False

    title = normalize(track.title)
    artist = normalize(track.artist)
    candidates = [title, artist]
    if title and artist:
        candidates += [f"{title} {artist}", f"{artist} {title}"]
    return any(key and key in answer for key in candidates)
