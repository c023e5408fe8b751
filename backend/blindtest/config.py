import os

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
KEY_PREFIX = os.getenv("REDIS_KEY_PREFIX", "blindtest")

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Track search (Deezer public API, no key needed)
DEEZER_API_URL = os.getenv("DEEZER_API_URL", "https://api.deezer.com")
HTTP_TIMEOUT_SEC = float(os.getenv("HTTP_TIMEOUT_SEC", "5"))
# Tried in order when the moderator starts a test round
TEST_TRACK_QUERIES = [
    q.strip()
    for q in os.getenv(
        "TEST_TRACK_QUERIES",
        "Top 1 Squeezie|Squeezie Top 1|Top 1 - Squeezie|Top 1 de Squeezie",
    ).split("|")
    if q.strip()
]

# Empty means any connection may join as moderator
MODERATOR_PASSWORD = os.getenv("MODERATOR_PASSWORD", "")

TWITCH_CLIENT_ID = os.getenv("TWITCH_CLIENT_ID", "")
TWITCH_CLIENT_SECRET = os.getenv("TWITCH_CLIENT_SECRET", "")
TWITCH_REDIRECT_URI = os.getenv("TWITCH_REDIRECT_URI", "")

# Round defaults (milliseconds / points)
DEFAULT_EXTRACT_DURATION_MS = int(os.getenv("DEFAULT_EXTRACT_DURATION_MS", "15000"))
DEFAULT_ANSWER_WINDOW_MS = int(os.getenv("DEFAULT_ANSWER_WINDOW_MS", "15000"))
DEFAULT_BASE_POINTS = int(os.getenv("DEFAULT_BASE_POINTS", "1000"))
DEFAULT_ANSWER_COOLDOWN_MS = int(os.getenv("DEFAULT_ANSWER_COOLDOWN_MS", "800"))
# Extra time after the answer window before the round auto-reveals
DEADLINE_GRACE_MS = int(os.getenv("DEADLINE_GRACE_MS", "100"))

# Floor applied to any correct, scoring answer
MIN_POINTS = 50
