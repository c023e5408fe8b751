import logging
from contextlib import asynccontextmanager
from functools import wraps
from typing import Optional
from urllib.parse import quote

import socketio
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from passlib.context import CryptContext
from pydantic import ValidationError

from blindtest.config import ALLOWED_ORIGINS, LOG_LEVEL, MODERATOR_PASSWORD, TWITCH_REDIRECT_URI
from blindtest.models.room import Settings, Track
from blindtest.services.identity import TwitchLogin
from blindtest.services.media import TrackSearch
from blindtest.services.persistence import Journal, RedisStatsStore
from blindtest.services.room import (
    MAIN_ROOM,
    MODERATOR,
    MODERATORS_ROOM,
    OVERLAY,
    PLAYER,
    ROLES,
    Room,
    RoomSession,
)

# Configure logging
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")
moderator_password_hash = pwd_context.hash(MODERATOR_PASSWORD) if MODERATOR_PASSWORD else None

# Connections that joined under a reserved name get that role
RESERVED_NAMES = {"MOD": MODERATOR, "OVERLAY": OVERLAY}

# SID -> role, filled on room:join
sid_role_map = {}

sio = socketio.AsyncServer(async_mode='asgi', cors_allowed_origins=ALLOWED_ORIGINS if ALLOWED_ORIGINS != ["*"] else "*")


async def emit(event: str, data=None, to: Optional[str] = None):
    await sio.emit(event, data, to=to or MAIN_ROOM)


room = Room(settings=Settings())
search = TrackSearch()
store = RedisStatsStore()
journal = Journal(store)
session = RoomSession(room, emit, search=search, journal=journal)
twitch = TwitchLogin()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    await session.startup()
    yield
    await journal.close()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

socket_app = socketio.ASGIApp(sio, app)


def verify_moderator(password: Optional[str]) -> bool:
    if not moderator_password_hash:
        return True
    if not password:
        return False
    return pwd_context.verify(password, moderator_password_hash)


# REST API
@app.get("/api/suggest")
async def suggest(q: str = ""):
    tracks = await search.search(q)
    return {"data": [t.wire() for t in tracks]}


@app.get("/api/track/{track_id}")
async def get_track(track_id: str):
    track = await search.fetch_by_id(track_id)
    if not track:
        raise HTTPException(status_code=404, detail="Track not found")
    return track.wire()


@app.get("/api/room")
async def room_state():
    return room.snapshot()


@app.get("/api/stats")
async def stats(gameId: Optional[str] = None):
    try:
        return await store.query_stats(gameId)
    except Exception as e:
        logger.error(f"Stats query failed: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Could not load stats"})


@app.get("/api/games")
async def games():
    try:
        return await store.list_games()
    except Exception as e:
        logger.error(f"Games query failed: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Could not load games"})


def _twitch_redirect_uri(request: Request) -> str:
    return TWITCH_REDIRECT_URI or str(request.url_for("twitch_callback"))


@app.get("/auth/twitch/login")
async def twitch_login(request: Request):
    if not twitch.configured:
        raise HTTPException(status_code=500, detail="Twitch OAuth is not configured")
    return RedirectResponse(twitch.authorize_url(_twitch_redirect_uri(request)))


@app.get("/auth/twitch/callback", name="twitch_callback")
async def twitch_callback(request: Request, code: Optional[str] = None):
    name = await twitch.resolve_display_name(code, _twitch_redirect_uri(request))
    if not name:
        return RedirectResponse("/?t_error=twitch")
    return RedirectResponse(f"/?t_name={quote(name)}")


# Socket Events
@sio.event
async def connect(sid, environ):
    logger.info(f"Client {sid} connected")


@sio.event
async def disconnect(sid, reason=None):
    try:
        logger.info(f"Client {sid} disconnected")
        sid_role_map.pop(sid, None)
        await session.disconnect(sid)
    except Exception as e:
        logger.error(f"Error in disconnect: {e}", exc_info=True)


@sio.on("room:join")
async def room_join(sid, data=None):
    try:
        data = data or {}
        name = str(data.get("name") or "").strip()
        role = data.get("role") or RESERVED_NAMES.get(name, PLAYER)
        if role not in ROLES:
            role = PLAYER

        if role == MODERATOR and not verify_moderator(data.get("password")):
            logger.warning(f"Rejected moderator join from {sid}: bad password")
            await sio.emit("error", {"message": "Invalid moderator password"}, to=sid)
            return

        sid_role_map[sid] = role
        await sio.enter_room(sid, MAIN_ROOM)
        if role == MODERATOR:
            await sio.enter_room(sid, MODERATORS_ROOM)
        logger.info(f"Join request: sid={sid}, name={name}, role={role}")
        await session.join(sid, name, role)
    except Exception as e:
        logger.error(f"Error in room:join: {e}", exc_info=True)
        await sio.emit("error", {"message": "Internal server error during join"}, to=sid)


@sio.on("room:leave")
async def room_leave(sid, data=None):
    try:
        await session.leave(sid)
        await sio.leave_room(sid, MAIN_ROOM)
        await sio.leave_room(sid, MODERATORS_ROOM)
        sid_role_map.pop(sid, None)
    except Exception as e:
        logger.error(f"Error in room:leave: {e}", exc_info=True)


@sio.on("answer:submit")
async def answer_submit(sid, data=None):
    try:
        await session.submit_answer(sid, (data or {}).get("text"))
    except Exception as e:
        logger.error(f"Error in answer:submit: {e}", exc_info=True)


def moderator_event(event: str):
    """Register a Socket.IO handler that only moderator connections may trigger."""
    def decorator(handler):
        @wraps(handler)
        async def wrapper(sid, data=None):
            if sid_role_map.get(sid) != MODERATOR:
                logger.warning(f"Ignoring {event} from non-moderator {sid}")
                return
            try:
                await handler(sid, data or {})
            except ValidationError as e:
                logger.warning(f"Ignoring malformed {event} from {sid}: {e.error_count()} error(s)")
            except Exception as e:
                logger.error(f"Error in {event}: {e}", exc_info=True)
        sio.on(event, wrapper)
        return wrapper
    return decorator


@moderator_event("admin:addTrack")
async def admin_add_track(sid, data):
    if data.get("track"):
        await session.add_track(Track.model_validate(data["track"]))
    elif data.get("trackId") is not None:
        track = await session.add_track_by_id(data["trackId"])
        if not track:
            await sio.emit("error", {"message": "Track not found"}, to=sid)


@moderator_event("admin:clearPlaylist")
async def admin_clear_playlist(sid, data):
    await session.clear_playlist()


@moderator_event("admin:startRound")
async def admin_start_round(sid, data):
    await session.start_round(data.get("index"))


@moderator_event("admin:startTestRound")
async def admin_start_test_round(sid, data):
    await session.start_test_round()


@moderator_event("admin:skip")
async def admin_skip(sid, data):
    await session.skip()


@moderator_event("admin:reveal")
async def admin_reveal(sid, data):
    await session.reveal()


@moderator_event("admin:settings")
async def admin_settings(sid, data):
    await session.update_settings(data.get("settings") or {})


@moderator_event("admin:kick")
async def admin_kick(sid, data):
    await session.kick(data.get("socketId"))


@moderator_event("admin:newGame")
async def admin_new_game(sid, data):
    await session.new_game(data.get("name"))
