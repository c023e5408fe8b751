import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from blindtest.config import HTTP_TIMEOUT_SEC, TWITCH_CLIENT_ID, TWITCH_CLIENT_SECRET

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://id.twitch.tv/oauth2/authorize"
TOKEN_URL = "https://id.twitch.tv/oauth2/token"
USERS_URL = "https://api.twitch.tv/helix/users"


class TwitchLogin:
    """Resolves a Twitch login into a display name. Nothing else is kept."""

    def __init__(self, client_id: str = TWITCH_CLIENT_ID, client_secret: str = TWITCH_CLIENT_SECRET, client: httpx.AsyncClient = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authorize_url(self, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": "user:read:email",
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    async def _exchange(self, client: httpx.AsyncClient, code: str, redirect_uri: str) -> Optional[str]:
        response = await client.post(TOKEN_URL, data={
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        })
        if response.status_code != 200:
            logger.error(f"Twitch token error: {response.text}")
            return None
        access_token = response.json().get("access_token")
        if not access_token:
            return None

        response = await client.get(USERS_URL, headers={
            "Client-Id": self.client_id,
            "Authorization": f"Bearer {access_token}",
        })
        if response.status_code != 200:
            logger.error(f"Twitch user error: {response.text}")
            return None
        users = response.json().get("data") or [{}]
        return users[0].get("display_name") or users[0].get("login") or None

    async def resolve_display_name(self, code: str, redirect_uri: str) -> Optional[str]:
        if not code or not self.configured:
            return None
        try:
            if self._client is not None:
                return await self._exchange(self._client, code, redirect_uri)
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SEC) as client:
                return await self._exchange(client, code, redirect_uri)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Twitch OAuth failed: {e}")
            return None
