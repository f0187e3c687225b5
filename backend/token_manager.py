"""
Bitrix24 OAuth token manager.

Keeps the local application's access/refresh token pair and the portal's
client_endpoint. Tokens are read from BITRIX_TOKEN_FILE (JSON) when present,
otherwise from the environment, and written back to the file after every
refresh because Bitrix issues a new refresh token each time.
"""

import asyncio
import json
import logging
import os
import time
from typing import Any, Dict, Optional

import httpx

from bitrix_crm import BitrixAPIError, BITRIX_TIMEOUT

logger = logging.getLogger(__name__)

BITRIX_OAUTH_URL = "https://oauth.bitrix.info/oauth/token/"


class TokenRefreshError(BitrixAPIError):
    """Refreshing the OAuth token failed; the application must be re-authorized."""
    pass


class BitrixTokenManager:

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        access_token: str = "",
        refresh_token: str = "",
        client_endpoint: str = "",
        token_file: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.client_endpoint = client_endpoint
        self.expires_at: Optional[float] = None
        self.token_file = token_file
        self._transport = transport
        self._lock = asyncio.Lock()

        if token_file and os.path.exists(token_file):
            self._load_file()

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "BitrixTokenManager":
        return cls(
            client_id=settings.bitrix_client_id,
            client_secret=settings.bitrix_client_secret,
            access_token=settings.bitrix_access_token,
            refresh_token=settings.bitrix_refresh_token,
            client_endpoint=settings.bitrix_client_endpoint,
            token_file=settings.bitrix_token_file,
            transport=transport,
        )

    def _load_file(self) -> None:
        with open(self.token_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        self.access_token = data.get("access_token", self.access_token)
        self.refresh_token = data.get("refresh_token", self.refresh_token)
        self.client_endpoint = data.get("client_endpoint", self.client_endpoint)
        self.expires_at = data.get("expires_at")
        logger.info(f"Loaded Bitrix tokens from {self.token_file}")

    def _save_file(self) -> None:
        data = {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "client_endpoint": self.client_endpoint,
            "expires_at": self.expires_at,
        }
        with open(self.token_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def token_data(self) -> Dict[str, Any]:
        return {
            "client_endpoint": self.client_endpoint,
            "expires_at": self.expires_at,
            "has_refresh_token": bool(self.refresh_token),
        }

    async def get_access_token(self) -> str:
        if not self.access_token:
            raise BitrixAPIError("Bitrix24 OAuth access token is not configured")
        return self.access_token

    async def refresh(self, stale_token: Optional[str] = None) -> None:
        """
        Exchange the refresh token for a new pair.

        Concurrent callers that saw the same expired token share one refresh:
        if the access token already changed since `stale_token`, return.
        """
        async with self._lock:
            if stale_token is not None and self.access_token != stale_token:
                logger.debug("Bitrix token already refreshed by another request")
                return

            if not self.refresh_token:
                raise TokenRefreshError("No Bitrix24 refresh token available. Please re-authorize the application")

            try:
                async with httpx.AsyncClient(timeout=BITRIX_TIMEOUT, transport=self._transport) as client:
                    response = await client.get(BITRIX_OAUTH_URL, params={
                        "grant_type": "refresh_token",
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "refresh_token": self.refresh_token,
                    })
            except httpx.RequestError as e:
                raise TokenRefreshError(f"Token refresh connection error: {str(e)}")

            if response.status_code != 200:
                logger.error(f"Bitrix token refresh failed: {response.status_code} - {response.text[:500]}")
                raise TokenRefreshError("Token refresh failed. Please re-authorize the application")

            data = response.json()
            if "error" in data or not data.get("access_token"):
                logger.error(f"Bitrix token refresh error: {data.get('error_description', data.get('error'))}")
                raise TokenRefreshError("Token refresh failed. Please re-authorize the application")

            self.access_token = data["access_token"]
            self.refresh_token = data.get("refresh_token", self.refresh_token)
            self.client_endpoint = data.get("client_endpoint") or self.client_endpoint
            if data.get("expires_in"):
                self.expires_at = time.time() + int(data["expires_in"])

            if self.token_file:
                await asyncio.to_thread(self._save_file)
            logger.info("Bitrix access token refreshed")
