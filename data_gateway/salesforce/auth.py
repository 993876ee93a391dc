# data_gateway/salesforce/auth.py
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import httpx
from fastapi import HTTPException, status

from data_gateway.core.config import settings

logger = logging.getLogger(settings.APP_NAME)

# Serializes token refreshes across concurrent requests
token_lock = asyncio.Lock()

# The password flow returns no expires_in; sessions are assumed to last 2 hours
ASSUMED_SESSION_SECONDS = 2 * 60 * 60


def _token_error_detail(response: httpx.Response) -> str:
    detail = f"Failed to authenticate with Salesforce (HTTP error {response.status_code})"
    try:
        body = response.json()
    except ValueError:
        return detail
    if not isinstance(body, dict):
        return detail
    reason = body.get("error_description") or body.get("error")
    return f"{detail}: {reason}" if reason else detail


class SalesforceAuth:
    """
    Holds the gateway's Salesforce session (OAuth 2.0 password flow).

    The token is cached on the class so every client shares one session. The
    session user is the principal whose object and field access governs the
    gateway's writes.
    """
    _access_token: Optional[str] = None
    _instance_url: Optional[str] = None
    _token_expiry: Optional[datetime] = None

    def _is_token_expired(self) -> bool:
        if not self._access_token or not self._token_expiry:
            return True
        refresh_at = self._token_expiry - timedelta(seconds=settings.SALESFORCE_TOKEN_REFRESH_BUFFER)
        return datetime.now(timezone.utc) >= refresh_at

    async def _request_token(self) -> Dict[str, Any]:
        form = {
            "grant_type": "password",
            "client_id": settings.SALESFORCE_CLIENT_ID,
            "client_secret": settings.SALESFORCE_CLIENT_SECRET,
            "username": settings.SALESFORCE_USERNAME,
            "password": settings.SALESFORCE_PASSWORD,
        }
        async with httpx.AsyncClient(timeout=30.0) as client:
            try:
                response = await client.post(str(settings.SALESFORCE_TOKEN_URL), data=form)
            except httpx.RequestError as e:
                logger.error(f"Token request to Salesforce failed: {e.__class__.__name__}: {e}")
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail=f"Failed to authenticate with Salesforce (network issue): {e.__class__.__name__}",
                ) from e
        if response.is_error:
            logger.error(f"Salesforce rejected the token request ({response.status_code}): {response.text}")
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=_token_error_detail(response))
        return response.json()

    async def authenticate(self) -> None:
        """Requests a new token for the integration user and caches it."""
        logger.info(f"Authenticating with Salesforce as {settings.SALESFORCE_USERNAME}")
        token = await self._request_token()
        if not token.get("access_token") or not token.get("instance_url"):
            logger.error("Token response is missing access_token or instance_url.")
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Salesforce authentication response missing critical data.",
            )

        issued_at = int(token.get("issued_at") or datetime.now(timezone.utc).timestamp() * 1000) / 1000.0
        SalesforceAuth._access_token = token["access_token"]
        SalesforceAuth._instance_url = token["instance_url"]
        SalesforceAuth._token_expiry = datetime.fromtimestamp(issued_at + ASSUMED_SESSION_SECONDS, tz=timezone.utc)
        logger.info(f"Salesforce session established on {token['instance_url']}, refresh due before {SalesforceAuth._token_expiry.isoformat()}")

    async def get_auth_details(self) -> Tuple[str, str]:
        """Returns (access_token, instance_url), refreshing a missing or expiring token first."""
        async with token_lock:
            if self._is_token_expired():
                await self.authenticate()
        return SalesforceAuth._access_token, SalesforceAuth._instance_url

    async def handle_401_unauthorized(self) -> None:
        """Drops the cached session after Salesforce rejected it and authenticates again."""
        async with token_lock:
            SalesforceAuth._access_token = None
            SalesforceAuth._token_expiry = None
            await self.authenticate()


_auth_instance: Optional[SalesforceAuth] = None


async def get_salesforce_auth_instance() -> SalesforceAuth:
    """FastAPI dependency returning the shared, authenticated SalesforceAuth."""
    global _auth_instance
    if _auth_instance is None:
        _auth_instance = SalesforceAuth()
    await _auth_instance.get_auth_details()
    return _auth_instance
