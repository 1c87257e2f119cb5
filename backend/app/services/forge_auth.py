"""
Forge (Autodesk Platform Services) two-legged OAuth token provider.

Each call returns the cached token while it is still valid, otherwise performs
one client-credentials exchange. No background refresh.
The cached token is the only shared mutable state in the pipeline; the lock
makes the refresh single-writer so concurrent callers see either the old
valid token or the freshly issued one.
"""
import asyncio
import logging
import time
from typing import Callable, Optional

import httpx

from app.config import ForgeSettings, INTERNAL_SCOPES, VIEWER_SCOPES
from app.models.pipeline_models import AccessToken
from app.services.errors import CredentialError, TranslationServiceError

logger = logging.getLogger("estimate-forge.auth")

TOKEN_PATH = "/authentication/v2/token"


class ForgeTokenProvider:
    """Caches the last-issued token for one scope set."""

    def __init__(
        self,
        settings: ForgeSettings,
        client: httpx.AsyncClient,
        scope: str = INTERNAL_SCOPES,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.scope = scope
        self._client = client
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()

    def _cached(self) -> Optional[AccessToken]:
        token = self._token
        if token and token.is_valid(self.settings.token_refresh_margin_seconds, now=self._clock()):
            return token
        return None

    async def get_access_token(self) -> AccessToken:
        token = self._cached()
        if token:
            return token
        async with self._lock:
            # Another caller may have refreshed while we waited
            token = self._cached()
            if token:
                return token
            self._token = await self._exchange()
            return self._token

    async def _exchange(self) -> AccessToken:
        if not self.settings.configured:
            raise CredentialError("FORGE_CLIENT_ID / FORGE_CLIENT_SECRET are not configured")

        issued_at = self._clock()
        try:
            response = await self._client.post(
                f"{self.settings.base_url}{TOKEN_PATH}",
                data={"grant_type": "client_credentials", "scope": self.scope},
                auth=(self.settings.client_id, self.settings.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.settings.request_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.error(f"Forge token exchange failed in transit: {e}")
            raise TranslationServiceError(f"Token endpoint unreachable: {e}") from e

        if response.status_code in (400, 401, 403):
            detail = _error_detail(response)
            logger.error(f"Forge rejected client credentials ({response.status_code}): {detail}")
            raise CredentialError(f"Forge authentication failed: {detail}")
        if response.status_code >= 400:
            raise TranslationServiceError(
                f"Token endpoint returned {response.status_code}",
                remote_status=response.status_code,
            )

        payload = response.json()
        access_token = payload.get("access_token")
        if not access_token:
            raise CredentialError("Forge token response carried no access_token")
        expires_in = int(payload.get("expires_in", 3600))
        logger.info(f"Forge token issued (scope='{self.scope}', expires_in={expires_in}s)")
        return AccessToken(
            access_token=access_token,
            expires_at=issued_at + expires_in,
            token_type=payload.get("token_type", "Bearer"),
        )

    def invalidate(self) -> None:
        """Drop the cached token, e.g. after the remote answered 401 with it."""
        self._token = None


def viewer_token_provider(settings: ForgeSettings, client: httpx.AsyncClient) -> ForgeTokenProvider:
    """Read-only token for bootstrapping the browser viewer."""
    return ForgeTokenProvider(settings, client, scope=VIEWER_SCOPES)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return (
            body.get("error_description")
            or body.get("developerMessage")
            or body.get("reason")
            or body.get("detail")
            or str(body)[:200]
        )
    return str(body)[:200]
