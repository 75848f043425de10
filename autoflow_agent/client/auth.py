"""Activepieces sign-in with a cached, single-flight bearer token.

One AuthTokenProvider is shared by every client in the process. The token is
valid for TOKEN_TTL_SECONDS after sign-in. Concurrent callers that find the
cache empty or expired share a single in-flight sign-in request and all receive
its result (token or AuthError).

The sign-in response must match SignInResponse exactly; any other shape is an
AuthError rather than a guess.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from autoflow_agent.client.config import Settings
from autoflow_agent.errors import AuthError

logger = logging.getLogger("autoflow_agent.client.auth")

TOKEN_TTL_SECONDS: float = 23 * 60 * 60
_SIGN_IN_PATH = "/authentication/sign-in"


class SignInResponse(BaseModel):
    """Accepted shape of POST /authentication/sign-in."""

    model_config = ConfigDict(extra="ignore")

    token: str = Field(min_length=1)
    projectId: str | None = None


class AuthTokenProvider:
    """Caches the Activepieces bearer token and refreshes it single-flight."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.api_url,
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(settings.timeout, connect=10.0),
            transport=transport,
        )
        self._clock = clock
        self._token: str | None = None
        self._expires_at: float = 0.0
        self._project_id: str | None = None
        self._inflight: asyncio.Future[str] | None = None

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def project_id(self) -> str | None:
        """Project ID reported by the last successful sign-in, if any."""
        return self._project_id

    def _cached(self) -> str | None:
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    async def get_token(self) -> str:
        """Return a valid token, signing in at most once across concurrent callers."""
        token = self._cached()
        if token:
            return token

        inflight = self._inflight
        if inflight is None or inflight.done():
            inflight = asyncio.ensure_future(self._sign_in())
            inflight.add_done_callback(self._release)
            self._inflight = inflight
        # shield: a cancelled waiter must not cancel the shared sign-in
        return await asyncio.shield(inflight)

    def _release(self, inflight: asyncio.Future[str]) -> None:
        """Forget a finished sign-in so its outcome is never replayed."""
        if self._inflight is inflight:
            self._inflight = None
        if not inflight.cancelled():
            # marks the error retrieved when every waiter has gone away
            inflight.exception()

    def clear_token(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def _sign_in(self) -> str:
        email = self._settings.email
        password = self._settings.password
        if not email or not password:
            raise AuthError("AP_EMAIL and AP_PASSWORD are required to sign in")

        logger.info("Signing in to Activepieces at %s", self._settings.base_url)
        try:
            r = await self._client.post(
                _SIGN_IN_PATH, json={"email": email, "password": password},
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Sign-in request failed: {e}") from e

        if r.status_code >= 400:
            raise AuthError(
                f"Sign-in failed ({r.status_code}): {r.text[:200]}",
                status_code=r.status_code,
            )

        try:
            body = SignInResponse.model_validate(r.json())
        except (ValueError, ValidationError) as e:
            raise AuthError(
                f"Unexpected sign-in response shape: {r.text[:200]}",
                status_code=r.status_code,
            ) from e

        self._token = body.token
        self._project_id = body.projectId
        self._expires_at = self._clock() + TOKEN_TTL_SECONDS
        logger.info("Signed in successfully, token cached")
        return body.token
