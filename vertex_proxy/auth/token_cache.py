"""Bearer token cache with coalesced refresh.

One TokenCache lives on ``app.state.token_cache`` for the process lifetime
and is shared by every request.

Concurrency model (one event loop per worker process):
  - The cached value is a single immutable Credential. A refresh replaces it
    with one assignment, so readers see either the old token+expiry or the
    new one, never a mix.
  - The fast path (valid token) never awaits, so it completes without any
    other coroutine interleaving. Any number of requests take it at once.
  - The slow path runs the provider call as one shared refresh task. A new
    task is only started when none is in flight, so at most one fetch runs
    at a time and every caller that arrives meanwhile awaits the same result.
  - Callers wait on the task through asyncio.shield, so a caller whose
    budget runs out gives up alone and the fetch carries on for the rest.
  - A failed fetch leaves the cached Credential untouched; every waiter of
    that task sees the failure and the next call starts a new fetch.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from vertex_proxy.auth.credentials import Credential, CredentialError, CredentialProvider
from vertex_proxy.constants import CLOUD_PLATFORM_SCOPE, TOKEN_EXPIRY_MARGIN
from vertex_proxy.utils.logger import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCache:
    """Caches the provider's credential until it is within ``expiry_margin`` of expiring."""

    def __init__(
        self,
        provider: CredentialProvider,
        scopes: Sequence[str] = (CLOUD_PLATFORM_SCOPE,),
        expiry_margin: timedelta = TOKEN_EXPIRY_MARGIN,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._provider = provider
        self._scopes = tuple(scopes)
        self._expiry_margin = expiry_margin
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._refresh_task: Optional[asyncio.Task[str]] = None

    @property
    def credential(self) -> Optional[Credential]:
        """The currently cached credential (None before the first fetch)."""
        return self._credential

    @property
    def refreshing(self) -> bool:
        """True while a provider fetch is in flight."""
        return self._refresh_task is not None and not self._refresh_task.done()

    def _usable(self, credential: Optional[Credential]) -> bool:
        if credential is None:
            return False
        return credential.expiry - self._clock() > self._expiry_margin

    async def get_token(self, timeout: Optional[float] = None) -> str:
        """Return a bearer token, fetching a new one if the cached one is stale.

        Args:
            timeout: Seconds left in the caller's budget. ``None`` means no
                     bound. A value ``<= 0`` fails immediately instead of
                     starting a fetch. Running out of budget does not cancel
                     the shared fetch.

        Raises:
            CredentialError: If the provider fails or the budget runs out.
        """
        credential = self._credential
        if self._usable(credential):
            logger.debug("Using cached token")
            return credential.access_token  # type: ignore[union-attr]

        if timeout is not None and timeout <= 0:
            raise CredentialError("deadline exceeded before token fetch")

        task = self._refresh_task
        if task is None or task.done():
            logger.info("Token cache expired or empty, fetching new token")
            task = asyncio.get_running_loop().create_task(self._refresh())
            task.add_done_callback(self._refresh_done)
            self._refresh_task = task
        else:
            logger.debug("Waiting for in-flight token fetch")

        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.error("Token fetch timed out", timeout_s=timeout)
            raise CredentialError(f"token fetch timed out after {timeout}s") from exc

    async def _refresh(self) -> str:
        try:
            fresh = await self._provider.fetch(self._scopes)
        except CredentialError:
            logger.error("Error fetching token", exc_info=True)
            raise
        except Exception as exc:
            logger.error("Error fetching token", error=str(exc), error_type=type(exc).__name__)
            raise CredentialError(str(exc)) from exc

        self._credential = fresh
        logger.info("Fetched new token", expiry=fresh.expiry.isoformat())
        return fresh.access_token

    def _refresh_done(self, task: asyncio.Task[str]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        # Mark the failure as retrieved: every waiter may have timed out.
        if not task.cancelled():
            task.exception()

    async def aclose(self) -> None:
        """Cancel an in-flight fetch (called on shutdown)."""
        task = self._refresh_task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, CredentialError):
            logger.info("In-flight token fetch cancelled")

    def snapshot(self) -> dict[str, object]:
        """Read-only view for /health. Never triggers a fetch."""
        credential = self._credential
        if credential is None:
            return {"token_cached": False, "token_expires_in_s": None}
        remaining = (credential.expiry - self._clock()).total_seconds()
        return {
            "token_cached": self._usable(credential),
            "token_expires_in_s": round(remaining, 1),
        }
