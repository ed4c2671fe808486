"""Credential types and providers for upstream authentication.

  - Credential: immutable (access_token, expiry) pair
  - CredentialProvider: pluggable source of credentials (Protocol)
  - GoogleCredentialProvider: Application Default Credentials via google-auth
  - CredentialError: uniform failure raised to callers of the token cache
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol, Sequence, runtime_checkable

import google.auth
import google.auth.exceptions
import google.auth.transport.requests

from vertex_proxy.utils.logger import PerformanceLogger, get_logger

logger = get_logger(__name__)

# Expiry used for credentials that carry none; never satisfies the cache check.
_ALREADY_EXPIRED = datetime.min.replace(tzinfo=timezone.utc)


class CredentialError(Exception):
    """Raised when a bearer token cannot be obtained."""


@dataclass(frozen=True)
class Credential:
    """A bearer token and the instant it stops being valid (aware UTC)."""

    access_token: str
    expiry: datetime

    def __repr__(self) -> str:
        # Never leak the token into logs or tracebacks.
        return f"Credential(access_token='***', expiry={self.expiry.isoformat()})"


@runtime_checkable
class CredentialProvider(Protocol):
    """Source of short-lived bearer credentials.

    Implementations may raise any exception; TokenCache treats every
    failure the same way.
    """

    async def fetch(self, scopes: Sequence[str]) -> Credential:
        """Obtain a fresh credential for the given OAuth scopes."""
        ...


class GoogleCredentialProvider:
    """Fetches access tokens from Google Application Default Credentials.

    ``google.auth.default()`` and ``Credentials.refresh()`` perform blocking
    I/O (metadata server, token endpoint), so both run in a worker thread.
    """

    async def fetch(self, scopes: Sequence[str]) -> Credential:
        with PerformanceLogger("google_credential_fetch", logger):
            return await asyncio.to_thread(self._fetch_blocking, list(scopes))

    @staticmethod
    def _fetch_blocking(scopes: list[str]) -> Credential:
        try:
            credentials, project_id = google.auth.default(scopes=scopes)
            credentials.refresh(google.auth.transport.requests.Request())
        except google.auth.exceptions.GoogleAuthError as exc:
            raise CredentialError(f"google credential fetch failed: {exc}") from exc

        if not credentials.token:
            raise CredentialError("google credentials returned an empty access token")

        logger.debug("Google credentials refreshed", adc_project=project_id)
        return Credential(
            access_token=credentials.token,
            expiry=_as_utc(credentials.expiry),
        )


def _as_utc(expiry: datetime | None) -> datetime:
    """google-auth reports expiry as naive UTC (or None for non-expiring creds)."""
    if expiry is None:
        return _ALREADY_EXPIRED
    if expiry.tzinfo is None:
        return expiry.replace(tzinfo=timezone.utc)
    return expiry.astimezone(timezone.utc)
