"""Upstream credentials for Vertex Proxy.

Public API:
  - Credential: immutable bearer token + expiry
  - CredentialProvider: protocol for credential sources
  - GoogleCredentialProvider: Application Default Credentials via google-auth
  - CredentialError: raised when no token can be obtained
  - TokenCache: shared cache with coalesced refresh
"""

from __future__ import annotations

from vertex_proxy.auth.credentials import (
    Credential,
    CredentialError,
    CredentialProvider,
    GoogleCredentialProvider,
)
from vertex_proxy.auth.token_cache import TokenCache

__all__ = [
    "Credential",
    "CredentialError",
    "CredentialProvider",
    "GoogleCredentialProvider",
    "TokenCache",
]
