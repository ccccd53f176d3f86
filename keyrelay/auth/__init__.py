"""Client authentication for keyrelay.

Public API:
  - ClientAuthenticator — extract + validate the caller's proxy secret
  - AuthResult          — which secret was found, and where
  - AuthSource          — the credential locations, in priority order
"""

from __future__ import annotations

from keyrelay.auth.authenticator import (
    DEFAULT_EXTRACTORS,
    AuthResult,
    AuthSource,
    ClientAuthenticator,
)

__all__ = [
    "AuthResult",
    "AuthSource",
    "ClientAuthenticator",
    "DEFAULT_EXTRACTORS",
]
