"""Client authentication against the shared proxy secret.

The caller may present the secret in any of five places. They are checked in
this order and the first non-empty (after trimming) value wins:

  1. ``x-por-api-key`` header          (vendor-specific)
  2. ``x-api-key`` header              (generic)
  3. ``Authorization`` header          ("Bearer <secret>" or the raw value)
  4. ``x-goog-api-key`` header         (Google style)
  5. ``key`` query parameter

The candidate must equal the configured secret exactly (case-sensitive). This
is a shared-secret scheme, not a token scheme: nothing is hashed or decoded.

Every credential location used here is also stripped from the upstream request
by :mod:`keyrelay.proxy.headers`, so the proxy secret never leaves the proxy.
"""

from __future__ import annotations

import enum
import hmac
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from keyrelay.config import Config
from keyrelay.constants import (
    AUTHORIZATION_HEADER,
    BEARER_PREFIX,
    GENERIC_KEY_HEADER,
    GOOGLE_KEY_HEADER,
    KEY_QUERY_PARAM,
    SECRET_LOG_PREFIX_CHARS,
    VENDOR_KEY_HEADER,
)
from keyrelay.errors import ConfigInvalid, InvalidSecret, MissingSecret
from keyrelay.utils.logger import get_logger, mask_secret

logger = get_logger(__name__)


class AuthSource(str, enum.Enum):
    """Where the client secret was found."""

    HEADER_POR = "x-por-api-key header"
    HEADER_X_API_KEY = "x-api-key header"
    HEADER_AUTH_BEARER = "Authorization: Bearer"
    HEADER_AUTH_DIRECT = "Authorization (direct)"
    HEADER_GOOG_API_KEY = "x-goog-api-key header"
    QUERY_PARAM = "query parameter 'key'"
    NONE = "none"


@dataclass(frozen=True)
class AuthResult:
    """Outcome of :meth:`ClientAuthenticator.extract` for one request.

    ``secret`` is None exactly when ``source`` is :attr:`AuthSource.NONE`.
    """

    secret: Optional[str]
    source: AuthSource

    @property
    def found(self) -> bool:
        return self.secret is not None

    def __repr__(self) -> str:
        return f"AuthResult(secret={mask_secret(self.secret)!r}, source={self.source.name})"


# An extractor looks at one location and returns (secret, source) or None.
Extractor = Callable[[Any], Optional[tuple[str, AuthSource]]]


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _header_extractor(header: str, source: AuthSource) -> Extractor:
    def extract(request: Any) -> Optional[tuple[str, AuthSource]]:
        value = _clean(request.headers.get(header))
        return (value, source) if value else None

    extract.__name__ = f"extract_{header.replace('-', '_')}"
    return extract


def extract_authorization(request: Any) -> Optional[tuple[str, AuthSource]]:
    """``Authorization: Bearer <secret>`` (any case) or the raw header value."""
    value = _clean(request.headers.get(AUTHORIZATION_HEADER))
    if value is None:
        return None
    if value.lower().startswith(BEARER_PREFIX):
        token = _clean(value[len(BEARER_PREFIX):])
        return (token, AuthSource.HEADER_AUTH_BEARER) if token else None
    return value, AuthSource.HEADER_AUTH_DIRECT


def extract_query_param(request: Any) -> Optional[tuple[str, AuthSource]]:
    """First ``key`` query parameter; later repeats are ignored."""
    values = request.query_params.getlist(KEY_QUERY_PARAM)
    value = _clean(values[0]) if values else None
    return (value, AuthSource.QUERY_PARAM) if value else None


DEFAULT_EXTRACTORS: tuple[Extractor, ...] = (
    _header_extractor(VENDOR_KEY_HEADER, AuthSource.HEADER_POR),
    _header_extractor(GENERIC_KEY_HEADER, AuthSource.HEADER_X_API_KEY),
    extract_authorization,
    _header_extractor(GOOGLE_KEY_HEADER, AuthSource.HEADER_GOOG_API_KEY),
    extract_query_param,
)


class ClientAuthenticator:
    """Validates the caller's proxy secret.

    Args:
        config:     Immutable proxy configuration; ``config.proxy.secret`` is the
                    value callers must present.
        extractors: Ordered credential locations. Evaluation stops at the first
                    extractor that returns a value.
    """

    def __init__(
        self,
        config: Config,
        extractors: Sequence[Extractor] = DEFAULT_EXTRACTORS,
    ) -> None:
        self._secret: Optional[str] = config.proxy.secret
        self._extractors = tuple(extractors)

    def extract(self, request: Any) -> AuthResult:
        """Locate the client secret on ``request``.

        ``request`` needs case-insensitive ``headers`` and ``query_params``
        mappings (a Starlette ``Request`` has both).
        """
        for extractor in self._extractors:
            hit = extractor(request)
            if hit is not None:
                secret, source = hit
                return AuthResult(secret=secret, source=source)
        return AuthResult(secret=None, source=AuthSource.NONE)

    def authenticate(self, request: Any) -> AuthResult:
        """Authenticate ``request`` against the configured proxy secret.

        Returns:
            The :class:`AuthResult` that matched.

        Raises:
            MissingSecret: No candidate secret in any location.
            InvalidSecret: The candidate does not exactly equal the proxy secret.
            ConfigInvalid: No proxy secret is configured.
        """
        if not self._secret:
            raise ConfigInvalid(missing=["proxy.secret"])

        result = self.extract(request)
        if not result.found:
            logger.warning("auth_failed", reason="missing_secret")
            raise MissingSecret()

        candidate = result.secret or ""
        if not hmac.compare_digest(
            candidate.encode("utf-8"), self._secret.encode("utf-8")
        ):
            logger.warning(
                "auth_failed",
                reason="invalid_secret",
                source=result.source.value,
            )
            raise InvalidSecret()

        logger.info(
            "client_authenticated",
            source=result.source.value,
            secret_prefix=mask_secret(result.secret, SECRET_LOG_PREFIX_CHARS),
        )
        return result
