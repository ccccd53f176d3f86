"""Error taxonomy for the keyrelay forwarding pipeline.

Every failure that ends a request is one of the exceptions below. Each carries
the HTTP status it maps to and a stable ``code`` string; the proxy handler
turns them into the JSON error shape via
:func:`keyrelay.models.responses.build_error_response`.

  ConfigInvalid        500  required configuration missing or unusable
  MissingSecret        401  no client secret in any recognised location
  InvalidSecret        401  client secret does not match the proxy secret
  EmptyPool            500  key pool has no upstream credentials
  UpstreamUnreachable  502  DNS / connect / timeout / protocol failure
  BodyReadFailure      400  inbound body could not be read
                       500  upstream body could not be read
  ClientDisconnected   499  caller went away before the upstream answered
  NotReady             503  request arrived before startup finished

None of these are retried. Messages and details must never contain the proxy
secret or an upstream key.
"""

from __future__ import annotations

from typing import Any, Optional


class ProxyError(Exception):
    """Base class for terminal, per-request proxy failures."""

    status_code: int = 500
    code: str = "proxy_error"
    default_message: str = "Proxy error"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details: dict[str, Any] = dict(details or {})
        super().__init__(self.message)


class ConfigInvalid(ProxyError):
    """Raised when the proxy is missing required configuration.

    ``missing`` lists the dotted config field names that are absent, e.g.
    ``["proxy.secret", "upstream.keys"]``. Field names are safe to return to
    the client; values never are.
    """

    status_code = 500
    code = "config_invalid"
    default_message = "Proxy is not configured correctly"

    def __init__(
        self,
        missing: Optional[list[str]] = None,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.missing: list[str] = list(missing or [])
        merged = dict(details or {})
        if self.missing:
            merged["missing_fields"] = self.missing
        super().__init__(message, merged)


class AuthError(ProxyError):
    """Base class for client authentication failures (HTTP 401)."""

    status_code = 401
    code = "unauthorized"


class MissingSecret(AuthError):
    code = "missing_secret"
    default_message = "Authentication failed: no proxy secret supplied"


class InvalidSecret(AuthError):
    code = "invalid_secret"
    default_message = "Authentication failed: proxy secret is invalid"


class EmptyPool(ProxyError):
    """Raised by KeyPool.select() when no upstream credentials are configured."""

    status_code = 500
    code = "empty_key_pool"
    default_message = "No upstream credentials are configured"


class UpstreamUnreachable(ProxyError):
    status_code = 502
    code = "upstream_unreachable"
    default_message = "Upstream API could not be reached"


class BodyReadFailure(ProxyError):
    """Raised when a request or response body cannot be read.

    ``direction="inbound"`` (the client's body) maps to 400;
    ``direction="outbound"`` (the upstream's body) maps to 500.
    """

    code = "body_read_failure"
    default_message = "Failed to read message body"

    def __init__(
        self,
        direction: str = "inbound",
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.direction = direction
        self.status_code = 400 if direction == "inbound" else 500
        merged = dict(details or {})
        merged["direction"] = direction
        super().__init__(message, merged)


class ClientDisconnected(ProxyError):
    """Raised when the inbound connection closes while the upstream call is pending.

    The response built from this error is never delivered; it exists so the
    handler's failure path stays uniform.
    """

    status_code = 499
    code = "client_disconnected"
    default_message = "Client closed the connection"


class NotReady(ProxyError):
    status_code = 503
    code = "not_ready"
    default_message = "keyrelay is starting up"
