"""Client-facing response builders for keyrelay's own (non-relayed) answers.

  build_error_response():
      Any terminal failure. Body shape::

          {
            "error": "<code>",
            "message": "<human readable>",
            "details": {"request_id": "<ulid>", ...}
          }

      ``details`` carries only non-sensitive diagnostics (request id, missing
      config field names, upstream failure class). The proxy secret and the
      upstream keys are never part of a ProxyError, so they cannot reach here.

  build_preflight_response():
      HTTP 204, no body, fixed CORS headers.

Both attach ``Access-Control-Allow-Origin`` and the request id header.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi.responses import JSONResponse
from starlette.responses import Response

from keyrelay.constants import REQUEST_ID_HEADER
from keyrelay.errors import ProxyError
from keyrelay.proxy.headers import preflight_headers


def build_error_response(
    error: ProxyError,
    request_id: str,
    origin: str = "*",
    extra_details: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    """Render ``error`` as the JSON error shape with its HTTP status.

    Args:
        error:         The terminal failure.
        request_id:    ULID for this request, echoed in body and header.
        origin:        Value for ``Access-Control-Allow-Origin``.
        extra_details: Additional non-sensitive diagnostics to merge in.
    """
    details: dict[str, Any] = {"request_id": request_id}
    details.update(error.details)
    if extra_details:
        details.update(extra_details)

    response = JSONResponse(
        status_code=error.status_code,
        content={
            "error": error.code,
            "message": error.message,
            "details": details,
        },
    )
    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def build_status_response(
    status_code: int,
    code: str,
    message: str,
    origin: str = "*",
) -> JSONResponse:
    """Same JSON shape for failures raised outside the proxy pipeline."""
    response = JSONResponse(
        status_code=status_code,
        content={"error": code, "message": message, "details": {}},
    )
    response.headers["Access-Control-Allow-Origin"] = origin
    return response


def build_preflight_response(origin: str, request_id: str) -> Response:
    """HTTP 204 answer to a CORS preflight; never reaches the upstream."""
    response = Response(status_code=204, headers=preflight_headers(origin))
    response.headers[REQUEST_ID_HEADER] = request_id
    return response
