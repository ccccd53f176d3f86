"""Unit tests for keyrelay.errors and keyrelay.models.responses."""

from __future__ import annotations

import json

import pytest

from keyrelay.errors import (
    AuthError,
    BodyReadFailure,
    ClientDisconnected,
    ConfigInvalid,
    EmptyPool,
    InvalidSecret,
    MissingSecret,
    NotReady,
    ProxyError,
    UpstreamUnreachable,
)
from keyrelay.models.responses import (
    build_error_response,
    build_preflight_response,
    build_status_response,
)

REQUEST_ID = "01KJ0JRVHYA7KX32VPN5ZSCTMV"


class TestErrorTaxonomy:
    @pytest.mark.parametrize(
        "error,status,code",
        [
            (ConfigInvalid(), 500, "config_invalid"),
            (MissingSecret(), 401, "missing_secret"),
            (InvalidSecret(), 401, "invalid_secret"),
            (EmptyPool(), 500, "empty_key_pool"),
            (UpstreamUnreachable(), 502, "upstream_unreachable"),
            (BodyReadFailure("inbound"), 400, "body_read_failure"),
            (BodyReadFailure("outbound"), 500, "body_read_failure"),
            (ClientDisconnected(), 499, "client_disconnected"),
            (NotReady(), 503, "not_ready"),
        ],
    )
    def test_status_and_code(self, error: ProxyError, status: int, code: str) -> None:
        assert error.status_code == status
        assert error.code == code
        assert error.message

    def test_auth_errors_share_base(self) -> None:
        assert isinstance(MissingSecret(), AuthError)
        assert isinstance(InvalidSecret(), AuthError)

    def test_config_invalid_lists_missing_fields(self) -> None:
        error = ConfigInvalid(missing=["proxy.secret"])
        assert error.details == {"missing_fields": ["proxy.secret"]}

    def test_custom_message(self) -> None:
        assert UpstreamUnreachable("down").message == "down"
        assert str(UpstreamUnreachable("down")) == "down"


class TestBuildErrorResponse:
    def test_json_shape(self) -> None:
        response = build_error_response(
            ConfigInvalid(missing=["upstream.keys"]), REQUEST_ID
        )
        body = json.loads(response.body)
        assert response.status_code == 500
        assert body == {
            "error": "config_invalid",
            "message": "Proxy is not configured correctly",
            "details": {"request_id": REQUEST_ID, "missing_fields": ["upstream.keys"]},
        }

    def test_headers(self) -> None:
        response = build_error_response(
            InvalidSecret(), REQUEST_ID, origin="https://app.example"
        )
        assert response.status_code == 401
        assert response.headers["access-control-allow-origin"] == "https://app.example"
        assert response.headers["x-keyrelay-request-id"] == REQUEST_ID
        assert response.headers["content-type"] == "application/json"

    def test_extra_details_merged(self) -> None:
        response = build_error_response(
            UpstreamUnreachable(details={"reason": "ConnectError"}),
            REQUEST_ID,
            extra_details={"attempt": 1},
        )
        details = json.loads(response.body)["details"]
        assert details == {"request_id": REQUEST_ID, "reason": "ConnectError", "attempt": 1}


class TestBuildStatusResponse:
    def test_flat_shape_with_origin(self) -> None:
        response = build_status_response(
            500, code="internal_error", message="Internal server error", origin="https://a.example"
        )
        assert response.status_code == 500
        assert json.loads(response.body) == {
            "error": "internal_error",
            "message": "Internal server error",
            "details": {},
        }
        assert response.headers["access-control-allow-origin"] == "https://a.example"


class TestBuildPreflightResponse:
    def test_no_content(self) -> None:
        response = build_preflight_response("*", REQUEST_ID)
        assert response.status_code == 204
        assert response.body == b""
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["access-control-max-age"] == "86400"
        assert response.headers["x-keyrelay-request-id"] == REQUEST_ID
