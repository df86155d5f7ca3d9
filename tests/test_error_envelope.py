"""Tests for error rendering in the ``{statusCode, message, data}`` envelope."""

import json

import pytest
from fastapi.testclient import TestClient

from coopadmin.api.error_handling import (
    GENERIC_ERROR_MESSAGE,
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from coopadmin.app import create_app
from coopadmin.storage.errors import StoreUnavailable
from coopadmin.storage.redis_cache import MemoryCache


class FailingBackend(MemoryCache):
    async def add_revoked(self, subject_id, fingerprint, ttl_seconds):
        raise ConnectionError("redis down")

    async def is_member_revoked(self, subject_id, fingerprint):
        raise ConnectionError("redis down")


def _app_with_boom(settings):
    app = create_app(settings)

    async def boom():
        raise RuntimeError("kaboom at postgresql://user:pw@db/coop")

    app.add_api_route("/boom", boom, methods=["GET"])
    return app


class TestErrorResponse:
    def test_status_codes_mapped(self):
        assert _error_code_for_status(400) == "validation_error"
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(409) == "conflict"
        assert _error_code_for_status(418) == "server_error"
        assert set(_STATUS_TO_CODE.values()) >= {"unauthorized", "server_error"}

    def test_envelope_shape(self):
        response = _error_response(401, "nope", code="unauthorized")
        body = json.loads(response.body)
        assert response.status_code == 401
        assert body == {"statusCode": 401, "message": "nope", "data": {"code": "unauthorized"}}

    def test_details_included(self):
        response = _error_response(400, "bad", {"field": "password"})
        body = json.loads(response.body)
        assert body["data"] == {"code": "validation_error", "details": {"field": "password"}}


class TestHttpErrors:
    def test_body_validation_is_400(self, client):
        response = client.post("/api/v1/auth/reset-password", json={})
        assert response.status_code == 400
        body = response.json()
        assert body["statusCode"] == 400
        assert "email" in body["message"]

    def test_wrong_type_is_400(self, client):
        response = client.post("/api/v1/auth/login", json={"email": 123, "password": "x"})
        assert response.status_code == 400

    def test_unknown_route_is_404(self, client):
        response = client.get("/api/v1/nowhere")
        assert response.status_code == 404
        assert response.json()["statusCode"] == 404

    def test_unexpected_error_shows_sanitized_detail_outside_production(self, settings):
        with TestClient(_app_with_boom(settings), raise_server_exceptions=False) as client:
            response = client.get("/boom")
        assert response.status_code == 500
        message = response.json()["message"]
        assert "kaboom" in message
        assert "pw@db" not in message

    def test_unexpected_error_is_generic_in_production(self, settings_factory):
        settings = settings_factory(environment="production")
        with TestClient(_app_with_boom(settings), raise_server_exceptions=False) as client:
            response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["message"] == GENERIC_ERROR_MESSAGE

    def test_store_unavailable_is_500(self, client, runtime, admin_credentials):
        def unreachable(email):
            raise StoreUnavailable("credential store", "get_admin_by_email")

        runtime.store.get_admin_by_email = unreachable
        email, password = admin_credentials
        response = client.post("/api/v1/auth/login", json={"email": email, "password": password})
        assert response.status_code == 500
        assert response.json()["message"] == GENERIC_ERROR_MESSAGE


class TestRevocationOutage:
    """Behaviour of protected routes while the revocation cache is unreachable."""

    def test_tokens_rejected_when_cache_down(self, client, runtime, auth_header):
        runtime.revocation.backend = FailingBackend()
        response = client.get("/api/v1/auth/me", headers=auth_header)
        assert response.status_code == 401

    def test_logout_reports_failure(self, client, runtime, auth_header):
        runtime.revocation.backend = FailingBackend()
        runtime.revocation.fail_open = True
        response = client.post("/api/v1/auth/logout", headers=auth_header)
        assert response.status_code == 500

    @pytest.mark.parametrize("fail_open, expected", [(True, 200), (False, 401)])
    def test_fail_open_setting(self, client, runtime, auth_header, fail_open, expected):
        runtime.revocation.backend = FailingBackend()
        runtime.revocation.fail_open = fail_open
        response = client.get("/api/v1/auth/me", headers=auth_header)
        assert response.status_code == expected
