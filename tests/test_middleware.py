"""Middleware tests for security headers, request ID and CORS."""

from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from bilinote.errors import NoSubtitlesAvailable
from bilinote.middleware import SecurityHeadersMiddleware


class TestSecurityHeadersMiddleware:
    """Tests for SecurityHeadersMiddleware."""

    def test_security_headers_present(self, client):
        """Test that security headers are present in response."""
        response = client.get("/")

        assert response.status_code == 200
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "Content-Security-Policy" in response.headers

    def test_csp_allows_swagger_ui(self, client):
        """Test that CSP allows scripts for Swagger UI paths."""
        response = client.get("/docs")
        csp = response.headers.get("Content-Security-Policy", "")

        assert "default-src 'self'" in csp
        assert "https://cdn.jsdelivr.net" in csp

    def test_csp_restricts_api_paths(self, client):
        """Test that JSON endpoints get the strict policy."""
        response = client.get("/health")
        csp = response.headers.get("Content-Security-Policy", "")

        assert "default-src 'none'" in csp

    def test_no_hsts_over_http(self, client):
        """Test that HSTS is only sent for HTTPS requests."""
        response = client.get("/")

        assert "Strict-Transport-Security" not in response.headers

    def test_hsts_over_https(self, client):
        response = client.get("https://testserver/")

        assert "max-age=31536000" in response.headers["Strict-Transport-Security"]

    def test_referrer_policy(self, client):
        assert client.get("/health").headers["Referrer-Policy"] == "no-referrer"

    def test_api_responses_are_not_stored(self, client):
        """Test that /api responses, including errors, are marked no-store."""
        response = client.get("/api/subtitles?video_url=")

        assert response.status_code == 400
        assert response.headers["Cache-Control"] == "no-store"

    def test_health_may_be_cached(self, client):
        assert "Cache-Control" not in client.get("/health").headers

    def test_hsts_max_age_is_configurable(self):
        """Test that the HSTS lifetime comes from the middleware argument."""
        app = FastAPI()
        app.add_middleware(SecurityHeadersMiddleware, hsts_max_age=600)

        @app.get("/ping")
        def ping():
            return {"ok": True}

        response = TestClient(app).get("https://testserver/ping")

        assert response.headers["Strict-Transport-Security"] == "max-age=600; includeSubDomains"


class TestRequestIdMiddleware:
    """Tests for RequestIdMiddleware."""

    def test_request_id_header_present(self, client):
        """Test that X-Request-ID header is present in response."""
        response = client.get("/")

        assert response.status_code == 200
        # UUID format: xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx
        assert len(response.headers["X-Request-ID"]) == 36

    def test_request_id_from_header(self, client):
        """Test that X-Request-ID header from request is used if provided."""
        custom_id = "custom-request-id-12345"
        response = client.get("/", headers={"X-Request-ID": custom_id})

        assert response.headers["X-Request-ID"] == custom_id

    def test_request_ids_differ(self, client):
        first = client.get("/").headers["X-Request-ID"]
        second = client.get("/").headers["X-Request-ID"]

        assert first != second


class TestMiddlewareIntegration:
    """Integration tests for middleware stack."""

    def test_headers_on_error_response(self, client):
        """Test that error responses carry the same headers."""
        extractor = MagicMock()
        extractor.extract = AsyncMock(side_effect=NoSubtitlesAvailable("Video has no subtitles"))

        with patch("bilinote.main.get_extractor", return_value=extractor):
            response = client.post(
                "/api/process", json={"videoUrl": "https://www.bilibili.com/video/BV1GJ411x7h7"}
            )

        assert response.status_code == 404
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "X-Request-ID" in response.headers

    def test_cors_allows_any_origin(self, client):
        """Test that browser front-ends on other origins may call the API."""
        response = client.options(
            "/api/process",
            headers={
                "Origin": "https://notes.example.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "content-type",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
