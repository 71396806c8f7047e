from unittest.mock import MagicMock


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200

    payload = response.json()
    assert payload["status_code"] == 200
    assert payload["status"] == "success"
    assert payload["message"] == "Service is healthy"
    assert payload["data"] == {"status": "ok", "service": "Sitemap Checker"}


def test_root_info(client):
    response = client.get("/")
    assert response.status_code == 200
    payload = response.json()
    assert payload["app_name"] == "Sitemap Checker"
    assert payload["version"] == "1.0.0"
    assert payload["docs_url"] == "/docs"
    assert payload["api_base"] == "/api/v1"


def test_validator_health_available(client, test_app):
    validator = MagicMock()
    validator.get_status.return_value = {"available": True, "status": 200, "checked_at": "2026-10-19T09:00:00+00:00"}
    test_app.state.validator_client = validator

    response = client.get("/health/validator")

    assert response.status_code == 200
    assert response.json()["data"]["available"] is True


def test_validator_health_unavailable(client, test_app):
    validator = MagicMock()
    validator.get_status.return_value = {
        "available": False,
        "status": None,
        "checked_at": "2026-10-19T09:00:00+00:00",
        "error": "unreachable",
    }
    test_app.state.validator_client = validator

    response = client.get("/health/validator")

    assert response.status_code == 503
    payload = response.json()
    assert payload["status"] == "error"
    assert payload["data"]["error"] == "unreachable"


def test_unknown_route_uses_error_envelope(client):
    response = client.get("/api/v1/does-not-exist")

    assert response.status_code == 404
    payload = response.json()
    assert payload["status"] == "error"
    assert payload["status_code"] == 404
