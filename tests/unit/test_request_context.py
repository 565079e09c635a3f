from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from app.middleware import RequestContextMiddleware


def _client() -> TestClient:
    app = FastAPI()

    @app.get("/echo")
    async def echo(request: Request):
        return {
            "request_id": request.state.request_id,
            "ip_address": request.state.ip_address,
            "public_url": request.state.public_url,
        }

    app.add_middleware(RequestContextMiddleware)
    return TestClient(app)


def _settings(monkeypatch, **values):
    defaults = {"WEBHOOK_PUBLIC_BASE_URL": None, "TRUST_X_FORWARDED_FOR": False, "TRUSTED_PROXY_IPS": []}
    defaults.update(values)
    for name, value in defaults.items():
        monkeypatch.setattr(f"app.middleware.request_context.settings.{name}", value)


def test_generates_request_id(monkeypatch):
    _settings(monkeypatch)

    response = _client().get("/echo")

    request_id = response.json()["request_id"]
    assert len(request_id) == 36
    assert response.headers["X-Request-ID"] == request_id


def test_oversized_request_id_is_replaced(monkeypatch):
    _settings(monkeypatch)

    response = _client().get("/echo", headers={"X-Request-ID": "x" * 200})

    assert response.json()["request_id"] != "x" * 200


def test_public_url_defaults_to_request_url(monkeypatch):
    _settings(monkeypatch)

    response = _client().get("/echo?a=1")

    assert response.json()["public_url"] == "http://testserver/echo?a=1"


def test_public_url_uses_configured_base(monkeypatch):
    _settings(monkeypatch, WEBHOOK_PUBLIC_BASE_URL="https://api.news.example.com/")

    response = _client().get("/echo?a=1")

    assert response.json()["public_url"] == "https://api.news.example.com/echo?a=1"


def test_forwarded_headers_ignored_from_untrusted_client(monkeypatch):
    _settings(monkeypatch, TRUST_X_FORWARDED_FOR=True, TRUSTED_PROXY_IPS=["10.0.0.1"])

    response = _client().get(
        "/echo",
        headers={"X-Forwarded-For": "1.2.3.4", "X-Forwarded-Proto": "https", "X-Forwarded-Host": "evil.test"},
    )

    data = response.json()
    assert data["ip_address"] == "testclient"
    assert data["public_url"] == "http://testserver/echo"


def test_forwarded_headers_honored_from_trusted_proxy(monkeypatch):
    _settings(monkeypatch, TRUST_X_FORWARDED_FOR=True, TRUSTED_PROXY_IPS=["testclient"])

    response = _client().get(
        "/echo",
        headers={
            "X-Forwarded-For": "1.2.3.4, 10.0.0.1",
            "X-Forwarded-Proto": "https",
            "X-Forwarded-Host": "api.news.example.com",
        },
    )

    data = response.json()
    assert data["ip_address"] == "1.2.3.4"
    assert data["public_url"] == "https://api.news.example.com/echo"
