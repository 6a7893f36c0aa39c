import json

import httpx
import pytest
from fastapi.testclient import TestClient

import main


class FakeUpstream:
    """Stands in for GoldPriceZ behind an httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.body = b"{}"
        self.content_type = "application/json"
        self.error = None

    def reply_json(self, payload, status_code=200):
        self.body = json.dumps(payload).encode()
        self.status_code = status_code
        self.content_type = "application/json"

    def reply_text(self, text, status_code=200, content_type="text/plain"):
        self.body = text.encode()
        self.status_code = status_code
        self.content_type = content_type

    def fail_with(self, error_cls):
        self.error = error_cls

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error("connection refused", request=request)
        return httpx.Response(
            self.status_code, content=self.body, headers={"content-type": self.content_type}
        )


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def settings():
    settings = main.Settings()
    settings.goldpricez_api_key = "test-key"
    settings.goldpricez_base_url = "https://upstream.test/api/rates"
    return settings


@pytest.fixture
def client(upstream, settings):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handle))
    main.app.dependency_overrides[main.get_settings] = lambda: settings
    main.app.dependency_overrides[main.get_http_client] = lambda: http_client
    with TestClient(main.app, raise_server_exceptions=False) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
