"""Tests for request ID middleware."""

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from relay.app.core.logging import request_id_var
from relay.app.middleware.request_id import RequestIdMiddleware, get_request_id


def build_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return {"state": get_request_id(request), "context": request_id_var.get()}

    return app


class TestRequestIdMiddleware:
    """Test request id propagation."""

    def test_generates_id(self):
        client = TestClient(build_app())

        response = client.get("/echo")

        request_id = response.headers["X-Request-ID"]
        assert len(request_id) == 36
        assert response.json() == {"state": request_id, "context": request_id}

    def test_keeps_incoming_id(self):
        client = TestClient(build_app())

        response = client.get("/echo", headers={"X-Request-ID": "abc-123"})

        assert response.headers["X-Request-ID"] == "abc-123"
        assert response.json()["context"] == "abc-123"

    def test_context_cleared_after_request(self):
        client = TestClient(build_app())
        client.get("/echo", headers={"X-Request-ID": "abc-123"})

        assert request_id_var.get() is None

    def test_get_request_id_without_middleware(self):
        app = FastAPI()

        @app.get("/plain")
        async def plain(request: Request):
            return {"id": get_request_id(request)}

        assert TestClient(app).get("/plain").json() == {"id": "unknown"}
