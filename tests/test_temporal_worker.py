"""
Temporal activity tests.

Activities are plain coroutines; the controller is replaced by an
httpx.MockTransport.

Run with: python -m pytest tests/test_temporal_worker.py -v
"""

import httpx
import pytest

import temporal_worker


@pytest.fixture
def controller(monkeypatch):
    """Route activity HTTP calls to an in-memory handler."""
    calls = []
    responses = {}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        status, body = responses.get(request.url.path, (404, {"detail": "Not Found"}))
        return httpx.Response(status, json=body)

    def client(timeout):
        return httpx.AsyncClient(
            base_url="http://controller.test",
            headers={"Authorization": "Bearer t"},
            transport=httpx.MockTransport(handler),
            timeout=timeout,
        )

    monkeypatch.setattr(temporal_worker, "controller_client", client)
    monkeypatch.setattr(temporal_worker, "KILLSWITCH_FILE", temporal_worker.Path("/nonexistent/KILLSWITCH"))
    return calls, responses


class TestEnsureGateway:
    @pytest.mark.asyncio
    async def test_posts_ensure(self, controller):
        calls, responses = controller
        responses["/api/admin/gateway/ensure"] = (200, {"status": "running", "gateway_port": 18789})

        assert await temporal_worker.ensure_gateway() == "running"
        assert calls[0].method == "POST"
        assert calls[0].headers["Authorization"] == "Bearer t"

    @pytest.mark.asyncio
    async def test_controller_error_raises_for_retry(self, controller):
        _, responses = controller
        responses["/api/admin/gateway/ensure"] = (503, {"detail": "Gateway did not start"})

        with pytest.raises(httpx.HTTPStatusError):
            await temporal_worker.ensure_gateway()

    @pytest.mark.asyncio
    async def test_killswitch_skips_controller(self, controller, tmp_path, monkeypatch):
        calls, _ = controller
        killswitch = tmp_path / "KILLSWITCH_default"
        killswitch.touch()
        monkeypatch.setattr(temporal_worker, "KILLSWITCH_FILE", killswitch)

        result = await temporal_worker.ensure_gateway()
        assert "Killswitch active" in result
        assert calls == []


class TestSyncBackup:
    @pytest.mark.asyncio
    async def test_returns_last_sync(self, controller):
        _, responses = controller
        responses["/api/admin/storage/sync"] = (200, {"success": True, "lastSync": "2024-01-01T00:00:00+00:00"})
        assert await temporal_worker.sync_backup() == "2024-01-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_not_configured_raises(self, controller):
        _, responses = controller
        responses["/api/admin/storage/sync"] = (400, {"detail": {"error": "Backup storage is not configured"}})
        with pytest.raises(httpx.HTTPStatusError):
            await temporal_worker.sync_backup()


class TestControllerClient:
    def test_bearer_header_when_token_set(self, monkeypatch):
        monkeypatch.setattr(temporal_worker, "CONTROLLER_API_TOKEN", "secret")
        client = temporal_worker.controller_client(5)
        assert client.headers["Authorization"] == "Bearer secret"
        assert str(client.base_url).startswith(temporal_worker.CONTROLLER_URL)

    def test_no_header_without_token(self, monkeypatch):
        monkeypatch.setattr(temporal_worker, "CONTROLLER_API_TOKEN", "")
        assert "Authorization" not in temporal_worker.controller_client(5).headers
