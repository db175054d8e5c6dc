"""Tests for the Gmail API client wrapper."""

import json
import time

import httplib2
import pytest
from googleapiclient.errors import HttpError

from gmail_mcp_server.auth import TokenManager
from gmail_mcp_server.errors import AuthRequired, UpstreamApiError, UpstreamTimeout
from gmail_mcp_server.gmail_client import GmailClient
from gmail_mcp_server.token_store import TokenStore

from conftest import make_credential


class FakeRequest:
    """Mimics googleapiclient's HttpRequest.execute(http=...)."""

    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.http = None

    def execute(self, http=None):
        self.http = http
        time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def manager(tmp_path, provider):
    manager = TokenManager(TokenStore(tmp_path / "token.json"), provider)
    manager.install(make_credential(access_token="live-token"))
    return manager


class TestGmailClient:
    """Tests for GmailClient._execute error translation."""

    async def test_authorizes_with_current_token(self, manager):
        """Test each call is authorized with the token manager's token."""
        client = GmailClient(manager)
        request = FakeRequest(result={"threads": []})

        assert await client._execute(request, "search threads") == {"threads": []}
        assert request.http.credentials.token == "live-token"

    async def test_requires_authentication(self, tmp_path, provider):
        """Test calls fail with AuthRequired before any login."""
        client = GmailClient(TokenManager(TokenStore(tmp_path / "token.json"), provider))

        with pytest.raises(AuthRequired):
            await client._execute(FakeRequest(result={}), "search threads")

    async def test_http_error_keeps_status(self, manager):
        """Test API errors carry the upstream HTTP status."""
        content = json.dumps({"error": {"code": 404, "message": "Requested entity was not found."}})
        error = HttpError(httplib2.Response({"status": 404}), content.encode())
        client = GmailClient(manager)

        with pytest.raises(UpstreamApiError) as exc_info:
            await client._execute(FakeRequest(error=error), "get thread t1")

        assert exc_info.value.status == 404
        assert "404" in exc_info.value.message

    async def test_timeout(self, manager):
        """Test slow API calls raise UpstreamTimeout."""
        client = GmailClient(manager, timeout_seconds=0.01)

        with pytest.raises(UpstreamTimeout):
            await client._execute(FakeRequest(result={}, delay=0.2), "search threads")

    async def test_network_error(self, manager):
        """Test transport failures become UpstreamApiError."""
        client = GmailClient(manager)

        with pytest.raises(UpstreamApiError):
            await client._execute(FakeRequest(error=ConnectionResetError("reset")), "send draft d1")

    async def test_send_draft_request_shape(self, manager, monkeypatch):
        """Test send_draft posts the draft id to drafts.send."""
        client = GmailClient(manager)
        captured = {}

        async def fake_execute(request, action):
            captured["uri"] = request.uri
            captured["body"] = json.loads(request.body)
            return {"id": "m1"}

        monkeypatch.setattr(client, "_execute", fake_execute)

        assert await client.send_draft("d1") == {"id": "m1"}
        assert captured["uri"].endswith("/gmail/v1/users/me/drafts/send?alt=json")
        assert captured["body"] == {"id": "d1"}
