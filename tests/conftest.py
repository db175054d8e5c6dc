"""Shared fixtures: in-memory OAuth provider and Gmail API fakes."""

import asyncio
import base64
from datetime import datetime, timedelta, timezone

import pytest

from gmail_mcp_server.config import Settings
from gmail_mcp_server.errors import ProviderError, RefreshFailed, UpstreamApiError
from gmail_mcp_server.models import Credential


def make_credential(access_token="access-1", refresh_token="refresh-1", expires_in=3600):
    return Credential(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        scopes={"https://www.googleapis.com/auth/gmail.readonly"},
    )


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


class FakeOAuthProvider:
    """Stands in for GoogleOAuthProvider without network access."""

    def __init__(self, refresh_delay=0.0):
        self.refresh_delay = refresh_delay
        self.refresh_calls = 0
        self.refresh_error = None
        self.exchange_error = None
        self.exchanged_codes = []

    def start_authorization(self, state):
        return f"https://accounts.example.com/auth?state={state}", {"state": state}

    async def exchange_code(self, flow, code):
        if self.exchange_error:
            raise ProviderError(self.exchange_error)
        self.exchanged_codes.append(code)
        return make_credential(access_token=f"token-for-{code}")

    async def refresh(self, credential):
        self.refresh_calls += 1
        await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise RefreshFailed(self.refresh_error)
        return make_credential(access_token=f"refreshed-{self.refresh_calls}", refresh_token="")


class FakeGmail:
    """Async stand-in for GmailClient backed by dictionaries."""

    def __init__(self):
        self.threads = {}
        self.messages = {}
        self.attachments = {}
        self.search_result = {"threads": [], "resultSizeEstimate": 0}
        self.drafts = []
        self.sent = []
        self.sent_drafts = []

    async def search_threads(self, query, max_results=10):
        return self.search_result

    async def get_thread(self, thread_id):
        if thread_id not in self.threads:
            raise UpstreamApiError("Gmail API error: 404 - Not Found", status=404)
        return self.threads[thread_id]

    async def get_message(self, message_id):
        if message_id not in self.messages:
            raise UpstreamApiError("Gmail API error: 404 - Not Found", status=404)
        return self.messages[message_id]

    async def get_attachment(self, message_id, attachment_id):
        return {"data": b64url(self.attachments[attachment_id])}

    async def create_draft(self, raw, thread_id=None):
        self.drafts.append((raw, thread_id))
        return {"id": f"draft-{len(self.drafts)}", "message": {"id": "m-draft"}}

    async def send_message(self, raw, thread_id=None):
        self.sent.append(raw)
        return {"id": f"sent-{len(self.sent)}", "threadId": "t-sent"}

    async def send_draft(self, draft_id):
        self.sent_drafts.append(draft_id)
        return {"id": "sent-from-draft", "threadId": "t-draft", "labelIds": ["SENT"]}


def attachment_message(message_id, filename, mime_type, data, attachment_id="att-1"):
    """A Gmail message resource with one attachment nested in a multipart."""
    return {
        "id": message_id,
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [{"name": "Subject", "value": "With attachment"}],
            "parts": [
                {
                    "mimeType": "text/plain",
                    "body": {"data": b64url(b"See attached.")},
                },
                {
                    "mimeType": "multipart/alternative",
                    "parts": [
                        {
                            "mimeType": mime_type,
                            "filename": filename,
                            "body": {"attachmentId": attachment_id, "size": len(data)},
                        }
                    ],
                },
            ],
        },
    }


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        gmail_client_id="test-client-id",
        gmail_client_secret="test-secret",
        app_data_dir=tmp_path / "data",
        download_dir=tmp_path / "downloads",
    )


@pytest.fixture
def provider():
    return FakeOAuthProvider()


@pytest.fixture
def gmail():
    return FakeGmail()
