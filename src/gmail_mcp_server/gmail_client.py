"""Gmail API client wrapper authorized per call by the TokenManager."""

import asyncio
import logging
from typing import Any, Optional

import httplib2
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .auth import TokenManager
from .errors import UpstreamApiError, UpstreamTimeout

logger = logging.getLogger(__name__)


class GmailClient:
    """Thin async facade over the Gmail REST API.

    Each call asks the TokenManager for a valid access token, so refreshes
    happen through its single-flight path and never inside the client.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        timeout_seconds: float = 30.0,
        user_id: str = "me",
    ):
        self.token_manager = token_manager
        self.timeout_seconds = timeout_seconds
        self.user_id = user_id
        self._service = None

    @property
    def service(self):
        """Get or create the Gmail API service (static discovery, no credentials)."""
        if self._service is None:
            self._service = build(
                "gmail",
                "v1",
                http=httplib2.Http(timeout=self.timeout_seconds),
                cache_discovery=False,
                static_discovery=True,
            )
        return self._service

    def _authorized_http(self, access_token: str) -> AuthorizedHttp:
        return AuthorizedHttp(
            Credentials(token=access_token),
            http=httplib2.Http(timeout=self.timeout_seconds),
            max_refresh_attempts=0,
        )

    async def _execute(self, request, action: str) -> dict[str, Any]:
        token = await self.token_manager.get_valid_token()
        http = self._authorized_http(token)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(request.execute, http=http),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Gmail API timed out while trying to {action}")
            raise UpstreamTimeout(
                f"Gmail API did not respond within {self.timeout_seconds}s while trying to {action}"
            ) from e
        except HttpError as e:
            logger.error(f"Failed to {action}: {e}")
            raise UpstreamApiError(
                f"Gmail API error: {e.resp.status} - {e.reason}", status=e.resp.status
            ) from e
        except RefreshError as e:
            raise UpstreamApiError(f"Gmail API rejected the access token: {e}", status=401) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            logger.error(f"Failed to {action}: {e}")
            raise UpstreamApiError(f"Gmail API request failed: {e}") from e

    async def search_threads(self, query: str, max_results: int = 10) -> dict[str, Any]:
        logger.info(f"Searching threads with query: {query}")
        request = (
            self.service.users()
            .threads()
            .list(userId=self.user_id, q=query, maxResults=max_results)
        )
        return await self._execute(request, "search threads")

    async def get_thread(self, thread_id: str) -> dict[str, Any]:
        request = (
            self.service.users()
            .threads()
            .get(userId=self.user_id, id=thread_id, format="full")
        )
        return await self._execute(request, f"get thread {thread_id}")

    async def get_message(self, message_id: str) -> dict[str, Any]:
        request = (
            self.service.users()
            .messages()
            .get(userId=self.user_id, id=message_id, format="full")
        )
        return await self._execute(request, f"get message {message_id}")

    async def get_attachment(self, message_id: str, attachment_id: str) -> dict[str, Any]:
        request = (
            self.service.users()
            .messages()
            .attachments()
            .get(userId=self.user_id, messageId=message_id, id=attachment_id)
        )
        return await self._execute(request, f"download attachment from {message_id}")

    async def create_draft(self, raw: str, thread_id: Optional[str] = None) -> dict[str, Any]:
        message: dict[str, Any] = {"raw": raw}
        if thread_id:
            message["threadId"] = thread_id
        request = self.service.users().drafts().create(userId=self.user_id, body={"message": message})
        return await self._execute(request, "create draft")

    async def send_message(self, raw: str, thread_id: Optional[str] = None) -> dict[str, Any]:
        body: dict[str, Any] = {"raw": raw}
        if thread_id:
            body["threadId"] = thread_id
        request = self.service.users().messages().send(userId=self.user_id, body=body)
        return await self._execute(request, "send message")

    async def send_draft(self, draft_id: str) -> dict[str, Any]:
        request = self.service.users().drafts().send(userId=self.user_id, body={"id": draft_id})
        return await self._execute(request, f"send draft {draft_id}")
