"""Pydantic models for the credential and tool argument documents."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Credential(BaseModel):
    """OAuth credential for the Gmail API.

    ``expires_at`` is always an absolute, timezone-aware UTC instant.
    """

    access_token: str
    refresh_token: str = Field(default="")
    expires_at: datetime
    scopes: set[str] = Field(default_factory=set)
    issued_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the access token was obtained",
    )

    @field_validator("expires_at", "issued_at")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def expires_within(self, margin_seconds: float, now: Optional[datetime] = None) -> bool:
        """True if the access token expires less than ``margin_seconds`` from now."""
        now = now or datetime.now(timezone.utc)
        return self.expires_at - now <= timedelta(seconds=margin_seconds)


# ============================================================================
# Tool argument models
# ============================================================================


class ToolArgs(BaseModel):
    """Base for tool argument documents; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")


class SearchThreadsArgs(ToolArgs):
    query: str = Field(..., description="Gmail search query, e.g. 'from:alice is:unread'")
    max_results: int = Field(
        default=10, ge=1, le=500, description="Maximum number of threads to return (default: 10)"
    )


class CreateDraftArgs(ToolArgs):
    to: str = Field(..., description="Recipient email address")
    subject: str = Field(..., description="Email subject")
    body: str = Field(..., description="Email body text")
    thread_id: Optional[str] = Field(default=None, description="Optional thread ID to reply to")


class ExtractAttachmentArgs(ToolArgs):
    message_id: str = Field(..., description="Gmail message ID")
    filename: str = Field(..., description="Attachment filename")


class FetchEmailBodiesArgs(ToolArgs):
    thread_ids: list[str] = Field(..., min_length=1, description="List of thread IDs to fetch")


class DownloadAttachmentArgs(ToolArgs):
    message_id: str = Field(..., description="Gmail message ID")
    filename: str = Field(..., description="Attachment filename")
    download_dir: Optional[str] = Field(
        default=None, description="Optional download directory (default: server download dir)"
    )


class ForwardEmailArgs(ToolArgs):
    message_id: str = Field(..., description="Gmail message ID to forward")
    to: str = Field(..., description="Recipient email address")
    subject: str = Field(..., description="Forward subject")
    body: str = Field(..., description="Forward body text")


class SendDraftArgs(ToolArgs):
    draft_id: str = Field(..., description="Gmail draft ID to send")
