"""Gmail tool handlers exposed over MCP.

Handlers shape requests for the GmailClient and return plain JSON-able
documents. Errors are raised as GmailMcpError subclasses and turned into
JSON-RPC errors by the session router.
"""

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Optional

from .errors import ContentTooLarge, InvalidArguments, UnsupportedFormat, UpstreamApiError
from .extract import TextExtractor, default_extractor
from .gmail_client import GmailClient
from .models import (
    CreateDraftArgs,
    DownloadAttachmentArgs,
    ExtractAttachmentArgs,
    FetchEmailBodiesArgs,
    ForwardEmailArgs,
    SearchThreadsArgs,
    SendDraftArgs,
)
from .registry import ToolRegistry

logger = logging.getLogger(__name__)

FORWARD_SEPARATOR = "---------- Forwarded message ----------"

SERVER_INSTRUCTIONS = (
    "Gmail MCP Server - Provides tools for searching, reading, and managing Gmail emails. "
    "Tools: search_threads, create_draft, extract_attachment_by_filename, fetch_email_bodies, "
    "download_attachment, forward_email, send_draft."
)


@dataclass
class ToolContext:
    """Collaborators available to every tool handler."""

    gmail: GmailClient
    extractor: TextExtractor = field(default_factory=lambda: default_extractor)
    attachment_size_limit: int = 25 * 1024 * 1024
    download_dir: Optional[Path] = None


# ============================================================================
# MESSAGE HELPERS
# ============================================================================


def _decode_base64url(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError) as e:
        raise UpstreamApiError(f"Gmail returned undecodable content: {e}") from e


def _get_header(headers: list[dict], name: str) -> Optional[str]:
    """Get header value by name."""
    for header in headers:
        if header.get("name", "").lower() == name.lower():
            return header.get("value", "")
    return None


def extract_message_body(message: dict) -> str:
    """Plain-text body of a message, falling back to HTML, searching nested parts."""
    payload = message.get("payload", {})

    def find(part: dict, mime_type: str) -> Optional[str]:
        if part.get("mimeType") == mime_type and part.get("body", {}).get("data"):
            return part["body"]["data"]
        for subpart in part.get("parts", []):
            found = find(subpart, mime_type)
            if found:
                return found
        return None

    if not payload.get("parts") and payload.get("body", {}).get("data"):
        data = payload["body"]["data"]
    else:
        data = find(payload, "text/plain") or find(payload, "text/html")
    if data is None:
        return ""
    return _decode_base64url(data).decode("utf-8", errors="replace")


def find_attachment(payload: dict, filename: str) -> Optional[dict]:
    """Depth-first search for the part carrying ``filename``."""
    for part in payload.get("parts", []):
        if part.get("filename") == filename and part.get("body", {}).get("attachmentId"):
            return part
        nested = find_attachment(part, filename)
        if nested is not None:
            return nested
    return None


def build_raw_message(
    to: str, subject: str, body: str, extra_headers: Optional[dict[str, str]] = None
) -> str:
    """RFC 2822 message encoded as base64url for the Gmail API."""
    message = MIMEText(body, "plain", "utf-8")
    message["To"] = to
    message["Subject"] = subject
    for name, value in (extra_headers or {}).items():
        message[name] = value
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")


async def _download_attachment_bytes(
    ctx: ToolContext, message_id: str, filename: str, size_limit: Optional[int] = None
) -> tuple[bytes, str]:
    message = await ctx.gmail.get_message(message_id)
    part = find_attachment(message.get("payload", {}), filename)
    if part is None:
        raise UpstreamApiError(f"Attachment '{filename}' not found in message", status=404)

    declared_size = part.get("body", {}).get("size", 0)
    if size_limit is not None and declared_size > size_limit:
        raise ContentTooLarge(
            f"Attachment is {declared_size} bytes, limit is {size_limit}",
            size=declared_size,
            limit=size_limit,
        )

    attachment = await ctx.gmail.get_attachment(message_id, part["body"]["attachmentId"])
    encoded = attachment.get("data")
    if encoded is None:
        raise UpstreamApiError("Gmail returned an attachment without data")
    return _decode_base64url(encoded), part.get("mimeType", "application/octet-stream")


# ============================================================================
# TOOL HANDLERS
# ============================================================================

registry = ToolRegistry()


@registry.tool(
    "search_threads",
    "Search Gmail threads using a query string. Supports Gmail operators such as "
    "'from:', 'to:', 'subject:', 'is:unread', 'has:attachment', 'after:', 'before:'.",
    SearchThreadsArgs,
)
async def search_threads(ctx: ToolContext, args: SearchThreadsArgs) -> dict[str, Any]:
    result = await ctx.gmail.search_threads(args.query, args.max_results)
    threads = result.get("threads", [])
    return {
        "threads": threads,
        "resultSizeEstimate": result.get("resultSizeEstimate", len(threads)),
        "nextPageToken": result.get("nextPageToken"),
    }


@registry.tool("create_draft", "Create a Gmail draft", CreateDraftArgs)
async def create_draft(ctx: ToolContext, args: CreateDraftArgs) -> dict[str, Any]:
    raw = build_raw_message(args.to, args.subject, args.body)
    return await ctx.gmail.create_draft(raw, thread_id=args.thread_id)


@registry.tool(
    "extract_attachment_by_filename",
    "Extract text from an attachment (PDF, DOCX or plain text) identified by filename",
    ExtractAttachmentArgs,
)
async def extract_attachment_by_filename(
    ctx: ToolContext, args: ExtractAttachmentArgs
) -> dict[str, Any]:
    data, mime_type = await _download_attachment_bytes(
        ctx, args.message_id, args.filename, size_limit=ctx.attachment_size_limit
    )
    result: dict[str, Any] = {
        "filename": args.filename,
        "mime_type": mime_type,
        "size": len(data),
    }
    try:
        result["extracted_text"] = await asyncio.to_thread(
            ctx.extractor.extract_text,
            mime_type,
            data,
            ctx.attachment_size_limit,
            args.filename,
        )
    except UnsupportedFormat:
        result["extracted_text"] = None
        result["error"] = "File type not supported for text extraction"
    return result


@registry.tool(
    "fetch_email_bodies",
    "Fetch the sender, subject, date and body of every message in the given threads",
    FetchEmailBodiesArgs,
)
async def fetch_email_bodies(ctx: ToolContext, args: FetchEmailBodiesArgs) -> dict[str, Any]:
    async def fetch_thread(thread_id: str) -> dict[str, Any]:
        try:
            thread = await ctx.gmail.get_thread(thread_id)
        except UpstreamApiError as e:
            logger.error(f"Error fetching thread {thread_id}: {e}")
            return {"thread_id": thread_id, "messages": [], "error": e.message}

        messages = []
        for msg in thread.get("messages", []):
            headers = msg.get("payload", {}).get("headers", [])
            messages.append(
                {
                    "message_id": msg.get("id"),
                    "from": _get_header(headers, "From"),
                    "subject": _get_header(headers, "Subject"),
                    "date": _get_header(headers, "Date"),
                    "body": extract_message_body(msg),
                }
            )
        return {"thread_id": thread_id, "messages": messages}

    threads = await asyncio.gather(*(fetch_thread(tid) for tid in args.thread_ids))
    return {"threads": list(threads)}


@registry.tool(
    "download_attachment",
    "Download an attachment identified by filename to a local directory",
    DownloadAttachmentArgs,
)
async def download_attachment(ctx: ToolContext, args: DownloadAttachmentArgs) -> dict[str, Any]:
    data, mime_type = await _download_attachment_bytes(ctx, args.message_id, args.filename)

    if args.download_dir:
        directory = Path(args.download_dir)
    else:
        directory = ctx.download_dir or Path.cwd()
    # Attachment names come from the sender; keep only the base name.
    safe_name = Path(args.filename).name
    if not safe_name or safe_name in (".", ".."):
        raise InvalidArguments(f"Attachment filename is not usable: {args.filename!r}")
    path = directory / safe_name

    def write() -> None:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    await asyncio.to_thread(write)
    logger.info(f"Saved attachment {safe_name} ({len(data)} bytes) to {directory}")
    return {
        "filename": args.filename,
        "mime_type": mime_type,
        "size": len(data),
        "path": str(path),
    }


@registry.tool("forward_email", "Forward an email to a recipient", ForwardEmailArgs)
async def forward_email(ctx: ToolContext, args: ForwardEmailArgs) -> dict[str, Any]:
    original = await ctx.gmail.get_message(args.message_id)
    headers = original.get("payload", {}).get("headers", [])

    lines = [args.body, "", FORWARD_SEPARATOR]
    for name in ("From", "Date", "Subject"):
        value = _get_header(headers, name)
        if value:
            lines.append(f"{name}: {value}")
    lines.append("")
    lines.append(extract_message_body(original))

    raw = build_raw_message(args.to, args.subject, "\r\n".join(lines))
    return await ctx.gmail.send_message(raw)


@registry.tool("send_draft", "Send an existing Gmail draft", SendDraftArgs)
async def send_draft(ctx: ToolContext, args: SendDraftArgs) -> dict[str, Any]:
    return await ctx.gmail.send_draft(args.draft_id)
