"""Tests for the Gmail tool handlers."""

import base64
import email

import pytest

from gmail_mcp_server.errors import ContentTooLarge, InvalidArguments, UpstreamApiError
from gmail_mcp_server.models import (
    CreateDraftArgs,
    DownloadAttachmentArgs,
    ExtractAttachmentArgs,
    FetchEmailBodiesArgs,
    ForwardEmailArgs,
    SearchThreadsArgs,
    SendDraftArgs,
)
from gmail_mcp_server.tools import (
    FORWARD_SEPARATOR,
    ToolContext,
    create_draft,
    download_attachment,
    extract_attachment_by_filename,
    extract_message_body,
    fetch_email_bodies,
    find_attachment,
    forward_email,
    registry,
    search_threads,
    send_draft,
)

from conftest import attachment_message, b64url


def decode_raw(raw):
    return email.message_from_bytes(base64.urlsafe_b64decode(raw))


def text_message(message_id, body, mime_type="text/plain", **headers):
    return {
        "id": message_id,
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [{"name": k, "value": v} for k, v in headers.items()],
            "parts": [{"mimeType": mime_type, "body": {"data": b64url(body.encode())}}],
        },
    }


@pytest.fixture
def ctx(gmail, tmp_path):
    return ToolContext(gmail=gmail, attachment_size_limit=1024, download_dir=tmp_path / "dl")


class TestRegistryContents:
    """Tests for the registered tool set."""

    def test_all_tools_registered(self):
        """Test the seven Gmail tools are available."""
        assert [t.name for t in registry.list_tools()] == [
            "search_threads",
            "create_draft",
            "extract_attachment_by_filename",
            "fetch_email_bodies",
            "download_attachment",
            "forward_email",
            "send_draft",
        ]


class TestMessageHelpers:
    """Tests for body and attachment lookup helpers."""

    def test_prefers_plain_text(self):
        """Test text/plain wins over text/html."""
        message = {
            "payload": {
                "parts": [
                    {"mimeType": "text/html", "body": {"data": b64url(b"<p>html</p>")}},
                    {"mimeType": "text/plain", "body": {"data": b64url(b"plain")}},
                ]
            }
        }
        assert extract_message_body(message) == "plain"

    def test_falls_back_to_html(self):
        """Test HTML is used when there is no plain part."""
        assert extract_message_body(text_message("m", "<b>hi</b>", "text/html")) == "<b>hi</b>"

    def test_single_part_body(self):
        """Test a non-multipart message body."""
        message = {"payload": {"mimeType": "text/plain", "body": {"data": b64url(b"solo")}}}
        assert extract_message_body(message) == "solo"

    def test_empty_body(self):
        """Test a message without any body data."""
        assert extract_message_body({"payload": {}}) == ""

    def test_find_nested_attachment(self):
        """Test attachments nested in multipart parts are found by exact filename."""
        message = attachment_message("m1", "report.pdf", "application/pdf", b"%PDF-")
        assert find_attachment(message["payload"], "report.pdf")["body"]["attachmentId"] == "att-1"
        assert find_attachment(message["payload"], "REPORT.pdf") is None


class TestSearchThreads:
    async def test_returns_threads(self, ctx, gmail):
        """Test search results are passed through."""
        gmail.search_result = {
            "threads": [{"id": "t1", "snippet": "a"}, {"id": "t2", "snippet": "b"}],
            "resultSizeEstimate": 2,
        }
        result = await search_threads(ctx, SearchThreadsArgs(query="is:unread"))

        assert [t["id"] for t in result["threads"]] == ["t1", "t2"]
        assert result["resultSizeEstimate"] == 2

    async def test_no_matches(self, ctx):
        """Test an empty search returns an empty list."""
        result = await search_threads(ctx, SearchThreadsArgs(query="nothing"))
        assert result["threads"] == []


class TestDrafts:
    async def test_create_draft(self, ctx, gmail):
        """Test the draft is built as an RFC 2822 message."""
        result = await create_draft(
            ctx, CreateDraftArgs(to="bob@example.com", subject="Hi", body="Hello Bob", thread_id="t9")
        )

        assert result["id"] == "draft-1"
        raw, thread_id = gmail.drafts[0]
        parsed = decode_raw(raw)
        assert parsed["To"] == "bob@example.com"
        assert parsed["Subject"] == "Hi"
        assert parsed.get_payload(decode=True).decode() == "Hello Bob"
        assert thread_id == "t9"

    async def test_send_draft(self, ctx, gmail):
        """Test sending a draft by id."""
        result = await send_draft(ctx, SendDraftArgs(draft_id="d1"))

        assert gmail.sent_drafts == ["d1"]
        assert result["labelIds"] == ["SENT"]


class TestFetchEmailBodies:
    async def test_fetches_each_thread(self, ctx, gmail):
        """Test every message of every thread is returned with headers."""
        gmail.threads["t1"] = {
            "messages": [text_message("m1", "first", From="a@x", Subject="S1", Date="Mon")]
        }
        gmail.threads["t2"] = {"messages": [text_message("m2", "second", From="b@x")]}

        result = await fetch_email_bodies(ctx, FetchEmailBodiesArgs(thread_ids=["t1", "t2"]))

        assert [t["thread_id"] for t in result["threads"]] == ["t1", "t2"]
        first = result["threads"][0]["messages"][0]
        assert first == {
            "message_id": "m1",
            "from": "a@x",
            "subject": "S1",
            "date": "Mon",
            "body": "first",
        }

    async def test_missing_thread_reported(self, ctx, gmail):
        """Test a failing thread does not fail the whole call."""
        gmail.threads["t1"] = {"messages": [text_message("m1", "ok")]}

        result = await fetch_email_bodies(ctx, FetchEmailBodiesArgs(thread_ids=["t1", "gone"]))

        assert result["threads"][0]["messages"][0]["body"] == "ok"
        assert result["threads"][1]["messages"] == []
        assert "404" in result["threads"][1]["error"]


class TestAttachments:
    async def test_extract_text_attachment(self, ctx, gmail):
        """Test text is extracted from a nested plain-text attachment."""
        gmail.messages["m1"] = attachment_message("m1", "notes.txt", "text/plain", b"meeting notes")
        gmail.attachments["att-1"] = b"meeting notes"

        result = await extract_attachment_by_filename(
            ctx, ExtractAttachmentArgs(message_id="m1", filename="notes.txt")
        )

        assert result["extracted_text"] == "meeting notes"
        assert result["mime_type"] == "text/plain"
        assert result["size"] == 13

    async def test_extract_unsupported_type(self, ctx, gmail):
        """Test non-extractable attachments report null text with an error."""
        gmail.messages["m1"] = attachment_message("m1", "photo.png", "image/png", b"\x89PNG")
        gmail.attachments["att-1"] = b"\x89PNG"

        result = await extract_attachment_by_filename(
            ctx, ExtractAttachmentArgs(message_id="m1", filename="photo.png")
        )

        assert result["extracted_text"] is None
        assert "not supported" in result["error"]

    async def test_extract_declared_size_over_limit(self, ctx, gmail):
        """Test the declared size is checked before downloading."""
        gmail.messages["m1"] = attachment_message("m1", "big.txt", "text/plain", b"x" * 2048)

        with pytest.raises(ContentTooLarge):
            await extract_attachment_by_filename(
                ctx, ExtractAttachmentArgs(message_id="m1", filename="big.txt")
            )

    async def test_missing_attachment(self, ctx, gmail):
        """Test an unknown filename is a 404 upstream error."""
        gmail.messages["m1"] = attachment_message("m1", "a.txt", "text/plain", b"a")

        with pytest.raises(UpstreamApiError) as exc_info:
            await extract_attachment_by_filename(
                ctx, ExtractAttachmentArgs(message_id="m1", filename="b.txt")
            )
        assert exc_info.value.status == 404

    async def test_download_to_default_dir(self, ctx, gmail, tmp_path):
        """Test the attachment is written under the configured download dir."""
        gmail.messages["m1"] = attachment_message("m1", "data.bin", "application/octet-stream", b"\x00\x01")
        gmail.attachments["att-1"] = b"\x00\x01"

        result = await download_attachment(
            ctx, DownloadAttachmentArgs(message_id="m1", filename="data.bin")
        )

        path = tmp_path / "dl" / "data.bin"
        assert result["path"] == str(path)
        assert path.read_bytes() == b"\x00\x01"

    async def test_download_uses_base_name(self, ctx, gmail, tmp_path):
        """Test path components in the attachment name are stripped."""
        name = "../../evil.txt"
        gmail.messages["m1"] = attachment_message("m1", name, "text/plain", b"x")
        gmail.attachments["att-1"] = b"x"
        target = tmp_path / "custom"

        result = await download_attachment(
            ctx, DownloadAttachmentArgs(message_id="m1", filename=name, download_dir=str(target))
        )

        assert result["path"] == str(target / "evil.txt")
        assert (target / "evil.txt").exists()

    async def test_download_rejects_unusable_name(self, ctx, gmail):
        """Test a filename with no usable base name is refused."""
        gmail.messages["m1"] = attachment_message("m1", "..", "text/plain", b"x")
        gmail.attachments["att-1"] = b"x"

        with pytest.raises(InvalidArguments):
            await download_attachment(ctx, DownloadAttachmentArgs(message_id="m1", filename=".."))


class TestForwardEmail:
    async def test_forward_includes_original(self, ctx, gmail):
        """Test the forwarded message block carries the original headers and body."""
        gmail.messages["m1"] = text_message(
            "m1", "original body", From="alice@example.com", Date="Tue, 1 Oct 2024", Subject="Plans"
        )

        result = await forward_email(
            ctx,
            ForwardEmailArgs(message_id="m1", to="carol@example.com", subject="Fwd: Plans", body="FYI"),
        )

        assert result["id"] == "sent-1"
        parsed = decode_raw(gmail.sent[0])
        assert parsed["To"] == "carol@example.com"
        text = parsed.get_payload(decode=True).decode()
        assert text.startswith("FYI")
        assert FORWARD_SEPARATOR in text
        assert "From: alice@example.com" in text
        assert "Subject: Plans" in text
        assert text.rstrip().endswith("original body")
