"""Message mapper — converts Graph message resources into message rows."""

import base64
import binascii
from datetime import datetime, timezone
from typing import Optional

from bs4 import BeautifulSoup

from mailmirror.errors import FolderMappingError


def parse_recipients(recipients) -> Optional[list[dict]]:
    """Flatten Graph recipients into an ordered list of {name, address} dicts."""
    if recipients is None:
        return None

    results = []
    for recipient in recipients:
        address = (recipient or {}).get("emailAddress") or {}
        results.append({
            "name": address.get("name") or None,
            "address": address.get("address") or None,
        })
    return results


def parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse Graph's ISO 8601 timestamps ("2024-01-30T10:00:00Z")."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decode_conversation_index(value: Optional[str]) -> Optional[bytes]:
    if not value:
        return None
    try:
        return base64.b64decode(value)
    except (binascii.Error, ValueError):
        return None


def html_to_text(html: Optional[str]) -> Optional[str]:
    if not html:
        return None
    soup = BeautifulSoup(html, "lxml")
    return soup.get_text(separator="\n", strip=True)


def extract_body(message: dict) -> tuple[Optional[str], Optional[str], str]:
    """Return (body_html, body_text, content_type) for a Graph message."""
    body = message.get("body") or {}
    content_type = (body.get("contentType") or "text").lower()
    content = body.get("content")

    if content_type == "html":
        # If we only have HTML, generate a text version
        return content, html_to_text(content) or message.get("bodyPreview"), "html"
    return None, content if content is not None else message.get("bodyPreview"), "text"


def map_graph_message(message: dict, account_id: str, folder_map: dict[str, int]) -> dict:
    """Build the column values for one Graph message.

    ``folder_map`` maps folder graph ids to local folder ids; a message whose
    parent folder is not mirrored raises FolderMappingError.
    """
    graph_id = message["id"]
    parent_folder_id = message.get("parentFolderId")
    folder_id = folder_map.get(parent_folder_id) if parent_folder_id else None
    if folder_id is None:
        raise FolderMappingError(graph_id, parent_folder_id)

    body_html, body_text, content_type = extract_body(message)
    sender = (message.get("from") or {}).get("emailAddress") or {}
    flag = message.get("flag") or {}

    return {
        "account_id": account_id,
        "folder_id": folder_id,
        "graph_id": graph_id,
        "conversation_id": message.get("conversationId"),
        "internet_message_id": message.get("internetMessageId"),
        "conversation_index": decode_conversation_index(message.get("conversationIndex")),
        "subject": message.get("subject") or "(No Subject)",
        "preview": message.get("bodyPreview"),
        "body_html": body_html,
        "body_text": body_text,
        "body_content_type": content_type,
        "from_name": sender.get("name"),
        "from_address": sender.get("address"),
        "to_recipients": parse_recipients(message.get("toRecipients")),
        "cc_recipients": parse_recipients(message.get("ccRecipients")),
        "bcc_recipients": parse_recipients(message.get("bccRecipients")),
        "reply_to": parse_recipients(message.get("replyTo")),
        "sent_at": parse_graph_datetime(message.get("sentDateTime")),
        "received_at": parse_graph_datetime(message.get("receivedDateTime")),
        "has_attachments": bool(message.get("hasAttachments")),
        "importance": (message.get("importance") or "normal").lower(),
        "is_read": bool(message.get("isRead")),
        "is_draft": bool(message.get("isDraft")),
        "is_flagged": flag.get("flagStatus") == "flagged",
    }
