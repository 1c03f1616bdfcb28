"""Generic JSON webhook adapter for custom integrations."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterator, Mapping
from typing import Any, Optional

from relaydesk.schemas.inbound import Attachment, InboundMessage

from .base import ChannelAdapter, content_type_for_mime, hmac_sha256_hex, parse_timestamp, safe_compare

CONTENT_TYPES = {"text", "image", "video", "audio", "file"}


class CustomAdapter(ChannelAdapter):
    """Envelope: ``{eventType, messageId, senderId, content, contentType, attachments, replyToId, timestamp}``."""

    channel_name = "custom"
    signature_header = "X-Webhook-Signature"
    sender_field = "senderId"

    def iter_messages(self, payload: Mapping[str, Any]) -> Iterator[InboundMessage]:
        event_type = payload.get("eventType")
        if event_type is not None and event_type != "message":
            return
        message_id = payload.get("messageId")
        sender_id = payload.get(self.sender_field)
        if not message_id or not sender_id:
            return

        attachments = []
        for item in payload.get("attachments") or []:
            item_type = item.get("type")
            if item_type not in CONTENT_TYPES - {"text"}:
                item_type = content_type_for_mime(item.get("mimeType"))
            attachments.append(
                Attachment(
                    type=item_type,
                    url=item.get("url"),
                    mime_type=item.get("mimeType"),
                    file_name=item.get("fileName"),
                )
            )

        content_type = payload.get("contentType")
        if content_type not in CONTENT_TYPES:
            content_type = attachments[0].type if attachments else "text"

        yield InboundMessage(
            sender_id=str(sender_id),
            sender_name=payload.get("senderName"),
            external_id=str(message_id),
            content=str(payload.get("content") or ""),
            content_type=content_type,
            attachments=attachments,
            reply_to_id=payload.get("replyToId"),
            timestamp=parse_timestamp(payload.get("timestamp")),
            raw_metadata=dict(payload.get("metadata") or {}),
        )

    def validate_signature(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        secret: str,
        *,
        timestamp: Optional[str] = None,
    ) -> bool:
        """Accepts ``sha256=<hex>``, ``sha1=<hex>`` or a bare SHA-256 hex digest."""
        if not signature_header or not secret:
            return False
        signature = signature_header.strip()
        if signature.startswith("sha1="):
            expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha1).hexdigest()
            return safe_compare(signature[len("sha1="):], expected)
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        return safe_compare(signature, hmac_sha256_hex(secret, raw_body))
