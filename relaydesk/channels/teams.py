"""Microsoft Teams outgoing-webhook channel adapter."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
from collections.abc import Iterator, Mapping
from typing import Any, Optional

from relaydesk.schemas.inbound import Attachment, InboundMessage

from .base import ChannelAdapter, content_type_for_mime, parse_timestamp, safe_compare

MENTION_RE = re.compile(r"<at>.*?</at>", re.IGNORECASE | re.DOTALL)
TAG_RE = re.compile(r"<[^>]+>")
CARD_PREFIX = "application/vnd.microsoft.card"


def clean_text(text: str) -> str:
    text = MENTION_RE.sub("", text or "")
    text = TAG_RE.sub("", text)
    return re.sub(r"\s+", " ", text).strip()


class TeamsAdapter(ChannelAdapter):
    channel_name = "teams"
    signature_header = "Authorization"

    def iter_messages(self, payload: Mapping[str, Any]) -> Iterator[InboundMessage]:
        if payload.get("type") != "message":
            return
        sender = payload.get("from") or {}
        if sender.get("role") == "bot":
            return
        yield self._parse(payload, sender)

    def _parse(self, payload: Mapping[str, Any], sender: Mapping[str, Any]) -> InboundMessage:
        content_type = "text"
        attachments = []
        for item in payload.get("attachments") or []:
            mime_type = item.get("contentType") or ""
            if mime_type.startswith(CARD_PREFIX) or mime_type == "text/html":
                continue
            item_type = content_type_for_mime(mime_type)
            attachments.append(
                Attachment(type=item_type, url=item.get("contentUrl"), mime_type=mime_type, file_name=item.get("name"))
            )
            if content_type == "text":
                content_type = item_type

        return InboundMessage(
            sender_id=str(sender.get("aadObjectId") or sender["id"]),
            sender_name=sender.get("name"),
            external_id=str(payload["id"]),
            content=clean_text(payload.get("text") or ""),
            content_type=content_type,
            attachments=attachments,
            reply_to_id=payload.get("replyToId"),
            timestamp=parse_timestamp(payload.get("timestamp")),
            raw_metadata={"conversation_id": (payload.get("conversation") or {}).get("id")},
        )

    def validate_signature(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        secret: str,
        *,
        timestamp: Optional[str] = None,
    ) -> bool:
        """``Authorization: HMAC <base64>`` keyed with the base64-decoded security token."""
        if not signature_header or not secret:
            return False
        scheme, _, provided = signature_header.partition(" ")
        if scheme != "HMAC" or not provided:
            return False
        try:
            key = base64.b64decode(secret)
        except (binascii.Error, ValueError):
            return False
        expected = base64.b64encode(hmac.new(key, raw_body, hashlib.sha256).digest()).decode("ascii")
        return safe_compare(provided.strip(), expected)
