"""Slack Events API channel adapter."""

from __future__ import annotations

import time
from collections.abc import Iterator, Mapping
from typing import Any, Optional

from relaydesk.config import settings
from relaydesk.schemas.inbound import Attachment, InboundMessage

from .base import ChannelAdapter, content_type_for_mime, epoch_to_datetime, hmac_sha256_hex, safe_compare


class SlackAdapter(ChannelAdapter):
    channel_name = "slack"
    signature_header = "X-Slack-Signature"
    timestamp_header = "X-Slack-Request-Timestamp"

    def iter_messages(self, payload: Mapping[str, Any]) -> Iterator[InboundMessage]:
        if payload.get("type") != "event_callback":
            return
        event = payload.get("event") or {}
        if event.get("type") != "message":
            return
        # subtypes cover edits, deletes, joins and bot posts
        if event.get("subtype") or event.get("bot_id"):
            return
        yield self._parse(payload, event)

    def _parse(self, payload: Mapping[str, Any], event: Mapping[str, Any]) -> InboundMessage:
        content_type = "text"
        attachments = []
        for item in event.get("files") or []:
            item_type = content_type_for_mime(item.get("mimetype"))
            attachments.append(
                Attachment(
                    type=item_type,
                    url=item.get("url_private"),
                    file_id=item.get("id"),
                    mime_type=item.get("mimetype"),
                    file_name=item.get("name"),
                )
            )
            if content_type == "text":
                content_type = item_type

        return InboundMessage(
            sender_id=str(event["user"]),
            external_id=str(event["ts"]),
            content=event.get("text") or "",
            content_type=content_type,
            attachments=attachments,
            reply_to_id=event.get("thread_ts"),
            timestamp=epoch_to_datetime(event["ts"]),
            raw_metadata={"team_id": payload.get("team_id"), "channel_id": event.get("channel")},
        )

    def validate_signature(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        secret: str,
        *,
        timestamp: Optional[str] = None,
    ) -> bool:
        """``v0=<hex>`` over ``v0:<timestamp>:<body>``, rejecting stale timestamps."""
        if not signature_header or not secret or not timestamp:
            return False
        try:
            age = abs(time.time() - int(timestamp))
        except ValueError:
            return False
        max_age = settings.slack_signature_max_age_seconds
        if max_age > 0 and age > max_age:
            return False

        base = f"v0:{timestamp}:".encode("utf-8") + raw_body
        expected = f"v0={hmac_sha256_hex(secret, base)}"
        return safe_compare(signature_header, expected)

    def handle_challenge(self, payload: Any) -> Optional[dict[str, Any]]:
        if isinstance(payload, Mapping) and payload.get("type") == "url_verification":
            return {"challenge": payload.get("challenge", "")}
        return None
