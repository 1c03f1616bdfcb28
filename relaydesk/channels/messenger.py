"""Facebook Messenger channel adapter."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, Optional

from relaydesk.schemas.inbound import Attachment, InboundMessage, VerificationResponse

from .base import SHARED_CONTENT_PLACEHOLDER, ChannelAdapter, epoch_to_datetime, meta_verification

ATTACHMENT_TYPES = {"image": "image", "audio": "audio", "video": "video", "file": "file"}


class MessengerAdapter(ChannelAdapter):
    channel_name = "messenger"
    signature_header = "X-Hub-Signature-256"
    #: Value of the top-level ``object`` field for this platform.
    page_object = "page"
    #: Attachment kinds that carry no retrievable payload.
    placeholder_attachments: frozenset = frozenset({"fallback"})

    def iter_messages(self, payload: Mapping[str, Any]) -> Iterator[InboundMessage]:
        if payload.get("object") != self.page_object:
            return
        for entry in payload.get("entry") or []:
            for event in entry.get("messaging") or []:
                message = event.get("message")
                if not message:
                    # postbacks, reads, deliveries
                    continue
                if message.get("is_echo") or message.get("is_deleted"):
                    continue
                yield self._parse(event, message)

    def _parse(self, event: Mapping[str, Any], message: Mapping[str, Any]) -> InboundMessage:
        content = message.get("text") or ""
        content_type = "text"
        attachments = []

        for item in message.get("attachments") or []:
            kind = item.get("type")
            item_payload = item.get("payload") or {}
            if kind in ATTACHMENT_TYPES:
                attachments.append(Attachment(type=ATTACHMENT_TYPES[kind], url=item_payload.get("url")))
                if content_type == "text":
                    content_type = ATTACHMENT_TYPES[kind]
            elif kind == "location":
                coordinates = item_payload.get("coordinates") or {}
                content = content or f"Location: {coordinates.get('lat')}, {coordinates.get('long')}"
            elif kind in self.placeholder_attachments:
                content = content or SHARED_CONTENT_PLACEHOLDER

        return InboundMessage(
            sender_id=str(event["sender"]["id"]),
            external_id=str(message["mid"]),
            content=content,
            content_type=content_type,
            attachments=attachments,
            reply_to_id=(message.get("reply_to") or {}).get("mid"),
            timestamp=epoch_to_datetime(event.get("timestamp"), milliseconds=True),
            raw_metadata={"recipient_id": (event.get("recipient") or {}).get("id")},
        )

    def handle_verification(
        self, query_params: Mapping[str, str], expected_token: Optional[str]
    ) -> Optional[VerificationResponse]:
        return meta_verification(query_params, expected_token)
