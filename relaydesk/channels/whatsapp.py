"""WhatsApp Cloud API channel adapter."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, Optional

from relaydesk.schemas.inbound import Attachment, InboundMessage, VerificationResponse

from .base import UNSUPPORTED_PLACEHOLDER, ChannelAdapter, epoch_to_datetime, meta_verification

MEDIA_TYPES = {"image": "image", "audio": "audio", "video": "video", "document": "file", "sticker": "image"}


class WhatsAppAdapter(ChannelAdapter):
    channel_name = "whatsapp"
    signature_header = "X-Hub-Signature-256"

    def iter_messages(self, payload: Mapping[str, Any]) -> Iterator[InboundMessage]:
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                # Delivery/read receipts arrive as `statuses` without `messages`.
                contacts = {c.get("wa_id"): c for c in value.get("contacts") or []}
                for message in value.get("messages") or []:
                    yield self._parse(message, contacts, value.get("metadata") or {})

    def _parse(self, message: Mapping[str, Any], contacts: Mapping, metadata: Mapping) -> InboundMessage:
        sender_id = str(message["from"])
        message_type = message.get("type")
        content = ""
        content_type = "text"
        attachments = []

        if message_type == "text":
            content = (message.get("text") or {}).get("body", "")
        elif message_type in MEDIA_TYPES:
            media = message.get(message_type) or {}
            content_type = MEDIA_TYPES[message_type]
            content = media.get("caption", "")
            attachments.append(
                Attachment(
                    type=content_type,
                    file_id=media.get("id"),
                    mime_type=media.get("mime_type"),
                    file_name=media.get("filename"),
                )
            )
        elif message_type == "location":
            location = message.get("location") or {}
            content = f"Location: {location.get('latitude')}, {location.get('longitude')}"
        elif message_type == "interactive":
            interactive = message.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            content = reply.get("title", "")
        else:
            content = UNSUPPORTED_PLACEHOLDER

        contact = contacts.get(sender_id) or {}
        return InboundMessage(
            sender_id=sender_id,
            sender_name=(contact.get("profile") or {}).get("name"),
            external_id=str(message["id"]),
            content=content,
            content_type=content_type,
            attachments=attachments,
            reply_to_id=(message.get("context") or {}).get("id"),
            timestamp=epoch_to_datetime(message.get("timestamp")),
            raw_metadata={"phone_number_id": metadata.get("phone_number_id"), "message_type": message_type},
        )

    def handle_verification(
        self, query_params: Mapping[str, str], expected_token: Optional[str]
    ) -> Optional[VerificationResponse]:
        return meta_verification(query_params, expected_token)
