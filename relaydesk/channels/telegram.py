"""Telegram Bot API channel adapter."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, Optional

from relaydesk.schemas.inbound import Attachment, InboundMessage
from relaydesk.schemas.telegram import TelegramMessage, TelegramUpdate

from .base import ChannelAdapter, epoch_to_datetime, safe_compare


class TelegramAdapter(ChannelAdapter):
    channel_name = "telegram"
    signature_header = "X-Telegram-Bot-Api-Secret-Token"

    def iter_messages(self, payload: Mapping[str, Any]) -> Iterator[InboundMessage]:
        update = TelegramUpdate.model_validate(payload)
        # edited_message carries a prior message again; it is not a new event
        message = update.message
        if message is None or message.from_user is None or message.from_user.is_bot:
            return
        yield self._parse(message)

    def _parse(self, message: TelegramMessage) -> InboundMessage:
        content = message.text or message.caption or ""
        content_type = "text"
        attachments = []

        if message.photo:
            largest = message.photo[-1]
            content_type = "image"
            attachments.append(Attachment(type="image", file_id=largest.file_id))
        elif message.voice or message.audio:
            media = message.voice or message.audio
            content_type = "audio"
            attachments.append(Attachment(type="audio", file_id=media.file_id, mime_type=media.mime_type))
        elif message.video:
            content_type = "video"
            attachments.append(Attachment(type="video", file_id=message.video.file_id, mime_type=message.video.mime_type))
        elif message.document:
            content_type = "file"
            attachments.append(
                Attachment(
                    type="file",
                    file_id=message.document.file_id,
                    mime_type=message.document.mime_type,
                    file_name=message.document.file_name,
                )
            )
        elif message.location:
            content = f"Location: {message.location.latitude}, {message.location.longitude}"

        reply_to = message.reply_to_message or {}
        reply_to_id = f"{message.chat.id}:{reply_to['message_id']}" if "message_id" in reply_to else None

        return InboundMessage(
            sender_id=str(message.from_user.id),
            sender_name=message.from_user.display_name,
            # message_id is only unique within a chat
            external_id=f"{message.chat.id}:{message.message_id}",
            content=content,
            content_type=content_type,
            attachments=attachments,
            reply_to_id=reply_to_id,
            timestamp=epoch_to_datetime(message.date),
            raw_metadata={"chat_id": message.chat.id, "chat_type": message.chat.type},
        )

    def validate_signature(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        secret: str,
        *,
        timestamp: Optional[str] = None,
    ) -> bool:
        """Telegram echoes the configured secret token verbatim; there is no body HMAC."""
        if not signature_header or not secret:
            return False
        return safe_compare(signature_header, secret)
