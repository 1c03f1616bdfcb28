"""Base abstractions for channel adapters."""

from __future__ import annotations

import hashlib
import hmac
import re
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from relaydesk.logging_config import get_logger
from relaydesk.schemas.inbound import InboundMessage, VerificationResponse

logger = get_logger("channels")

SHARED_CONTENT_PLACEHOLDER = "[Shared content]"
UNSUPPORTED_PLACEHOLDER = "[Unsupported message type]"


def safe_compare(provided: str, expected: str) -> bool:
    """Constant-time comparison that tolerates non-ASCII input."""
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def hmac_sha256_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def epoch_to_datetime(value: Any, milliseconds: bool = False) -> datetime:
    """Provider epoch timestamp (str or number) to an aware datetime; now() when unparseable."""
    try:
        seconds = float(value)
    except (TypeError, ValueError, OverflowError):
        return datetime.now(timezone.utc)
    if milliseconds:
        seconds /= 1000
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        # inf, nan and values beyond the platform time_t range
        return datetime.now(timezone.utc)


_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value: Any) -> datetime:
    """Epoch milliseconds or an ISO-8601 string to an aware datetime; now() when unparseable."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return epoch_to_datetime(value, milliseconds=True)
    if not isinstance(value, str) or not value:
        return datetime.now(timezone.utc)
    if value.isdigit():
        return epoch_to_datetime(value, milliseconds=True)
    text = _FRACTION_RE.sub(r"\1", value.strip()).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def content_type_for_mime(mime_type: Optional[str]) -> str:
    mime_type = (mime_type or "").lower()
    for prefix in ("image", "video", "audio"):
        if mime_type.startswith(f"{prefix}/"):
            return prefix
    return "file"


def meta_verification(query_params: Mapping[str, str], expected_token: Optional[str]) -> Optional[VerificationResponse]:
    """The hub.mode / hub.verify_token / hub.challenge handshake used by Meta platforms."""
    mode = query_params.get("hub.mode")
    if mode is None and "hub.challenge" not in query_params:
        return None

    token = query_params.get("hub.verify_token")
    if mode == "subscribe" and expected_token and token is not None and safe_compare(token, expected_token):
        return VerificationResponse(status_code=200, body=query_params.get("hub.challenge", ""))
    return VerificationResponse(status_code=403, body="Forbidden")


class ChannelAdapter(ABC):
    """Translates one provider's webhooks into canonical inbound messages."""

    #: Lowercase channel identifier used in routes and configuration.
    channel_name: str
    #: Request header carrying the provider signature.
    signature_header: Optional[str] = None
    #: Request header carrying the signed timestamp, for providers that sign one.
    timestamp_header: Optional[str] = None

    @abstractmethod
    def iter_messages(self, payload: Mapping[str, Any]) -> Iterator[InboundMessage]:
        """Yield canonical messages; skip echoes, edits, deletes and non-message events."""

    def parse_messages(self, payload: Any) -> list[InboundMessage]:
        """All conversation events in a payload; malformed payloads yield an empty list."""
        if not isinstance(payload, Mapping):
            return []
        try:
            return list(self.iter_messages(payload))
        except (AttributeError, KeyError, TypeError, ValueError, OverflowError, OSError, ValidationError) as e:
            logger.warning(
                "Malformed channel payload",
                extra={"context": {"channel": self.channel_name, "error": str(e)}},
            )
            return []

    def parse_message(self, payload: Any) -> Optional[InboundMessage]:
        messages = self.parse_messages(payload)
        return messages[0] if messages else None

    def validate_signature(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        secret: str,
        *,
        timestamp: Optional[str] = None,
    ) -> bool:
        """Default scheme: ``sha256=<hex HMAC-SHA256 of the body>``."""
        if not signature_header or not secret:
            return False
        expected = f"sha256={hmac_sha256_hex(secret, raw_body)}"
        return safe_compare(signature_header.strip(), expected)

    def handle_verification(
        self, query_params: Mapping[str, str], expected_token: Optional[str]
    ) -> Optional[VerificationResponse]:
        """Answer a provider handshake; None when the channel has none."""
        return None

    def handle_challenge(self, payload: Any) -> Optional[dict[str, Any]]:
        """Answer an in-body handshake sent to the message endpoint; None otherwise."""
        return None
