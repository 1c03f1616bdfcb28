"""Instagram messaging channel adapter."""

from __future__ import annotations

from .messenger import MessengerAdapter


class InstagramAdapter(MessengerAdapter):
    """Instagram uses the Messenger envelope with ``object == "instagram"``."""

    channel_name = "instagram"
    page_object = "instagram"
    placeholder_attachments = frozenset({"fallback", "share", "story_mention", "ig_reel", "reel"})
