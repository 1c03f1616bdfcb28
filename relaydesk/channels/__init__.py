"""Channel adapter registry for multi-channel messaging support."""

from __future__ import annotations

from .base import ChannelAdapter
from .custom import CustomAdapter
from .instagram import InstagramAdapter
from .messenger import MessengerAdapter
from .slack import SlackAdapter
from .teams import TeamsAdapter
from .telegram import TelegramAdapter
from .web import WebAdapter
from .whatsapp import WhatsAppAdapter

_REGISTRY: dict[str, type[ChannelAdapter]] = {}


def register_adapter(adapter: type[ChannelAdapter]) -> None:
    """Register a channel adapter class in the global registry."""
    _REGISTRY[adapter.channel_name] = adapter


def get_adapter(name: str) -> ChannelAdapter:
    """Return an adapter instance for ``name`` or raise ``KeyError``."""
    normalized = (name or "").lower()
    if normalized not in _REGISTRY:
        raise KeyError(f"Channel '{name}' is not configured")
    return _REGISTRY[normalized]()


def available_channels() -> list[str]:
    return sorted(_REGISTRY)


for _adapter in (
    WebAdapter,
    WhatsAppAdapter,
    TelegramAdapter,
    MessengerAdapter,
    InstagramAdapter,
    SlackAdapter,
    TeamsAdapter,
    CustomAdapter,
):
    register_adapter(_adapter)

__all__ = ["ChannelAdapter", "available_channels", "get_adapter", "register_adapter"]
