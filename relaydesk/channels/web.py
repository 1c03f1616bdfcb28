"""Website chat widget adapter."""

from __future__ import annotations

from .custom import CustomAdapter


class WebAdapter(CustomAdapter):
    """The widget posts the custom envelope, identifying the visitor by ``visitorId``."""

    channel_name = "web"
    sender_field = "visitorId"
