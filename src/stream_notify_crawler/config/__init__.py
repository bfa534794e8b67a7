"""Configuration package for the Stream Notify Crawler.

Re-exports the settings symbols so that callers can write::

    from stream_notify_crawler.config import get_settings
"""

from __future__ import annotations

from stream_notify_crawler.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
