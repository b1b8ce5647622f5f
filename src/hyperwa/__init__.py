"""
hyperwa: an asyncio WhatsApp userbot host with MongoDB-backed sessions.

The auth directory of the WhatsApp client is archived into MongoDB so the bot
survives ephemeral hosts; the connection lifecycle reconnects with
exponential backoff and stops for good once the device is logged out.
"""

from __future__ import annotations

from .bot import HyperWaBot
from .exceptions import HyperWaError
from .settings import Settings

__all__ = [
    "HyperWaBot",
    "HyperWaError",
    "Settings",
]

__version__ = "3.0.0"
