"""Adapters package - Bridge between the engine and connected clients.

This package contains the chat manager, event bus and distribution
gateway that connect agent turns to HTTP and WebSocket frontends.
"""
from __future__ import annotations

__all__ = [
    "ChatManager",
    "SendMode",
    "EventBus",
    "DistributionGateway",
]

from arc.adapters.chat_manager import ChatManager, SendMode
from arc.adapters.event_bus import EventBus
from arc.adapters.gateway import DistributionGateway
