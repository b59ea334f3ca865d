"""Encrypted duplex channel tunnelled through plain HTTP form polls."""

from .agent import AgentChannel, TransportError, build_channel
from .server import ChannelService, create_server
from .session import NotConnectedError, Session, WaitOutcome

__all__ = [
    "AgentChannel",
    "ChannelService",
    "NotConnectedError",
    "Session",
    "TransportError",
    "WaitOutcome",
    "build_channel",
    "create_server",
]
