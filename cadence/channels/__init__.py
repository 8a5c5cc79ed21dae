"""Chat channel implementations for Cadence."""

from .base import BaseChannel, Message
from .console import ConsoleChannel
from .slack import SlackChannel

__all__ = ["BaseChannel", "ConsoleChannel", "Message", "SlackChannel"]
