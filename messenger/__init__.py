"""Real-time chat backend: chats, membership, messages, unread counters and presence."""

__version__ = "0.1.0"
