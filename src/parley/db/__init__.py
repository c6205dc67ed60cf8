"""Database layer."""

from parley.db.engine import Database
from parley.db.models import Base, Conversation, Message, ThreadMapping

__all__ = [
    # Engine
    "Database",
    # Models
    "Base",
    "Conversation",
    "Message",
    "ThreadMapping",
]
