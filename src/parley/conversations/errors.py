"""Conversation errors."""


class ParleyError(Exception):
    """Base class for errors surfaced to transports."""


class ClientNotSubscribedError(ParleyError):
    """The client sent a message without being bound to a conversation."""

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Client {client_id} is not subscribed to a conversation")


class ConversationNotFoundError(ParleyError):
    """The client's conversation is no longer loaded (archived or deleted)."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Conversation {name} not found")


class InvalidConversationNameError(ParleyError):
    """The requested name has no characters a conversation name can keep."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Invalid conversation name: {name!r}")


class ConversationClosedError(ParleyError):
    """The conversation has been terminated and accepts no more messages."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Conversation {name} is closed")
