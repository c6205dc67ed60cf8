"""Reply threading policy for bot responses.

- off: never reply to a user message
- first: reply to the first user message seen since the chat was reset
- all: reply to the most recent user message
"""

from dataclasses import dataclass
from enum import StrEnum


class ReplyMode(StrEnum):
    OFF = "off"
    FIRST = "first"
    ALL = "all"

    @classmethod
    def parse(cls, value: str) -> "ReplyMode | None":
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass
class ReplyContext:
    first_message_id: int | None
    last_message_id: int


class ReplyThreadTracker:
    def __init__(self, mode: ReplyMode | str = ReplyMode.FIRST):
        self._mode = ReplyMode(mode)
        self._contexts: dict[int, ReplyContext] = {}

    @property
    def mode(self) -> ReplyMode:
        return self._mode

    def set_mode(self, mode: ReplyMode | str) -> None:
        self._mode = ReplyMode(mode)

    def record_user_message(self, chat_id: int, message_id: int) -> int | None:
        """Record an inbound message and return the id to reply to."""
        context = self._contexts.get(chat_id)
        if context is None:
            self._contexts[chat_id] = ReplyContext(message_id, message_id)
        else:
            context.last_message_id = message_id
            if context.first_message_id is None:
                context.first_message_id = message_id
        return self.get_reply_to_id(chat_id)

    def get_reply_to_id(self, chat_id: int) -> int | None:
        context = self._contexts.get(chat_id)
        if context is None:
            return None
        match self._mode:
            case ReplyMode.FIRST:
                return context.first_message_id
            case ReplyMode.ALL:
                return context.last_message_id
            case _:
                return None

    def reset_first(self, chat_id: int) -> None:
        """Start a new topic: the next recorded message becomes the first."""
        if (context := self._contexts.get(chat_id)) is not None:
            context.first_message_id = None

    def clear_context(self, chat_id: int) -> None:
        self._contexts.pop(chat_id, None)
