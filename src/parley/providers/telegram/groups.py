"""Group chat policy and forum topic routing.

A group chat is answered according to its policy:

- open: answer whenever the bot is @mentioned or replied to
- allowlist: the same, but only in groups listed in ``allowed_groups``
- disabled: never answer

Private chats are not governed by these policies; they use the user allowlist.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from parley.config.models import ForumTopicConfig, TelegramConfig

GROUP_CHAT_TYPES = frozenset({"group", "supergroup"})


class GroupPolicy(StrEnum):
    OPEN = "open"
    ALLOWLIST = "allowlist"
    DISABLED = "disabled"

    @classmethod
    def parse(cls, value: str) -> "GroupPolicy | None":
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class GroupPolicyManager:
    def __init__(
        self,
        default: GroupPolicy | str = GroupPolicy.ALLOWLIST,
        *,
        allowed_groups: Iterable[int] = (),
        policies: dict[int, str] | None = None,
    ):
        self._default = GroupPolicy(default)
        self._allowed_groups = set(allowed_groups)
        self._configured = {
            chat_id: GroupPolicy(policy) for chat_id, policy in (policies or {}).items()
        }
        self._overrides: dict[int, GroupPolicy] = {}

    @classmethod
    def from_config(cls, config: TelegramConfig) -> "GroupPolicyManager":
        return cls(
            config.group_policy,
            allowed_groups=config.allowed_groups,
            policies=config.group_policies,
        )

    def policy_for(self, chat_id: int) -> GroupPolicy:
        """Resolve a chat's policy.

        Runtime overrides win, then per-chat config, then membership in the
        allowlist, then the default.
        """
        if (policy := self._overrides.get(chat_id)) is not None:
            return policy
        if (policy := self._configured.get(chat_id)) is not None:
            return policy
        if chat_id in self._allowed_groups:
            return GroupPolicy.ALLOWLIST
        return self._default

    def set_policy(self, chat_id: int, policy: GroupPolicy | str) -> None:
        self._overrides[chat_id] = GroupPolicy(policy)

    def should_respond(self, chat_id: int, *, addressed: bool) -> bool:
        """Whether a group message addressed (or not) to the bot gets an answer."""
        match self.policy_for(chat_id):
            case GroupPolicy.OPEN:
                return addressed
            case GroupPolicy.ALLOWLIST:
                return addressed and chat_id in self._allowed_groups
            case _:
                return False


@dataclass
class TopicSettings:
    conversation: str | None = None
    enabled: bool = True


class ForumTopics:
    """Maps forum topics to conversations.

    Every topic talks to its own conversation (``group-<chat>-topic-<id>``)
    unless configured otherwise; a disabled topic is ignored.
    """

    def __init__(self, topics: Iterable[ForumTopicConfig] = ()):
        self._settings: dict[tuple[int, int], TopicSettings] = {
            (topic.chat_id, topic.topic_id): TopicSettings(topic.conversation, topic.enabled)
            for topic in topics
        }

    @staticmethod
    def is_forum_message(topic_id: int | None) -> bool:
        return isinstance(topic_id, int) and topic_id > 0

    def is_enabled(self, chat_id: int, topic_id: int) -> bool:
        settings = self._settings.get((chat_id, topic_id))
        return settings is None or settings.enabled

    def conversation_for(self, chat_id: int, topic_id: int) -> str:
        settings = self._settings.get((chat_id, topic_id))
        if settings is not None and settings.conversation:
            return settings.conversation
        return f"group-{abs(chat_id)}-topic-{topic_id}"

    def configure(
        self,
        chat_id: int,
        topic_id: int,
        *,
        conversation: str | None = None,
        enabled: bool | None = None,
    ) -> None:
        """Update a topic's settings; arguments left as None keep their value."""
        settings = self._settings.setdefault((chat_id, topic_id), TopicSettings())
        if conversation is not None:
            settings.conversation = conversation
        if enabled is not None:
            settings.enabled = enabled
