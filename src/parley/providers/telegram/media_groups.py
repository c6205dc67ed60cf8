"""Batching of Telegram albums.

Each item of an album arrives as its own message sharing a media_group_id.
Items are collected per group and handed over together once no new item has
arrived for the flush delay.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

logger = logging.getLogger("telegram")

DEFAULT_FLUSH_DELAY = 1.0


@dataclass(frozen=True)
class MediaItem:
    type: str
    file_id: str
    message_id: int
    caption: str | None = None
    filename: str | None = None


@dataclass
class BufferedMediaGroup:
    chat_id: int
    media_group_id: str
    first_message_id: int
    items: list[MediaItem] = field(default_factory=list)
    handle: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def caption(self) -> str | None:
        """Albums carry their caption on a single item."""
        return next((item.caption for item in self.items if item.caption), None)


MediaGroupFlushCallback = Callable[[BufferedMediaGroup], Awaitable[None]]


class MediaGroupBuffer:
    def __init__(
        self,
        on_flush: MediaGroupFlushCallback,
        *,
        flush_delay: float = DEFAULT_FLUSH_DELAY,
    ):
        self._on_flush = on_flush
        self._flush_delay = flush_delay
        self._groups: dict[str, BufferedMediaGroup] = {}
        self._flushing: set[asyncio.Task] = set()

    def add(
        self,
        chat_id: int,
        media_group_id: str | None,
        message_id: int,
        item_type: str,
        file_id: str,
        caption: str | None = None,
        *,
        filename: str | None = None,
    ) -> bool:
        """Offer a media message to the buffer.

        Returns:
            True if buffered, False for a standalone item (no group id) that
            the caller should process individually.
        """
        if not media_group_id:
            return False

        group = self._groups.get(media_group_id)
        if group is None:
            group = BufferedMediaGroup(
                chat_id=chat_id,
                media_group_id=media_group_id,
                first_message_id=message_id,
            )
            self._groups[media_group_id] = group

        group.items.append(
            MediaItem(
                type=item_type,
                file_id=file_id,
                message_id=message_id,
                caption=caption,
                filename=filename,
            )
        )
        if group.handle is not None:
            group.handle.cancel()
        group.handle = asyncio.get_running_loop().call_later(
            self._flush_delay, self._fire, media_group_id
        )
        return True

    def _fire(self, media_group_id: str) -> None:
        group = self._groups.pop(media_group_id, None)
        if group is None:
            return
        task = asyncio.create_task(self._flush(group))
        self._flushing.add(task)
        task.add_done_callback(self._flushing.discard)

    async def _flush(self, group: BufferedMediaGroup) -> None:
        logger.debug(
            "media_group_flushed",
            extra={
                "messaging.chat_id": group.chat_id,
                "media_group.id": group.media_group_id,
                "media_group.size": len(group.items),
            },
        )
        try:
            await self._on_flush(group)
        except Exception:
            logger.exception(
                "media_group_flush_failed", extra={"media_group.id": group.media_group_id}
            )

    def clear(self, media_group_id: str) -> None:
        group = self._groups.pop(media_group_id, None)
        if group is not None and group.handle is not None:
            group.handle.cancel()

    def has_pending(self, media_group_id: str) -> bool:
        return media_group_id in self._groups

    def close(self) -> None:
        for media_group_id in list(self._groups):
            self.clear(media_group_id)
