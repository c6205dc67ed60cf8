"""Detection of files the engine writes for delivery.

Before each turn the watcher snapshots the media directory; on completion
anything new is an output file to deliver to subscribers.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from parley.conversations.events import FileType

logger = logging.getLogger(__name__)

MEDIA_URL_PREFIX = "/api/media"

_FILE_TYPES: dict[str, FileType] = {
    **dict.fromkeys((".jpg", ".jpeg", ".png", ".gif", ".webp"), "image"),
    **dict.fromkeys((".mp4", ".mov", ".webm", ".avi"), "video"),
    **dict.fromkeys((".mp3", ".wav", ".m4a", ".aac", ".flac"), "audio"),
    **dict.fromkeys((".ogg", ".oga"), "voice"),
}


def classify_file(path: Path | str) -> FileType:
    """Classify by extension; anything unrecognised is a document."""
    return _FILE_TYPES.get(Path(path).suffix.lower(), "document")


@dataclass(frozen=True)
class OutputFile:
    path: Path
    filename: str
    file_type: FileType
    url: str | None

    def to_metadata(self) -> dict[str, Any]:
        return {"type": self.file_type, "filename": self.filename, "url": self.url}


class OutboxWatcher:
    """Snapshot-and-diff over a media directory tree."""

    def __init__(self, root: Path, url_prefix: str = MEDIA_URL_PREFIX):
        self._root = root
        self._url_prefix = url_prefix.rstrip("/")
        self._snapshot: set[Path] = set()

    @property
    def root(self) -> Path:
        return self._root

    def scan(self) -> set[Path]:
        if not self._root.is_dir():
            return set()
        try:
            return {p for p in self._root.rglob("*") if p.is_file()}
        except OSError as e:
            logger.warning(
                "outbox_scan_failed",
                extra={"file.path": str(self._root), "error.message": str(e)},
            )
            return set()

    def snapshot(self) -> None:
        self._snapshot = self.scan()

    def new_files(self) -> list[Path]:
        """Files added since the last snapshot. Advances the snapshot."""
        current = self.scan()
        added = sorted(current - self._snapshot)
        self._snapshot = current
        return added

    def url_for(self, path: Path) -> str | None:
        """Public URL for a file under the media root, None outside it."""
        try:
            relative = path.resolve().relative_to(self._root.resolve())
        except ValueError:
            return None
        return f"{self._url_prefix}/{relative.as_posix()}"

    def describe(self, path: Path, filename: str | None = None) -> OutputFile:
        return OutputFile(
            path=path,
            filename=filename or path.name,
            file_type=classify_file(filename or path),
            url=self.url_for(path),
        )
