"""Telegram text helpers: length limits, splitting, attachment tags."""

import re
from dataclasses import dataclass

MAX_MESSAGE_LENGTH = 4096
STREAMING_SUFFIX = "\n\n... (streaming, full response on completion)"
LOG_PREVIEW_MAX_LEN = 180

ATTACHMENT_PATTERN = re.compile(
    r"\[\[ATTACHMENT\|\|\|type:(\w+)\|\|\|url:([^|]+)\|\|\|name:([^\]]+)\]\]"
)


def truncate(text: str, max_len: int = LOG_PREVIEW_MAX_LEN) -> str:
    """Truncate text for logging (first line only, max length)."""
    first_line, *rest = text.split("\n", 1)
    truncated = len(first_line) > max_len or bool(rest)
    return first_line[:max_len] + "..." if truncated else first_line


def streaming_preview(content: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Fit in-progress content into one message, marking it as partial."""
    if len(content) <= max_length:
        return content
    return content[: max_length - 50] + STREAMING_SUFFIX


def _find_split_point(text: str, max_length: int) -> int:
    """Find where to cut, searching backwards from max_length.

    Prefers a newline, then a space, but only past the halfway mark so no
    chunk comes out tiny. Splits inside fenced code blocks are avoided when
    an outside candidate exists.
    """
    floor = max_length // 2
    in_code_block = False
    outside_newline = -1
    any_newline = -1
    space = -1

    i = 0
    while i < max_length:
        if text.startswith("```", i):
            in_code_block = not in_code_block
            i += 3
            continue
        char = text[i]
        if char == "\n" and i > floor:
            any_newline = i + 1
            if not in_code_block:
                outside_newline = i + 1
        elif char == " " and i > floor:
            space = i + 1
        i += 1

    for point in (outside_newline, any_newline, space):
        if point > 0:
            return point
    return max_length


def split_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split text into chunks that fit Telegram's message limit."""
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break
        split_at = _find_split_point(remaining, max_length)
        chunks.append(remaining[:split_at].rstrip())
        remaining = remaining[split_at:].lstrip()
    return chunks


@dataclass(frozen=True)
class AttachmentTag:
    kind: str
    url: str
    name: str
    text: str
    """The message text with the tag removed."""


def format_attachment_tag(kind: str, url: str, name: str) -> str:
    return f"[[ATTACHMENT|||type:{kind}|||url:{url}|||name:{name}]]"


def parse_attachment_tag(content: str) -> AttachmentTag | None:
    """Extract the first attachment tag from a message, if any."""
    match = ATTACHMENT_PATTERN.search(content)
    if match is None:
        return None
    kind, url, name = match.groups()
    return AttachmentTag(
        kind=kind,
        url=url,
        name=name.strip(),
        text=content.replace(match.group(0), "").strip(),
    )
