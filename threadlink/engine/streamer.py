"""Keep a rendered response in one head post plus continuation replies."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .errors import ChatClientError

if TYPE_CHECKING:
    from threadlink.adapters.chat_client import ChatClient

logger = logging.getLogger(__name__)

# Room kept in each part for the continuation markers
RESERVED_MARKER_SPACE = 50

CONTINUED_BELOW = "*(continued below...)*"
CONSOLIDATED = "*(message consolidated above)*"


def find_split_point(text: str, max_len: int) -> int:
    """Prefer a paragraph break, then a line break, then a word break."""
    paragraph = text.rfind("\n\n", 0, max_len)
    if paragraph > max_len * 0.5:
        return paragraph + 2
    line = text.rfind("\n", 0, max_len)
    if line > max_len * 0.5:
        return line + 1
    space = text.rfind(" ", 0, max_len)
    if space > max_len * 0.7:
        return space + 1
    return max_len


def split_message(content: str, max_len: int) -> list[str]:
    if len(content) <= max_len:
        return [content]
    effective = max(1, max_len - RESERVED_MARKER_SPACE)
    parts: list[str] = []
    remaining = content
    while remaining:
        if len(remaining) <= effective:
            parts.append(remaining)
            break
        cut = find_split_point(remaining, effective)
        parts.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    return parts


def decorate_parts(parts: list[str]) -> list[str]:
    """Add continuation markers so each post reads standalone."""
    if len(parts) == 1:
        return parts
    total = len(parts)
    decorated = [f"{parts[0]}\n\n{CONTINUED_BELOW}"]
    for i in range(1, total):
        body = f"*(continued {i + 1}/{total})*\n\n{parts[i]}"
        if i < total - 1:
            body += f"\n\n{CONTINUED_BELOW}"
        decorated.append(body)
    return decorated


class ResponseStreamer:
    """Owns the posts that display one response.

    The head post is edited in place; overflow goes into continuation
    replies in the same thread, which are reused on later updates.
    """

    def __init__(
        self,
        chat: ChatClient,
        channel_id: str,
        thread_root_post_id: str,
        head_post_id: str,
        max_post_length: int = 15000,
    ) -> None:
        self._chat = chat
        self.channel_id = channel_id
        self.thread_root_post_id = thread_root_post_id
        self.head_post_id = head_post_id
        self.max_post_length = max_post_length
        self.continuation_post_ids: list[str] = []
        self.last_content: str | None = None

    @property
    def post_ids(self) -> list[str]:
        return [self.head_post_id, *self.continuation_post_ids]

    async def update(self, content: str) -> None:
        """Show *content*, splitting across posts as needed.

        Raises ChatClientError; callers on the streaming path log and move on.
        """
        if content == self.last_content:
            return
        posts = decorate_parts(split_message(content, self.max_post_length))
        await self._chat.update_post(self.head_post_id, posts[0])

        for index, body in enumerate(posts[1:]):
            if index < len(self.continuation_post_ids):
                await self._chat.update_post(self.continuation_post_ids[index], body)
            else:
                post = await self._chat.create_post(
                    self.channel_id, body, root_id=self.thread_root_post_id,
                )
                self.continuation_post_ids.append(post.id)

        while len(self.continuation_post_ids) > len(posts) - 1:
            surplus = self.continuation_post_ids.pop()
            try:
                await self._chat.update_post(surplus, CONSOLIDATED)
            except ChatClientError as exc:
                logger.debug("Could not blank surplus continuation post %s: %s", surplus[:8], exc)
        self.last_content = content
