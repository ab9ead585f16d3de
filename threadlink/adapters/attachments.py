"""Inbound and outbound file attachments.

Inbound chat files are downloaded into a temp dir so the agent can read
them by path; outbound tool attachments are uploaded as thread replies.
"""
from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import TYPE_CHECKING

from threadlink.engine.config import FilesConfig
from threadlink.engine.errors import ChatClientError

if TYPE_CHECKING:
    from threadlink.adapters.chat_client import ChatClient

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def append_attachment_note(prompt: str, paths: list[str]) -> str:
    if not paths:
        return prompt
    return f"{prompt}\n\n[Attached files: {', '.join(paths)}]"


class AttachmentHandler:
    """Moves files between the chat platform and the local filesystem."""

    def __init__(self, chat: ChatClient, config: FilesConfig) -> None:
        self._chat = chat
        self._config = config
        self._temp_dir = Path(config.temp_dir)
        self._temp_files: set[Path] = set()

    @property
    def temp_files(self) -> set[Path]:
        return set(self._temp_files)

    async def download_inbound(self, file_ids: list[str]) -> list[str]:
        """Download accepted files and return their local paths.

        Files over the size limit or with a disallowed extension are
        skipped with a warning; download errors skip that file only.
        """
        paths: list[str] = []
        for file_id in file_ids:
            try:
                info = await self._chat.get_file_info(file_id)
                if info.size > self._config.max_file_size:
                    logger.warning(
                        "Attachment %s is %d bytes (limit %d), skipping",
                        info.name, info.size, self._config.max_file_size,
                    )
                    continue
                if not self._config.allows(info.name):
                    logger.warning("Attachment %s has a disallowed extension, skipping", info.name)
                    continue
                data = await self._chat.download_file(file_id)
                self._temp_dir.mkdir(parents=True, exist_ok=True)
                safe_name = _UNSAFE_NAME.sub("_", info.name) or file_id
                target = self._temp_dir / f"{int(time.time() * 1000)}-{safe_name}"
                target.write_bytes(data)
                self._temp_files.add(target)
                paths.append(str(target))
                logger.debug("Downloaded attachment %s -> %s", info.name, target)
            except (ChatClientError, OSError) as exc:
                logger.error("Failed to fetch attachment %s: %s", file_id[:8], exc)
        return paths

    async def upload_outbound(
        self,
        channel_id: str,
        thread_root_post_id: str,
        paths: list[str],
        caption: str = "",
    ) -> list[str]:
        """Upload local files as one reply in the thread. Returns file ids."""
        file_ids: list[str] = []
        for raw in paths:
            path = Path(raw)
            try:
                if not path.is_file():
                    logger.warning("Tool attachment %s does not exist, skipping", path)
                    continue
                if path.stat().st_size > self._config.max_file_size:
                    logger.warning("Tool attachment %s exceeds size limit, skipping", path)
                    continue
                file_ids.append(await self._chat.upload_file(channel_id, path))
            except (ChatClientError, OSError) as exc:
                logger.error("Failed to upload %s: %s", path, exc)
        if file_ids:
            names = ", ".join(f"`{Path(p).name}`" for p in paths)
            try:
                await self._chat.create_post(
                    channel_id,
                    caption or f":paperclip: {names}",
                    root_id=thread_root_post_id,
                    file_ids=file_ids,
                )
            except ChatClientError as exc:
                logger.error("Failed to post uploaded files: %s", exc)
        return file_ids

    def cleanup(self) -> int:
        removed = 0
        for path in list(self._temp_files):
            try:
                path.unlink(missing_ok=True)
                removed += 1
            except OSError as exc:
                logger.error("Failed to remove temp file %s: %s", path, exc)
            self._temp_files.discard(path)
        if removed:
            logger.debug("Removed %d temp attachment(s)", removed)
        return removed
