"""Durable session/thread mapping store.

Storage layout:
    ~/.config/threadlink/threads.json   (primary)
    ~/.threadlink/threads.json          (fallback when only it exists)

File format:
    {"version": 1, "last_modified": "<iso>", "mappings": [{...}, ...]}

Mutations update the in-memory indexes synchronously and schedule a
debounced save. Persistence failures are logged and never raised.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

from threadlink.shared.durable_write import atomic_write_json
from threadlink.shared.formatting import utcnow

from .errors import DuplicateMappingError, ThreadRootImmutableError
from .lifecycle import validate_transition
from .models import MappingStatus, ThreadSessionMapping

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
MAPPING_FILENAME = "threads.json"


def resolve_mapping_path(
    primary_dir: Path | None = None,
    fallback_dir: Path | None = None,
) -> Path:
    """Pick the mapping file location once at startup.

    Uses the primary config dir if it exists, else the fallback dir if
    that exists, else creates the primary.
    """
    primary = primary_dir or Path.home() / ".config" / "threadlink"
    fallback = fallback_dir or Path.home() / ".threadlink"
    if primary.is_dir():
        return primary / MAPPING_FILENAME
    if fallback.is_dir():
        return fallback / MAPPING_FILENAME
    try:
        primary.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("Could not create config dir %s: %s", primary, exc)
    return primary / MAPPING_FILENAME


class MappingStore:
    """Indexed, persisted set of ThreadSessionMapping records."""

    def __init__(
        self,
        path: Path | str | None = None,
        debounce_seconds: float = 2.0,
    ) -> None:
        self._path = Path(path) if path is not None else resolve_mapping_path()
        self._debounce = debounce_seconds
        self._by_session: dict[str, ThreadSessionMapping] = {}
        self._by_thread: dict[str, str] = {}
        self._by_owner: dict[str, set[str]] = {}
        self._save_handle: asyncio.TimerHandle | None = None
        self._save_count = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def save_count(self) -> int:
        """Number of completed disk writes (for diagnostics)."""
        return self._save_count

    @property
    def save_pending(self) -> bool:
        return self._save_handle is not None

    # ── Persistence ─────────────────────────────────────────

    def read_disk(self) -> list[ThreadSessionMapping]:
        """Parse and validate the persisted file without touching indexes."""
        if not self._path.exists():
            logger.info("No mapping file at %s, starting empty", self._path)
            return []
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Mapping file %s unreadable, starting empty: %s", self._path, exc)
            return []

        if not isinstance(raw, dict):
            logger.error("Mapping file %s has no top-level object, starting empty", self._path)
            return []
        version = raw.get("version")
        if version != SCHEMA_VERSION:
            logger.warning(
                "Mapping file %s has schema version %r (expected %d), salvaging entries",
                self._path, version, SCHEMA_VERSION,
            )
        entries = raw.get("mappings")
        if not isinstance(entries, list):
            logger.error("Mapping file %s has no mappings list, starting empty", self._path)
            return []

        valid: list[ThreadSessionMapping] = []
        seen_sessions: set[str] = set()
        seen_roots: set[str] = set()
        for index, entry in enumerate(entries):
            try:
                mapping = ThreadSessionMapping.from_dict(entry)
            except ValueError as exc:
                logger.warning("Dropping invalid mapping entry #%d: %s", index, exc)
                continue
            if mapping.session_id in seen_sessions:
                logger.warning(
                    "Dropping duplicate mapping for session %s", mapping.session_id[:8],
                )
                continue
            if mapping.thread_root_post_id in seen_roots:
                logger.warning(
                    "Dropping mapping for session %s: thread root %s already claimed",
                    mapping.session_id[:8], mapping.thread_root_post_id[:8],
                )
                continue
            seen_sessions.add(mapping.session_id)
            seen_roots.add(mapping.thread_root_post_id)
            valid.append(mapping)
        return valid

    def load(self) -> list[ThreadSessionMapping]:
        """Load the persisted set, replacing in-memory state. Never raises."""
        mappings = self.read_disk()
        self._rebuild(mappings)
        logger.info("Loaded %d mapping(s) from %s", len(mappings), self._path)
        return list(mappings)

    def save(self) -> bool:
        """Write the full set atomically. Returns False (logged) on failure."""
        self._cancel_pending_save()
        data = {
            "version": SCHEMA_VERSION,
            "last_modified": utcnow().isoformat(),
            "mappings": [m.to_dict() for m in self._by_session.values()],
        }
        try:
            atomic_write_json(self._path, data)
        except Exception as exc:
            logger.error("Failed to save mappings to %s: %s", self._path, exc)
            return False
        self._save_count += 1
        logger.debug("Saved %d mapping(s) to %s", len(self._by_session), self._path)
        return True

    def schedule_save(self) -> None:
        """Coalesce saves into one write after the debounce window.

        Without a running event loop the save happens immediately.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save()
            return
        if self._save_handle is not None:
            self._save_handle.cancel()
        self._save_handle = loop.call_later(self._debounce, self._debounced_save)

    def _debounced_save(self) -> None:
        self._save_handle = None
        self.save()

    def _cancel_pending_save(self) -> None:
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None

    def flush(self) -> bool:
        """Cancel any pending debounce and save now."""
        return self.save()

    def shutdown(self) -> None:
        """Final synchronous save; call before the process exits."""
        self.flush()

    # ── Indexes ─────────────────────────────────────────────

    def _rebuild(self, mappings: Iterable[ThreadSessionMapping]) -> None:
        self._by_session.clear()
        self._by_thread.clear()
        self._by_owner.clear()
        for mapping in mappings:
            self._index(mapping)

    def _index(self, mapping: ThreadSessionMapping) -> None:
        self._by_session[mapping.session_id] = mapping
        self._by_thread[mapping.thread_root_post_id] = mapping.session_id
        self._by_owner.setdefault(mapping.owner_user_id, set()).add(mapping.session_id)

    def _unindex(self, mapping: ThreadSessionMapping) -> None:
        self._by_session.pop(mapping.session_id, None)
        if self._by_thread.get(mapping.thread_root_post_id) == mapping.session_id:
            del self._by_thread[mapping.thread_root_post_id]
        owned = self._by_owner.get(mapping.owner_user_id)
        if owned is not None:
            owned.discard(mapping.session_id)
            if not owned:
                del self._by_owner[mapping.owner_user_id]

    # ── Mutation ────────────────────────────────────────────

    def add(self, mapping: ThreadSessionMapping) -> None:
        """Insert a new mapping. Raises DuplicateMappingError on conflict."""
        if mapping.session_id in self._by_session:
            raise DuplicateMappingError(mapping.session_id)
        owner = self._by_thread.get(mapping.thread_root_post_id)
        if owner is not None:
            raise DuplicateMappingError(mapping.session_id, field_name="thread_root_post_id")
        self._index(mapping)
        logger.info(
            "Mapping added: session=%s thread=%s project=%s",
            mapping.session_id[:8], mapping.thread_root_post_id[:8], mapping.project_name,
        )
        self.schedule_save()

    def update(self, mapping: ThreadSessionMapping) -> bool:
        """Replace the stored mapping for ``mapping.session_id``.

        Returns False when no such mapping exists. Raises
        ThreadRootImmutableError if the thread root would change.
        """
        current = self._by_session.get(mapping.session_id)
        if current is None:
            logger.warning("update: no mapping for session %s", mapping.session_id[:8])
            return False
        if current.thread_root_post_id != mapping.thread_root_post_id:
            raise ThreadRootImmutableError(
                mapping.session_id, current.thread_root_post_id, mapping.thread_root_post_id,
            )
        if mapping.last_activity_at < mapping.created_at:
            mapping.last_activity_at = mapping.created_at
        self._unindex(current)
        self._index(mapping)
        self.schedule_save()
        return True

    def remove(self, session_id: str) -> bool:
        mapping = self._by_session.get(session_id)
        if mapping is None:
            return False
        self._unindex(mapping)
        logger.info("Mapping removed: session=%s", session_id[:8])
        self.schedule_save()
        return True

    def transition(
        self,
        session_id: str,
        target: MappingStatus,
        now: datetime | None = None,
    ) -> ThreadSessionMapping:
        """Validate and apply a status change, keeping ``ended_at`` consistent.

        Raises KeyError for an unknown session and InvalidTransitionError
        for a disallowed change.
        """
        current = self._by_session[session_id]
        validate_transition(current.status, target)
        now = now or utcnow()
        updated = replace(
            current,
            status=target,
            ended_at=now if target == MappingStatus.ENDED else None,
        )
        updated.touch(now)
        self.update(updated)
        logger.info(
            "Mapping %s: %s -> %s", session_id[:8], current.status.value, target.value,
        )
        return updated

    def merge(self, disk_entries: Iterable[ThreadSessionMapping]) -> int:
        """Reconcile with a freshly loaded disk set by session id.

        The entry with the newer ``last_activity_at`` wins; disk-only entries
        are added; memory-only entries are kept. Returns the number of
        entries taken from disk.
        """
        taken = 0
        for disk in disk_entries:
            mine = self._by_session.get(disk.session_id)
            if mine is None:
                claimed_by = self._by_thread.get(disk.thread_root_post_id)
                if claimed_by is not None:
                    logger.warning(
                        "merge: skipping disk mapping %s, thread root owned by %s",
                        disk.session_id[:8], claimed_by[:8],
                    )
                    continue
                self._index(disk)
                taken += 1
                continue
            if disk.last_activity_at > mine.last_activity_at:
                if disk.thread_root_post_id != mine.thread_root_post_id:
                    logger.warning(
                        "merge: disk mapping %s moves thread root, keeping memory copy",
                        disk.session_id[:8],
                    )
                    continue
                self._unindex(mine)
                self._index(disk)
                taken += 1
        if taken:
            logger.info("merge: took %d mapping(s) from disk", taken)
            self.schedule_save()
        return taken

    def clean_orphaned(self, valid_session_ids: Iterable[str]) -> int:
        """Orphan every active mapping whose session is not in *valid_session_ids*."""
        valid = set(valid_session_ids)
        now = utcnow()
        changed = 0
        for mapping in list(self._by_session.values()):
            if mapping.status == MappingStatus.ACTIVE and mapping.session_id not in valid:
                self.transition(mapping.session_id, MappingStatus.ORPHANED, now)
                changed += 1
        if changed:
            logger.info("clean_orphaned: orphaned %d mapping(s)", changed)
        return changed

    # ── Queries ─────────────────────────────────────────────

    def get_by_session_id(self, session_id: str) -> ThreadSessionMapping | None:
        return self._by_session.get(session_id)

    def get_by_thread_root_post_id(self, post_id: str) -> ThreadSessionMapping | None:
        session_id = self._by_thread.get(post_id)
        return self._by_session.get(session_id) if session_id else None

    def get_by_owner_user_id(self, user_id: str) -> list[ThreadSessionMapping]:
        ids = self._by_owner.get(user_id, set())
        return sorted(
            (self._by_session[i] for i in ids),
            key=lambda m: m.last_activity_at,
            reverse=True,
        )

    def get_active_for_user(self, user_id: str) -> list[ThreadSessionMapping]:
        return [m for m in self.get_by_owner_user_id(user_id) if m.is_open]

    def list_all(self) -> list[ThreadSessionMapping]:
        return list(self._by_session.values())

    def list_active(self) -> list[ThreadSessionMapping]:
        return [m for m in self._by_session.values() if m.is_open]

    def count(self) -> int:
        return len(self._by_session)

    def stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {s.value: 0 for s in MappingStatus}
        for mapping in self._by_session.values():
            by_status[mapping.status.value] += 1
        return {"total": len(self._by_session), "by_status": by_status, "path": str(self._path)}
