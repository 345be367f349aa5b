from __future__ import annotations

import itertools
import json
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .models import Message
from .settings import DEFAULT_CACHE_LIMIT, normalize_cache_limit, write_json_atomic

logger = logging.getLogger(__name__)

_CORRUPT_COUNTER = itertools.count(1)


def message_sort_key(message: Message) -> Tuple[int, float, int]:
    """Newest-first by parsed timestamp, unparseable last, ties by id desc."""
    ts = message.parsed_timestamp()
    if ts is None:
        return (1, 0.0, -message.id)
    return (0, -ts, -message.id)


def sort_messages(messages: Iterable[Message]) -> List[Message]:
    return sorted(messages, key=message_sort_key)


@dataclass(frozen=True)
class MergeResult:
    snapshot: List[Message]
    changed: bool
    inserted: Tuple[int, ...] = ()
    evicted: Tuple[int, ...] = ()


class MessageCache:
    """Bounded, deduplicated message store.

    Entries are kept in arrival order (oldest arrival first) so that
    eviction never depends on server timestamps. Readers always get a
    copy in display order.
    """

    def __init__(self, limit: int = DEFAULT_CACHE_LIMIT, messages: Iterable[Message] = ()) -> None:
        self._lock = threading.Lock()
        self._limit = normalize_cache_limit(limit)
        self._entries: "OrderedDict[int, Message]" = OrderedDict()
        initial = list(messages)
        # Restored caches are stored newest-first; admit them oldest-first.
        for message in reversed(sort_messages(initial)):
            self._entries[message.id] = message
        self._evict_locked()

    @property
    def limit(self) -> int:
        return self._limit

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, message_id: object) -> bool:
        with self._lock:
            return message_id in self._entries

    def get(self, message_id: int) -> Optional[Message]:
        with self._lock:
            return self._entries.get(message_id)

    def snapshot(self) -> List[Message]:
        with self._lock:
            return sort_messages(self._entries.values())

    def arrival_order(self) -> List[int]:
        with self._lock:
            return list(self._entries.keys())

    def merge(self, incoming: Iterable[Message]) -> MergeResult:
        batch = list(incoming)
        with self._lock:
            if not batch:
                return MergeResult(sort_messages(self._entries.values()), changed=False)
            inserted: List[int] = []
            changed = False
            for message in batch:
                if self._admit_locked(message):
                    changed = True
                    inserted.append(message.id)
            evicted = self._evict_locked()
            return MergeResult(
                sort_messages(self._entries.values()),
                changed=changed or bool(evicted),
                inserted=tuple(inserted),
                evicted=tuple(evicted),
            )

    def reconcile(
        self, snapshot: Iterable[Message], known_ids: Optional[Iterable[int]] = None
    ) -> MergeResult:
        """Replace the cached set with an authoritative server snapshot.

        An empty snapshot is ignored. Unchanged entries keep their
        object identity and their place in arrival order; the snapshot
        itself is admitted in the order given.

        When ``known_ids`` is given only those ids may be dropped, so
        messages upserted after the snapshot was requested survive.
        """
        batch = list(snapshot)
        with self._lock:
            if not batch:
                return MergeResult(sort_messages(self._entries.values()), changed=False)
            wanted: Dict[int, Message] = {}
            for message in batch:
                wanted[message.id] = message

            candidates = set(self._entries) if known_ids is None else set(known_ids)
            removed = [
                mid for mid in self._entries if mid in candidates and mid not in wanted
            ]
            for mid in removed:
                del self._entries[mid]

            inserted: List[int] = []
            for message in wanted.values():
                if self._admit_locked(message):
                    inserted.append(message.id)
            evicted = self._evict_locked()
            changed = bool(removed or inserted or evicted)
            return MergeResult(
                sort_messages(self._entries.values()),
                changed=changed,
                inserted=tuple(inserted),
                evicted=tuple(removed) + tuple(evicted),
            )

    def upsert(self, message: Message) -> bool:
        """Insert a live message; returns True when the id was already cached."""
        with self._lock:
            existed = message.id in self._entries
            self._admit_locked(message)
            self._evict_locked()
            return existed

    def remove(self, message_id: int) -> bool:
        with self._lock:
            return self._entries.pop(message_id, None) is not None

    def set_limit(self, limit: int) -> List[int]:
        with self._lock:
            self._limit = normalize_cache_limit(limit)
            return self._evict_locked()

    def _admit_locked(self, message: Message) -> bool:
        existing = self._entries.get(message.id)
        if existing is not None and existing.same_content(message):
            return False
        if existing is not None:
            del self._entries[message.id]
        self._entries[message.id] = message
        return True

    def _evict_locked(self) -> List[int]:
        evicted: List[int] = []
        while len(self._entries) > self._limit:
            message_id, _ = self._entries.popitem(last=False)
            evicted.append(message_id)
        if evicted:
            logger.debug("cache_evicted ids=%s limit=%s", evicted, self._limit)
        return evicted


class MessageCacheFile:
    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> List[Message]:
        with self._lock:
            if not self._path.exists():
                return []
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
                if not isinstance(raw, list):
                    raise ValueError("expected a list")
                return [Message.from_dict(item) for item in raw]
            except (OSError, ValueError, KeyError, TypeError) as exc:
                self._quarantine_locked(exc)
                return []

    def save(self, messages: Iterable[Message]) -> None:
        payload = [message.as_dict() for message in messages]
        with self._lock:
            write_json_atomic(self._path, payload)

    def _quarantine_locked(self, exc: Exception) -> None:
        backup = self._path.with_name(
            f"{self._path.stem}.corrupt-{next(_CORRUPT_COUNTER)}{self._path.suffix}"
        )
        try:
            self._path.rename(backup)
        except OSError:
            logger.warning("message_cache_backup_failed path=%s", self._path)
        else:
            logger.warning("message_cache_corrupt moved_to=%s", backup)
        logger.warning("message_cache_parse_failed starting_fresh err=%s", exc)
