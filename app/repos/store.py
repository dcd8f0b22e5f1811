"""JSON document store -- one versioned JSON file per collection.

Each collection file looks like ``{"<key>": [...], "version": 1}``.
Reads and writes run in a worker thread; writes go to a temp file that
is then ``os.replace``-d over the original so a crash never leaves a
half-written document.  A per-file ``asyncio.Lock`` serialises
read-modify-write cycles inside this process.
"""

import asyncio
import json
import logging
import os
import uuid
import weakref
from collections.abc import Callable
from pathlib import Path
from typing import Any

from app.config import settings
from app.errors import CorruptStoreError

logger = logging.getLogger(__name__)

STORE_VERSION = 1

# Locks are per event loop: an asyncio.Lock cannot be shared across loops.
_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[Path, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def collection_path(filename: str) -> Path:
    """Path of *filename* inside the configured storage directory."""
    return settings.storage_dir / filename


def _lock_for(path: Path) -> asyncio.Lock:
    per_loop = _locks.setdefault(asyncio.get_running_loop(), {})
    lock = per_loop.get(path)
    if lock is None:
        lock = per_loop[path] = asyncio.Lock()
    return lock


def _read_items(path: Path, key: str, *, strict: bool = False) -> list[dict]:
    """Parse the item list of *path*.

    A missing file is an empty collection.  An unreadable one is logged
    and read as empty, unless *strict*, in which case
    ``CorruptStoreError`` is raised and the file is left untouched.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    try:
        doc = json.loads(raw)
    except json.JSONDecodeError:
        doc = None
    items = doc.get(key, []) if isinstance(doc, dict) else None
    if isinstance(items, list):
        return items
    if strict:
        raise CorruptStoreError(path)
    logger.error("Corrupt store file %s; reading as empty", path)
    return []


def _write_items(path: Path, key: str, items: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps({key: items, "version": STORE_VERSION}, indent=2, ensure_ascii=False)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    tmp_path.write_text(payload, encoding="utf-8")
    os.replace(tmp_path, path)


async def load(filename: str, key: str) -> list[dict]:
    """Return the item list of collection *filename* (``[]`` if absent)."""
    return await asyncio.to_thread(_read_items, collection_path(filename), key)


async def update(
    filename: str,
    key: str,
    mutate: Callable[[list[dict]], Any],
) -> Any:
    """Apply *mutate* to the item list under the file lock and persist it.

    *mutate* edits the list in place and may return a value, which is
    passed back to the caller.  The file is rewritten after every call.
    Raises ``CorruptStoreError`` instead of replacing an unparseable file.
    """
    path = collection_path(filename)
    async with _lock_for(path):
        items = await asyncio.to_thread(_read_items, path, key, strict=True)
        result = mutate(items)
        await asyncio.to_thread(_write_items, path, key, items)
        return result
