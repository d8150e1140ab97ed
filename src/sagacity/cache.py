"""Summary cache persistence and reconciliation."""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from pydantic import ValidationError

from .errors import FileAccessError
from .models import IndexEntry, SummaryCache
from .scanner import ChangeSet

logger = logging.getLogger(__name__)


def load_cache(path: Path) -> SummaryCache:
    """Load the cache snapshot at *path*.

    A missing file is not an error.  A file that cannot be read or parsed
    is logged and treated as an empty cache so the next run rebuilds it.
    """
    if not path.exists():
        logger.debug("No existing index cache at %s", path)
        return SummaryCache()
    try:
        cache = SummaryCache.model_validate_json(path.read_bytes())
    except (OSError, ValidationError, ValueError) as exc:
        logger.warning("Ignoring unreadable index cache %s: %s", path, exc)
        return SummaryCache()
    logger.debug("Index cache loaded: %d entries", len(cache.entries))
    return cache


def save_cache(path: Path, cache: SummaryCache) -> None:
    """Atomically write *cache* to *path* (temp file + replace).

    Raises FileAccessError if the snapshot cannot be written; the previous
    file, if any, is left intact.
    """
    data = cache.model_dump_json(indent=2)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as exc:
        raise FileAccessError(f"Failed to save index cache: {exc}", str(path)) from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise FileAccessError(f"Failed to save index cache: {exc}", str(path)) from exc
    logger.debug("Index cache saved: %d entries", len(cache.entries))


def reconcile(
    cache: SummaryCache,
    changes: ChangeSet,
    updated: Mapping[str, IndexEntry],
) -> SummaryCache:
    """Merge a reindex run into *cache* and return the new snapshot.

    Entries in *updated* overwrite their paths, paths in ``changes.deleted``
    are removed, everything else is carried over untouched.  Entries are
    stored in path order so identical inputs serialise identically.
    """
    deleted = set(changes.deleted)
    merged: dict[str, IndexEntry] = {
        p: e for p, e in cache.entries.items() if p not in deleted
    }
    merged.update(updated)

    observed = [m for m in changes.mtimes.values() if m is not None]
    watermark = max(observed) if observed else cache.watermark

    return SummaryCache(
        entries={p: merged[p] for p in sorted(merged)},
        watermark=watermark,
    )
