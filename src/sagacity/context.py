"""Context assembler -- builds the prompt from raw file contents."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from .errors import FileAccessError, SagacityError

logger = logging.getLogger(__name__)

DEFAULT_CHAR_BUDGET = 100_000
_TRUNCATED = "\n... (truncated)\n"


def assemble(
    ranked_paths: Iterable[str],
    query: str,
    root: Path,
    budget: int = DEFAULT_CHAR_BUDGET,
) -> str:
    """Concatenate the query header and each file's current content.

    Content is re-read from disk, not taken from the cached summary.  Files
    that vanished or cannot be read are skipped; FileAccessError is raised
    only when none of the selected files could be read.  Once *budget*
    characters are used the overflowing block is cut and assembly stops;
    a budget too small to carry any file content raises SagacityError.
    """
    paths = list(ranked_paths)
    header = f"User query: {query}\n\nRelevant file contents:\n"
    parts = [header]
    used = len(header)
    readable = 0
    included = 0

    for rel_path in paths:
        try:
            content = (root / rel_path).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Skipping %s in context: %s", rel_path, exc)
            continue

        readable += 1
        block = f"File: {rel_path}\nContent:\n{content}\n\n"
        if used + len(block) > budget:
            room = budget - used - len(_TRUNCATED)
            if room > 0:
                parts.append(block[:room] + _TRUNCATED)
                included += 1
            logger.debug("Context budget of %d chars reached at %s", budget, rel_path)
            break
        parts.append(block)
        used += len(block)
        included += 1

    if paths and readable == 0:
        raise FileAccessError(
            "None of the relevant files could be read: " + ", ".join(paths),
            paths[0],
        )
    if paths and included == 0:
        raise SagacityError(
            f"Context budget of {budget} chars leaves no room for file content."
        )
    return "".join(parts)
