"""Change detector -- walks the file tree and diffs it against the index cache."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import pathspec

from .models import SummaryCache

logger = logging.getLogger(__name__)

# Directories to skip unconditionally.
SKIP_DIRS: set[str] = {
    ".git", ".venv", "venv", "__pycache__", "dist", "build", ".tox", ".eggs",
    "node_modules", ".mypy_cache", ".pytest_cache",
    ".sagacity",       # our own cache / config
    "target",          # Rust / Java (Maven)
    "bin", "obj",      # C# / Go binaries
    ".gradle",
    ".next", ".nuxt",
    "vendor",
    ".cargo",
    "Pods",
    ".build",
    "coverage",
    ".cache",
}

# Extension → language name mapping.
LANGUAGE_EXTENSIONS: dict[str, str] = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".cs": "csharp",
    ".swift": "swift",
    ".rb": "ruby",
    ".cpp": "cpp",
    ".c": "c",
    ".h": "c",
    ".hpp": "cpp",
    ".toml": "toml",
    ".md": "markdown",
}


def detect_language(path: str) -> str:
    """Classify *path* by extension; ``"unknown"`` when unrecognised."""
    ext = os.path.splitext(path)[1].lower()
    return LANGUAGE_EXTENSIONS.get(ext, "unknown")


@dataclass
class ChangeSet:
    """Partition of the live file set against the cached index.

    ``unchanged`` + ``changed`` is exactly the live allow-listed file set;
    ``deleted`` is exactly ``cached paths - live paths``.  All paths are
    relative to ``root`` with forward slashes.
    """

    root: Path
    unchanged: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    mtimes: dict[str, float | None] = field(default_factory=dict)
    """Observed mtime per live path; ``None`` when metadata was unreadable."""

    @property
    def live(self) -> set[str]:
        return set(self.unchanged) | set(self.changed)

    @property
    def has_work(self) -> bool:
        return bool(self.changed or self.deleted)


GITIGNORE_FILE = ".gitignore"


def _load_gitignore(directory: Path) -> pathspec.GitIgnoreSpec | None:
    path = directory / GITIGNORE_FILE
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Cannot read %s: %s", path, exc)
        return None
    return pathspec.GitIgnoreSpec.from_lines(lines)


def _is_ignored(rel_path: str, is_dir: bool, specs: dict[str, pathspec.GitIgnoreSpec]) -> bool:
    """Match *rel_path* against every .gitignore from an enclosing directory.

    Patterns are relative to the directory holding the .gitignore file.
    """
    for base, spec in specs.items():
        if base:
            if not rel_path.startswith(base + "/"):
                continue
            sub = rel_path[len(base) + 1:]
        else:
            sub = rel_path
        if spec.match_file(sub + "/" if is_dir else sub):
            return True
    return False


def walk_files(root: Path, extensions: Iterable[str]) -> list[str]:
    """Return sorted root-relative paths of every allow-listed file.

    Directories in ``SKIP_DIRS`` and anything matched by a ``.gitignore``
    file inside the tree are left out.
    """
    allowed = {e.lower() for e in extensions}
    root = root.resolve()
    found: list[str] = []
    specs: dict[str, pathspec.GitIgnoreSpec] = {}

    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).resolve().relative_to(root).as_posix()
        if rel_dir == ".":
            rel_dir = ""

        if GITIGNORE_FILE in filenames:
            spec = _load_gitignore(Path(dirpath))
            if spec is not None:
                specs[rel_dir] = spec

        def _rel(name: str) -> str:
            return f"{rel_dir}/{name}" if rel_dir else name

        # Prune excluded directories in-place so os.walk skips them.
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in SKIP_DIRS and not _is_ignored(_rel(d), True, specs)
        )

        for fname in filenames:
            ext = os.path.splitext(fname)[1].lower()
            if ext not in allowed:
                continue
            rel_path = _rel(fname)
            if _is_ignored(rel_path, False, specs):
                continue
            found.append(rel_path)

    found.sort()
    return found


def scan_changes(
    root: Path,
    cache: SummaryCache,
    extensions: Iterable[str],
) -> ChangeSet:
    """Diff the allow-listed files under *root* against *cache*.

    A file is changed when it is absent from the cache or its mtime is newer
    than the cached ``last_indexed_at``.  Unreadable metadata counts as
    changed so a broken stat never leaves a stale summary in place.
    """
    root = root.resolve()
    result = ChangeSet(root=root)

    for rel_path in walk_files(root, extensions):
        try:
            mtime: float | None = (root / rel_path).stat().st_mtime
        except OSError as exc:
            logger.debug("Cannot stat %s (%s); treating as changed", rel_path, exc)
            mtime = None
        result.mtimes[rel_path] = mtime

        if mtime is None or cache.is_stale(rel_path, mtime):
            result.changed.append(rel_path)
        else:
            result.unchanged.append(rel_path)

    live = result.live
    result.deleted = sorted(p for p in cache.entries if p not in live)

    logger.debug(
        "Scan of %s: %d unchanged, %d changed, %d deleted",
        root, len(result.unchanged), len(result.changed), len(result.deleted),
    )
    return result
