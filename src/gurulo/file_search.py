"""Live project file search.

Line-level substring search over source files under a fixed project root,
plus bounded reads and explicit-mention resolution. Results are cached
for a short TTL; concurrent writers simply overwrite each other's entries.
"""

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (".py", ".js", ".ts", ".tsx", ".jsx", ".json", ".md", ".css", ".html")

SKIP_DIRS = {
    "node_modules", "__pycache__", ".venv", "venv", "dist", "build",
    "coverage", ".next", ".tox",
}

MAX_DEPTH = 6
MAX_HITS = 200


@dataclass(frozen=True)
class SearchHit:
    """A matching line inside a project file."""
    path: str
    line: int
    content: str
    relevance: int = 1


class LocalFileSearch:
    """Searches and reads files below `project_root`."""

    def __init__(
        self,
        project_root: str | Path,
        extensions: tuple[str, ...] = DEFAULT_EXTENSIONS,
        cache_ttl: float = 60.0,
        max_depth: int = MAX_DEPTH,
    ):
        self.project_root = Path(project_root).resolve()
        self.extensions = extensions
        self.cache_ttl = cache_ttl
        self.max_depth = max_depth
        self._search_cache: dict[tuple, tuple[float, list[SearchHit]]] = {}
        self._file_index: tuple[float, list[str]] | None = None
        self._cache_hits = 0
        self._cache_misses = 0

    def _list_files(self) -> list[str]:
        """All searchable files as root-relative posix paths (TTL cached)."""
        now = time.monotonic()
        if self._file_index and now - self._file_index[0] < self.cache_ttl:
            return self._file_index[1]

        files: list[str] = []
        root_depth = len(self.project_root.parts)
        for dirpath, dirnames, filenames in os.walk(self.project_root):
            depth = len(Path(dirpath).parts) - root_depth
            if depth >= self.max_depth:
                dirnames[:] = []
            dirnames[:] = [
                d for d in dirnames if d not in SKIP_DIRS and not d.startswith(".")
            ]
            for name in filenames:
                if name.startswith("."):
                    continue
                path = Path(dirpath) / name
                files.append(path.relative_to(self.project_root).as_posix())
        files.sort()
        self._file_index = (now, files)
        return files

    def search(self, term: str, extensions: tuple[str, ...] | None = None) -> list[SearchHit]:
        """Case-insensitive line search for `term`, most relevant first."""
        term = (term or "").strip()
        if not term:
            return []
        exts = tuple(extensions or self.extensions)
        key = (term.lower(), exts)
        now = time.monotonic()
        cached = self._search_cache.get(key)
        if cached and now - cached[0] < self.cache_ttl:
            self._cache_hits += 1
            return cached[1]
        self._cache_misses += 1

        term_lower = term.lower()
        hits: list[SearchHit] = []
        for rel in self._list_files():
            if not rel.endswith(exts):
                continue
            try:
                text = (self.project_root / rel).read_text(encoding="utf-8", errors="ignore")
            except OSError as e:
                logger.debug(f"Could not read {rel}: {e}")
                continue
            name_match = term_lower in Path(rel).name.lower()
            for index, line in enumerate(text.splitlines()):
                if term_lower not in line.lower():
                    continue
                relevance = 1
                if term in line:
                    relevance += 2
                if name_match:
                    relevance += 3
                if index < 10:
                    relevance += 1
                hits.append(SearchHit(path=rel, line=index + 1, content=line.strip(), relevance=relevance))

        hits.sort(key=lambda h: (-h.relevance, h.path, h.line))
        hits = hits[:MAX_HITS]
        self._search_cache[key] = (now, hits)
        return hits

    def read_file(self, path: str, max_bytes: int = 80 * 1024) -> str | None:
        """Read up to `max_bytes` of a file inside the root. None if unreadable."""
        target = self._resolve_inside(path)
        if target is None or not target.is_file():
            return None
        try:
            with open(target, "rb") as f:
                data = f.read(max_bytes)
        except OSError as e:
            logger.debug(f"Could not read {path}: {e}")
            return None
        return data.decode("utf-8", errors="ignore")

    def resolve(self, mention: str) -> list[str]:
        """Map a mentioned file name (`App.tsx`, `src/app.py`) to project paths."""
        mention = mention.strip()
        while mention.startswith("./"):
            mention = mention[2:]
        if not mention:
            return []
        if "/" in mention:
            target = self._resolve_inside(mention)
            if target is not None and target.is_file():
                return [target.relative_to(self.project_root).as_posix()]
            return [p for p in self._list_files() if p.endswith("/" + mention)][:3]
        lowered = mention.lower()
        return [p for p in self._list_files() if Path(p).name.lower() == lowered][:3]

    def _resolve_inside(self, path: str) -> Path | None:
        try:
            target = (self.project_root / path).resolve()
        except (OSError, RuntimeError):
            return None
        if target != self.project_root and self.project_root not in target.parents:
            return None
        return target

    def clear_cache(self) -> None:
        self._search_cache.clear()
        self._file_index = None

    def get_stats(self) -> dict[str, Any]:
        """Get search cache statistics."""
        return {
            "project_root": str(self.project_root),
            "cached_queries": len(self._search_cache),
            "cache_hits": self._cache_hits,
            "cache_misses": self._cache_misses,
        }
