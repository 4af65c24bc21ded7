"""Knowledge base lookups for context assembly.

JsonKnowledgeIndex scores entries of a JSON knowledge file by word
overlap with the query. NullKnowledgeIndex is the degraded stand-in used
when no knowledge file is configured.
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

WORD_PATTERN = re.compile(r"\w+", re.UNICODE)


@dataclass(frozen=True)
class KnowledgeChunk:
    """A knowledge base entry with its similarity to the query."""
    text: str
    score: float
    source: str = ""


def _words(text: str) -> set[str]:
    return {w for w in WORD_PATTERN.findall(text.lower()) if len(w) > 2}


class JsonKnowledgeIndex:
    """Word-overlap similarity over a JSON knowledge file.

    Accepts either a list of entries or ``{"entries": [...]}``; each entry
    needs ``text`` (or ``content``) and may carry ``source`` or ``title``.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._entries: list[dict[str, Any]] | None = None

    def _load(self) -> list[dict[str, Any]]:
        if self._entries is not None:
            return self._entries
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("entries", [])
        entries = []
        for item in data if isinstance(data, list) else []:
            if not isinstance(item, dict):
                continue
            text = item.get("text") or item.get("content")
            if isinstance(text, str) and text.strip():
                entries.append({
                    "text": text,
                    "source": str(item.get("source") or item.get("title") or ""),
                    "words": _words(text),
                })
        self._entries = entries
        logger.info(f"Loaded {len(entries)} knowledge entries from {self.path}")
        return entries

    def similar_chunks(self, query: str, k: int = 3) -> list[KnowledgeChunk]:
        """Top-k entries by overlap with the query, best first."""
        query_words = _words(query or "")
        if not query_words or k <= 0:
            return []
        scored = []
        for entry in self._load():
            overlap = query_words & entry["words"]
            if not overlap:
                continue
            similarity = len(overlap) / len(query_words)
            scored.append(KnowledgeChunk(text=entry["text"], score=round(similarity, 4), source=entry["source"]))
        scored.sort(key=lambda c: c.score, reverse=True)
        return scored[:k]

    def __len__(self) -> int:
        return len(self._load())


class NullKnowledgeIndex:
    """Knowledge index that never returns anything."""

    def similar_chunks(self, query: str, k: int = 3) -> list[KnowledgeChunk]:
        return []

    def __len__(self) -> int:
        return 0
