"""Context assembly: a bounded context window from three sources.

Sources and their share of the token budget:
  live files        50%  relevance search over the project (knowledge
                         base entries stand in when nothing matches)
  explicit mentions 30%  files named in the message itself
  recent changes    20%  files the change feed saw modified lately

Unused live-file budget moves to explicit mentions, and whatever
explicit mentions leave over moves to recent changes. The merged chunks
are sorted by score and clamped to the total budget once more.

A failing source is logged and skipped; build() never raises.
"""

import asyncio
import logging
import math
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Protocol, Sequence

from gurulo.config import ContextConfig
from gurulo.model_client import ConversationTurn

logger = logging.getLogger(__name__)

EXPLICIT_SCORE = 1.0
RECENT_SCORE = 0.7
KNOWLEDGE_WEIGHT = 0.5
MAX_LIVE_SCORE = 0.95

LIVE_SNIPPET_CHARS = 1200
EXPLICIT_SNIPPET_CHARS = 1600
RECENT_SNIPPET_CHARS = 600

MAX_SEARCH_TERMS = 5
SUMMARY_MAX_CHARS = 220

DENY_PATH_PATTERNS = [
    re.compile(r"(^|/)\.env"),
    re.compile(r"(^|/)(node_modules|\.git|dist|build|__pycache__|\.venv|venv)/"),
    re.compile(r"(^|/)(id_rsa|id_ed25519|\.npmrc|\.pypirc)$"),
    re.compile(r"\.(pem|key|p12|pfx)$", re.IGNORECASE),
]
DENY_EXTENSIONS = {
    ".lock", ".zip", ".gz", ".tar", ".png", ".jpg", ".jpeg", ".gif", ".ico",
    ".pdf", ".mp4", ".mp3", ".woff", ".woff2", ".exe", ".so", ".dylib", ".pyc",
}
DENY_FILENAMES = {"package-lock.json", "yarn.lock", "pnpm-lock.yaml", "poetry.lock"}

FOLLOW_UP_CUES = re.compile(
    r"(?<!\w)(?:continue|more|why|also|again|details?|"
    r"გააგრძელე|კიდევ|კიდე|რატომ|დეტალურად|მეტი|ასევე)(?!\w)",
    re.IGNORECASE,
)

MENTION_PATTERN = re.compile(
    r"(?<![\w/.-])((?:[\w.-]+/)*[\w-][\w.-]*\."
    r"(?:py|js|mjs|cjs|ts|tsx|jsx|json|md|css|scss|html|yml|yaml|toml|sh|sql|txt))(?![\w])",
    re.IGNORECASE,
)

SENTENCE_END = re.compile(r"(?<=[.!?…])\s")
GEORGIAN_CHARS = re.compile(r"[ა-ჰ]")
STOPWORDS = {
    "the", "and", "for", "with", "this", "that", "what", "how", "why", "are",
    "you", "can", "does", "from", "into", "about", "please", "show", "tell",
}


class SourceKind(Enum):
    LIVE_FILE = "live_file"
    KNOWLEDGE_BASE = "knowledge_base"
    RECENT_CHANGE = "recent_change"
    EXPLICIT_MENTION = "explicit_mention"


@dataclass(frozen=True)
class ChunkSource:
    """Where a context chunk came from."""
    kind: SourceKind
    path: str | None = None
    line: int | None = None
    timestamp: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class ContextChunk:
    text: str
    score: float
    source: ChunkSource

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.text)


@dataclass
class AssembledContext:
    """Result of a build: rendered text plus what went into it."""
    context_text: str
    chunks: list[ContextChunk] = field(default_factory=list)
    sources_meta: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    rag_query: str = ""
    expanded: bool = False

    @property
    def total_tokens(self) -> int:
        return sum(c.tokens for c in self.chunks)


class FileSearch(Protocol):
    def search(self, term: str, extensions: tuple[str, ...] | None = None) -> list: ...
    def read_file(self, path: str, max_bytes: int = ...) -> str | None: ...
    def resolve(self, mention: str) -> list[str]: ...


class KnowledgeIndex(Protocol):
    def similar_chunks(self, query: str, k: int = 3) -> list: ...


class ChangeFeed(Protocol):
    def recent_changes(self, limit: int = 10) -> list: ...


def estimate_tokens(text: str) -> int:
    """Rough token estimate: four characters per token."""
    return math.ceil(len(text or "") / 4)


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Cut `text` to at most `max_bytes` of UTF-8 without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def within_budget(chunks: Sequence[ContextChunk], budget: int) -> list[ContextChunk]:
    """Longest prefix of `chunks` whose estimated tokens fit in `budget`."""
    selected = []
    used = 0
    for chunk in chunks:
        tokens = chunk.tokens
        if used + tokens > budget:
            break
        selected.append(chunk)
        used += tokens
    return selected


def is_path_allowed(path: str) -> bool:
    """False for secrets, dependency/build trees, binaries and lock files."""
    normalized = (path or "").replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    if not normalized or normalized.startswith("/") or ".." in normalized.split("/"):
        return False
    name = PurePosixPath(normalized).name
    if name in DENY_FILENAMES:
        return False
    if PurePosixPath(normalized).suffix.lower() in DENY_EXTENSIONS:
        return False
    return not any(p.search(normalized) for p in DENY_PATH_PATTERNS)


def is_vague_follow_up(message: str) -> bool:
    """Short message (< 4 words) that leans on the previous exchange."""
    text = (message or "").strip().lower()
    if not text:
        return False
    if len(text.split()) >= 4:
        return False
    return bool(FOLLOW_UP_CUES.search(text))


def quick_summary(text: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    """First sentence of `text`, capped at `max_chars`."""
    flat = " ".join((text or "").split())
    first = SENTENCE_END.split(flat, maxsplit=1)[0]
    if len(first) > max_chars:
        return first[:max_chars].rstrip() + "…"
    return first


def build_expanded_query(history: Sequence[ConversationTurn], message: str) -> str:
    """Last user question + summary of the answer to it + the follow-up."""
    last_user = ""
    last_answer = ""
    for turn in reversed(history):
        if not last_answer and turn.role == "assistant":
            last_answer = turn.content
        if turn.role == "user":
            last_user = turn.content
            break
    parts = [last_user, quick_summary(last_answer) if last_answer else "", message]
    return " ".join(p.strip() for p in parts if p and p.strip())


def extract_file_mentions(text: str) -> list[str]:
    """File-like tokens (`name.ext`, `dir/name.ext`) in order of appearance."""
    seen: list[str] = []
    for match in MENTION_PATTERN.finditer(text or ""):
        mention = match.group(1).rstrip(".")
        if mention not in seen:
            seen.append(mention)
    return seen


def _search_terms(query: str) -> list[str]:
    terms = []
    for word in re.findall(r"[\w.-]+", query.lower()):
        word = word.strip(".-")
        if len(word) > 2 and word not in STOPWORDS and word not in terms:
            terms.append(word)
    return terms[:MAX_SEARCH_TERMS]


def calculate_relevance(query: str, path: str, content: str) -> float:
    """Heuristic relevance of a file to the query, in [0, MAX_LIVE_SCORE]."""
    query_lower = query.lower()
    content_lower = content.lower()
    words = [w for w in query_lower.split() if len(w) > 2]
    name = PurePosixPath(path).name.lower()

    score = 0.0
    for word in words:
        score += min(content_lower.count(word) * 0.1, 0.5)
    if any(word in name for word in words):
        score += 0.3
    if "function " in content or "class " in content or "def " in content or "export " in content:
        score += 0.1
    if GEORGIAN_CHARS.search(query) and GEORGIAN_CHARS.search(content):
        score += 0.2
    return round(min(score / 2, MAX_LIVE_SCORE), 4)


def dedupe(chunks: Sequence[ContextChunk]) -> list[ContextChunk]:
    """Keep the first chunk per (kind, path, line)."""
    seen = set()
    unique = []
    for chunk in chunks:
        key = (chunk.source.kind, chunk.source.path, chunk.source.line)
        if key in seen:
            continue
        seen.add(key)
        unique.append(chunk)
    return unique


class ContextAssembler:
    """Builds budgeted context from live search, mentions and recent changes."""

    def __init__(
        self,
        file_search: FileSearch,
        knowledge_index: KnowledgeIndex | None = None,
        change_feed: ChangeFeed | None = None,
        config: ContextConfig | None = None,
    ):
        self.file_search = file_search
        self.knowledge_index = knowledge_index
        self.change_feed = change_feed
        self.config = config or ContextConfig()

    async def build(
        self,
        message: str,
        conversation_history: Sequence[ConversationTurn] = (),
    ) -> AssembledContext:
        """Assemble context for `message`. Never raises."""
        expanded = is_vague_follow_up(message) and len(conversation_history) > 0
        rag_query = build_expanded_query(conversation_history, message) if expanded else (message or "")
        if expanded:
            logger.info(f"Vague follow-up detected; expanded query: {rag_query[:100]}")

        total = self.config.token_budget
        budget_live = math.floor(total * 0.5)
        budget_explicit = math.floor(total * 0.3)
        budget_recent = total - budget_live - budget_explicit
        sources_meta: dict[str, list[dict[str, Any]]] = {"live": [], "explicit": [], "recent": []}

        live = await self._safe(self._live_chunks(rag_query), "live file search")
        if not live:
            live = await self._safe(self._knowledge_chunks(rag_query), "knowledge index")
        live = within_budget(dedupe(sorted(live, key=lambda c: c.score, reverse=True)), budget_live)
        budget_explicit += budget_live - sum(c.tokens for c in live)
        sources_meta["live"] = [c.source.to_dict() for c in live]

        explicit = await self._safe(self._explicit_chunks(rag_query), "explicit mentions")
        explicit = within_budget(dedupe(explicit), budget_explicit)
        budget_recent += budget_explicit - sum(c.tokens for c in explicit)
        sources_meta["explicit"] = [c.source.to_dict() for c in explicit]

        taken = {c.source.path for c in live + explicit}
        recent = await self._safe(self._recent_chunks(taken), "recent changes")
        recent = within_budget(dedupe(recent), budget_recent)
        sources_meta["recent"] = [c.source.to_dict() for c in recent]

        merged = sorted(explicit + live + recent, key=lambda c: c.score, reverse=True)
        final = within_budget(merged, total)
        logger.debug(
            f"Context: {len(final)} chunks, {sum(c.tokens for c in final)}/{total} tokens "
            f"(live={len(live)}, explicit={len(explicit)}, recent={len(recent)})"
        )
        return AssembledContext(
            context_text="\n\n".join(c.text for c in final),
            chunks=final,
            sources_meta=sources_meta,
            rag_query=rag_query,
            expanded=expanded,
        )

    async def _safe(self, coro, label: str) -> list[ContextChunk]:
        try:
            return await coro
        except Exception as e:
            logger.warning(f"Context source '{label}' failed, skipping: {e}")
            return []

    async def _read(self, path: str) -> str | None:
        return await asyncio.to_thread(self.file_search.read_file, path, self.config.max_chunk_bytes)

    async def _live_chunks(self, query: str) -> list[ContextChunk]:
        terms = _search_terms(query)
        if not terms:
            return []
        lines_by_path: dict[str, list[int]] = {}
        for term in terms:
            hits = await asyncio.to_thread(self.file_search.search, term)
            for hit in hits:
                if is_path_allowed(hit.path):
                    lines_by_path.setdefault(hit.path, []).append(hit.line)

        ranked = sorted(lines_by_path, key=lambda p: len(lines_by_path[p]), reverse=True)
        chunks = []
        for path in ranked[: self.config.live_file_limit]:
            content = await self._read(path)
            if not content:
                continue
            content = truncate_utf8(content, self.config.max_chunk_bytes)
            first_line = min(lines_by_path[path])
            snippet = _snippet_around(content, first_line, LIVE_SNIPPET_CHARS)
            chunks.append(ContextChunk(
                text=f"# [FILE:{path}:{first_line}]\n{snippet}",
                score=calculate_relevance(query, path, content),
                source=ChunkSource(kind=SourceKind.LIVE_FILE, path=path, line=first_line),
            ))
        return chunks

    async def _knowledge_chunks(self, query: str) -> list[ContextChunk]:
        if self.knowledge_index is None or not query.strip():
            return []
        results = await asyncio.to_thread(
            self.knowledge_index.similar_chunks, query, self.config.knowledge_k
        )
        chunks = []
        for result in results:
            text = truncate_utf8(result.text, self.config.max_chunk_bytes)
            chunks.append(ContextChunk(
                text=f"# [KNOWLEDGE:{result.source or 'kb'}]\n{text[:LIVE_SNIPPET_CHARS]}",
                score=round(result.score * KNOWLEDGE_WEIGHT, 4),
                source=ChunkSource(kind=SourceKind.KNOWLEDGE_BASE, path=result.source or None),
            ))
        return chunks

    async def _explicit_chunks(self, query: str) -> list[ContextChunk]:
        chunks = []
        for mention in extract_file_mentions(query):
            candidates = await asyncio.to_thread(self.file_search.resolve, mention)
            for path in candidates:
                if not is_path_allowed(path):
                    logger.debug(f"Skipping denied path {path}")
                    continue
                content = await self._read(path)
                if not content:
                    continue
                content = truncate_utf8(content, self.config.max_chunk_bytes)
                chunks.append(ContextChunk(
                    text=f"# [FILE:{path}]\n{_clip(content, EXPLICIT_SNIPPET_CHARS)}",
                    score=EXPLICIT_SCORE,
                    source=ChunkSource(kind=SourceKind.EXPLICIT_MENTION, path=path),
                ))
        return chunks

    async def _recent_chunks(self, exclude: set) -> list[ContextChunk]:
        if self.change_feed is None:
            return []
        changes = await asyncio.to_thread(self.change_feed.recent_changes, self.config.recent_limit)
        changes = sorted(changes, key=lambda r: r.timestamp or 0, reverse=True)
        chunks = []
        for record in changes[: self.config.recent_read_limit]:
            if record.path in exclude or not is_path_allowed(record.path):
                continue
            content = await self._read(record.path)
            if not content:
                continue
            content = truncate_utf8(content, self.config.max_chunk_bytes)
            chunks.append(ContextChunk(
                text=f"# [RECENT:{record.path}]\n{_clip(content, RECENT_SNIPPET_CHARS)}",
                score=RECENT_SCORE,
                source=ChunkSource(
                    kind=SourceKind.RECENT_CHANGE, path=record.path, timestamp=record.timestamp
                ),
            ))
        return chunks


def _clip(text: str, chars: int) -> str:
    if len(text) <= chars:
        return text
    return text[:chars] + "…"


def _snippet_around(content: str, line: int, chars: int) -> str:
    lines = content.splitlines()
    start = max(line - 3, 0)
    return _clip("\n".join(lines[start:]), chars)


def format_context_for_prompt(assembled: AssembledContext, message: str) -> str:
    """Render the context block that precedes the user's message."""
    parts = ["--- Project Context ---", f'User query: "{message}"', ""]
    if assembled.context_text:
        parts.append(assembled.context_text)
    else:
        parts.append("(no relevant project files found)")
    parts.extend(["", "--- End of Context ---"])
    return "\n".join(parts)
