"""Query routing: pick a policy and model tier for each request.

Tiers:
  none  - static canned reply, no model call (greetings)
  small - low-latency model for short factual questions
  large - high-capability model for code and open-ended reasoning

Router logic (fixed tie-break order):
1. Manual override (small/large) wins outright
2. Short greeting (<= 8 words, at most 3 words after the greeting) -> GREETING / none
3. Code, error or debugging vocabulary -> CODE_COMPLEX / large
4. Reasoning vocabulary or a long message -> REASONING_COMPLEX / large
5. Factual-question vocabulary or a short message -> SIMPLE_QA / small
6. Anything else -> SIMPLE_QA / small
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Any

from gurulo.config import RouterConfig

logger = logging.getLogger(__name__)


class RoutingPolicy(Enum):
    """Routing category assigned to a request."""
    GREETING = "GREETING"
    SIMPLE_QA = "SIMPLE_QA"
    CODE_COMPLEX = "CODE_COMPLEX"
    REASONING_COMPLEX = "REASONING_COMPLEX"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"


class ModelTier(Enum):
    """Which class of completion capability services a request."""
    NONE = "none"
    SMALL = "small"
    LARGE = "large"


@dataclass(frozen=True)
class RoutingDecision:
    """Routing decision with reasoning."""
    policy: RoutingPolicy
    model_tier: ModelTier
    overridden: bool = False
    reason: str = ""


GREETING_PATTERN = re.compile(
    r"^(?:👋\s*)?(?:"
    r"გამარჯობა(?:თ)?|გაუმარჯოს|სალამი|მოგესალმები(?:თ)?|"
    r"დილა მშვიდობისა|საღამო მშვიდობისა|ღამე მშვიდობისა|"
    r"hello|hi|hey|hiya|howdy|greetings|good (?:morning|afternoon|evening)"
    r")(?=\W|$)",
    re.IGNORECASE,
)


def _keyword_pattern(words: list[str], stems: list[str]) -> re.Pattern:
    """Whole-word match for `words`, prefix match for `stems`."""
    parts = []
    if words:
        parts.append(r"(?<!\w)(?:" + "|".join(re.escape(w) for w in words) + r")(?!\w)")
    if stems:
        parts.append(r"(?<!\w)(?:" + "|".join(re.escape(s) for s in stems) + ")")
    return re.compile("|".join(parts), re.IGNORECASE)


CODE_PATTERN = _keyword_pattern(
    words=[
        "error", "errors", "exception", "exceptions", "traceback", "stack trace",
        "stacktrace", "bug", "bugs", "crash", "crashes", "undefined", "null pointer",
        "segfault", "function", "class", "method", "variable", "import", "npm", "pip",
        "code", "script", "api", "endpoint", "regex", "json", "sql", "component",
    ],
    stems=[
        "debug", "compil", "refactor",
        "შეცდომ", "ბაგ", "კოდ", "ფუნქცი", "დებაგ", "არ მუშაობს", "კომპონენტ",
        "ცვლად", "სკრიპტ", "ფაილ",
    ],
)

# TypeError, KeyError, fenced code, file names with code extensions
CODE_SHAPE_PATTERN = re.compile(
    r"\w+(?:error|exception)\b|```|\w+\.(?:py|js|ts|tsx|jsx|json)\b",
    re.IGNORECASE,
)

REASONING_PATTERN = _keyword_pattern(
    words=[
        "explain", "why", "compare", "evaluate", "design", "architecture", "strategy",
        "trade-off", "tradeoff", "tradeoffs", "pros and cons", "plan", "reason",
        "implications", "in detail", "step by step", "recommend",
    ],
    stems=[
        "analy",
        "ახსენ", "რატომ", "ანალიზ", "შეადარ", "შეაფას", "დეტალურად", "როგორ მუშაობს",
        "არქიტექტურ", "სტრატეგ", "გეგმ",
    ],
)

SIMPLE_QA_PATTERN = _keyword_pattern(
    words=[
        "what is", "what's", "who is", "when", "where", "how many", "how much",
        "which", "define", "list", "name",
        "რა არის", "ვინ არის", "როდის", "სად", "რამდენი", "რომელი", "რა ჰქვია",
    ],
    stems=[],
)

SENTENCE_SPLIT = re.compile(r"[.!?…？！]+")


def _normalize(message: Any) -> str:
    """Normalize unicode and collapse whitespace. Non-strings become ''."""
    if not isinstance(message, str):
        return ""
    text = unicodedata.normalize("NFC", message)
    return re.sub(r"\s+", " ", text).strip()


def _count_sentences(text: str) -> int:
    return len([s for s in SENTENCE_SPLIT.split(text) if s.strip()])


class QueryRouter:
    """Routes requests to a policy and model tier using lexical heuristics.

    Deterministic for the same input when no override is given. Never
    raises: anything it cannot interpret falls through to the economical
    SIMPLE_QA / small default.
    """

    def __init__(self, config: RouterConfig | None = None):
        self.config = config or RouterConfig()
        self._routing_stats = {policy.value: 0 for policy in RoutingPolicy}

    def route(self, message: Any, model_override: str | None = None) -> RoutingDecision:
        """Route a message to a policy and tier."""
        decision = self._decide(message, model_override)
        self._routing_stats[decision.policy.value] += 1
        logger.debug(
            f"Routed message -> {decision.policy.value}/{decision.model_tier.value} "
            f"({decision.reason})"
        )
        return decision

    def _decide(self, message: Any, model_override: str | None) -> RoutingDecision:
        if model_override in (ModelTier.SMALL.value, ModelTier.LARGE.value):
            return RoutingDecision(
                policy=RoutingPolicy.MANUAL_OVERRIDE,
                model_tier=ModelTier(model_override),
                overridden=True,
                reason=f"Manual override to {model_override}",
            )

        normalized = _normalize(message)
        if not normalized:
            return self._default("Empty or non-text message")

        lowered = normalized.lower()
        words = lowered.split(" ")
        word_count = len(words)
        char_count = len(lowered)
        sentence_count = _count_sentences(lowered)
        cfg = self.config

        greeting = GREETING_PATTERN.match(lowered)
        if (
            greeting
            and word_count <= cfg.greeting_max_words
            and len(re.findall(r"\w+", lowered[greeting.end():])) <= cfg.greeting_max_extra_words
        ):
            return RoutingDecision(
                policy=RoutingPolicy.GREETING,
                model_tier=ModelTier.NONE,
                reason=f"Short greeting ({word_count} words)",
            )

        if CODE_PATTERN.search(lowered) or CODE_SHAPE_PATTERN.search(normalized):
            return RoutingDecision(
                policy=RoutingPolicy.CODE_COMPLEX,
                model_tier=ModelTier.LARGE,
                reason="Code/error vocabulary",
            )

        is_long = (
            word_count >= cfg.long_min_words
            or char_count >= cfg.long_min_chars
            or sentence_count >= cfg.long_min_sentences
        )
        if REASONING_PATTERN.search(lowered) or is_long:
            reason = "Reasoning vocabulary" if not is_long else (
                f"Long message ({word_count} words, {char_count} chars, "
                f"{sentence_count} sentences)"
            )
            return RoutingDecision(
                policy=RoutingPolicy.REASONING_COMPLEX,
                model_tier=ModelTier.LARGE,
                reason=reason,
            )

        is_short = word_count <= cfg.short_max_words and char_count <= cfg.short_max_chars
        if SIMPLE_QA_PATTERN.search(lowered) or is_short:
            return RoutingDecision(
                policy=RoutingPolicy.SIMPLE_QA,
                model_tier=ModelTier.SMALL,
                reason="Short factual question",
            )

        return self._default("No strong signal")

    @staticmethod
    def _default(reason: str) -> RoutingDecision:
        return RoutingDecision(
            policy=RoutingPolicy.SIMPLE_QA,
            model_tier=ModelTier.SMALL,
            reason=f"Default: {reason}",
        )

    def get_stats(self) -> dict[str, Any]:
        """Get routing statistics."""
        total = sum(self._routing_stats.values())
        stats: dict[str, Any] = {"total_routes": total}
        for policy, count in self._routing_stats.items():
            stats[f"{policy.lower()}_pct"] = (count / total * 100) if total else 0
        return stats


# Singleton router instance
_router_instance: QueryRouter | None = None


def get_query_router() -> QueryRouter:
    """Get the global query router instance."""
    global _router_instance
    if _router_instance is None:
        _router_instance = QueryRouter()
    return _router_instance
