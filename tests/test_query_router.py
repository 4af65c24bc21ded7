"""Tests for gurulo.query_router: policy and tier selection."""

import pytest

from gurulo.config import RouterConfig
from gurulo.query_router import (
    ModelTier,
    QueryRouter,
    RoutingDecision,
    RoutingPolicy,
    get_query_router,
)


@pytest.fixture
def router():
    return QueryRouter()


class TestGreetings:
    def test_georgian_greeting(self, router):
        decision = router.route("გამარჯობა")
        assert decision.policy == RoutingPolicy.GREETING
        assert decision.model_tier == ModelTier.NONE
        assert decision.overridden is False

    def test_english_greeting_with_punctuation(self, router):
        decision = router.route("Hello! how are you?")
        assert decision.policy == RoutingPolicy.GREETING

    def test_long_message_starting_with_greeting_is_not_greeting(self, router):
        decision = router.route(
            "hello there, could you please walk me through how the deployment "
            "pipeline for this project actually works end to end"
        )
        assert decision.policy != RoutingPolicy.GREETING

    def test_question_after_greeting_goes_to_model(self, router):
        decision = router.route("hi, why does App.tsx throw a TypeError?")
        assert decision.policy == RoutingPolicy.CODE_COMPLEX
        assert decision.model_tier == ModelTier.LARGE

    def test_georgian_greeting_with_small_talk(self, router):
        assert router.route("გამარჯობა, როგორ ხარ?").policy == RoutingPolicy.GREETING

    def test_extra_words_limit_is_configurable(self):
        router = QueryRouter(RouterConfig(greeting_max_extra_words=0))
        assert router.route("hello").policy == RoutingPolicy.GREETING
        assert router.route("hello there").policy != RoutingPolicy.GREETING

    def test_greeting_prefix_inside_word_does_not_match(self, router):
        decision = router.route("history of the project")
        assert decision.policy != RoutingPolicy.GREETING


class TestCodeRouting:
    def test_type_error_token(self, router):
        decision = router.route("why does App.tsx throw a TypeError?")
        assert decision.policy == RoutingPolicy.CODE_COMPLEX
        assert decision.model_tier == ModelTier.LARGE

    def test_bare_type_error(self, router):
        assert router.route("TypeError").policy == RoutingPolicy.CODE_COMPLEX

    def test_georgian_code_vocabulary(self, router):
        decision = router.route("ეს ფუნქცია არ მუშაობს")
        assert decision.policy == RoutingPolicy.CODE_COMPLEX

    def test_code_beats_reasoning(self, router):
        decision = router.route("explain this bug")
        assert decision.policy == RoutingPolicy.CODE_COMPLEX

    def test_keyword_inside_other_word_is_ignored(self, router):
        # "class" inside "classic", "code" inside "decode" is not code vocabulary
        decision = router.route("classic decode")
        assert decision.policy == RoutingPolicy.SIMPLE_QA


class TestReasoningRouting:
    def test_reasoning_vocabulary(self, router):
        decision = router.route("compare these two approaches")
        assert decision.policy == RoutingPolicy.REASONING_COMPLEX
        assert decision.model_tier == ModelTier.LARGE

    def test_three_sentences_is_long(self, router):
        decision = router.route("I have a team. We meet weekly. Meetings run late.")
        assert decision.policy == RoutingPolicy.REASONING_COMPLEX

    def test_many_words_is_long(self, router):
        decision = router.route(" ".join(["word"] * 45))
        assert decision.policy == RoutingPolicy.REASONING_COMPLEX

    def test_many_chars_is_long(self, router):
        decision = router.route("a" * 260)
        assert decision.policy == RoutingPolicy.REASONING_COMPLEX


class TestSimpleQA:
    def test_short_factual_question(self, router):
        decision = router.route("what is the capital of France")
        assert decision.policy == RoutingPolicy.SIMPLE_QA
        assert decision.model_tier == ModelTier.SMALL

    def test_short_message_defaults_small(self, router):
        assert router.route("thanks a lot").model_tier == ModelTier.SMALL

    def test_medium_message_without_signals_is_default(self, router):
        decision = router.route(" ".join(["lorem"] * 30))
        assert decision.policy == RoutingPolicy.SIMPLE_QA
        assert decision.reason.startswith("Default")


class TestOverrideAndDegradation:
    def test_override_wins_over_greeting(self, router):
        decision = router.route("გამარჯობა", model_override="large")
        assert decision.policy == RoutingPolicy.MANUAL_OVERRIDE
        assert decision.model_tier == ModelTier.LARGE
        assert decision.overridden is True

    def test_unknown_override_is_ignored(self, router):
        decision = router.route("hi", model_override="huge")
        assert decision.policy == RoutingPolicy.GREETING

    @pytest.mark.parametrize("message", [None, 42, "", "   ", {"text": "hi"}])
    def test_unparseable_input_degrades_to_default(self, router, message):
        decision = router.route(message)
        assert decision == RoutingDecision(
            policy=RoutingPolicy.SIMPLE_QA,
            model_tier=ModelTier.SMALL,
            reason=decision.reason,
        )

    def test_deterministic(self, router):
        message = "how do I refactor this component?"
        assert router.route(message) == router.route(message)

    def test_custom_thresholds(self):
        router = QueryRouter(RouterConfig(greeting_max_words=1))
        assert router.route("hi there").policy != RoutingPolicy.GREETING


class TestStats:
    def test_stats_count_routes(self, router):
        router.route("hi")
        router.route("TypeError")
        stats = router.get_stats()
        assert stats["total_routes"] == 2
        assert stats["greeting_pct"] == 50
        assert stats["code_complex_pct"] == 50

    def test_singleton(self):
        assert get_query_router() is get_query_router()
