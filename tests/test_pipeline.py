"""
Tests for the SupportAgent request pipeline.
Collaborators are MagicMocks; the corpus is the in-memory fixture from conftest.
"""

import pytest

from duki.agent_pipeline import (
    GENERIC_APOLOGY,
    NUDGE_REPLY,
    OVERLOAD_APOLOGY,
    QUOTA_APOLOGY,
    TRY_AGAIN_REPLY,
    SupportAgent,
    contains_fallback_phrase,
    no_match_reply,
)
from duki.corpus import CorpusLoader, CorpusSnapshot
from duki.errors import (
    CorpusUnavailableError,
    EmbeddingError,
    GenerationError,
    GenerationOverloadedError,
    GenerationQuotaError,
    InvalidRequestError,
)
from duki.utils import ResponseMode


def ask(agent, message, session="s1", user="u1", **kwargs):
    return agent.handle_message(session, user, message, **kwargs)


# ─────────────────────────────────────────────────────────────
# Deterministic routes
# ─────────────────────────────────────────────────────────────

class TestDeterministicRoutes:

    def test_first_turn_hi_is_minimal_assist_without_collaborators(self, agent, embedder, generator, memory):
        context = ask(agent, "hi", is_first_turn=True)
        assert context.answer_text == "How can I assist you?"
        embedder.embed.assert_not_called()
        generator.generate_content.assert_not_called()
        turns = memory.all_turns("s1")
        assert [(t.role, t.text) for t in turns] == [("user", "hi"), ("assistant", "How can I assist you?")]

    def test_first_turn_trace_only_has_cascade_and_finalize(self, agent):
        context = ask(agent, "hi", is_first_turn=True)
        assert [entry["step"] for entry in context.thinking_logs] == ["intent_cascade", "finalize"]

    def test_first_turn_empty_message_greets(self, agent, memory):
        context = ask(agent, "", is_first_turn=True)
        assert context.answer_text == "How can I assist you?"
        assert len(memory.all_turns("s1")) == 2

    def test_empty_message_on_later_turn_is_rejected_without_history_write(self, agent, memory):
        with pytest.raises(InvalidRequestError):
            ask(agent, "   ", is_first_turn=False)
        assert memory.all_turns("s1") == []

    def test_remember_city_stores_fact_and_acknowledges(self, agent, memory, embedder, generator):
        context = ask(agent, "remember my city is Chennai")
        facts = memory.facts("u1")
        assert [(f.key, f.value, f.source) for f in facts] == [("city", "Chennai", "user")]
        assert "Chennai" in context.answer_text
        assert context.intent == "command_remember"
        embedder.embed.assert_not_called()
        generator.generate_content.assert_not_called()
        assert len(memory.all_turns("s1")) == 2

    def test_request_log_masks_contact_values(self, agent, caplog):
        with caplog.at_level("INFO", logger="duki.agent"):
            ask(agent, "remember my phone is +91 98765 43210", session="s2")
        assert "session=s2 question=remember my phone is ***210 mode=english" in caplog.text
        assert "98765" not in caplog.text

    def test_remembered_fact_reaches_prompt_as_personalization(self, agent, generator):
        ask(agent, "remember my city is Chennai")
        ask(agent, "What is the embroidery area of DY-1201?")
        contents = generator.generate_content.call_args[0][0]
        final_prompt = contents[-1]["parts"][0]
        assert "USER FACTS (personalization only" in final_prompt
        assert "- city: Chennai" in final_prompt

    def test_contact_question_uses_corpus_contact_without_generation(self, agent, generator):
        context = ask(agent, "hi, what's your phone number")
        assert context.intent == "contact"
        assert "+91 98765 43210" in context.answer_text
        assert "sales@dukejia.example" in context.answer_text
        generator.generate_content.assert_not_called()


# ─────────────────────────────────────────────────────────────
# Grounded answers
# ─────────────────────────────────────────────────────────────

class TestGroundedAnswer:

    def test_answer_is_formatted_and_cited(self, agent, generator):
        context = ask(agent, "What is the embroidery area of DY-1201?")
        assert context.answer_text.startswith("**DY-1201: Embroidery Machine**")
        assert "Embroidery Area: 400 x 500 mm" in context.answer_text
        assert [c.id for c in context.citations] == ["e1", "e4", "e2"]
        assert [c.idx for c in context.citations] == [1, 2, 3]
        generator.generate_content.assert_called_once()

    def test_prompt_has_numbered_context_and_system_instruction(self, agent, generator):
        ask(agent, "What is the embroidery area of DY-1201?")
        args, kwargs = generator.generate_content.call_args
        final_prompt = args[0][-1]["parts"][0]
        assert "【1】 The DY-1201 is a single-head embroidery machine" in final_prompt
        assert "MODELS IN FOCUS: DY-1201" in final_prompt
        assert "CATEGORY HINT: Focus on embroidery" in final_prompt
        assert "You are Duki" in kwargs["system_instruction"]
        assert "Please contact our sales team at" in kwargs["system_instruction"]

    def test_embedding_query_drops_stop_words(self, agent, embedder):
        ask(agent, "What is the embroidery area of DY-1201?")
        embedder.embed.assert_called_once_with("embroidery area dy-1201")

    def test_history_becomes_chat_contents(self, agent, generator):
        ask(agent, "What is the embroidery area of DY-1201?")
        ask(agent, "How many needles does it have?")
        contents = generator.generate_content.call_args[0][0]
        assert [c["role"] for c in contents] == ["user", "model", "user"]

    def test_blank_greeting_turn_is_left_out_of_contents(self, agent, generator):
        ask(agent, "", is_first_turn=True)
        ask(agent, "What is the embroidery area of DY-1201?")
        contents = generator.generate_content.call_args[0][0]
        assert [c["role"] for c in contents] == ["model", "user"]
        assert all(part.strip() for c in contents for part in c["parts"])

    def test_sticky_entity_carries_over_from_history(self, agent):
        ask(agent, "Tell me about DY-CS3000")
        context = ask(agent, "and its price?")
        assert "dy-cs3000" in context.sticky_entities


# ─────────────────────────────────────────────────────────────
# Safety guard
# ─────────────────────────────────────────────────────────────

class TestSafetyGuard:

    def test_fallback_phrase_over_context_becomes_nudge(self, agent, generator):
        generator.generate_content.return_value = (
            "Please contact our sales team at\nWhatsApp: +91 93505 13789\nEmail: Embroidery@grouphca.com"
        )
        context = ask(agent, "What is the embroidery area of DY-1201?")
        assert context.answer_text == NUDGE_REPLY[ResponseMode.ENGLISH]
        assert not contains_fallback_phrase(context.answer_text)
        assert "WhatsApp" not in context.answer_text

    def test_blank_reply_over_context_becomes_nudge(self, agent, generator):
        generator.generate_content.return_value = "   "
        context = ask(agent, "What is the embroidery area of DY-1201?")
        assert context.answer_text == NUDGE_REPLY[ResponseMode.ENGLISH]

    def test_guarded_reply_is_still_recorded(self, agent, generator, memory):
        generator.generate_content.return_value = ""
        ask(agent, "What is the embroidery area of DY-1201?")
        turns = memory.all_turns("s1")
        assert turns[-1].text == NUDGE_REPLY[ResponseMode.ENGLISH]


# ─────────────────────────────────────────────────────────────
# Degraded collaborators
# ─────────────────────────────────────────────────────────────

class TestDegradedCollaborators:

    def test_embedding_failure_returns_try_again(self, agent, embedder, generator, memory):
        embedder.embed.side_effect = EmbeddingError("down")
        context = ask(agent, "What is the embroidery area of DY-1201?")
        assert context.answer_text == TRY_AGAIN_REPLY[ResponseMode.ENGLISH]
        assert context.error_kind == "embedding"
        generator.generate_content.assert_not_called()
        assert len(memory.all_turns("s1")) == 2

    def test_empty_vector_is_never_ranked(self, agent, embedder, generator):
        embedder.embed.return_value = []
        context = ask(agent, "What is the embroidery area of DY-1201?")
        assert context.answer_text == TRY_AGAIN_REPLY[ResponseMode.ENGLISH]
        assert context.retrieval is None
        generator.generate_content.assert_not_called()

    @pytest.mark.parametrize(
        "error, replies",
        [
            (GenerationQuotaError("quota"), QUOTA_APOLOGY),
            (GenerationOverloadedError("busy"), OVERLOAD_APOLOGY),
            (GenerationError("boom"), GENERIC_APOLOGY),
        ],
    )
    def test_generation_failures_map_to_distinct_apologies(self, agent, generator, error, replies):
        generator.generate_content.side_effect = error
        context = ask(agent, "What is the embroidery area of DY-1201?")
        assert context.answer_text == replies[ResponseMode.ENGLISH]

    def test_no_match_returns_guidance(self, agent, embedder, generator):
        embedder.embed.return_value = [-1.0, -1.0, -1.0]
        context = ask(agent, "tell me about warranty terms")
        assert context.answer_text == no_match_reply(ResponseMode.ENGLISH, "Duke-Jia")
        assert context.citations == []
        generator.generate_content.assert_not_called()

    def test_hinglish_no_match_guidance(self, agent, embedder):
        embedder.embed.return_value = [-1.0, -1.0, -1.0]
        context = ask(agent, "warranty ka kya scene hai yaar")
        assert context.mode == ResponseMode.HINGLISH
        assert context.answer_text == no_match_reply(ResponseMode.HINGLISH, "Duke-Jia")


# ─────────────────────────────────────────────────────────────
# Knowledge base availability
# ─────────────────────────────────────────────────────────────

class TestKnowledgeBaseUnavailable:

    def _agent(self, settings, corpus, embedder, generator, memory):
        return SupportAgent(settings=settings, corpus=corpus, embedder=embedder, generator=generator, memory=memory)

    def test_missing_corpus_raises_and_skips_history(self, settings, tmp_path, embedder, generator, memory):
        agent = self._agent(settings, CorpusLoader(tmp_path / "missing.json").load, embedder, generator, memory)
        with pytest.raises(CorpusUnavailableError):
            ask(agent, "What is the embroidery area of DY-1201?")
        embedder.embed.assert_not_called()
        assert memory.all_turns("s1") == []

    def test_empty_corpus_raises_before_embedding(self, settings, embedder, generator, memory):
        empty = CorpusSnapshot.empty("index.json")
        agent = self._agent(settings, lambda: empty, embedder, generator, memory)
        with pytest.raises(CorpusUnavailableError):
            ask(agent, "What is the embroidery area of DY-1201?")
        embedder.embed.assert_not_called()

    def test_small_talk_and_contact_still_work(self, settings, tmp_path, embedder, generator, memory):
        agent = self._agent(settings, CorpusLoader(tmp_path / "missing.json").load, embedder, generator, memory)
        assert ask(agent, "hi", is_first_turn=True).answer_text == "How can I assist you?"
        contact = ask(agent, "what is your email?")
        assert "Embroidery@grouphca.com" in contact.answer_text


class TestStepOrder:

    def test_steps_are_registered_in_pipeline_order(self, agent):
        assert agent.step_names == [
            "intent_cascade",
            "entity_extraction",
            "retrieval",
            "generation",
            "safety_guard",
            "formatting",
            "finalize",
        ]
