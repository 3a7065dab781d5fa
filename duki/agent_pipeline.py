"""Duki request pipeline orchestration and deterministic guards.

Role:
    Implements the end-to-end routing, retrieval, generation, safety guard, and
    history update flow for the product-support assistant. It owns the
    PipelineContext contract and all step-level decisions used by the step runner.

Pipeline data contract (core fields passed across steps):
    - intent, category: routing outputs from the intent cascade.
    - sticky_entities: model tokens from the message plus recent history.
    - retrieval, citations: ranked context blocks and their references.
    - generated_text: raw collaborator output, before the guard and formatting.
    - answer_text: the final reply; done marks that later steps must not touch it.

Step contracts:
    Intent Cascade:
        Commands, small talk, and contact short-circuit with a deterministic reply.
    Entity Extraction:
        Reads the message + recent history; sets sticky_entities.
    Retrieval:
        Embeds the question, ranks the corpus, and either passes context on or
        answers with the deterministic try-again / no-match message.
    Generation:
        Calls the generation collaborator; exhausted retries become apologies.
    Safety Guard:
        A fallback phrase or blank reply over non-empty context becomes the nudge.
    Formatting:
        Machine block and point-wise normalization of generated answers.
    Finalize:
        Always runs; appends the user and assistant turns to session history.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Protocol

from .config import Settings
from .contact import ContactDetails, extract_contact_details
from .corpus import CorpusSnapshot
from .entities import EntityIndexer
from .errors import (
    CorpusUnavailableError,
    EmbeddingError,
    GenerationError,
    GenerationOverloadedError,
    GenerationQuotaError,
    InvalidRequestError,
)
from .formatting import enforce_pointwise, format_machine_response
from .intents import IntentCascade, IntentRequest, category_hint, category_keywords
from .lazy import OnceCell
from .memory import MemoryManager
from .models import Citation, SessionTurn
from .prompt_loader import load_prompt, render_prompt
from .retrieval import HybridRetriever, RetrievalResult
from .step_runner import PipelineStep, StepRunner
from .utils import ResponseMode, clean_for_embedding, detect_response_mode, mask_contacts_in_text

logger = logging.getLogger("duki.agent")

SYSTEM_PROMPT_FILE = "answer_system.txt"
FALLBACK_PHRASES = ("please contact our sales team", "hamari sales team se")
SEGMENT_SCOPES = "Flagship/Single/Multi/Quilting/Perforation"

LANGUAGE_INSTRUCTIONS = {
    ResponseMode.ENGLISH: "Reply in clear, simple English.",
    ResponseMode.HINGLISH: (
        "Reply in Hinglish (Roman-script Hindi mixed with English), matching the user's tone. "
        "Keep model numbers and specifications exactly as written in the CONTEXT."
    ),
}
TRY_AGAIN_REPLY = {
    ResponseMode.ENGLISH: "I couldn't process that just now. Please try again in a moment.",
    ResponseMode.HINGLISH: "Abhi process nahi ho paaya. Thodi der mein dobara try kijiye.",
}
NUDGE_REPLY = {
    ResponseMode.ENGLISH: (
        "I found related information but couldn't pin down a clear answer. "
        "Could you be more specific, e.g. a model number or the feature you need?"
    ),
    ResponseMode.HINGLISH: (
        "Kuch related info mili, par clear answer nahi ban paaya. "
        "Thoda specific batayiye, jaise model number ya feature."
    ),
}
QUOTA_APOLOGY = {
    ResponseMode.ENGLISH: "We're receiving a lot of questions right now. Please try again in a minute.",
    ResponseMode.HINGLISH: "Abhi bahut saare sawal aa rahe hain. Ek minute baad dobara try kijiye.",
}
OVERLOAD_APOLOGY = {
    ResponseMode.ENGLISH: "Our assistant is busy at the moment. Please try again shortly.",
    ResponseMode.HINGLISH: "Assistant abhi busy hai. Thodi der baad dobara try kijiye.",
}
GENERIC_APOLOGY = {
    ResponseMode.ENGLISH: "Sorry, something went wrong while preparing the answer. Please try again.",
    ResponseMode.HINGLISH: "Maaf kijiye, jawab banate waqt kuch gadbad ho gayi. Dobara try kijiye.",
}


class Embedder(Protocol):
    def embed(self, text: str) -> List[float]: ...


class Generator(Protocol):
    def generate_content(self, contents: list, system_instruction: Optional[str] = None) -> str: ...


def no_match_reply(mode: ResponseMode, brand_name: str) -> str:
    if mode == ResponseMode.HINGLISH:
        return (
            f"Is topic par {brand_name} knowledge base mein clear info nahi mil rahi. "
            f"Thoda specific likhiye, jaise model number ya segment ({SEGMENT_SCOPES})."
        )
    return (
        f"I couldn't find clear info in the {brand_name} knowledge base. "
        f"Please be specific, e.g. a model name or segment ({SEGMENT_SCOPES})."
    )


def contains_fallback_phrase(text: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in FALLBACK_PHRASES)


@dataclass
class PipelineContext:
    """Mutable context passed through each pipeline step."""
    session_id: str
    user_id: str
    user_message: str
    is_first_turn: bool = False
    page_hints: Dict[str, str] = field(default_factory=dict)
    mode: ResponseMode = ResponseMode.ENGLISH
    history: List[SessionTurn] = field(default_factory=list)
    intent: str = "product"
    category: Optional[str] = None
    sticky_entities: FrozenSet[str] = frozenset()
    retrieval: Optional[RetrievalResult] = None
    citations: List[Citation] = field(default_factory=list)
    generated_text: Optional[str] = None
    answer_text: str = ""
    error_kind: Optional[str] = None
    done: bool = False
    thinking_logs: List[Dict[str, str]] = field(default_factory=list)

    def log(self, event: str, detail: str, status: str = "success") -> None:
        """Purpose: Append a structured trace entry for debugging and tests.
        Inputs/Outputs: Inputs are event, detail, status; no return value.
        Side Effects / State: Mutates thinking_logs and emits a logger line.
        Dependencies: Used by pipeline step methods.
        Failure Modes: None; always appends.
        If Removed: Tests cannot assert which route a request took.
        Testing Notes: A first-turn "hi" logs intent_cascade then finalize only.
        """
        self.thinking_logs.append({"event": event, "step": event, "detail": detail, "status": status})
        logger.info("session=%s step=%s status=%s detail=%s", self.session_id, event, status, detail)

    @property
    def context_blocks(self) -> List[str]:
        if not self.retrieval:
            return []
        return [candidate.text for candidate in self.retrieval.candidates if candidate.text]


class SupportAgent:
    def __init__(
        self,
        settings: Settings,
        corpus: Callable[[], CorpusSnapshot],
        embedder: Embedder,
        generator: Generator,
        memory: MemoryManager,
    ) -> None:
        """Purpose: Wire collaborators and build the ordered step runner.
        Inputs/Outputs: Inputs are Settings, a corpus accessor, the embedding and
            generation collaborators, and the memory manager; no return value.
        Side Effects / State: Reads the system prompt template from disk; the token
            index and contact cache are built lazily on first use.
        Dependencies: Uses StepRunner, IntentCascade, EntityIndexer, and HybridRetriever.
        Failure Modes: A missing prompt file raises FileNotFoundError at startup.
        If Removed: The ask endpoint has nothing to run.
        Testing Notes: Instantiate with fakes and an in-memory corpus snapshot.
        """
        self._settings = settings
        self._corpus = corpus
        self._embedder = embedder
        self._generator = generator
        self._memory = memory
        self._system_template = load_prompt(settings.prompts_dir / SYSTEM_PROMPT_FILE)
        self._default_contact = ContactDetails(
            phone=settings.contact_whatsapp,
            email=settings.contact_email,
            address=settings.contact_address,
        )
        self._contact: OnceCell[ContactDetails] = OnceCell(self._build_contact, name="contact_cache")
        self._indexer = EntityIndexer(corpus)
        self._retriever = HybridRetriever(
            corpus,
            self._indexer.get_index,
            top_k=settings.top_k,
            min_ok_score=settings.min_ok_score,
            margin=settings.score_margin,
            hybrid_bonus=settings.hybrid_bonus,
        )
        self._intents = IntentCascade(
            memory=memory,
            contact=self.contact_details,
            bot_name=settings.bot_name,
            brand_name=settings.brand_name,
            frontend_greets=settings.frontend_greets,
        )
        self._runner = StepRunner(
            steps=[
                PipelineStep("intent_cascade", self._step_intent_cascade),
                PipelineStep("entity_extraction", self._step_entity_extraction),
                PipelineStep("retrieval", self._step_retrieval),
                PipelineStep("generation", self._step_generation, skip_if=lambda ctx: ctx.retrieval is None),
                PipelineStep("safety_guard", self._step_safety_guard, skip_if=lambda ctx: ctx.generated_text is None),
                PipelineStep("formatting", self._step_formatting),
                PipelineStep("finalize", self._step_finalize, always_run=True),
            ]
        )

    @property
    def indexer(self) -> EntityIndexer:
        return self._indexer

    @property
    def step_names(self) -> List[str]:
        return self._runner.step_names

    def _build_contact(self) -> ContactDetails:
        return extract_contact_details(
            self._corpus().entries,
            default_phone=self._default_contact.phone,
            default_email=self._default_contact.email,
            default_address=self._default_contact.address,
        )

    def contact_details(self) -> ContactDetails:
        # Contact replies must work without a knowledge base; defaults are not cached.
        try:
            return self._contact.get()
        except CorpusUnavailableError:
            logger.warning("contact cache using defaults reason=corpus_unavailable")
            return self._default_contact

    def handle_message(
        self,
        session_id: str,
        user_id: str,
        user_message: str,
        is_first_turn: bool = False,
        page_hints: Optional[Mapping[str, str]] = None,
    ) -> PipelineContext:
        """Purpose: Run the full pipeline for a user message and return the context.
        Inputs/Outputs: Inputs are the resolved session and user ids, the message, the
            first-turn flag, and page hints; output is a populated PipelineContext.
        Side Effects / State: Reads history and appends this exchange to it; command
            intents may mutate user facts.
        Dependencies: Uses StepRunner.run and MemoryManager.
        Failure Modes: A blank message on a non-first turn raises InvalidRequestError
            before any read or write; CorpusUnavailableError propagates to the caller.
        If Removed: The ask endpoint cannot execute pipeline logic.
        Testing Notes: Send "hi" with is_first_turn and expect no collaborator calls.
        """
        message = (user_message or "").strip()
        if not message and not is_first_turn:
            raise InvalidRequestError("Missing 'message' or 'question'.")

        history_window = max(self._settings.history_turns, self._settings.entity_history_turns)
        context = PipelineContext(
            session_id=session_id,
            user_id=user_id,
            user_message=message,
            is_first_turn=is_first_turn,
            page_hints=dict(page_hints or {}),
            mode=detect_response_mode(message),
            history=self._memory.recent_turns(session_id, history_window),
        )
        logger.info(
            "session=%s question=%s mode=%s", session_id, mask_contacts_in_text(message), context.mode.value
        )
        self._runner.run(context)
        return context

    def _step_intent_cascade(self, context: PipelineContext) -> None:
        outcome = self._intents.run(
            IntentRequest(
                message=context.user_message,
                session_id=context.session_id,
                user_id=context.user_id,
                mode=context.mode,
                is_first_turn=context.is_first_turn,
                page_hints=context.page_hints,
            )
        )
        context.intent = outcome.intent
        context.category = outcome.category
        if outcome.short_circuit:
            context.answer_text = outcome.reply
            context.done = True
        context.log("intent_cascade", f"intent={outcome.intent} category={outcome.category or '-'}")

    def _step_entity_extraction(self, context: PipelineContext) -> None:
        window = self._settings.entity_history_turns
        history_texts = [turn.text for turn in context.history[-window:]] if window > 0 else []
        context.sticky_entities = self._indexer.extract(context.user_message, history_texts)
        context.log("entity_extraction", f"sticky={sorted(context.sticky_entities)}")

    def _step_retrieval(self, context: PipelineContext) -> None:
        """Purpose: Embed the question and select passable context blocks.
        Inputs/Outputs: Input is PipelineContext; sets retrieval and citations, or a
            deterministic answer_text with done=True.
        Side Effects / State: One embedding call; builds the token index on first use.
        Dependencies: Uses the Embedder collaborator and HybridRetriever.
        Failure Modes: Embedding failures answer "try again"; an empty corpus raises
            CorpusUnavailableError before the embedding call.
        If Removed: Nothing grounds the generated answer.
        Testing Notes: An embedder returning [] must not reach the ranker.
        """
        if self._corpus().is_empty:
            raise CorpusUnavailableError("Knowledge base has no entries")

        query = clean_for_embedding(context.user_message) or context.user_message
        try:
            vector = self._embedder.embed(query)
            if not vector:
                raise EmbeddingError("embedding result is empty")
        except EmbeddingError as exc:
            logger.warning("session=%s step=retrieval embedding_failed error=%s", context.session_id, exc)
            context.error_kind = "embedding"
            context.answer_text = TRY_AGAIN_REPLY[context.mode]
            context.done = True
            context.log("retrieval", "embedding unavailable", status="error")
            return

        result = self._retriever.retrieve(vector, context.sticky_entities, category_keywords(context.category))
        context.log("retrieval", f"passable={result.passable} reason={result.reason} top={result.top_score:.3f}")
        if not result.passable:
            context.answer_text = no_match_reply(context.mode, self._settings.brand_name)
            context.done = True
            return
        context.retrieval = result
        context.citations = [
            Citation(idx=i, id=candidate.entry.id, score=round(candidate.composite_score, 4))
            for i, candidate in enumerate(result.candidates, start=1)
        ]

    def _system_instruction(self, context: PipelineContext) -> str:
        hint = category_hint(context.category)
        return render_prompt(
            self._system_template,
            {
                "BOT_NAME": self._settings.bot_name,
                "BRAND_NAME": self._settings.brand_name,
                "SEGMENT_FOCUS": hint or f"Respond only from {self._settings.brand_name} context.",
                "CONTACT_FALLBACK": self.contact_details().render(ResponseMode.ENGLISH),
                "LANGUAGE_INSTRUCTION": LANGUAGE_INSTRUCTIONS[context.mode],
            },
        )

    def build_contents(self, context: PipelineContext) -> list:
        """Purpose: Assemble the chat contents sent to the generation collaborator.
        Inputs/Outputs: Input is PipelineContext; output is a list of role/parts dicts,
            recent history first and the grounded question last.
        Side Effects / State: Reads user facts.
        Dependencies: Uses MemoryManager.format_facts and the retrieval candidates.
        Failure Modes: None; empty sections are omitted.
        If Removed: Generation loses history, facts, and numbered context.
        Testing Notes: USER FACTS must be labeled as personalization only.
        """
        contents: list = []
        for turn in context.history[-self._settings.history_turns:] if self._settings.history_turns > 0 else []:
            # Empty parts are rejected by the API; a blank greeting turn carries nothing.
            if not turn.text.strip():
                continue
            role = "user" if turn.role == "user" else "model"
            contents.append({"role": role, "parts": [turn.text]})

        sections: List[str] = []
        if context.sticky_entities:
            sections.append(
                "MODELS IN FOCUS: "
                + ", ".join(token.upper() for token in sorted(context.sticky_entities))
                + " (prefer CONTEXT blocks that name these models)"
            )
        hint = category_hint(context.category)
        if hint:
            sections.append(f"CATEGORY HINT: {hint}")
        facts = self._memory.format_facts(context.user_id, self._settings.facts_in_prompt)
        if facts:
            sections.append(
                "USER FACTS (personalization only, never product specifications):\n" + facts
            )
        blocks = "\n\n".join(f"【{i}】 {text}" for i, text in enumerate(context.context_blocks, start=1))
        sections.append(f"QUESTION:\n{context.user_message}")
        sections.append(f"CONTEXT (knowledge base excerpts):\n{blocks}")
        sections.append(
            "Output:\n- Direct, grounded answer. No external info or guesses.\n"
            "- Keep it readable; lists and short lines preferred."
        )
        contents.append({"role": "user", "parts": ["\n\n".join(sections)]})
        return contents

    def _step_generation(self, context: PipelineContext) -> None:
        contents = self.build_contents(context)
        try:
            context.generated_text = self._generator.generate_content(
                contents,
                system_instruction=self._system_instruction(context),
            )
        except GenerationQuotaError:
            self._apologize(context, "quota", QUOTA_APOLOGY)
            return
        except GenerationOverloadedError:
            self._apologize(context, "overload", OVERLOAD_APOLOGY)
            return
        except GenerationError:
            self._apologize(context, "generation", GENERIC_APOLOGY)
            return
        context.log("generation", f"chars={len(context.generated_text or '')}")

    def _apologize(self, context: PipelineContext, kind: str, replies: Mapping[ResponseMode, str]) -> None:
        logger.warning("session=%s step=generation exhausted kind=%s", context.session_id, kind)
        context.error_kind = kind
        context.answer_text = replies[context.mode]
        context.done = True
        context.log("generation", f"exhausted kind={kind}", status="error")

    def _step_safety_guard(self, context: PipelineContext) -> None:
        """Purpose: Keep fallback phrases and blank replies away from grounded turns.
        Inputs/Outputs: Input is PipelineContext; sets answer_text.
        Side Effects / State: Marks done when the reply is replaced.
        Dependencies: Uses contains_fallback_phrase and the contact cache.
        Failure Modes: None; deterministic replacement only.
        If Removed: Users see "contact sales" although the answer was in context.
        Testing Notes: A generator echoing the fallback over non-empty context yields
            the nudge and no contact line.
        """
        reply = (context.generated_text or "").strip()
        has_context = bool(context.context_blocks)
        if not reply:
            if has_context:
                context.answer_text = NUDGE_REPLY[context.mode]
            else:
                context.answer_text = self.contact_details().render(context.mode)
            context.done = True
            context.log("safety_guard", "replaced=empty_reply", status="warning")
            return
        if has_context and contains_fallback_phrase(reply):
            context.answer_text = NUDGE_REPLY[context.mode]
            context.done = True
            context.log("safety_guard", "replaced=fallback_phrase", status="warning")
            return
        context.answer_text = reply
        context.log("safety_guard", "passed")

    def _step_formatting(self, context: PipelineContext) -> None:
        context.answer_text = enforce_pointwise(format_machine_response(context.answer_text))

    def _step_finalize(self, context: PipelineContext) -> None:
        """Purpose: Persist this exchange to session history.
        Inputs/Outputs: Input is PipelineContext; no return value.
        Side Effects / State: Appends one user turn and one assistant turn.
        Dependencies: Uses MemoryManager.record_exchange.
        Failure Modes: Store errors propagate to the request boundary.
        If Removed: History commands and sticky entities lose earlier turns.
        Testing Notes: Every branch, deterministic or generated, appends exactly two turns.
        """
        self._memory.record_exchange(context.session_id, context.user_message, context.answer_text)
        context.log("finalize", f"intent={context.intent} chars={len(context.answer_text)}")
