"""Deterministic intent cascade evaluated before any vector or generation call.

Rules run top to bottom and the first match wins: explicit commands, small talk,
contact, then the (non-short-circuit) product category. Only the category rule
lets the message continue into retrieval.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .contact import ContactDetails
from .memory import MemoryManager
from .utils import ResponseMode, contains_any_word, normalize_text

logger = logging.getLogger("duki.intents")

HISTORY_PREVIEW_LIMIT = 5
FIRST_TURN_EMOJI = ("\U0001F44B", "\U0001F64F")

HISTORY_RE = re.compile(
    r"^(?:/history|history|show(?: me)? (?:my )?history|what did i ask(?: you)?(?: before| earlier| so far)?)\s*[?.!]*$",
    re.IGNORECASE,
)
MEMORY_DEBUG_RE = re.compile(
    r"^(?:/memory|memory|show(?: me)? (?:my )?memory|what do you (?:remember|know)(?: about me)?)\s*[?.!]*$",
    re.IGNORECASE,
)
MEMORY_RESET_RE = re.compile(
    r"^(?:/forget|forget me|forget everything|(?:reset|clear) (?:my )?memory)\s*[?.!]*$",
    re.IGNORECASE,
)
REMEMBER_RE = re.compile(r"^(?:please\s+)?remember\s+(?:that\s+)?(?P<statement>\S.*)$", re.IGNORECASE | re.DOTALL)

SHORT_TOKENS: Dict[str, str] = {
    "hi": "hello", "hii": "hello", "hey": "hello", "hello": "hello", "yo": "hello",
    "namaste": "hello", "gm": "hello",
    "ty": "thanks", "thx": "thanks", "tq": "thanks", "thanks": "thanks",
    "bye": "bye", "cya": "bye",
    "ok": "ack", "okay": "ack", "k": "ack", "kk": "ack",
}
SMALL_TALK_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    (
        "hello",
        re.compile(
            r"^(?:hi+|hello+|hey+|namaste|namaskar|good (?:morning|afternoon|evening))"
            r"(?: (?:there|duki|team|sir|madam|bot))?$"
        ),
    ),
    (
        "thanks",
        re.compile(
            r"^(?:thanks?(?: you)?|thank u|many thanks|shukriya|dhanyavaa?d)"
            r"(?: (?:so much|a lot|very much))?(?: (?:duki|sir|madam|team))?$"
        ),
    ),
    ("bye", re.compile(r"^(?:bye+|good ?bye|see you(?: later| soon)?|take care|good night)$")),
    (
        "ack",
        re.compile(r"^(?:ok(?:ay)?|got it|alright|all right|fine|cool|great|noted|sure|theek hai|thik hai|acha|accha)$"),
    ),
    (
        "help",
        re.compile(r"^(?:help|help me|about|about you|what can you do|who are you|what are you|what do you do)$"),
    ),
)

# "number" and "support" only count inside these phrases.
CONTACT_KEYWORDS = (
    "contact", "phone", "phone number", "contact number", "mobile number", "whatsapp number",
    "call", "email", "e-mail", "mail", "address", "customer support", "support team",
    "tech support", "after sales support", "branch", "office", "whatsapp", "reach you",
    "location", "sales team",
)


@dataclass(frozen=True)
class Category:
    name: str
    keywords: Tuple[str, ...]
    hint: str


CATEGORIES: Tuple[Category, ...] = (
    Category(
        name="embroidery",
        keywords=(
            "embroidery", "embroider", "flagship", "single head", "single-head", "multi head",
            "multi-head", "multihead", "sequin", "chenille", "needle", "needles",
        ),
        hint="Focus on embroidery (Flagship, Single-head, Multi-head).",
    ),
    Category(
        name="quilting",
        keywords=("quilting", "quilt", "quilts", "mattress", "padding", "comforter", "bedspread"),
        hint="Focus on quilting machines and stitching applications.",
    ),
    Category(
        name="perforation",
        keywords=("perforation", "perforating", "punching", "punch", "leather", "foam"),
        hint="Focus on perforation and punching machines for leather or foam.",
    ),
)
CATEGORY_BY_NAME: Dict[str, Category] = {category.name: category for category in CATEGORIES}


@dataclass
class IntentRequest:
    """Everything a rule may look at. Built once per message by the pipeline."""
    message: str
    session_id: str
    user_id: str
    mode: ResponseMode = ResponseMode.ENGLISH
    is_first_turn: bool = False
    page_hints: Mapping[str, str] = field(default_factory=dict)
    normalized: str = ""

    def __post_init__(self) -> None:
        if not self.normalized:
            self.normalized = normalize_text(self.message)


@dataclass
class IntentOutcome:
    intent: str
    reply: str = ""
    short_circuit: bool = False
    category: Optional[str] = None


@dataclass(frozen=True)
class IntentRule:
    name: str
    predicate: Callable[[IntentRequest], bool]
    handler: Callable[[IntentRequest], IntentOutcome]


def small_talk_kind(message: str, is_first_turn: bool = False) -> Optional[str]:
    """Purpose: Classify a whole message as one small-talk kind.
    Inputs/Outputs: Input is the raw message; output is hello/thanks/bye/ack/help or None.
    Side Effects / State: None.
    Dependencies: Uses SHORT_TOKENS and SMALL_TALK_PATTERNS over normalized text.
    Failure Modes: Greeting plus further content ("hi, price of DY-1201") returns None.
    If Removed: Greetings reach retrieval and spend an embedding call.
    Testing Notes: "Hi!!" -> hello; "hi what's your phone number" -> None.
    """
    # Anchored to the whole message; trailing punctuation and emoji are ignored.
    stripped = normalize_text(message).strip(" .-_/+")
    if not stripped:
        raw = (message or "").strip()
        if raw and any(emoji in raw for emoji in FIRST_TURN_EMOJI):
            return "hello"
        return "hello" if is_first_turn and not raw else None
    if stripped in SHORT_TOKENS:
        return SHORT_TOKENS[stripped]
    for kind, pattern in SMALL_TALK_PATTERNS:
        if pattern.match(stripped):
            return kind
    return None


def is_contact_request(normalized: str) -> bool:
    return contains_any_word(normalized, CONTACT_KEYWORDS)


def detect_category(normalized: str, page_hints: Optional[Mapping[str, str]] = None) -> Optional[Category]:
    """Purpose: Pick the product division a question is about.
    Inputs/Outputs: Inputs are normalized text and request page hints; output is a
        Category or None.
    Side Effects / State: None.
    Dependencies: Uses CATEGORIES and contains_any_word.
    Failure Modes: Ties go to the earlier category in CATEGORIES.
    If Removed: The lexical fallback and the segment focus line never fire.
    Testing Notes: pageHints {"segment": "quilting"} overrides "embroidery" in the text.
    """
    # A known page segment from the widget wins over keyword detection.
    segment = ((page_hints or {}).get("segment") or "").strip().lower()
    if segment in CATEGORY_BY_NAME:
        return CATEGORY_BY_NAME[segment]
    best: Optional[Category] = None
    best_hits = 0
    for category in CATEGORIES:
        hits = sum(1 for keyword in category.keywords if contains_any_word(normalized, [keyword]))
        if hits > best_hits:
            best, best_hits = category, hits
    return best


class IntentCascade:
    """Ordered rule list; first match wins and no rule is re-evaluated."""

    def __init__(
        self,
        memory: MemoryManager,
        contact: Callable[[], ContactDetails],
        bot_name: str = "Duki",
        brand_name: str = "Duke-Jia",
        frontend_greets: bool = True,
    ) -> None:
        """Purpose: Bind collaborators and build the ordered rule list.
        Inputs/Outputs: Inputs are the memory manager, a contact-cache accessor, and
            greeting settings; no return value.
        Side Effects / State: None at init; command rules mutate memory when run.
        Dependencies: Uses MemoryManager and ContactDetails.render.
        Failure Modes: None at init.
        If Removed: Every message pays for embedding and generation.
        Testing Notes: Inspect rule_names to pin the evaluation order.
        """
        self._memory = memory
        self._contact = contact
        self._bot_name = bot_name
        self._brand_name = brand_name
        self._frontend_greets = frontend_greets
        self._rules: List[IntentRule] = [
            IntentRule("command_history", self._matches(HISTORY_RE), self._handle_history),
            IntentRule("command_memory_debug", self._matches(MEMORY_DEBUG_RE), self._handle_memory_debug),
            IntentRule("command_memory_reset", self._matches(MEMORY_RESET_RE), self._handle_memory_reset),
            IntentRule("command_remember", self._matches(REMEMBER_RE), self._handle_remember),
            IntentRule(
                "small_talk",
                lambda req: small_talk_kind(req.message, req.is_first_turn) is not None,
                self._handle_small_talk,
            ),
            IntentRule("contact", lambda req: is_contact_request(req.normalized), self._handle_contact),
            IntentRule(
                "category",
                lambda req: detect_category(req.normalized, req.page_hints) is not None,
                self._handle_category,
            ),
        ]

    @property
    def rule_names(self) -> List[str]:
        return [rule.name for rule in self._rules]

    @staticmethod
    def _matches(pattern: "re.Pattern[str]") -> Callable[[IntentRequest], bool]:
        return lambda req: bool(pattern.match(req.message.strip()))

    def run(self, request: IntentRequest) -> IntentOutcome:
        for rule in self._rules:
            if rule.predicate(request):
                outcome = rule.handler(request)
                logger.info(
                    "session=%s step=intent_cascade rule=%s intent=%s short_circuit=%s",
                    request.session_id,
                    rule.name,
                    outcome.intent,
                    outcome.short_circuit,
                )
                return outcome
        logger.info("session=%s step=intent_cascade rule=none intent=product", request.session_id)
        return IntentOutcome(intent="product")

    def _handle_history(self, request: IntentRequest) -> IntentOutcome:
        questions = [turn.text for turn in self._memory.all_turns(request.session_id) if turn.role == "user" and turn.text]
        recent = questions[-HISTORY_PREVIEW_LIMIT:]
        hinglish = request.mode == ResponseMode.HINGLISH
        if not recent:
            reply = (
                "Is session mein abhi tak koi sawal nahi poocha gaya."
                if hinglish
                else "You haven't asked me anything yet in this session."
            )
        else:
            lead = "Aapke recent sawal:" if hinglish else "Your recent questions:"
            reply = "\n".join([lead, *(f"{i}. {text}" for i, text in enumerate(recent, start=1))])
        return IntentOutcome(intent="command_history", reply=reply, short_circuit=True)

    def _handle_memory_debug(self, request: IntentRequest) -> IntentOutcome:
        facts = self._memory.facts(request.user_id)
        if not facts:
            reply = (
                "I don't have anything saved about you yet. "
                'Say "remember my city is Chennai" to add something.'
            )
        else:
            reply = "Here's what I remember about you:\n" + "\n".join(f"- {f.key}: {f.value}" for f in facts)
        return IntentOutcome(intent="command_memory_debug", reply=reply, short_circuit=True)

    def _handle_memory_reset(self, request: IntentRequest) -> IntentOutcome:
        removed = self._memory.forget(request.user_id)
        if removed:
            reply = f"Done. I've cleared {removed} saved detail{'s' if removed != 1 else ''} about you."
        else:
            reply = "There was nothing saved about you, so there is nothing to clear."
        return IntentOutcome(intent="command_memory_reset", reply=reply, short_circuit=True)

    def _handle_remember(self, request: IntentRequest) -> IntentOutcome:
        match = REMEMBER_RE.match(request.message.strip())
        statement = match.group("statement") if match else request.message
        fact = self._memory.remember(request.user_id, statement)
        if request.mode == ResponseMode.HINGLISH:
            reply = f"Theek hai, yaad rakhunga: {fact.key} = {fact.value}."
        elif fact.key == "note":
            reply = f"Got it. I'll remember that: {fact.value}."
        else:
            reply = f"Got it. I'll remember your {fact.key.replace('_', ' ')}: {fact.value}."
        return IntentOutcome(intent="command_remember", reply=reply, short_circuit=True)

    def _handle_small_talk(self, request: IntentRequest) -> IntentOutcome:
        kind = small_talk_kind(request.message, request.is_first_turn) or "hello"
        if kind == "hello" and request.is_first_turn and self._frontend_greets:
            reply = minimal_assist(request.mode)
        elif kind == "help":
            reply = self.help_message()
        else:
            reply = small_talk_reply(kind, request.mode)
        return IntentOutcome(intent=f"small_talk:{kind}", reply=reply, short_circuit=True)

    def _handle_contact(self, request: IntentRequest) -> IntentOutcome:
        return IntentOutcome(intent="contact", reply=self._contact().render(request.mode), short_circuit=True)

    def _handle_category(self, request: IntentRequest) -> IntentOutcome:
        category = detect_category(request.normalized, request.page_hints)
        return IntentOutcome(intent="category", category=category.name if category else None)

    def help_message(self) -> str:
        contact = self._contact()
        lines = [
            f"**Hi! I'm {self._bot_name}, the {self._brand_name} Assistant**",
            "",
            "I help you explore our main divisions:",
            "• **Embroidery**: Flagship, Single-Head & Multi-Head",
            "• **Quilting**: Computerized & Mechanical",
            "• **Perforation**: Leather / Foam / Technical Fabrics",
            "",
            "**What I can do**",
            "• Recommend machines by your use-case",
            "• Share model specs & applications",
            "• Connect you to sales when needed",
            "",
            "**Sales Contact**",
        ]
        if contact.phone:
            lines.append(f"WhatsApp: {contact.phone}")
        if contact.email:
            lines.append(f"Email: {contact.email}")
        return "\n".join(lines)


SMALL_TALK_REPLIES: Dict[ResponseMode, Dict[str, str]] = {
    ResponseMode.ENGLISH: {
        "hello": "Hi! How can I help today?",
        "thanks": "You're welcome! Anything else I can do?",
        "bye": "Take care! I'm here if you need me.",
        "ack": "Great! Let me know if you have any other questions.",
    },
    ResponseMode.HINGLISH: {
        "hello": "Namaste \U0001F44B Kaise madad kar sakta hoon?",
        "thanks": "Shukriya! Aur kuch chahiye to pooch lijiye.",
        "bye": "Theek hai, milte hain! Jab chahein ping kar dijiyega.",
        "ack": "Theek hai! Aur kuch poochna ho to bataiye.",
    },
}


def minimal_assist(mode: ResponseMode) -> str:
    return "Kaise madad kar sakta hoon?" if mode == ResponseMode.HINGLISH else "How can I assist you?"


def small_talk_reply(kind: str, mode: ResponseMode) -> str:
    bank = SMALL_TALK_REPLIES[mode]
    return bank.get(kind, bank["hello"])


def category_keywords(name: Optional[str]) -> Sequence[str]:
    category = CATEGORY_BY_NAME.get(name or "")
    return category.keywords if category else ()


def category_hint(name: Optional[str]) -> str:
    category = CATEGORY_BY_NAME.get(name or "")
    return category.hint if category else ""
