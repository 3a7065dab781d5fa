import re
import unicodedata
from enum import Enum
from typing import Iterable, List

DEVANAGARI_RE = re.compile(r"[\u0900-\u097F]")
EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_RE = re.compile(r"(?<!\w)(\+?\d[\d\s\-()]{8,16}\d)(?!\w)")
CHAT_CUE_RE = re.compile(r"[:)(!?]{2,}|\.{3,}|😂|👍|🙏")

EN_STOP = frozenset(
    """
    a about above after again against all am an and any are aren't as at
    be because been before being below between both but by
    can't cannot could couldn't did didn't do does doesn't doing don't down during
    each few for from further
    had hadn't has hasn't have haven't having he he'd he'll he's her here here's hers herself
    him himself his how how's
    i i'd i'll i'm i've if in into is isn't it it's its itself let's
    me more most mustn't my myself
    no nor not of off on once only or other ought our ours ourselves out over own
    same shan't she she'd she'll she's should shouldn't so some such
    than that that's the their theirs them themselves then there there's these they they'd
    they'll they're they've this those through to too
    under until up very
    was wasn't we we'd we'll we're we've were weren't what what's when when's where where's
    which while who who's whom why why's with won't would wouldn't
    you you'd you'll you're you've your yours yourself yourselves
    """.split()
)

# Domain words that survive stop-word removal.
PROTECTED_TOKENS = frozenset(
    [
        "hari", "chand", "anand", "hca", "duke", "duke-jia", "dukejia", "duki",
        "contact", "whatsapp", "email", "brand", "website", "brochure",
        "embroidery", "quilting", "perforation", "sewing", "pattern", "machine", "machines",
        "spec", "specs", "specification", "specifications", "model", "models",
        "single", "multi", "flagship", "application", "applications", "technical",
        "leather", "mattress", "garment", "automation",
        "head", "heads", "needle", "needles", "area", "mm", "configuration",
        "description", "details",
    ]
)

# Roman-script Hindi markers. English-ambiguous words ("the", "me") are left out.
HINGLISH_MARKERS = (
    "hai", "hain", "tha", "thi", "kya", "kyu", "kyun", "kyunki", "kisi", "kis", "kaun", "kab",
    "kaha", "kahaan", "kaise", "nahi", "nahin", "ka", "ki", "ke", "mein", "mai", "mei", "hum",
    "ap", "aap", "tum", "kr", "kar", "karo", "karna", "chahiye", "bhi", "sirf", "jaldi",
    "kitna", "ho", "hoga", "hogaya", "krdo", "pls", "plz", "yaar", "shukriya",
    "dhanyavaad", "dhanyavad", "batao", "bataiye", "wala", "wali",
)


class ResponseMode(str, Enum):
    ENGLISH = "english"
    HINGLISH = "hinglish"


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form text for stable matching in the pipeline.
    Inputs/Outputs: Input is a raw string; output is lowercase text with whitespace
        collapsed and only letters, digits, Devanagari, and -_/.+ kept.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata and regex; called by intents, entities, and retrieval.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Cascade and keyword matching miss punctuated or mixed-width input.
    Testing Notes: Validate "Hi!!  THERE" -> "hi there" and Devanagari is preserved.
    """
    # NFKC keeps Devanagari vowel signs intact while folding width variants.
    if not text:
        return ""
    lowered = unicodedata.normalize("NFKC", text).lower()
    cleaned = re.sub(r"[^a-z0-9\u0900-\u097F\s\-_/.+]+", " ", lowered)
    return re.sub(r"\s+", " ", cleaned).strip()


def clean_for_embedding(text: str) -> str:
    """Purpose: Build the query text sent to the embedding collaborator.
    Inputs/Outputs: Input is the user question; output is a lowercase string with
        punctuation and English stop-words removed, protected domain words kept.
    Side Effects / State: None; pure function.
    Dependencies: Uses EN_STOP and PROTECTED_TOKENS.
    Failure Modes: A question made only of stop-words yields an empty string; callers
        fall back to the raw question.
    If Removed: Embeddings are dominated by filler words and similarity drops.
    Testing Notes: "What is the DY-1201 area?" -> "dy-1201 area".
    """
    # Strip punctuation (hyphens kept for model codes), then drop stop-words.
    lowered = (text or "").lower()
    stripped = re.sub(r"[^a-z0-9\u0900-\u097F\s-]", " ", lowered)
    tokens: List[str] = []
    for token in stripped.split():
        if token in PROTECTED_TOKENS or token not in EN_STOP:
            tokens.append(token)
    return " ".join(tokens).strip()


def detect_response_mode(text: str) -> ResponseMode:
    """Purpose: Guess whether the user writes Hinglish or English.
    Inputs/Outputs: Input is raw text; output is a ResponseMode.
    Side Effects / State: None; pure scoring function.
    Dependencies: Uses HINGLISH_MARKERS and CHAT_CUE_RE.
    Failure Modes: Heuristic; short Hinglish messages with one marker read as English.
    If Removed: Replies and prompt instructions ignore the user's register.
    Testing Notes: "price kya hai" -> HINGLISH; "what is the price" -> ENGLISH.
    """
    # Devanagari is decisive; otherwise score whole-word markers plus chat cues.
    lowered = (text or "").lower()
    if DEVANAGARI_RE.search(lowered):
        return ResponseMode.HINGLISH
    words = set(re.findall(r"[a-z]+", lowered))
    score = float(sum(1 for marker in HINGLISH_MARKERS if marker in words))
    if CHAT_CUE_RE.search(lowered):
        score += 0.5
    return ResponseMode.HINGLISH if score >= 2 else ResponseMode.ENGLISH


def mask_contact_value(value: object) -> str:
    """Purpose: Mask phone or e-mail values for safe logging.
    Inputs/Outputs: Input is any value; output keeps only the last digits or the domain.
    Side Effects / State: None.
    Dependencies: Uses regex digit extraction.
    Failure Modes: Short non-numeric inputs yield a generic mask.
    If Removed: Logs may expose contact data mined from the corpus or typed by users.
    Testing Notes: Verify outputs for phones, e-mails, and short strings.
    """
    # Keep the e-mail domain or the last three digits only.
    if value is None:
        return ""
    text = str(value)
    if "@" in text:
        return "***@" + text.split("@", 1)[1]
    digits = re.findall(r"\d", text)
    if len(digits) < 4:
        return "***"
    return "***" + "".join(digits[-3:])


def mask_contacts_in_text(text: str) -> str:
    # Free text with every e-mail and phone-like run masked in place.
    if not text:
        return ""
    masked = EMAIL_RE.sub(lambda m: mask_contact_value(m.group(0)), text)
    return PHONE_RE.sub(lambda m: mask_contact_value(m.group(0)), masked)


def contains_any_word(normalized: str, words: Iterable[str]) -> bool:
    # Whole-word (or whole-phrase) match against normalized text.
    for word in words:
        if re.search(rf"(?<![a-z0-9]){re.escape(word)}(?![a-z0-9])", normalized):
            return True
    return False
