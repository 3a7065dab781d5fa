from __future__ import annotations

import re
from typing import List, Optional, Tuple

MAX_BULLETS = 8

LIST_RE = re.compile(r"(^|\n)\s*(?:•|-|\*|\d+\.)\s+")
HEADING_RE = re.compile(r"(^|\n)\s*(?:#{1,6}\s|\*\*[^*\n]+\*\*\s*(?:\n|$))")
CONTACT_LINE_RE = re.compile(r"\b(?:whatsapp|email|e-mail|address)\s*:", re.IGNORECASE)
CONTACT_ONLY_RE = re.compile(r"^\s*(?:please contact|hamari sales team)", re.IGNORECASE)
SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+(?=[A-Z(\"'“]|\d)")

MODEL_RE = re.compile(r"\bdy[-\s]?[a-z0-9]*\d[a-z0-9.\-]*", re.IGNORECASE)
AREA_RE = re.compile(r"\b(\d{2,4}\s?[×x]\s?\d{2,4})(?:\s?mm)?\b")
HEAD_NEEDLE_RE = re.compile(r"(\d+)\s?-?\s?heads?\b.+?(\d+)\s?-?\s?needles?\b", re.IGNORECASE)

DIVISION_RULES: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("Embroidery Machine", re.compile(r"embroidery|needle|\bheads?\b|color change|stitch", re.IGNORECASE)),
    ("Quilting Machine", re.compile(r"quilting|pattern|padding|mattress", re.IGNORECASE)),
    ("Perforation / Stitching Machine", re.compile(r"perforation|punching|leather|\bholes?\b", re.IGNORECASE)),
)
APPLICATION_LINES = {
    "Quilting Machine": "Pattern stitching for quilts, mattress covers, and layered fabrics",
    "Perforation / Stitching Machine": "Leather, foam, or technical textiles needing punching + stitching precision",
}
NEXT_LINE = "• Say “show features” or “full specs” for details"


def has_list(text: str) -> bool:
    return bool(LIST_RE.search(text or ""))


def has_heading(text: str) -> bool:
    return bool(HEADING_RE.search(text or ""))


def split_sentences(text: str) -> List[str]:
    flattened = re.sub(r"\s*\r?\n+\s*", " ", text or "").strip()
    return [part.strip() for part in SENTENCE_SPLIT_RE.split(flattened) if part.strip()]


def _division(text: str) -> Optional[str]:
    for label, pattern in DIVISION_RULES:
        if pattern.search(text):
            return label
    return None


def format_machine_response(text: str) -> str:
    """Purpose: Turn a bare paragraph about one machine into a titled machine block.
    Inputs/Outputs: Input is the reply text; output is the block or the text unchanged.
    Side Effects / State: None.
    Dependencies: Uses MODEL_RE, DIVISION_RULES, AREA_RE, and HEAD_NEEDLE_RE.
    Failure Modes: Replies that already have a list or heading, contact-only replies,
        and paragraphs without a model number or division are returned unchanged.
    If Removed: Machine answers render as one dense paragraph.
    Testing Notes: "The DY-1201 is a single-head embroidery machine. ..." gets a
        "**DY-1201: Embroidery Machine**" title and keeps every sentence.
    """
    if not text or has_list(text) or has_heading(text) or CONTACT_ONLY_RE.match(text):
        return text
    model_match = MODEL_RE.search(text)
    division = _division(text)
    if not model_match or not division:
        return text

    model = re.sub(r"\s+", "-", model_match.group(0).strip()).upper().rstrip(".-")
    sentences = split_sentences(text)
    lines = [f"**{model}: {division}**", "", f"**Description:** {sentences[0]}"]
    if len(sentences) > 1:
        lines += ["", "**Details:**", *(f"• {sentence}" for sentence in sentences[1:])]

    if division == "Embroidery Machine":
        head_needle = HEAD_NEEDLE_RE.search(text)
        area = AREA_RE.search(text)
        lines += [
            "",
            "**Configuration:**",
            f"• {head_needle.group(1)} Heads, {head_needle.group(2)} Needles"
            if head_needle
            else "• Head & needle info on request",
            f"• Embroidery Area: {area.group(1)} mm" if area else "• Embroidery area available on request",
        ]
    else:
        lines += ["", "**Application:**", f"• {APPLICATION_LINES[division]}"]

    lines += ["", "**Next:**", NEXT_LINE]
    return "\n".join(lines)


def split_contact_lines(text: str) -> Tuple[str, str]:
    rest: List[str] = []
    contact: List[str] = []
    for line in (text or "").splitlines():
        (contact if CONTACT_LINE_RE.search(line) else rest).append(line)
    return "\n".join(rest).strip(), "\n".join(contact).strip()


def to_bullets(plain: str) -> str:
    # Sentences past MAX_BULLETS are folded into the last bullet rather than dropped.
    sentences = split_sentences(plain)
    if len(sentences) < 2:
        return plain.strip()
    if len(sentences) > MAX_BULLETS:
        sentences = sentences[: MAX_BULLETS - 1] + [" ".join(sentences[MAX_BULLETS - 1:])]
    return "\n".join(f"• {sentence}" for sentence in sentences)


def enforce_pointwise(text: str) -> str:
    """Purpose: Convert a plain multi-sentence paragraph into bullet points.
    Inputs/Outputs: Input is the reply; output is bullets with any contact lines kept
        at the end, or the reply unchanged.
    Side Effects / State: None.
    Dependencies: Uses split_contact_lines and to_bullets.
    Failure Modes: Lists, headings, machine blocks, contact-only replies, and single
        sentences pass through untouched.
    If Removed: Long grounded answers arrive as one paragraph.
    Testing Notes: Two sentences plus "WhatsApp: ..." -> two bullets, blank line, contact.
    """
    if not text or has_list(text) or has_heading(text):
        return text
    if re.match(r"^\s*[<>]", text) or CONTACT_ONLY_RE.match(text):
        return text
    rest, contact = split_contact_lines(text)
    if not rest:
        return text
    bullets = to_bullets(rest)
    return f"{bullets}\n\n{contact}" if contact else bullets
