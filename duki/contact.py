from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from .corpus import KnowledgeEntry
from .utils import EMAIL_RE, PHONE_RE, ResponseMode, mask_contact_value

logger = logging.getLogger("duki.contact")

ADDRESS_HINT_RE = re.compile(r"\b(address|office|plot|road|sector|near|pin(?:code)?|industrial area)\b", re.IGNORECASE)
PHONE_HINT_RE = re.compile(r"\b(phone|mobile|whatsapp|call|tel|contact|helpline)\b", re.IGNORECASE)
MAX_ADDRESS_LEN = 220


@dataclass(frozen=True)
class ContactDetails:
    """Contact fields mined from the corpus, with static defaults filled in."""
    phone: str
    email: str
    address: str
    source: str = "defaults"

    def render(self, mode: ResponseMode = ResponseMode.ENGLISH) -> str:
        """Purpose: Format the contact reply shown for contact intents and fallbacks.
        Inputs/Outputs: Input is the response mode; output is a short multi-line string.
        Side Effects / State: None.
        Dependencies: Used by the intent cascade and the safety guard.
        Failure Modes: Missing fields are omitted rather than shown empty.
        If Removed: Contact questions would need a generation call.
        Testing Notes: Hinglish mode uses the Hinglish lead line.
        """
        lead = (
            "Hamari sales team se yahan sampark karein:"
            if mode == ResponseMode.HINGLISH
            else "Please contact our sales team at"
        )
        lines = [lead]
        if self.phone:
            lines.append(f"WhatsApp: {self.phone}")
        if self.email:
            lines.append(f"Email: {self.email}")
        if self.address:
            lines.append(f"Address: {self.address}")
        return "\n".join(lines)


def _first_phone(line: str) -> Optional[str]:
    # Bare digit runs need a phone hint on the line; "+" prefixed numbers do not.
    hinted = bool(PHONE_HINT_RE.search(line))
    for match in PHONE_RE.finditer(line):
        candidate = re.sub(r"\s+", " ", match.group(1)).strip()
        digits = re.sub(r"\D", "", candidate)
        if 10 <= len(digits) <= 13 and (hinted or candidate.startswith("+")):
            return candidate
    return None


def extract_contact_details(
    entries: Iterable[KnowledgeEntry],
    default_phone: str = "",
    default_email: str = "",
    default_address: str = "",
) -> ContactDetails:
    """Purpose: Mine e-mail, phone, and address lines from corpus text.
    Inputs/Outputs: Inputs are entries and static defaults; output is ContactDetails.
    Side Effects / State: None; pure function of the entries.
    Dependencies: Uses EMAIL_RE, PHONE_RE, and ADDRESS_HINT_RE.
    Failure Modes: First match per field wins; fields still missing use the defaults.
    If Removed: Contact replies cannot reflect the knowledge base.
    Testing Notes: Stop scanning once all three fields are found.
    """
    phone = email = address = ""
    for entry in entries:
        for line in entry.display_text.splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            if not email:
                match = EMAIL_RE.search(stripped)
                if match:
                    email = match.group(0)
            if not phone:
                phone = _first_phone(stripped) or ""
            if not address and ADDRESS_HINT_RE.search(stripped) and len(stripped) <= MAX_ADDRESS_LEN:
                address = re.sub(r"^\W*address\s*[:\-]\s*", "", stripped, flags=re.IGNORECASE)
            if phone and email and address:
                break
        if phone and email and address:
            break

    mined = bool(phone or email or address)
    details = ContactDetails(
        phone=phone or default_phone,
        email=email or default_email,
        address=address or default_address,
        source="corpus" if mined else "defaults",
    )
    logger.info(
        "contact cache source=%s phone=%s email=%s address=%s",
        details.source,
        mask_contact_value(details.phone),
        mask_contact_value(details.email),
        bool(details.address),
    )
    return details
