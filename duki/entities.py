"""Product-model token mining and sticky-entity extraction.

The catalogue of model identifiers is learned from corpus text (plus optional
metadata) instead of a hardcoded product list. It is built once per process and
only ever adds a ranking bonus, so the acceptance filter leans toward recall.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set

from .corpus import CorpusSnapshot, KnowledgeEntry
from .lazy import OnceCell

logger = logging.getLogger("duki.entities")

FAMILY_PREFIXES = ("dy", "hca", "cs", "pe", "sk", "jt")
METADATA_MODEL_KEYS = ("model", "models", "model_number", "model_no")
MIN_TOKEN_LEN = 3
MAX_TOKEN_LEN = 24
MIN_SUFFIX_ALIAS_LEN = 4

# One identifier: letter-led alnum runs joined by hyphen/dot/plus/underscore/dashes.
CANDIDATE_RE = re.compile(r"(?<![a-z0-9])[a-z][a-z0-9]*(?:[-_.+\u2013\u2014][a-z0-9]+)*\+?(?![a-z0-9])")
# Family prefix separated from its number by whitespace ("DY 1201H").
SPACED_FAMILY_RE = re.compile(
    r"(?<![a-z0-9])(" + "|".join(FAMILY_PREFIXES) + r")\s+(\d[a-z0-9]*(?:[-.+][a-z0-9]+)*)(?![a-z0-9])"
)
LETTERS_THEN_DIGIT_RE = re.compile(r"^[a-z]+\d")
JOINER_RE = re.compile(r"[-.+]")


@dataclass(frozen=True)
class ModelTokenIndex:
    """Canonical model tokens and the surface forms that resolve to them."""
    canonical_tokens: FrozenSet[str]
    alias_map: Mapping[str, FrozenSet[str]]

    def aliases_for(self, token: str) -> FrozenSet[str]:
        return self.alias_map.get(token) or generate_aliases(token)


def normalize_model_token(token: str) -> str:
    """Purpose: Reduce a surface form to its canonical model-token spelling.
    Inputs/Outputs: Input is a raw token; output is lowercase [a-z0-9.+-] text.
    Side Effects / State: None; pure function.
    Dependencies: Used by the indexer, the extractor, and metadata ingestion.
    Failure Modes: Returns "" for input without any allowed characters.
    If Removed: "DY_1201", "dy\u20131201" and "DY-1201" become distinct tokens.
    Testing Notes: "(DY_CS3000)" -> "dy-cs3000"; " -dy-12- " -> "dy-12".
    """
    # Order matters: unify dashes before dropping disallowed characters.
    lowered = re.sub(r"\s+", " ", (token or "").lower()).strip()
    lowered = lowered.replace("_", "-").replace("\u2013", "-").replace("\u2014", "-")
    lowered = lowered.replace("(", "").replace(")", "")
    lowered = re.sub(r"[^a-z0-9.+-]", "", lowered)
    return lowered.strip("-")


def family_prefix(token: str) -> Optional[str]:
    for prefix in FAMILY_PREFIXES:
        if token.startswith(prefix) and len(token) > len(prefix):
            return prefix
    return None


def is_model_like(token: str) -> bool:
    """Purpose: Decide whether a normalized candidate looks like a model identifier.
    Inputs/Outputs: Input is a normalized token; output is True if accepted.
    Side Effects / State: None.
    Dependencies: Uses FAMILY_PREFIXES and LETTERS_THEN_DIGIT_RE.
    Failure Modes: Over-accepts generic alphanumerics such as "mp3"; under-accepts codes
        that start with a digit.
    If Removed: Both corpus mining and unseen-token detection stop working.
    Testing Notes: "dy-1201" and "cs3000" pass; "embroidery" and "2024" fail.
    """
    # Digit is mandatory; then any one of prefix, joiner, or letters-then-digit.
    if not (MIN_TOKEN_LEN <= len(token) <= MAX_TOKEN_LEN):
        return False
    if not any(ch.isdigit() for ch in token):
        return False
    if family_prefix(token):
        return True
    if JOINER_RE.search(token):
        return True
    return bool(LETTERS_THEN_DIGIT_RE.match(token))


def _log_boundary(token: str, accepted: bool) -> None:
    # Tokens that pass only on the weakest rule, or barely miss, are review material.
    logger.debug("entity_boundary token=%s accepted=%s", token, accepted)


def iter_candidates(text: str) -> Iterable[str]:
    """Yield normalized model-token candidates from free text, accepted or not."""
    lowered = (text or "").lower()
    for match in SPACED_FAMILY_RE.finditer(lowered):
        yield normalize_model_token(f"{match.group(1)}-{match.group(2)}")
    for match in CANDIDATE_RE.finditer(lowered):
        yield normalize_model_token(match.group(0))


def find_model_tokens(text: str) -> Set[str]:
    """Purpose: Run the acceptance filter over free text.
    Inputs/Outputs: Input is any text; output is the set of accepted canonical tokens.
    Side Effects / State: Logs near-boundary tokens at DEBUG.
    Dependencies: Uses iter_candidates and is_model_like.
    Failure Modes: Heuristic; see is_model_like.
    If Removed: Unseen-but-valid model numbers in questions get no entity bonus.
    Testing Notes: "Compare DY-1201H and dy 1206" -> {"dy-1201h", "dy-1206"}.
    """
    found: Set[str] = set()
    for token in iter_candidates(text):
        if not token:
            continue
        accepted = is_model_like(token)
        if accepted:
            found.add(token)
            if not family_prefix(token) and not JOINER_RE.search(token):
                _log_boundary(token, True)
        elif len(token) >= 4 and any(ch.isdigit() for ch in token):
            _log_boundary(token, False)
    return found


def generate_aliases(token: str) -> FrozenSet[str]:
    """Purpose: Expand a canonical token into the mechanical surface variants users type.
    Inputs/Outputs: Input is a canonical token; output always contains the token itself.
    Side Effects / State: None; pure function.
    Dependencies: Used by the index build and for unseen tokens at query time.
    Failure Modes: None; variants shorter than MIN_TOKEN_LEN are dropped.
    If Removed: "dy1201", "dy 1201" and partial numbers never match "dy-1201".
    Testing Notes: "dy-cs3000" -> {"dy-cs3000", "dycs3000", "dy cs3000", "cs3000"}.
    """
    aliases = {
        token,
        token.replace("-", ""),
        token.replace(".", ""),
        token.replace("+", ""),
        re.sub(r"\s+", " ", JOINER_RE.sub(" ", token)).strip(),
    }
    # Partial model number after the family prefix ("dy-cs3000" -> "cs3000").
    prefix = family_prefix(token)
    if prefix:
        remainder = token[len(prefix):].lstrip("-. ")
        if (
            len(remainder) >= MIN_SUFFIX_ALIAS_LEN
            and any(ch.isdigit() for ch in remainder)
            and any(ch.isalpha() for ch in remainder)
        ):
            aliases.add(remainder)
    return frozenset(alias for alias in aliases if len(alias) >= MIN_TOKEN_LEN)


def _metadata_tokens(entry: KnowledgeEntry) -> List[str]:
    tokens: List[str] = []
    for key in METADATA_MODEL_KEYS:
        value = entry.metadata.get(key)
        if isinstance(value, str):
            values: Sequence[object] = [value]
        elif isinstance(value, (list, tuple)):
            values = value
        else:
            continue
        for item in values:
            normalized = normalize_model_token(str(item))
            if len(normalized) >= MIN_TOKEN_LEN:
                tokens.append(normalized)
    return tokens


def build_model_token_index(entries: Sequence[KnowledgeEntry]) -> ModelTokenIndex:
    """Purpose: Mine every model-like token from corpus text and metadata.
    Inputs/Outputs: Input is corpus entries; output is a ModelTokenIndex.
    Side Effects / State: None beyond DEBUG logging; pure function of its input.
    Dependencies: Uses find_model_tokens, _metadata_tokens, and generate_aliases.
    Failure Modes: Empty corpus yields an empty index.
    If Removed: Retrieval loses the exact-identifier bonus and entity lock.
    Testing Notes: Building twice from the same entries gives equal indexes.
    """
    canonical: Set[str] = set()
    for entry in entries:
        canonical.update(find_model_tokens(f"{entry.raw_text}\n{entry.cleaned_text}"))
        # Metadata tokens are trusted as-is and skip the acceptance filter.
        canonical.update(_metadata_tokens(entry))
    alias_map: Dict[str, FrozenSet[str]] = {token: generate_aliases(token) for token in sorted(canonical)}
    return ModelTokenIndex(canonical_tokens=frozenset(canonical), alias_map=alias_map)


def matchable_text(text: str) -> str:
    # Lowercase with unified dashes and collapsed whitespace; punctuation stays as boundaries.
    lowered = (text or "").lower().replace("_", "-").replace("\u2013", "-").replace("\u2014", "-")
    return re.sub(r"\s+", " ", lowered)


@lru_cache(maxsize=4096)
def _alias_pattern(alias: str) -> "re.Pattern[str]":
    parts = [re.escape(part) for part in alias.split(" ")]
    return re.compile(r"(?<![a-z0-9])" + r"\s+".join(parts) + r"(?![a-z0-9])")


def alias_in_text(alias: str, text: str) -> bool:
    """Case-insensitive alias match on token boundaries over matchable text."""
    return bool(_alias_pattern(alias).search(text))


def entity_in_text(aliases: Iterable[str], text: str) -> bool:
    return any(alias_in_text(alias, text) for alias in aliases)


def count_entity_matches(entities: Iterable[str], index: ModelTokenIndex, text: str) -> int:
    """Number of sticky entities with at least one alias present in text."""
    haystack = matchable_text(text)
    return sum(1 for entity in entities if entity_in_text(index.aliases_for(entity), haystack))


class EntityIndexer:
    """Owns the process-lifetime model-token index and per-request extraction."""

    def __init__(self, corpus: Callable[[], CorpusSnapshot]) -> None:
        self._corpus = corpus
        self._cell: OnceCell[ModelTokenIndex] = OnceCell(self._build, name="model_token_index")

    def _build(self) -> ModelTokenIndex:
        snapshot = self._corpus()
        index = build_model_token_index(snapshot.entries)
        logger.info(
            "model token index built tokens=%d aliases=%d",
            len(index.canonical_tokens),
            sum(len(aliases) for aliases in index.alias_map.values()),
        )
        return index

    @property
    def is_built(self) -> bool:
        return self._cell.is_ready

    def get_index(self) -> ModelTokenIndex:
        return self._cell.get()

    def extract(self, message: str, history_texts: Sequence[str] = ()) -> FrozenSet[str]:
        """Purpose: Find sticky entities in the message plus recent history.
        Inputs/Outputs: Inputs are the message and recent turn texts; output is the set
            of canonical tokens found by alias match or by the acceptance filter.
        Side Effects / State: Builds the index on first use.
        Dependencies: Uses get_index, alias_in_text, and find_model_tokens.
        Failure Modes: None; empty input returns an empty set.
        If Removed: Follow-up questions ("and its price?") lose the model in focus.
        Testing Notes: "cs3000 price" resolves to "dy-cs3000" when the corpus has it.
        """
        combined = "\n".join([*history_texts, message or ""])
        haystack = matchable_text(combined)
        if not haystack.strip():
            return frozenset()
        index = self.get_index()
        found: Set[str] = set()
        for token, aliases in index.alias_map.items():
            if entity_in_text(aliases, haystack):
                found.add(token)
        # Accepted tokens that are only an alias of a corpus model collapse into it.
        covered: Set[str] = set()
        for token in found:
            covered.update(index.aliases_for(token))
        found.update(token for token in find_model_tokens(combined) if token not in covered)
        return frozenset(found)
