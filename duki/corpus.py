"""Knowledge-base loader for the precomputed embedding index.

The corpus is a JSON file of text chunks with their embedding vectors. It is read
wholesale once per process into an immutable CorpusSnapshot; nothing here ever
writes it back.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import CorpusUnavailableError

logger = logging.getLogger("duki.corpus")

ID_KEYS = ["id", "chunk_id", "uid"]
RAW_TEXT_KEYS = ["text_original", "rawText", "raw_text", "text", "content"]
CLEANED_TEXT_KEYS = ["text_cleaned", "cleanedText", "cleaned_text"]
VECTOR_KEYS = ["embedding", "vector", "embeddingVector", "values"]


@dataclass(frozen=True)
class KnowledgeEntry:
    """One immutable corpus chunk with its similarity vector."""
    id: str
    raw_text: str
    cleaned_text: str
    embedding: Tuple[float, ...]
    metadata: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    position: int = 0

    @property
    def display_text(self) -> str:
        return self.raw_text or self.cleaned_text


@dataclass(frozen=True)
class CorpusMeta:
    """Metadata describing the corpus file version for logging and health."""
    file_name: str
    updated_at: str
    sha256: str
    entry_count: int


@dataclass(frozen=True, eq=False)
class EmbeddingMatrix:
    """Entry vectors stacked row-wise, zero-padded to the longest vector."""
    vectors: np.ndarray
    lengths: np.ndarray
    norms: np.ndarray

    @property
    def width(self) -> int:
        return int(self.vectors.shape[1])

    @classmethod
    def from_entries(cls, entries: Sequence[KnowledgeEntry]) -> "EmbeddingMatrix":
        lengths = np.array([len(entry.embedding) for entry in entries], dtype=np.int64)
        width = int(lengths.max()) if len(lengths) else 0
        vectors = np.zeros((len(entries), width), dtype=np.float64)
        for row, entry in enumerate(entries):
            vectors[row, : len(entry.embedding)] = entry.embedding
        return cls(vectors=vectors, lengths=lengths, norms=np.linalg.norm(vectors, axis=1))


@dataclass(frozen=True)
class CorpusSnapshot:
    """Read-only view of every usable knowledge entry."""
    entries: Tuple[KnowledgeEntry, ...]
    meta: CorpusMeta
    matrix: EmbeddingMatrix = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        # Built once per snapshot; retrieval scores the whole corpus against it.
        object.__setattr__(self, "matrix", EmbeddingMatrix.from_entries(self.entries))

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @classmethod
    def empty(cls, file_name: str = "") -> "CorpusSnapshot":
        return cls(entries=(), meta=CorpusMeta(file_name=file_name, updated_at="", sha256="", entry_count=0))

    @classmethod
    def from_entries(cls, entries: Sequence[KnowledgeEntry], file_name: str = "memory") -> "CorpusSnapshot":
        ordered = tuple(entries)
        return cls(entries=ordered, meta=CorpusMeta(file_name=file_name, updated_at="", sha256="", entry_count=len(ordered)))


class CorpusLoader:
    def __init__(self, path: Path) -> None:
        """Purpose: Configure the loader with the corpus index path.
        Inputs/Outputs: Input is a Path to index.json; no return value.
        Side Effects / State: Stores the path for later load calls.
        Dependencies: None beyond Path usage.
        Failure Modes: None at init; load() handles read/parse errors.
        If Removed: The pipeline has no way to obtain knowledge entries.
        Testing Notes: Instantiate with a temp path and call load().
        """
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> CorpusSnapshot:
        """Purpose: Load and normalize corpus entries from the index file.
        Inputs/Outputs: No inputs; returns a CorpusSnapshot (possibly empty).
        Side Effects / State: Reads file contents and computes hash/mtime.
        Dependencies: Uses json, hashlib, and parse_entries.
        Failure Modes: Missing or undecodable file raises CorpusUnavailableError.
        If Removed: Retrieval, entity mining, and contact mining have no data.
        Testing Notes: Load a small index and confirm blank-text entries are dropped.
        """
        # Read bytes for hashing, then decode both wrapped and bare-list layouts.
        if not self._path.exists():
            raise CorpusUnavailableError(f"Corpus not found at {self._path}")
        raw_bytes = self._path.read_bytes()
        sha256 = hashlib.sha256(raw_bytes).hexdigest()
        updated_at = datetime.fromtimestamp(self._path.stat().st_mtime).isoformat()
        try:
            data = json.loads(raw_bytes.decode("utf-8-sig"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorpusUnavailableError(f"Corpus at {self._path} is not valid JSON") from exc

        if isinstance(data, dict):
            records = data.get("vectors") or data.get("items") or []
        elif isinstance(data, list):
            records = data
        else:
            records = []

        entries = parse_entries(records)
        meta = CorpusMeta(
            file_name=self._path.name,
            updated_at=updated_at,
            sha256=sha256,
            entry_count=len(entries),
        )
        logger.info("corpus loaded file=%s entries=%d sha256=%s", meta.file_name, meta.entry_count, sha256[:12])
        return CorpusSnapshot(entries=tuple(entries), meta=meta)


def parse_entries(records: Sequence[Any]) -> List[KnowledgeEntry]:
    """Purpose: Convert raw index records into KnowledgeEntry objects.
    Inputs/Outputs: Input is a list of dicts; output is entries in corpus order.
    Side Effects / State: Logs skipped records.
    Dependencies: Uses _get_first_value and _coerce_vector.
    Failure Modes: Records without raw text or without a vector are excluded.
    If Removed: Loader cannot map the several index layouts onto one type.
    Testing Notes: Mix text/text_original keys and a blank record.
    """
    entries: List[KnowledgeEntry] = []
    skipped = 0
    for idx, record in enumerate(records):
        if not isinstance(record, dict):
            skipped += 1
            continue
        raw_text = str(_get_first_value(record, RAW_TEXT_KEYS) or "").strip()
        cleaned_text = str(_get_first_value(record, CLEANED_TEXT_KEYS) or "").strip()
        vector = _coerce_vector(_get_first_value(record, VECTOR_KEYS))
        if not raw_text or not vector:
            skipped += 1
            continue
        entry_id = str(_get_first_value(record, ID_KEYS) or f"chunk-{idx}")
        metadata = record.get("metadata") if isinstance(record.get("metadata"), dict) else {}
        entries.append(
            KnowledgeEntry(
                id=entry_id,
                raw_text=raw_text,
                cleaned_text=cleaned_text,
                embedding=vector,
                metadata=dict(metadata),
                position=len(entries),
            )
        )
    if skipped:
        logger.warning("corpus skipped=%d records without text or vector", skipped)
    return entries


def _get_first_value(item: Dict[str, Any], keys: List[str]) -> Optional[Any]:
    # First present, non-empty value among key synonyms.
    for key in keys:
        value = item.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _coerce_vector(value: Any) -> Tuple[float, ...]:
    if isinstance(value, dict):
        value = value.get("values")
    if not isinstance(value, (list, tuple)):
        return ()
    try:
        return tuple(float(v) for v in value)
    except (TypeError, ValueError):
        return ()
