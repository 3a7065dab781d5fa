"""
Shared fixtures for the Duki test suite.
No network calls are made: embedding and generation collaborators are MagicMocks.
"""

import dataclasses
from pathlib import Path
from typing import List
from unittest.mock import MagicMock

import pytest

from duki.agent_pipeline import SupportAgent
from duki.config import BASE_DIR, Settings
from duki.corpus import CorpusSnapshot, KnowledgeEntry
from duki.memory import FactStore, MemoryManager
from duki.session_store import FileSessionStore


def make_entry(entry_id: str, text: str, vector: List[float], position: int = 0, **metadata) -> KnowledgeEntry:
    return KnowledgeEntry(
        id=entry_id,
        raw_text=text,
        cleaned_text=text.lower(),
        embedding=tuple(vector),
        metadata=dict(metadata),
        position=position,
    )


CORPUS_ENTRIES = [
    make_entry(
        "e1",
        "The DY-1201 is a single-head embroidery machine with 12 needles. Embroidery area 400 x 500 mm.",
        [1.0, 0.0, 0.0],
        0,
    ),
    make_entry(
        "e2",
        "DY-CS3000 cap and sequin embroidery machine. Price on request from the sales desk.",
        [0.0, 1.0, 0.0],
        1,
    ),
    make_entry(
        "e3",
        "QX-200 computerized quilting machine for mattress covers and comforters.",
        [0.0, 0.0, 1.0],
        2,
    ),
    make_entry(
        "e4",
        "Reach the Duke-Jia sales desk.\nPhone: +91 98765 43210\nEmail: sales@dukejia.example\n"
        "Address: Plot 12, Industrial Area, Ludhiana",
        [0.5, 0.5, 0.5],
        3,
    ),
]


def make_settings(tmp_path: Path, **overrides) -> Settings:
    settings = Settings(
        google_api_key="test-key",
        generation_model="gemini-2.5-flash",
        generation_fallback_model="gemini-2.0-flash",
        embedding_model="text-embedding-004",
        corpus_path=tmp_path / "index.json",
        corpus_required=False,
        data_dir=tmp_path,
        prompts_dir=BASE_DIR / "prompts",
        top_k=3,
        min_ok_score=0.18,
        score_margin=0.03,
        hybrid_bonus=0.12,
        history_turns=6,
        entity_history_turns=4,
        facts_in_prompt=8,
        session_ttl_sec=3600,
        max_sessions=50,
        max_attempts=2,
        retry_base_delay=0.0,
        bot_name="Duki",
        brand_name="Duke-Jia",
        frontend_greets=True,
        contact_whatsapp="+91 93505 13789",
        contact_email="Embroidery@grouphca.com",
        contact_address="",
        redis_url="",
        log_level="INFO",
    )
    return dataclasses.replace(settings, **overrides)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def snapshot():
    return CorpusSnapshot.from_entries(CORPUS_ENTRIES, file_name="index.json")


@pytest.fixture
def memory(tmp_path):
    return MemoryManager(FileSessionStore(None, ttl_sec=3600, max_sessions=50), FactStore(tmp_path / "facts.json"))


@pytest.fixture
def embedder():
    fake = MagicMock()
    fake.embed.return_value = [1.0, 0.0, 0.0]
    return fake


@pytest.fixture
def generator():
    fake = MagicMock()
    fake.generate_content.return_value = "The DY-1201 has 12 needles. Its embroidery area is 400 x 500 mm."
    return fake


@pytest.fixture
def agent(settings, snapshot, embedder, generator, memory):
    return SupportAgent(
        settings=settings,
        corpus=lambda: snapshot,
        embedder=embedder,
        generator=generator,
        memory=memory,
    )
