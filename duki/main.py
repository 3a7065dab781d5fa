from __future__ import annotations

import logging
from typing import Optional

from dotenv import load_dotenv

from .agent_pipeline import SupportAgent
from .app import create_app
from .config import REPO_DIR, Settings, load_settings
from .corpus import CorpusLoader
from .gemini_client import GeminiClient, GeminiEmbedder
from .lazy import OnceCell
from .memory import FactStore, MemoryManager
from .session_store import FileSessionStore, RedisSessionStore, SessionStore

ENV_PATH = REPO_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)

settings = load_settings()

log_level = getattr(logging, settings.log_level, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
logging.getLogger("duki").setLevel(log_level)
logger = logging.getLogger("duki.main")


def build_session_store(config: Settings) -> Optional[SessionStore]:
    if config.redis_url:
        logger.info("session store backend=redis")
        return RedisSessionStore.from_url(config.redis_url, ttl_sec=config.session_ttl_sec)
    logger.info("session store backend=file")
    return FileSessionStore(
        config.data_dir / "sessions.json",
        ttl_sec=config.session_ttl_sec,
        max_sessions=config.max_sessions,
    )


# Configuration problems must stop the process before it serves traffic.
settings.validate()
settings.data_dir.mkdir(parents=True, exist_ok=True)

corpus = OnceCell(CorpusLoader(settings.corpus_path).load, name="corpus")
if settings.corpus_required:
    corpus.get()

memory = MemoryManager(build_session_store(settings), FactStore(settings.data_dir / "user_facts.json"))
agent = SupportAgent(
    settings=settings,
    corpus=corpus.get,
    embedder=GeminiEmbedder(settings),
    generator=GeminiClient(settings),
    memory=memory,
)
app = create_app(settings, agent, memory, corpus.get)
