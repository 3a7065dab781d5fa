from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError

BASE_DIR = Path(__file__).resolve().parent
REPO_DIR = BASE_DIR.parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for models, corpus, retrieval tuning, and stores."""
    google_api_key: str
    generation_model: str
    generation_fallback_model: str
    embedding_model: str
    corpus_path: Path
    corpus_required: bool
    data_dir: Path
    prompts_dir: Path
    top_k: int
    min_ok_score: float
    score_margin: float
    hybrid_bonus: float
    history_turns: int
    entity_history_turns: int
    facts_in_prompt: int
    session_ttl_sec: int
    max_sessions: int
    max_attempts: int
    retry_base_delay: float
    bot_name: str
    brand_name: str
    frontend_greets: bool
    contact_whatsapp: str
    contact_email: str
    contact_address: str
    redis_url: str
    log_level: str

    def validate(self) -> None:
        """Purpose: Reject configurations that must not serve traffic.
        Inputs/Outputs: No inputs; returns None or raises.
        Side Effects / State: Checks the corpus path on disk.
        Dependencies: Called once by duki.main before the app is built.
        Failure Modes: Raises ConfigurationError for a missing API key, or a missing
            corpus file when corpus_required is set.
        If Removed: Misconfigured processes start and fail on every request instead.
        Testing Notes: Blank the key or point CORPUS_PATH at a missing file.
        """
        # Credentials and corpus presence are startup-fatal.
        if not self.google_api_key:
            raise ConfigurationError("GOOGLE_API_KEY is required")
        if self.corpus_required and not self.corpus_path.exists():
            raise ConfigurationError(f"Corpus not found at {self.corpus_path}")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() not in {"0", "false", "no", "off"}


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and REPO_DIR for default paths.
    Failure Modes: Invalid numeric env values raise ValueError.
    If Removed: App cannot configure models, corpus, or stores and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve data and corpus paths, then build Settings.
    data_dir = Path(os.getenv("DATA_DIR") or (REPO_DIR / "data")).resolve()
    corpus_env = os.getenv("CORPUS_PATH")
    corpus_path = Path(corpus_env).resolve() if corpus_env else data_dir / "index.json"

    return Settings(
        google_api_key=os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY", ""),
        generation_model=os.getenv("GENERATION_MODEL", "gemini-2.5-flash"),
        generation_fallback_model=os.getenv("GENERATION_FALLBACK_MODEL", "gemini-2.0-flash"),
        embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-004"),
        corpus_path=corpus_path,
        corpus_required=_env_flag("CORPUS_REQUIRED", "true"),
        data_dir=data_dir,
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        top_k=int(os.getenv("TOP_K", "6")),
        min_ok_score=float(os.getenv("MIN_OK_SCORE", "0.18")),
        score_margin=float(os.getenv("SCORE_MARGIN", "0.03")),
        hybrid_bonus=float(os.getenv("HYBRID_BONUS", "0.12")),
        history_turns=int(os.getenv("HISTORY_TURNS", "6")),
        entity_history_turns=int(os.getenv("ENTITY_HISTORY_TURNS", "4")),
        facts_in_prompt=int(os.getenv("FACTS_IN_PROMPT", "8")),
        session_ttl_sec=int(os.getenv("SESSION_TTL_SEC", "86400")),
        max_sessions=int(os.getenv("MAX_SESSIONS", "500")),
        max_attempts=int(os.getenv("MAX_ATTEMPTS", "3")),
        retry_base_delay=float(os.getenv("RETRY_BASE_DELAY", "0.8")),
        bot_name=os.getenv("BOT_NAME", "Duki"),
        brand_name=os.getenv("BRAND_NAME", "Duke-Jia"),
        frontend_greets=_env_flag("FRONTEND_GREETS", "true"),
        contact_whatsapp=os.getenv("CONTACT_WHATSAPP", "+91 93505 13789"),
        contact_email=os.getenv("CONTACT_EMAIL", "Embroidery@grouphca.com"),
        contact_address=os.getenv("CONTACT_ADDRESS", ""),
        redis_url=os.getenv("REDIS_URL", ""),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
