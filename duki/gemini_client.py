from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional

import google.generativeai as genai
from google.generativeai.types import HarmBlockThreshold, HarmCategory

from .config import Settings
from .errors import (
    EmbeddingError,
    GenerationError,
    GenerationOverloadedError,
    GenerationQuotaError,
    classify_generation_failure,
)

logger = logging.getLogger("duki.gemini")

DEFAULT_SAFETY_SETTINGS = [
    {"category": HarmCategory.HARM_CATEGORY_HARASSMENT, "threshold": HarmBlockThreshold.BLOCK_ONLY_HIGH},
    {"category": HarmCategory.HARM_CATEGORY_HATE_SPEECH, "threshold": HarmBlockThreshold.BLOCK_ONLY_HIGH},
    {"category": HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT, "threshold": HarmBlockThreshold.BLOCK_ONLY_HIGH},
    {"category": HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT, "threshold": HarmBlockThreshold.BLOCK_ONLY_HIGH},
]
MAX_BACKOFF_SEC = 8.0


class GeminiClient:
    """Gemini generation with model caching, bounded retry, and model fallback."""

    def __init__(self, settings: Settings, sleep: Callable[[float], None] = time.sleep) -> None:
        """Purpose: Configure the Gemini SDK and initialize the model cache.
        Inputs/Outputs: Input is Settings and an injectable sleep; no return value.
        Side Effects / State: Configures the SDK global API key and caches model instances.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: Raises ValueError if the API key or primary model name is missing.
        If Removed: Grounded answers cannot be generated.
        Testing Notes: Validate missing key raises ValueError and models are cached.
        """
        # Configure API key and seed the primary model.
        if not settings.google_api_key:
            raise ValueError("GOOGLE_API_KEY is required")
        genai.configure(api_key=settings.google_api_key)
        self._sleep = sleep
        self._max_attempts = max(1, settings.max_attempts)
        self._base_delay = settings.retry_base_delay
        self._models: Dict[str, genai.GenerativeModel] = {}
        self._primary = _normalize_model_name(settings.generation_model)
        self._fallback = _normalize_model_name(settings.generation_fallback_model)
        if not self._primary:
            raise ValueError("Gemini model name is required")
        self._models[self._primary] = genai.GenerativeModel(self._primary)

    @property
    def model_chain(self) -> List[str]:
        chain = [self._primary]
        if self._fallback and self._fallback != self._primary:
            chain.append(self._fallback)
        return chain

    def _model(self, model_name: str, system_instruction: Optional[str]) -> genai.GenerativeModel:
        # System instructions bind at construction time, so only bare models are cached.
        if system_instruction:
            return genai.GenerativeModel(model_name, system_instruction=system_instruction)
        if model_name not in self._models:
            self._models[model_name] = genai.GenerativeModel(model_name)
        return self._models[model_name]

    def generate_content(
        self,
        contents: list,
        system_instruction: Optional[str] = None,
        temperature: float = 0.2,
        max_output_tokens: int = 2048,
    ) -> str:
        """Purpose: Generate a reply from structured chat contents with retry and fallback.
        Inputs/Outputs: Input is a list of content entries and an optional system prompt;
            returns the stripped reply text (possibly empty).
        Side Effects / State: Network calls; sleeps between retries.
        Dependencies: Uses genai.GenerativeModel.generate_content and
            classify_generation_failure.
        Failure Modes: After retries on every model in the chain raises
            GenerationQuotaError, GenerationOverloadedError, or GenerationError.
        If Removed: The pipeline cannot produce grounded answers.
        Testing Notes: Fail the primary with 503 twice, then succeed on the fallback.
        """
        last_kind: Optional[str] = None
        last_exc: Optional[BaseException] = None
        for model_name in self.model_chain:
            for attempt in range(self._max_attempts):
                try:
                    response = self._model(model_name, system_instruction).generate_content(
                        contents,
                        generation_config={
                            "temperature": temperature,
                            "max_output_tokens": max_output_tokens,
                        },
                        safety_settings=DEFAULT_SAFETY_SETTINGS,
                    )
                    return _response_text(response)
                except Exception as exc:
                    last_exc = exc
                    last_kind = classify_generation_failure(exc)
                    logger.warning(
                        "generation failed model=%s attempt=%d/%d kind=%s error=%s",
                        model_name,
                        attempt + 1,
                        self._max_attempts,
                        last_kind or "other",
                        type(exc).__name__,
                    )
                    if last_kind is None:
                        break
                    if attempt < self._max_attempts - 1:
                        self._sleep(min(self._base_delay * (2 ** attempt), MAX_BACKOFF_SEC))
            logger.info("generation switching model from=%s", model_name)

        if last_kind == "quota":
            raise GenerationQuotaError("generation quota exhausted") from last_exc
        if last_kind == "overload":
            raise GenerationOverloadedError("generation model overloaded") from last_exc
        raise GenerationError("generation failed") from last_exc


class GeminiEmbedder:
    """Query embeddings from the Gemini embedding model."""

    def __init__(self, settings: Settings) -> None:
        if not settings.google_api_key:
            raise ValueError("GOOGLE_API_KEY is required")
        genai.configure(api_key=settings.google_api_key)
        name = _normalize_model_name(settings.embedding_model)
        self._model = f"models/{name}"

    def embed(self, text: str) -> List[float]:
        """Purpose: Turn query text into a similarity vector.
        Inputs/Outputs: Input is text; output is a non-empty list of floats.
        Side Effects / State: One network call.
        Dependencies: genai.embed_content with task_type retrieval_query.
        Failure Modes: SDK errors and empty vectors raise EmbeddingError.
        If Removed: Retrieval has no query vector.
        Testing Notes: Patch genai.embed_content to return {"embedding": []}.
        """
        try:
            result = genai.embed_content(model=self._model, content=text, task_type="retrieval_query")
        except Exception as exc:
            raise EmbeddingError(f"embedding call failed: {type(exc).__name__}") from exc
        values = result.get("embedding") if isinstance(result, dict) else getattr(result, "embedding", None)
        if not values:
            raise EmbeddingError("embedding result is empty")
        return [float(v) for v in values]


def _response_text(response: object) -> str:
    # .text raises ValueError when the candidate was blocked or has no parts.
    try:
        text: Optional[str] = getattr(response, "text", None)
    except ValueError:
        logger.warning("generation returned no text parts")
        return ""
    return (text or "").strip()


def _normalize_model_name(name: Optional[str]) -> str:
    """Purpose: Normalize model names by stripping prefix and whitespace.
    Inputs/Outputs: Input is a model name string; output is normalized name.
    Side Effects / State: None.
    Dependencies: None; used by GeminiClient and GeminiEmbedder.
    Failure Modes: Returns empty string for falsy input.
    If Removed: "models/foo" and "foo" would be cached as different models.
    Testing Notes: Ensure "models/foo" becomes "foo" and whitespace is trimmed.
    """
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
