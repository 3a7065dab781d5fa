"""
Tests for the Gemini wrappers. The SDK module is replaced with a MagicMock.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from google.api_core import exceptions as google_exceptions

from duki.errors import EmbeddingError, GenerationError, GenerationOverloadedError, GenerationQuotaError
from duki.gemini_client import GeminiClient, GeminiEmbedder, _normalize_model_name

from conftest import make_settings


class BlockedResponse:

    @property
    def text(self):
        raise ValueError("no parts")


@pytest.fixture
def fake_genai(monkeypatch):
    fake = MagicMock()
    models = {}

    def model_factory(name, **kwargs):
        return models.setdefault(name, MagicMock())

    fake.GenerativeModel.side_effect = model_factory
    fake.models = models
    monkeypatch.setattr("duki.gemini_client.genai", fake)
    return fake


def make_client(tmp_path, sleeps=None, **overrides):
    settings = make_settings(tmp_path, **overrides)
    return GeminiClient(settings, sleep=(sleeps.append if sleeps is not None else lambda _: None))


class TestGeminiClient:

    def test_configures_sdk_and_caches_primary(self, fake_genai, tmp_path):
        client = make_client(tmp_path, generation_model="models/gemini-2.5-flash")
        fake_genai.configure.assert_called_once_with(api_key="test-key")
        assert client.model_chain == ["gemini-2.5-flash", "gemini-2.0-flash"]

    def test_missing_key_raises(self, fake_genai, tmp_path):
        with pytest.raises(ValueError):
            make_client(tmp_path, google_api_key="")

    def test_overload_retries_then_falls_back(self, fake_genai, tmp_path):
        sleeps = []
        client = make_client(tmp_path, sleeps, retry_base_delay=0.5)
        primary = fake_genai.models["gemini-2.5-flash"]
        primary.generate_content.side_effect = google_exceptions.ServiceUnavailable("503")
        fallback = fake_genai.GenerativeModel("gemini-2.0-flash")
        fallback.generate_content.return_value = SimpleNamespace(text="  Fallback answer  ")

        assert client.generate_content([{"role": "user", "parts": ["q"]}]) == "Fallback answer"
        assert primary.generate_content.call_count == 2
        assert sleeps == [0.5]

    def test_quota_everywhere_raises_quota_error(self, fake_genai, tmp_path):
        client = make_client(tmp_path)
        for name in client.model_chain:
            fake_genai.GenerativeModel(name).generate_content.side_effect = google_exceptions.ResourceExhausted("429")
        with pytest.raises(GenerationQuotaError):
            client.generate_content([])

    def test_overload_everywhere_raises_overload_error(self, fake_genai, tmp_path):
        client = make_client(tmp_path)
        for name in client.model_chain:
            fake_genai.GenerativeModel(name).generate_content.side_effect = TimeoutError()
        with pytest.raises(GenerationOverloadedError):
            client.generate_content([])

    def test_unclassified_error_is_not_retried(self, fake_genai, tmp_path):
        client = make_client(tmp_path)
        for name in client.model_chain:
            fake_genai.GenerativeModel(name).generate_content.side_effect = ValueError("bad request")
        with pytest.raises(GenerationError) as excinfo:
            client.generate_content([])
        assert not isinstance(excinfo.value, (GenerationQuotaError, GenerationOverloadedError))
        calls = sum(fake_genai.models[name].generate_content.call_count for name in client.model_chain)
        assert calls == 2

    def test_system_instruction_builds_dedicated_model(self, fake_genai, tmp_path):
        client = make_client(tmp_path)
        fake_genai.models["gemini-2.5-flash"].generate_content.return_value = SimpleNamespace(text="ok")
        client.generate_content([], system_instruction="You are Duki.")
        fake_genai.GenerativeModel.assert_called_with("gemini-2.5-flash", system_instruction="You are Duki.")

    def test_blocked_response_is_empty_text(self, fake_genai, tmp_path):
        client = make_client(tmp_path)
        fake_genai.models["gemini-2.5-flash"].generate_content.return_value = BlockedResponse()
        assert client.generate_content([]) == ""


class TestGeminiEmbedder:

    def test_dict_result(self, fake_genai, tmp_path):
        fake_genai.embed_content.return_value = {"embedding": [1, 2.5]}
        embedder = GeminiEmbedder(make_settings(tmp_path))
        assert embedder.embed("dy-1201 area") == [1.0, 2.5]
        fake_genai.embed_content.assert_called_once_with(
            model="models/text-embedding-004", content="dy-1201 area", task_type="retrieval_query"
        )

    def test_empty_result_raises(self, fake_genai, tmp_path):
        fake_genai.embed_content.return_value = {"embedding": []}
        with pytest.raises(EmbeddingError):
            GeminiEmbedder(make_settings(tmp_path)).embed("x")

    def test_sdk_failure_raises(self, fake_genai, tmp_path):
        fake_genai.embed_content.side_effect = google_exceptions.ServiceUnavailable("down")
        with pytest.raises(EmbeddingError):
            GeminiEmbedder(make_settings(tmp_path)).embed("x")


@pytest.mark.parametrize(
    "raw, expected",
    [("models/foo", "foo"), ("  bar ", "bar"), ("", ""), (None, "")],
)
def test_normalize_model_name(raw, expected):
    assert _normalize_model_name(raw) == expected
