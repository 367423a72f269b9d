"""call_llm: prompt cache consultation and provider error wrapping."""

import asyncio
import importlib
from unittest.mock import AsyncMock, patch

import pytest

from utils.call_llm import LLMSettings, call_llm, call_llm_service, get_llm_provider
from utils.errors import CachePersistenceFailure, LLMCallFailure, MalformedOutput
from utils.prompt_cache import PromptCache

# utils/__init__ re-exports the call_llm function under the module name
call_llm_module = importlib.import_module("utils.call_llm")


class TestCallLLM:
    def test_cache_hit_skips_service(self, settings):
        cache = PromptCache()
        cache.add("explain the store", "cached answer", settings.provider, settings.model)
        service = AsyncMock(return_value="fresh answer")

        result = asyncio.run(call_llm("explain the store", settings, prompt_cache=cache, service=service))

        assert result == "cached answer"
        service.assert_not_called()

    def test_miss_calls_service_and_records(self, settings):
        cache = PromptCache()
        service = AsyncMock(return_value="fresh answer")

        result = asyncio.run(call_llm("explain the store", settings, prompt_cache=cache, service=service))

        assert result == "fresh answer"
        service.assert_awaited_once_with("explain the store", settings)
        assert cache.find("explain the store", settings.provider, settings.model) == "fresh answer"

    def test_bypassing_the_cache_still_records(self, settings):
        cache = PromptCache()
        cache.add("explain the store", "stale", settings.provider, settings.model)
        service = AsyncMock(return_value="fresh answer")

        result = asyncio.run(
            call_llm("explain the store", settings, use_cache=False, prompt_cache=cache, service=service)
        )

        assert result == "fresh answer"
        assert cache.find("explain the store", settings.provider, settings.model) == "fresh answer"

    def test_save_failure_only_warns(self, settings):
        cache = PromptCache("/unused/llm_cache.json")
        service = AsyncMock(return_value="answer")

        with patch.object(cache, "save", side_effect=CachePersistenceFailure("disk full")), \
                patch.object(call_llm_module.logger, "warning") as warning:
            result = asyncio.run(call_llm("a prompt", settings, prompt_cache=cache, service=service))

        assert result == "answer"
        warning.assert_called_once()

    def test_rejected_response_is_not_recorded(self, settings):
        cache = PromptCache()
        service = AsyncMock(return_value="garbage")

        def validate(text):
            raise MalformedOutput("no yaml")

        with pytest.raises(MalformedOutput):
            asyncio.run(call_llm("a prompt", settings, prompt_cache=cache, service=service, validate=validate))

        assert cache.entries == {}

    def test_cached_response_failing_validation_is_refreshed(self, settings):
        cache = PromptCache()
        cache.add("a prompt", "garbage", settings.provider, settings.model)
        service = AsyncMock(return_value="good answer")

        def validate(text):
            if text == "garbage":
                raise MalformedOutput("no yaml")

        result = asyncio.run(call_llm("a prompt", settings, prompt_cache=cache, service=service, validate=validate))

        assert result == "good answer"
        service.assert_awaited_once()
        assert cache.find("a prompt", settings.provider, settings.model) == "good answer"

    def test_unpersisted_call_leaves_file_alone(self, settings):
        cache = PromptCache("/unused/llm_cache.json")
        service = AsyncMock(return_value="answer")

        with patch.object(cache, "save") as save:
            asyncio.run(call_llm("a prompt", settings, prompt_cache=cache, service=service, persist=False))

        save.assert_not_called()
        assert cache.find("a prompt", settings.provider, settings.model) == "answer"

    def test_service_error_propagates(self, settings):
        service = AsyncMock(side_effect=LLMCallFailure("quota"))
        with pytest.raises(LLMCallFailure):
            asyncio.run(call_llm("a prompt", settings, service=service))


class TestCallService:
    def test_provider_error_wrapped(self, settings):
        def failing(prompt, settings):
            raise RuntimeError("connection reset")

        with patch.dict(call_llm_module._PROVIDER_CALLS, {settings.provider: failing}):
            with pytest.raises(LLMCallFailure) as excinfo:
                asyncio.run(call_llm_service("a prompt", settings))

        assert isinstance(excinfo.value.__cause__, RuntimeError)

    def test_routes_to_provider(self, settings):
        with patch.dict(call_llm_module._PROVIDER_CALLS, {settings.provider: lambda p, s: f"echo: {p}"}):
            assert asyncio.run(call_llm_service("ping", settings)) == "echo: ping"


class TestProviderDetection:
    def test_openai_first(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("GEMINI_API_KEY", "g-test")
        assert get_llm_provider() == "OPENAI"

    def test_nothing_configured(self, monkeypatch):
        for name in ("OPENAI_API_KEY", "GEMINI_API_KEY", "GEMINI_PROJECT_ID", "OPENROUTER_API_KEY", "LLM_API_BASE_URL"):
            monkeypatch.delenv(name, raising=False)
        with pytest.raises(ValueError):
            get_llm_provider()

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.delenv("GEMINI_PROJECT_ID", raising=False)
        monkeypatch.setenv("OPENROUTER_API_KEY", "or-test")
        monkeypatch.setenv("OPENROUTER_MODEL", "some/model")

        settings = LLMSettings.from_env()

        assert settings.provider == "OPENROUTER"
        assert settings.model == "some/model"
        assert settings.api_key == "or-test"
