"""
================================================================================
INCREMENTAL TUTORIAL GENERATOR - LLM WRAPPER
================================================================================
The LLM calling interface. Every stage goes through call_llm(), which consults
the prompt cache first and only then reaches the configured provider.

PROVIDER PRIORITY (checked in this order):
==========================================
1. OPENAI_API_KEY     → Uses OpenAI API (gpt-4o by default)
2. GEMINI_API_KEY     → Uses Google Gemini API
3. GEMINI_PROJECT_ID  → Uses Vertex AI (requires ADC setup)
4. OPENROUTER_API_KEY → Uses OpenRouter (access to many models)
5. LLM_API_BASE_URL   → Uses any OpenAI-compatible API (Ollama, etc.)

CACHING:
========
Responses are kept in a PromptCache (utils/prompt_cache.py), scoped by
provider and model, persisted to llm_cache.json. Use --no-cache to disable it.
A response is recorded only after the caller's `validate` accepts it.

LOGGING:
========
All prompts and responses are logged to logs/tutorial_gen_YYYYMMDD.log under
the "tutorial.llm" logger.

SERVICE CONTRACT:
=================
The provider call is an async function (prompt, LLMSettings) -> str. Tests
and embedding applications can pass their own function with the same shape
as `service`. Any provider error surfaces as LLMCallFailure.
================================================================================
"""

# =============================================================================
# IMPORTS
# =============================================================================
import os
import sys
import time
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import requests
from dotenv import load_dotenv

from constants.llm import (
    LLM_PROVIDER_OPENAI,
    LLM_PROVIDER_GEMINI,
    LLM_PROVIDER_OPENROUTER,
    LLM_PROVIDER_GENERIC,
    ENV_OPENAI_API_KEY,
    ENV_OPENAI_MODEL,
    ENV_GEMINI_API_KEY,
    ENV_GEMINI_PROJECT_ID,
    ENV_GEMINI_LOCATION,
    ENV_GEMINI_MODEL,
    ENV_OPENROUTER_API_KEY,
    ENV_OPENROUTER_MODEL,
    ENV_OPENROUTER_REFERER,
    ENV_OPENROUTER_TITLE,
    ENV_LLM_API_BASE_URL,
    ENV_LLM_API_KEY,
    ENV_LLM_MODEL,
    DEFAULT_OPENAI_MODEL,
    DEFAULT_GEMINI_MODEL,
    DEFAULT_GEMINI_LOCATION,
    DEFAULT_OPENROUTER_MODEL,
    DEFAULT_GENERIC_MODEL,
    DEFAULT_GENERIC_BASE_URL,
    OPENROUTER_API_URL,
    HTTP_REQUEST_TIMEOUT,
    DEFAULT_TEMPERATURE,
    DEFAULT_MAX_TOKENS,
    DEFAULT_OPENROUTER_REFERER,
    DEFAULT_OPENROUTER_TITLE,
    MODEL_CONTEXT_WINDOWS,
    DEFAULT_CONTEXT_WINDOW,
)
from utils.errors import LLMCallFailure, CachePersistenceFailure
from utils.content_packer import estimate_tokens
from utils.log import get_logger

load_dotenv()  # Load environment variables from .env file

logger = get_logger("tutorial.llm")


# =============================================================================
# SETTINGS
# =============================================================================
@dataclass
class LLMSettings:
    """Everything the call service needs to reach one provider/model."""

    provider: str
    model: str
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    api_key: Optional[str] = None
    base_url: Optional[str] = None

    @property
    def context_window(self) -> int:
        return MODEL_CONTEXT_WINDOWS.get(self.model, DEFAULT_CONTEXT_WINDOW)

    @classmethod
    def from_env(cls) -> "LLMSettings":
        """Build settings for whichever provider get_llm_provider() picks."""
        provider = get_llm_provider()
        if provider == LLM_PROVIDER_OPENAI:
            return cls(
                provider=provider,
                model=os.getenv(ENV_OPENAI_MODEL, DEFAULT_OPENAI_MODEL),
                api_key=os.getenv(ENV_OPENAI_API_KEY),
            )
        if provider == LLM_PROVIDER_GEMINI:
            # No api_key means Vertex AI mode (GEMINI_PROJECT_ID)
            return cls(
                provider=provider,
                model=os.getenv(ENV_GEMINI_MODEL, DEFAULT_GEMINI_MODEL),
                api_key=os.getenv(ENV_GEMINI_API_KEY),
            )
        if provider == LLM_PROVIDER_OPENROUTER:
            return cls(
                provider=provider,
                model=os.getenv(ENV_OPENROUTER_MODEL, DEFAULT_OPENROUTER_MODEL),
                api_key=os.getenv(ENV_OPENROUTER_API_KEY),
                base_url=OPENROUTER_API_URL,
            )
        return cls(
            provider=provider,
            model=os.getenv(ENV_LLM_MODEL, DEFAULT_GENERIC_MODEL),
            api_key=os.getenv(ENV_LLM_API_KEY) or None,
            base_url=os.getenv(ENV_LLM_API_BASE_URL, DEFAULT_GENERIC_BASE_URL),
        )


LLMService = Callable[[str, LLMSettings], Awaitable[str]]


# =============================================================================
# PROVIDER DETECTION
# =============================================================================
def get_llm_provider() -> str:
    """
    Determine which LLM provider to use based on environment variables.

    The FIRST provider with a valid key will be used.

    Returns:
        str: The provider name ("OPENAI", "GEMINI", "OPENROUTER", or "GENERIC")

    Raises:
        ValueError: If no provider is configured
    """
    if os.getenv(ENV_OPENAI_API_KEY):
        return LLM_PROVIDER_OPENAI
    elif os.getenv(ENV_GEMINI_API_KEY) or os.getenv(ENV_GEMINI_PROJECT_ID):
        return LLM_PROVIDER_GEMINI
    elif os.getenv(ENV_OPENROUTER_API_KEY):
        return LLM_PROVIDER_OPENROUTER
    elif os.getenv(ENV_LLM_API_BASE_URL):
        return LLM_PROVIDER_GENERIC
    else:
        raise ValueError(
            f"No LLM provider configured. Set one of: "
            f"{ENV_OPENAI_API_KEY}, {ENV_GEMINI_API_KEY}, {ENV_GEMINI_PROJECT_ID}, "
            f"{ENV_OPENROUTER_API_KEY}, or {ENV_LLM_API_BASE_URL}"
        )


# =============================================================================
# MAIN LLM CALLING FUNCTION
# =============================================================================
async def call_llm(
    prompt: str,
    settings: LLMSettings,
    use_cache: bool = True,
    prompt_cache=None,
    service: Optional[LLMService] = None,
    fuzzy: bool = True,
    validate: Optional[Callable[[str], object]] = None,
    persist: bool = True,
) -> str:
    """
    Main LLM calling function used by every pipeline stage.

    It handles:
    1. Logging the prompt
    2. Checking the prompt cache (if enabled)
    3. Calling the service
    4. Logging the response
    5. Checking the response with `validate`
    6. Recording the response in the prompt cache

    Args:
        prompt: The prompt to send to the LLM
        settings: Provider/model/temperature to use
        use_cache: Whether to look the prompt up in the cache first.
                   Set to False when retrying to get a fresh response.
        prompt_cache: PromptCache instance, or None to disable caching
        service: Async call service; defaults to call_llm_service
        fuzzy: Allow a fuzzy (Jaccard) cache match when there is no exact one
        validate: Called with the response before it is recorded. Whatever it
                  raises propagates and the response is not cached. A cached
                  response that fails it is ignored.
        persist: Write the prompt cache to disk after recording. Pipeline
                 runs pass False and save once at the end of the run.

    Returns:
        str: The LLM response text

    Raises:
        LLMCallFailure: If the service fails
        Exception: Whatever `validate` raises for a fresh response
    """
    logger.info(f"PROMPT: {prompt}")

    if use_cache and prompt_cache is not None:
        cached = prompt_cache.find(prompt, settings.provider, settings.model, fuzzy=fuzzy)
        if cached is not None and _passes(validate, cached):
            print("  💾 Cache HIT")
            return cached
        if cached is not None:
            logger.warning("Cached response failed validation, asking the LLM again")

    service = service or call_llm_service
    response_text = await service(prompt, settings)

    logger.info(f"RESPONSE: {response_text}")

    if validate is not None:
        validate(response_text)

    if prompt_cache is not None:
        usage = {
            "prompt_tokens": estimate_tokens(prompt),
            "completion_tokens": estimate_tokens(response_text),
        }
        prompt_cache.add(prompt, response_text, settings.provider, settings.model, usage=usage)
        if persist:
            await save_prompt_cache(prompt_cache)

    return response_text


def _passes(validate, response_text: str) -> bool:
    if validate is None:
        return True
    try:
        validate(response_text)
    except Exception as e:
        logger.info(f"Rejected cached response: {e}")
        return False
    return True


async def save_prompt_cache(prompt_cache) -> bool:
    """Write the prompt cache in a worker thread. A failed write only warns."""
    try:
        await asyncio.to_thread(prompt_cache.save)
    except CachePersistenceFailure as e:
        logger.warning(f"Failed to save prompt cache: {e}")
        return False
    return True


async def call_llm_service(prompt: str, settings: LLMSettings) -> str:
    """
    Default call service: routes to the provider-specific function in a
    worker thread so the event loop stays free.
    """
    start_time = time.time()
    print(f"  ☁️  {settings.provider} ({settings.model})...", end=" ", flush=True)

    provider_call = _PROVIDER_CALLS.get(settings.provider, _call_llm_generic)
    try:
        response_text = await asyncio.to_thread(provider_call, prompt, settings)
    except LLMCallFailure:
        raise
    except Exception as e:
        logger.error(f"LLM call failed ({settings.provider}/{settings.model}): {e}")
        print("✗")
        raise LLMCallFailure(f"{settings.provider} call failed: {e}") from e

    elapsed = time.time() - start_time
    time_str = f"{elapsed/60:.1f}m" if elapsed >= 60 else f"{elapsed:.1f}s"
    logger.info(f"LLM call took {time_str}")
    print(f"✓ {len(response_text):,} chars ({time_str})")
    return response_text


# =============================================================================
# PROVIDER-SPECIFIC IMPLEMENTATIONS
# =============================================================================

def _call_llm_openai(prompt: str, settings: LLMSettings) -> str:
    """
    Call OpenAI API directly using the official SDK.

    Environment variables:
    - OPENAI_API_KEY: Required - your OpenAI API key
    - OPENAI_MODEL: Optional - model to use (default: gpt-4o)
    """
    from openai import OpenAI

    if not settings.api_key:
        raise ValueError(f"{ENV_OPENAI_API_KEY} environment variable not set")

    client = OpenAI(api_key=settings.api_key)
    response = client.chat.completions.create(
        model=settings.model,
        messages=[{"role": "user", "content": prompt}],
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
    )
    return response.choices[0].message.content


def _call_llm_gemini(prompt: str, settings: LLMSettings) -> str:
    """
    Call Google Gemini API.

    Supports two modes:
    1. API Key mode (GEMINI_API_KEY) - Simpler, recommended
    2. Vertex AI mode (GEMINI_PROJECT_ID) - Requires ADC setup

    IMPORTANT: API key is checked FIRST to avoid Vertex AI ADC issues!
    """
    from google import genai
    from google.genai import types

    if settings.api_key:
        client = genai.Client(api_key=settings.api_key)
    elif os.getenv(ENV_GEMINI_PROJECT_ID):
        client = genai.Client(
            vertexai=True,
            project=os.getenv(ENV_GEMINI_PROJECT_ID),
            location=os.getenv(ENV_GEMINI_LOCATION, DEFAULT_GEMINI_LOCATION)
        )
    else:
        raise ValueError(f"Either {ENV_GEMINI_API_KEY} or {ENV_GEMINI_PROJECT_ID} must be set")

    response = client.models.generate_content(
        model=settings.model,
        contents=[prompt],
        config=types.GenerateContentConfig(
            temperature=settings.temperature,
            max_output_tokens=settings.max_tokens,
        ),
    )
    return response.text


def _call_llm_openrouter(prompt: str, settings: LLMSettings) -> str:
    """
    Call OpenRouter API - a gateway to many LLM providers.

    Environment variables:
    - OPENROUTER_API_KEY: Required - your OpenRouter API key
    - OPENROUTER_MODEL: Model to use (default: openai/gpt-4o)
    - OPENROUTER_REFERER: HTTP referer for tracking (default: https://github.com)
    - OPENROUTER_TITLE: App title for tracking
    """
    if not settings.api_key:
        raise ValueError(f"{ENV_OPENROUTER_API_KEY} environment variable not set")

    # OpenRouter requires specific headers for tracking
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {settings.api_key}",
        "HTTP-Referer": os.getenv(ENV_OPENROUTER_REFERER, DEFAULT_OPENROUTER_REFERER),
        "X-Title": os.getenv(ENV_OPENROUTER_TITLE, DEFAULT_OPENROUTER_TITLE)
    }

    payload = {
        "model": settings.model,
        "messages": [{"role": "user", "content": prompt}],
        "temperature": settings.temperature,
        "max_tokens": settings.max_tokens,
    }

    response = requests.post(
        settings.base_url or OPENROUTER_API_URL,
        headers=headers,
        json=payload,
        timeout=HTTP_REQUEST_TIMEOUT,
    )
    response.raise_for_status()
    return response.json()["choices"][0]["message"]["content"]


def _call_llm_generic(prompt: str, settings: LLMSettings) -> str:
    """
    Call a generic OpenAI-compatible API.

    This works with:
    - Ollama (local LLMs)
    - LM Studio
    - vLLM
    - Any other OpenAI-compatible server
    """
    base_url = settings.base_url or DEFAULT_GENERIC_BASE_URL
    url = f"{base_url.rstrip('/')}/v1/chat/completions"

    headers = {"Content-Type": "application/json"}
    if settings.api_key:
        headers["Authorization"] = f"Bearer {settings.api_key}"

    payload = {
        "model": settings.model,
        "messages": [{"role": "user", "content": prompt}],
        "temperature": settings.temperature,
        "max_tokens": settings.max_tokens,
    }

    try:
        response = requests.post(url, headers=headers, json=payload, timeout=HTTP_REQUEST_TIMEOUT)
        response.raise_for_status()
        return response.json()["choices"][0]["message"]["content"]
    except requests.exceptions.RequestException as e:
        raise LLMCallFailure(f"Error calling LLM API at {url}: {e}") from e


_PROVIDER_CALLS = {
    LLM_PROVIDER_OPENAI: _call_llm_openai,
    LLM_PROVIDER_GEMINI: _call_llm_gemini,
    LLM_PROVIDER_OPENROUTER: _call_llm_openrouter,
    LLM_PROVIDER_GENERIC: _call_llm_generic,
}


# =============================================================================
# TEST SCRIPT
# =============================================================================
if __name__ == "__main__":
    """
    Test the LLM configuration.

    Run this file directly to verify your API key is working:
        python -m utils.call_llm
    """
    try:
        test_settings = LLMSettings.from_env()
        print(f"Using LLM provider: {test_settings.provider} ({test_settings.model})")

        test_prompt = "Say hello in one sentence."
        print(f"Testing with prompt: {test_prompt}")

        response = asyncio.run(call_llm(test_prompt, test_settings, use_cache=False))
        print(f"Response: {response}")

    except (ValueError, LLMCallFailure) as e:
        print(f"Error: {e}")
        sys.exit(1)
