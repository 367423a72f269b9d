"""
================================================================================
LLM PROVIDER CONSTANTS
================================================================================
This file contains all constants related to LLM providers, API configuration,
model defaults and context budgets. This is the single source of truth for
LLM configuration.

PROVIDER PRIORITY (checked in this order):
==========================================
1. OPENAI_API_KEY     → Uses OpenAI API
2. GEMINI_API_KEY     → Uses Google Gemini API
3. GEMINI_PROJECT_ID  → Uses Vertex AI (requires ADC setup)
4. OPENROUTER_API_KEY → Uses OpenRouter (access to many models)
5. LLM_API_BASE_URL   → Uses any OpenAI-compatible API (Ollama, etc.)
================================================================================
"""

# =============================================================================
# LLM PROVIDER NAMES
# =============================================================================
LLM_PROVIDER_OPENAI = "OPENAI"
LLM_PROVIDER_GEMINI = "GEMINI"
LLM_PROVIDER_OPENROUTER = "OPENROUTER"
LLM_PROVIDER_GENERIC = "GENERIC"

# =============================================================================
# ENVIRONMENT VARIABLE NAMES
# =============================================================================
# OpenAI
ENV_OPENAI_API_KEY = "OPENAI_API_KEY"
ENV_OPENAI_MODEL = "OPENAI_MODEL"

# Gemini / Vertex AI
ENV_GEMINI_API_KEY = "GEMINI_API_KEY"
ENV_GEMINI_PROJECT_ID = "GEMINI_PROJECT_ID"
ENV_GEMINI_LOCATION = "GEMINI_LOCATION"
ENV_GEMINI_MODEL = "GEMINI_MODEL"

# OpenRouter
ENV_OPENROUTER_API_KEY = "OPENROUTER_API_KEY"
ENV_OPENROUTER_MODEL = "OPENROUTER_MODEL"
ENV_OPENROUTER_REFERER = "OPENROUTER_REFERER"
ENV_OPENROUTER_TITLE = "OPENROUTER_TITLE"

# Generic OpenAI-compatible API
ENV_LLM_API_BASE_URL = "LLM_API_BASE_URL"
ENV_LLM_API_KEY = "LLM_API_KEY"
ENV_LLM_MODEL = "LLM_MODEL"

# Logging
ENV_LOG_DIR = "LOG_DIR"

# =============================================================================
# DEFAULT MODEL VALUES
# =============================================================================
DEFAULT_OPENAI_MODEL = "gpt-4o"
DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"
DEFAULT_GEMINI_LOCATION = "us-central1"
DEFAULT_OPENROUTER_MODEL = "openai/gpt-4o"
DEFAULT_GENERIC_MODEL = "llama3.2"
DEFAULT_GENERIC_BASE_URL = "http://localhost:11434"

# =============================================================================
# API URLs
# =============================================================================
OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"

# Timeout for HTTP based providers (in seconds)
HTTP_REQUEST_TIMEOUT = 300

# =============================================================================
# LLM CONFIGURATION
# =============================================================================
DEFAULT_TEMPERATURE = 0.2    # Low temperature keeps structured output stable
DEFAULT_MAX_TOKENS = 4096    # Upper bound for a single response

# =============================================================================
# CONTEXT WINDOW BUDGETING
# =============================================================================
# Context windows (in tokens) for models we know about. Anything else falls
# back to DEFAULT_CONTEXT_WINDOW.
MODEL_CONTEXT_WINDOWS = {
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "gpt-4.1": 200000,
    "gpt-4.1-mini": 200000,
    "gpt-4.1-nano": 128000,
    "o3": 200000,
    "o4-mini": 200000,
    "gemini-2.0-flash": 1000000,
    "gemini-2.5-pro": 1000000,
    "openai/gpt-4o": 128000,
    "llama3.2": 128000,
    "qwen2.5-coder:7b": 32768,
}
DEFAULT_CONTEXT_WINDOW = 128000

# ~15% for prompt scaffolding and ~15% for the response, the rest is file context
CONTEXT_USAGE_RATIO = 0.70

# Rough characters-per-token ratio used for every token estimate
CHARS_PER_TOKEN = 3.5

# =============================================================================
# APP METADATA (for OpenRouter tracking)
# =============================================================================
DEFAULT_OPENROUTER_REFERER = "https://github.com"
DEFAULT_OPENROUTER_TITLE = "PocketFlow Tutorial Generator"
