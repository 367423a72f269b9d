"""
Incremental Tutorial Generator - Constants Package

This package contains all configuration constants, magic numbers,
policy thresholds and default values used throughout the application.
"""

from .llm import (
    # LLM Provider Names
    LLM_PROVIDER_OPENAI,
    LLM_PROVIDER_GEMINI,
    LLM_PROVIDER_OPENROUTER,
    LLM_PROVIDER_GENERIC,

    # Context Budgeting
    DEFAULT_CONTEXT_WINDOW,
    CONTEXT_USAGE_RATIO,
    CHARS_PER_TOKEN,

    # LLM Configuration
    DEFAULT_TEMPERATURE,
    DEFAULT_MAX_TOKENS,
)

from .paths import (
    # Directory Names
    LOGS_DIR_NAME,
    CACHE_FILE_NAME,
    REPO_CACHE_DIR_NAME,
    REPO_INDEX_FILE_NAME,
    DEFAULT_OUTPUT_DIR,
)

from .defaults import (
    # Default Argument Values
    DEFAULT_MAX_FILE_SIZE,
    DEFAULT_LANGUAGE,
    DEFAULT_MAX_ABSTRACTIONS,
    DEFAULT_MAX_LINES_PER_FILE,
    DEFAULT_DOCUMENTATION_MODE,

    # Regeneration Modes
    REGENERATION_FULL,
    REGENERATION_PARTIAL,
    REGENERATION_PARTIAL_REIDENTIFY,
    REGENERATION_SKIP,

    # File Patterns
    DEFAULT_INCLUDE_PATTERNS,
    DEFAULT_EXCLUDE_PATTERNS,
)

__all__ = [
    # LLM Provider Names
    'LLM_PROVIDER_OPENAI',
    'LLM_PROVIDER_GEMINI',
    'LLM_PROVIDER_OPENROUTER',
    'LLM_PROVIDER_GENERIC',

    # Context Budgeting
    'DEFAULT_CONTEXT_WINDOW',
    'CONTEXT_USAGE_RATIO',
    'CHARS_PER_TOKEN',

    # LLM Configuration
    'DEFAULT_TEMPERATURE',
    'DEFAULT_MAX_TOKENS',

    # Directory Names
    'LOGS_DIR_NAME',
    'CACHE_FILE_NAME',
    'REPO_CACHE_DIR_NAME',
    'REPO_INDEX_FILE_NAME',
    'DEFAULT_OUTPUT_DIR',

    # Default Argument Values
    'DEFAULT_MAX_FILE_SIZE',
    'DEFAULT_LANGUAGE',
    'DEFAULT_MAX_ABSTRACTIONS',
    'DEFAULT_MAX_LINES_PER_FILE',
    'DEFAULT_DOCUMENTATION_MODE',

    # Regeneration Modes
    'REGENERATION_FULL',
    'REGENERATION_PARTIAL',
    'REGENERATION_PARTIAL_REIDENTIFY',
    'REGENERATION_SKIP',

    # File Patterns
    'DEFAULT_INCLUDE_PATTERNS',
    'DEFAULT_EXCLUDE_PATTERNS',
]
