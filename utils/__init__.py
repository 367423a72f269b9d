"""
Incremental Tutorial Generator - Utils Package
"""

from .call_llm import call_llm, get_llm_provider, LLMSettings
from .crawl_local_files import crawl_local_files
from .prompt_cache import PromptCache
from .repo_cache import RepoCacheStore

__all__ = ['call_llm', 'get_llm_provider', 'LLMSettings', 'crawl_local_files', 'PromptCache', 'RepoCacheStore']
