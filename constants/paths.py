"""
================================================================================
PATH AND FILE CONSTANTS
================================================================================
This file contains all constants related to paths, directories, and file names.
This is the single source of truth for file system configuration.
================================================================================
"""

# =============================================================================
# DIRECTORY NAMES
# =============================================================================
LOGS_DIR_NAME = "logs"
CACHE_FILE_NAME = "llm_cache.json"
REPO_CACHE_DIR_NAME = "cache"
REPO_INDEX_FILE_NAME = "repo_index.json"
DEFAULT_OUTPUT_DIR = "output"

# =============================================================================
# LOG FILE FORMAT
# =============================================================================
LOG_FILE_PREFIX = "tutorial_gen_"
LOG_DATE_FORMAT = "%Y%m%d"
LOG_LINE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# =============================================================================
# OUTPUT FILES
# =============================================================================
INDEX_FILE_NAME = "index.md"
CHAPTER_FILE_EXTENSION = ".md"
ATTRIBUTION_FOOTER = (
    "Generated by [AI Codebase Knowledge Builder]"
    "(https://github.com/The-Pocket/Tutorial-Codebase-Knowledge)"
)

# Version stamp written into the repo index record
REPO_INDEX_VERSION = "1.0"
