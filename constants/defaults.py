"""
================================================================================
DEFAULT VALUES CONSTANTS
================================================================================
This file contains all default values for command-line arguments, file
patterns, content packing and cache policies.
This is the single source of truth for application defaults.
================================================================================
"""

# =============================================================================
# DEFAULT ARGUMENT VALUES
# =============================================================================
DEFAULT_MAX_FILE_SIZE = 100000  # Maximum file size in bytes (about 100KB)
DEFAULT_LANGUAGE = "english"    # Default tutorial language
DEFAULT_MAX_ABSTRACTIONS = 10   # Maximum number of abstractions to identify
DEFAULT_MAX_LINES_PER_FILE = 150  # Line budget per file in tutorial mode

# =============================================================================
# DOCUMENTATION MODES
# =============================================================================
MODE_TUTORIAL = "tutorial"
MODE_ARCHITECTURE = "architecture"
DOCUMENTATION_MODES = (MODE_TUTORIAL, MODE_ARCHITECTURE)
DEFAULT_DOCUMENTATION_MODE = MODE_TUTORIAL

# =============================================================================
# NODE RETRIES
# =============================================================================
# One attempt per stage; retry policy belongs to the LLM call service.
DEFAULT_MAX_RETRIES = 1
DEFAULT_RETRY_WAIT = 0

# =============================================================================
# CONTENT PACKING
# =============================================================================
HEAD_LINES_RATIO = 0.8  # Share of the line budget kept from the top of a file

# Files matching earlier patterns are packed first. Anything that matches
# none of them goes last.
FILE_PRIORITY_PATTERNS = (
    r"(^|/)page\.(tsx?|jsx?)$",
    r"(^|/)(index|__init__)\.(tsx?|jsx?|py)$",
    r"(^|/)(main|__main__)\.(tsx?|jsx?|py|go|rs|java)$",
    r"(^|/)(app|server|cli|run)\.(tsx?|jsx?|py)$",
    r"(^|/)route\.(tsx?|jsx?)$",
    r"(^|/)layout\.(tsx?|jsx?)$",
    r"(^|/)(api|lib|utils|components)/",
)

# =============================================================================
# REGENERATION POLICY
# =============================================================================
PARTIAL_REGENERATION_BELOW_PCT = 30.0   # < 30% changed → partial
REIDENTIFY_BELOW_PCT = 60.0             # < 60% changed → partial_reidentify

REGENERATION_FULL = "full"
REGENERATION_PARTIAL = "partial"
REGENERATION_PARTIAL_REIDENTIFY = "partial_reidentify"
REGENERATION_SKIP = "skip"
REGENERATION_MODES = (
    REGENERATION_FULL,
    REGENERATION_PARTIAL,
    REGENERATION_PARTIAL_REIDENTIFY,
    REGENERATION_SKIP,
)

# =============================================================================
# PROMPT CACHE
# =============================================================================
FUZZY_SIMILARITY_THRESHOLD = 0.95
MIN_SIMILARITY_WORD_LENGTH = 3   # Words of 2 characters or fewer are ignored
PROMPT_HASH_LENGTH = 32
CONTENT_HASH_LENGTH = 16
PROMPT_CACHE_MAX_AGE_DAYS = 30
PROMPT_CACHE_MAX_ENTRIES = 5000

# =============================================================================
# REPOSITORY CACHE CLEANUP
# =============================================================================
CLEANUP_MAX_AGE_DAYS = 30
CLEANUP_MAX_SIZE_MB = 500
CLEANUP_MAX_REPOS = 50
CLEANUP_MIN_REPOS_TO_KEEP = 5

# =============================================================================
# FILE PATTERNS
# =============================================================================
DEFAULT_INCLUDE_PATTERNS = {
    "*.py", "*.js", "*.jsx", "*.ts", "*.tsx", "*.go", "*.java", "*.pyi", "*.pyx",
    "*.c", "*.cs", "*.cc", "*.cpp", "*.h", "*.rs", "*.md", "*.rst", "Dockerfile",
    "Makefile", "*.yaml", "*.yml",
}

DEFAULT_EXCLUDE_PATTERNS = {
    "assets/*", "data/*", "images/*", "public/*", "static/*", "temp/*",
    "*docs/*",
    "*venv/*",
    "*.venv/*",
    "*test*",
    "*tests/*",
    "*examples/*",
    "v1/*",
    "*dist/*",
    "*build/*",
    "*experimental/*",
    "*deprecated/*",
    "*misc/*",
    "*legacy/*",
    ".git/*", ".github/*", ".next/*", ".vscode/*",
    "*obj/*",
    "*bin/*",
    "*node_modules/*",
    "*.log"
}

# =============================================================================
# PROGRESS EVENTS
# =============================================================================
# Stage name → percentage reported when the stage starts
PROGRESS_ANALYZING = ("analyzing", 5)
PROGRESS_ABSTRACTIONS = ("abstractions", 15)
PROGRESS_RELATIONSHIPS = ("relationships", 22)
PROGRESS_ORDERING = ("ordering", 27)
PROGRESS_WRITING = ("writing_chapters", 30)
PROGRESS_WRITING_END = 90   # Reported when the last chapter is done
PROGRESS_COMBINING = ("combining", 92)
PROGRESS_COMPLETE = ("complete", 100)
