"""
================================================================================
INCREMENTAL TUTORIAL GENERATOR - SHARED CONTEXT
================================================================================
One PipelineContext flows through all six stages. It replaces a free-form
shared dict with a typed, versioned object:

    ctx.require(stage, "files", "abstractions")   fail fast if absent
    ctx.commit(stage, writes, abstractions=[...]) write declared fields,
                                                  bump ctx.version

CONTEXT STRUCTURE:
==================
    # Input
    request             GenerationRequest (repo url, files or local dir,
                        language, mode, limits, forced regeneration mode)
    llm_settings        LLMSettings (provider, model, temperature, ...)
    llm_service         async (prompt, settings) -> str, None = real providers
    prompt_cache        PromptCache or None
    repo_store          RepoCacheStore or None
    on_progress         callback receiving ProgressEvent (sync or async)
    output_dir          where CombineTutorial writes files, None = in memory

    # Output (populated by stages)
    project_name        str
    files               [SourceFile, ...]
    repo_cache          RepositoryCache of the previous run, or None
    change_analysis     ChangeAnalysis
    regeneration_plan   RegenerationPlan
    abstractions        [Abstraction, ...]
    relationships       RelationshipData
    chapter_order       [abstraction index, ...]
    chapters            [Chapter, ...] in chapter order
    index_content       rendered index.md
    chapter_files       [(filename, rendered content), ...]
    final_output_dir    directory the tutorial was written to
    saved_cache         RepositoryCache written at the end of the run
================================================================================
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Tuple

from constants.defaults import (
    DEFAULT_LANGUAGE,
    DEFAULT_MAX_ABSTRACTIONS,
    DEFAULT_MAX_LINES_PER_FILE,
    DEFAULT_MAX_FILE_SIZE,
    DEFAULT_DOCUMENTATION_MODE,
    DOCUMENTATION_MODES,
    REGENERATION_MODES,
)
from utils.call_llm import LLMSettings, LLMService, call_llm, save_prompt_cache
from utils.change_detector import ChangeAnalysis
from utils.errors import MissingUpstreamData
from utils.log import get_logger
from utils.models import Abstraction, Chapter, ProgressEvent, RelationshipData, SourceFile
from utils.prompt_cache import PromptCache
from utils.regeneration import RegenerationPlan, RegenerationPolicy
from utils.repo_cache import RepoCacheStore, RepositoryCache

logger = get_logger("tutorial.pipeline")


@dataclass
class GenerationRequest:
    """What to document and how. Either files or local_dir must be given."""

    repo_url: Optional[str] = None
    files: Optional[List[SourceFile]] = None
    local_dir: Optional[str] = None
    project_name: Optional[str] = None
    language: str = DEFAULT_LANGUAGE
    documentation_mode: str = DEFAULT_DOCUMENTATION_MODE
    max_abstractions: int = DEFAULT_MAX_ABSTRACTIONS
    max_lines_per_file: int = DEFAULT_MAX_LINES_PER_FILE
    regeneration_mode: Optional[str] = None
    use_cache: bool = True
    include_patterns: Optional[set] = None
    exclude_patterns: Optional[set] = None
    max_file_size: int = DEFAULT_MAX_FILE_SIZE

    def __post_init__(self):
        if self.documentation_mode not in DOCUMENTATION_MODES:
            raise ValueError(
                f"Unknown documentation mode '{self.documentation_mode}'. "
                f"Expected one of {DOCUMENTATION_MODES}"
            )
        if self.regeneration_mode is not None and self.regeneration_mode not in REGENERATION_MODES:
            raise ValueError(
                f"Unknown regeneration mode '{self.regeneration_mode}'. "
                f"Expected one of {REGENERATION_MODES}"
            )
        if self.files is None and not self.local_dir:
            raise ValueError("Either files or local_dir must be provided")

    @property
    def cache_key(self) -> Optional[str]:
        """Identifier of this repository in the repository cache store."""
        return self.repo_url or self.local_dir


def _is_absent(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, dict, str)) and not value:
        return True
    return False


@dataclass
class PipelineContext:
    request: GenerationRequest
    llm_settings: LLMSettings
    llm_service: Optional[LLMService] = None
    prompt_cache: Optional[PromptCache] = None
    repo_store: Optional[RepoCacheStore] = None
    regeneration_policy: RegenerationPolicy = field(default_factory=RegenerationPolicy)
    on_progress: Optional[Callable[[ProgressEvent], Any]] = None
    output_dir: Optional[str] = None

    project_name: str = ""
    files: List[SourceFile] = field(default_factory=list)
    repo_cache: Optional[RepositoryCache] = None
    change_analysis: Optional[ChangeAnalysis] = None
    regeneration_plan: Optional[RegenerationPlan] = None
    abstractions: List[Abstraction] = field(default_factory=list)
    relationships: Optional[RelationshipData] = None
    chapter_order: List[int] = field(default_factory=list)
    chapters: List[Chapter] = field(default_factory=list)
    index_content: str = ""
    chapter_files: List[Tuple[str, str]] = field(default_factory=list)
    final_output_dir: Optional[str] = None
    saved_cache: Optional[RepositoryCache] = None

    version: int = 0
    progress_events: List[ProgressEvent] = field(default_factory=list)

    def require(self, stage: str, *field_names: str) -> None:
        """Raise MissingUpstreamData for the first named field that is absent or empty."""
        for name in field_names:
            if _is_absent(getattr(self, name, None)):
                raise MissingUpstreamData(stage, name)

    def commit(self, stage: str, writes: Iterable[str], **updates) -> int:
        """Write the stage's results. Only fields the stage declares may be written."""
        allowed = set(writes)
        undeclared = set(updates) - allowed
        if undeclared:
            raise KeyError(f"{stage} may not write {sorted(undeclared)}; declared writes: {sorted(allowed)}")
        for name, value in updates.items():
            setattr(self, name, value)
        self.version += 1
        logger.info(f"{stage} committed {sorted(updates)} (context version {self.version})")
        return self.version

    async def llm(self, prompt: str, use_cache: bool = True, fuzzy: bool = True, validate=None) -> str:
        """
        Call the LLM through the prompt cache, honouring request.use_cache.

        `validate` must accept the response or raise; only accepted responses
        are recorded. The cache is held in memory until save_prompt_cache().
        """
        caching = self.request.use_cache
        return await call_llm(
            prompt,
            self.llm_settings,
            use_cache=caching and use_cache,
            prompt_cache=self.prompt_cache if caching else None,
            service=self.llm_service,
            fuzzy=fuzzy,
            validate=validate,
            persist=False,
        )

    async def save_prompt_cache(self) -> bool:
        if self.prompt_cache is None or not self.request.use_cache:
            return False
        return await save_prompt_cache(self.prompt_cache)

    async def emit_progress(self, stage: str, message: str, progress: int, **details) -> None:
        event = ProgressEvent(stage=stage, message=message, progress=progress, **details)
        self.progress_events.append(event)
        if self.on_progress is None:
            return
        try:
            result = self.on_progress(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Progress callback failed for stage '{stage}': {e}")
