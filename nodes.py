"""
================================================================================
INCREMENTAL TUTORIAL GENERATOR - PROCESSING NODES
================================================================================
The six pipeline stages, as PocketFlow async nodes.

NODE ARCHITECTURE (PocketFlow Pattern):
=======================================
Each node follows the prep → exec → post lifecycle:

    prep_async(ctx)                  - READ from the PipelineContext
         ↓
    exec_async(prep_res)             - PROCESS (usually LLM calls), retried
         ↓
    post_async(ctx, prep_res, exec_res) - WRITE declared fields, return action

Every stage declares what it reads and what it writes. ctx.require() fails
fast when an upstream field is missing and ctx.commit() refuses writes the
stage did not declare. When exec gives up, the stage raises StageFailure.

STAGES:
=======
    FetchRepo             files, change analysis, regeneration plan
                          ("reuse_cached" skips straight to WriteChapters)
    IdentifyAbstractions  abstractions
    AnalyzeRelationships  relationships
    OrderChapters         chapter_order
    WriteChapters         chapters (cached ones reused, the rest written)
    CombineTutorial       index + chapter files, repository cache record
================================================================================
"""

import os
import re
import asyncio
from datetime import datetime, timezone
from typing import Optional, Sequence

from pocketflow import AsyncNode, AsyncBatchNode

from constants.defaults import (
    MODE_ARCHITECTURE,
    PROGRESS_ABSTRACTIONS,
    PROGRESS_RELATIONSHIPS,
    PROGRESS_ORDERING,
    PROGRESS_WRITING,
    PROGRESS_WRITING_END,
    PROGRESS_COMBINING,
    REGENERATION_FULL,
    REGENERATION_PARTIAL_REIDENTIFY,
)
from constants.paths import ATTRIBUTION_FOOTER, INDEX_FILE_NAME, CHAPTER_FILE_EXTENSION
from utils.content_packer import context_budget, estimate_tokens, pack_files
from utils.crawl_local_files import crawl_local_files
from utils.change_detector import analyze_changes
from utils.errors import CachePersistenceFailure, MalformedOutput, StageFailure
from utils.log import get_logger
from utils.models import Abstraction, Chapter, RelationshipData, SourceFile, safe_chapter_slug
from utils.prompt_cache import hash_prompt
from utils.regeneration import (
    RegenerationPlan,
    plan_regeneration,
    resolve_after_reidentification,
)
from utils.repo_cache import (
    RepositoryCache,
    normalize_repo_url,
    restore_abstractions,
    snapshot_files,
    to_cached_abstractions,
)
from utils.validation import (
    AbstractionListSchema,
    ChapterOrderSchema,
    RelationshipSchema,
    uncovered_abstractions,
)

logger = get_logger("tutorial.pipeline")

REUSE_CACHED = "reuse_cached"
FIRST_CHAPTER_NOTE = "This is the first chapter."


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def language_cap(language: str) -> Optional[str]:
    """Capitalized language name, or None for English (no extra instructions)."""
    if not language or language.lower() == "english":
        return None
    return language.capitalize()


def build_narrative(chapters: Sequence[Chapter]) -> str:
    """Text of every chapter written so far, the context for the next one."""
    if not chapters:
        return FIRST_CHAPTER_NOTE
    return "\n---\n".join(chapter.content for chapter in chapters)


def ensure_chapter_heading(content: str, chapter_num: int, name: str) -> str:
    """Prepend "# Chapter N: name" unless the content already opens with a "# Chapter N" heading."""
    content = content.strip()
    heading = re.compile(rf"^#+\s*Chapter\s+{chapter_num}\b", re.IGNORECASE)
    if heading.match(content):
        return content
    return f"# Chapter {chapter_num}: {name}\n\n{content}"


def require_chapter_text(content: str) -> None:
    if not content or not content.strip():
        raise MalformedOutput("LLM returned an empty chapter")


def chapter_filename(slug: str) -> str:
    return f"{slug}{CHAPTER_FILE_EXTENSION}"


def chapter_listing(abstractions: Sequence[Abstraction], chapter_order: Sequence[int]) -> str:
    """Markdown list of all chapters ("1. [Name](01_name.md)") for cross-links."""
    lines = []
    for position, idx in enumerate(chapter_order):
        name = abstractions[idx].name
        lines.append(f"{position + 1}. [{name}]({chapter_filename(safe_chapter_slug(name, position + 1))})")
    return "\n".join(lines)


def _truncate_label(label: str, max_len: int) -> str:
    label = label.replace('"', "").replace("\n", " ")
    if len(label) > max_len:
        label = label[:max_len - 3] + "..."
    return label


def render_mermaid(abstractions: Sequence[Abstraction], relationships: RelationshipData, mode: str) -> str:
    """
    Flowchart of abstractions and their relationships.

    Tutorial mode draws a top-down chart with every edge labelled.
    Architecture mode draws subsystems top-to-bottom, with dotted edges for
    "extends" / "implements" relations and a default style class.
    """
    architecture = mode == MODE_ARCHITECTURE
    lines = ["flowchart TB" if architecture else "flowchart TD"]

    for i, abstraction in enumerate(abstractions):
        name = abstraction.name.replace('"', "")
        if architecture:
            lines.append(f'    A{i}["🔹 {name}"]')
        else:
            lines.append(f'    A{i}["{name}"]')

    for rel in relationships.details:
        source, target = f"A{rel.source}", f"A{rel.target}"
        if not architecture:
            lines.append(f'    {source} -- "{_truncate_label(rel.label, 30)}" --> {target}')
            continue
        label = _truncate_label(rel.label, 25)
        lowered = label.lower()
        if "uses" in lowered:
            lines.append(f'    {source} -- "{label}" --> {target}')
        elif "extends" in lowered:
            lines.append(f"    {source} -.->|extends| {target}")
        elif "implements" in lowered:
            lines.append(f"    {source} -.->|impl| {target}")
        else:
            lines.append(f"    {source} -->|{label}| {target}")

    if architecture:
        lines.append("")
        lines.append("    %% Styling")
        lines.append("    classDef default fill:#f9f9f9,stroke:#333,stroke-width:1px")

    return "\n".join(lines)


def render_index(
    project_name: str,
    summary: str,
    diagram: str,
    chapter_links: Sequence[str],
    mode: str,
    repo_url: Optional[str] = None,
) -> str:
    """index.md: summary, diagram and the ordered chapter list, with the footer."""
    source_line = f"**Source Repository:** [{repo_url}]({repo_url})\n\n" if repo_url else ""
    mermaid_block = f"```mermaid\n{diagram}\n```\n\n"

    if mode == MODE_ARCHITECTURE:
        content = f"# {project_name} - Architecture Overview\n\n"
        content += "> High-level documentation of the project's architecture and design.\n\n"
        content += source_line
        content += f"## 🎯 Project Purpose\n\n{summary}\n\n"
        content += "## 🏗️ System Architecture\n\n"
        content += "The following diagram shows the major subsystems and their relationships:\n\n"
        content += mermaid_block
        content += "## 📚 Subsystem Details\n\n"
        content += "Click on each subsystem below for detailed documentation:\n\n"
    else:
        content = f"# Tutorial: {project_name}\n\n{summary}\n\n"
        content += source_line
        content += mermaid_block
        content += "## Chapters\n\n"

    content += "".join(f"{link}\n" for link in chapter_links)
    content += f"\n\n---\n\n{ATTRIBUTION_FOOTER}"
    return content


def render_chapter_file(content: str) -> str:
    if not content.endswith("\n\n"):
        content += "\n\n"
    return content + f"---\n\n{ATTRIBUTION_FOOTER}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# STAGE BASE
# =============================================================================

class Stage:
    """
    Mixin shared by every node: stage name, declared reads / writes, the
    retry loop and the fallback that turns an exhausted exec into StageFailure.

    The retry loop keeps the attempt number in self.cur_retry, as the sync
    PocketFlow Node does, so exec_async can skip the prompt cache on retries.
    """

    stage = "stage"
    reads: tuple = ()
    writes: tuple = ()

    def commit(self, ctx, **updates) -> int:
        return ctx.commit(self.stage, self.writes, **updates)

    async def _exec(self, prep_res):
        return await self._exec_with_retries(prep_res)

    async def _exec_with_retries(self, prep_res):
        for self.cur_retry in range(self.max_retries):
            try:
                return await self.exec_async(prep_res)
            except Exception as e:
                if self.cur_retry == self.max_retries - 1:
                    return await self.exec_fallback_async(prep_res, e)
                logger.warning(f"{self.stage} attempt {self.cur_retry + 1} failed, retrying: {e}")
                if self.wait > 0:
                    await asyncio.sleep(self.wait)

    async def exec_fallback_async(self, prep_res, exc):
        logger.error(f"{self.stage} failed after {self.max_retries} attempt(s): {exc}")
        raise StageFailure(self.stage, exc) from exc


# =============================================================================
# NODE 1: FetchRepo - Collect files and plan the regeneration
# =============================================================================

class FetchRepo(Stage, AsyncNode):
    """
    First node - collects the source files and decides how much to rerun.

    Files come from the request (already fetched) or from crawling
    request.local_dir. They are sorted by path so file indices are stable.
    The previous run for the same repository is loaded from the repository
    cache store, compared against the current files, and turned into a
    RegenerationPlan.

    Returns "reuse_cached" when the plan reuses the cached analysis (skip or
    partial), which sends the flow straight to WriteChapters.
    """

    stage = "FetchRepo"
    reads = ("request",)
    writes = (
        "project_name",
        "files",
        "repo_cache",
        "change_analysis",
        "regeneration_plan",
        "abstractions",
        "relationships",
        "chapter_order",
    )

    async def prep_async(self, ctx):
        request = ctx.request
        project_name = request.project_name
        if not project_name:
            if request.repo_url:
                # https://github.com/owner/repo -> repo
                project_name = request.repo_url.rstrip("/").split("/")[-1].replace(".git", "")
            elif request.local_dir:
                project_name = os.path.basename(os.path.abspath(request.local_dir))
            else:
                project_name = "project"
        return request, project_name

    async def exec_async(self, prep_res):
        request, _ = prep_res
        if request.files is not None:
            files = list(request.files)
        else:
            print(f"Crawling directory: {request.local_dir}...")
            result = await asyncio.to_thread(
                crawl_local_files,
                request.local_dir,
                request.include_patterns,
                request.exclude_patterns,
                request.max_file_size,
            )
            files = [SourceFile(path, content) for path, content in result["files"].items()]

        if not files:
            raise ValueError("Failed to fetch files - no files matched the patterns")
        files.sort(key=lambda f: f.path)
        print(f"Fetched {len(files)} files.")
        return files

    async def _load_cache(self, ctx) -> Optional[RepositoryCache]:
        request = ctx.request
        if not request.use_cache or ctx.repo_store is None or not request.cache_key:
            return None
        try:
            cache = await asyncio.to_thread(ctx.repo_store.load, request.cache_key)
        except CachePersistenceFailure as e:
            logger.warning(f"Could not read repository cache, generating without it: {e}")
            return None
        if cache is None:
            return None

        for key, wanted in (("documentation_mode", request.documentation_mode), ("language", request.language)):
            cached_value = cache.metadata.get(key)
            if cached_value is not None and cached_value != wanted:
                logger.info(f"Cached run used {key}={cached_value!r}, this run wants {wanted!r}; ignoring cache")
                return None
        return cache

    async def post_async(self, ctx, prep_res, exec_res):
        _, project_name = prep_res
        files = exec_res

        cache = await self._load_cache(ctx)
        try:
            analysis = analyze_changes(files, cache)
        except Exception as e:
            logger.error(f"Change detection failed, regenerating everything: {e}")
            cache = None
            analysis = analyze_changes(files, None)
        plan = plan_regeneration(
            analysis,
            cache,
            policy=ctx.regeneration_policy,
            forced_mode=ctx.request.regeneration_mode,
        )
        print(f"Regeneration: {plan.mode} - {plan.reason}")

        updates = dict(
            project_name=project_name,
            files=files,
            repo_cache=cache,
            change_analysis=analysis,
            regeneration_plan=plan,
        )
        if plan.reuses_analysis:
            updates.update(
                abstractions=restore_abstractions(cache.abstractions, files),
                relationships=cache.relationships,
                chapter_order=list(cache.chapter_order),
            )
        self.commit(ctx, **updates)

        if plan.reuses_analysis:
            print(f"Reusing cached analysis ({len(ctx.abstractions)} abstractions).")
            return REUSE_CACHED
        return None


# =============================================================================
# NODE 2: IdentifyAbstractions - Use LLM to find core concepts
# =============================================================================

class IdentifyAbstractions(Stage, AsyncNode):
    """
    Second node - asks the LLM for the core abstractions of the codebase
    (or major subsystems in architecture mode), each with the indices of
    the files that implement it.
    """

    stage = "IdentifyAbstractions"
    reads = ("files", "project_name")
    writes = ("abstractions",)
    schema = AbstractionListSchema()

    async def prep_async(self, ctx):
        ctx.require(self.stage, *self.reads)
        stage_name, progress = PROGRESS_ABSTRACTIONS
        architecture = ctx.request.documentation_mode == MODE_ARCHITECTURE
        await ctx.emit_progress(
            stage_name,
            "Analyzing architecture and identifying major subsystems..."
            if architecture else "Identifying core abstractions...",
            progress,
        )
        packed = pack_files(
            ctx.files,
            context_budget(ctx.llm_settings.context_window),
            ctx.request.documentation_mode,
            ctx.request.max_lines_per_file,
        )
        return ctx, packed

    def build_prompt(self, ctx, packed) -> str:
        request = ctx.request
        max_num = request.max_abstractions
        lang_cap = language_cap(request.language)

        language_instruction = ""
        name_lang_hint = ""
        desc_lang_hint = ""
        if lang_cap:
            language_instruction = (
                f"IMPORTANT: Generate the `name` and `description` for each abstraction in **{lang_cap}** "
                f"language. Do NOT use English for these fields.\n\n"
            )
            name_lang_hint = f" (value in {lang_cap})"
            desc_lang_hint = f" (value in {lang_cap})"

        if request.documentation_mode == MODE_ARCHITECTURE:
            return f"""
For the project `{ctx.project_name}`:

Codebase Structure (signatures and interfaces):
{packed.context}

{language_instruction}Analyze this codebase to understand its **architecture and purpose**.

Identify the top 3-{max_num} major **subsystems or architectural components** that define what this project does.

For each subsystem, provide:
1. A concise `name` that describes the subsystem{name_lang_hint}.
2. A high-level `description` explaining:
   - What this subsystem's PURPOSE is (what problem it solves)
   - How it fits into the overall architecture
   - Key responsibilities (in around 80-100 words){desc_lang_hint}
3. A list of relevant `file_indices` (integers) using the format `idx # path/comment`.

Focus on:
- Entry points (pages, routes, main files)
- Core business logic flows
- Data models and state management
- External integrations (APIs, databases)

List of file indices and paths present in the context:
{packed.file_listing}

Format the output as a YAML list of dictionaries:

```yaml
- name: |
    User Interface Layer{name_lang_hint}
  description: |
    Handles user interactions through pages and components.
    This is the entry point for users, rendering forms and displaying data.{desc_lang_hint}
  file_indices:
    - 0 # src/app/page.tsx
    - 3 # src/components/Form.tsx
- name: |
    Data Processing Pipeline{name_lang_hint}
  description: |
    Core business logic that transforms and processes data.
    Acts as the brain of the application, orchestrating workflows.{desc_lang_hint}
  file_indices:
    - 5 # src/lib/processor.ts
# ... up to {max_num} subsystems
```"""

        return f"""
For the project `{ctx.project_name}`:

Codebase Context:
{packed.context}

{language_instruction}Analyze the codebase context.
Identify the top 5-{max_num} core most important abstractions to help those new to the codebase.

For each abstraction, provide:
1. A concise `name`{name_lang_hint}.
2. A beginner-friendly `description` explaining what it is with a simple analogy, in around 100 words{desc_lang_hint}.
3. A list of relevant `file_indices` (integers) using the format `idx # path/comment`.

List of file indices and paths present in the context:
{packed.file_listing}

Format the output as a YAML list of dictionaries:

```yaml
- name: |
    Query Processing{name_lang_hint}
  description: |
    Explains what the abstraction does.
    It's like a central dispatcher routing requests.{desc_lang_hint}
  file_indices:
    - 0 # path/to/file1.py
    - 3 # path/to/related.py
- name: |
    Query Optimization{name_lang_hint}
  description: |
    Another core concept, similar to a blueprint for objects.{desc_lang_hint}
  file_indices:
    - 5 # path/to/another.js
# ... up to {max_num} abstractions
```"""

    async def exec_async(self, prep_res):
        ctx, packed = prep_res
        print("Identifying abstractions using LLM...")
        prompt = self.build_prompt(ctx, packed)
        count = len(ctx.files)
        response = await ctx.llm(
            prompt,
            use_cache=self.cur_retry == 0,
            fuzzy=ctx.repo_cache is None,
            validate=lambda text: self.schema.parse(text, count),
        )
        abstractions = self.schema.parse(response, count)

        max_num = ctx.request.max_abstractions
        if len(abstractions) > max_num:
            logger.warning(f"LLM returned {len(abstractions)} abstractions, keeping the first {max_num}")
            abstractions = abstractions[:max_num]
        print(f"Identified {len(abstractions)} abstractions.")
        return abstractions

    async def post_async(self, ctx, prep_res, exec_res):
        self.commit(ctx, abstractions=exec_res)


# =============================================================================
# NODE 3: AnalyzeRelationships - Use LLM to find how concepts relate
# =============================================================================

class AnalyzeRelationships(Stage, AsyncNode):
    """Third node - project summary plus the interactions between abstractions."""

    stage = "AnalyzeRelationships"
    reads = ("abstractions", "files", "project_name")
    writes = ("relationships",)
    schema = RelationshipSchema()

    async def prep_async(self, ctx):
        ctx.require(self.stage, *self.reads)
        stage_name, progress = PROGRESS_RELATIONSHIPS
        await ctx.emit_progress(stage_name, "Analyzing relationships between abstractions...", progress)

        context = "Identified Abstractions:\n"
        listing = []
        relevant_indices = set()
        for i, abstraction in enumerate(ctx.abstractions):
            indices = ", ".join(map(str, abstraction.files))
            context += (
                f"- Index {i}: {abstraction.name} (Relevant file indices: [{indices}])\n"
                f"  Description: {abstraction.description}\n"
            )
            listing.append(f"{i} # {abstraction.name}")
            relevant_indices.update(abstraction.files)

        budget = context_budget(ctx.llm_settings.context_window) - estimate_tokens(context)
        packed = pack_files(
            ctx.files,
            max(budget, 0),
            ctx.request.documentation_mode,
            ctx.request.max_lines_per_file,
            indices=sorted(relevant_indices),
        )
        context += "\nRelevant File Snippets (Referenced by Index and Path):\n" + packed.context
        return ctx, context, "\n".join(listing)

    async def exec_async(self, prep_res):
        ctx, context, abstraction_listing = prep_res
        print("Analyzing relationships using LLM...")

        lang_cap = language_cap(ctx.request.language)
        language_instruction = ""
        lang_hint = ""
        list_lang_note = ""
        if lang_cap:
            language_instruction = (
                f"IMPORTANT: Generate the `summary` and relationship `label` fields in **{lang_cap}** "
                f"language. Do NOT use English for these fields.\n\n"
            )
            lang_hint = f" (in {lang_cap})"
            list_lang_note = f" (Names might be in {lang_cap})"

        if ctx.request.documentation_mode == MODE_ARCHITECTURE:
            summary_ask = (
                f"A high-level `summary` of the project's purpose and how its subsystems fit together, "
                f"in a few sentences{lang_hint}"
            )
        else:
            summary_ask = (
                f"A high-level `summary` of the project's main purpose and functionality in a few "
                f"beginner-friendly sentences{lang_hint}"
            )

        prompt = f"""
Based on the following abstractions and relevant code snippets from the project `{ctx.project_name}`:

List of Abstraction Indices and Names{list_lang_note}:
{abstraction_listing}

Context (Abstractions, Descriptions, Code):
{context}

{language_instruction}Please provide:
1. {summary_ask}. Use markdown formatting with **bold** and *italic* text to highlight important concepts.
2. A list (`relationships`) describing the key interactions between these abstractions. For each relationship, specify:
    - `from_abstraction`: Index of the source abstraction (e.g., `0 # AbstractionName1`)
    - `to_abstraction`: Index of the target abstraction (e.g., `1 # AbstractionName2`)
    - `label`: A brief label for the interaction **in just a few words**{lang_hint} (e.g., "Manages", "Inherits", "Uses").
    Ideally the relationship should be backed by one abstraction calling or passing parameters to another.
    Simplify the relationship and exclude those non-important ones.

IMPORTANT: Make sure EVERY abstraction is involved in at least ONE relationship (either as source or target). Each abstraction index must appear at least once across all relationships.

Format the output as YAML:

```yaml
summary: |
  A brief, simple explanation of the project{lang_hint}.
  Can span multiple lines with **bold** and *italic* for emphasis.
relationships:
  - from_abstraction: 0 # AbstractionName1
    to_abstraction: 1 # AbstractionName2
    label: "Manages"{lang_hint}
  - from_abstraction: 2 # AbstractionName3
    to_abstraction: 0 # AbstractionName1
    label: "Provides config"{lang_hint}
  # ... other relationships
```

Now, provide the YAML output:
"""
        count = len(ctx.abstractions)
        response = await ctx.llm(
            prompt,
            use_cache=self.cur_retry == 0,
            fuzzy=ctx.repo_cache is None,
            validate=lambda text: self.schema.parse(text, count),
        )
        relationships = self.schema.parse(response, count)

        missing = uncovered_abstractions(relationships, len(ctx.abstractions))
        if missing:
            names = [ctx.abstractions[i].name for i in missing]
            logger.warning(f"Abstractions not covered by any relationship: {names}")
        print("Generated project summary and relationship details.")
        return relationships

    async def post_async(self, ctx, prep_res, exec_res):
        self.commit(ctx, relationships=exec_res)


# =============================================================================
# NODE 4: OrderChapters - Use LLM to determine optimal teaching order
# =============================================================================

class OrderChapters(Stage, AsyncNode):
    """Fourth node - a permutation of the abstraction indices, foundational first."""

    stage = "OrderChapters"
    reads = ("abstractions", "relationships", "project_name")
    writes = ("chapter_order",)
    schema = ChapterOrderSchema()

    async def prep_async(self, ctx):
        ctx.require(self.stage, *self.reads)
        stage_name, progress = PROGRESS_ORDERING
        await ctx.emit_progress(stage_name, "Determining chapter order...", progress)

        abstractions = ctx.abstractions
        listing = "\n".join(f"- {i} # {a.name}" for i, a in enumerate(abstractions))

        lang_cap = language_cap(ctx.request.language)
        summary_note = f" (Note: Project Summary might be in {lang_cap})" if lang_cap else ""
        context = f"Project Summary{summary_note}:\n{ctx.relationships.summary}\n\n"
        context += "Relationships (Indices refer to abstractions above):\n"
        for rel in ctx.relationships.details:
            context += (
                f"- From {rel.source} ({abstractions[rel.source].name}) "
                f"to {rel.target} ({abstractions[rel.target].name}): {rel.label}\n"
            )
        return ctx, listing, context

    async def exec_async(self, prep_res):
        ctx, abstraction_listing, context = prep_res
        print("Determining chapter order using LLM...")

        lang_cap = language_cap(ctx.request.language)
        list_lang_note = f" (Names might be in {lang_cap})" if lang_cap else ""
        if ctx.request.documentation_mode == MODE_ARCHITECTURE:
            question = (
                f"If you are going to document the architecture of `{ctx.project_name}`, what is the best "
                f"order to present these subsystems, from first to last?\n"
                f"Ideally, start with entry points and the subsystems everything else builds on, then move "
                f"to the supporting infrastructure."
            )
        else:
            question = (
                f"If you are going to make a tutorial for `{ctx.project_name}`, what is the best order to "
                f"explain these abstractions, from first to last?\n"
                f"Ideally, first explain those that are the most important or foundational, perhaps "
                f"user-facing concepts or entry points. Then move to more detailed, lower-level "
                f"implementation details or supporting concepts."
            )

        prompt = f"""
Given the following project abstractions and their relationships for the project `{ctx.project_name}`:

Abstractions (Index # Name){list_lang_note}:
{abstraction_listing}

Context about relationships and project summary:
{context}

{question}

Output the ordered list of abstraction indices, including the name in a comment for clarity. Use the format `idx # AbstractionName`.

```yaml
- 2 # FoundationalConcept
- 0 # CoreClassA
- 1 # CoreClassB (uses CoreClassA)
- ...
```

Now, provide the YAML output:
"""
        count = len(ctx.abstractions)
        response = await ctx.llm(
            prompt,
            use_cache=self.cur_retry == 0,
            fuzzy=ctx.repo_cache is None,
            validate=lambda text: self.schema.parse(text, count),
        )
        order = self.schema.parse(response, count)
        print(f"Determined chapter order (indices): {order}")
        return order

    async def post_async(self, ctx, prep_res, exec_res):
        self.commit(ctx, chapter_order=exec_res)


# =============================================================================
# NODE 5: WriteChapters - One chapter per abstraction (AsyncBatchNode)
# =============================================================================

def _chapter_prompt(ctx, item: dict, narrative: str, file_context: str) -> str:
    request = ctx.request
    name = item["abstraction"].name
    description = item["abstraction"].description
    num = item["chapter_num"]
    lang_cap = language_cap(request.language)
    lang_name = lang_cap or request.language.capitalize()

    language_instruction = ""
    concept_details_note = ""
    structure_note = ""
    prev_summary_note = ""
    instruction_lang_note = ""
    mermaid_lang_note = ""
    code_comment_note = ""
    link_lang_note = ""
    tone_note = ""
    if lang_cap:
        language_instruction = (
            f"IMPORTANT: Write this ENTIRE chapter in **{lang_cap}**. Some input context (like concept name, "
            f"description, chapter list, previous summary) might already be in {lang_cap}, but you MUST translate "
            f"ALL other generated content including explanations, examples, technical terms, and potentially code "
            f"comments into {lang_cap}. DO NOT use English anywhere except in code syntax, required proper nouns, "
            f"or when specified. The entire output MUST be in {lang_cap}.\n\n"
        )
        concept_details_note = f" (Note: Provided in {lang_cap})"
        structure_note = f" (Note: Chapter names might be in {lang_cap})"
        prev_summary_note = f" (Note: This summary might be in {lang_cap})"
        instruction_lang_note = f" (in {lang_cap})"
        mermaid_lang_note = f" (Use {lang_cap} for labels/text if appropriate)"
        code_comment_note = f" (Translate to {lang_cap} if possible, otherwise keep minimal English for clarity)"
        link_lang_note = f" (Use the {lang_cap} chapter title from the structure above)"
        tone_note = f" (appropriate for {lang_cap} readers)"

    if request.documentation_mode == MODE_ARCHITECTURE:
        intro = (
            f"Write a concise architecture document (in Markdown format) for the project `{ctx.project_name}` "
            f"about the subsystem: \"{name}\". This is Chapter {num}."
        )
    else:
        intro = (
            f"Write a very beginner-friendly tutorial chapter (in Markdown format) for the project "
            f"`{ctx.project_name}` about the concept: \"{name}\". This is Chapter {num}."
        )

    header = f"""
{language_instruction}{intro}

Concept Details{concept_details_note}:
- Name: {name}
- Description:
{description}

Complete Tutorial Structure{structure_note}:
{item["listing"]}

Context from previous chapters{prev_summary_note}:
{narrative}

Relevant Code Snippets (Code itself remains unchanged):
{file_context if file_context else "No specific code snippets provided for this abstraction."}

Instructions for the chapter (Generate content in {lang_name} unless specified otherwise):
- Start with a clear heading (e.g., `# Chapter {num}: {name}`). Use the provided concept name.
"""

    if request.documentation_mode == MODE_ARCHITECTURE:
        body = f"""
- If this is not the first chapter, open with one sentence placing this subsystem next to the previous one{instruction_lang_note}, linking to it by name{link_lang_note}.

- Explain the subsystem's purpose, its responsibilities and its boundaries{instruction_lang_note}.

- Describe its public interface: the main entry points, types and data it exchanges with other subsystems. Quote signatures rather than full implementations.

- Draw a mermaid flowchart or sequenceDiagram of how a typical request moves through the subsystem, with at most 6 participants{mermaid_lang_note}.

- List design decisions and extension points a maintainer should know about{instruction_lang_note}.

- When referring to other subsystems, ALWAYS use proper Markdown links like this: [Chapter Title](filename.md), using the Complete Tutorial Structure above{link_lang_note}.

- End with a short summary{instruction_lang_note} and, if there is a next chapter, a link to it: [Next Chapter Title](next_chapter_filename){link_lang_note}.

- Output *only* the Markdown content for this chapter.

Now, directly provide the Markdown output (DON'T need ```markdown``` tags):
"""
    else:
        body = f"""
- If this is not the first chapter, begin with a brief transition from the previous chapter{instruction_lang_note}, referencing it with a proper Markdown link using its name{link_lang_note}.

- Begin with a high-level motivation explaining what problem this abstraction solves{instruction_lang_note}. Start with a central use case as a concrete example. The whole chapter should guide the reader to understand how to solve this use case. Make it very minimal and friendly to beginners.

- If the abstraction is complex, break it down into key concepts. Explain each concept one-by-one in a very beginner-friendly way{instruction_lang_note}.

- Explain how to use this abstraction to solve the use case{instruction_lang_note}. Give example inputs and outputs for code snippets (if the output isn't values, describe at a high level what will happen{instruction_lang_note}).

- Each code block should be BELOW 10 lines! If longer code blocks are needed, break them down into smaller pieces and walk through them one-by-one. Aggresively simplify the code to make it minimal. Use comments{code_comment_note} to skip non-important implementation details. Each code block should have a beginner friendly explanation right after it{instruction_lang_note}.

- Describe the internal implementation to help understand what's under the hood{instruction_lang_note}. First provide a non-code or code-light walkthrough on what happens step-by-step when the abstraction is called{instruction_lang_note}. It's recommended to use a simple sequenceDiagram with a dummy example - keep it minimal with at most 5 participants to ensure clarity. If participant name has space, use: `participant QP as Query Processing`. {mermaid_lang_note}.

- Then dive deeper into code for the internal implementation with references to files. Provide example code blocks, but make them similarly simple and beginner-friendly. Explain{instruction_lang_note}.

- IMPORTANT: When you need to refer to other core abstractions covered in other chapters, ALWAYS use proper Markdown links like this: [Chapter Title](filename.md). Use the Complete Tutorial Structure above to find the correct filename and the chapter title{link_lang_note}. Translate the surrounding text.

- Use mermaid diagrams to illustrate complex concepts (```mermaid``` format). {mermaid_lang_note}.

- Heavily use analogies and examples throughout{instruction_lang_note} to help beginners understand.

- End the chapter with a brief conclusion that summarizes what was learned{instruction_lang_note} and provides a transition to the next chapter{instruction_lang_note}. If there is a next chapter, use a proper Markdown link: [Next Chapter Title](next_chapter_filename){link_lang_note}.

- Ensure the tone is welcoming and easy for a newcomer to understand{tone_note}.

- Output *only* the Markdown content for this chapter.

Now, directly provide a super beginner-friendly Markdown output (DON'T need ```markdown``` tags):
"""
    return header + body


class WriteChapters(Stage, AsyncBatchNode):
    """
    Fifth node - one chapter per entry of the chapter order.

    THIS IS A BATCHNODE - prep() returns one item per chapter and exec() runs
    once per item, strictly in order, because each prompt carries the text of
    every earlier chapter.

    Chapters the regeneration plan marks as cached are taken from the
    repository cache without an LLM call. A partial_reidentify plan is
    resolved here, now that the analysis stages have rerun.
    """

    stage = "WriteChapters"
    reads = ("chapter_order", "abstractions", "files", "project_name")
    writes = ("chapters", "regeneration_plan")

    async def _exec(self, items):
        return [await self._exec_with_retries(item) for item in (items or [])]

    def _resolve_plan(self, ctx) -> RegenerationPlan:
        plan = ctx.regeneration_plan or RegenerationPlan(mode=REGENERATION_FULL, reason="No regeneration plan")
        if plan.mode == REGENERATION_PARTIAL_REIDENTIFY and not plan.resolved:
            if ctx.repo_cache is None or ctx.change_analysis is None:
                return RegenerationPlan(mode=REGENERATION_FULL, reason="Cache vanished before chapters could be matched")
            plan = resolve_after_reidentification(
                plan, ctx.repo_cache, ctx.change_analysis, ctx.abstractions, ctx.chapter_order, ctx.files,
            )
        return plan

    async def prep_async(self, ctx):
        ctx.require(self.stage, *self.reads)
        plan = self._resolve_plan(ctx)
        self.plan = plan
        self.completed_chapters = ()

        abstractions = ctx.abstractions
        order = ctx.chapter_order
        listing = chapter_listing(abstractions, order)
        cached_chapters = ctx.repo_cache.chapters if ctx.repo_cache is not None else {}

        items = []
        slugs = [safe_chapter_slug(abstractions[idx].name, pos + 1) for pos, idx in enumerate(order)]
        for position, idx in enumerate(order):
            slug = slugs[position]
            cached = cached_chapters.get(slug) if plan.is_cached(slug) else None
            items.append({
                "ctx": ctx,
                "chapter_num": position + 1,
                "slug": slug,
                "abstraction": abstractions[idx],
                "listing": listing,
                "dependencies": [slugs[position - 1]] if position > 0 else [],
                "cached": cached,
                "total": len(order),
            })

        stage_name, progress = PROGRESS_WRITING
        reused = sum(1 for item in items if item["cached"] is not None)
        await ctx.emit_progress(
            stage_name,
            f"Writing {len(items)} chapters ({reused} from cache)...",
            progress,
            total_chapters=len(items),
        )
        print(f"Preparing to write {len(items)} chapters ({reused} reused from cache)...")
        return items

    async def exec_async(self, item):
        ctx = item["ctx"]
        num = item["chapter_num"]
        name = item["abstraction"].name
        total = item["total"]

        if item["cached"] is not None:
            print(f"Chapter {num}: {name} (cached)")
            chapter = item["cached"]
        else:
            print(f"Writing chapter {num} for: {name} using LLM...")
            narrative = build_narrative(self.completed_chapters)
            budget = context_budget(ctx.llm_settings.context_window) - estimate_tokens(narrative)
            packed = pack_files(
                ctx.files,
                max(budget, 0),
                ctx.request.documentation_mode,
                ctx.request.max_lines_per_file,
                indices=item["abstraction"].files,
            )
            prompt = _chapter_prompt(ctx, item, narrative, packed.context)
            response = await ctx.llm(
                prompt, use_cache=self.cur_retry == 0, fuzzy=False, validate=require_chapter_text,
            )
            chapter = Chapter(
                slug=item["slug"],
                title=name,
                content=ensure_chapter_heading(response, num, name),
                abstractions_covered=[name],
                dependencies=list(item["dependencies"]),
                generated_at=_now_iso(),
                prompt_hash=hash_prompt(prompt),
            )

        self.completed_chapters += (chapter,)
        stage_name, start = PROGRESS_WRITING
        await ctx.emit_progress(
            stage_name,
            f"Chapter {num}/{total}: {name}" + (" (cached)" if item["cached"] is not None else ""),
            start + round((PROGRESS_WRITING_END - start) * num / total),
            current_chapter=num,
            total_chapters=total,
            chapter_name=name,
            cached=item["cached"] is not None,
        )
        return chapter

    async def post_async(self, ctx, prep_res, exec_res_list):
        self.commit(ctx, chapters=list(exec_res_list), regeneration_plan=self.plan)
        print(f"Finished writing {len(exec_res_list)} chapters.")


# =============================================================================
# NODE 6: CombineTutorial - Render the output and record the run
# =============================================================================

class CombineTutorial(Stage, AsyncNode):
    """
    Final node - renders index.md and the chapter files, writes them when an
    output directory is configured, and saves the run to the repository
    cache so the next run can be incremental.
    """

    stage = "CombineTutorial"
    reads = ("project_name", "abstractions", "relationships", "chapter_order", "chapters")
    writes = ("index_content", "chapter_files", "final_output_dir", "saved_cache")

    async def prep_async(self, ctx):
        ctx.require(self.stage, *self.reads)
        stage_name, progress = PROGRESS_COMBINING
        await ctx.emit_progress(stage_name, "Combining chapters into the final document...", progress)

        mode = ctx.request.documentation_mode
        diagram = render_mermaid(ctx.abstractions, ctx.relationships, mode)
        links = chapter_listing(ctx.abstractions, ctx.chapter_order).split("\n")
        index_content = render_index(
            ctx.project_name,
            ctx.relationships.summary,
            diagram,
            links,
            mode,
            repo_url=ctx.request.repo_url,
        )
        chapter_files = [
            (chapter_filename(chapter.slug), render_chapter_file(chapter.content))
            for chapter in ctx.chapters
        ]
        output_path = os.path.join(ctx.output_dir, ctx.project_name) if ctx.output_dir else None
        return output_path, index_content, chapter_files

    async def exec_async(self, prep_res):
        output_path, index_content, chapter_files = prep_res
        if output_path is None:
            return None
        await asyncio.to_thread(self._write_files, output_path, index_content, chapter_files)
        return output_path

    @staticmethod
    def _write_files(output_path, index_content, chapter_files):
        print(f"Combining tutorial into directory: {output_path}")
        os.makedirs(output_path, exist_ok=True)

        index_filepath = os.path.join(output_path, INDEX_FILE_NAME)
        with open(index_filepath, "w", encoding="utf-8") as f:
            f.write(index_content)
        print(f"  - Wrote {index_filepath}")

        for filename, content in chapter_files:
            chapter_filepath = os.path.join(output_path, filename)
            with open(chapter_filepath, "w", encoding="utf-8") as f:
                f.write(content)
            print(f"  - Wrote {chapter_filepath}")

    def _build_cache(self, ctx) -> RepositoryCache:
        request = ctx.request
        plan = ctx.regeneration_plan
        return RepositoryCache(
            repo_url=request.cache_key,
            repo_id=normalize_repo_url(request.cache_key),
            last_crawl_time=_now_iso(),
            files=snapshot_files(ctx.files, ctx.repo_cache),
            abstractions=to_cached_abstractions(ctx.abstractions, ctx.files),
            relationships=ctx.relationships,
            chapter_order=list(ctx.chapter_order),
            chapters={chapter.slug: chapter for chapter in ctx.chapters},
            metadata={
                "project_name": ctx.project_name,
                "llm_provider": ctx.llm_settings.provider,
                "llm_model": ctx.llm_settings.model,
                "documentation_mode": request.documentation_mode,
                "language": request.language,
                "regeneration_mode": plan.mode if plan else None,
                "generated_at": _now_iso(),
            },
        )

    async def post_async(self, ctx, prep_res, exec_res):
        _, index_content, chapter_files = prep_res
        saved = None
        if ctx.request.use_cache and ctx.repo_store is not None and ctx.request.cache_key:
            cache = self._build_cache(ctx)
            try:
                await asyncio.to_thread(ctx.repo_store.save, cache)
                saved = cache
            except CachePersistenceFailure as e:
                logger.warning(f"Could not save repository cache: {e}")

        self.commit(
            ctx,
            index_content=index_content,
            chapter_files=chapter_files,
            final_output_dir=exec_res,
            saved_cache=saved,
        )
        if exec_res:
            print(f"\nTutorial generation complete! Files are in: {exec_res}")
