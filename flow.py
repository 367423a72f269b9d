"""
================================================================================
INCREMENTAL TUTORIAL GENERATOR - FLOW DEFINITION
================================================================================
Defines the PocketFlow workflow that orchestrates tutorial generation.

FLOW ARCHITECTURE:
==================
Six async nodes in a strict order:

    FetchRepo → IdentifyAbstractions → AnalyzeRelationships →
    OrderChapters → WriteChapters → CombineTutorial

FetchRepo consults the repository cache. When the regeneration plan reuses
the cached analysis (skip / partial), it returns "reuse_cached" and the flow
jumps straight to WriteChapters:

    FetchRepo - "reuse_cached" >> WriteChapters

A stage that gives up raises StageFailure and the run aborts. Nothing is
written to the repository cache unless CombineTutorial completes, so a
failed or cancelled run leaves the previous record untouched.
================================================================================
"""

from pocketflow import AsyncFlow

from constants.defaults import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_WAIT,
    PROGRESS_ANALYZING,
    PROGRESS_COMPLETE,
)
from nodes import (
    REUSE_CACHED,
    FetchRepo,              # Step 1: Collect files, plan the regeneration
    IdentifyAbstractions,   # Step 2: Use LLM to identify core concepts
    AnalyzeRelationships,   # Step 3: Use LLM to find how concepts relate
    OrderChapters,          # Step 4: Use LLM to determine teaching order
    WriteChapters,          # Step 5: Write or reuse each chapter (AsyncBatchNode)
    CombineTutorial,        # Step 6: Render output, save the repository cache
)
from utils.log import get_logger

logger = get_logger("tutorial.pipeline")


def create_tutorial_flow(max_retries=DEFAULT_MAX_RETRIES, wait=DEFAULT_RETRY_WAIT):
    """
    Creates and returns the tutorial generation flow.

    RETRY CONFIGURATION:
    - max_retries: attempts per LLM stage (per chapter for WriteChapters).
      Retries after the first attempt bypass the prompt cache.
    - wait: seconds between attempts

    FetchRepo and CombineTutorial make no LLM calls and run once.
    """
    fetch_repo = FetchRepo()
    identify_abstractions = IdentifyAbstractions(max_retries=max_retries, wait=wait)
    analyze_relationships = AnalyzeRelationships(max_retries=max_retries, wait=wait)
    order_chapters = OrderChapters(max_retries=max_retries, wait=wait)
    write_chapters = WriteChapters(max_retries=max_retries, wait=wait)
    combine_tutorial = CombineTutorial()

    fetch_repo >> identify_abstractions
    identify_abstractions >> analyze_relationships
    analyze_relationships >> order_chapters
    order_chapters >> write_chapters
    write_chapters >> combine_tutorial

    # Cached analysis is still valid: go straight to the chapters
    fetch_repo - REUSE_CACHED >> write_chapters

    return AsyncFlow(start=fetch_repo)


async def run_tutorial_flow(ctx, flow=None):
    """
    Run the whole pipeline on a PipelineContext and return it.

    Emits the "analyzing" event before the first stage and "complete" after
    the last one. Errors propagate unchanged. The prompt cache is written once,
    after the last stage or after the failing one.
    """
    flow = flow or create_tutorial_flow()

    stage_name, progress = PROGRESS_ANALYZING
    await ctx.emit_progress(stage_name, "Fetching files and checking the repository cache...", progress)

    try:
        await flow.run_async(ctx)
    finally:
        await ctx.save_prompt_cache()

    plan = ctx.regeneration_plan
    stage_name, progress = PROGRESS_COMPLETE
    await ctx.emit_progress(
        stage_name,
        f"Documentation complete ({len(ctx.chapters)} chapters, mode {plan.mode if plan else 'full'})",
        progress,
        total_chapters=len(ctx.chapters),
    )
    logger.info(f"Run finished for {ctx.project_name}: context version {ctx.version}")
    return ctx
