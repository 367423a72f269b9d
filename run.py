#!/usr/bin/env python3
"""
Incremental Tutorial Generator - Main Entry Point
Cross-platform compatible (Windows, macOS, Linux)

Usage:
    python run.py --dir /path/to/code
    python run.py --dir . --output ./tutorials --mode architecture
    python run.py --cache-stats
    python run.py --cleanup-cache
"""

import os
import sys
import time
import asyncio
import argparse
from pathlib import Path

from dotenv import load_dotenv

from constants.defaults import (
    DEFAULT_INCLUDE_PATTERNS,
    DEFAULT_EXCLUDE_PATTERNS,
    DEFAULT_MAX_FILE_SIZE,
    DEFAULT_LANGUAGE,
    DEFAULT_MAX_ABSTRACTIONS,
    DEFAULT_MAX_LINES_PER_FILE,
    DEFAULT_DOCUMENTATION_MODE,
    DOCUMENTATION_MODES,
    REGENERATION_MODES,
)
from constants.paths import CACHE_FILE_NAME, DEFAULT_OUTPUT_DIR, REPO_CACHE_DIR_NAME
from context import GenerationRequest, PipelineContext
from flow import run_tutorial_flow
from utils.call_llm import LLMSettings
from utils.errors import CachePersistenceFailure, TutorialGenError
from utils.prompt_cache import PromptCache
from utils.repo_cache import CleanupPolicy, RepoCacheStore

load_dotenv()


def print_progress(event):
    print(f"[{event.progress:3d}%] {event.message}")


def load_prompt_cache(cache_dir: str) -> PromptCache:
    path = os.path.join(cache_dir, CACHE_FILE_NAME)
    try:
        return PromptCache.load(path)
    except CachePersistenceFailure as e:
        print(f"Warning: prompt cache unreadable, starting empty ({e})")
        return PromptCache(path)


def show_cache_stats(store: RepoCacheStore, prompt_cache: PromptCache):
    stats = store.stats()
    print(f"=" * 60)
    print("Repository cache")
    print(f"=" * 60)
    print(f"Repositories: {stats['total_repos']}")
    print(f"Size: {stats['total_size_mb']:.2f} MB")
    for repo in stats["repos"]:
        print(
            f"  - {repo['repo_url']}: {repo['chapter_count']} chapters, "
            f"{repo['size_mb']:.2f} MB, last used {repo['age_in_days']} day(s) ago"
        )

    prompt_stats = prompt_cache.statistics()
    print(f"=" * 60)
    print("Prompt cache")
    print(f"=" * 60)
    print(f"Entries: {prompt_stats['total_entries']}")
    print(f"Hits / misses: {prompt_stats['total_hits']} / {prompt_stats['total_misses']}")
    print(f"Hit rate: {prompt_stats['hit_rate']:.1%}")
    for provider, count in sorted(prompt_stats["providers"].items()):
        print(f"  - {provider}: {count} entries")


def run_cleanup(store: RepoCacheStore, prompt_cache: PromptCache, dry_run: bool):
    result = store.cleanup(CleanupPolicy(dry_run=dry_run))
    orphans = store.cleanup_orphaned_files(dry_run=dry_run)
    prefix = "[DRY RUN] " if dry_run else ""
    print(f"{prefix}Removed {len(result.deleted_repos)} cached repositories, freed {result.freed_space_mb:.2f} MB")
    print(f"{prefix}Removed {len(orphans)} orphaned cache files")
    print(f"Remaining: {result.remaining_repos} repositories, {result.remaining_size_mb:.2f} MB")
    for error in result.errors:
        print(f"  Error: {error}")

    if not dry_run:
        removed = prompt_cache.cleanup()
        prompt_cache.save()
        print(f"Removed {removed} prompt cache entries")


def build_parser():
    parser = argparse.ArgumentParser(
        description="Generate tutorial or architecture documentation from a codebase, "
                    "regenerating only what changed since the last run.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py --dir /path/to/project
  python run.py --dir . --output ./tutorials --mode architecture
  python run.py --dir ./src --include "*.py" --exclude "*test*"
  python run.py --dir . --language spanish --regeneration full
  python run.py --cache-stats
        """
    )

    parser.add_argument("--dir", help="Path to local directory to analyze.")
    parser.add_argument(
        "--repo-url",
        help="Repository URL this directory was checked out from. Used as the cache key and shown in the index.",
    )
    parser.add_argument("-n", "--name", help="Project name (optional, derived from directory if omitted).")
    parser.add_argument(
        "-o", "--output",
        default=DEFAULT_OUTPUT_DIR,
        help=f"Output directory for the tutorial (default: ./{DEFAULT_OUTPUT_DIR}).",
    )
    parser.add_argument(
        "-i", "--include",
        nargs="+",
        help="Include file patterns (e.g., '*.py' '*.js'). Defaults to common code files.",
    )
    parser.add_argument(
        "-e", "--exclude",
        nargs="+",
        help="Exclude file patterns (e.g., 'tests/*' 'docs/*'). Defaults to test/build directories.",
    )
    parser.add_argument(
        "-s", "--max-size",
        type=int,
        default=DEFAULT_MAX_FILE_SIZE,
        help=f"Maximum file size in bytes (default: {DEFAULT_MAX_FILE_SIZE}, about 100KB).",
    )
    parser.add_argument(
        "--language",
        default=DEFAULT_LANGUAGE,
        help=f"Language for the generated tutorial (default: {DEFAULT_LANGUAGE}).",
    )
    parser.add_argument(
        "--mode",
        choices=DOCUMENTATION_MODES,
        default=DEFAULT_DOCUMENTATION_MODE,
        help="tutorial: beginner chapters. architecture: subsystem overview from signatures.",
    )
    parser.add_argument(
        "--max-abstractions",
        type=int,
        default=DEFAULT_MAX_ABSTRACTIONS,
        help=f"Maximum number of abstractions to identify (default: {DEFAULT_MAX_ABSTRACTIONS}).",
    )
    parser.add_argument(
        "--max-lines",
        type=int,
        default=DEFAULT_MAX_LINES_PER_FILE,
        help=f"Lines kept per file in tutorial mode (default: {DEFAULT_MAX_LINES_PER_FILE}).",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Disable the prompt cache and the repository cache for this run.",
    )
    parser.add_argument(
        "--regeneration",
        choices=REGENERATION_MODES,
        help="Force a regeneration mode instead of deciding from the detected changes.",
    )
    parser.add_argument(
        "--cache-dir",
        default=REPO_CACHE_DIR_NAME,
        help=f"Directory holding the prompt cache and repository cache (default: ./{REPO_CACHE_DIR_NAME}).",
    )
    parser.add_argument(
        "--cleanup-cache",
        action="store_true",
        help="Evict old cache entries and exit.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="With --cleanup-cache: report what would be removed without deleting anything.",
    )
    parser.add_argument(
        "--cache-stats",
        action="store_true",
        help="Print cache statistics and exit.",
    )
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    store = RepoCacheStore(args.cache_dir)
    prompt_cache = load_prompt_cache(args.cache_dir)

    try:
        if args.cache_stats:
            show_cache_stats(store, prompt_cache)
            return 0
        if args.cleanup_cache:
            run_cleanup(store, prompt_cache, args.dry_run)
            return 0
    except CachePersistenceFailure as e:
        print(f"Error: {e}")
        return 1

    if not args.dir:
        parser.error("--dir is required unless --cache-stats or --cleanup-cache is given")

    dir_path = Path(args.dir).resolve()
    if not dir_path.is_dir():
        print(f"Error: Directory does not exist: {args.dir}")
        return 1

    try:
        settings = LLMSettings.from_env()
    except ValueError as e:
        print(f"LLM Provider: Not configured - {e}")
        return 1

    request = GenerationRequest(
        repo_url=args.repo_url,
        local_dir=str(dir_path),
        project_name=args.name,
        language=args.language,
        documentation_mode=args.mode,
        max_abstractions=args.max_abstractions,
        max_lines_per_file=args.max_lines,
        regeneration_mode=args.regeneration,
        use_cache=not args.no_cache,
        include_patterns=set(args.include) if args.include else DEFAULT_INCLUDE_PATTERNS,
        exclude_patterns=set(args.exclude) if args.exclude else DEFAULT_EXCLUDE_PATTERNS,
        max_file_size=args.max_size,
    )
    ctx = PipelineContext(
        request=request,
        llm_settings=settings,
        prompt_cache=prompt_cache,
        repo_store=store,
        on_progress=print_progress,
        output_dir=args.output,
    )

    print(f"=" * 60)
    print(f"Incremental Tutorial Generator")
    print(f"=" * 60)
    print(f"Directory: {dir_path}")
    print(f"Mode: {args.mode}")
    print(f"Language: {args.language.capitalize()}")
    print(f"Caching: {'Disabled' if args.no_cache else 'Enabled'}")
    print(f"LLM Provider: {settings.provider} ({settings.model})")
    print(f"Output: {args.output}")
    print(f"=" * 60)

    start_time = time.time()
    try:
        asyncio.run(run_tutorial_flow(ctx))
    except TutorialGenError as e:
        print(f"\n❌ Generation failed: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nCancelled. The repository cache was not modified.")
        return 130

    elapsed = time.time() - start_time
    if elapsed >= 60:
        time_str = f"{elapsed/60:.1f} minutes"
    else:
        time_str = f"{elapsed:.1f} seconds"

    plan = ctx.regeneration_plan
    print(f"\n{'=' * 60}")
    print(f"✅ Tutorial generated successfully!")
    print(f"   Output: {ctx.final_output_dir}")
    print(f"   Regeneration: {plan.mode} ({plan.estimated_savings}% of chapters reused)")
    print(f"   Time: {time_str}")
    print(f"{'=' * 60}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
