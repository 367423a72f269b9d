"""
================================================================================
REGENERATION PLANNER
================================================================================
Turns a ChangeAnalysis into a RegenerationPlan:

    0% changed                 → skip                (serve everything from cache)
    < partial_below_pct        → partial             (affected chapters only)
    < reidentify_below_pct     → partial_reidentify  (rerun the analysis stages,
                                                      decide chapters afterwards)
    otherwise                  → full

The thresholds live in RegenerationPolicy and default to 30 / 60.

A plan is only worth anything when the cache holds a complete previous run
(abstractions, relationships, chapter order and every chapter). Without one,
and whenever planning itself fails, the plan is "full".
================================================================================
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from constants.defaults import (
    PARTIAL_REGENERATION_BELOW_PCT,
    REIDENTIFY_BELOW_PCT,
    REGENERATION_FULL,
    REGENERATION_PARTIAL,
    REGENERATION_PARTIAL_REIDENTIFY,
    REGENERATION_SKIP,
)
from utils.change_detector import ChangeAnalysis
from utils.log import get_logger
from utils.models import Abstraction, SourceFile, safe_chapter_slug
from utils.repo_cache import RepositoryCache

logger = get_logger("tutorial.changes")


@dataclass
class RegenerationPolicy:
    partial_below_pct: float = PARTIAL_REGENERATION_BELOW_PCT
    reidentify_below_pct: float = REIDENTIFY_BELOW_PCT

    def classify(self, change_percentage: float) -> str:
        if change_percentage <= 0:
            return REGENERATION_SKIP
        if change_percentage < self.partial_below_pct:
            return REGENERATION_PARTIAL
        if change_percentage < self.reidentify_below_pct:
            return REGENERATION_PARTIAL_REIDENTIFY
        return REGENERATION_FULL


@dataclass
class RegenerationPlan:
    mode: str
    reason: str
    chapters_to_regenerate: List[str] = field(default_factory=list)
    rerun_abstraction_identification: bool = True
    estimated_savings: int = 0
    # False until the chapter set of a partial_reidentify plan is known
    resolved: bool = True

    @property
    def reuses_analysis(self) -> bool:
        """True when the analysis stages are bypassed and their cached results reused."""
        return self.mode in (REGENERATION_SKIP, REGENERATION_PARTIAL)

    def is_cached(self, slug: str) -> bool:
        if self.mode == REGENERATION_FULL or not self.resolved:
            return False
        return slug not in self.chapters_to_regenerate


def estimate_savings(regenerate_count: int, total_chapters: int) -> int:
    return round(100 - regenerate_count / max(total_chapters, 1) * 100)


def cached_chapter_slugs(cache: RepositoryCache) -> List[str]:
    """Slugs of the cached run in chapter order."""
    return [
        safe_chapter_slug(cache.abstractions[idx].name, position + 1)
        for position, idx in enumerate(cache.chapter_order)
    ]


def has_usable_cache(cache: Optional[RepositoryCache]) -> bool:
    """A complete previous run: analysis results plus every chapter of its order."""
    if cache is None or not cache.has_analysis:
        return False
    try:
        slugs = cached_chapter_slugs(cache)
    except (IndexError, TypeError):
        return False
    return all(slug in cache.chapters for slug in slugs)


def _full_plan(reason: str, slugs: Sequence[str] = ()) -> RegenerationPlan:
    return RegenerationPlan(
        mode=REGENERATION_FULL,
        reason=reason,
        chapters_to_regenerate=list(slugs),
        rerun_abstraction_identification=True,
        estimated_savings=0,
    )


def _plan_for_mode(mode: str, analysis: ChangeAnalysis, cache: RepositoryCache, reason: str) -> RegenerationPlan:
    all_slugs = cached_chapter_slugs(cache)
    if mode == REGENERATION_SKIP:
        return RegenerationPlan(
            mode=REGENERATION_SKIP,
            reason=reason,
            chapters_to_regenerate=[],
            rerun_abstraction_identification=False,
            estimated_savings=100,
        )
    if mode == REGENERATION_PARTIAL:
        to_regenerate = [slug for slug in analysis.chapters_to_regenerate if slug in all_slugs]
        return RegenerationPlan(
            mode=REGENERATION_PARTIAL,
            reason=reason,
            chapters_to_regenerate=to_regenerate,
            rerun_abstraction_identification=False,
            estimated_savings=estimate_savings(len(to_regenerate), len(all_slugs)),
        )
    if mode == REGENERATION_PARTIAL_REIDENTIFY:
        return RegenerationPlan(
            mode=REGENERATION_PARTIAL_REIDENTIFY,
            reason=reason,
            chapters_to_regenerate=[],
            rerun_abstraction_identification=True,
            estimated_savings=0,
            resolved=False,
        )
    return _full_plan(reason, all_slugs)


def _plan(analysis, cache, policy, forced_mode) -> RegenerationPlan:
    usable = has_usable_cache(cache)

    if forced_mode == REGENERATION_FULL:
        return _full_plan("Full regeneration requested", cached_chapter_slugs(cache) if usable else [])

    if not usable:
        if forced_mode:
            logger.warning(f"Requested regeneration mode '{forced_mode}' ignored: no usable cache")
        return _full_plan("No usable cache for this repository - generating everything")

    if forced_mode:
        return _plan_for_mode(forced_mode, analysis, cache, f"Regeneration mode '{forced_mode}' requested")

    pct = analysis.change_percentage
    mode = policy.classify(pct)
    reasons = {
        REGENERATION_SKIP: "No file changes detected since last generation",
        REGENERATION_PARTIAL: f"{pct:.1f}% of files changed - regenerating affected chapters only",
        REGENERATION_PARTIAL_REIDENTIFY: (
            f"{pct:.1f}% of files changed - re-identifying abstractions and regenerating affected chapters"
        ),
        REGENERATION_FULL: f"{pct:.1f}% of files changed - full regeneration recommended",
    }
    return _plan_for_mode(mode, analysis, cache, reasons[mode])


def plan_regeneration(
    analysis: ChangeAnalysis,
    cache: Optional[RepositoryCache],
    policy: Optional[RegenerationPolicy] = None,
    forced_mode: Optional[str] = None,
) -> RegenerationPlan:
    """
    Decide how much of the pipeline must rerun.

    forced_mode "full" is always honoured. Any other forced mode is honoured
    only when the cache holds a complete previous run. Any error while
    planning degrades to a full plan.
    """
    policy = policy or RegenerationPolicy()
    try:
        plan = _plan(analysis, cache, policy, forced_mode)
    except Exception as e:
        logger.exception(f"Regeneration planning failed, falling back to full: {e}")
        plan = _full_plan(f"Planning failed ({type(e).__name__}) - generating everything")

    logger.info(
        f"Regeneration plan: mode={plan.mode}, chapters={plan.chapters_to_regenerate}, "
        f"savings={plan.estimated_savings}% ({plan.reason})"
    )
    return plan


def resolve_after_reidentification(
    plan: RegenerationPlan,
    cache: RepositoryCache,
    analysis: ChangeAnalysis,
    abstractions: Sequence[Abstraction],
    chapter_order: Sequence[int],
    files: Sequence[SourceFile],
) -> RegenerationPlan:
    """
    Decide the chapter set of a partial_reidentify plan once the analysis
    stages have rerun.

    A cached chapter is reused when a chapter with the same slug exists in the
    cache, its abstraction kept the same file set, none of those files changed
    and its narrative predecessor is the same. Every chapter after a
    regenerated one is regenerated too, because its prompt carries the text
    of all earlier chapters.
    """
    changed = set(analysis.changed_paths)
    cached_files_by_name = {a.name.lower(): set(a.files) for a in (cache.abstractions or [])}

    slugs = [
        safe_chapter_slug(abstractions[idx].name, position + 1)
        for position, idx in enumerate(chapter_order)
    ]

    to_regenerate: List[str] = []
    previous_regenerated = False
    for position, idx in enumerate(chapter_order):
        slug = slugs[position]
        abstraction = abstractions[idx]
        paths = {files[i].path for i in abstraction.files}
        expected_dependencies = [slugs[position - 1]] if position > 0 else []
        cached_chapter = cache.chapters.get(slug)

        reusable = (
            cached_chapter is not None
            and not previous_regenerated
            and cached_files_by_name.get(abstraction.name.lower()) == paths
            and not paths & changed
            and cached_chapter.dependencies == expected_dependencies
        )
        if not reusable:
            to_regenerate.append(slug)
            previous_regenerated = True

    resolved = RegenerationPlan(
        mode=plan.mode,
        reason=plan.reason,
        chapters_to_regenerate=to_regenerate,
        rerun_abstraction_identification=plan.rerun_abstraction_identification,
        estimated_savings=estimate_savings(len(to_regenerate), len(slugs)),
        resolved=True,
    )
    logger.info(
        f"Resolved {plan.mode} plan: regenerating {len(to_regenerate)}/{len(slugs)} chapters "
        f"({resolved.estimated_savings}% saved)"
    )
    return resolved
