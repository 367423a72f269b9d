"""
================================================================================
CHANGE DETECTOR
================================================================================
Compares the current file set with the manifest of the last successful run.

    current files ──hash──► added / modified / unchanged
    cached paths not seen ─► deleted
    changed paths ─────────► affected abstractions (file membership)
    affected abstractions ─► affected chapters (abstractions_covered)
    affected chapters ─────► + every chapter depending on them, transitively

change_percentage = (added + modified + deleted) / current file count * 100
================================================================================
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

from utils.log import get_logger
from utils.models import SourceFile
from utils.repo_cache import RepositoryCache, compute_content_hash

logger = get_logger("tutorial.changes")

ADDED = "added"
MODIFIED = "modified"
DELETED = "deleted"

# Above these shares of the cached file count the summary suggests a full run
_MAJOR_ADDED_RATIO = 0.3
_MAJOR_DELETED_RATIO = 0.3
_MAJOR_MODIFIED_RATIO = 0.5


@dataclass(frozen=True)
class FileChange:
    path: str
    type: str
    old_hash: Optional[str] = None
    new_hash: Optional[str] = None


@dataclass
class ChangeAnalysis:
    changes: List[FileChange] = field(default_factory=list)
    added_files: List[str] = field(default_factory=list)
    modified_files: List[str] = field(default_factory=list)
    deleted_files: List[str] = field(default_factory=list)
    unchanged_files: List[str] = field(default_factory=list)
    affected_abstractions: List[str] = field(default_factory=list)
    chapters_to_regenerate: List[str] = field(default_factory=list)
    chapters_to_keep: List[str] = field(default_factory=list)
    total_files: int = 0
    change_percentage: float = 0.0
    summary: str = ""

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    @property
    def changed_paths(self) -> List[str]:
        return [c.path for c in self.changes]


def detect_file_changes(files: Sequence[SourceFile], cache: RepositoryCache) -> List[FileChange]:
    cached_hashes = {f.path: f.content_hash for f in cache.files}
    current_paths = set()
    changes = []

    for source in files:
        current_paths.add(source.path)
        current_hash = compute_content_hash(source.content)
        cached_hash = cached_hashes.get(source.path)
        if cached_hash is None:
            changes.append(FileChange(source.path, ADDED, new_hash=current_hash))
        elif cached_hash != current_hash:
            changes.append(FileChange(source.path, MODIFIED, old_hash=cached_hash, new_hash=current_hash))

    for cached in cache.files:
        if cached.path not in current_paths:
            changes.append(FileChange(cached.path, DELETED, old_hash=cached.content_hash))

    return changes


def find_affected_abstractions(changed_paths: Iterable[str], cache: RepositoryCache) -> List[str]:
    """Names of cached abstractions that reference any changed path."""
    if not cache.abstractions:
        return []
    changed = set(changed_paths)
    return [a.name for a in cache.abstractions if changed.intersection(a.files)]


def find_affected_chapters(affected_abstractions: Iterable[str], cache: RepositoryCache) -> List[str]:
    """
    Slugs of chapters covering an affected abstraction, plus every chapter
    that depends on one of them directly or transitively. Sorted by slug,
    which is chapter order.
    """
    affected_names = {name.lower() for name in affected_abstractions}
    affected: Set[str] = {
        slug for slug, chapter in cache.chapters.items()
        if any(name.lower() in affected_names for name in chapter.abstractions_covered)
    }

    grew = True
    while grew:
        grew = False
        for slug, chapter in cache.chapters.items():
            if slug not in affected and affected.intersection(chapter.dependencies):
                affected.add(slug)
                grew = True

    return sorted(affected)


def _change_percentage(changed_count: int, total_files: int) -> float:
    if total_files > 0:
        return changed_count / total_files * 100
    return 100.0 if changed_count else 0.0


def _summarize(analysis: ChangeAnalysis, cached_file_count: int) -> str:
    if not analysis.has_changes:
        return "No changes detected. All chapters can be served from cache."

    added, modified, deleted = (
        len(analysis.added_files), len(analysis.modified_files), len(analysis.deleted_files)
    )
    major = (
        added > cached_file_count * _MAJOR_ADDED_RATIO
        or deleted > cached_file_count * _MAJOR_DELETED_RATIO
        or modified > cached_file_count * _MAJOR_MODIFIED_RATIO
    )
    if major:
        return (
            f"Major changes detected ({added} added, {modified} modified, {deleted} deleted). "
            f"Consider full regeneration."
        )
    if not analysis.chapters_to_regenerate:
        return (
            f"{len(analysis.changes)} file(s) changed but no chapters affected. "
            f"May want to re-identify abstractions."
        )
    return (
        f"{len(analysis.chapters_to_regenerate)} chapter(s) need regeneration, "
        f"{len(analysis.chapters_to_keep)} can be kept from cache."
    )


def analyze_changes(files: Sequence[SourceFile], cache: Optional[RepositoryCache]) -> ChangeAnalysis:
    """Full change analysis of the current files against the cached record."""
    if cache is None:
        logger.info("No cache found, full generation required")
        return ChangeAnalysis(
            changes=[FileChange(f.path, ADDED, new_hash=compute_content_hash(f.content)) for f in files],
            added_files=[f.path for f in files],
            total_files=len(files),
            change_percentage=_change_percentage(len(files), len(files)),
            summary=f"No cache found. Will generate all {len(files)} files fresh.",
        )

    changes = detect_file_changes(files, cache)
    by_type: Dict[str, List[str]] = {ADDED: [], MODIFIED: [], DELETED: []}
    for change in changes:
        by_type[change.type].append(change.path)
    changed_current = set(by_type[ADDED]) | set(by_type[MODIFIED])

    affected_abstractions = find_affected_abstractions((c.path for c in changes), cache)
    to_regenerate = find_affected_chapters(affected_abstractions, cache)
    regenerate_set = set(to_regenerate)

    analysis = ChangeAnalysis(
        changes=changes,
        added_files=by_type[ADDED],
        modified_files=by_type[MODIFIED],
        deleted_files=by_type[DELETED],
        unchanged_files=[f.path for f in files if f.path not in changed_current],
        affected_abstractions=affected_abstractions,
        chapters_to_regenerate=to_regenerate,
        chapters_to_keep=sorted(slug for slug in cache.chapters if slug not in regenerate_set),
        total_files=len(files),
        change_percentage=_change_percentage(len(changes), len(files)),
    )
    analysis.summary = _summarize(analysis, len(cache.files))

    logger.info(
        f"Change analysis: {len(analysis.added_files)} added, {len(analysis.modified_files)} modified, "
        f"{len(analysis.deleted_files)} deleted, {len(analysis.unchanged_files)} unchanged "
        f"({analysis.change_percentage:.1f}%); affected abstractions: {affected_abstractions}; "
        f"chapters to regenerate: {to_regenerate}"
    )
    logger.info(analysis.summary)
    return analysis


def has_repo_changes(files: Sequence[SourceFile], cache: Optional[RepositoryCache]) -> bool:
    """Quick check, cheaper than analyze_changes(): stops at the first difference."""
    if cache is None:
        return True
    if len(files) != len(cache.files):
        return True
    cached_hashes = {f.path: f.content_hash for f in cache.files}
    for source in files:
        cached_hash = cached_hashes.get(source.path)
        if cached_hash is None or cached_hash != compute_content_hash(source.content):
            return True
    return False
