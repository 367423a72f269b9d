"""
================================================================================
REPOSITORY CACHE STORE
================================================================================
Durable per-repository record of the last successful generation:
file manifest (path + content hash), abstractions, relationships, chapter
order, chapter contents and generation metadata.

LAYOUT:
=======
    <cache_dir>/repo_index.json     {"repos": {repo_id: {"cache_file",
                                     "last_accessed", "repo_url"}},
                                     "version": "1.0"}
    <cache_dir>/<safe_repo_id>.json one RepositoryCache per repository

repo_id is the normalized repository URL (protocol, "github.com/", ".git"
and trailing "/" stripped, lower-cased for URLs). A local directory keeps
its case and its file name carries a short hash of the path.

Abstractions are persisted with file PATHS instead of file indices, because
indices into the crawled file list are not stable across runs.

No lock is taken. Two concurrent runs for the same repo_id race, and the last
writer wins. Each file is replaced atomically, so a reader never sees a
partially written record.
================================================================================
"""

import os
import re
import hashlib
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from constants.defaults import (
    CONTENT_HASH_LENGTH,
    CLEANUP_MAX_AGE_DAYS,
    CLEANUP_MAX_SIZE_MB,
    CLEANUP_MAX_REPOS,
    CLEANUP_MIN_REPOS_TO_KEEP,
)
from constants.paths import CACHE_FILE_NAME, REPO_INDEX_FILE_NAME, REPO_INDEX_VERSION
from utils.errors import CachePersistenceFailure
from utils.json_files import read_json, write_json_atomic
from utils.log import get_logger
from utils.models import Abstraction, Chapter, RelationshipData, SourceFile

logger = get_logger("tutorial.cache")

_BYTES_PER_MB = 1024 * 1024


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class CachedFile:
    path: str
    content_hash: str
    last_modified: str


@dataclass
class CachedAbstraction:
    name: str
    description: str
    files: List[str] = field(default_factory=list)  # file paths


@dataclass
class RepositoryCache:
    repo_url: str
    repo_id: str
    last_crawl_time: str
    files: List[CachedFile] = field(default_factory=list)
    abstractions: Optional[List[CachedAbstraction]] = None
    relationships: Optional[RelationshipData] = None
    chapter_order: Optional[List[int]] = None  # indices into abstractions
    chapters: Dict[str, Chapter] = field(default_factory=dict)  # slug -> chapter
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "repo_url": self.repo_url,
            "repo_id": self.repo_id,
            "last_crawl_time": self.last_crawl_time,
            "files": [asdict(f) for f in self.files],
            "abstractions": (
                [asdict(a) for a in self.abstractions] if self.abstractions is not None else None
            ),
            "relationships": self.relationships.to_dict() if self.relationships is not None else None,
            "chapter_order": self.chapter_order,
            "chapters": {slug: ch.to_dict() for slug, ch in self.chapters.items()},
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RepositoryCache":
        """Rebuild a record from its JSON form. Values of the wrong type raise TypeError."""
        _check(isinstance(data, dict), "record is not an object")
        abstractions = data.get("abstractions")
        relationships = data.get("relationships")
        chapter_order = data.get("chapter_order")
        chapters = data.get("chapters", {})
        metadata = data.get("metadata", {})
        _check(isinstance(data.get("files", []), list), "files must be a list")
        _check(abstractions is None or isinstance(abstractions, list), "abstractions must be a list")
        _check(chapter_order is None or _is_list_of(chapter_order, int), "chapter_order must be a list of integers")
        _check(isinstance(chapters, dict), "chapters must be an object")
        _check(isinstance(metadata, dict), "metadata must be an object")
        return cls(
            repo_url=data["repo_url"],
            repo_id=data.get("repo_id") or normalize_repo_url(data["repo_url"]),
            last_crawl_time=data.get("last_crawl_time", ""),
            files=[_cached_file(f) for f in data.get("files", [])],
            abstractions=(
                [_cached_abstraction(a) for a in abstractions] if abstractions is not None else None
            ),
            relationships=RelationshipData.from_dict(relationships) if relationships is not None else None,
            chapter_order=chapter_order,
            chapters={slug: _cached_chapter(ch) for slug, ch in chapters.items()},
            metadata=dict(metadata),
        )

    @property
    def has_analysis(self) -> bool:
        """True when abstractions, relationships and chapter order are all present."""
        return bool(self.abstractions) and self.relationships is not None and bool(self.chapter_order)


def _check(condition: bool, message: str) -> None:
    if not condition:
        raise TypeError(message)


def _is_list_of(values, kind) -> bool:
    return isinstance(values, list) and all(
        isinstance(v, kind) and not isinstance(v, bool) for v in values
    )


def _cached_file(data) -> CachedFile:
    cached = CachedFile(**data)
    _check(isinstance(cached.path, str) and isinstance(cached.content_hash, str), f"bad file entry: {data!r}")
    return cached


def _cached_abstraction(data) -> CachedAbstraction:
    cached = CachedAbstraction(**data)
    _check(isinstance(cached.name, str), f"abstraction name must be a string: {data!r}")
    _check(_is_list_of(cached.files, str), f"abstraction files must be a list of paths: {data!r}")
    return cached


def _cached_chapter(data) -> Chapter:
    _check(isinstance(data, dict), "chapter is not an object")
    for key in ("abstractions_covered", "dependencies"):
        _check(_is_list_of(data.get(key, []), str), f"chapter {key} must be a list of strings")
    chapter = Chapter.from_dict(data)
    _check(isinstance(chapter.slug, str) and isinstance(chapter.content, str), "chapter slug and content must be strings")
    return chapter


@dataclass
class CleanupPolicy:
    max_age_days: int = CLEANUP_MAX_AGE_DAYS
    max_size_mb: float = CLEANUP_MAX_SIZE_MB
    max_repos: int = CLEANUP_MAX_REPOS
    min_repos_to_keep: int = CLEANUP_MIN_REPOS_TO_KEEP
    dry_run: bool = False


@dataclass
class CleanupResult:
    deleted_repos: List[str] = field(default_factory=list)
    deleted_files: List[str] = field(default_factory=list)
    freed_space_mb: float = 0.0
    remaining_repos: int = 0
    remaining_size_mb: float = 0.0
    errors: List[str] = field(default_factory=list)


# =============================================================================
# KEYS AND HASHES
# =============================================================================

_URL_PREFIX = re.compile(r"^([a-z][a-z0-9+.-]*://|github\.com/)", re.IGNORECASE)


def is_remote_url(key: str) -> bool:
    return bool(_URL_PREFIX.match(key.strip()))


def normalize_repo_url(url: str) -> str:
    """
    "https://github.com/Owner/Repo.git/" -> "owner/repo".

    Only URLs are lower-cased. A local directory keeps its case, because two
    paths that differ only in case are different directories.
    """
    normalized = re.sub(r"^https?://", "", url.strip())
    normalized = re.sub(r"^github\.com/", "", normalized)
    normalized = re.sub(r"\.git$", "", normalized)
    normalized = re.sub(r"/$", "", normalized)
    return normalized.lower() if is_remote_url(url) else normalized


def repo_url_to_filename(url: str) -> str:
    repo_id = normalize_repo_url(url)
    safe = re.sub(r"[^A-Za-z0-9_-]", "", repo_id.replace("/", "_"))
    if not is_remote_url(url):
        # local paths lose characters above and may differ only in case
        safe = f"{safe}_{hashlib.sha256(repo_id.encode('utf-8')).hexdigest()[:8]}"
    return f"{safe}.json"


def compute_content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:CONTENT_HASH_LENGTH]


# =============================================================================
# CONVERSIONS BETWEEN RUN-LOCAL INDICES AND PERSISTED PATHS
# =============================================================================

def snapshot_files(files: Sequence[SourceFile], previous: Optional[RepositoryCache] = None) -> List[CachedFile]:
    """
    File manifest for the current file set. A file whose hash did not change
    keeps its previous last_modified timestamp.
    """
    previous_by_path = {f.path: f for f in previous.files} if previous else {}
    now = _now().isoformat()
    manifest = []
    for source in files:
        content_hash = compute_content_hash(source.content)
        before = previous_by_path.get(source.path)
        if before is not None and before.content_hash == content_hash:
            last_modified = before.last_modified
        else:
            last_modified = now
        manifest.append(CachedFile(source.path, content_hash, last_modified))
    return manifest


def to_cached_abstractions(abstractions: Sequence[Abstraction], files: Sequence[SourceFile]) -> List[CachedAbstraction]:
    return [
        CachedAbstraction(
            name=a.name,
            description=a.description,
            files=[files[i].path for i in a.files if 0 <= i < len(files)],
        )
        for a in abstractions
    ]


def restore_abstractions(cached: Sequence[CachedAbstraction], files: Sequence[SourceFile]) -> List[Abstraction]:
    """Map persisted file paths back to indices into the current file list. Vanished paths are dropped."""
    index_by_path = {f.path: i for i, f in enumerate(files)}
    return [
        Abstraction(
            name=a.name,
            description=a.description,
            files=sorted({index_by_path[p] for p in a.files if p in index_by_path}),
        )
        for a in cached
    ]


# =============================================================================
# STORE
# =============================================================================

class RepoCacheStore:
    """
    File-backed store of RepositoryCache records under one directory.

    Read and write errors surface as CachePersistenceFailure. Callers in the
    pipeline downgrade them to "no cache available".
    """

    def __init__(self, cache_dir: str):
        self.cache_dir = cache_dir
        self.index_path = os.path.join(cache_dir, REPO_INDEX_FILE_NAME)

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------
    def load_index(self) -> dict:
        if not os.path.exists(self.index_path):
            return {"repos": {}, "version": REPO_INDEX_VERSION}
        index = read_json(self.index_path)
        if not isinstance(index, dict) or not isinstance(index.get("repos"), dict):
            raise CachePersistenceFailure(f"Malformed repo index: {self.index_path}")
        return index

    def save_index(self, index: dict) -> None:
        write_json_atomic(self.index_path, index)

    def _cache_path(self, cache_file: str) -> str:
        return os.path.join(self.cache_dir, cache_file)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    @staticmethod
    def create(repo_url: str) -> RepositoryCache:
        return RepositoryCache(
            repo_url=repo_url,
            repo_id=normalize_repo_url(repo_url),
            last_crawl_time=_now().isoformat(),
        )

    def load(self, repo_url: str) -> Optional[RepositoryCache]:
        """Return the cached record for repo_url, or None if there is none."""
        repo_id = normalize_repo_url(repo_url)
        index = self.load_index()
        entry = index["repos"].get(repo_id)
        if not entry:
            logger.info(f"No cache entry found for repo {repo_id}")
            return None

        cache_file = entry.get("cache_file") if isinstance(entry, dict) else None
        if not isinstance(cache_file, str) or not cache_file:
            raise CachePersistenceFailure(f"Malformed index entry for repo {repo_id}: {entry!r}")

        cache_path = self._cache_path(cache_file)
        if not os.path.exists(cache_path):
            logger.warning(f"Cache file missing for repo {repo_id}: {cache_file}")
            return None

        data = read_json(cache_path)
        try:
            cache = RepositoryCache.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CachePersistenceFailure(f"Malformed repo cache {cache_path}: {e}") from e

        entry["last_accessed"] = _now().isoformat()
        self.save_index(index)

        logger.info(f"Loaded repo cache {repo_id}: {len(cache.files)} files, {len(cache.chapters)} chapters")
        return cache

    def save(self, cache: RepositoryCache) -> str:
        """Write the record, then register it in the index. Returns the cache file path."""
        repo_id = normalize_repo_url(cache.repo_url)
        cache_file = repo_url_to_filename(cache.repo_url)
        cache.repo_id = repo_id

        cache_path = self._cache_path(cache_file)
        write_json_atomic(cache_path, cache.to_dict())

        index = self.load_index()
        index["repos"][repo_id] = {
            "cache_file": cache_file,
            "last_accessed": _now().isoformat(),
            "repo_url": cache.repo_url,
        }
        self.save_index(index)

        logger.info(f"Saved repo cache {repo_id}: {len(cache.files)} files, {len(cache.chapters)} chapters")
        return cache_path

    def clear(self, repo_url: str) -> bool:
        repo_id = normalize_repo_url(repo_url)
        index = self.load_index()
        entry = index["repos"].pop(repo_id, None)
        if entry is None:
            return False

        cache_file = entry.get("cache_file") if isinstance(entry, dict) else None
        if cache_file and os.path.exists(self._cache_path(cache_file)):
            os.remove(self._cache_path(cache_file))
        self.save_index(index)
        logger.info(f"Cleared repo cache {repo_id}")
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def _file_size(self, cache_file: str) -> int:
        try:
            return os.path.getsize(self._cache_path(cache_file))
        except OSError:
            return 0

    def stats(self) -> dict:
        """Per-repo size, age and chapter count, oldest access first."""
        index = self.load_index()
        now = _now()
        repos = []
        total_size = 0

        for repo_id, entry in index["repos"].items():
            size = self._file_size(entry["cache_file"])
            total_size += size
            last_accessed = _parse_time(entry["last_accessed"])

            chapter_count = 0
            cache_path = self._cache_path(entry["cache_file"])
            if os.path.exists(cache_path):
                try:
                    chapter_count = len(read_json(cache_path).get("chapters", {}))
                except CachePersistenceFailure as e:
                    logger.warning(f"Unreadable cache file for {repo_id}: {e}")

            repos.append({
                "repo_id": repo_id,
                "repo_url": entry["repo_url"],
                "size_mb": size / _BYTES_PER_MB,
                "last_accessed": entry["last_accessed"],
                "age_in_days": (now - last_accessed).days,
                "chapter_count": chapter_count,
            })

        repos.sort(key=lambda r: _parse_time(r["last_accessed"]))
        return {
            "total_repos": len(repos),
            "total_size_mb": total_size / _BYTES_PER_MB,
            "oldest_entry": repos[0]["last_accessed"] if repos else None,
            "newest_entry": repos[-1]["last_accessed"] if repos else None,
            "repos": repos,
        }

    def cleanup(self, policy: Optional[CleanupPolicy] = None) -> CleanupResult:
        """
        Evict repositories by age, then by count, then by total size, least
        recently accessed first. Never goes below policy.min_repos_to_keep
        for the age and size passes.
        """
        policy = policy or CleanupPolicy()
        result = CleanupResult()
        logger.info(f"Starting cache cleanup: {policy}")

        stats = self.stats()
        repos = stats["repos"]  # oldest access first
        to_delete: List[str] = []

        # 1. Age
        kept_count = len(repos)
        for repo in repos:
            if repo["age_in_days"] > policy.max_age_days and kept_count > policy.min_repos_to_keep:
                to_delete.append(repo["repo_id"])
                kept_count -= 1

        # 2. Count
        remaining = [r for r in repos if r["repo_id"] not in to_delete]
        excess = len(remaining) - policy.max_repos
        for repo in remaining[:max(excess, 0)]:
            to_delete.append(repo["repo_id"])

        # 3. Size
        remaining = [r for r in repos if r["repo_id"] not in to_delete]
        current_size = sum(r["size_mb"] for r in remaining)
        for repo in remaining:
            if current_size <= policy.max_size_mb:
                break
            if len(repos) - len(to_delete) <= policy.min_repos_to_keep:
                break
            to_delete.append(repo["repo_id"])
            current_size -= repo["size_mb"]

        size_by_id = {r["repo_id"]: r["size_mb"] for r in repos}

        if policy.dry_run:
            logger.info(f"Dry run: would delete {len(to_delete)} repos")
            result.deleted_repos = [f"[DRY RUN] {repo_id}" for repo_id in to_delete]
            result.freed_space_mb = sum(size_by_id[repo_id] for repo_id in to_delete)
            result.remaining_repos = len(repos) - len(to_delete)
            result.remaining_size_mb = stats["total_size_mb"] - result.freed_space_mb
            return result

        index = self.load_index()
        for repo_id in to_delete:
            entry = index["repos"].get(repo_id)
            if entry is None:
                continue
            cache_path = self._cache_path(entry["cache_file"])
            try:
                if os.path.exists(cache_path):
                    os.remove(cache_path)
                    result.freed_space_mb += size_by_id[repo_id]
                    result.deleted_files.append(entry["cache_file"])
                del index["repos"][repo_id]
                result.deleted_repos.append(repo_id)
                logger.info(f"Deleted cache for {repo_id} ({size_by_id[repo_id]:.2f} MB)")
            except OSError as e:
                result.errors.append(f"Failed to delete {repo_id}: {e}")
                logger.error(f"Failed to delete cache for {repo_id}: {e}")
        self.save_index(index)

        final = self.stats()
        result.remaining_repos = final["total_repos"]
        result.remaining_size_mb = final["total_size_mb"]
        logger.info(
            f"Cache cleanup complete: deleted {len(result.deleted_repos)}, "
            f"freed {result.freed_space_mb:.2f} MB, {result.remaining_repos} remaining"
        )
        return result

    def cleanup_orphaned_files(self, dry_run: bool = False) -> List[str]:
        """Delete JSON files in the cache directory that the index does not reference."""
        if not os.path.isdir(self.cache_dir):
            return []

        index = self.load_index()
        referenced = {entry["cache_file"] for entry in index["repos"].values()}
        referenced.update((REPO_INDEX_FILE_NAME, CACHE_FILE_NAME))

        orphaned = []
        for name in sorted(os.listdir(self.cache_dir)):
            if name in referenced or not name.endswith(".json"):
                continue
            orphaned.append(name)
            if dry_run:
                continue
            try:
                os.remove(self._cache_path(name))
                logger.info(f"Deleted orphaned cache file {name}")
            except OSError as e:
                logger.error(f"Failed to delete orphaned cache file {name}: {e}")
        return orphaned
