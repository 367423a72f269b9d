"""
================================================================================
PROMPT CACHE
================================================================================
Content-addressed store of (prompt -> response) pairs, scoped by
provider/model, with a fuzzy fallback.

MATCHING:
=========
1. Exact: sha256 of the normalized prompt (whitespace collapsed, line endings
   normalized, quote styles unified, case-folded).
2. Fuzzy: Jaccard similarity over word sets (words of 2 characters or fewer
   ignored) against every entry with the same provider/model. The best entry
   at or above the threshold wins.

Entries are never mutated. Adding a prompt whose hash already exists for the
same provider/model replaces the old entry (last write wins). Eviction lives
in cleanup(), which is never called from find()/add().
================================================================================
"""

import os
import re
import hashlib
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from constants.defaults import (
    FUZZY_SIMILARITY_THRESHOLD,
    MIN_SIMILARITY_WORD_LENGTH,
    PROMPT_HASH_LENGTH,
    PROMPT_CACHE_MAX_AGE_DAYS,
    PROMPT_CACHE_MAX_ENTRIES,
)
from utils.json_files import read_json, write_json_atomic
from utils.log import get_logger

logger = get_logger("tutorial.cache")

_QUOTES = re.compile(r"[‘’“”`\"]")


@dataclass(frozen=True)
class PromptCacheEntry:
    prompt_hash: str
    normalized_prompt: str
    response: str
    timestamp: str
    provider: str
    model: str
    token_usage: Optional[dict] = None
    cost: Optional[float] = None


def normalize_prompt(prompt: str) -> str:
    text = prompt.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"\s+", " ", text).strip()
    text = _QUOTES.sub("'", text)
    text = re.sub(r"\.{2,}", ".", text)
    return text.casefold()


def hash_prompt(prompt: str) -> str:
    normalized = normalize_prompt(prompt)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:PROMPT_HASH_LENGTH]


def _word_set(text: str) -> set:
    return {w for w in text.casefold().split() if len(w) >= MIN_SIMILARITY_WORD_LENGTH}


def calculate_similarity(text_a: str, text_b: str) -> float:
    """Jaccard similarity of the two word sets."""
    words_a = _word_set(text_a)
    words_b = _word_set(text_b)
    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def _entry_key(provider: str, model: str, prompt_hash: str) -> str:
    return f"{provider}/{model}/{prompt_hash}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PromptCache:
    """
    In-memory prompt cache, optionally backed by a JSON file.

    The file layout is {"entries": {key: entry}, "stats": {...}} where key is
    "<provider>/<model>/<prompt hash>".
    """

    def __init__(self, path: Optional[str] = None, similarity_threshold: float = FUZZY_SIMILARITY_THRESHOLD):
        self.path = path
        self.similarity_threshold = similarity_threshold
        self.entries: Dict[str, PromptCacheEntry] = {}
        self.stats = {
            "total_hits": 0,
            "total_misses": 0,
            "total_saved": 0,
            "last_cleanup": _now().isoformat(),
        }

    # ------------------------------------------------------------------
    # Hot path
    # ------------------------------------------------------------------
    def find_entry(self, prompt: str, provider: str, model: str, fuzzy: bool = True) -> Optional[PromptCacheEntry]:
        prompt_hash = hash_prompt(prompt)
        exact = self.entries.get(_entry_key(provider, model, prompt_hash))
        if exact is not None:
            self.stats["total_hits"] += 1
            logger.info(f"CACHE HIT: exact prompt match ({prompt_hash[:8]})")
            return exact

        if fuzzy:
            normalized = normalize_prompt(prompt)
            best, best_similarity = None, 0.0
            for entry in self.entries.values():
                if entry.provider != provider or entry.model != model:
                    continue
                similarity = calculate_similarity(normalized, entry.normalized_prompt)
                if similarity >= self.similarity_threshold and similarity > best_similarity:
                    best, best_similarity = entry, similarity
            if best is not None:
                self.stats["total_hits"] += 1
                logger.info(
                    f"CACHE HIT: fuzzy prompt match ({best_similarity:.1%} >= "
                    f"{self.similarity_threshold:.1%})"
                )
                return best

        self.stats["total_misses"] += 1
        logger.info(f"CACHE MISS: no matching entry ({prompt_hash[:8]})")
        return None

    def find(self, prompt: str, provider: str, model: str, fuzzy: bool = True) -> Optional[str]:
        entry = self.find_entry(prompt, provider, model, fuzzy=fuzzy)
        return entry.response if entry is not None else None

    def add(self, prompt: str, response: str, provider: str, model: str,
            usage: Optional[dict] = None, cost: Optional[float] = None) -> PromptCacheEntry:
        entry = PromptCacheEntry(
            prompt_hash=hash_prompt(prompt),
            normalized_prompt=normalize_prompt(prompt),
            response=response,
            timestamp=_now().isoformat(),
            provider=provider,
            model=model,
            token_usage=usage,
            cost=cost,
        )
        self.entries[_entry_key(provider, model, entry.prompt_hash)] = entry
        self.stats["total_saved"] += 1
        logger.info(f"CACHE SAVE: {entry.prompt_hash[:8]} ({provider}/{model})")
        return entry

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def cleanup(self, max_age_days: int = PROMPT_CACHE_MAX_AGE_DAYS,
                max_entries: int = PROMPT_CACHE_MAX_ENTRIES) -> int:
        """
        Evict entries older than max_age_days, then the oldest entries beyond
        max_entries. Returns the number of evicted entries.
        """
        cutoff = _now() - timedelta(days=max_age_days)
        kept = {
            key: entry for key, entry in self.entries.items()
            if datetime.fromisoformat(entry.timestamp) >= cutoff
        }
        if len(kept) > max_entries:
            newest_first = sorted(kept.items(), key=lambda kv: kv[1].timestamp, reverse=True)
            kept = dict(newest_first[:max_entries])

        removed = len(self.entries) - len(kept)
        self.entries = kept
        self.stats["last_cleanup"] = _now().isoformat()
        if removed:
            logger.info(f"Cleaned up {removed} prompt cache entries (max_age_days={max_age_days})")
        return removed

    def merge(self, other: "PromptCache") -> "PromptCache":
        """New cache holding both stores' entries; self wins on key collisions."""
        merged = PromptCache(self.path, self.similarity_threshold)
        merged.entries = {**other.entries, **self.entries}
        for key in ("total_hits", "total_misses", "total_saved"):
            merged.stats[key] = self.stats[key] + other.stats[key]
        merged.stats["last_cleanup"] = self.stats["last_cleanup"]
        return merged

    def statistics(self) -> dict:
        providers: Dict[str, int] = {}
        models: Dict[str, int] = {}
        for entry in self.entries.values():
            providers[entry.provider] = providers.get(entry.provider, 0) + 1
            models[entry.model] = models.get(entry.model, 0) + 1
        total_requests = self.stats["total_hits"] + self.stats["total_misses"]
        return {
            "total_entries": len(self.entries),
            "total_hits": self.stats["total_hits"],
            "total_misses": self.stats["total_misses"],
            "hit_rate": self.stats["total_hits"] / total_requests if total_requests else 0.0,
            "providers": providers,
            "models": models,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    @classmethod
    def load(cls, path: str, similarity_threshold: float = FUZZY_SIMILARITY_THRESHOLD) -> "PromptCache":
        """
        Load a cache file. A missing file yields an empty cache; an unreadable
        one raises CachePersistenceFailure.
        """
        cache = cls(path, similarity_threshold)
        if not os.path.exists(path):
            return cache
        data = read_json(path)
        for key, raw in data.get("entries", {}).items():
            cache.entries[key] = PromptCacheEntry(**raw)
        cache.stats.update(data.get("stats", {}))
        logger.info(f"Prompt cache loaded: {len(cache.entries)} entries from {path}")
        return cache

    def save(self) -> None:
        if not self.path:
            return
        write_json_atomic(self.path, {
            "entries": {key: asdict(entry) for key, entry in self.entries.items()},
            "stats": self.stats,
        })
        logger.info(f"Prompt cache saved: {len(self.entries)} entries")
