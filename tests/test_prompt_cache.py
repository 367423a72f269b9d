"""Prompt cache: exact and fuzzy lookup, provider scoping, maintenance, persistence."""

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from utils.errors import CachePersistenceFailure
from utils.prompt_cache import (
    PromptCache,
    calculate_similarity,
    hash_prompt,
    normalize_prompt,
)

WORDS = [f"word{i:02d}" for i in range(40)]
BASE_PROMPT = " ".join(WORDS)


def with_replaced_words(count):
    words = list(WORDS)
    for i in range(count):
        words[i] = f"other{i:02d}"
    return " ".join(words)


class TestNormalization:
    def test_whitespace_and_quotes_do_not_change_the_hash(self):
        a = 'Explain  "the cache"\r\nplease...'
        b = "explain 'the cache' please."
        assert normalize_prompt(a) == normalize_prompt(b)
        assert hash_prompt(a) == hash_prompt(b)

    def test_different_prompts_hash_differently(self):
        assert hash_prompt("write chapter one") != hash_prompt("write chapter two")

    def test_similarity_ignores_short_words(self):
        assert calculate_similarity("a an the cat", "of to the cat") == 1.0
        assert calculate_similarity("", "") == 1.0
        assert calculate_similarity("cat", "") == 0.0


class TestLookup:
    def test_exact_hit(self):
        cache = PromptCache()
        cache.add("Hello   World", "hi", "OPENAI", "gpt-4o")
        assert cache.find("hello world", "OPENAI", "gpt-4o") == "hi"
        assert cache.stats["total_hits"] == 1

    def test_fuzzy_hit_at_threshold(self):
        cache = PromptCache()
        cache.add(BASE_PROMPT, "cached", "OPENAI", "gpt-4o")

        # 39 shared words out of 41 distinct: 95.1% similar
        assert cache.find(with_replaced_words(1), "OPENAI", "gpt-4o") == "cached"

    def test_fuzzy_miss_below_threshold(self):
        cache = PromptCache()
        cache.add(BASE_PROMPT, "cached", "OPENAI", "gpt-4o")

        assert cache.find(with_replaced_words(3), "OPENAI", "gpt-4o") is None
        assert cache.stats["total_misses"] == 1

    def test_fuzzy_disabled(self):
        cache = PromptCache()
        cache.add(BASE_PROMPT, "cached", "OPENAI", "gpt-4o")
        assert cache.find(with_replaced_words(1), "OPENAI", "gpt-4o", fuzzy=False) is None

    def test_scoped_by_provider_and_model(self):
        cache = PromptCache()
        cache.add(BASE_PROMPT, "from openai", "OPENAI", "gpt-4o")

        assert cache.find(BASE_PROMPT, "GEMINI", "gpt-4o") is None
        assert cache.find(BASE_PROMPT, "OPENAI", "gpt-4o-mini") is None
        assert cache.find(with_replaced_words(1), "GEMINI", "gpt-4o") is None

    def test_same_prompt_replaces_previous_entry(self):
        cache = PromptCache()
        cache.add("prompt text here", "first", "OPENAI", "gpt-4o")
        cache.add("prompt text here", "second", "OPENAI", "gpt-4o")
        assert len(cache.entries) == 1
        assert cache.find("prompt text here", "OPENAI", "gpt-4o") == "second"


class TestMaintenance:
    def age(self, cache, days):
        old = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        cache.entries = {key: replace(entry, timestamp=old) for key, entry in cache.entries.items()}

    def test_cleanup_evicts_old_entries(self):
        cache = PromptCache()
        cache.add("old prompt text", "x", "OPENAI", "gpt-4o")
        self.age(cache, 45)
        cache.add("new prompt text", "y", "OPENAI", "gpt-4o")

        assert cache.cleanup(max_age_days=30) == 1
        assert cache.find("new prompt text", "OPENAI", "gpt-4o") == "y"
        assert cache.find("old prompt text", "OPENAI", "gpt-4o", fuzzy=False) is None

    def test_cleanup_caps_entry_count(self):
        cache = PromptCache()
        for i in range(5):
            cache.add(f"prompt number {i}", str(i), "OPENAI", "gpt-4o")
        assert cache.cleanup(max_entries=3) == 2
        assert len(cache.entries) == 3

    def test_merge_prefers_own_entries(self):
        ours, theirs = PromptCache(), PromptCache()
        ours.add("shared prompt text", "ours", "OPENAI", "gpt-4o")
        theirs.add("shared prompt text", "theirs", "OPENAI", "gpt-4o")
        theirs.add("only theirs text", "theirs", "OPENAI", "gpt-4o")

        merged = ours.merge(theirs)

        assert len(merged.entries) == 2
        assert merged.find("shared prompt text", "OPENAI", "gpt-4o") == "ours"
        assert merged.stats["total_saved"] == 3

    def test_statistics(self):
        cache = PromptCache()
        cache.add("one prompt text", "1", "OPENAI", "gpt-4o")
        cache.add("two prompt text", "2", "GEMINI", "gemini-2.5-pro")
        cache.find("one prompt text", "OPENAI", "gpt-4o")
        cache.find("unknown words entirely", "OPENAI", "gpt-4o")

        stats = cache.statistics()
        assert stats["total_entries"] == 2
        assert stats["hit_rate"] == 0.5
        assert stats["providers"] == {"OPENAI": 1, "GEMINI": 1}


class TestPersistence:
    def test_save_and_load(self, tmp_path):
        path = str(tmp_path / "llm_cache.json")
        cache = PromptCache(path)
        cache.add("persist this prompt", "kept", "OPENAI", "gpt-4o", usage={"prompt_tokens": 5})
        cache.save()

        loaded = PromptCache.load(path)
        assert loaded.find("persist this prompt", "OPENAI", "gpt-4o") == "kept"
        entry = next(iter(loaded.entries.values()))
        assert entry.token_usage == {"prompt_tokens": 5}

    def test_missing_file_is_empty_cache(self, tmp_path):
        cache = PromptCache.load(str(tmp_path / "missing.json"))
        assert cache.entries == {}

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "llm_cache.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(CachePersistenceFailure):
            PromptCache.load(str(path))

    def test_file_layout(self, tmp_path):
        path = tmp_path / "llm_cache.json"
        cache = PromptCache(str(path))
        cache.add("layout prompt text", "r", "OPENAI", "gpt-4o")
        cache.save()

        data = json.loads(path.read_text(encoding="utf-8"))
        (key,) = data["entries"]
        assert key == f"OPENAI/gpt-4o/{hash_prompt('layout prompt text')}"
        assert set(data["stats"]) >= {"total_hits", "total_misses", "total_saved"}
